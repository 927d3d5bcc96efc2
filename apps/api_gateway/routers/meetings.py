"""
HTTP роуты встреч по изменению.

- POST   /v1/changes/{change_id}/meetings
- DELETE /v1/changes/{change_id}/meetings
"""

from __future__ import annotations

from typing import Any, NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, status

from apps.api_gateway.deps import get_orchestrator
from change_meetings.common.config import get_settings
from change_meetings.common.errors import (
    AppError,
    ErrCode,
    StoreError,
    StoreWriteError,
)
from change_meetings.common.logging import get_project_logger
from change_meetings.contracts.http_api import BatchResponse, CreateMeetingsRequest
from change_meetings.services.orchestrator import MeetingOrchestrator
from change_meetings.tenancy.extraction import parse_customer_codes_arg

log = get_project_logger()

router = APIRouter()

_STATUS_BY_CODE = {
    ErrCode.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrCode.MALFORMED_RECORD: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrCode.CONFLICT: status.HTTP_409_CONFLICT,
    ErrCode.CREDENTIAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _raise_http(e: AppError) -> NoReturn:
    detail: dict[str, Any] = e.as_dict()
    if isinstance(e, StoreError):
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
        if isinstance(e, StoreWriteError) and e.batch is not None:
            detail["result"] = e.batch.to_response()
    else:
        code = _STATUS_BY_CODE.get(e.code, status.HTTP_400_BAD_REQUEST)
    raise HTTPException(status_code=code, detail=detail) from e


@router.post("/changes/{change_id}/meetings", response_model=BatchResponse)
def create_change_meetings(
    change_id: str,
    req: CreateMeetingsRequest,
    orch: MeetingOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    s = get_settings()
    try:
        batch = orch.create_multi_customer_meeting_invite(
            req.customer_codes,
            req.topic_name or s.calendar_topic_name,
            change_id,
            req.sender_email or s.meeting_organizer_email or "",
            dry_run=req.dry_run,
            force_update=req.force_update,
        )
    except AppError as e:
        _raise_http(e)
    return batch.to_response()


@router.delete("/changes/{change_id}/meetings", response_model=BatchResponse)
def cancel_change_meetings(
    change_id: str,
    customer_codes: str = Query(default=""),
    dry_run: bool = Query(default=False),
    orch: MeetingOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    try:
        batch = orch.cancel_multi_customer_meeting(
            parse_customer_codes_arg(customer_codes),
            change_id,
            dry_run=dry_run,
        )
    except AppError as e:
        _raise_http(e)
    return batch.to_response()
