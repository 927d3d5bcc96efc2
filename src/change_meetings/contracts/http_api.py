"""
HTTP API контракты (Pydantic-модели).

Назначение:
- валидация входа/выхода на уровне FastAPI
- ответ в форме, совместимой с /api/upload-metadata
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# ЗАПРОСЫ
# =============================================================================
class CreateMeetingsRequest(BaseModel):
    topic_name: str | None = None
    sender_email: str | None = None
    customer_codes: list[str] = Field(default_factory=list)
    dry_run: bool = False
    force_update: bool = False


# =============================================================================
# ОТВЕТЫ
# =============================================================================
class BatchSummary(BaseModel):
    total: int
    successful: int
    failed: int


class BatchResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    change_id: str = Field(alias="changeId")
    operation: str
    upload_results: list[dict[str, Any]] = Field(alias="uploadResults")
    summary: BatchSummary
