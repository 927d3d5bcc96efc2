"""
Результаты операций оркестратора.

MeetingOutcome: неизменяемый per-customer результат.
BatchResult: агрегат по одному запросу, порядок как у входных customer codes.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any

from change_meetings.common.errors import AppError

from .enums import OperationKind, OutcomeAction


@dataclass(frozen=True)
class MeetingOutcome:
    customer_code: str
    success: bool
    action: OutcomeAction
    meeting_id: str | None = None
    join_url: str | None = None
    error: dict[str, str] | None = None
    attempts: int = 0

    @classmethod
    def ok(
        cls,
        customer_code: str,
        action: OutcomeAction,
        *,
        meeting_id: str | None = None,
        join_url: str | None = None,
        attempts: int = 0,
    ) -> MeetingOutcome:
        return cls(
            customer_code=customer_code,
            success=True,
            action=action,
            meeting_id=meeting_id,
            join_url=join_url,
            attempts=attempts,
        )

    @classmethod
    def failed(cls, customer_code: str, err: AppError, *, attempts: int = 0) -> MeetingOutcome:
        return cls(
            customer_code=customer_code,
            success=False,
            action=OutcomeAction.failed,
            error={"code": err.code, "message": err.message},
            attempts=attempts,
        )

    def as_failed(self, err: AppError) -> MeetingOutcome:
        """
        Перевод успешного исхода в failed (например, при потере записи в хранилище).
        meeting_id/join_url сохраняются: встреча у провайдера уже существует.
        """
        return dataclasses.replace(
            self,
            success=False,
            action=OutcomeAction.failed,
            error={"code": err.code, "message": err.message},
        )

    def as_upload_result(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "customer": self.customer_code,
            "success": self.success,
            "action": self.action.value,
        }
        if self.meeting_id:
            out["meetingId"] = self.meeting_id
        if self.join_url:
            out["joinUrl"] = self.join_url
        if self.error:
            out["error"] = self.error
        if self.attempts:
            out["attempts"] = self.attempts
        return out


@dataclass
class BatchResult:
    change_id: str
    operation: OperationKind
    outcomes: list[MeetingOutcome] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def successful(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.success)

    @property
    def all_succeeded(self) -> bool:
        return self.failed == 0

    @property
    def any_succeeded(self) -> bool:
        """
        Частичный успех: хотя бы один customer обработан (или ошибок нет вовсе).
        Детали ошибок остаются в uploadResults и summary.failed.
        """
        return self.successful > 0 or self.failed == 0

    def outcome_for(self, customer_code: str) -> MeetingOutcome | None:
        for o in self.outcomes:
            if o.customer_code == customer_code:
                return o
        return None

    def replace_outcome(self, outcome: MeetingOutcome) -> None:
        for i, o in enumerate(self.outcomes):
            if o.customer_code == outcome.customer_code:
                self.outcomes[i] = outcome
                return
        raise KeyError(outcome.customer_code)

    def to_response(self) -> dict[str, Any]:
        return {
            "success": self.any_succeeded,
            "changeId": self.change_id,
            "operation": self.operation.value,
            "uploadResults": [o.as_upload_result() for o in self.outcomes],
            "summary": {
                "total": self.total,
                "successful": self.successful,
                "failed": self.failed,
            },
        }
