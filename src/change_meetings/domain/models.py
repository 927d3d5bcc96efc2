"""
Модели метаданных изменения (Pydantic).

Назначение:
- разбор JSON записи изменения (archive/ и customers/<code>/)
- сохранение неизвестных полей как есть при перезаписи
- инварианты пары meeting_id/join_url
"""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .enums import ModificationType


class MeetingMetadata(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    meeting_id: str | None = None
    join_url: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    subject: str | None = None
    organizer: str | None = None
    attendees: list[str] | None = None

    @property
    def has_meeting(self) -> bool:
        return bool(self.meeting_id) and bool(self.join_url)


class CustomerMeetingRef(BaseModel):
    """
    Ссылка на встречу конкретного customer в архивной записи.
    """

    model_config = ConfigDict(extra="allow")

    meeting_id: str
    join_url: str


class ModificationEntry(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    timestamp: str
    user_id: str
    modification_type: ModificationType
    customer_code: str | None = None
    meeting_metadata: MeetingMetadata | None = None


class ChangeRecord(BaseModel):
    """
    Запись изменения. Хранится целиком одним JSON-объектом.
    Все поля, о которых ядро не знает, переживают перезапись без изменений.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    change_id: str = Field(alias="changeId", min_length=1)
    change_title: str | None = Field(default=None, alias="changeTitle")
    change_reason: str | None = Field(default=None, alias="changeReason")
    customers: list[str] = Field(default_factory=list)

    implementation_start: str | None = Field(default=None, alias="implementationStart")
    implementation_end: str | None = Field(default=None, alias="implementationEnd")
    timezone: str | None = None

    include_meeting: bool | None = Field(
        default=None,
        validation_alias=AliasChoices("include_meeting", "meetingRequired"),
        serialization_alias="include_meeting",
    )
    meeting_title: str | None = Field(default=None, alias="meetingTitle")
    meeting_start_time: str | None = Field(default=None, alias="meetingStartTime")
    meeting_duration: int | str | None = Field(default=None, alias="meetingDuration")
    meeting_location: str | None = Field(default=None, alias="meetingLocation")

    implementation_plan: str | None = Field(default=None, alias="implementationPlan")
    customer_impact: str | None = Field(default=None, alias="customerImpact")
    rollback_plan: str | None = Field(default=None, alias="rollbackPlan")
    snow_ticket: str | None = Field(default=None, alias="snowTicket")
    jira_ticket: str | None = Field(default=None, alias="jiraTicket")

    attendees: list[str] | None = None

    meeting_metadata: MeetingMetadata | None = None
    modifications: list[ModificationEntry] = Field(default_factory=list)

    # только в архивной записи
    customer_meetings: dict[str, CustomerMeetingRef] | None = None

    # -------------------------------------------------------------------------
    # Пара meeting_id/join_url
    # -------------------------------------------------------------------------
    @property
    def meeting_id(self) -> str | None:
        mm = self.meeting_metadata
        return mm.meeting_id if mm and mm.meeting_id else None

    @property
    def join_url(self) -> str | None:
        mm = self.meeting_metadata
        return mm.join_url if mm and mm.join_url else None

    @property
    def meeting_required(self) -> bool:
        return bool(self.include_meeting)

    def latest_scheduled_meeting(self, customer_code: str | None = None) -> MeetingMetadata | None:
        """
        Последняя запись meeting_scheduled в журнале, для которой ещё не было
        meeting_cancelled. Используется, когда meeting_metadata уже нет.
        """
        cancelled: set[str] = set()
        for entry in reversed(self.modifications):
            if customer_code and entry.customer_code and entry.customer_code != customer_code:
                continue
            if entry.modification_type == ModificationType.meeting_cancelled:
                mm = entry.meeting_metadata
                if mm and mm.meeting_id:
                    cancelled.add(mm.meeting_id)
                else:
                    # отмена без id закрывает всё, что было запланировано раньше
                    return None
                continue
            if entry.modification_type != ModificationType.meeting_scheduled:
                continue
            mm = entry.meeting_metadata
            if mm and mm.meeting_id and mm.meeting_id not in cancelled:
                return mm
        return None

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_json_dict(cls, data: dict[str, Any]) -> ChangeRecord:
        return cls.model_validate(data)
