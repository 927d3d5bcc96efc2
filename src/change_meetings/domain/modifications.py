"""
Запись результатов встреч в ChangeRecord (write-back).

Назначение:
- чистые мутаторы записи: вызываются внутри MetadataStore.update
- журнал modifications только дополняется
- пара meeting_id/join_url пишется и очищается только целиком
"""

from __future__ import annotations

from change_meetings.common.errors import ValidationError
from change_meetings.common.time import utc_now_iso

from .enums import ModificationType
from .models import ChangeRecord, CustomerMeetingRef, MeetingMetadata, ModificationEntry


def new_modification_entry(
    modification_type: ModificationType,
    user_id: str,
    *,
    customer_code: str | None = None,
    meeting_metadata: MeetingMetadata | None = None,
) -> ModificationEntry:
    if not (user_id or "").strip():
        raise ValidationError("user_id обязателен для записи в журнал")
    if modification_type == ModificationType.meeting_scheduled and meeting_metadata is None:
        raise ValidationError("meeting_scheduled требует meeting_metadata")
    return ModificationEntry(
        timestamp=utc_now_iso(),
        user_id=user_id,
        modification_type=modification_type,
        customer_code=customer_code,
        meeting_metadata=meeting_metadata,
    )


def _require_pair(meeting: MeetingMetadata) -> None:
    if not meeting.meeting_id or not meeting.join_url:
        raise ValidationError(
            "meeting_id и join_url должны присутствовать вместе",
            {"meeting_id": meeting.meeting_id, "has_join_url": bool(meeting.join_url)},
        )


def apply_meeting_scheduled(
    record: ChangeRecord,
    meeting: MeetingMetadata,
    *,
    customer_code: str,
    user_id: str,
    archive: bool = False,
) -> ChangeRecord:
    """
    Пишет пару meeting_id/join_url и дописывает meeting_scheduled.
    Для архивной записи дополнительно обновляет customer_meetings[customer_code].
    """
    _require_pair(meeting)
    entry = new_modification_entry(
        ModificationType.meeting_scheduled,
        user_id,
        customer_code=customer_code,
        meeting_metadata=meeting,
    )
    record.meeting_metadata = meeting.model_copy(deep=True)
    record.modifications = [*record.modifications, entry]

    if archive:
        refs = dict(record.customer_meetings or {})
        # последняя запись в словаре = самая свежая встреча
        refs.pop(customer_code, None)
        refs[customer_code] = CustomerMeetingRef(
            meeting_id=str(meeting.meeting_id), join_url=str(meeting.join_url)
        )
        record.customer_meetings = refs
    return record


def apply_meeting_cancelled(
    record: ChangeRecord,
    *,
    customer_code: str,
    meeting_id: str,
    user_id: str,
    archive: bool = False,
) -> ChangeRecord:
    """
    Очищает пару meeting_id/join_url для отменённой встречи и дописывает meeting_cancelled.

    В архиве customer удаляется из customer_meetings. Верхнеуровневый meeting_metadata
    очищается, только если указывал на отменённую встречу; если остались встречи
    других customers, он переводится на одну из них.
    """
    entry = new_modification_entry(
        ModificationType.meeting_cancelled,
        user_id,
        customer_code=customer_code,
        meeting_metadata=MeetingMetadata(meeting_id=meeting_id),
    )
    record.modifications = [*record.modifications, entry]

    if not archive:
        record.meeting_metadata = None
        return record

    refs = dict(record.customer_meetings or {})
    refs.pop(customer_code, None)
    record.customer_meetings = refs or None

    if record.meeting_id == meeting_id:
        if refs:
            remaining = list(refs.values())[-1]
            record.meeting_metadata = MeetingMetadata(
                meeting_id=remaining.meeting_id, join_url=remaining.join_url
            )
        else:
            record.meeting_metadata = None
    return record
