"""
Содержимое приглашения на встречу по изменению.

Назначение:
- тема, HTML-тело, окно встречи и таймзона из ChangeRecord
- окно: meetingStartTime + meetingDuration, иначе implementationStart/End
- конец по умолчанию: старт + 1 час
"""

from __future__ import annotations

import html
from dataclasses import dataclass
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from change_meetings.common.errors import ValidationError
from change_meetings.common.time import parse_iso
from change_meetings.domain.models import ChangeRecord

DEFAULT_TIMEZONE = "America/New_York"
DEFAULT_DURATION = timedelta(hours=1)


@dataclass(frozen=True)
class MeetingContent:
    subject: str
    body_html: str
    start: datetime
    end: datetime
    timezone: str
    location: str | None = None


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValidationError("Неизвестная таймзона", {"timezone": name}) from e


def _to_local(value: datetime, zone: ZoneInfo) -> datetime:
    # Graph получает локальное время + имя таймзоны
    if value.tzinfo is None:
        return value
    return value.astimezone(zone).replace(tzinfo=None)


def _duration(raw: int | str | None) -> timedelta:
    if raw is None or raw == "":
        return DEFAULT_DURATION
    try:
        minutes = int(raw)
    except (TypeError, ValueError) as e:
        raise ValidationError("meetingDuration должен быть числом минут", {"value": raw}) from e
    if minutes <= 0:
        raise ValidationError("meetingDuration должен быть положительным", {"value": raw})
    return timedelta(minutes=minutes)


def meeting_window(record: ChangeRecord, zone: ZoneInfo) -> tuple[datetime, datetime]:
    if record.meeting_start_time:
        start = parse_iso(record.meeting_start_time)
        if start is None:
            raise ValidationError(
                "Некорректный meetingStartTime", {"value": record.meeting_start_time}
            )
        start = _to_local(start, zone)
        return start, start + _duration(record.meeting_duration)

    start = parse_iso(record.implementation_start)
    if start is None:
        raise ValidationError(
            "Не задано время встречи (meetingStartTime/implementationStart)",
            {"change_id": record.change_id},
        )
    start = _to_local(start, zone)
    end = parse_iso(record.implementation_end)
    end = _to_local(end, zone) if end is not None else None
    if end is None or end <= start:
        end = start + DEFAULT_DURATION
    return start, end


def meeting_subject(record: ChangeRecord) -> str:
    if record.meeting_title and record.meeting_title.strip():
        return record.meeting_title.strip()
    return f"Change Implementation: {record.change_title or record.change_id}"


def _text(value: str | None) -> str:
    return html.escape(value or "").replace("\n", "<br>")


def meeting_body_html(record: ChangeRecord, start: datetime, end: datetime, timezone: str) -> str:
    fmt = "%Y-%m-%d %H:%M"
    return (
        "<h2>Change Implementation Meeting</h2>\n"
        f"<p><strong>Change ID:</strong> {_text(record.change_id)}</p>\n"
        f"<p><strong>Change Title:</strong> {_text(record.change_title)}</p>\n"
        f"<p><strong>Description:</strong> {_text(record.change_reason)}</p>\n"
        "<h3>Implementation Details</h3>\n"
        f"<div>{_text(record.implementation_plan)}</div>\n"
        "<h3>Schedule</h3>\n"
        f"<p><strong>Meeting Window:</strong> {start.strftime(fmt)} to {end.strftime(fmt)}</p>\n"
        f"<p><strong>Timezone:</strong> {_text(timezone)}</p>\n"
        "<h3>Impact &amp; Rollback</h3>\n"
        f"<p><strong>Expected Impact:</strong> {_text(record.customer_impact)}</p>\n"
        f"<p><strong>Rollback Plan:</strong> {_text(record.rollback_plan)}</p>\n"
        "<h3>Related Tickets</h3>\n"
        f"<p><strong>ServiceNow:</strong> {_text(record.snow_ticket)}</p>\n"
        f"<p><strong>Jira:</strong> {_text(record.jira_ticket)}</p>\n"
        "<h3>Stakeholders</h3>\n"
        f"<p><strong>Customers:</strong> {_text(', '.join(record.customers))}</p>\n"
    )


def build_meeting_content(
    record: ChangeRecord, *, default_timezone: str = DEFAULT_TIMEZONE
) -> MeetingContent:
    timezone = (record.timezone or "").strip() or default_timezone
    zone = _zone(timezone)
    start, end = meeting_window(record, zone)
    return MeetingContent(
        subject=meeting_subject(record),
        body_html=meeting_body_html(record, start, end, timezone),
        start=start,
        end=end,
        timezone=timezone,
        location=(record.meeting_location or "").strip() or None,
    )
