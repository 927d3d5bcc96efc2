from __future__ import annotations

from datetime import datetime

import pytest

from change_meetings.common.errors import ValidationError
from change_meetings.domain.models import ChangeRecord
from change_meetings.services.meeting_content import build_meeting_content


def _record(**extra) -> ChangeRecord:
    return ChangeRecord.model_validate(
        {
            "changeId": "CHG-20250115120000-ab12cd34",
            "changeTitle": "Database <upgrade>",
            "changeReason": "Patch & reboot",
            "customers": ["hts", "cds"],
            "implementationStart": "2025-01-20T10:00:00",
            "implementationEnd": "2025-01-20T12:00:00",
            "timezone": "Europe/Moscow",
            **extra,
        }
    )


def test_window_from_implementation_times() -> None:
    content = build_meeting_content(_record())

    assert content.start == datetime(2025, 1, 20, 10, 0)
    assert content.end == datetime(2025, 1, 20, 12, 0)
    assert content.timezone == "Europe/Moscow"
    assert content.subject == "Change Implementation: Database <upgrade>"
    assert content.location is None


def test_end_defaults_to_one_hour() -> None:
    missing = build_meeting_content(_record(implementationEnd=None))
    assert missing.end == datetime(2025, 1, 20, 11, 0)

    inverted = build_meeting_content(_record(implementationEnd="2025-01-20T09:00:00"))
    assert inverted.end == datetime(2025, 1, 20, 11, 0)


def test_explicit_meeting_start_and_duration_win() -> None:
    content = build_meeting_content(
        _record(
            meetingStartTime="2025-01-19T15:30:00",
            meetingDuration="45",
            meetingTitle="  CAB review  ",
            meetingLocation="Room 1",
        )
    )
    assert content.start == datetime(2025, 1, 19, 15, 30)
    assert content.end == datetime(2025, 1, 19, 16, 15)
    assert content.subject == "CAB review"
    assert content.location == "Room 1"


def test_aware_times_are_converted_to_meeting_timezone() -> None:
    content = build_meeting_content(
        _record(implementationStart="2025-01-20T07:00:00Z", implementationEnd="2025-01-20T08:00:00Z")
    )
    # Europe/Moscow = UTC+3
    assert content.start == datetime(2025, 1, 20, 10, 0)
    assert content.end == datetime(2025, 1, 20, 11, 0)
    assert content.start.tzinfo is None


def test_default_timezone_is_used_when_record_has_none() -> None:
    content = build_meeting_content(_record(timezone=None), default_timezone="UTC")
    assert content.timezone == "UTC"


def test_body_is_escaped_and_lists_customers() -> None:
    body = build_meeting_content(_record()).body_html
    assert "Database &lt;upgrade&gt;" in body
    assert "Patch &amp; reboot" in body
    assert "hts, cds" in body
    assert "2025-01-20 10:00 to 2025-01-20 12:00" in body


@pytest.mark.parametrize(
    "extra",
    [
        {"implementationStart": None},
        {"implementationStart": "not-a-date"},
        {"timezone": "Mars/Olympus"},
        {"meetingStartTime": "2025-01-19T15:30:00", "meetingDuration": "soon"},
        {"meetingStartTime": "2025-01-19T15:30:00", "meetingDuration": 0},
    ],
)
def test_invalid_content_inputs(extra: dict) -> None:
    with pytest.raises(ValidationError):
        build_meeting_content(_record(**extra))
