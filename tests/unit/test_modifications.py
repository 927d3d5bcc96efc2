from __future__ import annotations

import pytest

from change_meetings.common.errors import ValidationError
from change_meetings.domain.enums import ModificationType
from change_meetings.domain.models import ChangeRecord, MeetingMetadata
from change_meetings.domain.modifications import (
    apply_meeting_cancelled,
    apply_meeting_scheduled,
    new_modification_entry,
)


def _record(**extra) -> ChangeRecord:
    return ChangeRecord.model_validate(
        {
            "changeId": "CHG-20250115120000-ab12cd34",
            "changeTitle": "Upgrade",
            "customers": ["hts", "cds"],
            "meetingRequired": True,
            "approvedBy": "jane@example.com",
            **extra,
        }
    )


def _meeting(n: int) -> MeetingMetadata:
    return MeetingMetadata(meeting_id=f"evt-{n}", join_url=f"https://teams.example.com/{n}")


def test_record_roundtrip_preserves_unknown_fields_and_aliases() -> None:
    record = _record(meetingDuration="45")
    data = record.to_json_dict()

    assert data["changeId"] == "CHG-20250115120000-ab12cd34"
    assert data["approvedBy"] == "jane@example.com"
    assert data["include_meeting"] is True
    assert data["meetingDuration"] == "45"
    assert "meeting_metadata" not in data
    assert record.meeting_required is True


def test_schedule_writes_pair_and_appends_entry() -> None:
    record = apply_meeting_scheduled(_record(), _meeting(1), customer_code="hts", user_id="backend")

    assert (record.meeting_id, record.join_url) == ("evt-1", "https://teams.example.com/1")
    assert len(record.modifications) == 1
    entry = record.modifications[0]
    assert entry.modification_type == ModificationType.meeting_scheduled
    assert entry.customer_code == "hts"
    assert entry.meeting_metadata.meeting_id == "evt-1"
    assert record.customer_meetings is None


def test_schedule_requires_complete_pair() -> None:
    with pytest.raises(ValidationError):
        apply_meeting_scheduled(
            _record(), MeetingMetadata(meeting_id="evt-1"), customer_code="hts", user_id="backend"
        )


def test_archive_tracks_meetings_per_customer() -> None:
    record = _record()
    apply_meeting_scheduled(record, _meeting(1), customer_code="hts", user_id="b", archive=True)
    apply_meeting_scheduled(record, _meeting(2), customer_code="cds", user_id="b", archive=True)

    assert set(record.customer_meetings) == {"hts", "cds"}
    assert record.meeting_id == "evt-2"

    apply_meeting_cancelled(record, customer_code="cds", meeting_id="evt-2", user_id="b", archive=True)
    assert set(record.customer_meetings) == {"hts"}
    assert record.meeting_id == "evt-1"

    apply_meeting_cancelled(record, customer_code="hts", meeting_id="evt-1", user_id="b", archive=True)
    assert record.customer_meetings is None
    assert record.meeting_metadata is None
    assert [m.modification_type for m in record.modifications] == [
        ModificationType.meeting_scheduled,
        ModificationType.meeting_scheduled,
        ModificationType.meeting_cancelled,
        ModificationType.meeting_cancelled,
    ]


def test_archive_cancel_of_other_meeting_keeps_top_level_pair() -> None:
    record = _record()
    apply_meeting_scheduled(record, _meeting(1), customer_code="hts", user_id="b", archive=True)
    apply_meeting_scheduled(record, _meeting(2), customer_code="cds", user_id="b", archive=True)

    apply_meeting_cancelled(record, customer_code="hts", meeting_id="evt-1", user_id="b", archive=True)

    assert record.meeting_id == "evt-2"
    assert set(record.customer_meetings) == {"cds"}


def test_latest_scheduled_meeting_skips_cancelled() -> None:
    record = _record()
    apply_meeting_scheduled(record, _meeting(1), customer_code="hts", user_id="b")
    apply_meeting_scheduled(record, _meeting(2), customer_code="hts", user_id="b")
    record.meeting_metadata = None

    assert record.latest_scheduled_meeting("hts").meeting_id == "evt-2"
    assert record.latest_scheduled_meeting("cds") is None

    apply_meeting_cancelled(record, customer_code="hts", meeting_id="evt-2", user_id="b")
    assert record.latest_scheduled_meeting("hts").meeting_id == "evt-1"


def test_modification_entry_requires_user() -> None:
    with pytest.raises(ValidationError):
        new_modification_entry(ModificationType.meeting_cancelled, " ")
    with pytest.raises(ValidationError):
        new_modification_entry(ModificationType.meeting_scheduled, "backend")
