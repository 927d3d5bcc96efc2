"""
Mock-провайдер встреч для dev/тестов.

Назначение:
- позволить гонять оркестрацию без Azure AD и Graph API
- повтор create с тем же transaction_id возвращает ту же встречу (как Graph)
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime

from change_meetings.connectors.base import CreatedMeeting, MeetingProvider


class MockMeetingProvider(MeetingProvider):
    name = "mock"

    def __init__(self, organizer_email: str = "mock-organizer@example.com") -> None:
        self.organizer_email = organizer_email
        self.meetings: dict[str, dict] = {}
        self._by_transaction: dict[str, str] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _created(meeting_id: str) -> CreatedMeeting:
        return CreatedMeeting(
            meeting_id=meeting_id,
            join_url=f"https://teams.microsoft.com/l/meetup-join/{meeting_id}",
        )

    def create(
        self,
        *,
        recipients: list[str],
        subject: str,
        body_html: str,
        start: datetime,
        end: datetime,
        timezone: str,
        location: str | None = None,
        transaction_id: str | None = None,
        timeout: float | None = None,
    ) -> CreatedMeeting:
        _ = body_html, timeout
        with self._lock:
            existing = self._by_transaction.get(transaction_id) if transaction_id else None
            if existing and existing in self.meetings:
                return self._created(existing)

            meeting_id = f"mock-{uuid.uuid4().hex}"
            self.meetings[meeting_id] = {
                "subject": subject,
                "recipients": list(recipients),
                "start": start.isoformat(),
                "end": end.isoformat(),
                "timezone": timezone,
                "location": location,
                "transaction_id": transaction_id,
            }
            if transaction_id:
                self._by_transaction[transaction_id] = meeting_id
        return self._created(meeting_id)

    def cancel(self, meeting_id: str, *, timeout: float | None = None) -> None:
        _ = timeout
        with self._lock:
            self.meetings.pop(meeting_id, None)
