from __future__ import annotations

from change_meetings.common.config import Settings, get_settings
from change_meetings.common.errors import ProviderTerminalError
from change_meetings.connectors.base import MeetingProvider
from change_meetings.connectors.graph.adapter import GraphMeetingProvider
from change_meetings.connectors.graph.mock import MockMeetingProvider


def build_meeting_provider(organizer_email: str, settings: Settings | None = None) -> MeetingProvider:
    s = settings or get_settings()
    provider = (s.meeting_provider or "graph").strip().lower()
    if provider == "graph":
        return GraphMeetingProvider(
            organizer_email,
            client_id=s.azure_client_id,
            client_secret=s.azure_client_secret,
            tenant_id=s.azure_tenant_id,
            api_base=s.graph_api_base,
            login_base=s.graph_login_base,
            timeout_sec=s.graph_timeout_sec,
            retry_statuses=s.provider_retry_statuses,
        )
    if provider == "mock":
        return MockMeetingProvider(organizer_email)
    raise ProviderTerminalError(
        f"Неизвестный provider: {provider}",
        details={"allowed": "graph,mock"},
    )
