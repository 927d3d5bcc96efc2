"""
Адаптер Microsoft Graph (Teams meetings).

Назначение:
- client-credentials токен Azure AD
- создание события календаря организатора с Teams-встречей
- отмена события по id

Классификация ошибок:
- сетевые ошибки, таймауты, 408/425/429/5xx -> ProviderTransientError
- остальные 4xx, неразбираемый ответ, нет id/joinUrl -> ProviderTerminalError
"""

from __future__ import annotations

import threading
import time
from datetime import datetime
from typing import Any
from urllib.parse import quote

import requests

from change_meetings.common.config import parse_retry_statuses
from change_meetings.common.errors import (
    ProviderError,
    ProviderTerminalError,
    ProviderTransientError,
)
from change_meetings.common.logging import get_project_logger
from change_meetings.connectors.base import CreatedMeeting, MeetingProvider

log = get_project_logger()

GRAPH_SCOPE = "https://graph.microsoft.com/.default"
GRAPH_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%S.0000000"
_TOKEN_SKEW_SEC = 60


def format_graph_datetime(value: datetime) -> str:
    return value.replace(tzinfo=None).strftime(GRAPH_DATETIME_FORMAT)


def build_event_payload(
    *,
    organizer_email: str,
    recipients: list[str],
    subject: str,
    body_html: str,
    start: datetime,
    end: datetime,
    timezone: str,
    location: str | None = None,
    transaction_id: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "subject": subject,
        "body": {"contentType": "HTML", "content": body_html},
        "start": {"dateTime": format_graph_datetime(start), "timeZone": timezone},
        "end": {"dateTime": format_graph_datetime(end), "timeZone": timezone},
        "attendees": [
            {"emailAddress": {"address": email, "name": email}, "type": "required"}
            for email in recipients
        ],
        "organizer": {"emailAddress": {"address": organizer_email}},
        "isOnlineMeeting": True,
        "onlineMeetingProvider": "teamsForBusiness",
    }
    if location:
        payload["location"] = {"displayName": location}
    if transaction_id:
        # Graph не создаёт второе событие с тем же transactionId при повторе POST
        payload["transactionId"] = transaction_id
    return payload


class GraphMeetingProvider(MeetingProvider):
    name = "graph"

    def __init__(
        self,
        organizer_email: str,
        *,
        client_id: str | None,
        client_secret: str | None,
        tenant_id: str | None,
        api_base: str = "https://graph.microsoft.com/v1.0",
        login_base: str = "https://login.microsoftonline.com",
        timeout_sec: float = 30,
        retry_statuses: set[int] | str | None = None,
        http: Any = None,
    ) -> None:
        self.organizer_email = (organizer_email or "").strip()
        self.client_id = (client_id or "").strip()
        self.client_secret = (client_secret or "").strip()
        self.tenant_id = (tenant_id or "").strip()
        missing = [
            name
            for name, value in (
                ("organizer_email", self.organizer_email),
                ("AZURE_CLIENT_ID", self.client_id),
                ("AZURE_CLIENT_SECRET", self.client_secret),
                ("AZURE_TENANT_ID", self.tenant_id),
            )
            if not value
        ]
        if missing:
            raise ProviderTerminalError("Graph API не настроен", {"missing": missing})

        self.api_base = api_base.rstrip("/")
        self.login_base = login_base.rstrip("/")
        self.timeout_sec = float(timeout_sec)
        if isinstance(retry_statuses, str) or retry_statuses is None:
            retry_statuses = parse_retry_statuses(retry_statuses or "408,425,429,500,502,503,504")
        self.retry_statuses = set(retry_statuses)
        self._owns_http = http is None
        self.http = http if http is not None else requests.Session()

        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # HTTP
    # -------------------------------------------------------------------------
    def _timeout(self, timeout: float | None) -> float:
        if timeout is None:
            return self.timeout_sec
        return max(0.1, min(self.timeout_sec, float(timeout)))

    def _classify_status(self, status: int, what: str, body: str) -> ProviderError:
        details = {"status": status, "body": body[:300]}
        if status in self.retry_statuses or status >= 500:
            return ProviderTransientError(f"{what}: временная ошибка Graph API", details)
        return ProviderTerminalError(f"{what}: Graph API отклонил запрос", details)

    def _send(self, method: str, url: str, *, what: str, timeout: float | None, **kwargs: Any):
        try:
            return self.http.request(method, url, timeout=self._timeout(timeout), **kwargs)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise ProviderTransientError(f"{what}: Graph API недоступен", {"err": str(e)[:200]}) from e
        except requests.RequestException as e:
            raise ProviderTerminalError(f"{what}: ошибка запроса к Graph API", {"err": str(e)[:200]}) from e

    def _access_token(self, timeout: float | None) -> str:
        with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            url = f"{self.login_base}/{self.tenant_id}/oauth2/v2.0/token"
            resp = self._send(
                "POST",
                url,
                what="token",
                timeout=timeout,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "scope": GRAPH_SCOPE,
                    "grant_type": "client_credentials",
                },
            )
            if resp.status_code != 200:
                raise self._classify_status(resp.status_code, "token", resp.text or "")
            try:
                data = resp.json()
            except ValueError as e:
                raise ProviderTerminalError("token: неразбираемый ответ") from e
            token = (data or {}).get("access_token")
            if not token:
                raise ProviderTerminalError("token: в ответе нет access_token")

            expires_in = int(data.get("expires_in") or 3600)
            self._token = str(token)
            self._token_expires_at = time.monotonic() + max(0, expires_in - _TOKEN_SKEW_SEC)
            return self._token

    def _events_url(self, meeting_id: str | None = None) -> str:
        url = f"{self.api_base}/users/{quote(self.organizer_email)}/events"
        if meeting_id:
            url = f"{url}/{quote(meeting_id, safe='')}"
        return url

    def close(self) -> None:
        # внешний http-клиент закрывает тот, кто его передал
        if self._owns_http:
            self.http.close()

    # -------------------------------------------------------------------------
    # Контракт MeetingProvider
    # -------------------------------------------------------------------------
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
        payload = build_event_payload(
            organizer_email=self.organizer_email,
            recipients=recipients,
            subject=subject,
            body_html=body_html,
            start=start,
            end=end,
            timezone=timezone,
            location=location,
            transaction_id=transaction_id,
        )
        token = self._access_token(timeout)
        resp = self._send(
            "POST",
            self._events_url(),
            what="create",
            timeout=timeout,
            json=payload,
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
        )
        if resp.status_code not in (200, 201):
            raise self._classify_status(resp.status_code, "create", resp.text or "")

        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderTerminalError("create: неразбираемый ответ Graph API") from e
        if not isinstance(data, dict):
            raise ProviderTerminalError("create: неразбираемый ответ Graph API")

        meeting_id = str(data.get("id") or "")
        join_url = str(((data.get("onlineMeeting") or {}).get("joinUrl")) or "")
        if not meeting_id:
            raise ProviderTerminalError("create: в ответе нет id события")
        if not join_url:
            # событие создано, но без Teams-ссылки: убираем его, пара id/url неполная
            self._discard_incomplete(meeting_id, timeout)
            raise ProviderTerminalError(
                "create: в ответе нет onlineMeeting.joinUrl", {"meeting_id": meeting_id}
            )

        log.info(
            "graph_meeting_created",
            extra={
                "payload": {
                    "meeting_id": meeting_id,
                    "organizer": self.organizer_email,
                    "attendees": len(recipients),
                }
            },
        )
        return CreatedMeeting(meeting_id=meeting_id, join_url=join_url)

    def _discard_incomplete(self, meeting_id: str, timeout: float | None) -> None:
        try:
            self.cancel(meeting_id, timeout=timeout)
        except ProviderError as e:
            log.warning(
                "graph_incomplete_meeting_cleanup_failed",
                extra={"payload": {"meeting_id": meeting_id, "code": e.code, "err": e.message}},
            )

    def cancel(self, meeting_id: str, *, timeout: float | None = None) -> None:
        token = self._access_token(timeout)
        resp = self._send(
            "DELETE",
            self._events_url(meeting_id),
            what="cancel",
            timeout=timeout,
            headers={"Authorization": f"Bearer {token}"},
        )
        if resp.status_code == 404:
            log.info("graph_meeting_already_gone", extra={"payload": {"meeting_id": meeting_id}})
            return
        if resp.status_code not in (200, 202, 204):
            raise self._classify_status(resp.status_code, "cancel", resp.text or "")
        log.info("graph_meeting_cancelled", extra={"payload": {"meeting_id": meeting_id}})
