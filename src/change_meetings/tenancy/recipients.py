"""
Получатели приглашения для customer.

Порядок:
1) явный attendees в копии записи customer
2) подписчики топика в SES v2 contact list аккаунта customer (OPT_IN)
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from change_meetings.common.errors import RecipientsError
from change_meetings.common.logging import get_project_logger

from .credentials import CustomerSession

log = get_project_logger()


def normalize_recipients(emails: Iterable[Any]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for raw in emails:
        email = str(raw or "").strip().lower()
        if not email or "@" not in email or email in seen:
            continue
        seen.add(email)
        out.append(email)
    return out


def _account_contact_list(client: Any, customer_code: str) -> str:
    resp = client.list_contact_lists()
    lists = resp.get("ContactLists") or []
    if not lists:
        raise RecipientsError("В аккаунте customer нет SES contact list", {"customer_code": customer_code})
    # Аккаунт держит один основной список
    return str(lists[0]["ContactListName"])


def list_topic_subscribers(session: CustomerSession, topic_name: str) -> list[str]:
    code = session.customer_code
    try:
        client = session.client("sesv2")
        list_name = _account_contact_list(client, code)
        emails: list[str] = []
        token: str | None = None
        # paginator для sesv2 list_contacts в botocore нет
        while True:
            params: dict[str, Any] = {
                "ContactListName": list_name,
                "Filter": {
                    "FilteredStatus": "OPT_IN",
                    "TopicFilter": {"TopicName": topic_name},
                },
            }
            if token:
                params["NextToken"] = token
            resp = client.list_contacts(**params)
            for contact in resp.get("Contacts") or []:
                if contact.get("EmailAddress"):
                    emails.append(contact["EmailAddress"])
            token = resp.get("NextToken")
            if not token:
                break
    except (BotoCoreError, ClientError) as e:
        raise RecipientsError(
            "Не удалось получить подписчиков топика",
            {"customer_code": code, "topic": topic_name, "err": str(e)[:200]},
        ) from e

    log.info(
        "topic_subscribers_listed",
        extra={"payload": {"customer_code": code, "topic": topic_name, "count": len(emails)}},
    )
    return emails


def resolve_recipients(
    session: CustomerSession,
    topic_name: str,
    *,
    explicit: Iterable[Any] | None = None,
) -> list[str]:
    if explicit:
        attendees = normalize_recipients(explicit)
        if attendees:
            return attendees
    return normalize_recipients(list_topic_subscribers(session, topic_name))
