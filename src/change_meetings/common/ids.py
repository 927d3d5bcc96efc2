"""
Генерация идентификаторов.

Назначение:
- change_id изменений (CHG-<UTCYYYYMMDDHHMMSS>-<rand>)
- session name для STS AssumeRole
- transactionId событий провайдера встреч (идемпотентный create)
"""

from __future__ import annotations

import re
import secrets
import uuid
from datetime import UTC, datetime

CHANGE_ID_RE = re.compile(r"^CHG-[0-9A-Za-z]+-[0-9A-Za-z]+$")


def new_change_id(prefix: str = "CHG") -> str:
    """
    Идентификатор изменения.
    Формат: <prefix>-<UTCYYYYMMDDHHMMSS>-<rand>
    """
    ts = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
    rnd = secrets.token_hex(4)
    return f"{prefix}-{ts}-{rnd}"


def is_change_id(value: str) -> bool:
    return bool(CHANGE_ID_RE.match((value or "").strip()))


def new_role_session_name(customer_code: str) -> str:
    # STS допускает до 64 символов [\w+=,.@-]
    ts = int(datetime.now(UTC).timestamp())
    return f"change-meetings-{customer_code}-{ts}"[:64]


def new_meeting_transaction_id(change_id: str, customer_code: str, generation: int) -> str:
    """
    Стабильный transactionId события Graph.
    Повтор create того же поколения встречи даёт тот же id (провайдер не создаёт дубль);
    force_update увеличивает generation и получает новый id.
    """
    name = f"change-meetings:{change_id}:{customer_code}:{generation}"
    return str(uuid.uuid5(uuid.NAMESPACE_URL, name))
