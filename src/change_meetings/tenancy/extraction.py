"""
Извлечение и нормализация customer codes.

Customer code: strip().lower(), 2–20 символов [a-z0-9-], без '-' в начале и в конце.
Используется как ключ учётных данных и как сегмент пути в хранилище.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Any

from change_meetings.common.errors import ValidationError
from change_meetings.domain.models import ChangeRecord

CUSTOMER_CODE_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,18}[a-z0-9])$")

# Поля, в которых встречаются коды клиентов (в порядке приоритета)
_CODE_FIELDS = ("customers", "customerCodes", "customer_codes", "affectedCustomers")
_NESTED_FIELD = "changeMetadata"


def normalize_customer_code(code: str) -> str:
    return str(code or "").strip().lower()


def is_valid_customer_code(code: str) -> bool:
    return bool(CUSTOMER_CODE_RE.match(code or ""))


def normalize_customer_codes(codes: Iterable[Any]) -> list[str]:
    """
    Нормализация + удаление дублей с сохранением порядка.
    Пустые значения пропускаются, некорректные -> ValidationError.
    """
    out: list[str] = []
    seen: set[str] = set()
    invalid: list[str] = []
    for raw in codes:
        code = normalize_customer_code(raw)
        if not code:
            continue
        if not is_valid_customer_code(code):
            invalid.append(code)
            continue
        if code in seen:
            continue
        seen.add(code)
        out.append(code)
    if invalid:
        raise ValidationError(
            "Найдены некорректные customer codes",
            {"invalid": invalid, "valid": out},
        )
    return out


def parse_customer_codes_arg(raw: str | None) -> list[str]:
    """
    CSV из CLI/HTTP: "hts, htsnonprod" -> ["hts", "htsnonprod"].
    """
    if not raw:
        return []
    return normalize_customer_codes(part for part in raw.split(","))


def _collect(container: dict[str, Any]) -> list[Any]:
    found: list[Any] = []
    for field in _CODE_FIELDS:
        value = container.get(field)
        if isinstance(value, str):
            found.extend(value.split(","))
        elif isinstance(value, list):
            found.extend(v for v in value if isinstance(v, str))
    return found


def extract_customer_codes(metadata: ChangeRecord | dict[str, Any] | None) -> list[str]:
    """
    Все customer codes, упомянутые в метаданных изменения.
    Пустой результат -> ValidationError.
    """
    if metadata is None:
        raise ValidationError("Метаданные изменения не переданы")
    data = metadata.to_json_dict() if isinstance(metadata, ChangeRecord) else metadata
    if not isinstance(data, dict):
        raise ValidationError("Метаданные изменения должны быть JSON-объектом")

    found = _collect(data)
    nested = data.get(_NESTED_FIELD)
    if isinstance(nested, dict):
        found.extend(_collect(nested))

    codes = normalize_customer_codes(found)
    if not codes:
        raise ValidationError("В метаданных изменения нет customer codes")
    return codes
