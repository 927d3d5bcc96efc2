"""
Утилиты времени.

Назначение:
- единый формат времени (ISO UTC)
- разбор ISO-8601 таймстампов из метаданных изменений
"""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    """
    Текущее время в UTC (datetime).
    """
    return datetime.now(UTC)


def utc_now_iso() -> str:
    """
    Текущее время в UTC в ISO формате.
    """
    return utc_now().isoformat()


def parse_iso(value: str | None) -> datetime | None:
    """
    Разбор ISO-8601 (в т.ч. с суффиксом Z). Пустое/некорректное -> None.
    """
    raw = (value or "").strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None
