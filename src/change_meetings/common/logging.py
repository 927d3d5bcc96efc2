"""
Логирование проекта.

- логирование в stdout (json|text)
- отдельный логгер для критических ошибок (store/resolver init, потеря записи),
  чтобы их можно было грепать отдельно от штатных per-customer отказов
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from change_meetings.common.config import get_settings

CRITICAL_LOGGER_NAME = "change-meetings.critical"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        extra_payload = getattr(record, "payload", None)
        if isinstance(extra_payload, dict):
            payload["payload"] = extra_payload
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def _build_formatter() -> logging.Formatter:
    s = get_settings()
    if (s.log_format or "").lower() == "text":
        return logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    return JsonFormatter()


def setup_logging() -> None:
    s = get_settings()
    root = logging.getLogger()
    level = getattr(logging, (s.log_level or "INFO").upper(), logging.INFO)
    root.setLevel(level)

    # Не плодим хэндлеры при повторном вызове
    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(_build_formatter())
    root.addHandler(handler)

    logging.getLogger("botocore").setLevel(max(level, logging.WARNING))
    logging.getLogger("uvicorn.error").setLevel(level)
    logging.getLogger("uvicorn.access").setLevel(level)


def get_project_logger(name: str = "change-meetings") -> logging.Logger:
    return logging.getLogger(name)


def get_critical_logger() -> logging.Logger:
    """
    Отдельный логгер для критического класса ошибок.
    События пишутся уровнем CRITICAL с префиксом CRITICAL_.
    """
    return logging.getLogger(CRITICAL_LOGGER_NAME)


def log_critical(event: str, payload: dict[str, Any]) -> None:
    name = event if event.startswith("CRITICAL_") else f"CRITICAL_{event.upper()}"
    get_critical_logger().critical(name, extra={"payload": payload})
