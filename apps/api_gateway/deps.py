"""
FastAPI Depends.

Сюда выносим:
- сборку оркестратора (один экземпляр на процесс)
"""

from __future__ import annotations

import threading

from change_meetings.common.logging import get_project_logger
from change_meetings.services.orchestrator import MeetingOrchestrator, build_orchestrator

log = get_project_logger()

_ORCHESTRATOR: MeetingOrchestrator | None = None
_ORCHESTRATOR_LOCK = threading.Lock()


def get_orchestrator() -> MeetingOrchestrator:
    """
    Ленивая сборка: ошибка инициализации хранилища/резолвера
    пробрасывается на каждый запрос, пока не будет исправлена конфигурация.
    """
    global _ORCHESTRATOR
    with _ORCHESTRATOR_LOCK:
        if _ORCHESTRATOR is None:
            _ORCHESTRATOR = build_orchestrator()
            log.info("orchestrator_ready")
        return _ORCHESTRATOR
