"""
Доменные перечисления (enum).

Используются во всей системе:
- типы записей журнала изменений
- исходы per-customer операций
"""

from __future__ import annotations

import enum


class ModificationType(str, enum.Enum):
    """
    Тип записи в журнале modifications.
    """

    meeting_scheduled = "meeting_scheduled"
    meeting_cancelled = "meeting_cancelled"
    processed = "processed"


class OperationKind(str, enum.Enum):
    create = "create"
    cancel = "cancel"


class OutcomeAction(str, enum.Enum):
    """
    Что произошло с конкретным customer в рамках батча.
    """

    created = "created"
    skipped = "skipped"
    cancelled = "cancelled"
    dry_run = "dry_run"
    not_required = "not_required"
    no_recipients = "no_recipients"
    nothing_to_cancel = "nothing_to_cancel"
    failed = "failed"
