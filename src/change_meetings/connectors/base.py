"""
Базовые интерфейсы коннекторов (интеграции с внешними системами).

Назначение:
- стандартизировать адаптеры к календарным API (создание/отмена встреч)
- отделить "как создаём встречу" от "что пишем в метаданные"
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol


@dataclass(frozen=True)
class CreatedMeeting:
    """
    Результат создания встречи. meeting_id и join_url всегда вместе.
    """

    meeting_id: str
    join_url: str


class MeetingProvider(Protocol):
    """
    Контракт провайдера встреч.
    """

    name: str

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
        """
        Создать встречу и вернуть её id и ссылку подключения.
        Повтор с тем же transaction_id не должен создавать вторую встречу.
        """
        ...

    def cancel(self, meeting_id: str, *, timeout: float | None = None) -> None:
        """Отменить встречу. Уже удалённая встреча считается отменённой."""
        ...
