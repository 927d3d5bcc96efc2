"""
Блокировка операций над одним изменением.

Назначение:
- не допустить параллельную оркестрацию одного changeId (create/cancel)
- inline: блокировка в памяти процесса (dev/тесты)
- redis: SET NX EX с токеном владельца (несколько процессов/инстансов)
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Protocol
from uuid import uuid4

import redis

from change_meetings.common.config import Settings, get_settings
from change_meetings.common.errors import OperationLockedError
from change_meetings.common.logging import get_project_logger

log = get_project_logger()

_OP_LOCK_KEY_PREFIX = "change-meetings:op-lock:"


class OperationLock(Protocol):
    def acquire(self, change_id: str, token: str) -> bool: ...

    def release(self, change_id: str, token: str) -> None: ...


class InlineOperationLock:
    def __init__(self) -> None:
        self._owners: dict[str, str] = {}
        self._mu = threading.Lock()

    def acquire(self, change_id: str, token: str) -> bool:
        with self._mu:
            if change_id in self._owners:
                return False
            self._owners[change_id] = token
            return True

    def release(self, change_id: str, token: str) -> None:
        with self._mu:
            if self._owners.get(change_id) == token:
                del self._owners[change_id]


class RedisOperationLock:
    def __init__(self, client: Any, *, ttl_sec: int = 300) -> None:
        self.client = client
        self.ttl_sec = max(10, int(ttl_sec))

    @staticmethod
    def _key(change_id: str) -> str:
        return f"{_OP_LOCK_KEY_PREFIX}{change_id}"

    def acquire(self, change_id: str, token: str) -> bool:
        return bool(self.client.set(self._key(change_id), token, nx=True, ex=self.ttl_sec))

    def release(self, change_id: str, token: str) -> None:
        key = self._key(change_id)
        current = self.client.get(key)
        if current == token:
            self.client.delete(key)


def build_operation_lock(settings: Settings | None = None) -> OperationLock:
    s = settings or get_settings()
    mode = (s.lock_mode or "inline").strip().lower()
    if mode == "redis":
        client = redis.Redis.from_url(s.redis_url, decode_responses=True)
        return RedisOperationLock(client, ttl_sec=s.change_op_lock_ttl_sec)
    return InlineOperationLock()


@contextmanager
def change_operation_lock(lock: OperationLock, *, change_id: str, operation: str) -> Iterator[None]:
    token = uuid4().hex
    if not lock.acquire(change_id, token):
        raise OperationLockedError(
            "Операция уже выполняется для изменения",
            details={"change_id": change_id, "operation": operation},
        )
    try:
        yield
    finally:
        try:
            lock.release(change_id, token)
        except redis.RedisError as e:
            # ключ истечёт по TTL
            log.warning(
                "change_op_lock_release_failed",
                extra={
                    "payload": {
                        "change_id": change_id,
                        "operation": operation,
                        "error": str(e)[:200],
                    }
                },
            )
