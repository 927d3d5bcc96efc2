"""
Хранилище метаданных изменений.

Назначение:
- чтение/запись ChangeRecord целиком (одна JSON-запись = один объект)
- раскладка ключей: customers/<code>/<changeId>.json и archive/<changeId>.json
- update = read(etag) -> mutate -> conditional write, с повтором при конфликте ETag

Бэкенды:
- s3: boto3, PutObject с If-Match (оптимистическая блокировка)
- local_fs: временный файл + os.replace, ETag = sha256 содержимого
"""

from __future__ import annotations

import hashlib
import json
import os
import re
import tempfile
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import boto3
import pydantic
from botocore.exceptions import BotoCoreError, ClientError

from change_meetings.common.config import Settings, get_settings
from change_meetings.common.errors import (
    MalformedRecordError,
    NotFoundError,
    StoreConflictError,
    StoreError,
    StoreInitError,
    StoreReadError,
    StoreWriteError,
    ValidationError,
)
from change_meetings.common.logging import get_project_logger, log_critical
from change_meetings.common.metrics import STORE_FAILURES_TOTAL
from change_meetings.domain.models import ChangeRecord

log = get_project_logger()

CUSTOMERS_PREFIX = "customers"
ARCHIVE_PREFIX = "archive"

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_CUSTOMER_KEY_RE = re.compile(rf"^{CUSTOMERS_PREFIX}/([^/]+)/([^/]+)\.json$")
_ARCHIVE_KEY_RE = re.compile(rf"^{ARCHIVE_PREFIX}/([^/]+)\.json$")


def _check_segment(value: str, what: str) -> str:
    value = (value or "").strip()
    if not value or not _SEGMENT_RE.match(value) or ".." in value:
        raise ValidationError(f"Некорректный {what} для ключа хранилища", {what: value})
    return value


# =============================================================================
# Адресация
# =============================================================================
@dataclass(frozen=True)
class MetadataLocation:
    key: str
    change_id: str
    customer_code: str | None = None

    @property
    def is_archive(self) -> bool:
        return self.customer_code is None

    @classmethod
    def customer(cls, code: str, change_id: str) -> MetadataLocation:
        code = _check_segment(code, "customer_code")
        change_id = _check_segment(change_id, "change_id")
        return cls(
            key=f"{CUSTOMERS_PREFIX}/{code}/{change_id}.json",
            change_id=change_id,
            customer_code=code,
        )

    @classmethod
    def archive(cls, change_id: str) -> MetadataLocation:
        change_id = _check_segment(change_id, "change_id")
        return cls(key=f"{ARCHIVE_PREFIX}/{change_id}.json", change_id=change_id)

    @classmethod
    def parse(cls, ref: str) -> MetadataLocation:
        """
        Принимает change id (-> архив) или ключ хранилища
        (archive/<id>.json, customers/<code>/<id>.json).
        """
        raw = (ref or "").strip().lstrip("/")
        if not raw:
            raise ValidationError("Пустая ссылка на метаданные")
        if raw.startswith("s3://"):
            # s3://bucket/key -> key
            raw = raw[len("s3://") :].partition("/")[2]

        m = _CUSTOMER_KEY_RE.match(raw)
        if m:
            return cls.customer(m.group(1), m.group(2))
        m = _ARCHIVE_KEY_RE.match(raw)
        if m:
            return cls.archive(m.group(1))
        if "/" in raw:
            raise ValidationError("Неизвестный формат ключа метаданных", {"ref": raw})
        if raw.endswith(".json"):
            raw = raw[: -len(".json")]
        return cls.archive(raw)


@dataclass(frozen=True)
class StoredRecord:
    record: ChangeRecord
    etag: str | None


Mutator = Callable[[ChangeRecord], ChangeRecord]


class MetadataStore(Protocol):
    """
    Контракт хранилища метаданных.
    """

    def read(self, location: MetadataLocation) -> ChangeRecord: ...

    def read_with_etag(self, location: MetadataLocation) -> StoredRecord: ...

    def write(
        self,
        location: MetadataLocation,
        record: ChangeRecord,
        *,
        expected_etag: str | None = None,
    ) -> str | None: ...

    def update(self, location: MetadataLocation, mutate: Mutator) -> ChangeRecord: ...


# =============================================================================
# Общая часть
# =============================================================================
def encode_record(record: ChangeRecord) -> bytes:
    return json.dumps(record.to_json_dict(), ensure_ascii=False, indent=2).encode("utf-8")


def decode_record(raw: bytes, location: MetadataLocation) -> ChangeRecord:
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedRecordError(
            "Метаданные изменения не являются JSON",
            {"location": location.key, "err": str(e)[:200]},
        ) from e
    if not isinstance(data, dict):
        raise MalformedRecordError(
            "Метаданные изменения должны быть JSON-объектом", {"location": location.key}
        )
    try:
        return ChangeRecord.from_json_dict(data)
    except pydantic.ValidationError as e:
        raise MalformedRecordError(
            "Метаданные изменения не прошли валидацию",
            {"location": location.key, "errors": e.errors(include_url=False)[:5]},
        ) from e


class _BaseMetadataStore:
    def __init__(
        self,
        *,
        max_retries: int = 3,
        backoff_ms: int = 100,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.max_retries = max(0, int(max_retries))
        self.backoff_ms = max(0, int(backoff_ms))
        self._sleep = sleep

    def read_with_etag(self, location: MetadataLocation) -> StoredRecord:  # pragma: no cover
        raise NotImplementedError

    def write(
        self,
        location: MetadataLocation,
        record: ChangeRecord,
        *,
        expected_etag: str | None = None,
    ) -> str | None:  # pragma: no cover
        raise NotImplementedError

    def read(self, location: MetadataLocation) -> ChangeRecord:
        return self.read_with_etag(location).record

    def update(self, location: MetadataLocation, mutate: Mutator) -> ChangeRecord:
        """
        Перечитывает запись, применяет mutate и пишет с проверкой ETag.
        Конфликт или временная ошибка -> повтор с backoff (100ms * 2^n).
        Любой окончательный отказ -> StoreWriteError.
        """
        last_err: StoreError | None = None
        attempts = self.max_retries + 1

        for attempt in range(attempts):
            if attempt > 0:
                delay_ms = self.backoff_ms * (2 ** (attempt - 1))
                log.warning(
                    "metadata_store_update_retry",
                    extra={
                        "payload": {
                            "location": location.key,
                            "attempt": attempt + 1,
                            "delay_ms": delay_ms,
                            "err": str(last_err)[:200] if last_err else None,
                        }
                    },
                )
                self._sleep(delay_ms / 1000.0)

            try:
                stored = self.read_with_etag(location)
            except (NotFoundError, MalformedRecordError) as e:
                raise StoreWriteError(
                    "Запись для обновления недоступна",
                    {"location": location.key, "change_id": location.change_id, "cause": e.code},
                ) from e
            except StoreReadError as e:
                if not e.retryable:
                    raise StoreWriteError(
                        "Ошибка чтения перед обновлением",
                        {"location": location.key, "change_id": location.change_id},
                    ) from e
                last_err = e
                continue

            record = mutate(stored.record)
            try:
                self.write(location, record, expected_etag=stored.etag)
                return record
            except StoreConflictError as e:
                last_err = e
            except StoreWriteError as e:
                if not e.retryable:
                    raise
                last_err = e

        raise StoreWriteError(
            "Не удалось обновить запись после повторов",
            {
                "location": location.key,
                "change_id": location.change_id,
                "attempts": attempts,
                "last_error": last_err.code if last_err else None,
            },
        ) from last_err


# =============================================================================
# S3
# =============================================================================
_S3_NOT_FOUND = {"NoSuchKey", "NoSuchBucket", "NotFound", "404"}
_S3_DENIED = {"AccessDenied", "Forbidden", "403", "InvalidAccessKeyId", "ExpiredToken"}
_S3_THROTTLED = {
    "SlowDown",
    "RequestLimitExceeded",
    "ServiceUnavailable",
    "Throttling",
    "ThrottlingException",
    "RequestTimeout",
    "InternalError",
}


def classify_s3_error(err: Exception) -> tuple[str, bool]:
    """
    (kind, retryable): not_found/access_denied: окончательные,
    conflict/throttled/network: временные. Неизвестные ошибки считаются временными.
    """
    if isinstance(err, ClientError):
        error = err.response.get("Error") or {}
        code = str(error.get("Code") or "")
        status = int((err.response.get("ResponseMetadata") or {}).get("HTTPStatusCode") or 0)
        if code == "PreconditionFailed" or status == 412:
            return "conflict", True
        if code in _S3_NOT_FOUND or status == 404:
            return "not_found", False
        if code in _S3_DENIED or status == 403:
            return "access_denied", False
        if code in _S3_THROTTLED or status in (429, 503) or status >= 500:
            return "throttled", True
        return "unknown", True
    if isinstance(err, BotoCoreError):
        return "network", True
    return "unknown", False


class S3MetadataStore(_BaseMetadataStore):
    def __init__(
        self,
        bucket: str | None,
        *,
        client: Any = None,
        region: str | None = None,
        verify: bool = True,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.bucket = (bucket or "").strip()
        if not self.bucket:
            raise StoreInitError("METADATA_BUCKET не настроен")
        try:
            self.client = client if client is not None else boto3.client("s3", region_name=region)
            if verify:
                self.client.head_bucket(Bucket=self.bucket)
        except (BotoCoreError, ClientError, ValueError) as e:
            kind, _ = classify_s3_error(e)
            raise StoreInitError(
                "S3 хранилище метаданных недоступно",
                {"bucket": self.bucket, "kind": kind, "err": str(e)[:200]},
            ) from e

    def read_with_etag(self, location: MetadataLocation) -> StoredRecord:
        try:
            resp = self.client.get_object(Bucket=self.bucket, Key=location.key)
            raw = resp["Body"].read()
        except (BotoCoreError, ClientError) as e:
            kind, retryable = classify_s3_error(e)
            if kind == "not_found":
                raise NotFoundError(
                    "Метаданные изменения не найдены",
                    {"location": location.key, "bucket": self.bucket},
                ) from e
            raise StoreReadError(
                "Ошибка чтения метаданных из S3",
                {"location": location.key, "kind": kind, "err": str(e)[:200]},
                retryable=retryable,
            ) from e
        return StoredRecord(record=decode_record(raw, location), etag=resp.get("ETag"))

    def write(
        self,
        location: MetadataLocation,
        record: ChangeRecord,
        *,
        expected_etag: str | None = None,
    ) -> str | None:
        params: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": location.key,
            "Body": encode_record(record),
            "ContentType": "application/json",
        }
        if expected_etag:
            params["IfMatch"] = expected_etag
        try:
            resp = self.client.put_object(**params)
        except (BotoCoreError, ClientError) as e:
            kind, retryable = classify_s3_error(e)
            details = {
                "location": location.key,
                "change_id": location.change_id,
                "kind": kind,
                "err": str(e)[:200],
            }
            if kind == "conflict":
                raise StoreConflictError("ETag изменился, запись перезаписана другим процессом", details) from e
            raise StoreWriteError("Ошибка записи метаданных в S3", details, retryable=retryable) from e
        return resp.get("ETag")


# =============================================================================
# Local FS
# =============================================================================
class LocalFsMetadataStore(_BaseMetadataStore):
    def __init__(self, base_dir: str | os.PathLike[str], **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.base_dir = Path(base_dir).resolve()
        self._lock = threading.Lock()
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreInitError(
                "Каталог метаданных недоступен", {"dir": str(self.base_dir), "err": str(e)[:200]}
            ) from e
        if not os.access(self.base_dir, os.W_OK):
            raise StoreInitError("Каталог метаданных недоступен на запись", {"dir": str(self.base_dir)})

    def _path(self, location: MetadataLocation) -> Path:
        # защита от path traversal
        key = location.key.lstrip("/")
        if ".." in key.split("/"):
            raise ValidationError("invalid key", {"location": key})
        return self.base_dir / key

    @staticmethod
    def _etag(raw: bytes) -> str:
        return hashlib.sha256(raw).hexdigest()

    def read_with_etag(self, location: MetadataLocation) -> StoredRecord:
        path = self._path(location)
        try:
            raw = path.read_bytes()
        except FileNotFoundError as e:
            raise NotFoundError("Метаданные изменения не найдены", {"location": location.key}) from e
        except OSError as e:
            raise StoreReadError(
                "Ошибка чтения метаданных", {"location": location.key, "err": str(e)[:200]}
            ) from e
        return StoredRecord(record=decode_record(raw, location), etag=self._etag(raw))

    def write(
        self,
        location: MetadataLocation,
        record: ChangeRecord,
        *,
        expected_etag: str | None = None,
    ) -> str | None:
        path = self._path(location)
        body = encode_record(record)
        details = {"location": location.key, "change_id": location.change_id}

        with self._lock:
            if expected_etag is not None:
                try:
                    current = self._etag(path.read_bytes())
                except FileNotFoundError:
                    current = None
                if current != expected_etag:
                    raise StoreConflictError("ETag изменился, запись перезаписана другим процессом", details)

            tmp_name: str | None = None
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with tempfile.NamedTemporaryFile(
                    mode="wb", dir=path.parent, prefix=f".{path.name}.", delete=False
                ) as tmp:
                    tmp_name = tmp.name
                    tmp.write(body)
                    tmp.flush()
                    os.fsync(tmp.fileno())
                os.replace(tmp_name, path)
                tmp_name = None
            except OSError as e:
                raise StoreWriteError(
                    "Ошибка записи метаданных", {**details, "err": str(e)[:200]}
                ) from e
            finally:
                if tmp_name is not None:
                    Path(tmp_name).unlink(missing_ok=True)

        return self._etag(body)


# =============================================================================
# Фабрика
# =============================================================================
def build_metadata_store(settings: Settings | None = None, *, s3_client: Any = None) -> MetadataStore:
    """
    Рабочее хранилище или StoreInitError (с CRITICAL-логом).
    """
    s = settings or get_settings()
    mode = (s.metadata_store_mode or "").strip().lower()
    retry_kwargs = {
        "max_retries": s.store_update_max_retries,
        "backoff_ms": s.store_update_backoff_ms,
    }
    try:
        if mode == "s3":
            return S3MetadataStore(
                s.metadata_bucket, client=s3_client, region=s.aws_region, **retry_kwargs
            )
        if mode == "local_fs":
            return LocalFsMetadataStore(s.metadata_local_dir, **retry_kwargs)
        raise StoreInitError(f"Unsupported METADATA_STORE_MODE={mode}")
    except StoreInitError as e:
        STORE_FAILURES_TOTAL.labels(kind="init").inc()
        log_critical(
            "CRITICAL_STORE_INIT_FAILED",
            {"mode": mode, "code": e.code, "message": e.message, "details": e.details},
        )
        raise
