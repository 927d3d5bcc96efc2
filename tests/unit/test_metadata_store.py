from __future__ import annotations

import io
import logging

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from change_meetings.common.config import get_settings
from change_meetings.common.errors import (
    MalformedRecordError,
    NotFoundError,
    StoreConflictError,
    StoreInitError,
    StoreWriteError,
    ValidationError,
)
from change_meetings.common.logging import CRITICAL_LOGGER_NAME
from change_meetings.domain.models import ChangeRecord
from change_meetings.storage.metadata_store import (
    LocalFsMetadataStore,
    MetadataLocation,
    S3MetadataStore,
    build_metadata_store,
    classify_s3_error,
    encode_record,
)

CHANGE_ID = "CHG-20250115120000-ab12cd34"


def _client_error(code: str, status: int, op: str = "PutObject") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        op,
    )


class _FakeS3:
    """
    Минимальный S3 с ETag и If-Match.
    """

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.etags: dict[str, str] = {}
        self.put_errors: list[Exception] = []
        self.puts = 0
        self.head_error: Exception | None = None
        self._seq = 0

    def head_bucket(self, Bucket: str) -> dict:
        if self.head_error:
            raise self.head_error
        return {}

    def get_object(self, Bucket: str, Key: str) -> dict:
        if Key not in self.objects:
            raise _client_error("NoSuchKey", 404, "GetObject")
        return {"Body": io.BytesIO(self.objects[Key]), "ETag": self.etags[Key]}

    def put_object(self, Bucket: str, Key: str, Body: bytes, ContentType: str, IfMatch=None) -> dict:
        self.puts += 1
        if self.put_errors:
            raise self.put_errors.pop(0)
        if IfMatch is not None and self.etags.get(Key) != IfMatch:
            raise _client_error("PreconditionFailed", 412)
        self._seq += 1
        self.objects[Key] = Body
        self.etags[Key] = f'"etag-{self._seq}"'
        return {"ETag": self.etags[Key]}


def _record(**extra) -> ChangeRecord:
    return ChangeRecord.model_validate({"changeId": CHANGE_ID, "customers": ["hts"], **extra})


def _no_sleep(_: float) -> None:
    return None


# =============================================================================
# Адресация
# =============================================================================
def test_location_layout() -> None:
    assert MetadataLocation.customer("hts", CHANGE_ID).key == f"customers/hts/{CHANGE_ID}.json"
    assert MetadataLocation.archive(CHANGE_ID).key == f"archive/{CHANGE_ID}.json"


@pytest.mark.parametrize(
    ("ref", "key", "customer"),
    [
        (CHANGE_ID, f"archive/{CHANGE_ID}.json", None),
        (f"{CHANGE_ID}.json", f"archive/{CHANGE_ID}.json", None),
        (f"archive/{CHANGE_ID}.json", f"archive/{CHANGE_ID}.json", None),
        (f"customers/hts/{CHANGE_ID}.json", f"customers/hts/{CHANGE_ID}.json", "hts"),
        (f"s3://bucket/customers/cds/{CHANGE_ID}.json", f"customers/cds/{CHANGE_ID}.json", "cds"),
    ],
)
def test_location_parse(ref: str, key: str, customer: str | None) -> None:
    loc = MetadataLocation.parse(ref)
    assert loc.key == key
    assert loc.change_id == CHANGE_ID
    assert loc.customer_code == customer


@pytest.mark.parametrize("ref", ["", "other/prefix/x.json", "../etc/passwd", "customers/../x.json"])
def test_location_parse_rejects_unknown_refs(ref: str) -> None:
    with pytest.raises(ValidationError):
        MetadataLocation.parse(ref)


# =============================================================================
# Local FS
# =============================================================================
def test_local_fs_write_read_preserves_unknown_fields(tmp_path) -> None:
    store = LocalFsMetadataStore(tmp_path)
    loc = MetadataLocation.archive(CHANGE_ID)
    store.write(loc, _record(approvedBy="jane@example.com"))

    assert (tmp_path / loc.key).exists()
    record = store.read(loc)
    assert record.to_json_dict()["approvedBy"] == "jane@example.com"


def test_local_fs_missing_and_malformed(tmp_path) -> None:
    store = LocalFsMetadataStore(tmp_path)
    loc = MetadataLocation.archive(CHANGE_ID)
    with pytest.raises(NotFoundError):
        store.read(loc)

    (tmp_path / "archive").mkdir()
    (tmp_path / loc.key).write_text("{not json", encoding="utf-8")
    with pytest.raises(MalformedRecordError):
        store.read(loc)

    (tmp_path / loc.key).write_text('{"customers": []}', encoding="utf-8")
    with pytest.raises(MalformedRecordError):
        store.read(loc)


def test_local_fs_conditional_write_detects_conflict(tmp_path) -> None:
    store = LocalFsMetadataStore(tmp_path)
    loc = MetadataLocation.archive(CHANGE_ID)
    store.write(loc, _record())
    stale = store.read_with_etag(loc).etag

    store.write(loc, _record(changeTitle="other writer"))
    with pytest.raises(StoreConflictError):
        store.write(loc, _record(), expected_etag=stale)


def test_update_retries_after_concurrent_write(tmp_path) -> None:
    sleeps: list[float] = []
    store = LocalFsMetadataStore(tmp_path, max_retries=3, backoff_ms=100, sleep=sleeps.append)
    loc = MetadataLocation.archive(CHANGE_ID)
    store.write(loc, _record())

    calls = {"n": 0}

    def mutate(record: ChangeRecord) -> ChangeRecord:
        calls["n"] += 1
        if calls["n"] == 1:
            # параллельный писатель успевает перезаписать объект
            store.write(loc, _record(changeTitle="concurrent"))
        record.change_reason = "patched"
        return record

    store.update(loc, mutate)

    saved = store.read(loc)
    assert calls["n"] == 2
    assert saved.change_title == "concurrent"
    assert saved.change_reason == "patched"
    assert sleeps == [0.1]


def test_update_of_missing_record_is_write_error(tmp_path) -> None:
    store = LocalFsMetadataStore(tmp_path)
    with pytest.raises(StoreWriteError) as exc:
        store.update(MetadataLocation.customer("hts", CHANGE_ID), lambda r: r)
    assert exc.value.details["cause"] == "not_found"


def test_local_fs_init_error_when_dir_is_file(tmp_path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("x", encoding="utf-8")
    with pytest.raises(StoreInitError):
        LocalFsMetadataStore(blocker / "nested")


# =============================================================================
# S3
# =============================================================================
def test_s3_read_write_with_etag() -> None:
    s3 = _FakeS3()
    store = S3MetadataStore("metadata", client=s3)
    loc = MetadataLocation.customer("hts", CHANGE_ID)

    etag = store.write(loc, _record())
    stored = store.read_with_etag(loc)
    assert stored.etag == etag
    assert stored.record.change_id == CHANGE_ID

    with pytest.raises(NotFoundError):
        store.read(MetadataLocation.customer("cds", CHANGE_ID))


def test_s3_update_retries_conflict_and_throttling() -> None:
    s3 = _FakeS3()
    sleeps: list[float] = []
    store = S3MetadataStore("metadata", client=s3, max_retries=3, backoff_ms=100, sleep=sleeps.append)
    loc = MetadataLocation.archive(CHANGE_ID)
    store.write(loc, _record())

    s3.put_errors = [_client_error("PreconditionFailed", 412), _client_error("SlowDown", 503)]
    store.update(loc, lambda r: r.model_copy(update={"change_reason": "patched"}))

    assert store.read(loc).change_reason == "patched"
    assert sleeps == [0.1, 0.2]


def test_s3_update_gives_up_after_retries() -> None:
    s3 = _FakeS3()
    store = S3MetadataStore("metadata", client=s3, max_retries=2, backoff_ms=0, sleep=_no_sleep)
    loc = MetadataLocation.archive(CHANGE_ID)
    store.write(loc, _record())
    s3.puts = 0

    s3.put_errors = [_client_error("PreconditionFailed", 412)] * 5
    with pytest.raises(StoreWriteError) as exc:
        store.update(loc, lambda r: r)
    assert exc.value.details["attempts"] == 3
    assert exc.value.details["last_error"] == "store_conflict"
    assert s3.puts == 3


def test_s3_access_denied_is_not_retried() -> None:
    s3 = _FakeS3()
    store = S3MetadataStore("metadata", client=s3, max_retries=3, backoff_ms=0, sleep=_no_sleep)
    loc = MetadataLocation.archive(CHANGE_ID)
    store.write(loc, _record())
    s3.puts = 0

    s3.put_errors = [_client_error("AccessDenied", 403)]
    with pytest.raises(StoreWriteError) as exc:
        store.update(loc, lambda r: r)
    assert exc.value.retryable is False
    assert exc.value.details["kind"] == "access_denied"
    assert s3.puts == 1


@pytest.mark.parametrize(
    ("err", "expected"),
    [
        (_client_error("PreconditionFailed", 412), ("conflict", True)),
        (_client_error("NoSuchKey", 404), ("not_found", False)),
        (_client_error("AccessDenied", 403), ("access_denied", False)),
        (_client_error("SlowDown", 503), ("throttled", True)),
        (_client_error("Weird", 400), ("unknown", True)),
        (EndpointConnectionError(endpoint_url="https://s3.example.com"), ("network", True)),
        (RuntimeError("boom"), ("unknown", False)),
    ],
)
def test_classify_s3_error(err: Exception, expected: tuple[str, bool]) -> None:
    assert classify_s3_error(err) == expected


def test_s3_init_fails_on_unreachable_bucket() -> None:
    s3 = _FakeS3()
    s3.head_error = _client_error("NoSuchBucket", 404, "HeadBucket")
    with pytest.raises(StoreInitError) as exc:
        S3MetadataStore("metadata", client=s3)
    assert exc.value.details["kind"] == "not_found"

    with pytest.raises(StoreInitError):
        S3MetadataStore("", client=_FakeS3())


def test_encode_record_is_json_with_aliases() -> None:
    raw = encode_record(_record(meetingRequired=True))
    assert b'"changeId"' in raw
    assert b'"include_meeting": true' in raw


# =============================================================================
# Фабрика
# =============================================================================
def test_build_store_local_fs(tmp_path) -> None:
    s = get_settings().model_copy(
        update={"metadata_store_mode": "local_fs", "metadata_local_dir": str(tmp_path)}
    )
    assert isinstance(build_metadata_store(s), LocalFsMetadataStore)


def test_build_store_failure_logs_critical(caplog) -> None:
    s3 = _FakeS3()
    s3.head_error = _client_error("AccessDenied", 403, "HeadBucket")
    s = get_settings().model_copy(update={"metadata_store_mode": "s3", "metadata_bucket": "metadata"})

    with caplog.at_level(logging.CRITICAL, logger=CRITICAL_LOGGER_NAME):
        with pytest.raises(StoreInitError):
            build_metadata_store(s, s3_client=s3)

    records = [r for r in caplog.records if r.name == CRITICAL_LOGGER_NAME]
    assert [r.getMessage() for r in records] == ["CRITICAL_STORE_INIT_FAILED"]
    assert records[0].payload["mode"] == "s3"


def test_build_store_unknown_mode() -> None:
    s = get_settings().model_copy(update={"metadata_store_mode": "ftp"})
    with pytest.raises(StoreInitError):
        build_metadata_store(s)
