"""
Оркестратор встреч по изменению (multi-customer).

Назначение:
- fan-out по customers: учётные данные -> получатели -> провайдер встреч
- fan-in: один BatchResult, порядок как у входных customer codes
- write-back после fan-in в вызывающем потоке: копия customer, затем архив

Инварианты:
- воркеры ничего не пишут в хранилище
- ошибка одного customer не влияет на остальных
- потеря записи в хранилище никогда не поглощается: StoreWriteError с batch
"""

from __future__ import annotations

import threading
import time
import warnings
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, TypeVar

from change_meetings.common.config import Settings, get_settings
from change_meetings.common.errors import (
    AppError,
    ErrCode,
    NotFoundError,
    OperationTimeoutError,
    ProviderTransientError,
    StoreWriteError,
    ValidationError,
)
from change_meetings.common.ids import new_meeting_transaction_id
from change_meetings.common.logging import get_project_logger, log_critical
from change_meetings.common.metrics import (
    CUSTOMER_OPERATIONS_TOTAL,
    STORE_FAILURES_TOTAL,
    track_customer_latency,
)
from change_meetings.connectors.base import MeetingProvider
from change_meetings.domain.enums import ModificationType, OperationKind, OutcomeAction
from change_meetings.domain.models import ChangeRecord, MeetingMetadata
from change_meetings.domain.modifications import apply_meeting_cancelled, apply_meeting_scheduled
from change_meetings.domain.outcomes import BatchResult, MeetingOutcome
from change_meetings.services.locks import OperationLock, change_operation_lock
from change_meetings.services.meeting_content import build_meeting_content
from change_meetings.storage.metadata_store import MetadataLocation, MetadataStore
from change_meetings.tenancy.credentials import CredentialResolver
from change_meetings.tenancy.extraction import extract_customer_codes, normalize_customer_codes
from change_meetings.tenancy.recipients import resolve_recipients

log = get_project_logger()

T = TypeVar("T")
ProviderFactory = Callable[[str], MeetingProvider]


@dataclass
class _UnitState:
    customer_code: str
    attempts: int = 0


@dataclass(frozen=True)
class _UnitResult:
    outcome: MeetingOutcome
    # что записать после fan-in (только для created/cancelled)
    meeting: MeetingMetadata | None = None
    # копия customer уже содержит встречу, дописать нужно только архив
    archive_only: bool = False


class _ProviderPool:
    """
    Провайдеры встреч в рамках одного batch: один экземпляр на организатора.
    """

    def __init__(self, factory: ProviderFactory) -> None:
        self._factory = factory
        self._providers: dict[str, MeetingProvider] = {}
        self._mu = threading.Lock()

    def get(self, organizer: str) -> MeetingProvider:
        key = organizer.strip().lower()
        with self._mu:
            provider = self._providers.get(key)
            if provider is None:
                provider = self._factory(organizer)
                self._providers[key] = provider
            return provider

    def close(self) -> None:
        with self._mu:
            providers = list(self._providers.values())
            self._providers.clear()
        for provider in providers:
            close = getattr(provider, "close", None)
            if callable(close):
                close()


class MeetingOrchestrator:
    def __init__(
        self,
        resolver: CredentialResolver,
        store: MetadataStore,
        provider_factory: ProviderFactory,
        lock: OperationLock,
        settings: Settings | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        s = settings or get_settings()
        self.resolver = resolver
        self.store = store
        self.provider_factory = provider_factory
        self.lock = lock
        self.settings = s

        self.max_workers = max(1, int(s.orchestrator_max_workers))
        self.customer_timeout_sec = max(1, int(s.customer_operation_timeout_sec))
        self.provider_attempts = max(1, int(s.provider_retries) + 1)
        self.provider_backoff_sec = max(0, int(s.provider_retry_backoff_ms)) / 1000.0
        self.user_id = s.backend_user_id
        self._sleep = sleep
        self._clock = clock

    # =========================================================================
    # Публичные операции
    # =========================================================================
    def create_multi_customer_meeting_invite(
        self,
        customer_codes: Iterable[str] | None,
        topic_name: str,
        metadata_ref: str,
        sender_email: str,
        *,
        dry_run: bool = False,
        force_update: bool = False,
    ) -> BatchResult:
        _require("topic_name", topic_name)
        _require("metadata_ref", metadata_ref)
        _require("sender_email", sender_email)

        archive_loc, archive = self._load_archive(metadata_ref)
        codes = self._customer_codes(customer_codes, archive)

        log.info(
            "multi_customer_create_started",
            extra={
                "payload": {
                    "change_id": archive_loc.change_id,
                    "customers": codes,
                    "dry_run": dry_run,
                    "force_update": force_update,
                }
            },
        )

        providers = _ProviderPool(self.provider_factory)

        def unit(code: str, state: _UnitState) -> _UnitResult:
            return self._create_for_customer(
                code,
                state,
                change_id=archive_loc.change_id,
                archive=archive,
                providers=providers,
                topic_name=topic_name.strip(),
                sender_email=sender_email.strip(),
                dry_run=dry_run,
                force_update=force_update,
            )

        with change_operation_lock(self.lock, change_id=archive_loc.change_id, operation="create"):
            try:
                results = self._fan_out(OperationKind.create, codes, unit)
            finally:
                providers.close()
            batch = BatchResult(
                change_id=archive_loc.change_id,
                operation=OperationKind.create,
                outcomes=[r.outcome for r in results],
            )
            try:
                if not dry_run:
                    self._write_back(batch, archive_loc, results)
            finally:
                self._finish(batch)
        return batch

    def cancel_multi_customer_meeting(
        self,
        customer_codes: Iterable[str] | None,
        metadata_ref: str,
        *,
        dry_run: bool = False,
    ) -> BatchResult:
        _require("metadata_ref", metadata_ref)

        archive_loc, archive = self._load_archive(metadata_ref)
        codes = self._customer_codes(customer_codes, archive)

        log.info(
            "multi_customer_cancel_started",
            extra={
                "payload": {
                    "change_id": archive_loc.change_id,
                    "customers": codes,
                    "dry_run": dry_run,
                }
            },
        )

        providers = _ProviderPool(self.provider_factory)

        def unit(code: str, state: _UnitState) -> _UnitResult:
            return self._cancel_for_customer(
                code,
                state,
                change_id=archive_loc.change_id,
                archive=archive,
                providers=providers,
                dry_run=dry_run,
            )

        with change_operation_lock(self.lock, change_id=archive_loc.change_id, operation="cancel"):
            try:
                results = self._fan_out(OperationKind.cancel, codes, unit)
            finally:
                providers.close()
            batch = BatchResult(
                change_id=archive_loc.change_id,
                operation=OperationKind.cancel,
                outcomes=[r.outcome for r in results],
            )
            try:
                if not dry_run:
                    self._write_back(batch, archive_loc, results)
            finally:
                self._finish(batch)
        return batch

    # =========================================================================
    # Подготовка
    # =========================================================================
    def _load_archive(self, metadata_ref: str) -> tuple[MetadataLocation, ChangeRecord]:
        ref_loc = MetadataLocation.parse(metadata_ref)
        archive_loc = MetadataLocation.archive(ref_loc.change_id)
        archive = self.store.read(archive_loc)
        if archive.change_id != archive_loc.change_id:
            log.warning(
                "archive_change_id_mismatch",
                extra={"payload": {"location": archive_loc.key, "change_id": archive.change_id}},
            )
        return archive_loc, archive

    @staticmethod
    def _customer_codes(explicit: Iterable[str] | None, archive: ChangeRecord) -> list[str]:
        codes = normalize_customer_codes(explicit or [])
        if codes:
            return codes
        return extract_customer_codes(archive)

    # =========================================================================
    # Fan-out / fan-in
    # =========================================================================
    def _fan_out(
        self,
        operation: OperationKind,
        codes: list[str],
        unit: Callable[[str, _UnitState], _UnitResult],
    ) -> list[_UnitResult]:
        workers = max(1, min(self.max_workers, len(codes)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="change-meetings") as pool:
            futures = [pool.submit(self._run_unit, operation, code, unit) for code in codes]
            # единственная точка синхронизации: сбор в порядке входа
            return [f.result() for f in futures]

    def _run_unit(
        self,
        operation: OperationKind,
        code: str,
        unit: Callable[[str, _UnitState], _UnitResult],
    ) -> _UnitResult:
        state = _UnitState(customer_code=code)
        with track_customer_latency(operation.value):
            try:
                return unit(code, state)
            except AppError as e:
                err = e
            except Exception as e:
                log.exception(
                    "customer_meeting_unexpected_error",
                    extra={"payload": {"customer_code": code, "operation": operation.value}},
                )
                err = AppError(ErrCode.UNKNOWN, str(e)[:300] or type(e).__name__)

        log.warning(
            "customer_meeting_failed",
            extra={
                "payload": {
                    "customer_code": code,
                    "operation": operation.value,
                    "code": err.code,
                    "message": err.message,
                    "attempts": state.attempts,
                }
            },
        )
        return _UnitResult(outcome=MeetingOutcome.failed(code, err, attempts=state.attempts))

    def _check_deadline(
        self,
        state: _UnitState,
        operation: OperationKind,
        deadline: float,
        *,
        step: str,
        last_err: AppError | None = None,
    ) -> float:
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise OperationTimeoutError(
                details={
                    "customer_code": state.customer_code,
                    "operation": operation.value,
                    "timeout_sec": self.customer_timeout_sec,
                    "step": step,
                    "last_error": last_err.message if last_err else None,
                }
            )
        return remaining

    def _call_provider(
        self,
        state: _UnitState,
        operation: OperationKind,
        deadline: float,
        call: Callable[[float], T],
    ) -> T:
        """
        Вызов провайдера с повтором временных ошибок.
        Дедлайн проверяется перед каждой попыткой и ограничивает HTTP-таймаут.
        """
        last_err: ProviderTransientError | None = None
        attempt = 0
        while True:
            remaining = self._check_deadline(
                state, operation, deadline, step="provider", last_err=last_err
            )
            attempt += 1
            state.attempts = attempt
            try:
                return call(remaining)
            except ProviderTransientError as e:
                last_err = e
                log.warning(
                    f"provider_{operation.value}_retry",
                    extra={
                        "payload": {
                            "customer_code": state.customer_code,
                            "attempt": attempt,
                            "error": e.message,
                        }
                    },
                )
                if attempt >= self.provider_attempts:
                    raise
                if self.provider_backoff_sec > 0:
                    left = max(0.0, deadline - self._clock())
                    self._sleep(min(self.provider_backoff_sec * attempt, left))

    # =========================================================================
    # Per-customer: create
    # =========================================================================
    def _create_for_customer(
        self,
        code: str,
        state: _UnitState,
        *,
        change_id: str,
        archive: ChangeRecord,
        providers: _ProviderPool,
        topic_name: str,
        sender_email: str,
        dry_run: bool,
        force_update: bool,
    ) -> _UnitResult:
        deadline = self._clock() + self.customer_timeout_sec
        copy = self.store.read(MetadataLocation.customer(code, change_id))

        if copy.include_meeting is False:
            return _UnitResult(MeetingOutcome.ok(code, OutcomeAction.not_required))

        if copy.meeting_id and copy.join_url and not force_update:
            log.info(
                "customer_meeting_exists",
                extra={"payload": {"customer_code": code, "meeting_id": copy.meeting_id}},
            )
            outcome = MeetingOutcome.ok(
                code,
                OutcomeAction.skipped,
                meeting_id=copy.meeting_id,
                join_url=copy.join_url,
            )
            ref = (archive.customer_meetings or {}).get(code)
            if ref is not None and ref.meeting_id == copy.meeting_id:
                return _UnitResult(outcome)
            # прошлый запуск записал копию customer, но не архив
            log.warning(
                "archive_meeting_out_of_sync",
                extra={
                    "payload": {
                        "customer_code": code,
                        "meeting_id": copy.meeting_id,
                        "archive_meeting_id": ref.meeting_id if ref else None,
                        "dry_run": dry_run,
                    }
                },
            )
            if dry_run:
                return _UnitResult(outcome)
            return _UnitResult(outcome, meeting=copy.meeting_metadata, archive_only=True)

        session = self.resolver.resolve(code)
        self._check_deadline(state, OperationKind.create, deadline, step="credentials")
        recipients = resolve_recipients(session, topic_name, explicit=copy.attendees)
        self._check_deadline(state, OperationKind.create, deadline, step="recipients")
        if not recipients:
            log.info(
                "customer_meeting_no_recipients",
                extra={"payload": {"customer_code": code, "topic": topic_name}},
            )
            return _UnitResult(MeetingOutcome.ok(code, OutcomeAction.no_recipients))

        content = build_meeting_content(copy, default_timezone=self.settings.meeting_default_timezone)

        if dry_run:
            log.info(
                "customer_meeting_dry_run",
                extra={
                    "payload": {
                        "customer_code": code,
                        "subject": content.subject,
                        "start": content.start.isoformat(),
                        "end": content.end.isoformat(),
                        "timezone": content.timezone,
                        "recipients": len(recipients),
                        "existing_meeting_id": copy.meeting_id,
                    }
                },
            )
            return _UnitResult(MeetingOutcome.ok(code, OutcomeAction.dry_run))

        if copy.meeting_id:
            # предыдущая встреча у провайдера остаётся: отмена только явным cancel
            log.warning(
                "customer_meeting_force_update",
                extra={"payload": {"customer_code": code, "previous_meeting_id": copy.meeting_id}},
            )

        generation = sum(
            1
            for entry in copy.modifications
            if entry.modification_type == ModificationType.meeting_scheduled
            and entry.customer_code == code
        )
        transaction_id = new_meeting_transaction_id(change_id, code, generation)

        provider = providers.get(sender_email)
        created = self._call_provider(
            state,
            OperationKind.create,
            deadline,
            lambda remaining: provider.create(
                recipients=recipients,
                subject=content.subject,
                body_html=content.body_html,
                start=content.start,
                end=content.end,
                timezone=content.timezone,
                location=content.location,
                transaction_id=transaction_id,
                timeout=remaining,
            ),
        )

        meeting = MeetingMetadata(
            meeting_id=created.meeting_id,
            join_url=created.join_url,
            start_time=content.start.isoformat(),
            end_time=content.end.isoformat(),
            subject=content.subject,
            organizer=sender_email,
            attendees=recipients,
        )
        outcome = MeetingOutcome.ok(
            code,
            OutcomeAction.created,
            meeting_id=created.meeting_id,
            join_url=created.join_url,
            attempts=state.attempts,
        )
        return _UnitResult(outcome=outcome, meeting=meeting)

    # =========================================================================
    # Per-customer: cancel
    # =========================================================================
    def _meeting_to_cancel(self, code: str, copy: ChangeRecord, archive: ChangeRecord) -> MeetingMetadata | None:
        if copy.meeting_id:
            return copy.meeting_metadata
        found = copy.latest_scheduled_meeting(code)
        if found is not None:
            return found
        ref = (archive.customer_meetings or {}).get(code)
        if ref is not None:
            return MeetingMetadata(meeting_id=ref.meeting_id, join_url=ref.join_url)
        return archive.latest_scheduled_meeting(code)

    def _cancel_for_customer(
        self,
        code: str,
        state: _UnitState,
        *,
        change_id: str,
        archive: ChangeRecord,
        providers: _ProviderPool,
        dry_run: bool,
    ) -> _UnitResult:
        deadline = self._clock() + self.customer_timeout_sec
        copy = self.store.read(MetadataLocation.customer(code, change_id))
        self._check_deadline(state, OperationKind.cancel, deadline, step="metadata")

        meeting = self._meeting_to_cancel(code, copy, archive)
        if meeting is None or not meeting.meeting_id:
            return _UnitResult(MeetingOutcome.ok(code, OutcomeAction.nothing_to_cancel))
        meeting_id = meeting.meeting_id

        if dry_run:
            log.info(
                "customer_cancel_dry_run",
                extra={"payload": {"customer_code": code, "meeting_id": meeting_id}},
            )
            return _UnitResult(MeetingOutcome.ok(code, OutcomeAction.dry_run, meeting_id=meeting_id))

        organizer = meeting.organizer or self.settings.meeting_organizer_email
        if not organizer:
            raise ValidationError(
                "Не известен организатор встречи для отмены",
                {"customer_code": code, "meeting_id": meeting_id},
            )

        provider = providers.get(organizer)
        self._call_provider(
            state,
            OperationKind.cancel,
            deadline,
            lambda remaining: provider.cancel(meeting_id, timeout=remaining),
        )

        outcome = MeetingOutcome.ok(
            code, OutcomeAction.cancelled, meeting_id=meeting_id, attempts=state.attempts
        )
        return _UnitResult(outcome=outcome, meeting=MeetingMetadata(meeting_id=meeting_id))

    # =========================================================================
    # Write-back
    # =========================================================================
    def _persist(
        self,
        operation: OperationKind,
        location: MetadataLocation,
        code: str,
        meeting: MeetingMetadata,
    ) -> None:
        archive = location.is_archive

        def mutate(record: ChangeRecord) -> ChangeRecord:
            if operation == OperationKind.create:
                return apply_meeting_scheduled(
                    record, meeting, customer_code=code, user_id=self.user_id, archive=archive
                )
            return apply_meeting_cancelled(
                record,
                customer_code=code,
                meeting_id=str(meeting.meeting_id),
                user_id=self.user_id,
                archive=archive,
            )

        self.store.update(location, mutate)

    def _write_back(
        self,
        batch: BatchResult,
        archive_loc: MetadataLocation,
        results: list[_UnitResult],
    ) -> None:
        """
        Последовательно: копия customer, затем архив. Ошибка записи одного
        customer не останавливает запись остальных; в конце StoreWriteError.
        archive_only: копия уже содержит встречу, дописывается только архив.
        """
        failures: list[tuple[str, MetadataLocation, StoreWriteError]] = []

        for result in results:
            if result.meeting is None:
                continue
            code = result.outcome.customer_code
            locations = (
                (archive_loc,)
                if result.archive_only
                else (MetadataLocation.customer(code, batch.change_id), archive_loc)
            )
            for location in locations:
                try:
                    self._persist(batch.operation, location, code, result.meeting)
                except StoreWriteError as e:
                    STORE_FAILURES_TOTAL.labels(kind="write").inc()
                    log_critical(
                        "CRITICAL_STORE_WRITE_FAILED",
                        {
                            "change_id": batch.change_id,
                            "customer_code": code,
                            "operation": batch.operation.value,
                            "location": location.key,
                            "meeting_id": result.meeting.meeting_id,
                            "details": e.details,
                        },
                    )
                    batch.replace_outcome(result.outcome.as_failed(e))
                    failures.append((code, location, e))
                    # архив не должен ссылаться на встречу, которой нет в копии customer
                    break

        if failures:
            raise StoreWriteError(
                "Не удалось записать результаты встреч в хранилище метаданных",
                {
                    "change_id": batch.change_id,
                    "operation": batch.operation.value,
                    "failed_customers": [code for code, _, _ in failures],
                    "locations": [loc.key for _, loc, _ in failures],
                },
                batch=batch,
            ) from failures[0][2]

    def _finish(self, batch: BatchResult) -> None:
        for o in batch.outcomes:
            CUSTOMER_OPERATIONS_TOTAL.labels(
                operation=batch.operation.value,
                action=o.action.value,
                result="ok" if o.success else "failed",
            ).inc()
        log.info(
            "multi_customer_operation_done",
            extra={
                "payload": {
                    "change_id": batch.change_id,
                    "operation": batch.operation.value,
                    "total": batch.total,
                    "successful": batch.successful,
                    "failed": batch.failed,
                }
            },
        )


def _require(name: str, value: Any) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} обязателен", {"field": name})


# =============================================================================
# Устаревший single-customer вход
# =============================================================================
def create_meeting_invite(
    orchestrator: MeetingOrchestrator,
    customer_code: str,
    topic_name: str,
    metadata_ref: str,
    sender_email: str,
    *,
    metadata: ChangeRecord | dict[str, Any] | None = None,
    dry_run: bool = False,
    force_update: bool = False,
) -> BatchResult:
    """
    Deprecated: используйте create_multi_customer_meeting_invite.

    Берёт полный набор customer codes из метаданных (переданных или из хранилища),
    при их отсутствии [customer_code], и делегирует в multi-customer операцию.
    """
    warnings.warn(
        "create_meeting_invite is deprecated, use create_multi_customer_meeting_invite",
        DeprecationWarning,
        stacklevel=2,
    )
    log.warning(
        "deprecated_create_meeting_invite",
        extra={"payload": {"customer_code": customer_code, "metadata_ref": metadata_ref}},
    )

    source = metadata
    if source is None:
        try:
            source = orchestrator.store.read(
                MetadataLocation.archive(MetadataLocation.parse(metadata_ref).change_id)
            )
        except NotFoundError:
            source = None

    codes: list[str] = []
    if source is not None:
        try:
            codes = extract_customer_codes(source)
        except ValidationError:
            codes = []
    if not codes:
        codes = normalize_customer_codes([customer_code])

    return orchestrator.create_multi_customer_meeting_invite(
        codes,
        topic_name,
        metadata_ref,
        sender_email,
        dry_run=dry_run,
        force_update=force_update,
    )


def build_orchestrator(settings: Settings | None = None) -> MeetingOrchestrator:
    """
    Сборка оркестратора из настроек. Ошибки инициализации хранилища
    и резолвера пробрасываются (с CRITICAL-логом в фабриках).
    """
    from change_meetings.connectors.factory import build_meeting_provider
    from change_meetings.services.locks import build_operation_lock
    from change_meetings.storage.metadata_store import build_metadata_store
    from change_meetings.tenancy.credentials import build_credential_resolver

    s = settings or get_settings()
    return MeetingOrchestrator(
        resolver=build_credential_resolver(s),
        store=build_metadata_store(s),
        provider_factory=lambda organizer: build_meeting_provider(organizer, s),
        lock=build_operation_lock(s),
        settings=s,
    )
