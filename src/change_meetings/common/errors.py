"""
Единые ошибки и коды ошибок.

Назначение:
- предсказуемые коды для CLI/HTTP/логов
- разделение per-customer ошибок (попадают в MeetingOutcome)
  и критических ошибок хранилища (всегда доходят до вызывающего)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class ErrCode:
    # Общие
    UNKNOWN = "unknown"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    TIMEOUT = "timeout"

    # Метаданные
    MALFORMED_RECORD = "malformed_record"

    # Тенанты
    UNKNOWN_CUSTOMER = "unknown_customer"
    CREDENTIAL_ERROR = "credential_error"
    RECIPIENTS_ERROR = "recipients_error"

    # Провайдер встреч
    PROVIDER_TRANSIENT = "provider_transient"
    PROVIDER_TERMINAL = "provider_terminal"

    # Хранилище
    STORE_INIT_ERROR = "store_init_error"
    STORE_WRITE_ERROR = "store_write_error"
    STORE_READ_ERROR = "store_read_error"
    STORE_CONFLICT = "store_conflict"


@dataclass
class AppError(Exception):
    """
    Базовая ошибка приложения.
    - code: стабильный код ошибки
    - message: безопасное сообщение
    - details: доп. данные (без секретов)
    """

    code: str
    message: str
    details: dict | None = None

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.code}: {self.message}"

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class ValidationError(AppError):
    def __init__(self, message: str = "Ошибка валидации", details: dict | None = None) -> None:
        super().__init__(ErrCode.VALIDATION, message, details)


class NotFoundError(AppError):
    def __init__(self, message: str = "Не найдено", details: dict | None = None) -> None:
        super().__init__(ErrCode.NOT_FOUND, message, details)


class MalformedRecordError(AppError):
    def __init__(
        self, message: str = "Некорректные метаданные изменения", details: dict | None = None
    ) -> None:
        super().__init__(ErrCode.MALFORMED_RECORD, message, details)


class OperationLockedError(AppError):
    def __init__(self, message: str = "Конфликт", details: dict | None = None) -> None:
        super().__init__(ErrCode.CONFLICT, message, details)


class OperationTimeoutError(AppError):
    def __init__(self, message: str = "Превышен дедлайн операции", details: dict | None = None) -> None:
        super().__init__(ErrCode.TIMEOUT, message, details)


# =============================================================================
# Тенанты
# =============================================================================
class UnknownCustomerError(AppError):
    def __init__(self, customer_code: str) -> None:
        super().__init__(
            ErrCode.UNKNOWN_CUSTOMER,
            f"Нет маппинга учётных данных для customer {customer_code}",
            {"customer_code": customer_code},
        )


class CredentialError(AppError):
    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(ErrCode.CREDENTIAL_ERROR, message, details)


class RecipientsError(AppError):
    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(ErrCode.RECIPIENTS_ERROR, message, details)


# =============================================================================
# Провайдер встреч
# =============================================================================
class ProviderError(AppError):
    retryable = False

    def __init__(self, code: str, message: str, details: dict | None = None) -> None:
        super().__init__(code, message, details)


class ProviderTransientError(ProviderError):
    retryable = True

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(ErrCode.PROVIDER_TRANSIENT, message, details)


class ProviderTerminalError(ProviderError):
    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(ErrCode.PROVIDER_TERMINAL, message, details)


# =============================================================================
# Хранилище метаданных
# =============================================================================
class StoreError(AppError):
    retryable = False


class StoreInitError(StoreError):
    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(ErrCode.STORE_INIT_ERROR, message, details)


class StoreReadError(StoreError):
    def __init__(self, message: str, details: dict | None = None, *, retryable: bool = False) -> None:
        super().__init__(ErrCode.STORE_READ_ERROR, message, details)
        self.retryable = retryable


class StoreConflictError(StoreError):
    retryable = True

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(ErrCode.STORE_CONFLICT, message, details)


class StoreWriteError(StoreError):
    """
    Ошибка записи метаданных. Никогда не поглощается: оркестратор
    прикладывает к ней BatchResult (batch), чтобы вызывающий видел
    и per-customer исходы, и факт потери записи.
    """

    def __init__(
        self,
        message: str,
        details: dict | None = None,
        *,
        retryable: bool = False,
        batch: Any = None,
    ) -> None:
        super().__init__(ErrCode.STORE_WRITE_ERROR, message, details)
        self.retryable = retryable
        self.batch = batch
