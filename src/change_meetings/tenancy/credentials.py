"""
Учётные данные customer-аккаунтов.

Назначение:
- маппинг customer code -> аккаунт/роль (JSON, CUSTOMER_CONFIG_PATH)
- AssumeRole через STS для каждого обращения, новая boto3.Session на каждый resolve
- проверка полученной сессии через sts.get_caller_identity
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import boto3
import pydantic
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from change_meetings.common.config import Settings, get_settings
from change_meetings.common.errors import AppError, CredentialError, UnknownCustomerError
from change_meetings.common.ids import new_role_session_name
from change_meetings.common.logging import get_project_logger, log_critical

from .extraction import is_valid_customer_code, normalize_customer_code

log = get_project_logger()


class CustomerAccount(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    customer_code: str = Field(validation_alias=AliasChoices("customer_code", "customerCode"))
    customer_name: str | None = Field(
        default=None, validation_alias=AliasChoices("customer_name", "customerName")
    )
    aws_account_id: str | None = Field(
        default=None, validation_alias=AliasChoices("aws_account_id", "awsAccountId")
    )
    region: str = "us-east-1"
    ses_role_arn: str | None = Field(
        default=None, validation_alias=AliasChoices("ses_role_arn", "sesRoleArn")
    )
    environment: str = "prod"


@dataclass(frozen=True)
class CustomerSession:
    """
    Сессия конкретного customer. Не разделяется между customers.
    """

    customer_code: str
    account: CustomerAccount
    session: Any
    role_arn: str
    expiration: datetime | None = None
    identity_arn: str | None = None

    def client(self, service: str) -> Any:
        return self.session.client(service, region_name=self.account.region)


def parse_customer_accounts(data: dict[str, Any]) -> dict[str, CustomerAccount]:
    """
    Поддерживаемые формы customer_mappings:
    - {"<code>": {...}}
    - [{"customer_code": "<code>", ...}]
    """
    mappings = data.get("customer_mappings")
    if mappings is None:
        raise CredentialError("В конфигурации нет customer_mappings")

    items: list[dict[str, Any]] = []
    if isinstance(mappings, dict):
        for code, entry in mappings.items():
            if not isinstance(entry, dict):
                raise CredentialError("Некорректная запись customer_mappings", {"customer_code": code})
            items.append({"customer_code": code, **entry})
    elif isinstance(mappings, list):
        items = [m for m in mappings if isinstance(m, dict)]
    else:
        raise CredentialError("customer_mappings должен быть объектом или списком")

    out: dict[str, CustomerAccount] = {}
    for item in items:
        try:
            account = CustomerAccount.model_validate(item)
        except pydantic.ValidationError as e:
            raise CredentialError(
                "Некорректная запись customer_mappings",
                {"errors": e.errors(include_url=False)[:5]},
            ) from e
        code = normalize_customer_code(account.customer_code)
        if not is_valid_customer_code(code):
            raise CredentialError("Некорректный customer code в конфигурации", {"customer_code": code})
        out[code] = account.model_copy(update={"customer_code": code})
    return out


def load_customer_accounts(path: str | Path) -> dict[str, CustomerAccount]:
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except OSError as e:
        raise CredentialError("Не удалось прочитать конфигурацию customers", {"path": str(p)}) from e
    except ValueError as e:
        raise CredentialError("Конфигурация customers не является JSON", {"path": str(p)}) from e
    if not isinstance(data, dict):
        raise CredentialError("Конфигурация customers должна быть JSON-объектом", {"path": str(p)})
    return parse_customer_accounts(data)


class CredentialResolver:
    def __init__(
        self,
        accounts: dict[str, CustomerAccount],
        base_session_factory: Callable[..., Any] = boto3.Session,
        *,
        external_id: str | None = None,
        duration_sec: int = 3600,
        verify: bool = True,
    ) -> None:
        self.accounts = dict(accounts)
        self._session_factory = base_session_factory
        self.external_id = (external_id or "").strip() or None
        self.duration_sec = int(duration_sec)
        self.verify = verify

    @property
    def customer_codes(self) -> list[str]:
        return sorted(self.accounts)

    def account(self, customer_code: str) -> CustomerAccount:
        code = normalize_customer_code(customer_code)
        account = self.accounts.get(code)
        if account is None:
            raise UnknownCustomerError(code)
        return account

    def resolve(self, customer_code: str) -> CustomerSession:
        code = normalize_customer_code(customer_code)
        account = self.account(code)
        role_arn = (account.ses_role_arn or "").strip()
        if not role_arn:
            raise CredentialError("Для customer не задан ses_role_arn", {"customer_code": code})

        params: dict[str, Any] = {
            "RoleArn": role_arn,
            "RoleSessionName": new_role_session_name(code),
            "DurationSeconds": self.duration_sec,
        }
        if self.external_id:
            params["ExternalId"] = self.external_id

        try:
            base = self._session_factory(region_name=account.region)
            resp = base.client("sts", region_name=account.region).assume_role(**params)
            creds = resp["Credentials"]
            session = self._session_factory(
                aws_access_key_id=creds["AccessKeyId"],
                aws_secret_access_key=creds["SecretAccessKey"],
                aws_session_token=creds["SessionToken"],
                region_name=account.region,
            )
        except (BotoCoreError, ClientError, KeyError) as e:
            raise CredentialError(
                "AssumeRole для customer не выполнен",
                {"customer_code": code, "role_arn": role_arn, "err": str(e)[:200]},
            ) from e

        identity_arn = None
        if self.verify:
            identity_arn = self._verify(code, account, session)

        expiration = creds.get("Expiration")
        log.info(
            "customer_credentials_resolved",
            extra={"payload": {"customer_code": code, "role_arn": role_arn}},
        )
        return CustomerSession(
            customer_code=code,
            account=account,
            session=session,
            role_arn=role_arn,
            expiration=expiration if isinstance(expiration, datetime) else None,
            identity_arn=identity_arn,
        )

    def _verify(self, code: str, account: CustomerAccount, session: Any) -> str | None:
        try:
            identity = session.client("sts", region_name=account.region).get_caller_identity()
        except (BotoCoreError, ClientError) as e:
            raise CredentialError(
                "Полученные учётные данные отклонены", {"customer_code": code, "err": str(e)[:200]}
            ) from e
        got_account = str(identity.get("Account") or "")
        if account.aws_account_id and got_account != account.aws_account_id:
            raise CredentialError(
                "Учётные данные принадлежат другому аккаунту",
                {"customer_code": code, "expected": account.aws_account_id, "actual": got_account},
            )
        return identity.get("Arn")

    def validate_all(self) -> dict[str, dict[str, Any]]:
        """
        Проверка учётных данных всех настроенных customers.
        Ошибки не прерывают проверку остальных.
        """
        results: dict[str, dict[str, Any]] = {}
        for code in self.customer_codes:
            try:
                cs = self.resolve(code)
                results[code] = {"valid": True, "identity_arn": cs.identity_arn}
            except AppError as e:
                log.warning(
                    "customer_credentials_invalid",
                    extra={"payload": {"customer_code": code, "code": e.code, "message": e.message}},
                )
                results[code] = {"valid": False, "error": e.as_dict()}
        return results


def build_credential_resolver(settings: Settings | None = None) -> CredentialResolver:
    s = settings or get_settings()
    try:
        accounts = load_customer_accounts(s.customer_config_path)
    except CredentialError as e:
        log_critical(
            "CRITICAL_RESOLVER_INIT_FAILED",
            {"path": s.customer_config_path, "message": e.message, "details": e.details},
        )
        raise
    return CredentialResolver(
        accounts,
        external_id=s.assume_role_external_id,
        duration_sec=s.assume_role_duration_sec,
    )
