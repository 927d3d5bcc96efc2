"""
Централизованная конфигурация проекта (ENV / .env).

Важно:
- настройки читаются из .env и переменных окружения
- типизированные значения через pydantic-settings
- секреты Graph API могут быть подгружены из SSM до инициализации Settings
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .secrets import maybe_load_external_secrets


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Runtime
    # -------------------------------------------------------------------------
    app_env: str = Field(default="dev", alias="APP_ENV")
    service_name: str = Field(default="change-meetings", alias="SERVICE_NAME")
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=8020, alias="API_PORT")

    # -------------------------------------------------------------------------
    # AWS / tenants
    # -------------------------------------------------------------------------
    aws_region: str = Field(default="us-east-1", alias="AWS_REGION")
    customer_config_path: str = Field(default="./config.json", alias="CUSTOMER_CONFIG_PATH")
    assume_role_external_id: str | None = Field(default=None, alias="ASSUME_ROLE_EXTERNAL_ID")
    assume_role_duration_sec: int = Field(default=3600, alias="ASSUME_ROLE_DURATION_SEC")
    backend_user_id: str = Field(default="backend-system", alias="BACKEND_USER_ID")

    # -------------------------------------------------------------------------
    # Metadata store
    # -------------------------------------------------------------------------
    metadata_store_mode: str = Field(default="s3", alias="METADATA_STORE_MODE")  # s3|local_fs
    metadata_bucket: str | None = Field(default=None, alias="METADATA_BUCKET")
    metadata_local_dir: str = Field(default="./data/metadata", alias="METADATA_LOCAL_DIR")
    store_update_max_retries: int = Field(default=3, alias="STORE_UPDATE_MAX_RETRIES")
    store_update_backoff_ms: int = Field(default=100, alias="STORE_UPDATE_BACKOFF_MS")

    # -------------------------------------------------------------------------
    # Meeting provider (Microsoft Graph)
    # -------------------------------------------------------------------------
    meeting_provider: str = Field(default="graph", alias="MEETING_PROVIDER")  # graph|mock
    meeting_organizer_email: str | None = Field(default=None, alias="MEETING_ORGANIZER_EMAIL")
    meeting_default_timezone: str = Field(
        default="America/New_York", alias="MEETING_DEFAULT_TIMEZONE"
    )
    azure_client_id: str | None = Field(default=None, alias="AZURE_CLIENT_ID")
    azure_client_secret: str | None = Field(default=None, alias="AZURE_CLIENT_SECRET")
    azure_tenant_id: str | None = Field(default=None, alias="AZURE_TENANT_ID")
    graph_api_base: str = Field(default="https://graph.microsoft.com/v1.0", alias="GRAPH_API_BASE")
    graph_login_base: str = Field(
        default="https://login.microsoftonline.com", alias="GRAPH_LOGIN_BASE"
    )
    graph_timeout_sec: int = Field(default=30, alias="GRAPH_TIMEOUT_SEC")
    provider_retries: int = Field(default=2, alias="PROVIDER_RETRIES")
    provider_retry_backoff_ms: int = Field(default=300, alias="PROVIDER_RETRY_BACKOFF_MS")
    provider_retry_statuses: str = Field(
        default="408,425,429,500,502,503,504",
        alias="PROVIDER_RETRY_STATUSES",
    )

    # -------------------------------------------------------------------------
    # Orchestrator
    # -------------------------------------------------------------------------
    orchestrator_max_workers: int = Field(default=8, alias="ORCHESTRATOR_MAX_WORKERS")
    customer_operation_timeout_sec: int = Field(
        default=120, alias="CUSTOMER_OPERATION_TIMEOUT_SEC"
    )
    calendar_topic_name: str = Field(default="aws-calendar", alias="CALENDAR_TOPIC_NAME")

    # -------------------------------------------------------------------------
    # Locks
    # -------------------------------------------------------------------------
    lock_mode: str = Field(default="inline", alias="LOCK_MODE")  # inline|redis
    redis_url: str = Field(default="redis://redis:6379/0", alias="REDIS_URL")
    change_op_lock_ttl_sec: int = Field(default=300, alias="CHANGE_OP_LOCK_TTL_SEC")

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="json", alias="LOG_FORMAT")  # json|text

    def model_post_init(self, __context) -> None:
        _apply_file_overrides(self)


_CSV_ENV_FIELDS = {
    "PROVIDER_RETRY_STATUSES",
}


def _normalize_file_value(env_key: str, raw: str) -> str:
    value = (raw or "").strip()
    if env_key in _CSV_ENV_FIELDS and "\n" in value and "," not in value:
        parts = [p.strip() for p in value.splitlines() if p.strip()]
        return ",".join(parts)
    return value


def _apply_file_overrides(settings: Settings) -> None:
    alias_to_field = {}
    for name, field in type(settings).model_fields.items():
        alias = field.alias or name
        alias_to_field[str(alias)] = name
        alias_to_field[str(name)] = name

    for key, path in os.environ.items():
        if not key.endswith("_FILE"):
            continue
        base = key[: -len("_FILE")]
        target = alias_to_field.get(base)
        if not target:
            continue
        file_path = (path or "").strip()
        if not file_path:
            continue
        try:
            raw = Path(file_path).read_text(encoding="utf-8")
        except OSError as e:
            logging.getLogger("change-meetings").error(
                "config_file_read_failed",
                extra={"payload": {"env_key": key, "path": file_path, "error": str(e)[:200]}},
            )
            raise RuntimeError(f"Failed to read {key} from {file_path}") from e
        value = _normalize_file_value(base, raw)
        setattr(settings, target, value)


def parse_retry_statuses(raw: str | None) -> set[int]:
    out: set[int] = set()
    for item in (raw or "").split(","):
        item = item.strip()
        if item.isdigit():
            out.add(int(item))
    return out


maybe_load_external_secrets()
_SETTINGS = Settings()


def get_settings() -> Settings:
    return _SETTINGS
