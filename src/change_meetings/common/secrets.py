"""
External secrets provider loader (AWS SSM Parameter Store).

Loads Graph API credentials into environment before Settings initialization.
"""

from __future__ import annotations

import logging
import os
import re

import boto3
from botocore.exceptions import BotoCoreError, ClientError

_log = logging.getLogger("change-meetings")

_DEFAULT_SSM_FIELDS = ("AZURE_CLIENT_ID", "AZURE_CLIENT_SECRET", "AZURE_TENANT_ID")


def maybe_load_external_secrets() -> None:
    provider = (os.getenv("SECRETS_PROVIDER") or "").strip().lower()
    if provider in {"", "none"}:
        return
    if provider == "ssm":
        _load_ssm()
        return
    raise RuntimeError(f"Unsupported SECRETS_PROVIDER={provider}")


def _parse_field_list(raw: str | None) -> list[str]:
    if not raw:
        return list(_DEFAULT_SSM_FIELDS)
    return [item.strip() for item in re.split(r"[\n,]+", raw) if item.strip()]


def _load_ssm() -> None:
    prefix = (os.getenv("SSM_PARAMETER_PREFIX") or "").strip().rstrip("/")
    region = (os.getenv("AWS_REGION") or "us-east-1").strip()
    fields = _parse_field_list(os.getenv("SSM_FIELDS"))

    if not prefix:
        raise RuntimeError("SSM secrets require SSM_PARAMETER_PREFIX")

    missing = [f for f in fields if not (os.environ.get(f) or "").strip()]
    if not missing:
        return

    names = [f"{prefix}/{field}" for field in missing]
    try:
        client = boto3.client("ssm", region_name=region)
        # GetParameters принимает не более 10 имён за вызов
        params: list[dict] = []
        for i in range(0, len(names), 10):
            resp = client.get_parameters(Names=names[i : i + 10], WithDecryption=True)
            params.extend(resp.get("Parameters") or [])
    except (BotoCoreError, ClientError) as e:
        raise RuntimeError(f"SSM secrets fetch failed: {e}") from e

    updated = 0
    for param in params:
        name = str(param.get("Name") or "")
        env_key = name.rsplit("/", 1)[-1]
        value = param.get("Value")
        if env_key not in missing or value is None:
            continue
        os.environ[env_key] = str(value)
        updated += 1

    still_missing = [f for f in missing if not (os.environ.get(f) or "").strip()]
    if still_missing:
        raise RuntimeError(f"SSM secrets missing: {','.join(still_missing)}")

    _log.info(
        "ssm_secrets_loaded",
        extra={"payload": {"updated": updated, "prefix": prefix}},
    )
