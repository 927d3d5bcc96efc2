from __future__ import annotations

import os

import pytest

from change_meetings.common.config import Settings, parse_retry_statuses
from change_meetings.common.secrets import maybe_load_external_secrets

_AZURE = ("AZURE_CLIENT_ID", "AZURE_CLIENT_SECRET", "AZURE_TENANT_ID")


class _FakeSsm:
    def __init__(self, values: dict[str, str]) -> None:
        self.values = values
        self.calls: list[list[str]] = []

    def get_parameters(self, Names: list[str], WithDecryption: bool) -> dict:
        assert WithDecryption is True
        self.calls.append(list(Names))
        return {
            "Parameters": [{"Name": n, "Value": self.values[n]} for n in Names if n in self.values]
        }


def _clear_azure(monkeypatch) -> None:
    for key in _AZURE:
        monkeypatch.delenv(key, raising=False)


def test_ssm_loads_missing_fields(monkeypatch) -> None:
    _clear_azure(monkeypatch)
    monkeypatch.setenv("SECRETS_PROVIDER", "ssm")
    monkeypatch.setenv("SSM_PARAMETER_PREFIX", "/change-meetings/prod/")
    monkeypatch.setenv("AZURE_TENANT_ID", "tenant-from-env")
    ssm = _FakeSsm(
        {
            "/change-meetings/prod/AZURE_CLIENT_ID": "client-1",
            "/change-meetings/prod/AZURE_CLIENT_SECRET": "secret-1",
        }
    )
    monkeypatch.setattr("change_meetings.common.secrets.boto3.client", lambda *_a, **_kw: ssm)

    maybe_load_external_secrets()

    assert os.environ["AZURE_CLIENT_ID"] == "client-1"
    assert os.environ["AZURE_CLIENT_SECRET"] == "secret-1"
    assert os.environ["AZURE_TENANT_ID"] == "tenant-from-env"
    assert ssm.calls == [
        ["/change-meetings/prod/AZURE_CLIENT_ID", "/change-meetings/prod/AZURE_CLIENT_SECRET"]
    ]


def test_ssm_missing_parameter_raises(monkeypatch) -> None:
    _clear_azure(monkeypatch)
    monkeypatch.setenv("SECRETS_PROVIDER", "ssm")
    monkeypatch.setenv("SSM_PARAMETER_PREFIX", "/cm")
    monkeypatch.setenv("SSM_FIELDS", "AZURE_CLIENT_SECRET")
    monkeypatch.setattr(
        "change_meetings.common.secrets.boto3.client", lambda *_a, **_kw: _FakeSsm({})
    )

    with pytest.raises(RuntimeError, match="AZURE_CLIENT_SECRET"):
        maybe_load_external_secrets()


def test_ssm_requires_prefix_and_known_provider(monkeypatch) -> None:
    monkeypatch.setenv("SECRETS_PROVIDER", "ssm")
    monkeypatch.delenv("SSM_PARAMETER_PREFIX", raising=False)
    with pytest.raises(RuntimeError):
        maybe_load_external_secrets()

    monkeypatch.setenv("SECRETS_PROVIDER", "vault")
    with pytest.raises(RuntimeError):
        maybe_load_external_secrets()

    monkeypatch.setenv("SECRETS_PROVIDER", "none")
    maybe_load_external_secrets()


def test_file_override_for_settings(monkeypatch, tmp_path) -> None:
    secret = tmp_path / "azure_secret"
    secret.write_text("from-file\n", encoding="utf-8")
    statuses = tmp_path / "statuses"
    statuses.write_text("429\n503\n", encoding="utf-8")
    monkeypatch.setenv("AZURE_CLIENT_SECRET_FILE", str(secret))
    monkeypatch.setenv("PROVIDER_RETRY_STATUSES_FILE", str(statuses))

    s = Settings()

    assert s.azure_client_secret == "from-file"
    assert parse_retry_statuses(s.provider_retry_statuses) == {429, 503}


def test_parse_retry_statuses_skips_garbage() -> None:
    assert parse_retry_statuses("408, 5xx,503,,") == {408, 503}
    assert parse_retry_statuses(None) == set()
