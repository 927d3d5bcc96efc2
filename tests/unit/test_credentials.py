from __future__ import annotations

import json
import logging

import pytest
from botocore.exceptions import ClientError

from change_meetings.common.config import get_settings
from change_meetings.common.errors import CredentialError, UnknownCustomerError
from change_meetings.common.logging import CRITICAL_LOGGER_NAME
from change_meetings.tenancy.credentials import (
    CredentialResolver,
    build_credential_resolver,
    load_customer_accounts,
    parse_customer_accounts,
)

CONFIG = {
    "customer_mappings": {
        "hts": {
            "customer_name": "HTS Prod",
            "aws_account_id": "111111111111",
            "region": "us-east-1",
            "ses_role_arn": "arn:aws:iam::111111111111:role/hts-ses",
        },
        "cds": {
            "customerName": "CDS",
            "awsAccountId": "222222222222",
            "region": "eu-west-1",
            "sesRoleArn": "arn:aws:iam::222222222222:role/cds-ses",
        },
        "norole": {"aws_account_id": "333333333333"},
    }
}


class _FakeSts:
    def __init__(self, factory: _FakeSessionFactory, creds: dict | None) -> None:
        self.factory = factory
        self.creds = creds

    def assume_role(self, **params) -> dict:
        self.factory.assume_calls.append(params)
        if self.factory.assume_error:
            raise self.factory.assume_error
        account = params["RoleArn"].split(":")[4]
        return {
            "Credentials": {
                "AccessKeyId": f"AKIA{account}",
                "SecretAccessKey": "secret",
                "SessionToken": "token",
            }
        }

    def get_caller_identity(self) -> dict:
        key = self.creds["aws_access_key_id"]
        account = self.factory.identity_override or key.removeprefix("AKIA")
        return {"Account": account, "Arn": f"arn:aws:sts::{account}:assumed-role/x/y"}


class _FakeSession:
    def __init__(self, factory: _FakeSessionFactory, kwargs: dict) -> None:
        self.factory = factory
        self.kwargs = kwargs

    def client(self, service: str, region_name: str | None = None) -> _FakeSts:
        assert service == "sts"
        creds = self.kwargs if "aws_access_key_id" in self.kwargs else None
        return _FakeSts(self.factory, creds)


class _FakeSessionFactory:
    def __init__(self) -> None:
        self.sessions: list[_FakeSession] = []
        self.assume_calls: list[dict] = []
        self.assume_error: Exception | None = None
        self.identity_override: str | None = None

    def __call__(self, **kwargs) -> _FakeSession:
        s = _FakeSession(self, kwargs)
        self.sessions.append(s)
        return s


def _resolver(factory: _FakeSessionFactory, **kwargs) -> CredentialResolver:
    return CredentialResolver(parse_customer_accounts(CONFIG), factory, **kwargs)


def test_parse_accepts_both_key_styles_and_list_form() -> None:
    accounts = parse_customer_accounts(CONFIG)
    assert accounts["cds"].ses_role_arn == "arn:aws:iam::222222222222:role/cds-ses"
    assert accounts["cds"].region == "eu-west-1"
    assert accounts["hts"].customer_name == "HTS Prod"

    listed = parse_customer_accounts(
        {"customer_mappings": [{"customerCode": "HTS", "sesRoleArn": "arn:aws:iam::1:role/x"}]}
    )
    assert list(listed) == ["hts"]


@pytest.mark.parametrize(
    "data",
    [
        {},
        {"customer_mappings": "hts"},
        {"customer_mappings": {"hts": "not-an-object"}},
        {"customer_mappings": {"bad_code": {}}},
    ],
)
def test_parse_rejects_broken_config(data: dict) -> None:
    with pytest.raises(CredentialError):
        parse_customer_accounts(data)


def test_load_from_file(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps(CONFIG), encoding="utf-8")
    assert sorted(load_customer_accounts(path)) == ["cds", "hts", "norole"]

    with pytest.raises(CredentialError):
        load_customer_accounts(tmp_path / "missing.json")


def test_resolve_assumes_role_per_call_with_fresh_session() -> None:
    factory = _FakeSessionFactory()
    resolver = _resolver(factory, external_id="ext-1", duration_sec=900)

    first = resolver.resolve("HTS")
    second = resolver.resolve("hts")

    assert first.customer_code == "hts"
    assert first.session is not second.session
    assert first.identity_arn.startswith("arn:aws:sts::111111111111:")
    call = factory.assume_calls[0]
    assert call["RoleArn"] == "arn:aws:iam::111111111111:role/hts-ses"
    assert call["ExternalId"] == "ext-1"
    assert call["DurationSeconds"] == 900
    assert call["RoleSessionName"].startswith("change-meetings-hts-")
    assert first.session.kwargs["region_name"] == "us-east-1"


def test_resolve_unknown_and_missing_role() -> None:
    resolver = _resolver(_FakeSessionFactory())
    with pytest.raises(UnknownCustomerError):
        resolver.resolve("zzz")
    with pytest.raises(CredentialError):
        resolver.resolve("norole")


def test_resolve_wraps_sts_errors() -> None:
    factory = _FakeSessionFactory()
    factory.assume_error = ClientError(
        {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "AssumeRole"
    )
    with pytest.raises(CredentialError) as exc:
        _resolver(factory).resolve("hts")
    assert exc.value.details["customer_code"] == "hts"


def test_resolve_rejects_foreign_account() -> None:
    factory = _FakeSessionFactory()
    factory.identity_override = "999999999999"
    with pytest.raises(CredentialError) as exc:
        _resolver(factory).resolve("cds")
    assert exc.value.details["actual"] == "999999999999"


def test_validate_all_reports_each_customer() -> None:
    results = _resolver(_FakeSessionFactory()).validate_all()

    assert results["hts"]["valid"] is True
    assert results["cds"]["valid"] is True
    assert results["norole"]["valid"] is False
    assert results["norole"]["error"]["code"] == "credential_error"


def test_build_resolver_logs_critical_on_broken_config(tmp_path, caplog) -> None:
    s = get_settings().model_copy(update={"customer_config_path": str(tmp_path / "missing.json")})
    with caplog.at_level(logging.CRITICAL, logger=CRITICAL_LOGGER_NAME):
        with pytest.raises(CredentialError):
            build_credential_resolver(s)
    assert any(r.getMessage() == "CRITICAL_RESOLVER_INIT_FAILED" for r in caplog.records)
