from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError, ParamValidationError

from tenantinfra.core.errors import ProvisioningValidationError, TrustDeniedError, TrustUnavailableError
from tenantinfra.providers.trust.sts import StsTrustBroker, build_role_arn, build_session_name
from tenantinfra.services.telemetry import counters_snapshot
from tenantinfra.tests.utils.aws import FakeStsClient, client_error, make_credential


def _broker(client: FakeStsClient, **kwargs) -> StsTrustBroker:
    options = {
        "role_name": "CrossAccountTenantRole",
        "region": "us-east-1",
        "duration_s": 900,
        "external_id": "",
        "session_prefix": "tenant-infra",
        "tags_enabled": False,
        "client": client,
    }
    options.update(kwargs)
    return StsTrustBroker(**options)


def test_role_arn_requires_twelve_digit_account() -> None:
    assert build_role_arn("123456789012", "Role") == "arn:aws:iam::123456789012:role/Role"
    with pytest.raises(TrustDeniedError):
        build_role_arn("12345", "Role")
    with pytest.raises(TrustDeniedError):
        build_role_arn("", "Role")


def test_session_name_is_sanitized_and_bounded() -> None:
    name = build_session_name("tenant-infra", "acme corp/east", epoch_s=1700000000)
    assert name == "tenant-infra-acme-corp-east-1700000000"

    long_name = build_session_name("tenant-infra", "x" * 200, epoch_s=1700000000)
    assert len(long_name) == 64
    assert long_name.endswith("-1700000000")


@pytest.mark.asyncio
async def test_assume_scoped_role_returns_tenant_scoped_credential() -> None:
    client = FakeStsClient()
    broker = _broker(client)

    credential = await broker.assume_scoped_role("111111111111", "t1")

    assert credential.tenant_id == "t1"
    assert credential.target_account_id == "111111111111"
    assert credential.role_arn == "arn:aws:iam::111111111111:role/CrossAccountTenantRole"
    assert credential.session_name.startswith("tenant-infra-t1-")
    assert not credential.is_expired()
    request = client.calls[0]
    assert request["DurationSeconds"] == 900
    assert "ExternalId" not in request
    assert "Tags" not in request
    # Secrets never show up in the credential repr.
    assert "secret" not in repr(credential)


@pytest.mark.asyncio
async def test_assume_scoped_role_sends_external_id_and_tags() -> None:
    client = FakeStsClient()
    broker = _broker(client, external_id="ext-123", tags_enabled=True)

    await broker.assume_scoped_role("111111111111", "t1")

    request = client.calls[0]
    assert request["ExternalId"] == "ext-123"
    assert request["Tags"] == [{"Key": "TenantId", "Value": "t1"}]


@pytest.mark.asyncio
async def test_access_denied_maps_to_trust_denied() -> None:
    client = FakeStsClient(errors=[client_error("AccessDenied", "not authorized", status=403)])

    with pytest.raises(TrustDeniedError):
        await _broker(client).assume_scoped_role("111111111111", "t1")
    assert counters_snapshot()["trust_denied_total"] == 1


@pytest.mark.asyncio
async def test_control_plane_faults_are_not_trust_denials() -> None:
    client = FakeStsClient(
        errors=[
            NoCredentialsError(),
            ParamValidationError(report="Invalid length for parameter RoleSessionName"),
            client_error("ValidationError", "DurationSeconds exceeds the MaxSessionDuration"),
        ]
    )
    broker = _broker(client)

    with pytest.raises(NoCredentialsError):
        await broker.assume_scoped_role("111111111111", "t1")
    with pytest.raises(ParamValidationError):
        await broker.assume_scoped_role("111111111111", "t1")
    with pytest.raises(ClientError):
        await broker.assume_scoped_role("111111111111", "t1")
    assert "trust_denied_total" not in counters_snapshot()


@pytest.mark.asyncio
async def test_throttling_and_network_errors_are_transient() -> None:
    client = FakeStsClient(
        errors=[
            client_error("Throttling", "rate exceeded"),
            EndpointConnectionError(endpoint_url="https://sts.amazonaws.com"),
        ]
    )
    broker = _broker(client)

    with pytest.raises(TrustUnavailableError):
        await broker.assume_scoped_role("111111111111", "t1")
    with pytest.raises(TrustUnavailableError):
        await broker.assume_scoped_role("111111111111", "t1")
    assert counters_snapshot()["trust_unavailable_total"] == 2


@pytest.mark.asyncio
async def test_invalid_account_is_denied_before_calling_sts() -> None:
    client = FakeStsClient()

    with pytest.raises(TrustDeniedError):
        await _broker(client).assume_scoped_role("not-an-account", "t1")
    assert client.calls == []


def test_credential_scope_is_enforced() -> None:
    credential = make_credential("t1", "111111111111")
    credential.ensure_scope(tenant_id="t1", target_account_id="111111111111")

    with pytest.raises(ProvisioningValidationError):
        credential.ensure_scope(tenant_id="t2")
    with pytest.raises(ProvisioningValidationError):
        credential.ensure_scope(tenant_id="t1", target_account_id="222222222222")

    expired = make_credential("t1", expires_in_s=-1)
    assert expired.is_expired()
    with pytest.raises(ProvisioningValidationError):
        expired.ensure_scope(tenant_id="t1")
    assert credential.is_expired(now=datetime.now(timezone.utc) + timedelta(hours=2))
