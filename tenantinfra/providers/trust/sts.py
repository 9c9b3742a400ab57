from __future__ import annotations

import asyncio
import logging
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any

from tenantinfra.core.config import get_settings
from tenantinfra.core.errors import (
    ProvisioningValidationError,
    TrustDeniedError,
    TrustUnavailableError,
)
from tenantinfra.providers.aws import errors as aws_errors
from tenantinfra.providers.trust.base import ScopedCredential
from tenantinfra.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

_ACCOUNT_ID_RE = re.compile(r"^\d{12}$")
# STS RoleSessionName alphabet: [\w+=,.@-], 2-64 chars.
_SESSION_NAME_INVALID = re.compile(r"[^\w+=,.@-]")
_SESSION_NAME_MAX = 64


def build_role_arn(target_account_id: str, role_name: str) -> str:
    if not _ACCOUNT_ID_RE.match(target_account_id or ""):
        raise TrustDeniedError(f"Target account id must be 12 digits: {target_account_id!r}")
    return f"arn:aws:iam::{target_account_id}:role/{role_name}"


def build_session_name(prefix: str, tenant_id: str, *, epoch_s: int | None = None) -> str:
    # Tenant id in the session name makes CloudTrail entries traceable per tenant.
    epoch_s = int(time.time()) if epoch_s is None else epoch_s
    suffix = f"-{epoch_s}"
    raw = _SESSION_NAME_INVALID.sub("-", f"{prefix}-{tenant_id}")
    return raw[: _SESSION_NAME_MAX - len(suffix)] + suffix


class StsTrustBroker:
    def __init__(
        self,
        *,
        role_name: str | None = None,
        region: str | None = None,
        duration_s: int | None = None,
        external_id: str | None = None,
        session_prefix: str | None = None,
        tags_enabled: bool | None = None,
        client: Any | None = None,
    ) -> None:
        settings = get_settings()
        self._role_name = role_name or settings.cross_account_role_name
        self._region = region or settings.aws_region
        self._duration_s = duration_s or settings.assume_role_duration_s
        self._external_id = external_id if external_id is not None else settings.cross_account_external_id
        self._session_prefix = session_prefix or settings.trust_session_prefix
        self._tags_enabled = settings.trust_session_tags_enabled if tags_enabled is None else tags_enabled
        self._client = client

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        import boto3

        # Control-plane credentials; this is the only client built without a scoped credential.
        self._client = boto3.client("sts", region_name=self._region)
        return self._client

    async def assume_scoped_role(self, target_account_id: str, tenant_id: str) -> ScopedCredential:
        if not tenant_id:
            raise ProvisioningValidationError("tenant_id is required to assume a scoped role")
        role_arn = build_role_arn(target_account_id, self._role_name)
        session_name = build_session_name(self._session_prefix, tenant_id)
        request: dict[str, Any] = {
            "RoleArn": role_arn,
            "RoleSessionName": session_name,
            "DurationSeconds": self._duration_s,
        }
        if self._external_id:
            request["ExternalId"] = self._external_id
        if self._tags_enabled:
            request["Tags"] = [{"Key": "TenantId", "Value": tenant_id}]

        logger.info(
            "assume_role_requested tenant_id=%s target_account_id=%s session=%s",
            tenant_id,
            target_account_id,
            session_name,
        )
        client = self._get_client()
        start = time.monotonic()
        try:
            response = await asyncio.to_thread(client.assume_role, **request)
        except Exception as exc:
            record_external_call(
                integration="aws.sts",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            if aws_errors.is_transient(exc):
                increment_counter("trust_unavailable_total")
                logger.warning(
                    "assume_role_unavailable tenant_id=%s target_account_id=%s code=%s",
                    tenant_id,
                    target_account_id,
                    aws_errors.error_code(exc),
                )
                raise TrustUnavailableError("Trust broker temporarily unavailable") from exc
            if not aws_errors.is_access_denied(exc):
                # Control-plane faults (missing credentials, bad parameters) are not a refusal.
                logger.error(
                    "assume_role_failed tenant_id=%s target_account_id=%s error=%s",
                    tenant_id,
                    target_account_id,
                    exc.__class__.__name__,
                )
                raise
            increment_counter("trust_denied_total")
            logger.error(
                "assume_role_denied tenant_id=%s target_account_id=%s code=%s",
                tenant_id,
                target_account_id,
                aws_errors.error_code(exc),
            )
            raise TrustDeniedError(
                f"Target account {target_account_id} refused role assumption"
            ) from exc

        record_external_call(
            integration="aws.sts",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        creds = response.get("Credentials") or {}
        expiration = creds.get("Expiration")
        if isinstance(expiration, str):
            expiration = datetime.fromisoformat(expiration.replace("Z", "+00:00"))
        if not isinstance(expiration, datetime):
            expiration = datetime.now(timezone.utc) + timedelta(seconds=self._duration_s)
        elif expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=timezone.utc)
        if not creds.get("AccessKeyId") or not creds.get("SecretAccessKey"):
            raise TrustDeniedError("Role assumption returned no credentials")

        assumed_arn = (response.get("AssumedRoleUser") or {}).get("Arn")
        logger.info(
            "assume_role_succeeded tenant_id=%s target_account_id=%s assumed_arn=%s",
            tenant_id,
            target_account_id,
            assumed_arn,
        )
        return ScopedCredential(
            access_key_id=creds["AccessKeyId"],
            secret_access_key=creds["SecretAccessKey"],
            session_token=creds.get("SessionToken", ""),
            expiration=expiration,
            target_account_id=target_account_id,
            tenant_id=tenant_id,
            session_name=session_name,
            role_arn=role_arn,
        )
