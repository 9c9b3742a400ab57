from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from tenantinfra.core.errors import ProvisioningValidationError


@dataclass(frozen=True)
class ScopedCredential:
    # Short-lived keys for one tenant in one target account; never persisted.
    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: str = field(repr=False)
    expiration: datetime
    target_account_id: str
    tenant_id: str
    session_name: str
    role_arn: str

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expiration

    def ensure_scope(self, *, tenant_id: str, target_account_id: str | None = None) -> None:
        # Refuse reuse across tenants or accounts; each operation assumes its own role.
        if tenant_id != self.tenant_id:
            raise ProvisioningValidationError("Scoped credential belongs to a different tenant")
        if target_account_id is not None and target_account_id != self.target_account_id:
            raise ProvisioningValidationError("Scoped credential belongs to a different account")
        if self.is_expired():
            raise ProvisioningValidationError("Scoped credential has expired")


class TrustBroker(Protocol):
    async def assume_scoped_role(self, target_account_id: str, tenant_id: str) -> ScopedCredential:
        ...
