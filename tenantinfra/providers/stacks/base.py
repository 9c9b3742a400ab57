from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from tenantinfra.domain.state import InfrastructureStatus, Operation, PollOutcome
from tenantinfra.providers.trust.base import ScopedCredential


@dataclass(frozen=True)
class DeploymentTarget:
    tenant_id: str
    tenant_name: str | None
    target_account_id: str
    email: str | None = None
    actor: str | None = None
    timestamp: str | None = None
    stack_handle: str | None = None


@dataclass(frozen=True)
class DeploymentResult:
    operation: Operation
    status: InfrastructureStatus
    stack_name: str
    table_name: str
    stack_handle: str | None = None
    # False means the status is already terminal and polling is skipped.
    requires_polling: bool = False
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PollResult:
    # PollOutcome for recognised statuses; raw provider status string otherwise.
    status: PollOutcome | str
    detail: dict[str, Any] = field(default_factory=dict)


class StackDeployer(Protocol):
    async def create(self, target: DeploymentTarget, credential: ScopedCredential) -> DeploymentResult:
        ...

    async def delete(self, target: DeploymentTarget, credential: ScopedCredential) -> DeploymentResult:
        ...


class StackStatusPoller(Protocol):
    async def poll_status(
        self,
        stack_handle: str,
        credential: ScopedCredential,
        operation: Operation,
    ) -> PollResult:
        ...
