from __future__ import annotations

from typing import Callable

from tenantinfra.core.errors import ProvisioningValidationError
from tenantinfra.domain.state import SubscriptionTier
from tenantinfra.providers.stacks.base import StackDeployer
from tenantinfra.providers.stacks.cloudformation import CloudFormationStackDeployer
from tenantinfra.providers.stacks.public_table import PublicTableDeployer


class StackDeployerRouter:
    def __init__(
        self,
        deployer_factories: dict[SubscriptionTier, Callable[[], StackDeployer]] | None = None,
    ) -> None:
        # Allow injecting deployers for tests without touching AWS.
        self._factories = deployer_factories or {
            SubscriptionTier.PUBLIC: PublicTableDeployer,
            SubscriptionTier.PRIVATE: CloudFormationStackDeployer,
        }
        self._instances: dict[SubscriptionTier, StackDeployer] = {}

    def for_tier(self, tier: SubscriptionTier | str) -> StackDeployer:
        try:
            tier = SubscriptionTier(tier)
        except ValueError as exc:
            raise ProvisioningValidationError(f"Unsupported subscription tier: {tier!r}") from exc
        factory = self._factories.get(tier)
        if factory is None:
            raise ProvisioningValidationError(f"No deployer registered for tier {tier.value}")
        if tier not in self._instances:
            self._instances[tier] = factory()
        return self._instances[tier]
