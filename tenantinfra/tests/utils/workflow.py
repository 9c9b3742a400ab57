from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from tenantinfra.core.config import Settings
from tenantinfra.domain.state import SubscriptionTier
from tenantinfra.providers.stacks.cloudformation import CloudFormationStackDeployer
from tenantinfra.providers.stacks.poller import CloudFormationStatusPoller
from tenantinfra.providers.stacks.public_table import PublicTableDeployer
from tenantinfra.providers.stacks.router import StackDeployerRouter
from tenantinfra.providers.trust.sts import StsTrustBroker
from tenantinfra.services.provisioning.workflow import ProvisioningServices, ProvisioningWorkflow
from tenantinfra.services.registry import RegistryWriter
from tenantinfra.services.resilience import RetryPolicy
from tenantinfra.tests.utils.aws import FakeClientFactory, FakeStsClient


TARGET_ACCOUNT = "111111111111"
PUBLIC_TABLE = "TENANT_PUBLIC"


class FakeClock:
    """Manual clock; sleeping advances time instead of blocking."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    async def sleep(self, delay_s: float) -> None:
        self.sleeps.append(delay_s)
        self.now += timedelta(seconds=delay_s)


@dataclass
class WorkflowHarness:
    workflow: ProvisioningWorkflow
    clients: FakeClientFactory
    sts: FakeStsClient
    clock: FakeClock
    registry: RegistryWriter
    settings: Settings


def make_settings(**overrides) -> Settings:
    values = {
        "default_target_account_id": None,
        "public_table_name": PUBLIC_TABLE,
        "stack_name_prefix": "tenant",
        "workspace": "dev",
        "environment": "test",
        "poll_wait_interval_s": 30.0,
        "poll_max_iterations": 10,
        "poll_max_duration_s": 1800.0,
    }
    values.update(overrides)
    return Settings(**values)


def build_harness(
    registry: RegistryWriter,
    *,
    clients: FakeClientFactory | None = None,
    sts: FakeStsClient | None = None,
    settings: Settings | None = None,
    deploy_policy: RetryPolicy | None = None,
    poll_policy: RetryPolicy | None = None,
) -> WorkflowHarness:
    settings = settings or make_settings()
    clients = clients or FakeClientFactory()
    sts = sts or FakeStsClient()
    clock = FakeClock()
    batch_policy = RetryPolicy(max_attempts=3, base_delay_s=0.1, backoff_factor=2.0, timeout_s=5.0)
    deployers = StackDeployerRouter(
        {
            SubscriptionTier.PUBLIC: lambda: PublicTableDeployer(
                table_name=settings.public_table_name,
                client_factory=clients,
                batch_policy=batch_policy,
                sleep=clock.sleep,
            ),
            SubscriptionTier.PRIVATE: lambda: CloudFormationStackDeployer(
                stack_name_prefix=settings.stack_name_prefix,
                workspace=settings.workspace,
                environment=settings.environment,
                timeout_minutes=settings.stack_timeout_minutes,
                client_factory=clients,
                sleep=clock.sleep,
            ),
        }
    )
    services = ProvisioningServices(
        trust_broker=StsTrustBroker(
            role_name="CrossAccountTenantRole",
            region="us-east-1",
            duration_s=900,
            external_id="",
            session_prefix="tenant-infra",
            tags_enabled=False,
            client=sts,
        ),
        deployers=deployers,
        poller=CloudFormationStatusPoller(client_factory=clients),
        registry=registry,
    )
    workflow = ProvisioningWorkflow(
        services,
        settings=settings,
        deploy_policy=deploy_policy
        or RetryPolicy(max_attempts=3, base_delay_s=30.0, backoff_factor=2.0, timeout_s=5.0),
        poll_policy=poll_policy
        or RetryPolicy(max_attempts=5, base_delay_s=10.0, backoff_factor=1.5, timeout_s=5.0),
        clock=clock,
    )
    return WorkflowHarness(
        workflow=workflow,
        clients=clients,
        sts=sts,
        clock=clock,
        registry=registry,
        settings=settings,
    )
