from __future__ import annotations

import logging

from arq.connections import RedisSettings

from tenantinfra.core.config import get_settings
from tenantinfra.core.logging import configure_logging
from tenantinfra.services.provisioning.queue import process_step
from tenantinfra.services.provisioning.workflow import ProvisioningWorkflow


logger = logging.getLogger(__name__)


async def run_provisioning_step(ctx, payload: dict) -> dict | None:
    # Each job runs one state; the next state is re-enqueued (deferred when it has to wait).
    workflow = ctx.get("workflow") or ProvisioningWorkflow()
    return await process_step(payload, workflow=workflow, redis=ctx.get("redis"))


async def _startup(ctx) -> None:
    # Build AWS clients and the registry writer once per worker process.
    configure_logging()
    ctx["workflow"] = ProvisioningWorkflow()
    logger.info("provisioning_worker_started queue=%s", get_settings().provisioning_queue_name)


async def _shutdown(ctx) -> None:
    logger.info("provisioning_worker_stopped")


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.provisioning_queue_name
    # Step retries live in the workflow payload, not in arq.
    max_tries = 1
    job_timeout = int(settings.step_timeout_s * 2)
    functions = [run_provisioning_step]
    on_startup = _startup
    on_shutdown = _shutdown
