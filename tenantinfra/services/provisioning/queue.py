from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from arq import create_pool
from arq.connections import RedisSettings

from tenantinfra.core.config import get_settings
from tenantinfra.core.errors import WorkflowFailedError
from tenantinfra.services.provisioning.payload import WorkflowExecution
from tenantinfra.services.provisioning.workflow import ProvisioningWorkflow


logger = logging.getLogger(__name__)

STEP_FUNCTION_NAME = "run_provisioning_step"

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.provisioning_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


def step_job_id(execution: WorkflowExecution) -> str:
    # One job id per step keeps re-enqueues idempotent if a worker crashes mid-handoff.
    return f"{execution.execution_id}:{execution.seq}"


def finish(execution: WorkflowExecution) -> dict[str, Any]:
    # Successful executions return their output; failures raise with the full payload.
    if execution.output is None:
        raise RuntimeError("Workflow execution has not finished")
    if execution.output["result"]["success"]:
        return execution.output
    raise WorkflowFailedError(execution.output)


async def run_inline(
    workflow: ProvisioningWorkflow,
    execution: WorkflowExecution,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> dict[str, Any]:
    # Inline mode drives every step in-process; waits become plain sleeps.
    while not execution.finished:
        outcome = await workflow.advance(execution)
        execution = outcome.execution
        if outcome.delay_s > 0 and not execution.finished:
            await sleep(outcome.delay_s)
    return finish(execution)


async def enqueue_step(execution: WorkflowExecution, *, delay_s: float = 0.0, redis: Any | None = None) -> str:
    settings = get_settings()
    redis = redis or await get_redis_pool()
    job_id = step_job_id(execution)
    kwargs: dict[str, Any] = {"_job_id": job_id, "_queue_name": settings.provisioning_queue_name}
    if delay_s > 0:
        # Deferred job releases the worker for the whole wait.
        kwargs["_defer_by"] = delay_s
    job = await redis.enqueue_job(STEP_FUNCTION_NAME, execution.model_dump(mode="json"), **kwargs)
    # When a job id already exists, arq returns None; keep tracing with the same id.
    return job.job_id if job else job_id


async def start_workflow(
    raw_input: dict[str, Any],
    *,
    workflow: ProvisioningWorkflow | None = None,
    execution_id: str | None = None,
) -> tuple[WorkflowExecution, dict[str, Any] | None]:
    """Start one tenant infrastructure operation.

    Inline mode runs to completion and returns the output (or raises
    WorkflowFailedError). Queue mode enqueues the first step and returns no output.
    """
    settings = get_settings()
    workflow = workflow or ProvisioningWorkflow()
    execution = workflow.new_execution(raw_input, execution_id=execution_id)
    if settings.provisioning_execution_mode.lower() == "inline":
        output = await run_inline(workflow, execution)
        return execution, output

    job_id = await enqueue_step(execution)
    logger.info(
        "provisioning_enqueued execution_id=%s tenant_id=%s job_id=%s",
        execution.execution_id,
        execution.tenant_id,
        job_id,
    )
    return execution, None


async def process_step(
    payload: dict[str, Any],
    *,
    workflow: ProvisioningWorkflow,
    redis: Any | None = None,
) -> dict[str, Any] | None:
    # Run exactly one step, then hand the next one back to the queue.
    execution = WorkflowExecution.model_validate(payload)
    outcome = await workflow.advance(execution)
    execution = outcome.execution
    if execution.finished:
        return finish(execution)
    await enqueue_step(execution, delay_s=outcome.delay_s, redis=redis)
    return None
