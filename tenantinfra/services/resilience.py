from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from tenantinfra.core.config import Settings, get_settings
from tenantinfra.core.errors import TenantInfraError
from tenantinfra.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError)


def is_retryable_error(exc: Exception) -> bool:
    # Retry classified transient errors and raw network/timeout failures only.
    if isinstance(exc, TenantInfraError):
        return exc.retryable
    return isinstance(exc, TransientException)


@dataclass(frozen=True)
class RetryPolicy:
    # Per-step retry knobs passed explicitly so tests can shrink delays.
    max_attempts: int
    base_delay_s: float
    backoff_factor: float
    timeout_s: float

    def delay_for(self, attempt: int) -> float:
        # Delay before retry number `attempt` (1-based): base * factor^(attempt-1).
        return self.base_delay_s * (self.backoff_factor ** max(attempt - 1, 0))

    def allows_retry(self, attempt: int) -> bool:
        return attempt < max(self.max_attempts, 1)


def deploy_retry_policy(settings: Settings | None = None) -> RetryPolicy:
    settings = settings or get_settings()
    return RetryPolicy(
        max_attempts=settings.deploy_max_attempts,
        base_delay_s=settings.deploy_base_delay_s,
        backoff_factor=settings.deploy_backoff_factor,
        timeout_s=settings.step_timeout_s,
    )


def poll_retry_policy(settings: Settings | None = None) -> RetryPolicy:
    settings = settings or get_settings()
    return RetryPolicy(
        max_attempts=settings.poll_max_attempts,
        base_delay_s=settings.poll_base_delay_s,
        backoff_factor=settings.poll_backoff_factor,
        timeout_s=settings.step_timeout_s,
    )


def batch_retry_policy(settings: Settings | None = None) -> RetryPolicy:
    settings = settings or get_settings()
    return RetryPolicy(
        max_attempts=settings.batch_delete_max_retries + 1,
        base_delay_s=settings.batch_delete_base_delay_ms / 1000.0,
        backoff_factor=2.0,
        timeout_s=settings.step_timeout_s,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] | None = None,
    jitter: bool = True,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Any:
    # In-process retry with jittered backoff for transient failures only.
    retryable = retryable or is_retryable_error
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_s)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if not policy.allows_retry(attempt) or not retryable(exc):
                raise
            # Track retry volume so operators can detect retry storms.
            increment_counter("in_process_retries_total")
            delay = policy.delay_for(attempt)
            if jitter:
                delay *= random.uniform(0.5, 1.5)
            logger.debug("retry_scheduled attempt=%s delay_s=%.3f error=%s", attempt, delay, exc)
            await sleep(delay)
            attempt += 1
