from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable

from printvault.core.config import get_settings
from printvault.core.errors import PrintVaultError, UpstreamFailureError
from printvault.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

# Network blips and slow peers; everything else is a bug or a domain outcome.
_TRANSIENT = (TimeoutError, asyncio.TimeoutError, ConnectionError, OSError)


def is_transient(exc: Exception) -> bool:
    if isinstance(exc, PrintVaultError):
        return False
    if isinstance(exc, _TRANSIENT):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    def with_timeout(self, timeout_ms: int) -> "RetryPolicy":
        return replace(self, timeout_ms=timeout_ms)

    def delay_s(self, attempt: int) -> float:
        # Exponential from the base, jittered so parallel page workers spread out.
        return (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=max(1, settings.ext_retry_max_attempts),
        backoff_ms=settings.ext_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    integration: str = "external",
) -> Any:
    policy = policy or default_retry_policy()
    retryable = retryable or is_transient
    timeout_s = policy.timeout_ms / 1000.0
    for attempt in range(1, max(policy.max_attempts, 1) + 1):
        try:
            return await asyncio.wait_for(func(), timeout=timeout_s)
        except Exception as exc:  # noqa: BLE001 - re-raised unless the policy allows another attempt
            if attempt >= policy.max_attempts or not retryable(exc):
                raise
            increment_counter(f"external_retries_total.{integration}")
            logger.info(
                "external_call_retry integration=%s attempt=%s error=%s",
                integration,
                attempt,
                exc.__class__.__name__,
            )
            await asyncio.sleep(policy.delay_s(attempt))


async def bounded_call(
    integration: str,
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    """Call the object store, queue or rasterizer with a deadline and retries.

    Domain errors raised inside `func` (a missing object, say) pass through
    unchanged. Any other failure, timeouts included, becomes an
    `UpstreamFailureError` tagged with the integration name.
    """
    start = time.monotonic()
    success = False
    try:
        result = await retry_async(func, policy=policy, retryable=retryable, integration=integration)
        success = True
        return result
    except PrintVaultError:
        raise
    except Exception as exc:  # noqa: BLE001 - normalized into a domain error
        logger.warning("external_call_failed integration=%s error=%s", integration, exc.__class__.__name__)
        raise UpstreamFailureError(f"{integration} call failed", integration=integration) from exc
    finally:
        record_external_call(
            integration=integration,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=success,
        )
