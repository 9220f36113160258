from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from dataroom.core.config import get_settings
from dataroom.core.errors import StorageUnavailable


logger = logging.getLogger(__name__)


TransientException = (StorageUnavailable, TimeoutError, OSError)


def _default_retryable(exc: Exception) -> bool:
    # Only collaborator outages are retried; access decisions are terminal.
    return isinstance(exc, TransientException)


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.storage_timeout_ms,
        max_attempts=settings.storage_retry_max_attempts,
        backoff_ms=settings.storage_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    # Retry helper with jittered exponential backoff for transient failures only.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                if isinstance(exc, asyncio.TimeoutError) and not isinstance(exc, StorageUnavailable):
                    raise StorageUnavailable("Object store call timed out") from exc
                raise
            logger.info("storage_retry attempt=%s error=%s", attempt, exc.__class__.__name__)
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            await asyncio.sleep(sleep_s)
            attempt += 1
