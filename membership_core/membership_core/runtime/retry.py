"""Bounded retry with exponential backoff for outbound calls.

Only exception types listed as retryable trigger another attempt; anything
else (for example a definitive "not found" or an authentication rejection)
propagates on the first failure.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig(BaseModel):
    """Tuneable parameters for retry behaviour."""

    max_attempts: int = Field(
        default=3,
        ge=1,
        description="Total number of attempts, including the first call.",
    )
    base_delay: float = Field(
        default=1.0,
        gt=0.0,
        description="Delay in seconds before the second attempt; doubles afterwards.",
    )
    max_delay: float = Field(
        default=30.0,
        gt=0.0,
        description="Upper bound on a single delay in seconds.",
    )
    jitter: bool = Field(
        default=False,
        description="When enabled, randomise the delay within [0.5x, 1.5x].",
    )


def compute_delay(attempt: int, config: RetryConfig) -> float:
    """Delay to wait after the zero-based failed *attempt*."""
    delay: float = min(config.base_delay * (2**attempt), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


async def async_retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    *,
    operation: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await *fn* until it succeeds or the attempts are exhausted.

    Parameters
    ----------
    fn:
        Zero-argument coroutine function.  It is invoked from scratch on each
        attempt and must be safe to call repeatedly.
    config:
        Retry parameters (see :class:`RetryConfig`).
    retryable_exceptions:
        Exception types that trigger another attempt.  All other exceptions
        propagate immediately.
    operation:
        Label used in retry log lines.
    sleep:
        Awaitable sleep, replaced in tests to avoid real delays.

    Returns
    -------
    T
        The result of the first successful call.

    Raises
    ------
    Exception
        The last retryable exception once every attempt has failed.
    """
    last_exception: Exception | None = None

    for attempt in range(config.max_attempts):
        try:
            return await fn()
        except retryable_exceptions as exc:
            last_exception = exc
            if attempt + 1 >= config.max_attempts:
                break
            delay = compute_delay(attempt, config)
            logger.warning(
                "%s attempt %d/%d failed, retrying in %.1fs: %s",
                operation,
                attempt + 1,
                config.max_attempts,
                delay,
                exc,
            )
            await sleep(delay)

    assert last_exception is not None  # noqa: S101
    raise last_exception
