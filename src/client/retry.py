# src/client/retry.py - v2
"""Fixed-delay retry policy for idempotent reads.

Writes never go through here: a write is sent once and its failure is
surfaced to the caller as-is.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from annoreview.client.errors import READ_RETRYABLE_KINDS, ApiError, ErrorKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryConfig:
    """Retry configuration for reads."""

    max_retries: int = 2
    delay_s: float = 1.0
    retry_on: frozenset[ErrorKind] = READ_RETRYABLE_KINDS


DEFAULT_READ_RETRY = RetryConfig()
NO_RETRY = RetryConfig(max_retries=0)


async def with_retry(
    fn: Callable[..., Awaitable[Any]],
    *args: Any,
    config: RetryConfig = DEFAULT_READ_RETRY,
    label: str = "request",
    **kwargs: Any,
) -> Any:
    """Execute an async function, retrying classified failures.

    Raises:
        ApiError: The last failure once retries are exhausted, or the first
            failure whose kind is not retryable.
    """
    attempts = 0

    while True:
        try:
            return await fn(*args, **kwargs)
        except ApiError as e:
            attempts += 1
            if e.kind not in config.retry_on or attempts > config.max_retries:
                raise

            logger.warning(
                "%s - %s (attempt %d/%d), retrying in %.1fs",
                label, e.kind.value, attempts, config.max_retries, config.delay_s,
            )
            await asyncio.sleep(config.delay_s)
