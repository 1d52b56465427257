"""
Bounded exponential-backoff retries for idempotent async operations.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from utils.errors import AppError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 2,
    base_delay: float = 0.2,
    backoff_multiplier: float = 2.0,
    label: str = "operation",
) -> T:
    """
    Run ``operation`` and retry it on errors flagged ``retryable``.

    Only transient failures (``StoreUnavailable``, ``ProviderExchangeFailed``)
    are retried; security and client errors propagate immediately.  The
    last error is re-raised once ``max_retries`` extra attempts are spent.
    """
    delay = base_delay
    for attempt in range(max_retries + 1):
        try:
            return await operation()
        except AppError as exc:
            if not exc.retryable or attempt >= max_retries:
                raise
            logger.warning(
                "%s attempt %d/%d failed (%s), retrying in %.2fs",
                label,
                attempt + 1,
                max_retries + 1,
                exc.code,
                delay,
            )
            await asyncio.sleep(delay)
            delay *= backoff_multiplier
    raise RuntimeError("unreachable")  # pragma: no cover
