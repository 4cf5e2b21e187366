"""
resilience.py - Timeouts and bounded retries around external calls.

Embedding, index search, reranking and generation are all blocking
provider calls. On the query path each one runs in a worker thread under
asyncio.wait_for, so the owning query task stays cancellable at every
call. Failures and timeouts are retried with capped exponential backoff;
when the budget is spent StageExhausted carries the stage name and the
last error to the caller, which decides between escalation and failure.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Optional, TypeVar

from tender_qa.config import ResilienceConfig, config
from tender_qa.errors import StageExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number `attempt` (1-based): base * 2^(attempt-1), capped."""
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


async def call_with_retry(
    stage: str,
    fn: Callable[..., T],
    *args: Any,
    timeout: float,
    resilience: Optional[ResilienceConfig] = None,
    **kwargs: Any,
) -> T:
    """
    Run a blocking fn(*args, **kwargs) in a thread with a timeout and
    retry budget. Cancellation of the calling task propagates immediately
    and is never retried.

    Raises:
        StageExhausted: every attempt failed or timed out.
    """
    rc = resilience or config.resilience
    attempts = rc.max_retries + 1
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs), timeout=timeout
            )
        except asyncio.TimeoutError as exc:
            last_error = exc
            logger.warning("%s timed out after %.1fs (attempt %d/%d)",
                           stage, timeout, attempt, attempts)
        except Exception as exc:
            last_error = exc
            logger.warning("%s attempt %d/%d failed: %s", stage, attempt, attempts, exc)

        if attempt < attempts:
            await asyncio.sleep(backoff_delay(attempt, rc.base_delay, rc.max_delay))

    logger.error("%s exhausted %d attempts: %s", stage, attempts, last_error)
    raise StageExhausted(stage, last_error)


def retry_call(
    stage: str,
    fn: Callable[..., T],
    *args: Any,
    max_retries: int,
    base_delay: float,
    max_delay: float,
    **kwargs: Any,
) -> T:
    """Synchronous counterpart used by the indexing workers."""
    attempts = max_retries + 1
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            return fn(*args, **kwargs)
        except Exception as exc:
            last_error = exc
            logger.warning("%s attempt %d/%d failed: %s", stage, attempt, attempts, exc)
        if attempt < attempts:
            time.sleep(backoff_delay(attempt, base_delay, max_delay))

    raise StageExhausted(stage, last_error)
