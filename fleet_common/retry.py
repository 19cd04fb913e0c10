"""
Bounded exponential backoff with jitter.

Used for transient cloud API failures and registry pushes. Device API
calls are deliberately not routed through here; they fail fast.
"""

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .config import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(policy: RetryPolicy, attempt: int, scaler: float = 2.0) -> float:
    """
    Compute the delay in seconds before retrying after ``attempt`` failures.

    The exponential delay is capped at ``max_delay_ms`` and then jittered
    uniformly between ``min_delay_ms`` and the capped value.
    """
    ceiling = min(policy.max_delay_ms, policy.min_delay_ms * scaler ** (attempt - 1))
    return random.uniform(policy.min_delay_ms, max(ceiling, policy.min_delay_ms)) / 1000


def retry_call(
    func: Callable[[], T],
    policy: RetryPolicy,
    should_retry: Callable[[Exception], bool],
    label: str = "operation",
) -> T:
    """
    Call ``func`` until it succeeds or the policy is exhausted.

    Args:
        func: Zero-argument callable to invoke
        policy: Backoff settings
        should_retry: Predicate deciding whether an exception is transient
        label: Description used in log messages

    Returns:
        The value returned by ``func``

    Raises:
        The last exception raised by ``func`` once attempts run out, or
        immediately if ``should_retry`` rejects it
    """
    attempt = 1
    while True:
        try:
            return func()
        except Exception as e:
            if attempt >= policy.max_attempts or not should_retry(e):
                raise
            delay = backoff_delay(policy, attempt)
            logger.warning(
                f"{label} failed ({e}); retrying in {delay:.1f}s "
                f"(attempt {attempt + 1}/{policy.max_attempts})"
            )
            time.sleep(delay)
            attempt += 1


async def retry_async(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    should_retry: Callable[[Exception], bool] = lambda e: True,
    label: str = "operation",
    scaler: float = 2.0,
) -> T:
    """Async counterpart of retry_call. Cancellation is never retried."""
    attempt = 1
    while True:
        try:
            return await func()
        except Exception as e:
            if attempt >= policy.max_attempts or not should_retry(e):
                raise
            delay = backoff_delay(policy, attempt, scaler)
            logger.warning(
                f"{label} failed ({e}); retrying in {delay:.1f}s "
                f"(attempt {attempt + 1}/{policy.max_attempts})"
            )
            await asyncio.sleep(delay)
            attempt += 1
