"""
Retry policy and backoff calculation for transient record store failures.

Only StoreUnavailableError is retried here. Business-rule rejections and
malformed input are never retried, and version conflicts are handled by the
caller's read-modify-write loop.

Backoff formula: base_delay * (2^attempt) +/- jitter, capped at max_delay.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from . import config
from .errors import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attributes:
        max_attempts: Total attempts including the first call
        base_delay_seconds: Delay before the second attempt
        max_delay_seconds: Cap for any single delay
        jitter_factor: Random jitter factor (0.25 = +/- 25%)
    """
    max_attempts: int = config.STORE_RETRY_MAX_ATTEMPTS
    base_delay_seconds: float = config.STORE_RETRY_BASE_DELAY_SECONDS
    max_delay_seconds: float = config.STORE_RETRY_MAX_DELAY_SECONDS
    jitter_factor: float = config.STORE_RETRY_JITTER_FACTOR

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")


def calculate_backoff(attempt: int, policy: RetryPolicy = RetryPolicy()) -> float:
    """Delay in seconds after the given 0-indexed failed attempt."""
    delay = policy.base_delay_seconds * (2 ** attempt)
    jitter_range = delay * policy.jitter_factor
    if jitter_range:
        delay += random.uniform(-jitter_range, jitter_range)
    return max(0.0, min(delay, policy.max_delay_seconds))


def call_with_retry(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy = RetryPolicy(),
    sleep: Callable[[float], None] = time.sleep,
    context: Optional[dict] = None,
) -> T:
    """Run ``operation``, retrying StoreUnavailableError with bounded backoff."""
    for attempt in range(policy.max_attempts):
        try:
            return operation()
        except StoreUnavailableError as exc:
            if attempt + 1 >= policy.max_attempts:
                logger.error(
                    "Entitlement store retries exhausted",
                    extra={**(context or {}), "attempts": attempt + 1, "error": str(exc)},
                )
                raise
            delay = calculate_backoff(attempt, policy)
            logger.warning(
                "Entitlement store unavailable, retrying",
                extra={**(context or {}), "attempt": attempt + 1, "delay_seconds": round(delay, 3)},
            )
            sleep(delay)
    raise AssertionError("unreachable")
