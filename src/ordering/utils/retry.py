"""Bounded retry with exponential backoff and jitter."""

import random
import time
from collections.abc import Callable
from typing import TypeVar

import structlog

from ordering.config import RetryPolicy

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def calculate_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Delay before retry number ``attempt`` (1-based), capped at ``max_delay``."""
    delay = min(policy.base_delay * (2 ** (attempt - 1)), policy.max_delay)
    if policy.jitter:
        delay += delay * policy.jitter * random.random()
    return delay


def retry_with_backoff(
    operation: Callable[[], T],
    policy: RetryPolicy,
    retry_on: tuple[type[Exception], ...],
    description: str,
) -> T:
    """Run ``operation`` until it succeeds or the attempts are exhausted.

    Only exceptions listed in ``retry_on`` are retried; the last one is re-raised.
    """
    attempt = 1
    while True:
        try:
            return operation()
        except retry_on as exc:
            if attempt >= policy.max_attempts:
                logger.error(
                    "Retries exhausted",
                    operation=description,
                    attempts=attempt,
                    error=str(exc),
                )
                raise
            delay = calculate_backoff(attempt, policy)
            logger.warning(
                "Retrying after failure",
                operation=description,
                attempt=attempt,
                delay=round(delay, 4),
                error=str(exc),
            )
            time.sleep(delay)
            attempt += 1
