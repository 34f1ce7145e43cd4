"""Bounded polling and retry.

A single combinator used for every wait in the pipeline: SSH reachability,
cloud-init completion, VM boot, NBD partition discovery and apt retries.
Every loop has an attempt ceiling; there is no unbounded retry.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhaustedError(TimeoutError):
    """Raised when a polled condition never became true."""

    def __init__(
        self,
        description: str,
        attempts: int,
        last_error: BaseException | None = None,
        code: str = "retry_exhausted",
    ) -> None:
        message = f"{description} not satisfied after {attempts} attempt(s)"
        if last_error is not None:
            message += f": {last_error}"
        super().__init__(message)
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        self.code = code


def poll(
    predicate: Callable[[], T | None],
    *,
    attempts: int,
    interval: float,
    description: str,
    retry_on: tuple[type[BaseException], ...] = (),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``predicate`` until it returns a truthy value.

    Args:
        predicate: Zero-argument callable. A truthy return ends polling and is
            returned to the caller.
        attempts: Maximum number of calls (must be >= 1).
        interval: Seconds to sleep between calls.
        description: Human-readable name used in logs and errors.
        retry_on: Exception types treated as a failed attempt instead of
            propagating.
        sleep: Sleep function (injectable for tests).

    Returns:
        The first truthy value returned by ``predicate``.

    Raises:
        ValueError: If attempts < 1.
        RetryExhaustedError: If no attempt succeeded.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    last_error: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            value = predicate()
        except retry_on as e:
            last_error = e
            value = None
            logger.debug("%s: attempt %d/%d raised %s", description, attempt, attempts, e)
        else:
            if value:
                if attempt > 1:
                    logger.debug("%s: satisfied on attempt %d", description, attempt)
                return value
            logger.debug("%s: attempt %d/%d not ready", description, attempt, attempts)

        if attempt < attempts:
            sleep(interval)

    raise RetryExhaustedError(description, attempts, last_error)


__all__ = ["RetryExhaustedError", "poll"]
