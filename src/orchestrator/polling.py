"""Bounded-retry readiness polling.

Used wherever the orchestrator waits for a backend to converge: pods
reaching Running, a load balancer receiving an IP, a load balancer going
away. A timeout is a result, not an exception. The resources were
already created (or deleted) successfully; convergence may simply be
slow, so callers log a warning and move on.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Poll site constants
WORKLOAD_POLL_INTERVAL_SECONDS = 5
WORKLOAD_POLL_MAX_ATTEMPTS = 60

EXTERNAL_IP_POLL_INTERVAL_SECONDS = 10
EXTERNAL_IP_POLL_MAX_ATTEMPTS = 30

LB_CLEANUP_POLL_INTERVAL_SECONDS = 5


class PollStatus(str, Enum):
    """Tri-state poll outcome."""

    READY = "ready"
    TIMED_OUT = "timed_out"
    ERROR = "error"


@dataclass
class PollResult(Generic[T]):
    """Outcome of poll_until.

    ``value`` is the truthy value the predicate returned on success, so
    callers can poll for a thing (an IP address) rather than a bool.
    """

    status: PollStatus
    attempts: int
    value: T | None = None
    error: Exception | None = None

    @property
    def ready(self) -> bool:
        return self.status is PollStatus.READY


def poll_until(
    predicate: Callable[[], T],
    interval_seconds: float,
    max_attempts: int,
    *,
    description: str = "condition",
    backoff: float = 1.0,
    max_interval_seconds: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> PollResult[T]:
    """Evaluate ``predicate`` until it returns a truthy value.

    Args:
        predicate: Idempotent read against an external system.
        interval_seconds: Sleep after the first failed attempt.
        max_attempts: Give up after this many evaluations.
        description: Human label used in log records.
        backoff: Multiplier applied to the interval after each failure.
        max_interval_seconds: Upper bound on the interval when backing off.
        sleep: Injected for tests.

    Returns:
        READY with the predicate's value, TIMED_OUT when attempts ran out,
        or ERROR when every attempt raised.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    interval = interval_seconds
    last_error: Exception | None = None
    errors = 0

    for attempt in range(1, max_attempts + 1):
        try:
            value = predicate()
        except Exception as e:
            errors += 1
            last_error = e
            value = None
            logger.debug(
                "Poll attempt raised",
                extra={"poll": description, "attempt": attempt, "error": str(e)},
            )

        if value:
            logger.debug("Poll succeeded", extra={"poll": description, "attempt": attempt})
            return PollResult(status=PollStatus.READY, attempts=attempt, value=value)

        logger.debug(
            "Waiting for %s (attempt %d/%d)",
            description,
            attempt,
            max_attempts,
            extra={"poll": description, "attempt": attempt},
        )

        if attempt < max_attempts:
            sleep(interval)
            interval = interval * backoff
            if max_interval_seconds is not None:
                interval = min(interval, max_interval_seconds)

    status = PollStatus.ERROR if errors == max_attempts else PollStatus.TIMED_OUT
    return PollResult(status=status, attempts=max_attempts, error=last_error)
