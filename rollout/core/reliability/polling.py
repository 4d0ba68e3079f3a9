"""
Bounded polling — wait for a readiness probe to converge.

Uses exponential backoff with jitter, capped at ``max_interval``.
Every wait has a deadline: the outcome is always one of ready,
degraded or timeout, never an unbounded loop.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum

from rollout.core.models.resource import ProbeResult, ProbeStatus

logger = logging.getLogger(__name__)


class WaitStatus(StrEnum):
    READY = "ready"
    DEGRADED = "degraded"
    TIMEOUT = "timeout"


@dataclass
class WaitResult:
    """Outcome of a bounded wait."""

    status: WaitStatus
    last: ProbeResult | None = None
    attempts: int = 0
    elapsed: float = 0.0
    history: list[str] = field(default_factory=list)

    @property
    def ready(self) -> bool:
        return self.status == WaitStatus.READY

    @property
    def message(self) -> str:
        return self.last.message if self.last else ""


def next_delay(
    attempt: int,
    interval: float,
    backoff: float,
    max_interval: float,
    jitter: float = 0.1,
) -> float:
    """Delay before poll ``attempt + 1``: exponential, capped, with jitter."""
    delay = min(interval * (backoff ** attempt), max_interval)
    return delay + random.uniform(0, delay * jitter)


def wait_until(
    check: Callable[[], ProbeResult],
    timeout: float,
    interval: float = 10.0,
    backoff: float = 1.5,
    max_interval: float = 60.0,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
    on_poll: Callable[[ProbeResult, int], None] | None = None,
) -> WaitResult:
    """Poll ``check`` until it reports ready or degraded, or time runs out.

    The first poll happens immediately. Sleeps never overshoot the
    deadline; one final poll is made at the deadline.

    Args:
        check: Returns the current ProbeResult.
        timeout: Budget in seconds.
        interval: First delay between polls.
        backoff: Multiplier applied to the delay after each poll.
        max_interval: Upper bound on a single delay.
        clock: Monotonic clock (injectable for tests).
        sleep: Sleep function (injectable for tests).
        on_poll: Called with each result and the attempt number.
    """
    start = clock()
    deadline = start + max(timeout, 0.0)
    result = WaitResult(status=WaitStatus.TIMEOUT)

    while True:
        last = check()
        result.attempts += 1
        result.last = last
        result.history.append(last.message)
        if on_poll:
            on_poll(last, result.attempts)

        if last.status == ProbeStatus.READY:
            result.status = WaitStatus.READY
            break
        if last.status == ProbeStatus.DEGRADED:
            result.status = WaitStatus.DEGRADED
            break

        now = clock()
        if now >= deadline:
            result.status = WaitStatus.TIMEOUT
            break

        delay = next_delay(result.attempts - 1, interval, backoff, max_interval)
        delay = min(delay, deadline - now)
        logger.debug(
            "Not ready (%s); polling again in %.1fs (attempt %d)",
            last.message, delay, result.attempts,
        )
        sleep(delay)

    result.elapsed = clock() - start
    return result
