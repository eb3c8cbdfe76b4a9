"""Bounded poll-until-true primitive shared by enable confirmation and verification."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

ENABLE_POLL_INTERVAL = 0.1
ENABLE_POLL_ATTEMPTS = 30


class PollResult(Enum):
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"
    ABORTED = "aborted"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Fixed-interval polling budget.

    ``initial_delay`` is waited once before the first check, then the
    predicate is evaluated at most ``max_attempts`` times with ``interval``
    between evaluations.
    """

    interval: float
    max_attempts: int
    initial_delay: float = 0.0

    def __post_init__(self) -> None:
        if self.interval < 0:
            raise ValueError(f"interval must be >= 0, got {self.interval}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay < 0:
            raise ValueError(f"initial_delay must be >= 0, got {self.initial_delay}")

    @property
    def ceiling(self) -> float:
        """Worst-case time spent waiting, excluding predicate latency."""
        return self.initial_delay + self.interval * self.max_attempts

    @classmethod
    def enable_confirmation(cls) -> "RetryPolicy":
        return cls(interval=ENABLE_POLL_INTERVAL, max_attempts=ENABLE_POLL_ATTEMPTS)

    @classmethod
    def reconnect_verification(cls, settle: float) -> "RetryPolicy":
        return cls(interval=0.0, max_attempts=1, initial_delay=settle)


async def poll_until(
    predicate: Callable[[], Awaitable[bool]],
    policy: RetryPolicy,
    *,
    should_abort: Optional[Callable[[], bool]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PollResult:
    """Evaluate ``predicate`` until it is true, the budget runs out, or abort.

    ``should_abort`` is consulted after every suspension point so an abort
    requested while a check or a sleep was in flight wins over its result.
    """

    def aborted() -> bool:
        return bool(should_abort and should_abort())

    if policy.initial_delay:
        await sleep(policy.initial_delay)
    for attempt in range(policy.max_attempts):
        if aborted():
            return PollResult.ABORTED
        ok = await predicate()
        if aborted():
            return PollResult.ABORTED
        if ok:
            logger.debug("Poll confirmed after %d attempt(s)", attempt + 1)
            return PollResult.CONFIRMED
        if attempt + 1 < policy.max_attempts:
            await sleep(policy.interval)
    return PollResult.TIMED_OUT


__all__ = [
    "ENABLE_POLL_ATTEMPTS",
    "ENABLE_POLL_INTERVAL",
    "PollResult",
    "RetryPolicy",
    "poll_until",
]
