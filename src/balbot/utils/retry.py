"""Bounded retry and backoff primitives, independent of any particular I/O call.

``BackoffPolicy`` computes capped geometric delays with additive jitter.
``poll_until`` drives an async check under a policy; ``retry_async`` retries
an idempotent async call a fixed number of times. Both take an injectable
``sleep`` so tests can run against a fake clock.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from balbot.logging import get_logger

logger = get_logger("retry")

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class BackoffPolicy:
    """Capped geometric backoff with jitter and a hard attempt limit.

    The delay after attempt ``n`` (0-based) is
    ``min(base_delay * factor**n, max_delay) + U[0, jitter)``.

    Attributes:
        base_delay: Delay after the first attempt, in seconds.
        factor: Geometric growth factor.
        max_delay: Cap applied before jitter is added.
        max_attempts: Total number of attempts allowed.
        jitter: Upper bound of the uniform random jitter, in seconds.
    """

    base_delay: float = 10.0
    factor: float = 1.1
    max_delay: float = 30.0
    max_attempts: int = 60
    jitter: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0 or self.jitter < 0:
            raise ValueError("delays must be non-negative")
        if self.factor < 1.0:
            raise ValueError("factor must be >= 1.0")

    def base_for(self, attempt: int) -> float:
        """Delay after ``attempt`` before jitter."""
        return min(self.base_delay * self.factor**attempt, self.max_delay)

    def delay_for(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Delay after ``attempt`` including jitter."""
        return self.base_for(attempt) + rng() * self.jitter

    def wait_bounds(self, attempts: int) -> tuple[float, float]:
        """Minimum and maximum total sleep for ``attempts`` polls.

        There is no sleep after the final poll, so ``attempts`` polls sleep
        ``attempts - 1`` times.
        """
        sleeps = max(attempts - 1, 0)
        low = sum(self.base_for(n) for n in range(sleeps))
        return low, low + sleeps * self.jitter


@dataclass
class PollOutcome(Generic[T]):
    """Result of :func:`poll_until`.

    Attributes:
        result: The terminal value, or None if attempts ran out.
        attempts: Number of times the check ran.
        waited_seconds: Total time spent sleeping between checks.
    """

    result: T | None
    attempts: int
    waited_seconds: float

    @property
    def exhausted(self) -> bool:
        return self.result is None


async def poll_until(
    check: Callable[[], Awaitable[T | None]],
    policy: BackoffPolicy,
    *,
    sleep: Sleep = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> PollOutcome[T]:
    """Run ``check`` until it returns a non-None value or attempts run out.

    Exceptions raised by ``check`` propagate immediately.
    """
    waited = 0.0
    for attempt in range(policy.max_attempts):
        result = await check()
        if result is not None:
            return PollOutcome(result=result, attempts=attempt + 1, waited_seconds=waited)
        if attempt + 1 < policy.max_attempts:
            delay = policy.delay_for(attempt, rng)
            await sleep(delay)
            waited += delay
    return PollOutcome(result=None, attempts=policy.max_attempts, waited_seconds=waited)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    delay: float = 5.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Sleep = asyncio.sleep,
    label: str = "call",
) -> T:
    """Call ``fn`` up to ``attempts`` times, sleeping ``delay`` between tries.

    Only use this for idempotent reads; never wrap a transaction submission.
    The last exception is re-raised when every attempt fails.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except retry_on as exc:
            if attempt >= attempts:
                raise
            logger.warning(
                "retrying",
                label=label,
                attempt=attempt,
                attempts=attempts,
                error=str(exc),
            )
            await sleep(delay)
    raise AssertionError("unreachable")
