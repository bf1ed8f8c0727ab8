"""Bounded retry and polling helpers.

One policy object describes the attempt ceiling, the backoff curve and an
optional overall deadline. Broker calls, narrative calls and order-status
polling all iterate through ``attempts()`` so none of them can loop forever.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0  # 1.0 = constant sleep between attempts
    max_delay: float = 8.0
    deadline: float | None = None  # overall budget in seconds

    def delay_for(self, attempt: int) -> float:
        """Sleep before attempt ``attempt + 1`` (attempts are 1-based)."""
        delay = self.base_delay * (self.multiplier ** (attempt - 1))
        return min(delay, self.max_delay)

    @classmethod
    def constant(cls, max_attempts: int, interval: float, deadline: float | None = None):
        return cls(
            max_attempts=max_attempts,
            base_delay=interval,
            multiplier=1.0,
            max_delay=interval,
            deadline=deadline,
        )


async def attempts(
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AsyncIterator[int]:
    """Yield 1-based attempt numbers, sleeping per the policy in between.

    Stops early when the next sleep would overrun the policy deadline.
    """
    started = time.monotonic()
    for attempt in range(1, max(policy.max_attempts, 0) + 1):
        if attempt > 1:
            delay = policy.delay_for(attempt - 1)
            if policy.deadline is not None and time.monotonic() - started + delay > policy.deadline:
                logger.debug(f"Retry deadline of {policy.deadline}s reached before attempt {attempt}")
                return
            if delay > 0:
                await sleep(delay)
        yield attempt


async def retry_async(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    is_retryable: Callable[[Exception], bool],
    name: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
):
    """Run ``operation`` until it succeeds or the policy is exhausted.

    Errors for which ``is_retryable`` is False propagate immediately; the last
    retryable error propagates once attempts run out.
    """
    last_error: Exception | None = None
    async for attempt in attempts(policy, sleep=sleep):
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e):
                raise
            last_error = e
            logger.warning(
                f"{name} failed (attempt {attempt}/{policy.max_attempts}): {e}"
            )
    if last_error is None:
        raise RuntimeError(f"{name} was never attempted (max_attempts={policy.max_attempts})")
    raise last_error
