"""Tests for the bounded retry and polling helpers."""

from unittest.mock import AsyncMock

import pytest

from tradeguard.errors import BrokerError
from tradeguard.utils.retry import RetryPolicy, attempts, retry_async


class _Sleeper:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def test_exponential_delays_are_capped():
    policy = RetryPolicy(max_attempts=6, base_delay=1.0, multiplier=2.0, max_delay=5.0)
    assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_constant_policy():
    policy = RetryPolicy.constant(4, 0.25)
    assert [policy.delay_for(n) for n in range(1, 4)] == [0.25, 0.25, 0.25]


@pytest.mark.asyncio
async def test_attempts_yields_ceiling_and_sleeps_between():
    sleep = _Sleeper()
    seen = [n async for n in attempts(RetryPolicy(max_attempts=3, base_delay=0.5), sleep=sleep)]
    assert seen == [1, 2, 3]
    assert sleep.delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_attempts_stops_at_deadline():
    sleep = _Sleeper()
    policy = RetryPolicy.constant(10, 5.0, deadline=1.0)
    seen = [n async for n in attempts(policy, sleep=sleep)]
    assert seen == [1]
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_retry_recovers_from_rate_limit():
    operation = AsyncMock(side_effect=[BrokerError("slow down", status_code=429), "ok"])
    result = await retry_async(
        operation, RetryPolicy(max_attempts=3, base_delay=0.1),
        is_retryable=lambda e: isinstance(e, BrokerError) and e.retryable,
        sleep=_Sleeper(),
    )
    assert result == "ok"
    assert operation.await_count == 2


@pytest.mark.asyncio
async def test_retry_fails_fast_on_client_error():
    operation = AsyncMock(side_effect=BrokerError("bad request", status_code=400))
    with pytest.raises(BrokerError):
        await retry_async(
            operation, RetryPolicy(max_attempts=5),
            is_retryable=lambda e: isinstance(e, BrokerError) and e.retryable,
            sleep=_Sleeper(),
        )
    assert operation.await_count == 1


@pytest.mark.asyncio
async def test_retry_raises_last_error_after_ceiling():
    operation = AsyncMock(side_effect=BrokerError("down", status_code=503))
    with pytest.raises(BrokerError, match="down"):
        await retry_async(
            operation, RetryPolicy(max_attempts=3),
            is_retryable=lambda e: isinstance(e, BrokerError) and e.retryable,
            sleep=_Sleeper(),
        )
    assert operation.await_count == 3


def test_broker_error_retryable_classification():
    assert BrokerError("x", 429).retryable
    assert BrokerError("x", 500).retryable
    assert not BrokerError("x", 422).retryable
    assert not BrokerError("x").retryable
