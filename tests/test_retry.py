import asyncio

import pytest

from leadscout.retry import BackoffPolicy, CircuitBreaker, RetryableError, with_retry

FAST = BackoffPolicy(max_attempts=3, base_delay_ms=1, max_delay_ms=2)


@pytest.mark.asyncio
async def test_with_retry_retries_then_succeeds():
    calls = {"n": 0}

    async def flaky():
        calls["n"] += 1
        if calls["n"] < 3:
            raise RetryableError("transient")
        return "ok"

    assert await with_retry(flaky, policy=FAST) == "ok"
    assert calls["n"] == 3


@pytest.mark.asyncio
async def test_with_retry_gives_up_after_max_attempts():
    calls = {"n": 0}

    async def always():
        calls["n"] += 1
        raise RetryableError("still down")

    with pytest.raises(RetryableError):
        await with_retry(always, policy=FAST)
    assert calls["n"] == 3


@pytest.mark.asyncio
async def test_with_retry_does_not_retry_other_errors():
    calls = {"n": 0}

    async def bad():
        calls["n"] += 1
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        await with_retry(bad, policy=FAST)
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_with_retry_never_swallows_cancellation():
    async def slow():
        await asyncio.sleep(10)

    task = asyncio.create_task(with_retry(slow, retry_on=(Exception,), policy=FAST))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


def test_backoff_delay_is_capped():
    policy = BackoffPolicy(max_attempts=5, base_delay_ms=100, max_delay_ms=300)
    assert policy.delay_s(1) <= 0.12
    assert policy.delay_s(10) <= 0.36


def test_circuit_breaker_opens_and_cools_off(monkeypatch):
    now = {"t": 1000.0}
    monkeypatch.setattr("leadscout.retry.time.time", lambda: now["t"])
    cb = CircuitBreaker(error_threshold=2, cool_off_s=30)
    cb.on_error("maps")
    assert cb.allow("maps") is True
    cb.on_error("maps")
    assert cb.allow("maps") is False
    assert cb.allow("social") is True
    now["t"] += 31
    assert cb.allow("maps") is True


def test_circuit_breaker_success_resets_count():
    cb = CircuitBreaker(error_threshold=2, cool_off_s=30)
    cb.on_error("maps")
    cb.on_success("maps")
    cb.on_error("maps")
    assert cb.allow("maps") is True
