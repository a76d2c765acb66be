import asyncio
import time

import pytest

from chat_gateway.domain.exceptions import (
    NetworkError,
    RateLimitError,
    UpstreamError,
    UpstreamResetError,
    UpstreamTimeoutError,
    ValidationError,
)
from chat_gateway.gateway.retry import RetryPolicy, first_of, is_transient


class Attempts:
    """依次返回/抛出 outcomes 中的结果，并记录调用次数。"""

    def __init__(self, *outcomes, delay: float = 0.0):
        self.outcomes = list(outcomes)
        self.calls = 0
        self.delay = delay

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.outcomes.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


def make_policy(**kw):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    kw.setdefault("rand", lambda: 0.5)
    return RetryPolicy(sleep=fake_sleep, **kw), sleeps


def test_is_transient_classification():
    assert is_transient(RateLimitError())
    assert is_transient(UpstreamTimeoutError())
    assert is_transient(UpstreamResetError("peer closed connection"))
    assert is_transient(NetworkError("connection reset by peer"))
    assert not is_transient(NetworkError("[Errno -2] Name or service not known"))
    assert not is_transient(NetworkError("connection refused"))
    assert is_transient(ConnectionResetError())
    assert is_transient(RuntimeError("429 Too Many Requests"))
    assert is_transient(RuntimeError("Resource has been exhausted"))
    assert is_transient(RuntimeError("service temporarily unavailable"))
    assert not is_transient(UpstreamError("API key not valid", status=400))
    assert not is_transient(ValidationError(code="X", message="timeout field invalid"))


def test_success_first_try_no_retry():
    policy, sleeps = make_policy()
    attempt = Attempts("ok")
    assert asyncio.run(policy.run(attempt)) == "ok"
    assert attempt.calls == 1
    assert sleeps == []


def test_transient_failure_retried_exactly_once():
    policy, sleeps = make_policy()
    attempt = Attempts(RateLimitError(), "second")
    assert asyncio.run(policy.run(attempt)) == "second"
    assert attempt.calls == 2
    # 300ms 基础 + 0.5 * 200ms 抖动
    assert sleeps == [0.4]


def test_non_transient_failure_not_retried():
    policy, sleeps = make_policy()
    attempt = Attempts(UpstreamError("bad request", status=400), "never")
    with pytest.raises(UpstreamError):
        asyncio.run(policy.run(attempt))
    assert attempt.calls == 1
    assert sleeps == []


def test_at_most_two_attempts():
    policy, _ = make_policy()
    attempt = Attempts(RateLimitError(), RateLimitError("still limited"), "never")
    with pytest.raises(RateLimitError) as excinfo:
        asyncio.run(policy.run(attempt))
    assert excinfo.value.message == "still limited"
    assert attempt.calls == 2


def test_deadline_turns_into_timeout_then_retry():
    policy, _ = make_policy(deadline_ms=20, retry_deadline_ms=None)

    calls = {"n": 0}

    async def attempt():
        calls["n"] += 1
        if calls["n"] == 1:
            await asyncio.sleep(1)
            return "too late"
        return "fast"

    assert asyncio.run(policy.run(attempt)) == "fast"
    assert calls["n"] == 2


def test_second_attempt_bounded_by_retry_deadline():
    policy, _ = make_policy(deadline_ms=20, retry_deadline_ms=20)
    attempt = Attempts("a", "b", delay=1)
    with pytest.raises(UpstreamTimeoutError):
        asyncio.run(policy.run(attempt))
    assert attempt.calls == 2


def test_first_of_detaches_loser():
    async def scenario():
        cancelled = asyncio.Event()

        async def slow():
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        with pytest.raises(UpstreamTimeoutError):
            await first_of(slow(), 10)
        await asyncio.wait_for(cancelled.wait(), 1)

    asyncio.run(scenario())


def test_first_of_without_deadline():
    async def quick():
        return 42

    assert asyncio.run(first_of(quick(), None)) == 42


def test_real_backoff_elapsed_at_least_base():
    policy = RetryPolicy(backoff_base_ms=300, backoff_jitter_ms=200)
    attempt = Attempts(RateLimitError(), "second")
    started = time.monotonic()
    assert asyncio.run(policy.run(attempt)) == "second"
    assert time.monotonic() - started >= 0.3
