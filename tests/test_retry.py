import random

import pytest

from doccrawler.errors import HttpStatusError
from doccrawler.retry import backoff_delay_ms, retry, retry_async, retry_with_policy, wait_backoff_jitter


class Flaky:
    """Fails ``failures`` times with ``exc`` then returns ``value``."""

    def __init__(self, failures, exc=None, value="ok"):
        self.failures = failures
        self.exc = exc or RuntimeError("boom")
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return self.value


class Sleeps:
    def __init__(self):
        self.calls = []

    async def __call__(self, s):
        self.calls.append(s)


def test_backoff_delay_is_capped():
    assert backoff_delay_ms(1, 1000, 2, 30000) == 1000
    assert backoff_delay_ms(3, 1000, 2, 30000) == 4000
    assert backoff_delay_ms(10, 1000, 2, 30000) == 30000


@pytest.mark.asyncio
async def test_retry_succeeds_after_failures_with_backoff():
    op, sleeps, seen = Flaky(2), Sleeps(), []
    result = await retry(
        op,
        max_attempts=3,
        delay_ms=100,
        backoff=2,
        on_retry=lambda attempt, err, wait_ms: seen.append((attempt, str(err), wait_ms)),
        sleep=sleeps,
    )
    assert result == "ok"
    assert op.calls == 3
    assert sleeps.calls == [0.1, 0.2]
    assert seen == [(1, "boom", 100.0), (2, "boom", 200.0)]


@pytest.mark.asyncio
async def test_retry_reraises_last_error_when_exhausted():
    op = Flaky(5, exc=ValueError("still broken"))
    with pytest.raises(ValueError, match="still broken"):
        await retry(op, max_attempts=3, delay_ms=1, sleep=Sleeps())
    assert op.calls == 3


@pytest.mark.asyncio
async def test_retry_if_stops_immediately():
    op = Flaky(5, exc=HttpStatusError(404))
    with pytest.raises(HttpStatusError):
        await retry(op, max_attempts=5, retry_if=lambda e: not isinstance(e, HttpStatusError), sleep=Sleeps())
    assert op.calls == 1


@pytest.mark.asyncio
async def test_on_retry_callback_errors_are_swallowed():
    def bad_hook(*_):
        raise RuntimeError("hook broke")

    assert await retry(Flaky(1), delay_ms=1, on_retry=bad_hook, sleep=Sleeps()) == "ok"


@pytest.mark.parametrize("strategy", ["full", "equal"])
def test_jitter_stays_under_backoff(strategy):
    w = wait_backoff_jitter(1000, 2, 5000, strategy, random.Random(7))
    for attempt in range(1, 6):
        wait = w.next_ms(attempt)
        upper = backoff_delay_ms(attempt, 1000, 2, 5000)
        lower = upper / 2 if strategy == "equal" else 0
        assert lower <= wait <= upper


def test_decorrelated_jitter_bounds():
    w = wait_backoff_jitter(1000, 2, 8000, "decorrelated", random.Random(3))
    waits = [w.next_ms(a) for a in range(1, 20)]
    assert all(1000 <= x <= 8000 for x in waits)


@pytest.mark.asyncio
async def test_policy_retries_network_errors_with_policy_backoff():
    op, sleeps = Flaky(2, exc=ConnectionError("ECONNRESET")), Sleeps()
    assert await retry_with_policy(op, sleep=sleeps) == "ok"
    # network: 2000ms * 1.5^(n-1)
    assert sleeps.calls == [2.0, 3.0]


@pytest.mark.asyncio
async def test_policy_gives_up_after_category_budget():
    op, sleeps = Flaky(10, exc=TimeoutError("Timeout exceeded")), Sleeps()
    with pytest.raises(TimeoutError):
        await retry_with_policy(op, sleep=sleeps)
    assert op.calls == 3
    assert sleeps.calls == [5.0, 10.0]


@pytest.mark.asyncio
async def test_policy_does_not_retry_permanent_or_unknown():
    for exc in (HttpStatusError(404), RuntimeError("odd"), RuntimeError("ResizeObserver loop")):
        op = Flaky(1, exc=exc)
        with pytest.raises(type(exc)):
            await retry_with_policy(op, sleep=Sleeps())
        assert op.calls == 1


@pytest.mark.asyncio
async def test_retry_async_decorator():
    calls = []

    @retry_async(max_attempts=2, delay_ms=0, jitter_strategy="none")
    async def fetch(x):
        calls.append(x)
        if len(calls) == 1:
            raise RuntimeError("first")
        return x * 2

    assert await fetch(21) == 42
    assert calls == [21, 21]
