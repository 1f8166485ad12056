"""
Retry executors built on tenacity.

``retry`` is the generic form: a fixed attempt budget with exponential backoff
and optional jitter. ``retry_with_policy`` lets the failure taxonomy decide:
each failure is categorised and only RETRYABLE_* categories are retried, with
that category's attempt budget and backoff.
"""
from __future__ import annotations

import asyncio
import functools
import logging
import random
from typing import Any, Awaitable, Callable, Literal, Optional, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.stop import stop_base
from tenacity.wait import wait_base

from .errors import RETRYABLE_CATEGORIES, categorize, policy_for

logger = logging.getLogger(__name__)

T = TypeVar("T")

JitterStrategy = Literal["none", "full", "equal", "decorrelated"]
OnRetry = Callable[[int, BaseException, float], Any]
Sleep = Callable[[float], Awaitable[Any]]


def backoff_delay_ms(attempt: int, delay_ms: float, backoff: float, max_delay_ms: float) -> float:
    """Un-jittered wait after failed attempt ``attempt`` (1-based)."""
    return min(max_delay_ms, delay_ms * (backoff ** (attempt - 1)))


class wait_backoff_jitter(wait_base):
    """
    Exponential backoff with a selectable jitter strategy, in milliseconds.

    decorrelated: uniform over [base, previous * 3], capped at max_delay_ms;
    the previous wait starts at base, so every draw stays in [base, max].
    """

    def __init__(
        self,
        delay_ms: float,
        backoff: float,
        max_delay_ms: float,
        jitter: JitterStrategy = "none",
        rng: Optional[random.Random] = None,
    ):
        self.delay_ms = delay_ms
        self.backoff = backoff
        self.max_delay_ms = max_delay_ms
        self.jitter = jitter
        self.rng = rng or random.Random()
        self._previous_ms = min(delay_ms, max_delay_ms)

    def next_ms(self, attempt: int) -> float:
        wait = backoff_delay_ms(attempt, self.delay_ms, self.backoff, self.max_delay_ms)
        if self.jitter == "full":
            return self.rng.uniform(0, wait)
        if self.jitter == "equal":
            return self.rng.uniform(wait / 2, wait)
        if self.jitter == "decorrelated":
            base = min(self.delay_ms, self.max_delay_ms)
            upper = max(base, self._previous_ms * 3)
            wait = min(self.max_delay_ms, self.rng.uniform(base, upper))
            self._previous_ms = wait
        return wait

    def __call__(self, retry_state: RetryCallState) -> float:
        return self.next_ms(retry_state.attempt_number) / 1000.0


class wait_category_policy(wait_base):
    """Backoff taken from the RetryPolicy of the latest failure's category."""

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        policy = policy_for(categorize(exc))
        ms = backoff_delay_ms(
            retry_state.attempt_number,
            policy.base_delay_ms,
            policy.backoff_multiplier,
            policy.max_delay_ms,
        )
        return ms / 1000.0


class stop_category_policy(stop_base):
    """Stop once the attempt count reaches the latest failure's policy budget."""

    def __call__(self, retry_state: RetryCallState) -> bool:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        return retry_state.attempt_number >= policy_for(categorize(exc)).max_attempts


def _before_sleep(on_retry: Optional[OnRetry]) -> Callable[[RetryCallState], None]:
    def hook(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        wait_ms = (retry_state.next_action.sleep if retry_state.next_action else 0.0) * 1000.0
        logger.debug(
            "retry: attempt %s failed (%s: %s); waiting %.0fms",
            retry_state.attempt_number, type(exc).__name__, exc, wait_ms,
        )
        if on_retry is None:
            return
        try:
            on_retry(retry_state.attempt_number, exc, wait_ms)
        except Exception as e:
            logger.warning("retry: on_retry callback raised %s: %s", type(e).__name__, e)

    return hook


async def _run(retrying: AsyncRetrying, op: Callable[[], Awaitable[T]]) -> T:
    async for attempt in retrying:
        with attempt:
            result = await op()
        if not attempt.retry_state.outcome.failed:
            return result
    raise RuntimeError("retry loop exited without an outcome")  # pragma: no cover


async def retry(
    op: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    delay_ms: float = 1000,
    backoff: float = 2.0,
    max_delay_ms: float = 30000,
    jitter_strategy: JitterStrategy = "none",
    on_retry: Optional[OnRetry] = None,
    retry_if: Optional[Callable[[BaseException], bool]] = None,
    sleep: Sleep = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> T:
    """
    Run ``op`` up to ``max_attempts`` times. The last failure is re-raised as-is.
    ``on_retry(attempt, error, wait_ms)`` fires before each wait.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait_backoff_jitter(delay_ms, backoff, max_delay_ms, jitter_strategy, rng),
        retry=retry_if_exception(retry_if or (lambda e: isinstance(e, Exception))),
        before_sleep=_before_sleep(on_retry),
        sleep=sleep,
        reraise=True,
    )
    return await _run(retrying, op)


async def retry_with_policy(
    op: Callable[[], Awaitable[T]],
    *,
    on_retry: Optional[OnRetry] = None,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Retry ``op`` as the failure taxonomy dictates; non-retryable categories raise at once."""
    retrying = AsyncRetrying(
        stop=stop_category_policy(),
        wait=wait_category_policy(),
        retry=retry_if_exception(lambda e: isinstance(e, Exception) and categorize(e) in RETRYABLE_CATEGORIES),
        before_sleep=_before_sleep(on_retry),
        sleep=sleep,
        reraise=True,
    )
    return await _run(retrying, op)


def retry_async(
    *,
    max_attempts: int = 3,
    delay_ms: float = 1000,
    backoff: float = 2.0,
    max_delay_ms: float = 30000,
    jitter_strategy: JitterStrategy = "full",
    retry_if: Optional[Callable[[BaseException], bool]] = None,
):
    """Decorator form of ``retry`` for coroutine functions."""

    def deco(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await retry(
                lambda: fn(*args, **kwargs),
                max_attempts=max_attempts,
                delay_ms=delay_ms,
                backoff=backoff,
                max_delay_ms=max_delay_ms,
                jitter_strategy=jitter_strategy,
                retry_if=retry_if,
            )

        return wrapper

    return deco
