"""Retry engine shared by the query and mutation paths."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog

from querylink.cancel import CancelToken
from querylink.duration import parse_duration
from querylink.errors import RetryAbortedError
from querylink.types import RetryCount, RetryDelay

T = TypeVar("T")

Backoff = float | Callable[[int, float], float] | None

DEFAULT_RETRY_DELAY = 1000
MAX_RETRY_DELAY = 30_000

log = structlog.get_logger(__name__)


async def _sleep_ms(delay: float) -> None:
    await asyncio.sleep(delay / 1000)


def _next_delay(backoff: Backoff, attempt: int, current: float) -> float:
    if backoff is None:
        return current
    if callable(backoff):
        return backoff(attempt, current)
    return current * backoff


def _aborted(attempts: int, signal: CancelToken) -> RetryAbortedError:
    log.warning("retry_aborted", attempts=attempts, reason=str(signal.reason))
    return RetryAbortedError(f"Retry aborted after {attempts} attempts")


async def retry(
    fn: Callable[[], Awaitable[T]],
    *,
    times: int = 3,
    delay: float = 0,
    backoff: Backoff = None,
    signal: CancelToken | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
) -> T:
    """Run fn up to ``times`` times, waiting between failed attempts.

    Args:
        fn: Async function to run
        times: Maximum number of attempts
        delay: Milliseconds to wait after the first failure
        backoff: None keeps the delay fixed; a number multiplies it after
            each wait; a callable ``(attempt, current_delay) -> next_delay``
            computes it
        signal: Cancel token; when it fires, the running attempt is cancelled
            and no further attempts are made
        sleep: Millisecond sleep function (default: asyncio.sleep)

    Returns:
        The first successful result

    Raises:
        RetryAbortedError: signal fired before or between attempts
        Exception: the error of the final attempt, unchanged
    """
    if times < 1:
        raise ValueError("times must be at least 1")
    sleep = sleep or _sleep_ms
    current = delay

    for attempt in range(1, times + 1):
        if signal is not None and signal.cancelled:
            raise _aborted(attempt - 1, signal) from signal.reason

        try:
            if signal is None:
                return await fn()
            return await signal.guard(fn())
        except Exception as err:
            if signal is not None and signal.cancelled:
                raise _aborted(attempt, signal) from err
            if attempt == times:
                if times > 1:
                    log.error("retry_exhausted", attempts=times, error=repr(err))
                raise

            log.warning(
                "retry_attempt_failed",
                attempt=attempt,
                times=times,
                delay=current,
                error=repr(err),
            )

        if current > 0:
            if signal is None:
                await sleep(current)
            else:
                try:
                    await signal.guard(sleep(current))
                except Exception as err:
                    raise _aborted(attempt, signal) from err
        current = _next_delay(backoff, attempt, current)

    raise AssertionError("unreachable")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Arguments for retry() derived from query or mutation options."""

    times: int
    delay: float
    backoff: Backoff


def _default_backoff(_attempt: int, current: float) -> float:
    return min(current * 2, MAX_RETRY_DELAY)


def retry_policy(
    count: RetryCount,
    delay: RetryDelay,
    default_count: int,
) -> RetryPolicy:
    """Translate a retry count and delay option into a RetryPolicy.

    ``count=False`` means a single attempt; an int ``n`` means ``n`` retries
    (``n + 1`` attempts); None uses ``default_count``. ``delay`` may be a fixed
    duration, a callable mapping the 0-based retry index to milliseconds, or
    None for exponential doubling from 1s capped at 30s.
    """
    if count is False:
        times = 1
    elif count is None or count is True:
        times = default_count + 1
    elif count < 0:
        raise ValueError("retry must be >= 0 or False")
    else:
        times = count + 1

    if callable(delay):
        delay_fn = delay
        return RetryPolicy(
            times=times,
            delay=delay_fn(0),
            backoff=lambda attempt, _current: delay_fn(attempt),
        )
    if delay is not None:
        return RetryPolicy(times=times, delay=parse_duration(delay), backoff=None)
    return RetryPolicy(times=times, delay=DEFAULT_RETRY_DELAY, backoff=_default_backoff)
