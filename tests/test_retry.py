"""Tests for the retry engine."""

import asyncio

import pytest

from querylink import CancelToken, RetryAbortedError, retry, retry_policy


class Flaky:
    """Async callable that fails a fixed number of times before succeeding."""

    def __init__(self, failures: int, result: str = "ok") -> None:
        self.failures = failures
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise ValueError(f"failure {self.calls}")
        return self.result


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]):
    async def sleep(delay: float) -> None:
        sleeps.append(delay)

    return sleep


class TestRetry:
    """Tests for retry()."""

    async def test_first_attempt_succeeds(self, fake_sleep) -> None:
        fn = Flaky(0)
        assert await retry(fn, times=3, sleep=fake_sleep) == "ok"
        assert fn.calls == 1

    async def test_retries_until_success(self, fake_sleep) -> None:
        fn = Flaky(1)
        assert await retry(fn, times=3, sleep=fake_sleep) == "ok"
        assert fn.calls == 2

    async def test_exhausted_raises_last_error(self, fake_sleep) -> None:
        """Always failing fn is called `times` times; the last error surfaces."""
        fn = Flaky(10)
        with pytest.raises(ValueError, match="failure 3"):
            await retry(fn, times=3, sleep=fake_sleep)
        assert fn.calls == 3

    async def test_fixed_delay(self, fake_sleep, sleeps: list[float]) -> None:
        await retry(Flaky(2), times=3, delay=500, sleep=fake_sleep)
        assert sleeps == [500, 500]

    async def test_multiplier_backoff(self, fake_sleep, sleeps: list[float]) -> None:
        await retry(Flaky(2), times=3, delay=100, backoff=2, sleep=fake_sleep)
        assert sleeps == [100, 200]

    async def test_callable_backoff(self, fake_sleep, sleeps: list[float]) -> None:
        await retry(
            Flaky(3),
            times=4,
            delay=10,
            backoff=lambda attempt, current: current + attempt,
            sleep=fake_sleep,
        )
        assert sleeps == [10, 11, 13]

    async def test_zero_delay_skips_sleep(self, fake_sleep, sleeps: list[float]) -> None:
        await retry(Flaky(2), times=3, delay=0, sleep=fake_sleep)
        assert sleeps == []

    async def test_invalid_times(self) -> None:
        with pytest.raises(ValueError):
            await retry(Flaky(0), times=0)


class TestRetryCancellation:
    """Tests for retry() with a cancel token."""

    async def test_already_cancelled_never_calls_fn(self) -> None:
        fn = Flaky(10)
        with pytest.raises(RetryAbortedError):
            await retry(fn, times=3, delay=100, signal=CancelToken.cancelled_token())
        assert fn.calls == 0

    async def test_cancel_during_wait(self) -> None:
        token = CancelToken()
        fn = Flaky(10)

        async def sleep(delay: float) -> None:
            token.cancel()
            await asyncio.sleep(10)

        with pytest.raises(RetryAbortedError):
            await retry(fn, times=5, delay=100, signal=token, sleep=sleep)
        assert fn.calls == 1

    async def test_cancel_during_attempt(self) -> None:
        token = CancelToken()
        interrupted = False

        async def slow() -> str:
            nonlocal interrupted
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                interrupted = True
                raise
            return "never"

        asyncio.get_running_loop().call_later(0.01, token.cancel)
        with pytest.raises(RetryAbortedError):
            await retry(slow, times=3, signal=token)
        assert interrupted

    async def test_uncancelled_token_is_transparent(self) -> None:
        fn = Flaky(1)
        assert await retry(fn, times=2, signal=CancelToken()) == "ok"
        assert fn.calls == 2


class TestRetryPolicy:
    """Tests for retry_policy()."""

    def test_false_means_single_attempt(self) -> None:
        assert retry_policy(False, None, 3).times == 1

    def test_count_is_retries_not_attempts(self) -> None:
        assert retry_policy(2, None, 3).times == 3

    def test_none_uses_default(self) -> None:
        assert retry_policy(None, None, 3).times == 4
        assert retry_policy(None, None, 0).times == 1

    def test_negative_rejected(self) -> None:
        with pytest.raises(ValueError):
            retry_policy(-1, None, 3)

    def test_default_delay_doubles_and_caps(self) -> None:
        policy = retry_policy(None, None, 3)
        assert policy.delay == 1000
        assert callable(policy.backoff)
        assert policy.backoff(1, 1000) == 2000
        assert policy.backoff(5, 20_000) == 30_000

    def test_fixed_delay(self) -> None:
        policy = retry_policy(3, "2s", 3)
        assert policy.delay == 2000
        assert policy.backoff is None

    def test_delay_function_gets_retry_index(self) -> None:
        policy = retry_policy(3, lambda index: (index + 1) * 10, 3)
        assert policy.delay == 10
        assert policy.backoff(1, policy.delay) == 20
        assert policy.backoff(2, 20) == 30
