"""Tests for cancel tokens and deadlines."""

import asyncio

import pytest

from querylink import AbortError, CancelToken, Deadline, ManualScheduler, link_tokens


class TestCancelToken:
    """Tests for CancelToken."""

    def test_starts_uncancelled(self) -> None:
        token = CancelToken()
        assert not token.cancelled
        assert token.reason is None

    def test_default_reason(self) -> None:
        token = CancelToken()
        token.cancel()
        assert token.cancelled
        assert isinstance(token.reason, AbortError)

    def test_cancel_is_idempotent(self) -> None:
        token = CancelToken()
        first = RuntimeError("first")
        token.cancel(first)
        token.cancel(RuntimeError("second"))
        assert token.reason is first

    def test_callbacks_run_once(self) -> None:
        calls = []
        token = CancelToken()
        token.add_callback(lambda: calls.append(1))
        token.cancel()
        token.cancel()
        assert calls == [1]

    def test_callback_added_after_cancel_runs_immediately(self) -> None:
        calls = []
        token = CancelToken.cancelled_token()
        token.add_callback(lambda: calls.append(1))
        assert calls == [1]

    def test_removed_callback_does_not_run(self) -> None:
        calls = []
        token = CancelToken()
        remove = token.add_callback(lambda: calls.append(1))
        remove()
        token.cancel()
        assert calls == []

    def test_raise_if_cancelled(self) -> None:
        CancelToken().raise_if_cancelled()
        with pytest.raises(AbortError):
            CancelToken.cancelled_token().raise_if_cancelled()


class TestGuard:
    """Tests for CancelToken.guard()."""

    async def test_returns_result(self) -> None:
        async def work() -> int:
            return 42

        assert await CancelToken().guard(work()) == 42

    async def test_propagates_errors(self) -> None:
        async def work() -> int:
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            await CancelToken().guard(work())

    async def test_already_cancelled_never_runs(self) -> None:
        ran = False

        async def work() -> None:
            nonlocal ran
            ran = True

        with pytest.raises(AbortError):
            await CancelToken.cancelled_token().guard(work())
        assert not ran

    async def test_cancel_interrupts_work(self) -> None:
        token = CancelToken()
        interrupted = False

        async def work() -> None:
            nonlocal interrupted
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                interrupted = True
                raise

        asyncio.get_running_loop().call_later(0.01, token.cancel)
        with pytest.raises(AbortError):
            await token.guard(work())
        assert interrupted

    async def test_raises_custom_reason(self) -> None:
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel, KeyError("gone"))
        with pytest.raises(KeyError):
            await token.guard(asyncio.sleep(10))


class TestLinkTokens:
    """Tests for link_tokens()."""

    def test_any_source_fires_linked(self) -> None:
        a, b = CancelToken(), CancelToken()
        linked, _ = link_tokens(a, b)
        reason = RuntimeError("b fired")
        b.cancel(reason)
        assert linked.cancelled
        assert linked.reason is reason

    def test_already_cancelled_source(self) -> None:
        linked, _ = link_tokens(None, CancelToken.cancelled_token())
        assert linked.cancelled

    def test_unlink_detaches(self) -> None:
        source = CancelToken()
        linked, unlink = link_tokens(source)
        unlink()
        source.cancel()
        assert not linked.cancelled


class TestDeadline:
    """Tests for Deadline (timeout composed with an external token)."""

    def test_timeout_fires(self, scheduler: ManualScheduler) -> None:
        deadline = Deadline(100, None, scheduler)
        scheduler.advance(99)
        assert not deadline.token.cancelled
        scheduler.advance(1)
        assert deadline.token.cancelled
        assert deadline.timed_out

    def test_external_fires(self, scheduler: ManualScheduler) -> None:
        external = CancelToken()
        deadline = Deadline(100, external, scheduler)
        external.cancel()
        assert deadline.token.cancelled
        assert not deadline.timed_out

    def test_zero_and_infinite_timeouts_arm_nothing(
        self, scheduler: ManualScheduler
    ) -> None:
        Deadline(0, None, scheduler)
        Deadline(float("inf"), None, scheduler)
        assert scheduler.pending == 0

    def test_clear_disarms(self, scheduler: ManualScheduler) -> None:
        external = CancelToken()
        deadline = Deadline(100, external, scheduler)
        deadline.clear()
        assert scheduler.pending == 0
        external.cancel()
        scheduler.advance(200)
        assert not deadline.token.cancelled
