"""Cancellation tokens.

A ``CancelToken`` is fired at most once with a reason exception. Work guarded
by a token (``await token.guard(coro)``) runs as a task that is cancelled as
soon as the token fires, so an aborted query also aborts the httpx call it is
awaiting.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import TypeVar

from querylink.duration import is_finite_positive
from querylink.errors import AbortError
from querylink.timers import Scheduler, Timer

T = TypeVar("T")


class CancelToken:
    """One-shot cancellation signal."""

    __slots__ = ("_callbacks", "_reason")

    def __init__(self) -> None:
        self._reason: BaseException | None = None
        self._callbacks: list[Callable[[], None]] = []

    @classmethod
    def cancelled_token(cls, reason: BaseException | None = None) -> CancelToken:
        """Create a token that is already cancelled."""
        token = cls()
        token.cancel(reason)
        return token

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> BaseException | None:
        return self._reason

    def cancel(self, reason: BaseException | None = None) -> None:
        """Fire the token. Later calls are ignored."""
        if self._reason is not None:
            return
        self._reason = reason if reason is not None else AbortError("Operation aborted")
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run callback when the token fires; returns a remover.

        If the token has already fired, callback runs immediately.
        """
        if self._reason is not None:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def remove() -> None:
            with suppress(ValueError):
                self._callbacks.remove(callback)

        return remove

    def raise_if_cancelled(self) -> None:
        if self._reason is not None:
            raise self._reason

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await awaitable, cancelling it and raising the reason if the token fires first."""
        if self._reason is not None:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise self._reason

        task = asyncio.ensure_future(awaitable)
        fired: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def wake() -> None:
            if not fired.done():
                fired.set_result(None)

        remove = self.add_callback(wake)
        try:
            await asyncio.wait((task, fired), return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.wait((task,))
            if not task.cancelled():
                task.exception()
            raise
        finally:
            remove()
            fired.cancel()

        if task.done():
            return task.result()

        task.cancel()
        await asyncio.wait((task,))
        if not task.cancelled():
            task.exception()  # superseded by the token's reason
        assert self._reason is not None
        raise self._reason


def link_tokens(*tokens: CancelToken | None) -> tuple[CancelToken, Callable[[], None]]:
    """Create a token that fires when any source fires, with the source's reason.

    Returns the linked token and a function that detaches it from its sources.
    """
    linked = CancelToken()
    removers: list[Callable[[], None]] = []
    for source in tokens:
        if source is None:
            continue

        def forward(source: CancelToken = source) -> None:
            linked.cancel(source.reason)

        removers.append(source.add_callback(forward))

    def unlink() -> None:
        for remove in removers:
            remove()

    return linked, unlink


class Deadline:
    """Internal timeout composed with an optional external token.

    ``token`` fires when either the timeout elapses or ``external`` fires;
    ``timed_out`` tells the two apart. A timeout of 0 or ``inf`` arms no timer.
    """

    def __init__(
        self,
        timeout: float,
        external: CancelToken | None,
        scheduler: Scheduler,
    ) -> None:
        self.timeout = timeout
        self.timed_out = False
        self.token, self._unlink = link_tokens(external)
        self._timer: Timer | None = None
        if is_finite_positive(timeout) and not self.token.cancelled:
            self._timer = scheduler.call_later(timeout, self._expire)

    def _expire(self) -> None:
        if self.token.cancelled:
            return
        self.timed_out = True
        self.token.cancel(AbortError(f"Timed out after {self.timeout}ms"))

    def clear(self) -> None:
        """Disarm the timer and detach from the external token."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._unlink()
