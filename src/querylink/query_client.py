"""QueryClient - keyed async result cache with observers.

Provides:
- fetch(): cached fetch with in-flight deduplication, staleness and retries
- prefetch(): best-effort warm-up
- invalidate(), cancel(), clear(): removal and abort
- set_data(), get_data(), get_state(): synchronous cache access
- subscribe(), unsubscribe(): per-key state observers
- mutate(): one-shot writes with their own retry policy
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any, TypeVar, cast

import structlog

from querylink.cancel import CancelToken
from querylink.duration import is_finite_positive, parse_duration
from querylink.errors import DisabledQueryError
from querylink.keys import is_key_prefix, key_parts, serialize_key
from querylink.retry import retry, retry_policy
from querylink.timers import LoopScheduler, Scheduler, Timer
from querylink.types import (
    Duration,
    MutationOptions,
    QueryKey,
    QueryOptions,
    QueryState,
    QueryStatus,
)

T = TypeVar("T")
TData = TypeVar("TData")
TVariables = TypeVar("TVariables")

Listener = Callable[[QueryState[Any]], Any]

DEFAULT_STALE_TIME = 0
DEFAULT_GC_TIME = 5 * 60_000
DEFAULT_QUERY_RETRY = 3
DEFAULT_MUTATION_RETRY = 0

log = structlog.get_logger(__name__)


@dataclass(eq=False)
class _Entry:
    """Mutable per-key cache state."""

    key: tuple[Any, ...]
    parts: tuple[str, ...]
    data: Any = None
    status: QueryStatus = "idle"
    error: BaseException | None = None
    data_updated_at: int = 0
    error_updated_at: int = 0
    fetched_at: int = 0
    observers: dict[Listener, None] = field(default_factory=dict)  # ordered set
    task: asyncio.Task[Any] | None = None
    token: CancelToken | None = None  # identifies the owner of the in-flight slot
    gc_timer: Timer | None = None

    def snapshot(self) -> QueryState[Any]:
        return QueryState(
            data=self.data,
            error=self.error,
            status=self.status,
            data_updated_at=self.data_updated_at,
            error_updated_at=self.error_updated_at,
            fetched_at=self.fetched_at,
        )


def _mark_retrieved(task: asyncio.Task[Any]) -> None:
    # Failures reach callers through shield(); avoid "never retrieved" noise
    if not task.cancelled():
        task.exception()


def _call_isolated(name: str, callback: Callable[..., Any] | None, *args: Any) -> None:
    """Run a user callback; a raising callback is logged and ignored."""
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        log.exception("callback_failed", callback=name)


class QueryClient:
    """In-process cache of async results keyed by query keys.

    Usage:
        client = QueryClient(stale_time="5s")
        user = await client.fetch(
            QueryOptions(key=("users", 1), fn=lambda: http.get("/users/1"))
        )
        client.invalidate(("users",))  # drops ("users", 1), ("users", 2), ...
    """

    def __init__(
        self,
        *,
        stale_time: Duration = DEFAULT_STALE_TIME,
        gc_time: Duration = DEFAULT_GC_TIME,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._stale_time = parse_duration(stale_time)
        self._gc_time = parse_duration(gc_time)
        self._scheduler = scheduler or LoopScheduler()
        self._entries: dict[str, _Entry] = {}

    @property
    def cache_size(self) -> int:
        """Number of live entries."""
        return len(self._entries)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def fetch(self, options: QueryOptions[T]) -> T:
        """Return cached data if fresh, else join or start a fetch.

        Raises:
            DisabledQueryError: options.enabled is False
            RetryAbortedError: the fetch was cancelled or invalidated
            Exception: the error of the final attempt
        """
        if not options.enabled:
            raise DisabledQueryError(options.key)

        key_id, entry = self._ensure_entry(options.key)
        stale_time = (
            self._stale_time
            if options.stale_time is None
            else parse_duration(options.stale_time)
        )

        if (
            entry.status == "success"
            and self._scheduler.now() - entry.data_updated_at < stale_time
        ):
            return cast(T, entry.data)

        if entry.task is None:
            self._start(key_id, entry, options)

        assert entry.task is not None
        return cast(T, await asyncio.shield(entry.task))

    async def prefetch(self, options: QueryOptions[Any]) -> None:
        """Warm the cache; errors are discarded."""
        try:
            await self.fetch(replace(options, enabled=True))
        except Exception as err:
            log.debug("prefetch_failed", key=list(options.key), error=repr(err))

    def _start(self, key_id: str, entry: _Entry, options: QueryOptions[Any]) -> None:
        gc_time = self._gc_time if options.gc_time is None else parse_duration(options.gc_time)
        token = CancelToken()
        entry.token = token
        entry.status = "pending"
        # An entry being fetched is active; it must not be evicted mid-flight
        self._clear_gc(entry)

        task = asyncio.ensure_future(self._run(key_id, entry, options, token, gc_time))
        task.add_done_callback(_mark_retrieved)
        entry.task = task
        self._notify(entry)

    async def _run(
        self,
        key_id: str,
        entry: _Entry,
        options: QueryOptions[Any],
        token: CancelToken,
        gc_time: float,
    ) -> Any:
        policy = retry_policy(options.retry, options.retry_delay, DEFAULT_QUERY_RETRY)
        try:
            data = await retry(
                options.fn,
                times=policy.times,
                delay=policy.delay,
                backoff=policy.backoff,
                signal=token,
                sleep=self._scheduler.sleep,
            )
        except asyncio.CancelledError:
            if entry.token is token:
                self._release(entry)
                entry.status = "idle"
                self._notify(entry)
            raise
        except Exception as err:
            if entry.token is not token:
                raise
            self._release(entry)
            if token.cancelled:
                entry.status = "idle"
                entry.error = None
            else:
                entry.status = "error"
                entry.error = err
                entry.error_updated_at = self._scheduler.now()
                _call_isolated("on_error", options.on_error, err)
            self._notify(entry)
            raise

        if entry.token is not token:
            return data

        now = self._scheduler.now()
        self._release(entry)
        entry.data = data
        entry.status = "success"
        entry.error = None
        entry.data_updated_at = now
        entry.fetched_at = now
        self._schedule_gc(key_id, entry, gc_time)
        _call_isolated("on_success", options.on_success, data)
        self._notify(entry)
        return data

    @staticmethod
    def _release(entry: _Entry) -> None:
        entry.task = None
        entry.token = None

    # -------------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------------

    def invalidate(self, key: QueryKey) -> int:
        """Remove the entry for key, or every entry key is a prefix of.

        In-flight fetches of removed entries are cancelled and their eviction
        timers cleared. Returns the number of entries removed.
        """
        prefix = key_parts(key)
        # The empty prefix covers every entry, including one keyed ()
        if prefix:
            key_id = serialize_key(key)
            exact = self._entries.get(key_id)
            if exact is not None:
                self._remove(key_id, exact)
                return 1

        matches = [
            (entry_id, entry)
            for entry_id, entry in self._entries.items()
            if is_key_prefix(prefix, entry.parts)
        ]
        for entry_id, entry in matches:
            self._remove(entry_id, entry)
        log.debug("invalidated", prefix=list(key), removed=len(matches))
        return len(matches)

    def cancel(self, key: QueryKey) -> bool:
        """Abort the in-flight fetch for key, keeping the entry.

        The entry is idle again on return, so the next fetch() starts a new
        request instead of joining the aborted one. Returns True if a fetch
        was running.
        """
        entry = self._entries.get(serialize_key(key))
        if entry is None or entry.token is None:
            return False
        token = entry.token
        self._release(entry)
        entry.status = "idle"
        entry.error = None
        token.cancel()
        self._notify(entry)
        return True

    def clear(self) -> None:
        """Cancel and remove every entry."""
        for entry in self._entries.values():
            self._cleanup(entry)
        self._entries.clear()

    def _remove(self, key_id: str, entry: _Entry) -> None:
        self._cleanup(entry)
        del self._entries[key_id]

    def _cleanup(self, entry: _Entry) -> None:
        if entry.token is not None:
            entry.token.cancel()
        self._clear_gc(entry)

    # -------------------------------------------------------------------------
    # Synchronous access
    # -------------------------------------------------------------------------

    def set_data(self, key: QueryKey, value: Any) -> None:
        """Write data without fetching.

        A callable value is treated as an updater and receives the previous
        data. The entry becomes "success" and observers are notified.
        """
        key_id, entry = self._ensure_entry(key)
        entry.data = value(entry.data) if callable(value) else value
        now = self._scheduler.now()
        entry.data_updated_at = now
        entry.fetched_at = entry.fetched_at or now
        entry.status = "success"
        self._schedule_gc(key_id, entry, self._gc_time)
        self._notify(entry)

    def get_data(self, key: QueryKey) -> Any | None:
        entry = self._entries.get(serialize_key(key))
        return entry.data if entry is not None else None

    def get_state(self, key: QueryKey) -> QueryState[Any] | None:
        entry = self._entries.get(serialize_key(key))
        return entry.snapshot() if entry is not None else None

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    def subscribe(self, key: QueryKey, listener: Listener) -> Callable[[], None]:
        """Register listener and deliver the current snapshot immediately.

        Listeners belong to the current entry for key. Once invalidate(),
        clear() or eviction removes that entry they receive nothing further;
        subscribe again to follow a re-created entry.

        Returns a function that removes the listener.
        """
        _, entry = self._ensure_entry(key)
        entry.observers[listener] = None
        _call_isolated("observer", listener, entry.snapshot())

        def unsubscribe() -> None:
            entry.observers.pop(listener, None)

        return unsubscribe

    def unsubscribe(self, key: QueryKey, listener: Listener) -> None:
        entry = self._entries.get(serialize_key(key))
        if entry is not None:
            entry.observers.pop(listener, None)

    def _notify(self, entry: _Entry) -> None:
        state = entry.snapshot()
        for listener in list(entry.observers):
            _call_isolated("observer", listener, state)

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def mutate(
        self,
        options: MutationOptions[TData, TVariables],
        variables: TVariables,
    ) -> TData:
        """Run a write operation; nothing is stored in the cache.

        Callers follow up with targeted invalidate() calls.
        """
        policy = retry_policy(options.retry, options.retry_delay, DEFAULT_MUTATION_RETRY)
        try:
            data = await retry(
                lambda: options.fn(variables),
                times=policy.times,
                delay=policy.delay,
                backoff=policy.backoff,
                sleep=self._scheduler.sleep,
            )
        except Exception as err:
            _call_isolated("on_error", options.on_error, err, variables)
            _call_isolated("on_settled", options.on_settled, None, err, variables)
            raise

        _call_isolated("on_success", options.on_success, data, variables)
        _call_isolated("on_settled", options.on_settled, data, None, variables)
        return data

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _ensure_entry(self, key: QueryKey) -> tuple[str, _Entry]:
        key_id = serialize_key(key)
        entry = self._entries.get(key_id)
        if entry is None:
            entry = _Entry(key=tuple(key), parts=key_parts(key))
            self._entries[key_id] = entry
        return key_id, entry

    def _schedule_gc(self, key_id: str, entry: _Entry, gc_time: float) -> None:
        self._clear_gc(entry)
        if not is_finite_positive(gc_time):
            return

        def evict() -> None:
            entry.gc_timer = None
            # The id may have been re-created by a later reference
            if self._entries.get(key_id) is entry:
                del self._entries[key_id]
                log.debug("entry_evicted", key=list(entry.key))

        entry.gc_timer = self._scheduler.call_later(gc_time, evict)

    @staticmethod
    def _clear_gc(entry: _Entry) -> None:
        if entry.gc_timer is not None:
            entry.gc_timer.cancel()
            entry.gc_timer = None


def create_query_client(
    *,
    stale_time: Duration = DEFAULT_STALE_TIME,
    gc_time: Duration = DEFAULT_GC_TIME,
    scheduler: Scheduler | None = None,
) -> QueryClient:
    """Create a query client.

    Args:
        stale_time: How long fetched data counts as fresh (default: 0)
        gc_time: Inactivity before an entry is evicted (default: 5m);
            0 or math.inf disables eviction
        scheduler: Clock and timer source (default: asyncio loop)

    Returns:
        QueryClient instance
    """
    if scheduler is not None and not isinstance(scheduler, Scheduler):
        raise TypeError(f"Expected Scheduler, got {type(scheduler)}")

    return QueryClient(stale_time=stale_time, gc_time=gc_time, scheduler=scheduler)
