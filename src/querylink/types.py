"""Core types for querylink."""

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, Literal, TypeVar

T = TypeVar("T")
TData = TypeVar("TData")
TVariables = TypeVar("TVariables")

# Ordered sequence of primitive or structured values
QueryKey = Sequence[Any]

QueryStatus = Literal["idle", "pending", "success", "error"]

# Duration type alias
Duration = str | int | float  # "30s", "5m", "2h", "1d", milliseconds or math.inf

# Retry count: False disables retries, None falls back to the caller default
RetryCount = int | Literal[False] | None

# Fixed milliseconds, or attempt index (0-based) -> milliseconds
RetryDelay = Duration | Callable[[int], float] | None

# Logger collaborator: (level, message, meta)
Logger = Callable[[str, str, Any], None]


@dataclass(frozen=True, slots=True)
class QueryState(Generic[T]):
    """Snapshot of a cache entry delivered to observers."""

    data: T | None
    error: BaseException | None
    status: QueryStatus
    data_updated_at: int  # Unix timestamp ms
    error_updated_at: int
    fetched_at: int

    @property
    def is_loading(self) -> bool:
        return self.status == "pending"

    @property
    def is_success(self) -> bool:
        return self.status == "success"

    @property
    def is_error(self) -> bool:
        return self.status == "error"

    @property
    def is_idle(self) -> bool:
        return self.status == "idle"


@dataclass(frozen=True, slots=True)
class QueryOptions(Generic[T]):
    """Configuration for a cached query."""

    key: QueryKey
    fn: Callable[[], Awaitable[T]]
    stale_time: Duration | None = None  # None: client default
    gc_time: Duration | None = None
    enabled: bool = True
    retry: RetryCount = None
    retry_delay: RetryDelay = None
    on_success: Callable[[T], Any] | None = None
    on_error: Callable[[BaseException], Any] | None = None


@dataclass(frozen=True, slots=True)
class MutationOptions(Generic[TData, TVariables]):
    """Configuration for a one-shot write operation."""

    fn: Callable[[TVariables], Awaitable[TData]]
    on_success: Callable[[TData, TVariables], Any] | None = None
    on_error: Callable[[BaseException, TVariables], Any] | None = None
    on_settled: (
        Callable[[TData | None, BaseException | None, TVariables], Any] | None
    ) = None
    retry: RetryCount = None
    retry_delay: RetryDelay = None
