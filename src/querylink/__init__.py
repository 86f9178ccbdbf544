"""querylink - async HTTP transport and query cache for Python."""

# Cancellation
from querylink.cancel import CancelToken, Deadline, link_tokens

# Duration parsing
from querylink.duration import parse_duration

# Errors
from querylink.errors import (
    AbortError,
    DisabledQueryError,
    QueryLinkError,
    RequestCancelledError,
    RequestTimeoutError,
    RetryAbortedError,
    TransportError,
)

# HTTP session
from querylink.http import HttpClient, create_http_client

# Logging
from querylink.log import configure_logging, structlog_logger

# Query cache
from querylink.query_client import QueryClient, create_query_client

# Retry engine
from querylink.retry import RetryPolicy, retry, retry_policy

# Timers
from querylink.timers import LoopScheduler, ManualScheduler, Scheduler, Timer

# Core types
from querylink.types import (
    Duration,
    Logger,
    MutationOptions,
    QueryKey,
    QueryOptions,
    QueryState,
    QueryStatus,
)

__version__ = "0.1.0"

__all__ = [
    "AbortError",
    "CancelToken",
    "Deadline",
    "DisabledQueryError",
    "Duration",
    "HttpClient",
    "Logger",
    "LoopScheduler",
    "ManualScheduler",
    "MutationOptions",
    "QueryClient",
    "QueryKey",
    "QueryLinkError",
    "QueryOptions",
    "QueryState",
    "QueryStatus",
    "RequestCancelledError",
    "RequestTimeoutError",
    "RetryAbortedError",
    "RetryPolicy",
    "Scheduler",
    "Timer",
    "TransportError",
    "configure_logging",
    "create_http_client",
    "create_query_client",
    "link_tokens",
    "parse_duration",
    "retry",
    "retry_policy",
    "structlog_logger",
]
