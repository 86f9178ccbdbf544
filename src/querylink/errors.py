"""Error types raised by querylink."""

from __future__ import annotations

from typing import Any


class QueryLinkError(Exception):
    """Base class for all querylink errors."""


class TransportError(QueryLinkError):
    """An HTTP request failed.

    Raised for network failures, response parse failures and non-2xx statuses.
    ``status`` is None when no response was received; ``body`` holds the parsed
    response body of a non-2xx response; ``cause`` holds the underlying
    exception, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        url: str,
        method: str,
        status: int | None = None,
        body: Any = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.method = method
        self.status = status
        self.body = body
        self.cause = cause

    def __str__(self) -> str:
        status = f" [{self.status}]" if self.status is not None else ""
        return f"{self.method} {self.url}{status}: {self.args[0]}"


class RequestTimeoutError(TransportError):
    """The request timeout elapsed before a response arrived."""


class RequestCancelledError(TransportError):
    """The caller's cancel token fired before a response arrived."""


class AbortError(QueryLinkError):
    """An operation was cancelled through a CancelToken."""


class RetryAbortedError(AbortError):
    """Retrying stopped because its cancel token fired."""


class DisabledQueryError(QueryLinkError):
    """fetch() was called with enabled=False."""

    def __init__(self, key: Any) -> None:
        super().__init__(f"Query disabled: {key!r}")
        self.key = key
