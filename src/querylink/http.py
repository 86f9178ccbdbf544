"""HTTP session built on httpx.AsyncClient.

One logical request per call: URL composition, default headers, JSON body
encoding, a timeout composed with the caller's cancel token, optional
deduplication of identical concurrent requests, content-type based response
parsing and a single error type for every failure.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Mapping
from typing import Any

import httpx
import structlog

from querylink.cancel import CancelToken, Deadline
from querylink.duration import parse_duration
from querylink.errors import RequestCancelledError, RequestTimeoutError, TransportError
from querylink.keys import is_raw_body, request_fingerprint
from querylink.timers import LoopScheduler, Scheduler
from querylink.types import Duration, Logger

DEFAULT_TIMEOUT = 30_000
DEFAULT_DEDUPE = True
CONTENT_TYPE_JSON = "application/json"
HEADER_CONTENT_TYPE = "content-type"

Params = Mapping[str, str | int | float | bool | None]

log = structlog.get_logger(__name__)


def build_url(base: str, path: str, params: Params | None = None) -> str:
    """Join base and path with a single slash and append non-None params."""
    base_clean = (base or "").rstrip("/")
    path_clean = path.lstrip("/")
    url = f"{base_clean}/{path_clean}" if base_clean else path_clean

    if not params:
        return url

    query = str(httpx.QueryParams({k: v for k, v in params.items() if v is not None}))
    if not query:
        return url
    return f"{url}{'&' if '?' in url else '?'}{query}"


def parse_response(response: httpx.Response) -> Any:
    """Decode a response body according to its content type."""
    if response.status_code == 204 or not response.content:
        return None

    content_type = response.headers.get(HEADER_CONTENT_TYPE, "")
    if CONTENT_TYPE_JSON in content_type or "+json" in content_type:
        return response.json()
    if content_type.startswith("text/"):
        return response.text
    return response.content


class HttpClient:
    """Async HTTP client with timeouts, dedupe and unified errors.

    Usage:
        async with HttpClient(base_url="https://api.example.com") as http:
            user = await http.get("/users/1")
            await http.post("/users", body={"name": "Ada"})
    """

    def __init__(
        self,
        *,
        base_url: str = "",
        headers: Mapping[str, str] | None = None,
        timeout: Duration = DEFAULT_TIMEOUT,
        dedupe: bool = DEFAULT_DEDUPE,
        logger: Logger | None = None,
        scheduler: Scheduler | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._headers: dict[str, str] = dict(headers or {})
        self._timeout = parse_duration(timeout)
        self._dedupe = dedupe
        self._logger = logger
        self._scheduler = scheduler or LoopScheduler()
        # Timeouts are enforced by Deadline, not by httpx
        self._client = httpx.AsyncClient(transport=transport, timeout=None)
        self._in_flight: dict[str, asyncio.Task[Any]] = {}

    async def __aenter__(self) -> HttpClient:
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying httpx client."""
        await self._client.aclose()

    def set_headers(self, headers: Mapping[str, str | None]) -> None:
        """Update default headers. A None value removes the header."""
        for key, value in headers.items():
            if value is None:
                self._headers.pop(key, None)
            else:
                self._headers[key] = value

    def get_headers(self) -> dict[str, str]:
        return dict(self._headers)

    def _log(self, level: str, message: str, meta: Any = None) -> None:
        if self._logger is not None:
            self._logger(level, message, meta)

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Params | None = None,
        headers: Mapping[str, str] | None = None,
        body: Any = None,
        dedupe: bool | None = None,
        signal: CancelToken | None = None,
        **options: Any,
    ) -> Any:
        """Send a request and return the parsed response body.

        Args:
            method: HTTP method (case-insensitive)
            path: Path appended to base_url, or a full URL when base_url is empty
            params: Query parameters; None values are dropped
            headers: Per-call headers, merged over the defaults
            body: JSON-encoded unless str, bytes-like or file-like
            dedupe: Override the client's dedupe setting for this call
            signal: Cancel token that aborts the request
            **options: Passed through to httpx.AsyncClient.request

        Raises:
            TransportError: network, parse or non-2xx failure
            RequestTimeoutError: the client timeout elapsed
            RequestCancelledError: signal fired
        """
        url = build_url(self._base_url, path, params)
        method = (method or "GET").upper()
        should_dedupe = self._dedupe if dedupe is None else dedupe

        if not should_dedupe:
            return await self._send(method, url, headers, body, signal, options)

        fingerprint = request_fingerprint(method, url, body)
        task = self._in_flight.get(fingerprint)
        if task is not None:
            log.debug("request_deduped", method=method, url=url)
        else:
            task = asyncio.ensure_future(
                self._send(method, url, headers, body, signal, options)
            )
            self._in_flight[fingerprint] = task
            task.add_done_callback(lambda done: self._release(fingerprint, done))
        # Shared by every caller; one caller going away must not cancel the rest
        return await asyncio.shield(task)

    def _release(self, fingerprint: str, task: asyncio.Task[Any]) -> None:
        if self._in_flight.get(fingerprint) is task:
            del self._in_flight[fingerprint]
        if not task.cancelled():
            task.exception()  # delivered to callers through shield()

    async def _send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str] | None,
        body: Any,
        signal: CancelToken | None,
        options: dict[str, Any],
    ) -> Any:
        merged = {**self._headers, **(headers or {})}
        content: Any = None
        if body is not None and not is_raw_body(body):
            content = json.dumps(body)
            if not any(k.lower() == HEADER_CONTENT_TYPE for k in merged):
                merged[HEADER_CONTENT_TYPE] = CONTENT_TYPE_JSON
        elif isinstance(body, (bytearray, memoryview)):
            content = bytes(body)
        elif body is not None:
            content = body

        deadline = Deadline(self._timeout, signal, self._scheduler)
        start = time.perf_counter()
        try:
            response = await deadline.token.guard(
                self._client.request(
                    method, url, headers=merged, content=content, **options
                )
            )
            parsed = parse_response(response)
        except Exception as err:
            self._log("error", f"{method} {url} - ERROR", err)
            if deadline.timed_out:
                raise RequestTimeoutError(
                    f"Timed out after {self._timeout}ms",
                    url=url,
                    method=method,
                    cause=err,
                ) from err
            if deadline.token.cancelled:
                raise RequestCancelledError(
                    "Request cancelled", url=url, method=method, cause=err
                ) from err
            raise TransportError(
                str(err) or type(err).__name__, url=url, method=method, cause=err
            ) from err
        finally:
            deadline.clear()

        elapsed = int((time.perf_counter() - start) * 1000)
        self._log(
            "info",
            f"{method} {url} - {response.status_code} ({elapsed}ms)",
            {"request": {"method": method, "url": url, "headers": merged}, "response": parsed},
        )

        if not response.is_success:
            error = TransportError(
                "Non-OK response",
                url=url,
                method=method,
                status=response.status_code,
                body=parsed,
            )
            self._log("error", f"{method} {url} - ERROR", error)
            raise error
        return parsed

    async def get(self, path: str, **config: Any) -> Any:
        return await self.request("GET", path, **config)

    async def post(self, path: str, **config: Any) -> Any:
        return await self.request("POST", path, **config)

    async def put(self, path: str, **config: Any) -> Any:
        return await self.request("PUT", path, **config)

    async def patch(self, path: str, **config: Any) -> Any:
        return await self.request("PATCH", path, **config)

    async def delete(self, path: str, **config: Any) -> Any:
        return await self.request("DELETE", path, **config)


def create_http_client(
    *,
    base_url: str = "",
    headers: Mapping[str, str] | None = None,
    timeout: Duration = DEFAULT_TIMEOUT,
    dedupe: bool = DEFAULT_DEDUPE,
    logger: Logger | None = None,
    scheduler: Scheduler | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> HttpClient:
    """Create an HTTP client.

    Args:
        base_url: Prefix for every request path
        headers: Default headers sent with every request
        timeout: Per-request timeout; 0 or math.inf disables it
        dedupe: Share one request between identical concurrent calls
        logger: ``(level, message, meta)`` collaborator for request tracing
        scheduler: Timer source for timeouts (default: asyncio loop)
        transport: httpx transport, e.g. httpx.MockTransport in tests

    Returns:
        HttpClient instance with get, post, put, patch, delete, request
    """
    if base_url and not base_url.startswith(("http://", "https://")):
        raise ValueError("base_url must start with http:// or https://")

    return HttpClient(
        base_url=base_url,
        headers=headers,
        timeout=timeout,
        dedupe=dedupe,
        logger=logger,
        scheduler=scheduler,
        transport=transport,
    )
