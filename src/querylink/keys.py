"""Query key serialization and request fingerprints."""

import hashlib
import json
from typing import Any

from querylink.types import QueryKey

RAW_BODY_TYPES = (str, bytes, bytearray, memoryview)


def _canonical(value: Any, seen: frozenset[int] = frozenset()) -> Any:
    """Normalize containers so any dict serializes with sortable string keys."""
    if isinstance(value, (dict, list, tuple)):
        if id(value) in seen:
            raise ValueError("Circular reference detected")
        seen = seen | {id(value)}
        if isinstance(value, dict):
            return {str(k): _canonical(v, seen) for k, v in value.items()}
        return [_canonical(item, seen) for item in value]
    return value


def _stable_dumps(value: Any) -> str:
    """JSON with sorted object keys, so dict ordering never changes identity."""
    return json.dumps(
        _canonical(value), sort_keys=True, default=str, separators=(",", ":")
    )


def serialize_key(key: QueryKey) -> str:
    """Serialize a query key to its canonical string id.

    Tuples and lists serialize identically, so ``("users", 1)`` and
    ``["users", 1]`` address the same entry.
    """
    if isinstance(key, (str, bytes)):
        raise TypeError(f"Query key must be a sequence of parts, got {key!r}")
    return _stable_dumps(list(key))


def key_parts(key: QueryKey) -> tuple[str, ...]:
    """Serialize each key element separately (used for prefix matching)."""
    return tuple(_stable_dumps(part) for part in key)


def is_key_prefix(prefix: tuple[str, ...], parts: tuple[str, ...]) -> bool:
    """Check if prefix matches the leading elements of parts."""
    if len(prefix) > len(parts):
        return False
    return parts[: len(prefix)] == prefix


def is_raw_body(body: Any) -> bool:
    """Bodies sent as-is: strings, bytes-likes and file-like or streaming objects."""
    if isinstance(body, RAW_BODY_TYPES):
        return True
    return hasattr(body, "read") or hasattr(body, "__aiter__")


def body_fingerprint(body: Any) -> str:
    """Describe a request body for dedupe key generation."""
    if body is None:
        return "null"
    if isinstance(body, str):
        return body
    if isinstance(body, (bytes, bytearray, memoryview)):
        digest = hashlib.sha256(body).hexdigest()[:16]
        return f"[bytes:{len(body)}:{digest}]"
    if is_raw_body(body):
        # Streams can be consumed once; only the same object may share a request
        return f"[stream:{type(body).__name__}:{id(body)}]"
    try:
        return _stable_dumps(body)
    except (TypeError, ValueError):  # circular reference or unorderable keys
        return f"[{type(body).__name__}]"


def request_fingerprint(method: str, url: str, body: Any) -> str:
    """Identity of a request for in-flight deduplication."""
    return _stable_dumps({"body": body_fingerprint(body), "method": method, "url": url})
