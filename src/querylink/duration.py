"""Duration parsing utilities."""

import math
import re

from querylink.types import Duration

_DURATION_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h|d)$")
_UNITS: dict[str, int] = {
    "ms": 1,
    "s": 1000,
    "m": 60_000,
    "h": 3_600_000,
    "d": 86_400_000,
}


def parse_duration(duration: Duration) -> float:
    """Parse a duration to milliseconds.

    Numbers pass through unchanged (``math.inf`` means "never"); strings use a
    unit suffix: ``"250ms"``, ``"1.5s"``, ``"5m"``, ``"2h"``, ``"1d"``.
    ``"inf"`` is accepted as a string spelling of ``math.inf``.
    """
    if isinstance(duration, bool):
        raise ValueError(f"Invalid duration: {duration!r}")
    if isinstance(duration, (int, float)):
        if math.isnan(duration) or duration < 0:
            raise ValueError(f"Invalid duration: {duration!r}")
        return duration

    if duration == "inf":
        return math.inf

    match = _DURATION_PATTERN.match(duration)
    if not match:
        raise ValueError(f"Invalid duration: {duration!r}")

    value, unit = match.groups()
    ms = float(value) * _UNITS[unit]
    return int(ms) if ms.is_integer() else ms


def is_finite_positive(ms: float) -> bool:
    """True when a timer should be armed for this many milliseconds."""
    return 0 < ms < math.inf
