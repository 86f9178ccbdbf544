"""Tests for duration parsing."""

import math

import pytest

from querylink import parse_duration


class TestParseDuration:
    """Tests for parse_duration function."""

    def test_milliseconds(self) -> None:
        assert parse_duration("100ms") == 100
        assert parse_duration("0ms") == 0

    def test_seconds(self) -> None:
        assert parse_duration("1s") == 1000
        assert parse_duration("30s") == 30000

    def test_fractional_units(self) -> None:
        """Test that fractional values are converted to milliseconds."""
        assert parse_duration("1.5s") == 1500
        assert parse_duration("0.5ms") == 0.5

    def test_minutes_hours_days(self) -> None:
        assert parse_duration("5m") == 300_000
        assert parse_duration("2h") == 7_200_000
        assert parse_duration("7d") == 604_800_000

    def test_number_passthrough(self) -> None:
        """Test that numbers pass through unchanged."""
        assert parse_duration(1000) == 1000
        assert parse_duration(0) == 0
        assert parse_duration(12.5) == 12.5

    def test_infinity(self) -> None:
        """Test that infinity means 'never'."""
        assert parse_duration(math.inf) == math.inf
        assert parse_duration("inf") == math.inf

    def test_invalid_format(self) -> None:
        """Test that invalid formats raise ValueError."""
        for value in ("invalid", "10x", "s10", "", "10"):
            with pytest.raises(ValueError, match="Invalid duration"):
                parse_duration(value)

    def test_rejects_negative_and_nan(self) -> None:
        with pytest.raises(ValueError, match="Invalid duration"):
            parse_duration(-1)
        with pytest.raises(ValueError, match="Invalid duration"):
            parse_duration(math.nan)

    def test_rejects_bool(self) -> None:
        with pytest.raises(ValueError, match="Invalid duration"):
            parse_duration(True)
