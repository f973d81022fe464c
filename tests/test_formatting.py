"""Tests for value formatting."""

import pytest

from procmon import formatting
from procmon.formatting import (
    ABSENT,
    Quantity,
    duration_human,
    duration_seconds,
    format_optional,
    formatter_for,
    identity,
    ratio,
    size,
)
from procmon.selector import Unit


def test_identity_integral():
    """Integral values print without decimals."""
    assert identity(42.0) == "42"
    assert identity(7) == "7"


def test_identity_fraction():
    """Other values print with one decimal."""
    assert identity(2.34) == "2.3"


class TestUnitFamilies:
    """Binary and decimal units are distinct families."""

    def test_binary(self):
        """Binary units divide by powers of 1024."""
        assert formatting.kibi(1024) == "1.0 Ki"
        assert formatting.mebi(1536 * 1024) == "1.5 Mi"
        assert formatting.gibi(3 * 1024**3) == "3.0 Gi"
        assert formatting.tebi(1024**4) == "1.0 Ti"

    def test_decimal(self):
        """Decimal units divide by powers of 1000."""
        assert formatting.kilo(1500) == "1.5 K"
        assert formatting.mega(2_000_000) == "2.0 M"
        assert formatting.giga(1_000_000_000) == "1.0 G"
        assert formatting.tera(4_500_000_000_000) == "4.5 T"

    def test_families_differ(self):
        """1024 bytes is one kibi but not one kilo."""
        assert formatting.kibi(1024) != formatting.kilo(1024)


class TestSize:
    """Tests for the sz unit."""

    @pytest.mark.parametrize(
        "value, expected",
        [
            (0, "0"),
            (999, "999"),
            (1000, "1.0 K"),
            (123_456, "123.5 K"),
            (5_400_000, "5.4 M"),
            (2_000_000_000, "2.0 G"),
            (3_000_000_000_000, "3.0 T"),
        ],
    )
    def test_largest_unit(self, value, expected):
        """The largest decimal unit keeping the magnitude >= 1."""
        assert size(value) == expected


class TestDurations:
    """Tests for duration formatting."""

    @pytest.mark.parametrize(
        "millis, expected",
        [
            (150, "150ms"),
            (59_150, "59s 150ms"),
            (5_000, "5s"),
            (75_000, "1m 15s"),
            (11_110_000, "3h 5m 10s"),
            (93_900_000, "26h 5m"),
        ],
    )
    def test_human(self, millis, expected):
        """du renders hours, minutes and seconds."""
        assert duration_human(millis) == expected

    def test_seconds(self):
        """Raw format renders seconds.millis."""
        assert duration_seconds(59_150) == "59.150"
        assert duration_seconds(7) == "0.007"


def test_ratio():
    """Ratios are percentages of the system total."""
    assert ratio(0.125) == "12.5%"
    assert ratio(1.0) == "100.0%"


class TestFormatterFor:
    """Tests for formatter selection."""

    def test_explicit_unit_wins(self):
        """An explicit unit overrides the quantity."""
        assert formatter_for(Unit.KIBI, Quantity.MILLISECONDS) is formatting.kibi
        assert formatter_for(Unit.DURATION, Quantity.COUNT) is duration_human

    def test_human_defaults(self):
        """Human format picks sz for bytes and du for milliseconds."""
        assert formatter_for(None, Quantity.BYTES) is size
        assert formatter_for(None, Quantity.MILLISECONDS) is duration_human
        assert formatter_for(None, Quantity.COUNT) is identity

    def test_raw_defaults(self):
        """Raw format keeps values verbatim."""
        assert formatter_for(None, Quantity.BYTES, human=False) is identity
        assert formatter_for(None, Quantity.MILLISECONDS, human=False) is duration_seconds


def test_format_optional():
    """Absent values print as a dash."""
    assert format_optional(identity, None) == ABSENT
    assert format_optional(identity, 3) == "3"
