"""Formatting of metric values for text and terminal output."""

from collections.abc import Callable
from enum import Enum

from procmon.selector import Unit

Formatter = Callable[[float], str]

KIBI = 1024.0
MEBI = KIBI * KIBI
GIBI = MEBI * KIBI
TEBI = GIBI * KIBI

KILO = 1000.0
MEGA = KILO * KILO
GIGA = MEGA * KILO
TERA = GIGA * KILO

ABSENT = "-"


class Quantity(Enum):
    """What a metric value counts. Selects the default formatter."""

    COUNT = "count"
    BYTES = "bytes"
    MILLISECONDS = "ms"


def identity(value: float) -> str:
    """Value unchanged (one decimal for non integral values)."""
    if isinstance(value, int) or float(value).is_integer():
        return str(int(value))
    return f"{value:.1f}"


def _scaled(divisor: float, suffix: str) -> Formatter:
    def format_scaled(value: float) -> str:
        return f"{value / divisor:.1f} {suffix}"

    format_scaled.__name__ = f"format_{suffix.lower()}"
    return format_scaled


kibi = _scaled(KIBI, "Ki")
mebi = _scaled(MEBI, "Mi")
gibi = _scaled(GIBI, "Gi")
tebi = _scaled(TEBI, "Ti")
kilo = _scaled(KILO, "K")
mega = _scaled(MEGA, "M")
giga = _scaled(GIGA, "G")
tera = _scaled(TERA, "T")


def size(value: float) -> str:
    """Value using the largest decimal unit keeping the magnitude >= 1."""
    magnitude = abs(value)
    if magnitude < KILO:
        return identity(value)
    if magnitude < MEGA:
        return kilo(value)
    if magnitude < GIGA:
        return mega(value)
    if magnitude < TERA:
        return giga(value)
    return tera(value)


def duration_seconds(millis: float) -> str:
    """Milliseconds as seconds and milliseconds: 59150 -> 59.150."""
    millis = int(millis)
    seconds, remaining = divmod(millis, 1000)
    return f"{seconds}.{remaining:03d}"


def duration_human(millis: float) -> str:
    """Milliseconds as hours, minutes and seconds.

    Examples:
        59150 -> "59s 150ms"
        75000 -> "1m 15s"
        11110000 -> "3h 5m 10s"
        Above a day the seconds are dropped: "26h 5m".
    """
    millis = int(millis)
    if millis < 1000:
        return f"{millis}ms"
    seconds, remaining_millis = divmod(millis, 1000)
    if seconds < 60:
        return f"{seconds}s {remaining_millis}ms" if remaining_millis else f"{seconds}s"
    minutes, remaining_seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {remaining_seconds}s"
    hours, remaining_minutes = divmod(minutes, 60)
    if hours < 24:
        return f"{hours}h {remaining_minutes}m {remaining_seconds}s"
    return f"{hours}h {remaining_minutes}m"


def ratio(fraction: float) -> str:
    """Fraction of the system total as a percentage: 0.125 -> 12.5%."""
    return f"{fraction * 100.0:.1f}%"


UNIT_FORMATTERS: dict[Unit, Formatter] = {
    Unit.KIBI: kibi,
    Unit.MEBI: mebi,
    Unit.GIBI: gibi,
    Unit.TEBI: tebi,
    Unit.KILO: kilo,
    Unit.MEGA: mega,
    Unit.GIGA: giga,
    Unit.TERA: tera,
    Unit.SIZE: size,
    Unit.DURATION: duration_human,
}


def formatter_for(unit: Unit | None, quantity: Quantity, human: bool = True) -> Formatter:
    """Return the formatter for an explicit unit or the default for a quantity."""
    if unit is not None:
        return UNIT_FORMATTERS[unit]
    if quantity is Quantity.MILLISECONDS:
        return duration_human if human else duration_seconds
    if quantity is Quantity.BYTES and human:
        return size
    return identity


def format_optional(formatter: Formatter, value: float | None) -> str:
    """Format a value that may be absent."""
    if value is None:
        return ABSENT
    return formatter(value)
