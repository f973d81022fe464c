"""Metric selector parser.

A selector names one or more metrics and what to show for them::

    name[-raw][+min][+max][+ratio][/unit]

The name is a colon separated path such as ``mem:rss``. One segment of the
path may be the wildcard ``*`` (``mem:*``, ``*:call``, ``io:*:total``).
"""

import re
from dataclasses import dataclass
from enum import Enum

from procmon.errors import InvalidSelector, InvalidUnit

WILDCARD = "*"

_SEGMENT_RE = re.compile(r"[a-z]+")
_MODIFIER_RE = re.compile(r"[-+][^-+]*")


class Aggregation(Enum):
    """Aggregations that can be requested in addition to the raw value."""

    MIN = "min"
    MAX = "max"
    RATIO = "ratio"

    @property
    def rank(self) -> int:
        """Position of the aggregation in displayed columns."""
        return _AGGREGATION_ORDER.index(self)


_AGGREGATION_ORDER = (Aggregation.MIN, Aggregation.MAX, Aggregation.RATIO)
_AGGREGATION_NAMES = frozenset(agg.value for agg in Aggregation)


class Unit(Enum):
    """Display units.

    Binary units divide by powers of 1024, decimal units by powers of 1000.
    SIZE picks the best decimal unit and DURATION renders milliseconds as
    hours, minutes and seconds.
    """

    KIBI = "ki"
    MEBI = "mi"
    GIBI = "gi"
    TEBI = "ti"
    KILO = "k"
    MEGA = "m"
    GIGA = "g"
    TERA = "t"
    SIZE = "sz"
    DURATION = "du"


@dataclass(slots=True, frozen=True)
class MetricSelector:
    """Parsed selector. Immutable."""

    base: str
    aggregations: frozenset[Aggregation] = frozenset()
    raw: bool = True
    unit: Unit | None = None

    @property
    def segments(self) -> tuple[str, ...]:
        return tuple(self.base.split(":"))

    def ordered_aggregations(self) -> tuple[Aggregation, ...]:
        """Aggregations in display order, independent of how they were typed."""
        return tuple(sorted(self.aggregations, key=lambda agg: agg.rank))

    def selects_nothing(self) -> bool:
        return not self.raw and not self.aggregations

    def __str__(self) -> str:
        return format_selector(self)


def _parse_base(selector: str, base: str) -> str:
    if not base:
        raise InvalidSelector(selector, selector, "missing metric name in")
    wildcards = 0
    for segment in base.split(":"):
        if segment == WILDCARD:
            wildcards += 1
            if wildcards > 1:
                raise InvalidSelector(selector, segment, "only one wildcard allowed, got another")
        elif not _SEGMENT_RE.fullmatch(segment):
            raise InvalidSelector(selector, segment or ":", "invalid metric segment")
    return base


def _parse_unit(selector: str, code: str) -> Unit:
    if not code:
        raise InvalidSelector(selector, "/", "missing unit after")
    if "/" in code:
        raise InvalidSelector(selector, code)
    try:
        return Unit(code)
    except ValueError:
        raise InvalidUnit(selector, code) from None


def parse_selector(text: str) -> MetricSelector:
    """Parse a selector string.

    Raises:
        InvalidSelector: the string does not follow the grammar.
        InvalidUnit: the unit code is unknown.
    """
    body, slash, unit_code = text.partition("/")
    trailing = _MODIFIER_RE.search(unit_code)
    if trailing is not None:
        raise InvalidSelector(text, trailing.group(), "modifiers must precede the unit, got")
    unit = _parse_unit(text, unit_code) if slash else None

    cut = min((pos for pos in (body.find("-"), body.find("+")) if pos >= 0), default=len(body))
    base = _parse_base(text, body[:cut])

    raw = True
    aggregations: set[Aggregation] = set()
    for token in _MODIFIER_RE.findall(body[cut:]):
        if token == "-raw":
            if aggregations:
                raise InvalidSelector(text, token, "raw toggle must precede aggregations, got")
            raw = False
        elif token.startswith("+") and token[1:] in _AGGREGATION_NAMES:
            aggregations.add(Aggregation(token[1:]))
        else:
            raise InvalidSelector(text, token)

    return MetricSelector(base=base, aggregations=frozenset(aggregations), raw=raw, unit=unit)


def format_selector(selector: MetricSelector) -> str:
    """Canonical text of a selector; parsing it gives back an equal selector."""
    parts = [selector.base]
    if not selector.raw:
        parts.append("-raw")
    parts.extend(f"+{agg.value}" for agg in selector.ordered_aggregations())
    if selector.unit is not None:
        parts.append(f"/{selector.unit.value}")
    return "".join(parts)
