"""Errors raised by procmon.

Selector errors derive from :class:`MetricError` and are fatal before any
sampling starts. The other errors belong to the I/O collaborators.
"""


class MetricError(Exception):
    """Base class for selector and resolution errors.

    These are fatal to a run: they are raised before any sampling starts.
    """


class InvalidSelector(MetricError):
    """A selector string does not follow the selector grammar."""

    def __init__(self, selector: str, token: str, reason: str = "invalid token") -> None:
        self.selector = selector
        self.token = token
        super().__init__(f"{selector}: {reason} {token!r}")


class InvalidUnit(MetricError):
    """The unit code after '/' is not a known unit."""

    def __init__(self, selector: str, unit: str) -> None:
        self.selector = selector
        self.unit = unit
        super().__init__(f"{selector}: unknown unit {unit!r}")


class UnknownMetric(MetricError):
    """A selector matches no metric of the catalog."""

    def __init__(self, pattern: str) -> None:
        self.pattern = pattern
        super().__init__(f"{pattern}: unknown metric or pattern")


class UnsupportedAggregation(MetricError):
    """An aggregation is requested for a metric that cannot provide it."""

    def __init__(self, metric: str, aggregation: str) -> None:
        self.metric = metric
        self.aggregation = aggregation
        super().__init__(f"{metric}: aggregation {aggregation!r} is not supported")


class DuplicateMetric(MetricError):
    """Two selectors resolve to the same metric."""

    def __init__(self, metric: str) -> None:
        self.metric = metric
        super().__init__(f"{metric}: duplicate metric")


class TargetError(Exception):
    """A monitored process target cannot be resolved."""


class ConfigError(ValueError):
    """The configuration file cannot be parsed."""


class ExportError(Exception):
    """An export sink failed to write."""
