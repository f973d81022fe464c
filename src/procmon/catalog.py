"""Catalog of the metrics that can be collected for a process.

The catalog is closed: every metric is declared here, in display order.
Selectors are resolved against it by :func:`resolve`.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum

import structlog

from procmon.errors import DuplicateMetric, InvalidSelector, UnknownMetric, UnsupportedAggregation
from procmon.formatting import Formatter, Quantity, formatter_for
from procmon.selector import WILDCARD, Aggregation, MetricSelector, Unit, parse_selector

log = structlog.get_logger()

SHORT_NAME_MAX_LEN = 10


class MetricKind(Enum):
    """Counters only increase (read calls), gauges go up and down (memory)."""

    COUNTER = "counter"
    GAUGE = "gauge"


@dataclass(slots=True, frozen=True)
class MetricDescriptor:
    """A concrete metric of the catalog."""

    name: str
    kind: MetricKind
    description: str
    key: str  # extraction key used by the data source
    quantity: Quantity = Quantity.COUNT
    supports_ratio: bool = False
    short_name: str | None = None

    @property
    def segments(self) -> tuple[str, ...]:
        return tuple(self.name.split(":"))

    @property
    def label(self) -> str:
        """Column label of at most SHORT_NAME_MAX_LEN characters."""
        return self.short_name or self.name

    @property
    def tracks_trend(self) -> bool:
        """Times always move, so showing their trend is noise."""
        return self.segments[0] != "time"


C = MetricKind.COUNTER
G = MetricKind.GAUGE

# Memory map regions: (segment, short label, description)
MAP_REGIONS = (
    ("anon", "anon", "anonymous mapped memory regions"),
    ("heap", "heap", "mapped heap regions"),
    ("file", "file", "memory mapped files"),
    ("stack", "stk", "mapped main stack"),
    ("tstack", "tstk", "mapped thread stacks"),
    ("vdso", "vdso", "mapped vdso regions, see vdso(7)"),
    ("vsys", "vsys", "shared memory segments"),
    ("vsyscall", "vsc", "mapped vsyscall regions, see vdso(7)"),
    ("vvar", "vvar", "mapped kernel variables, see vdso(7)"),
    ("other", "oth", "other mapped memory regions"),
)


def _map_descriptors() -> list[MetricDescriptor]:
    descriptors = []
    for region, short, description in MAP_REGIONS:
        descriptors.append(
            MetricDescriptor(f"map:{region}:count", G, f"number of {description}",
                             f"maps.{region}_count", short_name=f"m:{short}:cnt")
        )
        descriptors.append(
            MetricDescriptor(f"map:{region}:size", G, f"total size of {description}",
                             f"maps.{region}_size", Quantity.BYTES, short_name=f"m:{short}:sz")
        )
    return descriptors


CATALOG: tuple[MetricDescriptor, ...] = (
    MetricDescriptor("fault:minor", C, "page faults without disk access", "stat.minflt",
                     short_name="flt:min"),
    MetricDescriptor("fault:major", C, "page faults with disk access", "stat.majflt",
                     short_name="flt:maj"),
    MetricDescriptor("fd:all", G, "number of file descriptors", "num_fds"),
    MetricDescriptor("fd:high", G, "highest file descriptor number", "fds.high"),
    MetricDescriptor("fd:file", G, "number of files", "fds.file"),
    MetricDescriptor("fd:socket", G, "number of sockets", "fds.socket"),
    MetricDescriptor("fd:net", G, "number of network namespace descriptors", "fds.net"),
    MetricDescriptor("fd:pipe", G, "number of pipes", "fds.pipe"),
    MetricDescriptor("fd:anon", G, "number of file descriptors without inode", "fds.anon"),
    MetricDescriptor("fd:mfd", G, "number of in-memory files", "fds.mfd"),
    MetricDescriptor("fd:other", G, "number of file descriptors in no other category",
                     "fds.other"),
    MetricDescriptor("io:read:call", C,
                     "number of read operations with system calls such as read(2) and pread(2)",
                     "io.read_count", short_name="rd:call"),
    MetricDescriptor("io:read:total", C, "number of bytes read from storage or page cache",
                     "io.read_chars", Quantity.BYTES, short_name="rd:total"),
    MetricDescriptor("io:read:storage", C, "number of bytes really fetched from storage",
                     "io.read_bytes", Quantity.BYTES, short_name="rd:store"),
    MetricDescriptor("io:write:call", C,
                     "number of write operations with system calls such as write(2) and pwrite(2)",
                     "io.write_count", short_name="wr:call"),
    MetricDescriptor("io:write:total", C, "number of bytes written to storage or page cache",
                     "io.write_chars", Quantity.BYTES, short_name="wr:total"),
    MetricDescriptor("io:write:storage", C, "number of bytes really sent to storage",
                     "io.write_bytes", Quantity.BYTES, short_name="wr:store"),
    *_map_descriptors(),
    MetricDescriptor("mem:rss", G, "resident set size", "memory.rss", Quantity.BYTES),
    MetricDescriptor("mem:vm", G, "virtual memory", "memory.vms", Quantity.BYTES),
    MetricDescriptor("mem:text", G, "text size (code)", "memory.text", Quantity.BYTES),
    MetricDescriptor("mem:data", G, "data + stack size", "memory.data", Quantity.BYTES),
    MetricDescriptor("time:elapsed", C, "elapsed time since process started", "time.elapsed",
                     Quantity.MILLISECONDS, short_name="tm:elapsed"),
    MetricDescriptor("time:cpu", C, "elapsed time in kernel or user mode", "time.cpu",
                     Quantity.MILLISECONDS, supports_ratio=True, short_name="tm:cpu"),
    MetricDescriptor("time:system", C, "elapsed time in kernel mode", "time.system",
                     Quantity.MILLISECONDS, supports_ratio=True, short_name="tm:sys"),
    MetricDescriptor("time:user", C, "elapsed time in user mode", "time.user",
                     Quantity.MILLISECONDS, supports_ratio=True, short_name="tm:user"),
    MetricDescriptor("thread:count", G, "number of threads", "threads", short_name="thread:cnt"),
)

del C, G


@dataclass(slots=True, frozen=True)
class MonitoredMetric:
    """A resolved metric with the values to display and how to format them."""

    descriptor: MetricDescriptor
    raw: bool = True
    aggregations: tuple[Aggregation, ...] = ()
    unit: Unit | None = None
    human: bool = True

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def formatter(self) -> Formatter:
        return formatter_for(self.unit, self.descriptor.quantity, self.human)

    def column_labels(self, short: bool = False) -> list[str]:
        """One label per displayed value: the raw value first, then aggregations."""
        name = self.descriptor.label if short else self.name
        labels = [name] if self.raw else []
        labels.extend(f"{name} ({agg.value})" for agg in self.aggregations)
        return labels


def _matches(pattern: tuple[str, ...], name: tuple[str, ...]) -> bool:
    """Match a name against a path with at most one wildcard.

    A leading wildcard stands for any non-empty head (``*:call``), a trailing
    one for any non-empty tail (``io:*``) and a middle one for exactly one
    segment (``io:*:call``). A lone wildcard matches nothing.
    """
    if WILDCARD not in pattern:
        return pattern == name
    index = pattern.index(WILDCARD)
    head, tail = pattern[:index], pattern[index + 1 :]
    if not head and not tail:
        return False
    if not head:
        return len(name) > len(tail) and name[-len(tail) :] == tail
    if not tail:
        return len(name) > len(head) and name[: len(head)] == head
    return len(name) == len(pattern) and name[:index] == head and name[index + 1 :] == tail


def resolve(
    selector: MetricSelector,
    catalog: Sequence[MetricDescriptor] = CATALOG,
) -> list[MetricDescriptor]:
    """Return the catalog entries matching a selector, in catalog order.

    Raises:
        InvalidSelector: the selector asks for neither the raw value nor an aggregation.
        UnknownMetric: nothing matches.
        UnsupportedAggregation: ratio is requested for a metric without system total.
    """
    if selector.selects_nothing():
        raise InvalidSelector(str(selector), "-raw", "nothing left to display after")
    pattern = selector.segments
    matched = [descriptor for descriptor in catalog if _matches(pattern, descriptor.segments)]
    if not matched:
        raise UnknownMetric(selector.base)
    if Aggregation.RATIO in selector.aggregations:
        for descriptor in matched:
            if not descriptor.supports_ratio:
                raise UnsupportedAggregation(descriptor.name, Aggregation.RATIO.value)
    return matched


def resolve_all(
    selectors: Iterable[str | MetricSelector],
    human: bool = True,
    catalog: Sequence[MetricDescriptor] = CATALOG,
) -> list[MonitoredMetric]:
    """Parse and resolve selectors into the list of monitored metrics.

    Metrics come in selector order, then catalog order within a pattern.

    Raises:
        MetricError: any parse or resolution error, or a metric selected twice.
    """
    metrics: list[MonitoredMetric] = []
    seen: set[str] = set()
    for item in selectors:
        selector = parse_selector(item) if isinstance(item, str) else item
        descriptors = resolve(selector, catalog)
        for descriptor in descriptors:
            if descriptor.name in seen:
                raise DuplicateMetric(descriptor.name)
            seen.add(descriptor.name)
            metrics.append(
                MonitoredMetric(
                    descriptor=descriptor,
                    raw=selector.raw,
                    aggregations=selector.ordered_aggregations(),
                    unit=selector.unit,
                    human=human,
                )
            )
        log.debug(
            "selector_resolved",
            selector=str(selector),
            metrics=[descriptor.name for descriptor in descriptors],
        )
    return metrics
