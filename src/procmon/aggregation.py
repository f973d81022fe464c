"""Sampling and aggregation engine.

On every tick the engine ingests the raw values read by the data source and
updates one accumulator per (process, metric): the last raw value, the running
minimum and maximum, the rate of counters and the ratio against the system
total for metrics that have one.
"""

from collections import deque
from collections.abc import Collection, Iterable, Sequence
from dataclasses import dataclass
from enum import Enum

import structlog

from procmon.catalog import MetricDescriptor, MetricKind, MonitoredMetric
from procmon.formatting import ABSENT, format_optional, ratio
from procmon.models import ExportRecord, ProcessSample, SystemSample
from procmon.selector import Aggregation

log = structlog.get_logger()

ACTIVITY_WINDOW = 5


class Trend(Enum):
    """Direction of a value since the previous tick."""

    DOWN = -1
    STEADY = 0
    UP = 1

    @property
    def symbol(self) -> str:
        return {Trend.DOWN: "↓", Trend.STEADY: " ", Trend.UP: "↑"}[self]


def _trend(previous: float | None, value: float) -> Trend:
    if previous is None or value == previous:
        return Trend.STEADY
    return Trend.UP if value > previous else Trend.DOWN


@dataclass(slots=True)
class Accumulator:
    """Rolling statistics of one metric for one process."""

    kind: MetricKind
    last_raw: float | None = None
    last_sample_time: float | None = None
    last_system_total: float | None = None
    min_seen: float | None = None
    max_seen: float | None = None
    last_rate: float | None = None
    last_ratio: float | None = None
    sample_count: int = 0
    trend: Trend = Trend.STEADY

    def _restart(self, now: float, value: float, system_total: float | None) -> None:
        self.last_raw = value
        self.last_sample_time = now
        self.last_system_total = system_total
        self.min_seen = value
        self.max_seen = value
        self.last_rate = None
        self.last_ratio = None
        self.sample_count = 1
        self.trend = Trend.STEADY

    def update(self, now: float, value: float, system_total: float | None = None) -> None:
        """Ingest a new raw value.

        ``system_total`` is the system-wide counter used as ratio denominator;
        pass None when the ratio is not wanted.

        A counter going backwards is a discontinuity (counter reset or reused
        pid): the accumulator restarts from the new value instead of reporting
        a negative rate.
        """
        previous = self.last_raw
        if previous is None or self.sample_count == 0:
            self._restart(now, value, system_total)
            return
        if self.kind is MetricKind.COUNTER and value < previous:
            log.debug("counter_discontinuity", previous=previous, value=value)
            self._restart(now, value, system_total)
            return

        self.min_seen = value if self.min_seen is None else min(self.min_seen, value)
        self.max_seen = value if self.max_seen is None else max(self.max_seen, value)
        if self.kind is MetricKind.COUNTER:
            delta = value - previous
            interval = now - self.last_sample_time if self.last_sample_time is not None else 0.0
            self.last_rate = delta / interval if interval > 0 else None
            self.last_ratio = None
            if system_total is not None and self.last_system_total is not None:
                system_delta = system_total - self.last_system_total
                if system_delta > 0:
                    self.last_ratio = min(1.0, max(0.0, delta / system_delta))
        self.trend = _trend(previous, value)
        self.last_raw = value
        self.last_sample_time = now
        self.last_system_total = system_total
        self.sample_count += 1


@dataclass(slots=True, frozen=True)
class MetricSnapshot:
    """Values of one metric for one process at the end of a tick."""

    metric: MonitoredMetric
    raw: float | None = None
    minimum: float | None = None
    maximum: float | None = None
    rate: float | None = None
    ratio: float | None = None
    trend: Trend = Trend.STEADY
    fresh: bool = True  # False when the value could not be read this tick

    @classmethod
    def of(cls, metric: MonitoredMetric, acc: Accumulator, fresh: bool) -> "MetricSnapshot":
        return cls(
            metric=metric,
            raw=acc.last_raw,
            minimum=acc.min_seen,
            maximum=acc.max_seen,
            rate=acc.last_rate if fresh else None,
            ratio=acc.last_ratio if fresh else None,
            trend=acc.trend if fresh and metric.descriptor.tracks_trend else Trend.STEADY,
            fresh=fresh,
        )

    def value(self, aggregation: Aggregation | None) -> float | None:
        """The raw value (None) or an aggregation."""
        if aggregation is None:
            return self.raw
        if aggregation is Aggregation.MIN:
            return self.minimum
        if aggregation is Aggregation.MAX:
            return self.maximum
        return self.ratio

    def cells(self) -> list[str]:
        """Displayed values, formatted."""
        formatter = self.metric.formatter
        cells = [format_optional(formatter, self.raw)] if self.metric.raw else []
        for aggregation in self.metric.aggregations:
            value = self.value(aggregation)
            if aggregation is Aggregation.RATIO:
                cells.append(ABSENT if value is None else ratio(value))
            else:
                cells.append(format_optional(formatter, value))
        return cells

    def formatted_rate(self) -> str:
        if self.rate is None:
            return ABSENT
        return f"{self.metric.formatter(self.rate)}/s"


MetricValues = dict[MetricDescriptor, MetricSnapshot]


class ActivityHistory:
    """CPU usage ratio of each process over the last ticks.

    Fed from the CPU time every process sample carries, whatever metrics are
    displayed, so the "active" filter works with any selection.
    """

    def __init__(self, window: int = ACTIVITY_WINDOW) -> None:
        self._window = window
        self._previous: dict[int, tuple[float, float]] = {}
        self._ratios: dict[int, deque[float]] = {}

    def update(self, sample: ProcessSample, system: SystemSample) -> None:
        if sample.cpu_time is None:
            return
        previous = self._previous.get(sample.pid)
        self._previous[sample.pid] = (sample.cpu_time, system.total_time)
        ratios = self._ratios.setdefault(sample.pid, deque(maxlen=self._window))
        if previous is None:
            return
        cpu_delta = sample.cpu_time - previous[0]
        system_delta = system.total_time - previous[1]
        if cpu_delta < 0 or system_delta <= 0:
            ratios.clear()
            return
        ratios.append(cpu_delta / system_delta)

    def retain(self, pids: Collection[int]) -> None:
        for pid in [pid for pid in self._previous if pid not in pids]:
            del self._previous[pid]
            self._ratios.pop(pid, None)

    def forget(self, pid: int) -> None:
        self._previous.pop(pid, None)
        self._ratios.pop(pid, None)

    def ratios(self, pid: int) -> list[float]:
        return list(self._ratios.get(pid, ()))

    def is_active(self, pid: int) -> bool:
        """False only for a process measured idle over the whole window so far."""
        ratios = self._ratios.get(pid)
        if not ratios:
            return True
        return any(value > 0 for value in ratios)


class SamplingEngine:
    """Owns the accumulators of every visible (process, metric) pair."""

    def __init__(self, metrics: Sequence[MonitoredMetric]) -> None:
        self._metrics = list(metrics)
        self._accumulators: dict[int, dict[str, Accumulator]] = {}
        self._start_times: dict[int, float] = {}
        self._values: dict[int, MetricValues] = {}
        self._records: list[ExportRecord] = []
        self.activity = ActivityHistory()

    @property
    def metrics(self) -> list[MonitoredMetric]:
        return list(self._metrics)

    def tracked_pids(self) -> set[int]:
        return set(self._accumulators)

    def accumulator(self, pid: int, name: str) -> Accumulator | None:
        return self._accumulators.get(pid, {}).get(name)

    def _forget(self, pid: int) -> None:
        self._accumulators.pop(pid, None)
        self._start_times.pop(pid, None)
        self._values.pop(pid, None)

    def _check_identity(self, sample: ProcessSample) -> None:
        start_time = self._start_times.get(sample.pid)
        if start_time is not None and start_time != sample.start_time:
            log.debug("pid_reused", pid=sample.pid, name=sample.name)
            self._forget(sample.pid)
            self.activity.forget(sample.pid)
        self._start_times[sample.pid] = sample.start_time

    def tick(
        self,
        now: float,
        samples: Iterable[ProcessSample],
        system: SystemSample,
    ) -> dict[int, MetricValues]:
        """Ingest one tick of samples and return the values of every process.

        A metric missing from a sample keeps its last value but is neither
        aggregated nor exported this tick. Processes absent from ``samples``
        are forgotten.
        """
        seen: set[int] = set()
        records: list[ExportRecord] = []
        for sample in samples:
            pid = sample.pid
            seen.add(pid)
            self._check_identity(sample)
            self.activity.update(sample, system)
            accumulators = self._accumulators.setdefault(pid, {})
            values: MetricValues = {}
            for metric in self._metrics:
                descriptor = metric.descriptor
                acc = accumulators.get(descriptor.name)
                if acc is None:
                    acc = accumulators[descriptor.name] = Accumulator(descriptor.kind)
                raw = sample.values.get(descriptor.name)
                if raw is not None:
                    system_total = system.total_time if descriptor.supports_ratio else None
                    acc.update(now, raw, system_total)
                    if metric.raw:
                        records.append(ExportRecord(now, pid, sample.name, descriptor.name, raw))
                values[descriptor] = MetricSnapshot.of(metric, acc, fresh=raw is not None)
            self._values[pid] = values

        for pid in [pid for pid in self._accumulators if pid not in seen]:
            self._forget(pid)
        self.activity.retain(seen)
        self._records = records
        return dict(self._values)

    def retain(self, pids: Collection[int]) -> None:
        """Drop the accumulators of processes that are not displayed anymore."""
        for pid in [pid for pid in self._accumulators if pid not in pids]:
            self._forget(pid)
        self._records = [record for record in self._records if record.pid in pids]

    def export_records(self) -> list[ExportRecord]:
        """Raw values read during the last tick, for the export sinks."""
        return list(self._records)
