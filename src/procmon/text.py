"""Flat text output: one table row per tick, a column group per process."""

import math
import signal
import threading
import time
from collections.abc import Callable, Mapping, Sequence

import structlog

from procmon.aggregation import MetricValues, SamplingEngine
from procmon.catalog import MonitoredMetric
from procmon.export import FileExporter
from procmon.formatting import ABSENT
from procmon.models import ProcessSample
from procmon.monitor import ProcessReader

log = structlog.get_logger()

REPEAT_HEADER_EVERY = 20
RESIZE_IF_COLUMNS_SHRINK = 2


class TextTable:
    """Formats ticks as rows of a text table.

    The header is printed again every REPEAT_HEADER_EVERY rows and whenever
    the set of processes or the column width changes.
    """

    def __init__(self, metrics: Sequence[MonitoredMetric]) -> None:
        self._metrics = list(metrics)
        self._subtitles = [
            label for metric in self._metrics for label in metric.column_labels(short=True)
        ]
        self._titles: list[str] = []
        self._column_width = 0
        self._rows_since_header = 0

    @property
    def column_width(self) -> int:
        return self._column_width

    def _cells(self, values: MetricValues | None) -> list[str]:
        if values is None:
            return [ABSENT] * len(self._subtitles)
        cells: list[str] = []
        for metric in self._metrics:
            snapshot = values.get(metric.descriptor)
            if snapshot is None:
                cells.extend([ABSENT] * len(metric.column_labels()))
            else:
                cells.extend(snapshot.cells())
        return cells

    def _resize(self, titles: Sequence[str], cells: Sequence[str]) -> bool:
        group = max(1, len(self._subtitles))
        width = max((len(label) for label in self._subtitles), default=0)
        width = max(width, max((len(cell) for cell in cells), default=0))
        for title in titles:
            # the title spans the columns of its group and their separators
            width = max(width, math.ceil((len(title) + 3) / group) - 3)
        if width > self._column_width or self._column_width - width > RESIZE_IF_COLUMNS_SHRINK:
            self._column_width = width
            return True
        return False

    def _rule(self, count: int, width: int, separator: str) -> str:
        return separator + separator.join("-" * (width + 2) for _ in range(count)) + separator

    def _header(self) -> list[str]:
        group = max(1, len(self._subtitles))
        title_width = (self._column_width + 3) * group - 3
        count = len(self._titles)
        return [
            self._rule(count, title_width, "|"),
            "|" + "|".join(f" {title:^{title_width}} " for title in self._titles) + "|",
            self._rule(count, title_width, "+"),
            self._row(self._subtitles * count),
        ]

    def _row(self, cells: Sequence[str]) -> str:
        width = self._column_width
        return "|" + "|".join(f" {cell:^{width}} " for cell in cells) + "|"

    def render(
        self,
        processes: Sequence[ProcessSample],
        values: Mapping[int, MetricValues],
    ) -> list[str]:
        """Lines to print for one tick, header included when due."""
        ordered = sorted(processes, key=lambda sample: sample.pid)
        titles = [f"{sample.name} ({sample.pid})" for sample in ordered]
        cells = [cell for sample in ordered for cell in self._cells(values.get(sample.pid))]
        if not titles:
            return []
        resized = self._resize(titles, cells)
        lines: list[str] = []
        if resized or titles != self._titles or self._rows_since_header == 0:
            self._titles = titles
            lines.extend(self._header())
            self._rows_since_header = 0
        lines.append(self._row(cells))
        self._rows_since_header = (self._rows_since_header + 1) % REPEAT_HEADER_EVERY
        return lines


def run_loop(
    reader: ProcessReader,
    engine: SamplingEngine,
    every: float,
    count: int | None = None,
    exporter: FileExporter | None = None,
    output: Callable[[str], None] | None = None,
) -> int:
    """Sample until ``count`` ticks are done or a termination signal arrives.

    Without ``output`` nothing is printed, the values are only exported.
    Returns the number of ticks done.
    """
    table = TextTable(engine.metrics) if output is not None else None
    stop = threading.Event()

    def handle_signal(signum: int, frame: object) -> None:
        log.info("signal_received", signal=signal.Signals(signum).name)
        stop.set()

    previous = {sig: signal.signal(sig, handle_signal) for sig in (signal.SIGTERM, signal.SIGINT)}
    ticks = 0
    try:
        while not stop.is_set():
            started = time.monotonic()
            tick = reader.read()
            values = engine.tick(tick.timestamp, tick.processes, tick.system)
            if exporter is not None:
                exporter.submit(engine.export_records())
            if table is not None:
                for line in table.render(tick.processes, values):
                    output(line)
            ticks += 1
            if count is not None and ticks >= count:
                break
            stop.wait(max(0.0, every - (time.monotonic() - started)))
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    log.info("loop_stopped", ticks=ticks)
    return ticks
