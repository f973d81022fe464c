"""procmon - Interactive process tree dashboard."""

import asyncio
import os
import signal
from collections.abc import Sequence
from queue import Empty, Queue

import structlog
from rich.text import Text
from textual import events
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal
from textual.message import Message
from textual.widgets import Footer, Static

from procmon.aggregation import MetricValues, SamplingEngine
from procmon.catalog import MonitoredMetric
from procmon.export import FileExporter
from procmon.forest import Forest, ProcessFilter, ProcessNode, TreeLine, build_forest
from procmon.formatting import ABSENT, duration_human
from procmon.models import SystemSample, Tick
from procmon.monitor import ProcessReader, SystemMonitor
from procmon.navigation import Mode, Navigator, Scope

log = structlog.get_logger()

QUEUE_CHECK_INTERVAL = 0.1
MIN_NAME_WIDTH = 16
MIN_VALUE_WIDTH = 9


def _bar(percent: float, color: str, width: int = 20) -> str:
    filled = min(width, max(0, int(percent * width / 100)))
    return f"[{color}]█[/{color}]" * filled + "[dim]░[/dim]" * (width - filled)


class HeaderStats(Static):
    """Header widget showing system statistics and the state of the view."""

    DEFAULT_CSS = """
    HeaderStats {
        height: auto;
        min-height: 4;
        padding: 0 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._system: SystemSample | None = None
        self._view_info = "Waiting for the first sample..."

    def compose(self) -> ComposeResult:
        yield Horizontal(
            Static(self._get_system_info(), id="system-info"),
            Static(self._view_info, id="view-info"),
        )

    def update_system(self, system: SystemSample) -> None:
        self._system = system
        self._refresh_part("#system-info", self._get_system_info())

    def update_view(self, text: str) -> None:
        self._view_info = text
        self._refresh_part("#view-info", text)

    def _refresh_part(self, selector: str, content: str) -> None:
        if self.is_mounted:
            self.query_one(selector, Static).update(content)

    def _get_system_info(self) -> str:
        system = self._system
        if system is None or system.memory_total == 0:
            return "Loading system info..."

        mem_percent = 100.0 * system.memory_used / system.memory_total
        mem_used_gb = system.memory_used / (1024**3)
        mem_total_gb = system.memory_total / (1024**3)
        load = system.load_avg
        uptime = duration_human(system.uptime_seconds * 1000.0)

        # Use escaped brackets for the bar container
        return (
            f"Mem\\[{_bar(mem_percent, 'cyan')}] {mem_used_gb:.1f}G/{mem_total_gb:.1f}G\n"
            f"Load average: {load[0]:.2f} {load[1]:.2f} {load[2]:.2f}\n"
            f"CPUs: {system.cpu_count}  Uptime: {uptime}"
        )


class ProcessView(Static, can_focus=True):
    """The process tree, or the flat list of marked processes.

    Keys typed while a search is being edited are captured here, before the
    application bindings see them.
    """

    DEFAULT_CSS = """
    ProcessView {
        height: 1fr;
        border: solid $primary;
    }
    """

    class NavigationChanged(Message):
        """The navigation state was changed by the view itself."""

    def __init__(self, navigator: Navigator, metrics: Sequence[MonitoredMetric], **kwargs) -> None:
        super().__init__(**kwargs)
        self._navigator = navigator
        self._metrics = list(metrics)

    def _value_width(self, metric: MonitoredMetric) -> int:
        labels = metric.column_labels(short=True)
        return max(MIN_VALUE_WIDTH, max((len(label) for label in labels), default=0))

    def _name_width(self, lines: Sequence[TreeLine]) -> int:
        widths = (len(line.prefix()) + len(line.node.name) for line in lines)
        return max(MIN_NAME_WIDTH, max(widths, default=0))

    def header_row(self, name_width: int) -> str:
        parts = [f"  {'PID':>7} S {'COMMAND':<{name_width}}"]
        for metric in self._metrics:
            width = self._value_width(metric)
            parts.extend(f" {label:>{width}} " for label in metric.column_labels(short=True))
        return "".join(parts)

    def format_row(self, line: TreeLine, name_width: int) -> str:
        node = line.node
        mark = "*" if self._navigator.is_marked(node.pid) else " "
        name = line.prefix() + node.name
        parts = [f"{mark} {node.pid:>7} {node.state.value} {name:<{name_width}}"]
        for metric in self._metrics:
            width = self._value_width(metric)
            snapshot = node.metric_values.get(metric.descriptor)
            if snapshot is None:
                cells = [ABSENT] * len(metric.column_labels())
                trend = " "
            else:
                cells = snapshot.cells()
                trend = snapshot.trend.symbol
            for index, cell in enumerate(cells):
                suffix = trend if index == 0 and metric.raw else " "
                parts.append(f" {cell:>{width}}{suffix}")
        return "".join(parts)

    def _style(self, pid: int) -> str:
        styles = []
        if pid == self._navigator.state.cursor_pid:
            styles.append("reverse")
        if self._navigator.is_match(pid):
            styles.append("bold yellow")
        elif self._navigator.is_marked(pid):
            styles.append("bold cyan")
        return " ".join(styles)

    def refresh_rows(self) -> None:
        """Render the rows inside the viewport."""
        navigator = self._navigator
        lines = navigator.lines
        name_width = self._name_width(lines)
        header = self.header_row(name_width)
        navigator.set_content_width(len(header))

        left = navigator.state.horizontal_offset
        right = left + navigator.state.viewport_width
        content = [Text(header[left:right], style="bold")]
        for line in navigator.visible_lines():
            row = self.format_row(line, name_width)
            content.append(Text(row[left:right], style=self._style(line.pid)))
        if not lines:
            content.append(Text("No process to display", style="dim"))
        self.update(Text("\n").join(content))

    def on_resize(self, event: events.Resize) -> None:
        # one row for the column titles
        self._navigator.resize(event.size.height - 1, event.size.width)
        self.refresh_rows()

    def on_key(self, event: events.Key) -> None:
        navigator = self._navigator
        if navigator.mode is not Mode.SEARCHING:
            return
        event.stop()
        event.prevent_default()
        if event.key == "enter":
            navigator.commit_search()
        elif event.key == "backspace":
            navigator.pop_char()
        elif event.is_printable and event.character:
            navigator.push_char(event.character)
        self.refresh_rows()
        self.post_message(self.NavigationChanged())


class DetailView(Static):
    """Details of one process, every value of every metric."""

    DEFAULT_CSS = """
    DetailView {
        height: auto;
        max-height: 50%;
        border: solid $secondary;
        padding: 0 1;
    }
    """

    def show_node(self, node: ProcessNode | None, metrics: Sequence[MonitoredMetric]) -> None:
        if node is None:
            self.update("")
            return
        lines = [
            f"[bold]{node.name}[/bold]  pid {node.pid}  parent {node.parent_pid or ABSENT}"
            f"  state {node.state.value}  uid {node.uid}",
        ]
        for metric in metrics:
            snapshot = node.metric_values.get(metric.descriptor)
            if snapshot is None:
                lines.append(f"{metric.name:<18} {ABSENT}")
                continue
            values = "  ".join(
                f"{label}={cell}"
                for label, cell in zip(metric.column_labels(), snapshot.cells())
            )
            lines.append(
                f"{metric.name:<18} {values}  rate={snapshot.formatted_rate()}"
                f"  trend={snapshot.trend.symbol}"
            )
        self.update("\n".join(lines))


HELP_TEXT = """\
[bold]Keys[/bold]
  ↑ ↓ PgUp PgDn Home End   move the cursor
  ← →                      scroll horizontally
  /                        search, Enter to keep, Esc to cancel
  n N                      next / previous match
  Space m                  mark the process, or every match
  c                        clear marks
  t                        tree / marked processes
  r                        restrict to the subtree / whole tree
  Enter                    process details
  F                        cycle the process filter
  + -                      refresh faster / slower
  Esc                      close, clear search, leave subtree
  q                        quit
"""


class ProcmonApp(App):
    """Main procmon application."""

    TITLE = "procmon"
    SUB_TITLE = "Process monitor"

    CSS = """
    Screen {
        layout: vertical;
    }

    #header-stats {
        dock: top;
    }

    Horizontal {
        height: auto;
    }

    #system-info {
        width: 1fr;
        padding-right: 2;
    }

    #view-info {
        width: 1fr;
        padding-left: 2;
    }

    #status-line {
        height: 1;
        background: $boost;
    }

    #help {
        height: auto;
        border: solid $accent;
        padding: 0 1;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("slash", "search", "Search"),
        Binding("n", "next_match", "Next"),
        Binding("N", "previous_match", "Previous", show=False),
        Binding("space", "toggle_mark", "Mark"),
        Binding("m", "toggle_mark", "Mark", show=False),
        Binding("c", "clear_marks", "Clear marks", show=False),
        Binding("t", "toggle_scope", "Marked"),
        Binding("r", "toggle_root", "Subtree"),
        Binding("enter", "details", "Details"),
        Binding("escape", "back", "Back", show=False, priority=True),
        Binding("F", "cycle_filter", "Filter"),
        Binding("plus", "faster", "Faster", show=False),
        Binding("minus", "slower", "Slower", show=False),
        Binding("question_mark", "help", "Help"),
        Binding("up", "cursor(-1)", show=False),
        Binding("down", "cursor(1)", show=False),
        Binding("pageup", "page_up", show=False),
        Binding("pagedown", "page_down", show=False),
        Binding("home", "top", show=False),
        Binding("end", "bottom", show=False),
        Binding("left", "scroll(-1)", show=False),
        Binding("right", "scroll(1)", show=False),
        Binding("ctrl+a", "far_left", show=False),
        Binding("ctrl+e", "far_right", show=False),
    ]

    def __init__(
        self,
        engine: SamplingEngine,
        reader: ProcessReader,
        every: float = 5.0,
        process_filter: ProcessFilter = ProcessFilter.USER_LAND,
        exporter: FileExporter | None = None,
        count: int | None = None,
        autostart: bool = True,
    ) -> None:
        """Initialize the ProcmonApp.

        Args:
            engine: Sampling engine holding the monitored metrics.
            reader: Data source read by the background monitor.
            every: Seconds between ticks.
            process_filter: Initial process filter.
            exporter: Open export sink fed on every tick.
            count: Exit after this many ticks.
            autostart: Start sampling when mounted. Tests feed ticks with apply_tick.
        """
        super().__init__()
        self._engine = engine
        self._update_queue: Queue[Tick] = Queue()
        self._monitor = SystemMonitor(self._update_queue, reader, poll_rate=every)
        self._exporter = exporter
        self._filter = process_filter
        self._count = count
        self._ticks = 0
        self._autostart = autostart
        self._navigator = Navigator()
        self._current_uid = os.getuid()
        self._last_tick: Tick | None = None
        self._last_values: dict[int, MetricValues] = {}

    @property
    def navigator(self) -> Navigator:
        return self._navigator

    @property
    def process_filter(self) -> ProcessFilter:
        return self._filter

    @property
    def monitor(self) -> SystemMonitor:
        return self._monitor

    def compose(self) -> ComposeResult:
        yield HeaderStats(id="header-stats")
        yield ProcessView(self._navigator, self._engine.metrics, id="process-view")
        yield DetailView(id="detail-view")
        yield Static(HELP_TEXT, id="help")
        yield Static("", id="status-line")
        yield Footer()

    def on_mount(self) -> None:
        """Start the monitor when the app is mounted."""
        self.query_one("#detail-view").display = False
        self.query_one("#help").display = False
        self.query_one(ProcessView).focus()
        self._install_signal_handler()
        if self._autostart:
            self._monitor.start()
        self.set_interval(QUEUE_CHECK_INTERVAL, self._check_for_updates)
        self._refresh_view()

    def on_unmount(self) -> None:
        self._monitor.stop()

    def _install_signal_handler(self) -> None:
        try:
            asyncio.get_running_loop().add_signal_handler(signal.SIGTERM, self._on_sigterm)
        except (NotImplementedError, RuntimeError, ValueError) as e:
            # only possible from the main thread
            log.debug("signal_handler_unavailable", error=str(e))

    def _on_sigterm(self) -> None:
        log.info("signal_received", signal="SIGTERM")
        self.exit()

    def _check_for_updates(self) -> None:
        """Drain the queue and apply the most recent tick."""
        tick = None
        while True:
            try:
                tick = self._update_queue.get_nowait()
            except Empty:
                break
        if tick is not None:
            self.apply_tick(tick)

    def apply_tick(self, tick: Tick) -> None:
        """Run one tick through the engine and refresh the view."""
        self._last_tick = tick
        self._last_values = self._engine.tick(tick.timestamp, tick.processes, tick.system)
        forest = self._build_forest()
        self._engine.retain(forest.pids)
        if self._exporter is not None:
            self._exporter.submit(self._engine.export_records())
        self._navigator.reconcile(forest)
        self.query_one(HeaderStats).update_system(tick.system)
        self._refresh_view()

        self._ticks += 1
        if self._count is not None and self._ticks >= self._count:
            self.exit()

    def _build_forest(self) -> Forest:
        if self._last_tick is None:
            return Forest()
        return build_forest(
            self._last_tick.processes,
            self._last_values,
            self._filter,
            activity=self._engine.activity,
            current_uid=self._current_uid,
        )

    def _view_info(self) -> str:
        navigator = self._navigator
        state = navigator.state
        scope = "marked" if state.scope is Scope.FLAT_MARKED else "tree"
        root = f" from {state.root_pid}" if state.root_pid is not None else ""
        return (
            f"Processes: {len(navigator.lines)}  Filter: {self._filter.label}\n"
            f"View: {scope}{root}  Marks: {len(state.marks)}\n"
            f"Refresh every {self._monitor.poll_rate:g}s"
        )

    def _status(self) -> str:
        search = self._navigator.state.search
        if search is None:
            return ""
        if self._navigator.mode is Mode.SEARCHING:
            return f"/{search.pattern}"
        if not search.matches:
            return f"Search: {search.pattern} (no match)"
        return f"Search: {search.pattern} [{search.index + 1}/{len(search.matches)}]"

    def _refresh_view(self) -> None:
        navigator = self._navigator
        self.query_one(ProcessView).refresh_rows()
        detail = self.query_one(DetailView)
        detail.display = navigator.mode is Mode.DETAIL
        detail.show_node(navigator.detail_node(), self._engine.metrics)
        self.query_one(HeaderStats).update_view(self._view_info())
        self.query_one("#status-line", Static).update(Text(self._status()))

    def on_process_view_navigation_changed(self, message: ProcessView.NavigationChanged) -> None:
        self._refresh_view()

    def _apply(self, changed: bool | None) -> None:
        if changed is not False:
            self._refresh_view()

    # ── Actions ──────────────────────────────────────────────────────────

    def action_cursor(self, delta: int) -> None:
        self._apply(self._navigator.move_cursor(delta))

    def action_page_up(self) -> None:
        self._apply(self._navigator.page_up())

    def action_page_down(self) -> None:
        self._apply(self._navigator.page_down())

    def action_top(self) -> None:
        self._apply(self._navigator.goto_top())

    def action_bottom(self) -> None:
        self._apply(self._navigator.goto_bottom())

    def action_scroll(self, direction: int) -> None:
        if direction < 0:
            self._navigator.scroll_left()
        else:
            self._navigator.scroll_right()
        self._refresh_view()

    def action_far_left(self) -> None:
        self._navigator.goto_left()
        self._refresh_view()

    def action_far_right(self) -> None:
        self._navigator.goto_right()
        self._refresh_view()

    def action_search(self) -> None:
        self._apply(self._navigator.start_search())

    def action_next_match(self) -> None:
        self._apply(self._navigator.next_match())

    def action_previous_match(self) -> None:
        self._apply(self._navigator.previous_match())

    def action_toggle_mark(self) -> None:
        self._apply(self._navigator.toggle_mark())

    def action_clear_marks(self) -> None:
        self._navigator.clear_marks()
        self._refresh_view()

    def action_toggle_scope(self) -> None:
        if not self._navigator.toggle_scope():
            self.notify("No marked process")
            return
        self._refresh_view()

    def action_toggle_root(self) -> None:
        navigator = self._navigator
        if navigator.state.root_pid is not None:
            self._apply(navigator.unfocus())
        else:
            self._apply(navigator.focus())

    def action_details(self) -> None:
        navigator = self._navigator
        if navigator.mode is Mode.DETAIL:
            self._apply(navigator.close_details())
        else:
            self._apply(navigator.show_details())

    def action_back(self) -> None:
        help_view = self.query_one("#help")
        navigator = self._navigator
        if navigator.mode is Mode.SEARCHING:
            navigator.cancel_search()
        elif help_view.display:
            help_view.display = False
        elif navigator.mode is Mode.DETAIL:
            navigator.close_details()
        elif navigator.state.search is not None:
            navigator.clear_search()
        elif navigator.state.root_pid is not None:
            navigator.unfocus()
        self._refresh_view()

    def action_cycle_filter(self) -> None:
        self._filter = self._filter.next()
        log.debug("filter_changed", filter=self._filter.value)
        self._navigator.reconcile(self._build_forest())
        self._refresh_view()
        self.notify(f"Filter: {self._filter.label}")

    def action_faster(self) -> None:
        self._monitor.poll_rate = self._monitor.poll_rate / 2
        self._refresh_view()

    def action_slower(self) -> None:
        self._monitor.poll_rate = self._monitor.poll_rate * 2
        self._refresh_view()

    def action_help(self) -> None:
        help_view = self.query_one("#help")
        help_view.display = not help_view.display

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._monitor.stop()
        self.exit()
