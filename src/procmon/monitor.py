"""Process data source for procmon.

Reads per-process accounting values with psutil and ``/proc`` and delivers
them as :class:`Tick` records, either synchronously (:meth:`ProcessReader.read`)
or from a background thread through a queue (:class:`SystemMonitor`).
"""

import os
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path
from queue import Queue

import psutil
import structlog

from procmon.catalog import MAP_REGIONS, MetricDescriptor
from procmon.errors import TargetError
from procmon.models import ProcessSample, ProcessState, SystemSample, Tick

log = structlog.get_logger()

KTHREADD_PID = 2
MIN_POLL_RATE = 0.1

PROCESS_ATTRS = [
    "pid",
    "ppid",
    "name",
    "cmdline",
    "status",
    "uids",
    "create_time",
    "cpu_times",
]


def read_pid_file(path: Path) -> int:
    """Read the pid stored in a pid file.

    Raises:
        TargetError: the file cannot be read or does not hold a pid.
    """
    try:
        content = Path(path).read_text().strip()
    except OSError as e:
        raise TargetError(f"{path}: cannot read pid file: {e.strerror}") from e
    try:
        pid = int(content.split()[0])
    except (IndexError, ValueError) as e:
        raise TargetError(f"{path}: no pid in pid file") from e
    if pid <= 0:
        raise TargetError(f"{path}: invalid pid {pid}")
    return pid


@dataclass(slots=True, frozen=True)
class Targets:
    """Processes to monitor. Empty means every process."""

    pids: tuple[int, ...] = ()
    pid_files: tuple[Path, ...] = ()
    names: tuple[str, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.pids or self.pid_files or self.names)

    def check(self) -> None:
        """Validate the explicit targets once, before sampling starts.

        Raises:
            TargetError: an explicit pid does not exist or a pid file is unreadable.
        """
        for pid in self.pids:
            if pid <= 0 or not psutil.pid_exists(pid):
                raise TargetError(f"no process with pid {pid}")
        for path in self.pid_files:
            read_pid_file(path)

    def current_pids(self) -> set[int]:
        """Explicit pids plus the pids found in the pid files right now."""
        pids = set(self.pids)
        for path in self.pid_files:
            try:
                pids.add(read_pid_file(path))
            except TargetError as e:
                log.warning("pid_file_unreadable", path=str(path), error=str(e))
        return pids

    def accepts(self, pid: int, name: str, pids: set[int]) -> bool:
        if not self:
            return True
        return pid in pids or any(fnmatchcase(name, pattern) for pattern in self.names)


def process_name(pid: int, cmdline: list[str] | None, name: str | None) -> str:
    """Basename of argv[0], else the executable name, else ``[pid]``."""
    if cmdline and cmdline[0]:
        return os.path.basename(cmdline[0].split("\0")[0]) or cmdline[0]
    if name:
        return name
    return f"[{pid}]"


def read_system() -> SystemSample:
    """System-wide totals. ``total_time`` is the CPU capacity in milliseconds."""
    times = psutil.cpu_times()

    def field(name: str) -> float:
        return getattr(times, name, 0.0)

    total = (
        field("user") - field("guest")
        + field("nice") - field("guest_nice")
        + field("system")
        + field("idle")
        + field("iowait")
        + field("irq")
        + field("softirq")
    )
    memory = psutil.virtual_memory()
    return SystemSample(
        total_time=total * 1000.0,
        cpu_count=psutil.cpu_count() or 1,
        memory_total=memory.total,
        memory_used=memory.used,
        load_avg=psutil.getloadavg(),
        uptime_seconds=time.time() - psutil.boot_time(),
    )


# ── Metric groups ────────────────────────────────────────────────────────
#
# A descriptor key is "<group>.<field>" or a plain name. A group reader returns
# every field of the group at once so that a group is read once per process.


def _read_stat(proc: psutil.Process, now: float) -> dict[str, float]:
    with open(f"/proc/{proc.pid}/stat") as f:
        stat = f.read()
    # the command name may contain spaces and parentheses
    fields = stat[stat.rfind(")") + 2 :].split()
    return {"minflt": float(fields[7]), "majflt": float(fields[9])}


def _read_memory(proc: psutil.Process, now: float) -> dict[str, float]:
    return {key: float(value) for key, value in proc.memory_info()._asdict().items()}


def _read_io(proc: psutil.Process, now: float) -> dict[str, float]:
    return {key: float(value) for key, value in proc.io_counters()._asdict().items()}


def _read_time(proc: psutil.Process, now: float) -> dict[str, float]:
    times = proc.cpu_times()
    return {
        "user": times.user * 1000.0,
        "system": times.system * 1000.0,
        "cpu": (times.user + times.system) * 1000.0,
        "elapsed": max(0.0, now - proc.create_time()) * 1000.0,
    }


def _read_fds(proc: psutil.Process, now: float) -> dict[str, float]:
    return {"": float(proc.num_fds())}


FD_KINDS = ("file", "socket", "net", "pipe", "anon", "mfd", "other")


def fd_kind(target: str) -> str:
    """Category of a file descriptor from the target of its /proc link."""
    if target.startswith("/memfd:"):
        return "mfd"
    if target.startswith("/"):
        return "file"
    kind, sep, _ = target.partition(":")
    if not sep:
        return "other"
    return {
        "socket": "socket",
        "net": "net",
        "pipe": "pipe",
        "anon_inode": "anon",
    }.get(kind, "other")


def _read_fd_kinds(proc: psutil.Process, now: float) -> dict[str, float]:
    directory = f"/proc/{proc.pid}/fd"
    values = dict.fromkeys(FD_KINDS, 0.0)
    highest = 0
    for entry in os.listdir(directory):
        try:
            target = os.readlink(f"{directory}/{entry}")
        except FileNotFoundError:
            # closed since the directory was listed
            continue
        highest = max(highest, int(entry))
        values[fd_kind(target)] += 1
    values["high"] = float(highest)
    return values


_SPECIAL_REGIONS = {
    "[anon]": "anon",
    "[heap]": "heap",
    "[stack]": "stack",
    "[vdso]": "vdso",
    "[vsyscall]": "vsyscall",
    "[vvar]": "vvar",
}


def map_region(path: str) -> str:
    """Category of a memory mapping from its path in /proc/<pid>/maps."""
    if not path:
        return "anon"
    if path in _SPECIAL_REGIONS:
        return _SPECIAL_REGIONS[path]
    if path.startswith("[stack:"):
        return "tstack"
    if path.startswith("/SYSV"):
        return "vsys"
    if path.startswith("/"):
        return "file"
    return "other"


def _read_maps(proc: psutil.Process, now: float) -> dict[str, float]:
    values = {}
    for region, _, _ in MAP_REGIONS:
        values[f"{region}_count"] = 0.0
        values[f"{region}_size"] = 0.0
    for mapping in proc.memory_maps(grouped=False):
        region = map_region(mapping.path)
        values[f"{region}_count"] += 1
        values[f"{region}_size"] += mapping.size
    return values


def _read_threads(proc: psutil.Process, now: float) -> dict[str, float]:
    return {"": float(proc.num_threads())}


GroupReader = Callable[[psutil.Process, float], dict[str, float]]

GROUP_READERS: dict[str, GroupReader] = {
    "stat": _read_stat,
    "memory": _read_memory,
    "io": _read_io,
    "time": _read_time,
    "num_fds": _read_fds,
    "fds": _read_fd_kinds,
    "maps": _read_maps,
    "threads": _read_threads,
}


def _split_key(key: str) -> tuple[str, str]:
    group, _, field = key.partition(".")
    return group, field


class ProcessReader:
    """Reads one :class:`Tick` of samples for the monitored metrics."""

    def __init__(
        self,
        descriptors: Iterable[MetricDescriptor],
        targets: Targets | None = None,
    ) -> None:
        self._descriptors = list(descriptors)
        self._targets = targets or Targets()
        for descriptor in self._descriptors:
            group, _ = _split_key(descriptor.key)
            if group not in GROUP_READERS:
                raise ValueError(f"{descriptor.name}: no reader for key {descriptor.key!r}")
        self._groups = sorted({_split_key(d.key)[0] for d in self._descriptors})

    @property
    def targets(self) -> Targets:
        return self._targets

    def read(self) -> Tick:
        """Read the system totals and every monitored process."""
        system = read_system()
        now = time.time()
        return Tick(timestamp=now, processes=self._read_processes(now), system=system)

    def _read_processes(self, now: float) -> list[ProcessSample]:
        processes: list[ProcessSample] = []
        target_pids = self._targets.current_pids() if self._targets else set()

        for proc in psutil.process_iter(attrs=PROCESS_ATTRS):
            try:
                with proc.oneshot():
                    sample = self._read_process(proc, now, target_pids)
            except (psutil.NoSuchProcess, psutil.ZombieProcess):
                # exited while being read
                continue
            except psutil.AccessDenied:
                log.debug("process_unreadable", pid=proc.pid)
                continue
            if sample is not None:
                processes.append(sample)

        return processes

    def _read_process(
        self,
        proc: psutil.Process,
        now: float,
        target_pids: set[int],
    ) -> ProcessSample | None:
        info = proc.info
        pid = info["pid"]
        name = process_name(pid, info.get("cmdline"), info.get("name"))
        if not self._targets.accepts(pid, name, target_pids):
            return None

        parent_pid = info.get("ppid") or 0
        uids = info.get("uids")
        cpu_times = info.get("cpu_times")
        cpu_time = (cpu_times.user + cpu_times.system) * 1000.0 if cpu_times else None

        return ProcessSample(
            pid=pid,
            parent_pid=parent_pid,
            name=name,
            state=ProcessState.from_status(info.get("status") or ""),
            uid=uids.real if uids else -1,
            start_time=info.get("create_time") or 0.0,
            cpu_time=cpu_time,
            kernel_thread=KTHREADD_PID in (pid, parent_pid),
            values=self._read_values(proc, now),
        )

    def _read_values(self, proc: psutil.Process, now: float) -> dict[str, float | None]:
        groups: dict[str, dict[str, float]] = {}
        for group in self._groups:
            try:
                groups[group] = GROUP_READERS[group](proc, now)
            except psutil.ZombieProcess:
                log.debug("metric_group_unreadable", pid=proc.pid, group=group)
            except psutil.NoSuchProcess:
                raise
            except (psutil.AccessDenied, OSError, IndexError, ValueError):
                log.debug("metric_group_unreadable", pid=proc.pid, group=group)

        values: dict[str, float | None] = {}
        for descriptor in self._descriptors:
            group, field = _split_key(descriptor.key)
            values[descriptor.name] = groups.get(group, {}).get(field)
        return values


class SystemMonitor:
    """
    Samples processes in a separate daemon thread.

    Each tick is pushed to a thread-safe Queue; the consumer drains it from its
    own control loop so that no sampled state is shared between threads.
    """

    def __init__(
        self,
        update_queue: Queue[Tick],
        reader: ProcessReader,
        poll_rate: float = 5.0,
    ) -> None:
        """
        Initialize the SystemMonitor.

        Args:
            update_queue: Thread-safe queue to push ticks to.
            reader: Data source read on every tick.
            poll_rate: How often to sample (in seconds).
        """
        self._queue = update_queue
        self._reader = reader
        self._poll_rate = max(MIN_POLL_RATE, poll_rate)
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._tick_count = 0

    @property
    def poll_rate(self) -> float:
        """Get the current poll rate."""
        return self._poll_rate

    @poll_rate.setter
    def poll_rate(self, value: float) -> None:
        """Set the poll rate, waking the sampling thread so it takes effect now."""
        self._poll_rate = max(MIN_POLL_RATE, value)
        self._wake_event.set()

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def is_running(self) -> bool:
        """Check if the monitor thread is running."""
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the monitoring thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="SystemMonitor",
        )
        self._thread.start()
        log.info("monitor_started", poll_rate=self._poll_rate)

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the monitoring thread.

        Args:
            timeout: How long to wait for thread to stop (seconds).
        """
        self._stop_event.set()
        self._wake_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
            log.info("monitor_stopped", ticks=self._tick_count)

    def _poll_loop(self) -> None:
        """Main polling loop running in the background thread."""
        while not self._stop_event.is_set():
            started = time.monotonic()
            # cleared before the read so a stop arriving meanwhile is kept
            self._wake_event.clear()
            try:
                tick = self._reader.read()
            except Exception:
                # keep sampling, the next tick may succeed
                log.exception("sample_failed")
            else:
                if self._stop_event.is_set():
                    break
                self._queue.put(tick)
                self._tick_count += 1

            # Wait for the rest of poll_rate seconds, a rate change, or stop
            remaining = self._poll_rate - (time.monotonic() - started)
            if remaining > 0:
                self._wake_event.wait(timeout=remaining)
