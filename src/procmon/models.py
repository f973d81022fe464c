"""Data models exchanged between the data source and the engines."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum


class ProcessState(Enum):
    """Run state of a process, as reported in /proc/<pid>/stat."""

    RUNNING = "R"
    SLEEPING = "S"
    DISK_SLEEP = "D"
    STOPPED = "T"
    TRACING_STOP = "t"
    ZOMBIE = "Z"
    DEAD = "X"
    IDLE = "I"
    UNKNOWN = "?"

    @classmethod
    def from_status(cls, status: str) -> "ProcessState":
        """Map a psutil status name ('running', 'sleeping', ...) to a state."""
        return _PSUTIL_STATUS.get(status, cls.UNKNOWN)


_PSUTIL_STATUS = {
    "running": ProcessState.RUNNING,
    "sleeping": ProcessState.SLEEPING,
    "disk-sleep": ProcessState.DISK_SLEEP,
    "stopped": ProcessState.STOPPED,
    "tracing-stop": ProcessState.TRACING_STOP,
    "zombie": ProcessState.ZOMBIE,
    "dead": ProcessState.DEAD,
    "idle": ProcessState.IDLE,
    "parked": ProcessState.IDLE,
}


@dataclass(slots=True, frozen=True)
class ProcessSample:
    """Raw values read for one process during one tick.

    ``values`` maps a metric name to its raw value, or None when it could not
    be read this tick.
    """

    pid: int
    parent_pid: int  # 0 for processes without parent
    name: str
    state: ProcessState = ProcessState.UNKNOWN
    uid: int = 0
    start_time: float = 0.0  # seconds since epoch, tells reused pids apart
    cpu_time: float | None = None  # milliseconds in user + kernel mode
    kernel_thread: bool = False
    values: Mapping[str, float | None] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class SystemSample:
    """System-wide values for one tick."""

    total_time: float  # milliseconds of CPU capacity accounted since boot, all cores
    cpu_count: int = 1
    memory_total: int = 0
    memory_used: int = 0
    load_avg: tuple[float, float, float] = (0.0, 0.0, 0.0)
    uptime_seconds: float = 0.0


@dataclass(slots=True, frozen=True)
class Tick:
    """Everything the data source delivers for one refresh."""

    timestamp: float  # seconds since epoch
    processes: list[ProcessSample]
    system: SystemSample


@dataclass(slots=True, frozen=True)
class ExportRecord:
    """One raw value handed to the export sinks."""

    timestamp: float
    pid: int
    name: str
    metric: str
    value: float
