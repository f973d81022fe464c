"""Tests for the process data source and the SystemMonitor thread."""

import os
import threading
import time
from queue import Queue

import pytest

from procmon.catalog import CATALOG
from procmon.errors import TargetError
from procmon.models import ProcessSample, SystemSample, Tick
from procmon.monitor import (
    MIN_POLL_RATE,
    ProcessReader,
    SystemMonitor,
    Targets,
    fd_kind,
    map_region,
    process_name,
    read_pid_file,
    read_system,
)


def descriptors(*names: str):
    by_name = {descriptor.name: descriptor for descriptor in CATALOG}
    return [by_name[name] for name in names]


class FakeReader:
    """Reader failing on its first read, then returning empty ticks."""

    def __init__(self):
        self.reads = 0

    def read(self) -> Tick:
        self.reads += 1
        if self.reads == 1:
            raise RuntimeError("transient failure")
        return Tick(timestamp=float(self.reads), processes=[], system=SystemSample(0.0))


class SlowReader:
    """Reader taking a while on every read."""

    def __init__(self, delay: float):
        self.delay = delay
        self.reading = threading.Event()

    def read(self) -> Tick:
        self.reading.set()
        time.sleep(self.delay)
        return Tick(timestamp=time.time(), processes=[], system=SystemSample(0.0))


class TestPidFiles:
    """Tests for pid file targets."""

    def test_read_pid_file(self, tmp_path):
        """The first word of the file is the pid."""
        path = tmp_path / "daemon.pid"
        path.write_text("1234\n")
        assert read_pid_file(path) == 1234

    def test_missing_pid_file(self, tmp_path):
        with pytest.raises(TargetError):
            read_pid_file(tmp_path / "missing.pid")

    @pytest.mark.parametrize("content", ["", "abc", "-5", "0"])
    def test_invalid_pid_file(self, tmp_path, content):
        """Files without a positive pid are rejected."""
        path = tmp_path / "daemon.pid"
        path.write_text(content)
        with pytest.raises(TargetError):
            read_pid_file(path)

    def test_unreadable_pid_file_is_skipped(self, tmp_path):
        """Sampling continues when a pid file goes away."""
        targets = Targets(pids=(7,), pid_files=(tmp_path / "gone.pid",))
        assert targets.current_pids() == {7}


class TestTargets:
    """Tests for target selection."""

    def test_empty_accepts_everything(self):
        targets = Targets()
        assert not targets
        assert targets.accepts(1, "init", set())

    def test_pids_and_names(self):
        """A process is accepted by pid or by name pattern."""
        targets = Targets(names=("ssh*",))
        assert targets.accepts(20, "sshd", set())
        assert not targets.accepts(10, "bash", set())
        assert targets.accepts(10, "bash", {10})

    def test_check_own_pid(self):
        Targets(pids=(os.getpid(),)).check()

    def test_check_unknown_pid(self):
        """A pid that does not exist is reported before sampling."""
        with pytest.raises(TargetError):
            Targets(pids=(-1,)).check()


class TestProcessName:
    """Tests for the displayed process name."""

    def test_argv0_basename(self):
        assert process_name(7, ["/usr/bin/python3", "-m", "x"], "python3") == "python3"

    def test_falls_back_to_name(self):
        """Kernel threads have no command line."""
        assert process_name(2, [], "kthreadd") == "kthreadd"

    def test_falls_back_to_pid(self):
        assert process_name(7, None, None) == "[7]"


class TestProcessReader:
    """Tests for ProcessReader against the running system."""

    def test_read_system(self):
        """System totals are positive."""
        system = read_system()
        assert system.total_time > 0
        assert system.cpu_count >= 1
        assert system.memory_total >= system.memory_used > 0

    def test_read_own_process(self):
        """The test process reads its own memory and descriptors."""
        metrics = descriptors("mem:rss", "fd:all", "time:elapsed")
        reader = ProcessReader(metrics, Targets(pids=(os.getpid(),)))
        tick = reader.read()

        assert tick.timestamp > 0
        assert [p.pid for p in tick.processes] == [os.getpid()]
        (sample,) = tick.processes
        assert isinstance(sample, ProcessSample)
        assert sample.parent_pid == os.getppid()
        assert sample.uid == os.getuid()
        assert not sample.kernel_thread
        assert sample.cpu_time is not None
        assert sample.values["mem:rss"] > 0
        assert sample.values["fd:all"] >= 1
        assert sample.values["time:elapsed"] >= 0

    def test_read_every_process(self):
        """Without targets every readable process is returned."""
        reader = ProcessReader(descriptors("thread:count"))
        tick = reader.read()
        pids = {p.pid for p in tick.processes}
        assert os.getpid() in pids
        for sample in tick.processes:
            assert sample.pid > 0
            assert isinstance(sample.name, str)
            assert set(sample.values) == {"thread:count"}

    def test_read_descriptor_kinds(self):
        """Open pipe ends are counted by kind, with the highest descriptor."""
        read_end, write_end = os.pipe()
        try:
            names = ["fd:all", "fd:high", "fd:pipe", "fd:file"]
            reader = ProcessReader(descriptors(*names), Targets(pids=(os.getpid(),)))
            (sample,) = reader.read().processes
        finally:
            os.close(read_end)
            os.close(write_end)

        assert sample.values["fd:pipe"] >= 2
        assert sample.values["fd:high"] >= max(read_end, write_end)
        assert sample.values["fd:all"] >= 2
        assert sample.values["fd:file"] >= 0

    def test_read_memory_maps(self):
        """The interpreter maps at least its own executable file."""
        names = ["map:file:count", "map:file:size", "map:heap:count"]
        reader = ProcessReader(descriptors(*names), Targets(pids=(os.getpid(),)))
        (sample,) = reader.read().processes
        assert sample.values["map:file:count"] >= 1
        assert sample.values["map:file:size"] > 0
        assert sample.values["map:heap:count"] >= 0

    def test_unknown_key(self):
        """Descriptors must name a readable group."""
        (metric,) = descriptors("mem:rss")
        broken = type(metric)("mem:swap", metric.kind, "swap", "swap.used")
        with pytest.raises(ValueError):
            ProcessReader([broken])


class TestSystemMonitor:
    """Tests for SystemMonitor class."""

    def test_monitor_creation(self):
        """Test SystemMonitor can be instantiated."""
        queue: Queue[Tick] = Queue()
        monitor = SystemMonitor(queue, FakeReader())

        assert monitor.poll_rate == 5.0
        assert not monitor.is_running

    def test_poll_rate_minimum(self):
        """Test poll rate has a minimum value."""
        queue: Queue[Tick] = Queue()
        monitor = SystemMonitor(queue, FakeReader(), poll_rate=0.01)
        assert monitor.poll_rate == MIN_POLL_RATE

        monitor.poll_rate = 0.0
        assert monitor.poll_rate == MIN_POLL_RATE

    def test_monitor_start_stop(self):
        """Test SystemMonitor can be started and stopped."""
        queue: Queue[Tick] = Queue()
        monitor = SystemMonitor(queue, FakeReader(), poll_rate=0.1)

        monitor.start()
        assert monitor.is_running

        monitor.stop()
        assert not monitor.is_running

    def test_monitor_start_idempotent(self):
        """Test starting an already running monitor is safe."""
        queue: Queue[Tick] = Queue()
        monitor = SystemMonitor(queue, FakeReader(), poll_rate=0.1)

        monitor.start()
        thread1 = monitor._thread

        monitor.start()
        thread2 = monitor._thread

        assert thread1 is thread2
        monitor.stop()

    def test_monitor_survives_read_errors(self):
        """A failed read is logged and sampling goes on."""
        queue: Queue[Tick] = Queue()
        reader = FakeReader()
        monitor = SystemMonitor(queue, reader, poll_rate=0.1)

        monitor.start()
        try:
            first = queue.get(timeout=2.0)
            second = queue.get(timeout=2.0)
        finally:
            monitor.stop()

        assert first.timestamp == 2.0
        assert second.timestamp == 3.0
        assert monitor.tick_count >= 2

    def test_monitor_reads_processes(self):
        """Ticks from the real reader carry processes."""
        queue: Queue[Tick] = Queue()
        reader = ProcessReader(descriptors("mem:rss"), Targets(pids=(os.getpid(),)))
        monitor = SystemMonitor(queue, reader, poll_rate=0.1)

        monitor.start()
        try:
            tick = queue.get(timeout=5.0)
        finally:
            monitor.stop()

        assert [p.pid for p in tick.processes] == [os.getpid()]

    def test_daemon_thread(self):
        """Test monitor thread is a daemon thread."""
        queue: Queue[Tick] = Queue()
        monitor = SystemMonitor(queue, FakeReader(), poll_rate=0.1)

        monitor.start()
        try:
            assert monitor._thread is not None
            assert monitor._thread.daemon is True
            assert monitor._thread.name == "SystemMonitor"
        finally:
            monitor.stop()

    def test_stop_during_read(self):
        """A stop requested while a read is running ends the thread promptly."""
        queue: Queue[Tick] = Queue()
        reader = SlowReader(0.3)
        monitor = SystemMonitor(queue, reader, poll_rate=3.0)

        monitor.start()
        thread = monitor._thread
        assert reader.reading.wait(timeout=2.0)
        time.sleep(0.1)
        monitor.stop(timeout=1.0)

        assert not thread.is_alive()
        assert queue.empty()


class TestClassification:
    """Tests for descriptor and memory map categories."""

    @pytest.mark.parametrize(
        "target, kind",
        [
            ("/home/user/notes.txt", "file"),
            ("/memfd:wayland-shm (deleted)", "mfd"),
            ("socket:[12345]", "socket"),
            ("net:[4026531840]", "net"),
            ("pipe:[6789]", "pipe"),
            ("anon_inode:[eventfd]", "anon"),
            ("anon_inode:inotify", "anon"),
            ("mnt:[4026531841]", "other"),
            ("garbage", "other"),
        ],
    )
    def test_fd_kind(self, target, kind):
        assert fd_kind(target) == kind

    @pytest.mark.parametrize(
        "path, region",
        [
            ("", "anon"),
            ("[anon]", "anon"),
            ("[heap]", "heap"),
            ("[stack]", "stack"),
            ("[stack:1234]", "tstack"),
            ("[vdso]", "vdso"),
            ("[vvar]", "vvar"),
            ("[vsyscall]", "vsyscall"),
            ("/SYSV00000000", "vsys"),
            ("/usr/lib/libc.so.6", "file"),
            ("[anon:dalvik]", "other"),
        ],
    )
    def test_map_region(self, path, region):
        assert map_region(path) == region
