"""Shared fixtures for procmon tests."""

from collections.abc import Callable

import pytest

from procmon.forest import Forest, ProcessNode
from procmon.models import ProcessSample, ProcessState, SystemSample, Tick


def sample(
    pid: int,
    parent_pid: int = 1,
    name: str | None = None,
    *,
    values: dict[str, float | None] | None = None,
    cpu_time: float | None = None,
    uid: int = 1000,
    start_time: float = 100.0,
    kernel_thread: bool = False,
    state: ProcessState = ProcessState.SLEEPING,
) -> ProcessSample:
    return ProcessSample(
        pid=pid,
        parent_pid=parent_pid,
        name=name or f"proc{pid}",
        state=state,
        uid=uid,
        start_time=start_time,
        cpu_time=cpu_time,
        kernel_thread=kernel_thread,
        values=values or {},
    )


def node(pid: int, parent_pid: int = 0, name: str | None = None) -> ProcessNode:
    return ProcessNode(pid, parent_pid, name or f"proc{pid}", ProcessState.SLEEPING, 1000)


@pytest.fixture
def make_sample() -> Callable[..., ProcessSample]:
    """Factory of process samples with sensible defaults."""
    return sample


@pytest.fixture
def make_forest() -> Callable[..., Forest]:
    """Factory of forests from (pid, parent_pid, name) tuples."""

    def build(*entries: tuple) -> Forest:
        return Forest(node(*entry) for entry in entries)

    return build


@pytest.fixture
def make_tick() -> Callable[..., Tick]:
    """Factory of ticks."""

    def build(
        timestamp: float,
        processes: list[ProcessSample],
        total_time: float = 0.0,
    ) -> Tick:
        system = SystemSample(
            total_time=total_time,
            cpu_count=4,
            memory_total=8 * 1024**3,
            memory_used=2 * 1024**3,
            load_avg=(0.5, 0.25, 0.1),
            uptime_seconds=3600.0,
        )
        return Tick(timestamp=timestamp, processes=processes, system=system)

    return build


@pytest.fixture
def sample_tree() -> Forest:
    """A small forest::

        1 init
        ├─ 10 bash
        │  └─ 12 vim
        └─ 20 sshd
           ├─ 21 sshd
           └─ 22 bash
        30 orphan  (parent 99 not visible)
    """
    return Forest(
        [
            node(1, 0, "init"),
            node(10, 1, "bash"),
            node(12, 10, "vim"),
            node(20, 1, "sshd"),
            node(21, 20, "sshd"),
            node(22, 20, "bash"),
            node(30, 99, "orphan"),
        ]
    )
