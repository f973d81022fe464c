"""Process forest.

Each tick the visible processes are rebuilt into a new forest. Nodes are kept
in an arena keyed by pid; parent and children links are pids resolved through
the arena, never object references.
"""

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum

from procmon.aggregation import ActivityHistory, MetricValues
from procmon.models import ProcessSample, ProcessState


class ProcessFilter(Enum):
    """Which processes are shown."""

    NONE = "none"
    USER_LAND = "user"
    ACTIVE = "active"
    CURRENT_USER = "owned"

    @property
    def label(self) -> str:
        return {
            ProcessFilter.NONE: "All processes",
            ProcessFilter.USER_LAND: "User processes",
            ProcessFilter.ACTIVE: "Active processes",
            ProcessFilter.CURRENT_USER: "My processes",
        }[self]

    def next(self) -> "ProcessFilter":
        members = list(ProcessFilter)
        return members[(members.index(self) + 1) % len(members)]


@dataclass(slots=True, frozen=True)
class ProcessNode:
    """A visible process in one generation of the forest."""

    pid: int
    parent_pid: int
    name: str
    state: ProcessState
    uid: int
    metric_values: MetricValues = field(default_factory=dict, compare=False)


@dataclass(slots=True, frozen=True)
class TreeLine:
    """A node in traversal order with what is needed to draw its branch."""

    node: ProcessNode
    depth: int
    last_flags: tuple[bool, ...] = ()  # for each level, is the node on it the last child

    @property
    def pid(self) -> int:
        return self.node.pid

    def prefix(self) -> str:
        """Tree drawing prefix such as '│  └─ '."""
        if not self.last_flags:
            return ""
        parts = ["   " if last else "│  " for last in self.last_flags[:-1]]
        parts.append("└─ " if self.last_flags[-1] else "├─ ")
        return "".join(parts)


class Forest:
    """One generation of visible processes.

    A node whose parent is not visible (filtered out, kernel owned, exited) is
    a root. Children and roots are ordered by pid.
    """

    def __init__(self, nodes: Iterable[ProcessNode] = ()) -> None:
        self._nodes: dict[int, ProcessNode] = {node.pid: node for node in nodes}
        self._children: dict[int, list[int]] = {}
        roots = []
        for pid in sorted(self._nodes):
            parent_pid = self._nodes[pid].parent_pid
            if parent_pid != pid and parent_pid in self._nodes:
                self._children.setdefault(parent_pid, []).append(pid)
            else:
                roots.append(pid)
        self._roots = roots
        self._break_cycles()

    def _break_cycles(self) -> None:
        # Nodes unreachable from a root form a parent cycle: promote the lowest pid.
        reachable = {line.pid for line in self.walk()}
        for pid in sorted(self._nodes):
            if pid in reachable:
                continue
            parent_pid = self._nodes[pid].parent_pid
            self._children[parent_pid].remove(pid)
            self._roots.append(pid)
            self._roots.sort()
            reachable.update(line.pid for line in self.walk(pid))

    def __contains__(self, pid: object) -> bool:
        return pid in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[ProcessNode]:
        return (line.node for line in self.walk())

    def get(self, pid: int) -> ProcessNode | None:
        return self._nodes.get(pid)

    @property
    def pids(self) -> set[int]:
        return set(self._nodes)

    @property
    def roots(self) -> list[int]:
        return list(self._roots)

    def children(self, pid: int) -> list[int]:
        return list(self._children.get(pid, ()))

    def parent(self, pid: int) -> int | None:
        """Parent pid if the parent is part of this forest."""
        node = self._nodes.get(pid)
        if node is None or node.parent_pid == pid or node.parent_pid not in self._nodes:
            return None
        return node.parent_pid

    def ancestors(self, pid: int) -> list[int]:
        """Visible ancestors, closest first."""
        result: list[int] = []
        parent = self.parent(pid)
        while parent is not None and parent not in result:
            result.append(parent)
            parent = self.parent(parent)
        return result

    def walk(self, root: int | None = None) -> Iterator[TreeLine]:
        """Depth first traversal, whole forest or the subtree of ``root``."""
        if root is None:
            tops = self._roots
        elif root in self._nodes:
            tops = [root]
        else:
            return
        stack: list[tuple[int, tuple[bool, ...]]] = [
            (pid, ()) for pid in reversed(tops)
        ]
        while stack:
            pid, flags = stack.pop()
            yield TreeLine(self._nodes[pid], len(flags), flags)
            children = self._children.get(pid, ())
            for index in range(len(children) - 1, -1, -1):
                stack.append((children[index], flags + (index == len(children) - 1,)))


def is_kernel_thread(sample: ProcessSample) -> bool:
    return sample.kernel_thread


def _accepts(
    process_filter: ProcessFilter,
    sample: ProcessSample,
    activity: ActivityHistory | None,
    current_uid: int | None,
) -> bool:
    if process_filter is ProcessFilter.NONE:
        return True
    if process_filter is ProcessFilter.USER_LAND:
        return not is_kernel_thread(sample)
    if process_filter is ProcessFilter.ACTIVE:
        return activity is None or activity.is_active(sample.pid)
    return sample.uid == current_uid


def build_forest(
    samples: Iterable[ProcessSample],
    metric_values: Mapping[int, MetricValues] | None = None,
    process_filter: ProcessFilter = ProcessFilter.NONE,
    activity: ActivityHistory | None = None,
    current_uid: int | None = None,
) -> Forest:
    """Build the forest of the processes accepted by the filter."""
    metric_values = metric_values or {}
    nodes = [
        ProcessNode(
            pid=sample.pid,
            parent_pid=sample.parent_pid,
            name=sample.name,
            state=sample.state,
            uid=sample.uid,
            metric_values=metric_values.get(sample.pid, {}),
        )
        for sample in samples
        if _accepts(process_filter, sample, activity, current_uid)
    ]
    return Forest(nodes)
