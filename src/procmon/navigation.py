"""Navigation in the process forest.

The navigator owns the cursor, the viewport offsets, the search, the marks
and the scope. Identities are pids, never row indexes, so the state survives
a new forest generation on every tick: :meth:`Navigator.reconcile` prunes
what disappeared and moves the cursor to the closest visible process.

Modes::

    BROWSING --start_search--> SEARCHING --commit_search/cancel_search--> BROWSING
    BROWSING --show_details--> DETAIL --close_details/process exit--> BROWSING

The scope (whole tree or flat list of marked processes) is orthogonal to the
mode.
"""

from dataclasses import dataclass, field
from enum import Enum

import structlog

from procmon.forest import Forest, ProcessNode, TreeLine

log = structlog.get_logger()

HORIZONTAL_STEP = 8


class Mode(Enum):
    BROWSING = "browsing"
    SEARCHING = "searching"
    DETAIL = "detail"


class Scope(Enum):
    TREE = "tree"
    FLAT_MARKED = "flat"


@dataclass
class SearchState:
    """Search pattern and the pids matching it, in display order."""

    pattern: str = ""
    matches: list[int] = field(default_factory=list)
    index: int = 0
    committed: bool = False

    @property
    def current(self) -> int | None:
        if not self.matches:
            return None
        return self.matches[self.index % len(self.matches)]


@dataclass
class NavigationState:
    """Navigation state. Persists across forest generations."""

    cursor_pid: int | None = None
    root_pid: int | None = None
    horizontal_offset: int = 0
    vertical_offset: int = 0
    search: SearchState | None = None
    marks: set[int] = field(default_factory=set)
    scope: Scope = Scope.TREE
    mode: Mode = Mode.BROWSING
    detail_pid: int | None = None
    flat_pids: list[int] = field(default_factory=list)
    viewport_height: int = 20
    viewport_width: int = 80
    content_width: int = 0


def matches_pattern(name: str, pattern: str) -> bool:
    """Literal, case insensitive substring match."""
    return bool(pattern) and pattern.casefold() in name.casefold()


class Navigator:
    """State machine driving a :class:`NavigationState` over successive forests."""

    def __init__(self, state: NavigationState | None = None, forest: Forest | None = None) -> None:
        self.state = state or NavigationState()
        self._forest = forest or Forest()
        self._lines: list[TreeLine] = []
        self._index: dict[int, int] = {}
        self._search_origin: int | None = None
        self._refresh_lines()
        self._settle_cursor(None)

    # ── Views ────────────────────────────────────────────────────────────

    @property
    def forest(self) -> Forest:
        return self._forest

    @property
    def lines(self) -> list[TreeLine]:
        """Rows to display, in order."""
        return list(self._lines)

    @property
    def mode(self) -> Mode:
        return self.state.mode

    @property
    def scope(self) -> Scope:
        return self.state.scope

    @property
    def cursor_index(self) -> int | None:
        if self.state.cursor_pid is None:
            return None
        return self._index.get(self.state.cursor_pid)

    def cursor_node(self) -> ProcessNode | None:
        if self.state.cursor_pid is None:
            return None
        return self._forest.get(self.state.cursor_pid)

    def detail_node(self) -> ProcessNode | None:
        if self.state.mode is not Mode.DETAIL or self.state.detail_pid is None:
            return None
        return self._forest.get(self.state.detail_pid)

    def visible_lines(self) -> list[TreeLine]:
        """Rows inside the viewport."""
        top = self.state.vertical_offset
        return self._lines[top : top + self.state.viewport_height]

    def is_marked(self, pid: int) -> bool:
        return pid in self.state.marks

    def is_match(self, pid: int) -> bool:
        search = self.state.search
        return search is not None and pid in search.matches

    # ── Internals ────────────────────────────────────────────────────────

    def _refresh_lines(self) -> None:
        if self.state.scope is Scope.FLAT_MARKED:
            self._lines = [
                TreeLine(self._forest.get(pid), 0)
                for pid in self.state.flat_pids
                if pid in self._forest
            ]
        else:
            self._lines = list(self._forest.walk(self.state.root_pid))
        self._index = {line.pid: index for index, line in enumerate(self._lines)}

    def _recompute_matches(self) -> None:
        search = self.state.search
        if search is None:
            return
        current = search.current
        search.matches = [
            line.pid for line in self._lines if matches_pattern(line.node.name, search.pattern)
        ]
        if current in search.matches:
            search.index = search.matches.index(current)
        elif search.matches:
            search.index = min(search.index, len(search.matches) - 1)
        else:
            search.index = 0

    def _settle_cursor(self, previous: Forest | None) -> None:
        """Keep the cursor on a displayed row.

        Falls back to the nearest displayed ancestor in the previous
        generation, then to the first row.
        """
        state = self.state
        if state.cursor_pid in self._index:
            return
        fallback = None
        if previous is not None and state.cursor_pid is not None:
            for ancestor in previous.ancestors(state.cursor_pid):
                if ancestor in self._index:
                    fallback = ancestor
                    break
        if fallback is None and self._lines:
            fallback = self._lines[0].pid
        state.cursor_pid = fallback

    def _clamp_offsets(self) -> None:
        state = self.state
        height = max(1, state.viewport_height)
        max_top = max(0, len(self._lines) - height)
        state.vertical_offset = min(max(0, state.vertical_offset), max_top)
        max_left = max(0, state.content_width - state.viewport_width)
        state.horizontal_offset = min(max(0, state.horizontal_offset), max_left)

    def _ensure_cursor_visible(self) -> None:
        self._clamp_offsets()
        index = self.cursor_index
        if index is None:
            return
        state = self.state
        height = max(1, state.viewport_height)
        if index < state.vertical_offset:
            state.vertical_offset = index
        elif index >= state.vertical_offset + height:
            state.vertical_offset = index - height + 1

    def _goto(self, pid: int | None) -> None:
        if pid is not None and pid in self._index:
            self.state.cursor_pid = pid
        self._ensure_cursor_visible()

    def _relayout(self) -> None:
        self._refresh_lines()
        self._recompute_matches()
        self._settle_cursor(None)
        self._ensure_cursor_visible()

    # ── Generations ──────────────────────────────────────────────────────

    def reconcile(self, forest: Forest) -> None:
        """Switch to a new forest generation, pruning what disappeared."""
        state = self.state
        previous = self._forest
        self._forest = forest

        if state.root_pid is not None and state.root_pid not in forest:
            log.debug("root_process_gone", pid=state.root_pid)
            state.root_pid = None
        state.marks &= forest.pids
        if state.scope is Scope.FLAT_MARKED:
            state.flat_pids = [pid for pid in state.flat_pids if pid in forest]
            if not state.flat_pids:
                state.scope = Scope.TREE
        if state.mode is Mode.DETAIL and state.detail_pid not in forest:
            log.debug("detail_process_gone", pid=state.detail_pid)
            state.mode = Mode.BROWSING
            state.detail_pid = None

        self._refresh_lines()
        self._recompute_matches()
        self._settle_cursor(previous)
        self._ensure_cursor_visible()

    # ── Cursor and viewport ──────────────────────────────────────────────

    def resize(self, height: int, width: int) -> None:
        self.state.viewport_height = max(1, height)
        self.state.viewport_width = max(1, width)
        self._ensure_cursor_visible()

    def set_content_width(self, width: int) -> None:
        """Width of the widest displayed row."""
        self.state.content_width = max(0, width)
        self._clamp_offsets()

    def move_cursor(self, delta: int) -> bool:
        if self.state.mode is not Mode.BROWSING or not self._lines:
            return False
        index = self.cursor_index or 0
        index = min(max(0, index + delta), len(self._lines) - 1)
        self._goto(self._lines[index].pid)
        return True

    def select_up(self) -> bool:
        return self.move_cursor(-1)

    def select_down(self) -> bool:
        return self.move_cursor(1)

    def page_up(self) -> bool:
        return self.move_cursor(-self.state.viewport_height)

    def page_down(self) -> bool:
        return self.move_cursor(self.state.viewport_height)

    def goto_top(self) -> bool:
        return self.move_cursor(-len(self._lines))

    def goto_bottom(self) -> bool:
        return self.move_cursor(len(self._lines))

    def scroll_horizontal(self, delta: int) -> None:
        self.state.horizontal_offset += delta
        self._clamp_offsets()

    def scroll_left(self) -> None:
        self.scroll_horizontal(-HORIZONTAL_STEP)

    def scroll_right(self) -> None:
        self.scroll_horizontal(HORIZONTAL_STEP)

    def goto_left(self) -> None:
        self.state.horizontal_offset = 0

    def goto_right(self) -> None:
        self.state.horizontal_offset = self.state.content_width
        self._clamp_offsets()

    # ── Search ───────────────────────────────────────────────────────────

    def start_search(self) -> bool:
        state = self.state
        if state.mode is not Mode.BROWSING:
            return False
        self._search_origin = state.cursor_pid
        if state.search is None:
            state.search = SearchState()
        else:
            state.search.committed = False
        state.mode = Mode.SEARCHING
        return True

    def _edit_search(self, pattern: str) -> bool:
        search = self.state.search
        if self.state.mode is not Mode.SEARCHING or search is None:
            return False
        search.pattern = pattern
        search.index = 0
        self._recompute_matches()
        search.index = 0
        self._goto(search.current)
        return True

    def push_char(self, char: str) -> bool:
        search = self.state.search
        if search is None:
            return False
        return self._edit_search(search.pattern + char)

    def pop_char(self) -> bool:
        search = self.state.search
        if search is None:
            return False
        return self._edit_search(search.pattern[:-1])

    def commit_search(self) -> bool:
        state = self.state
        if state.mode is not Mode.SEARCHING or state.search is None:
            return False
        state.mode = Mode.BROWSING
        if not state.search.pattern:
            state.search = None
            return True
        state.search.committed = True
        state.search.index = 0
        self._goto(state.search.current)
        return True

    def cancel_search(self) -> bool:
        state = self.state
        if state.mode is not Mode.SEARCHING:
            return False
        state.mode = Mode.BROWSING
        state.search = None
        self._goto(self._search_origin)
        return True

    def clear_search(self) -> bool:
        if self.state.mode is not Mode.BROWSING or self.state.search is None:
            return False
        self.state.search = None
        return True

    def _step_match(self, step: int) -> bool:
        search = self.state.search
        if (
            self.state.mode is not Mode.BROWSING
            or search is None
            or not search.committed
            or not search.matches
        ):
            return False
        search.index = (search.index + step) % len(search.matches)
        self._goto(search.current)
        return True

    def next_match(self) -> bool:
        return self._step_match(1)

    def previous_match(self) -> bool:
        return self._step_match(-1)

    # ── Marks ────────────────────────────────────────────────────────────

    def toggle_mark(self) -> bool:
        """Toggle the mark of all search matches, or of the process under the cursor."""
        state = self.state
        if state.mode is not Mode.BROWSING:
            return False
        search = state.search
        if search is not None and search.committed:
            targets = set(search.matches)
            if not targets:
                return False
            if targets <= state.marks:
                state.marks -= targets
            else:
                state.marks |= targets
            return True
        if state.cursor_pid is None:
            return False
        state.marks ^= {state.cursor_pid}
        return True

    def clear_marks(self) -> None:
        self.state.marks.clear()

    # ── Scope and root ───────────────────────────────────────────────────

    def toggle_scope(self) -> bool:
        state = self.state
        if state.scope is Scope.TREE:
            marked = sorted(pid for pid in state.marks if pid in self._forest)
            if not marked:
                return False
            state.flat_pids = marked
            state.scope = Scope.FLAT_MARKED
        else:
            state.scope = Scope.TREE
            state.flat_pids = []
        self._relayout()
        return True

    def focus(self) -> bool:
        """Restrict the tree to the subtree of the process under the cursor."""
        state = self.state
        if state.mode is not Mode.BROWSING or state.scope is not Scope.TREE:
            return False
        if state.cursor_pid is None:
            return False
        state.root_pid = state.cursor_pid
        self._relayout()
        return True

    def unfocus(self) -> bool:
        if self.state.root_pid is None:
            return False
        self.state.root_pid = None
        self._relayout()
        return True

    # ── Details ──────────────────────────────────────────────────────────

    def show_details(self) -> bool:
        state = self.state
        if state.mode is not Mode.BROWSING or state.cursor_pid is None:
            return False
        state.mode = Mode.DETAIL
        state.detail_pid = state.cursor_pid
        return True

    def close_details(self) -> bool:
        if self.state.mode is not Mode.DETAIL:
            return False
        self.state.mode = Mode.BROWSING
        self.state.detail_pid = None
        return True
