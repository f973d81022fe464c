"""Export of raw metric values to per-process CSV or TSV files.

Writes happen in a background thread so that a slow disk never delays the
sampling loop. The first write error is logged, then the sink is disabled.
Closing the exporter (or leaving its ``with`` block) flushes every pending
row before the files are closed.
"""

import csv
import threading
from collections.abc import Iterable, Sequence
from enum import Enum
from pathlib import Path
from queue import Queue
from typing import IO

import structlog

from procmon.errors import ExportError
from procmon.models import ExportRecord

log = structlog.get_logger()

TIME_COLUMN = "time"


class ExportKind(Enum):
    NONE = "none"
    CSV = "csv"
    TSV = "tsv"

    @property
    def delimiter(self) -> str:
        return "\t" if self is ExportKind.TSV else ","

    @property
    def suffix(self) -> str:
        return self.value


def format_value(value: float | None) -> str:
    if value is None:
        return ""
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.3f}"


def export_filename(name: str, pid: int, kind: ExportKind) -> str:
    """File name of a process: ``<name>_<pid>.<kind>``."""
    safe_name = name.replace("/", "_") or "process"
    return f"{safe_name}_{pid}.{kind.suffix}"


class _ProcessFile:
    """Open export file of one process."""

    def __init__(self, path: Path, header: Sequence[str], delimiter: str) -> None:
        self.path = path
        is_new = not path.exists() or path.stat().st_size == 0
        self.handle: IO[str] = open(path, "a", newline="", encoding="utf-8")
        self.writer = csv.writer(self.handle, delimiter=delimiter, lineterminator="\n")
        if is_new:
            self.writer.writerow(header)

    def write(self, row: Sequence[str]) -> int:
        """Write a row and return the size of the file."""
        self.writer.writerow(row)
        self.handle.flush()
        return self.handle.tell()

    def close(self) -> None:
        self.handle.close()


class FileExporter:
    """
    Export sink writing one file per process.

    Each row holds the tick timestamp followed by one column per metric, in
    the order given at construction. A file reaching ``size_limit`` bytes is
    rotated: ``name_1.csv`` becomes ``name_1.csv.1`` and at most
    ``count_limit`` rotated files are kept.
    """

    def __init__(
        self,
        directory: Path,
        metrics: Sequence[str],
        kind: ExportKind = ExportKind.CSV,
        size_limit: int | None = None,
        count_limit: int | None = None,
    ) -> None:
        if kind is ExportKind.NONE:
            raise ValueError("no file export for kind 'none'")
        self._directory = Path(directory)
        self._metrics = list(metrics)
        self._kind = kind
        self._size_limit = size_limit
        self._count_limit = count_limit
        self._header = [TIME_COLUMN, *self._metrics]
        self._files: dict[int, _ProcessFile] = {}
        self._queue: Queue[list[ExportRecord] | None] = Queue()
        self._thread: threading.Thread | None = None
        self._error: ExportError | None = None

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def error(self) -> ExportError | None:
        """The error that disabled the sink, if any."""
        return self._error

    @property
    def is_open(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def open(self) -> None:
        """Create the export directory and start the writer thread.

        Raises:
            ExportError: the directory cannot be created.
        """
        if self.is_open:
            return
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ExportError(f"{self._directory}: {e.strerror}") from e
        self._thread = threading.Thread(target=self._run, daemon=True, name="FileExporter")
        self._thread.start()
        log.info("export_opened", directory=str(self._directory), kind=self._kind.value)

    def submit(self, records: Iterable[ExportRecord]) -> None:
        """Queue the records of one tick. Never blocks."""
        if self._error is not None or not self.is_open:
            return
        self._queue.put(list(records))

    def close(self, timeout: float | None = 10.0) -> None:
        """Write the pending rows, then close every file."""
        if self._thread is None:
            return
        self._queue.put(None)
        self._thread.join(timeout=timeout)
        self._thread = None
        self._close_files()
        log.info("export_closed", directory=str(self._directory))

    def __enter__(self) -> "FileExporter":
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _run(self) -> None:
        while True:
            batch = self._queue.get()
            if batch is None:
                break
            if self._error is not None:
                continue
            try:
                self._write(batch)
            except (OSError, csv.Error) as e:
                self._error = ExportError(f"{self._directory}: {e}")
                log.error("export_failed", directory=str(self._directory), error=str(e))
                self._close_files()

    def _write(self, records: Sequence[ExportRecord]) -> None:
        rows: dict[int, tuple[float, str, dict[str, float]]] = {}
        for record in records:
            _, _, values = rows.setdefault(record.pid, (record.timestamp, record.name, {}))
            values[record.metric] = record.value

        for pid in [pid for pid in self._files if pid not in rows]:
            self._files.pop(pid).close()

        for pid, (timestamp, name, values) in rows.items():
            process_file = self._files.get(pid)
            if process_file is None:
                path = self._directory / export_filename(name, pid, self._kind)
                process_file = self._files[pid] = _ProcessFile(
                    path, self._header, self._kind.delimiter
                )
            row = [f"{timestamp:.3f}", *(format_value(values.get(m)) for m in self._metrics)]
            size = process_file.write(row)
            if self._size_limit and size >= self._size_limit:
                self._rotate(self._files.pop(pid))

    def _rotate(self, process_file: _ProcessFile) -> None:
        process_file.close()
        path = process_file.path
        count = self._count_limit
        if count is not None and count <= 0:
            path.unlink()
            return
        if count is not None:
            for index in range(count - 1, 0, -1):
                older = path.with_name(f"{path.name}.{index}")
                if older.exists():
                    older.replace(path.with_name(f"{path.name}.{index + 1}"))
        else:
            index = 1
            while path.with_name(f"{path.name}.{index}").exists():
                index += 1
            for index in range(index - 1, 0, -1):
                path.with_name(f"{path.name}.{index}").replace(
                    path.with_name(f"{path.name}.{index + 1}")
                )
        path.replace(path.with_name(f"{path.name}.1"))
        log.debug("export_rotated", path=str(path))

    def _close_files(self) -> None:
        for process_file in self._files.values():
            try:
                process_file.close()
            except OSError as e:
                log.warning("export_close_failed", path=str(process_file.path), error=str(e))
        self._files.clear()


def create_exporter(
    kind: ExportKind,
    directory: Path,
    metrics: Sequence[str],
    size_limit: int | None = None,
    count_limit: int | None = None,
) -> FileExporter | None:
    """The exporter for a kind, or None when nothing is exported."""
    if kind is ExportKind.NONE:
        return None
    return FileExporter(directory, metrics, kind, size_limit, count_limit)
