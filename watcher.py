"""File watches for files open for editing.

The registry lives on the event-dispatch thread, like every QObject here, so
arm and disarm calls for the same path are serialized by that thread. Content
reads for change reconciliation run on a thread pool; a per-entry generation
number drops any read that finishes after its path was unwatched or re-armed.
"""

import logging
import os

from PySide6.QtCore import QFileSystemWatcher, QObject, QThreadPool, QTimer, Signal, Slot

from metrics import record_file_watch
from models import ErrorKind, FileChangedEvent, OperationResult, WatchEntry
from workers import BackgroundTask

logger = logging.getLogger(__name__)


def normalize_path(path) -> str:
    return os.path.abspath(os.fspath(path))


def read_snapshot(path: str, generation: int) -> tuple:
    """Read a file for reconciliation. Returns (path, generation, content, error)."""
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return path, generation, f.read(), None
    except OSError as e:
        return path, generation, None, str(e)


class WatcherRegistry(QObject):
    """Owns one watch per path and emits `file_changed` for external edits."""

    file_changed = Signal(object)  # FileChangedEvent

    def __init__(self, coalesce_ms: int = 50, pool: QThreadPool | None = None, parent: QObject | None = None):
        super().__init__(parent)
        self._entries: dict[str, WatchEntry] = {}
        self._generation = 0
        self._pending: dict[str, None] = {}  # insertion-ordered set
        self._reads: dict[tuple[str, int], BackgroundTask] = {}
        self._dir_refs: dict[str, int] = {}
        self._pool = pool or QThreadPool.globalInstance()

        self._fs = QFileSystemWatcher(self)
        self._fs.fileChanged.connect(self._on_file_changed)
        self._fs.directoryChanged.connect(self._on_directory_changed)

        # One reconciliation tick: every notification inside it collapses to one read per path
        self._tick = QTimer(self)
        self._tick.setSingleShot(True)
        self._tick.setInterval(coalesce_ms)
        self._tick.timeout.connect(self._flush)

    # Public API

    def watch(self, path) -> OperationResult:
        """Arm a watch on `path`, replacing any existing one."""
        path = normalize_path(path)
        if path in self._entries:
            self._disarm(path)

        if not os.path.isfile(path):
            return OperationResult.fail(ErrorKind.NOT_FOUND, f"No such file: {path}")
        if not os.access(path, os.R_OK):
            return OperationResult.fail(ErrorKind.PERMISSION_DENIED, f"File is not readable: {path}")
        if not self._fs.addPath(path):
            self._fs.removePath(path)
            return OperationResult.fail(ErrorKind.IO_ERROR, f"Could not watch {path}")

        self._ref_dir(os.path.dirname(path))
        self._generation += 1
        self._entries[path] = WatchEntry(path=path, generation=self._generation)
        record_file_watch(path)
        logger.debug(f"Watching {path}")
        return OperationResult.ok(path)

    def unwatch(self, path) -> OperationResult:
        """Tear down the watch on `path`. No event for it is emitted after this returns."""
        path = normalize_path(path)
        if path in self._entries:
            self._disarm(path)
            logger.debug(f"Stopped watching {path}")
        return OperationResult.ok(path)

    def unwatch_all(self) -> OperationResult:
        paths = list(self._entries)
        for path in paths:
            self._disarm(path)
        self._tick.stop()
        if paths:
            logger.debug(f"Stopped watching {len(paths)} file(s)")
        return OperationResult.ok(paths)

    def is_watching(self, path) -> bool:
        return normalize_path(path) in self._entries

    def watched_paths(self) -> list[str]:
        return list(self._entries)

    def os_watched_files(self) -> list[str]:
        """Paths currently armed in the underlying QFileSystemWatcher."""
        return list(self._fs.files())

    # Internals

    def _disarm(self, path: str):
        entry = self._entries.pop(path)
        entry.active = False
        self._pending.pop(path, None)
        if path in self._fs.files():
            self._fs.removePath(path)
        self._unref_dir(os.path.dirname(path))

    def _ref_dir(self, directory: str):
        count = self._dir_refs.get(directory, 0)
        if count == 0 and not self._fs.addPath(directory):
            logger.debug(f"Could not watch directory {directory}; replaced files may be missed")
        self._dir_refs[directory] = count + 1

    def _unref_dir(self, directory: str):
        count = self._dir_refs.get(directory, 0) - 1
        if count > 0:
            self._dir_refs[directory] = count
            return
        self._dir_refs.pop(directory, None)
        if directory in self._fs.directories():
            self._fs.removePath(directory)

    def _schedule(self, path: str):
        self._pending[path] = None
        if not self._tick.isActive():
            self._tick.start()

    @Slot(str)
    def _on_file_changed(self, path: str):
        if path in self._entries:
            self._schedule(path)

    @Slot(str)
    def _on_directory_changed(self, directory: str):
        # Files replaced by rename drop out of the OS watch; pick them up again once they exist.
        armed = set(self._fs.files())
        for path in self._entries:
            if os.path.dirname(path) == directory and path not in armed and os.path.isfile(path):
                self._schedule(path)

    @Slot()
    def _flush(self):
        pending, self._pending = list(self._pending), {}
        for path in pending:
            entry = self._entries.get(path)
            if entry is None:
                continue
            if path not in self._fs.files():
                if not os.path.isfile(path):
                    logger.debug(f"{path} is gone, waiting for it to reappear")
                    continue
                self._fs.addPath(path)
            if entry.reading:
                entry.stale = True
                continue
            self._start_read(entry)

    def _start_read(self, entry: WatchEntry):
        entry.reading = True
        task = BackgroundTask(read_snapshot, entry.path, entry.generation)
        task.signals.finished.connect(self._on_read_finished)
        self._reads[(entry.path, entry.generation)] = task
        self._pool.start(task)

    @Slot(object)
    def _on_read_finished(self, snapshot: tuple):
        path, generation, content, error = snapshot
        self._reads.pop((path, generation), None)
        entry = self._entries.get(path)
        if entry is None or entry.generation != generation:
            return

        entry.reading = False
        if error is not None:
            logger.warning(f"Could not read changed file {path}: {error}")
        else:
            self.file_changed.emit(FileChangedEvent(path=path, content=content))

        if entry.stale:
            entry.stale = False
            self._start_read(entry)
