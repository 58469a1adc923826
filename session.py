"""Session coordination for one open workspace.

`SessionCoordinator` is the single request/response and event boundary the
presentation layer talks to. It owns the watcher registry, the process
supervisor and a worker pool; git requests and file reads may be handed to
`submit()` so they never run on the event-dispatch thread.
"""

import os
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from PySide6.QtCore import QObject, QThreadPool, Signal, Slot

from config import default_config, get_artifact_names, get_int, get_loop_command, push_recent_workspace
from error_handler import ErrorHandler, get_error_handler
from git_utils import GitSyncEngine
from logging_config import get_logger, log_exception, log_performance
from metrics import time_operation
from models import (EditBuffer, ErrorKind, FileChangedEvent, FileStats, OperationResult, OutputEvent,
                    ProcessState, RequestOutcome)
from supervisor import ProcessSupervisor
from watcher import WatcherRegistry, normalize_path
from workers import BackgroundTask

logger = get_logger(__name__)

EVENT_SIGNALS = {
    "file-changed": "file_changed",
    "terminal-output": "terminal_output",
    "request-finished": "request_finished",
    "operation-failed": "operation_failed",
    "workspace-changed": "workspace_changed",
    "loop-started": "loop_started",
}


class Subscription:
    """A callback connected to one coordinator event until cancelled."""

    def __init__(self, owner: "SessionCoordinator", event: str, callback: Callable[[Any], None]):
        self.owner = owner
        self.event = event
        self.callback = callback
        self.active = True

    def cancel(self):
        if not self.active:
            return
        self.active = False
        signal = getattr(self.owner, EVENT_SIGNALS[self.event])
        try:
            signal.disconnect(self.callback)
        except (RuntimeError, TypeError) as e:
            logger.debug(f"Subscription to {self.event} was already disconnected: {e}")
        if self in self.owner._subscriptions:
            self.owner._subscriptions.remove(self)


def _io_failure(e: OSError, path) -> OperationResult:
    if isinstance(e, FileNotFoundError):
        return OperationResult.fail(ErrorKind.NOT_FOUND, f"No such file: {path}")
    if isinstance(e, PermissionError):
        return OperationResult.fail(ErrorKind.PERMISSION_DENIED, f"Permission denied: {path}")
    return OperationResult.fail(ErrorKind.IO_ERROR, f"{path}: {e.strerror or e}")


class SessionCoordinator(QObject):
    """Binds file watches, the loop process and git to the open workspace."""

    file_changed = Signal(object)  # FileChangedEvent
    terminal_output = Signal(object)  # OutputEvent
    request_finished = Signal(object)  # RequestOutcome
    operation_failed = Signal(object)  # ErrorInfo
    workspace_changed = Signal(object)  # Path | None
    loop_started = Signal(object)  # OperationResult of a start_loop that was accepted

    # Requests that only read disk or drive git; everything else touches coordinator state
    ASYNC_OPERATIONS = (
        "read_file", "get_file_stats", "git_ensure_repo", "git_status", "git_diff", "git_log",
        "git_stage_and_commit", "git_sync", "git_commit_and_sync", "git_has_uncommitted_changes",
        "git_commit_task_completion",
    )

    def __init__(self, cfg: dict | None = None, error_handler: ErrorHandler | None = None,
                 parent: QObject | None = None):
        super().__init__(parent)
        self.cfg = cfg if cfg is not None else default_config()
        self.error_handler = error_handler or get_error_handler()
        self.workspace: Path | None = None
        self.git: GitSyncEngine | None = None
        self.buffers: dict[str, EditBuffer] = {}

        self._subscriptions: list[Subscription] = []
        self._tasks: dict[int, BackgroundTask] = {}
        self._next_request_id = 1

        self.pool = QThreadPool(self)
        self.watchers = WatcherRegistry(get_int(self.cfg, "watch_coalesce_ms"), self.pool, self)
        self.supervisor = ProcessSupervisor(
            stop_grace_ms=get_int(self.cfg, "stop_grace_ms"),
            kill_grace_ms=get_int(self.cfg, "kill_grace_ms"),
            kill_on_replace=bool(self.cfg.get("kill_on_replace", True)),
            parent=self,
        )
        self.watchers.file_changed.connect(self._on_file_changed)
        self.supervisor.output.connect(self._on_output)
        self.supervisor.start_finished.connect(self._on_start_finished)
        self.supervisor.lifecycle_warning.connect(self._on_lifecycle_warning)

    # Events

    def subscribe(self, event: str, callback: Callable[[Any], None]) -> Subscription:
        """Connect `callback` to an event; `shutdown()` cancels every subscription."""
        if event not in EVENT_SIGNALS:
            raise ValueError(f"Unknown event {event!r}; expected one of {sorted(EVENT_SIGNALS)}")
        getattr(self, EVENT_SIGNALS[event]).connect(callback)
        subscription = Subscription(self, event, callback)
        self._subscriptions.append(subscription)
        return subscription

    @Slot(object)
    def _on_file_changed(self, event: FileChangedEvent):
        buffer = self.buffers.get(event.path)
        if buffer is not None:
            event.buffer_updated = buffer.apply_external_change(event.content)
            if not event.buffer_updated:
                logger.info(f"{event.path} changed on disk; keeping unsaved edits")
        self.file_changed.emit(event)

    @Slot(object)
    def _on_output(self, event: OutputEvent):
        self.terminal_output.emit(event)

    @Slot(object)
    def _on_start_finished(self, result: OperationResult):
        self.loop_started.emit(self._relay("start_loop", result))

    @Slot(object)
    def _on_lifecycle_warning(self, result: OperationResult):
        # "start" while replacing, "stop" after a graceful stop ran out of time
        self._relay(f"{result.operation}_loop", result)

    def _relay(self, operation: str, result: OperationResult) -> OperationResult:
        """Tag the result with its request name and report failures once."""
        result = result.annotated(operation)
        if not result.success:
            self.operation_failed.emit(self.error_handler.handle_result(result))
        return result

    # Workspace lifecycle

    def open_workspace(self, path) -> OperationResult:
        root = Path(normalize_path(Path(path).expanduser()))
        if not root.is_dir():
            return self._relay("open_workspace", OperationResult.fail(ErrorKind.NOT_FOUND, f"No such directory: {root}"))
        if self.workspace is not None and self.workspace != root:
            self.close_workspace()

        self.workspace = root
        self.git = GitSyncEngine(
            root,
            remote=self.cfg.get("git_remote", "origin"),
            initial_branch=self.cfg.get("initial_branch", "main"),
            commit_prefix=self.cfg.get("commit_prefix", "[Loop]"),
        )
        push_recent_workspace(self.cfg, root)
        logger.info(f"Opened workspace {root}")
        self.workspace_changed.emit(root)
        return OperationResult.ok(root)

    def close_workspace(self) -> OperationResult:
        """Drop every watch and stop the loop if it runs inside this workspace."""
        if self.workspace is None:
            return OperationResult.ok(None)

        root = self.workspace
        self.watchers.unwatch_all()
        self.buffers.clear()
        result = OperationResult.ok(root)
        if self._loop_belongs_to_workspace():
            stopped = self.supervisor.stop()
            if not stopped.success:
                result = stopped

        self.workspace = None
        self.git = None
        logger.info(f"Closed workspace {root}")
        self.workspace_changed.emit(None)
        return self._relay("close_workspace", result)

    def _loop_belongs_to_workspace(self) -> bool:
        handle = self.supervisor.handle
        if handle is None or self.workspace is None:
            return False
        cwd = Path(normalize_path(handle.working_directory))
        return cwd == self.workspace or self.workspace in cwd.parents

    def _require_workspace(self) -> OperationResult | None:
        if self.workspace is None:
            return OperationResult.fail(ErrorKind.NO_WORKSPACE, "No workspace open")
        return None

    def resolve(self, path) -> str:
        """Absolute path; relative paths are taken from the workspace root."""
        p = Path(path).expanduser()
        if not p.is_absolute() and self.workspace is not None:
            p = self.workspace / p
        return normalize_path(p)

    def workspace_artifacts(self) -> OperationResult:
        """Conventional paths of the loop script, task description file and progress log."""
        missing = self._require_workspace()
        if missing:
            return self._relay("workspace_artifacts", missing)
        names = get_artifact_names(self.cfg)
        return OperationResult.ok({key: self.workspace / name for key, name in names.items()})

    # Files

    def _read_file(self, path) -> OperationResult:
        path = self.resolve(path)
        try:
            with time_operation("read_file"), open(path, "r", encoding="utf-8", errors="replace") as f:
                return OperationResult.ok(f.read())
        except IsADirectoryError:
            return OperationResult.fail(ErrorKind.IO_ERROR, f"Is a directory: {path}")
        except OSError as e:
            return _io_failure(e, path)

    def _get_file_stats(self, path) -> OperationResult:
        path = self.resolve(path)
        try:
            st = os.stat(path)
        except OSError as e:
            return _io_failure(e, path)
        created = getattr(st, "st_birthtime", st.st_ctime)
        return OperationResult.ok(FileStats(
            size=st.st_size,
            created=datetime.fromtimestamp(created),
            modified=datetime.fromtimestamp(st.st_mtime),
        ))

    def read_file(self, path) -> OperationResult:
        return self._relay("read_file", self._read_file(path))

    def get_file_stats(self, path) -> OperationResult:
        return self._relay("get_file_stats", self._get_file_stats(path))

    def write_file(self, path, content: str) -> OperationResult:
        """Write `content`; an open buffer for the path becomes clean with that content."""
        path = self.resolve(path)
        try:
            with open(path, "w", encoding="utf-8") as f:
                f.write(content)
        except OSError as e:
            return self._relay("write_file", _io_failure(e, path))
        buffer = self.buffers.get(path)
        if buffer is not None:
            buffer.content = content
            buffer.mark_saved()
        return OperationResult.ok(path)

    def watch_file(self, path) -> OperationResult:
        return self._relay("watch_file", self.watchers.watch(self.resolve(path)))

    def unwatch_file(self, path) -> OperationResult:
        return self._relay("unwatch_file", self.watchers.unwatch(self.resolve(path)))

    def open_file_for_editing(self, path) -> OperationResult:
        """Arm a watch, then load the file into a clean buffer."""
        path = self.resolve(path)
        watched = self.watchers.watch(path)
        if not watched.success:
            return self._relay("open_file_for_editing", watched)
        loaded = self._read_file(path)
        if not loaded.success:
            self.watchers.unwatch(path)
            return self._relay("open_file_for_editing", loaded)
        buffer = EditBuffer(path=path, content=loaded.data)
        self.buffers[path] = buffer
        return OperationResult.ok(buffer)

    def buffer(self, path) -> EditBuffer | None:
        return self.buffers.get(self.resolve(path))

    def edit_buffer(self, path, content: str) -> OperationResult:
        buffer = self.buffer(path)
        if buffer is None:
            return self._relay("edit_buffer", OperationResult.fail(ErrorKind.NOT_FOUND, f"Not open for editing: {path}"))
        buffer.edit(content)
        return OperationResult.ok(buffer)

    def save_file(self, path) -> OperationResult:
        buffer = self.buffer(path)
        if buffer is None:
            return self._relay("save_file", OperationResult.fail(ErrorKind.NOT_FOUND, f"Not open for editing: {path}"))
        saved = self.write_file(buffer.path, buffer.content)
        return saved.annotated("save_file") if saved.success else saved

    def close_file_for_editing(self, path) -> OperationResult:
        path = self.resolve(path)
        self.buffers.pop(path, None)
        return self._relay("close_file_for_editing", self.watchers.unwatch(path))

    # Loop

    def start_loop(self, script_path=None, working_dir=None) -> OperationResult:
        """Run the loop script with the configured shell, replacing any running loop.

        Returns once the request is accepted; `loop-started` carries the outcome.
        """
        missing = self._require_workspace()
        if missing:
            return self._relay("start_loop", missing)
        script = Path(self.resolve(script_path or get_artifact_names(self.cfg)["script"]))
        if not script.is_file():
            return self._relay("start_loop", OperationResult.fail(ErrorKind.NOT_FOUND, f"No such script: {script}"))
        cwd = Path(self.resolve(working_dir)) if working_dir else self.workspace
        return self._relay("start_loop", self.supervisor.start(get_loop_command(self.cfg, script), cwd))

    def stop_loop(self) -> OperationResult:
        """SIGTERM the loop; its `close` terminal-output event follows."""
        return self._relay("stop_loop", self.supervisor.stop())

    def loop_state(self) -> ProcessState:
        return self.supervisor.state

    # Git

    def _git_call(self, method: str, *args) -> OperationResult:
        missing = self._require_workspace()
        if missing:
            return missing
        return getattr(self.git, method)(*args)

    def _git_ensure_repo(self) -> OperationResult:
        return self._git_call("ensure_repo")

    def _git_status(self) -> OperationResult:
        return self._git_call("status")

    def _git_diff(self) -> OperationResult:
        return self._git_call("diff")

    def _git_log(self, limit: int | None = None) -> OperationResult:
        return self._git_call("log", limit if limit is not None else get_int(self.cfg, "log_limit"))

    def _git_stage_and_commit(self, message: str) -> OperationResult:
        return self._git_call("stage_and_commit", message)

    def _git_sync(self, branch: str | None = None) -> OperationResult:
        return self._git_call("sync", branch)

    def _git_commit_and_sync(self, message: str, should_sync: bool | None = None) -> OperationResult:
        if should_sync is None:
            should_sync = bool(self.cfg.get("auto_sync", True))
        return self._git_call("commit_and_sync", message, should_sync)

    def _git_has_uncommitted_changes(self) -> OperationResult:
        return self._git_call("has_uncommitted_changes")

    def _git_commit_task_completion(self, task_id: str, description: str, iteration: int) -> OperationResult:
        return self._git_call("commit_task_completion", task_id, description, iteration)

    def git_ensure_repo(self) -> OperationResult:
        return self._relay("git_ensure_repo", self._git_ensure_repo())

    def git_status(self) -> OperationResult:
        return self._relay("git_status", self._git_status())

    def git_diff(self) -> OperationResult:
        return self._relay("git_diff", self._git_diff())

    def git_log(self, limit: int | None = None) -> OperationResult:
        return self._relay("git_log", self._git_log(limit))

    def git_stage_and_commit(self, message: str) -> OperationResult:
        return self._relay("git_stage_and_commit", self._git_stage_and_commit(message))

    def git_sync(self, branch: str | None = None) -> OperationResult:
        return self._relay("git_sync", self._git_sync(branch))

    def git_commit_and_sync(self, message: str, should_sync: bool | None = None) -> OperationResult:
        return self._relay("git_commit_and_sync", self._git_commit_and_sync(message, should_sync))

    def git_has_uncommitted_changes(self) -> OperationResult:
        return self._relay("git_has_uncommitted_changes", self._git_has_uncommitted_changes())

    def git_commit_task_completion(self, task_id: str, description: str, iteration: int) -> OperationResult:
        return self._relay("git_commit_task_completion",
                           self._git_commit_task_completion(task_id, description, iteration))

    # Off-thread requests

    def submit(self, operation: str, *args) -> int:
        """Run one of `ASYNC_OPERATIONS` on the worker pool.

        Its outcome arrives through `request_finished`. Other requests raise
        `ValueError` and are called directly.
        """
        if operation not in self.ASYNC_OPERATIONS:
            raise ValueError(f"{operation!r} cannot run off the dispatch thread")
        request_id = self._next_request_id
        self._next_request_id += 1

        task = BackgroundTask(_run_request, request_id, operation, getattr(self, f"_{operation}"), args)
        task.signals.finished.connect(self._on_request_finished)
        self._tasks[request_id] = task
        self.pool.start(task)
        return request_id

    def pending_requests(self) -> int:
        return len(self._tasks)

    @Slot(object)
    def _on_request_finished(self, outcome: RequestOutcome):
        self._tasks.pop(outcome.request_id, None)
        outcome.result = self._relay(outcome.operation, outcome.result)
        self.request_finished.emit(outcome)

    # Teardown

    def shutdown(self, timeout_ms: int = 5000):
        """Cancel subscriptions, close the workspace, stop the loop and drain the pool."""
        for subscription in list(self._subscriptions):
            subscription.cancel()
        self.close_workspace()
        if self.supervisor.is_running():
            self.supervisor.shutdown()
        self.pool.waitForDone(timeout_ms)
        logger.info("Session coordinator shut down")


def _run_request(request_id: int, operation: str, fn, args: tuple) -> RequestOutcome:
    start = time.time()
    try:
        result = fn(*args)
    except Exception as e:
        log_exception(logger, f"Request {operation} raised: {e}", request_id=request_id)
        result = OperationResult.fail(ErrorKind.IO_ERROR, f"{type(e).__name__}: {e}")
    log_performance(logger, operation, time.time() - start, request_id=request_id, success=result.success)
    return RequestOutcome(request_id=request_id, operation=operation, result=result)
