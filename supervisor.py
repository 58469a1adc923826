"""Supervision of the single long-running loop process."""

import codecs
import logging
import shutil
import time
from dataclasses import replace
from functools import partial
from pathlib import Path

from PySide6.QtCore import QObject, QProcess, QTimer, Signal

from metrics import record_loop_run
from models import ErrorKind, OperationResult, OutputEvent, OutputKind, ProcessHandle, ProcessState

logger = logging.getLogger(__name__)

# What the grace timer is waiting for
_STOP = "stop"
_REPLACE = "replace"
_KILL = "kill"


class _Child:
    """The QProcess behind a handle, with one incremental decoder per stream."""

    def __init__(self, process: QProcess, handle: ProcessHandle):
        self.process = process
        self.handle = handle
        self.failure: OperationResult | None = None
        self.spawning = False  # inside QProcess.start(); failures go to the caller
        self.decoders = {
            OutputKind.STDOUT: codecs.getincrementaldecoder("utf-8")(errors="replace"),
            OutputKind.STDERR: codecs.getincrementaldecoder("utf-8")(errors="replace"),
        }

    def read(self, kind: OutputKind, final: bool = False) -> str:
        if kind == OutputKind.STDOUT:
            data = self.process.readAllStandardOutput()
        else:
            data = self.process.readAllStandardError()
        return self.decoders[kind].decode(data.data(), final)


class ProcessSupervisor(QObject):
    """Owns at most one child process and streams its output as events.

    Nothing here waits on the child from the event loop. `start()` on a busy
    slot sends SIGTERM and queues the new command; it is spawned from the old
    child's `finished` slot, after that child's CLOSE event. A single-shot
    grace timer escalates to SIGKILL (or gives up) if the child does not go.
    `start_finished` reports what became of every accepted `start()`.
    """

    output = Signal(object)  # OutputEvent
    state_changed = Signal(object)  # ProcessState
    start_finished = Signal(object)  # OperationResult, data is the running ProcessHandle
    lifecycle_warning = Signal(object)  # OperationResult

    def __init__(self, stop_grace_ms: int = 3000, kill_grace_ms: int = 1000, kill_on_replace: bool = True,
                 parent: QObject | None = None):
        super().__init__(parent)
        self.stop_grace_ms = stop_grace_ms
        self.kill_grace_ms = kill_grace_ms
        self.kill_on_replace = kill_on_replace
        self._child: _Child | None = None
        self._events: list[OutputEvent] = []
        self._pending: ProcessHandle | None = None
        self._escalation: str | None = None

        self._grace_timer = QTimer(self)
        self._grace_timer.setSingleShot(True)
        self._grace_timer.timeout.connect(self._on_grace_expired)

    @property
    def handle(self) -> ProcessHandle | None:
        """Snapshot of the current handle, or None when stopped."""
        return replace(self._child.handle) if self._child else None

    @property
    def state(self) -> ProcessState:
        return self._child.handle.state if self._child else ProcessState.STOPPED

    def is_running(self) -> bool:
        return self._child is not None

    def has_pending_start(self) -> bool:
        return self._pending is not None

    def events(self) -> list[OutputEvent]:
        """Events of the current (or last) lifetime."""
        return list(self._events)

    def start(self, command: list[str], working_directory) -> OperationResult:
        """Spawn `command` in `working_directory`, replacing any live process.

        Returns at once. On success the data is the requested handle; its pid
        is filled in when `start_finished` fires.
        """
        if not command:
            return OperationResult.fail(ErrorKind.SPAWN_FAILED, "Empty command")
        cwd = Path(working_directory)
        if not cwd.is_dir():
            return OperationResult.fail(ErrorKind.NOT_FOUND, f"No such directory: {cwd}")
        if shutil.which(command[0]) is None:
            return OperationResult.fail(ErrorKind.TOOL_MISSING, f"{command[0]} not found on PATH")

        request = ProcessHandle(
            pid=None,
            command=list(command),
            working_directory=cwd,
            state=ProcessState.STARTING,
            start_time=time.time(),
        )
        if self._child is None:
            child = self._spawn(request)
            if child.failure is not None:
                return child.failure
            return OperationResult.ok(replace(child.handle))

        if self._pending is not None:
            self._drop_pending(ErrorKind.SPAWN_FAILED, "superseded by a newer start")
        self._pending = request
        if self._escalation in (None, _STOP):
            logger.info(f"Replacing running process {self._child.handle.pid}")
            self._terminate(self._child, _REPLACE)
        return OperationResult.ok(replace(request))

    def stop(self) -> OperationResult:
        """Send SIGTERM and return. Never force-kills.

        If the process is still alive after `stop_grace_ms`, a
        TERMINATION_IGNORED warning is emitted and it is left running.
        """
        child = self._child
        if child is None:
            return OperationResult.fail(ErrorKind.NO_PROCESS, "No process running")

        if self._pending is not None:
            self._drop_pending(ErrorKind.SPAWN_FAILED, "cancelled by stop")
        if self._escalation == _REPLACE:
            self._escalation = _STOP
        elif self._escalation is None:
            logger.info(f"Stopping process {child.handle.pid}")
            self._terminate(child, _STOP)
        return OperationResult.ok(child.handle.pid)

    def shutdown(self):
        """Application exit: SIGTERM, then SIGKILL.

        Blocks for up to both grace periods; call it once the event loop has
        stopped dispatching.
        """
        self._grace_timer.stop()
        self._escalation = None
        if self._pending is not None:
            self._drop_pending(ErrorKind.SPAWN_FAILED, "cancelled by shutdown")
        child = self._child
        if child is None:
            return
        self._set_state(child, ProcessState.EXITING)
        child.process.terminate()
        if not self._wait_finished(child, self.stop_grace_ms):
            child.process.kill()
            self._wait_finished(child, self.kill_grace_ms)

    # Internals

    def _spawn(self, request: ProcessHandle) -> _Child:
        process = QProcess(self)
        process.setProgram(request.command[0])
        process.setArguments(request.command[1:])
        process.setWorkingDirectory(str(request.working_directory))
        process.setProcessChannelMode(QProcess.ProcessChannelMode.SeparateChannels)

        request.start_time = time.time()
        child = _Child(process, request)
        self._child = child
        self._events = []
        self.state_changed.emit(ProcessState.STARTING)

        process.started.connect(partial(self._on_started, child))
        process.readyReadStandardOutput.connect(partial(self._on_ready_read, child, OutputKind.STDOUT))
        process.readyReadStandardError.connect(partial(self._on_ready_read, child, OutputKind.STDERR))
        process.finished.connect(partial(self._on_finished, child))
        process.errorOccurred.connect(partial(self._on_error, child))

        logger.info(f"Starting {' '.join(request.command)} in {request.working_directory}")
        child.spawning = True
        process.start()
        child.spawning = False
        return child

    def _spawn_pending(self):
        request, self._pending = self._pending, None
        if request is None:
            return
        if self._child is None:
            child = self._spawn(request)
            if child.failure is not None:
                self.start_finished.emit(child.failure.annotated("start"))
        else:
            # a CLOSE subscriber started something itself
            self._pending = request
            self._drop_pending(ErrorKind.SPAWN_FAILED, "superseded by a newer start")

    def _drop_pending(self, kind: ErrorKind, reason: str):
        request, self._pending = self._pending, None
        logger.info(f"Start of {' '.join(request.command)} {reason}")
        self.start_finished.emit(OperationResult.fail(
            kind, f"Start of {request.command[0]} {reason}").annotated("start"))

    def _terminate(self, child: _Child, escalation: str):
        self._set_state(child, ProcessState.EXITING)
        self._escalation = escalation
        child.process.terminate()
        self._grace_timer.start(self.stop_grace_ms)

    def _warn(self, operation: str, detail: str):
        warning = OperationResult.fail(ErrorKind.TERMINATION_IGNORED, detail).annotated(operation)
        logger.warning(detail)
        self.lifecycle_warning.emit(warning)

    def _on_grace_expired(self):
        child = self._child
        escalation, self._escalation = self._escalation, None
        if child is None or escalation is None:
            return
        pid = child.handle.pid

        if escalation == _STOP:
            self._warn("stop", f"Process {pid} did not exit within {self.stop_grace_ms} ms and may still be running")
            return

        if escalation == _REPLACE:
            self._warn("start", f"Process {pid} ignored the termination signal for {self.stop_grace_ms} ms")
            if self.kill_on_replace:
                self._escalation = _KILL
                child.process.kill()
                self._grace_timer.start(self.kill_grace_ms)
                return

        if self._pending is not None:
            self._drop_pending(ErrorKind.TERMINATION_IGNORED, f"refused: process {pid} is still running")

    def _wait_finished(self, child: _Child, timeout_ms: int) -> bool:
        if child.process.state() == QProcess.ProcessState.NotRunning:
            if self._child is child:
                self._on_finished(child, child.process.exitCode(), child.process.exitStatus())
            return True
        child.process.waitForFinished(timeout_ms)
        # finished() is delivered synchronously from waitForFinished
        return self._child is not child

    def _set_state(self, child: _Child, state: ProcessState):
        if child.handle.state != state:
            child.handle.state = state
            self.state_changed.emit(state)

    def _emit(self, event: OutputEvent):
        self._events.append(event)
        self.output.emit(event)

    def _release(self, child: _Child):
        self._child = None
        self._grace_timer.stop()
        self._escalation = None
        child.handle.state = ProcessState.STOPPED
        child.process.deleteLater()
        self.state_changed.emit(ProcessState.STOPPED)

    def _on_started(self, child: _Child):
        if child is not self._child:
            return
        child.handle.pid = child.process.processId()
        if child.handle.state == ProcessState.STARTING:
            self._set_state(child, ProcessState.RUNNING)
        logger.debug(f"Process {child.handle.pid} running")
        self.start_finished.emit(OperationResult.ok(replace(child.handle)).annotated("start"))

    def _on_ready_read(self, child: _Child, kind: OutputKind):
        if child is not self._child:
            return
        text = child.read(kind)
        if text:
            if child.handle.state == ProcessState.STARTING:
                self._set_state(child, ProcessState.RUNNING)
            self._emit(OutputEvent(kind=kind, text=text, pid=child.handle.pid))

    def _on_error(self, child: _Child, error):
        logger.debug(f"Process {child.handle.pid} reported {error}: {child.process.errorString()}")
        if error != QProcess.ProcessError.FailedToStart or child is not self._child:
            return
        child.failure = OperationResult.fail(
            ErrorKind.SPAWN_FAILED, f"Failed to start {child.handle.command[0]}: {child.process.errorString()}")
        self._release(child)
        if not child.spawning:
            self.start_finished.emit(child.failure.annotated("start"))
        self._spawn_pending()

    def _on_finished(self, child: _Child, exit_code: int, exit_status):
        if child is not self._child:
            return
        pid = child.handle.pid
        for kind in (OutputKind.STDOUT, OutputKind.STDERR):
            text = child.read(kind, final=True)
            if text:
                self._emit(OutputEvent(kind=kind, text=text, pid=pid))

        crashed = exit_status == QProcess.ExitStatus.CrashExit
        code = None if crashed else exit_code
        duration = time.time() - child.handle.start_time
        logger.info(f"Process {pid} exited ({'signal' if crashed else code}) after {duration:.1f}s")
        record_loop_run(duration, code)

        self._release(child)
        text = "Process terminated by signal" if crashed else f"Process exited with code {code}"
        self._emit(OutputEvent(kind=OutputKind.CLOSE, text=text, pid=pid, exit_code=code))
        self._spawn_pending()
