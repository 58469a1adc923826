"""Data models for Loop Control Panel."""

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any


class ErrorKind(Enum):
    """Why a request failed."""

    # Not-found / permission
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    NO_WORKSPACE = "no_workspace"
    NOT_A_REPOSITORY = "not_a_repository"
    NO_CURRENT_BRANCH = "no_current_branch"
    REMOTE_BRANCH_MISSING = "remote_branch_missing"
    # External tool missing
    TOOL_MISSING = "tool_missing"
    # Process lifecycle
    SPAWN_FAILED = "spawn_failed"
    NO_PROCESS = "no_process"
    TERMINATION_IGNORED = "termination_ignored"
    # Sync conflict
    SYNC_CONFLICT = "sync_conflict"
    # Defined, non-crash failures
    NOTHING_TO_COMMIT = "nothing_to_commit"
    GIT_ERROR = "git_error"
    IO_ERROR = "io_error"


@dataclass
class OperationResult:
    """Outcome of a single request. Nothing raises across the request boundary."""

    success: bool
    error_kind: ErrorKind | None = None
    detail: str | None = None
    data: Any = None
    operation: str | None = None  # filled in by the coordinator

    @classmethod
    def ok(cls, data: Any = None) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, kind: ErrorKind, detail: str) -> "OperationResult":
        return cls(success=False, error_kind=kind, detail=detail)

    def annotated(self, operation: str) -> "OperationResult":
        """Return a copy tagged with the name of the request that produced it."""
        return OperationResult(self.success, self.error_kind, self.detail, self.data, operation)


class OutputKind(Enum):
    """Kind of a terminal output event."""

    STDOUT = "stdout"
    STDERR = "stderr"
    CLOSE = "close"


@dataclass
class OutputEvent:
    """One chunk of supervised process output, or its terminal close event."""

    kind: OutputKind
    text: str
    pid: int | None
    timestamp: float = field(default_factory=time.time)
    exit_code: int | None = None  # only for CLOSE; None when killed by a signal


class ProcessState(Enum):
    """Lifecycle of the supervised process slot."""

    STARTING = "starting"
    RUNNING = "running"
    EXITING = "exiting"
    STOPPED = "stopped"


@dataclass
class ProcessHandle:
    """Snapshot of the supervised process."""

    pid: int | None
    command: list[str]
    working_directory: Path
    state: ProcessState
    start_time: float


@dataclass
class WatchEntry:
    """One armed watch. At most one entry exists per path."""

    path: str
    active: bool = True
    generation: int = 0
    reading: bool = False  # a reconciliation read is in flight
    stale: bool = False  # a change arrived while reading


@dataclass
class FileChangedEvent:
    """External change detected on a watched file."""

    path: str
    content: str
    timestamp: float = field(default_factory=time.time)
    buffer_updated: bool = False


@dataclass
class EditBuffer:
    """In-memory editing buffer for one open file."""

    path: str
    content: str
    dirty: bool = False

    def edit(self, content: str) -> None:
        self.content = content
        self.dirty = True

    def mark_saved(self) -> None:
        self.dirty = False

    def apply_external_change(self, content: str) -> bool:
        """Overwrite with disk content unless there are unsaved edits."""
        if self.dirty:
            return False
        self.content = content
        return True


@dataclass
class FileStatus:
    """One entry of `git status --porcelain`."""

    path: str
    index: str  # X column
    worktree: str  # Y column

    @property
    def untracked(self) -> bool:
        return self.index == "?" and self.worktree == "?"


@dataclass
class RepoStatus:
    """Parsed working tree status."""

    branch: str | None
    upstream: str | None = None
    ahead: int = 0
    behind: int = 0
    detached: bool = False
    files: list[FileStatus] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not self.files


@dataclass
class CommitInfo:
    """One commit from `git log`."""

    sha: str
    author_name: str
    author_email: str
    date: str
    subject: str


@dataclass
class FileStats:
    """Size and timestamps of a file."""

    size: int
    created: datetime
    modified: datetime


@dataclass
class RequestOutcome:
    """Result of a request that ran on the worker pool."""

    request_id: int
    operation: str
    result: OperationResult
