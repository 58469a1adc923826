"""Git operations for Loop Control Panel.

`GitSyncEngine` is a stateless facade over the git command line. Each call
runs its own git processes and returns an `OperationResult`; nothing raises
across that boundary. The engine holds no transaction between calls: git's
index lock serializes concurrent writers (the loop script may be committing at
the same time), but a `stage_all()` followed by a separate `commit()` can still
pick up changes another writer made in between. Use `stage_and_commit()` when
that matters.
"""

import logging
import re
import subprocess
import time
from pathlib import Path
from typing import List

from metrics import record_git_operation
from models import CommitInfo, ErrorKind, FileStatus, OperationResult, RepoStatus

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%H%x1f%an%x1f%ae%x1f%aI%x1f%s"
_TRACK_RE = re.compile(r"(ahead|behind) (\d+)")


class GitCommandError(RuntimeError):
    """A git invocation exited non-zero."""

    def __init__(self, args: List[str], returncode: int, stdout: str, stderr: str):
        self.git_args = list(args)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(stderr.strip() or stdout.strip() or f"git {' '.join(args)} failed ({returncode})")


class GitNotFoundError(RuntimeError):
    """git is not installed or not on PATH."""


def run_git(args: List[str], cwd: Path | None = None, check: bool = True) -> subprocess.CompletedProcess[str]:
    """Run a git command with safe argument passing."""
    cmd = ["git"] + list(args)
    try:
        cp = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except FileNotFoundError:
        raise GitNotFoundError("Git not found on PATH.")
    if check and cp.returncode != 0:
        raise GitCommandError(args, cp.returncode, cp.stdout, cp.stderr)
    return cp


def git_version_ok(min_major: int = 2, min_minor: int = 28) -> bool:
    """Check if Git version meets minimum requirements (`init -b` needs 2.28)."""
    try:
        v = run_git(["--version"], check=False).stdout.strip()
        parts = v.split()
        if len(parts) >= 3:
            nums = parts[2].split(".")
            major = int(nums[0])
            minor = int(nums[1])
            return (major > min_major) or (major == min_major and minor >= min_minor)
    except GitNotFoundError:
        return False
    except (ValueError, IndexError) as e:
        logger.warning(f"Failed to parse git version: {e}")
    return False


def parse_status(text: str) -> RepoStatus:
    """Parse `git status --porcelain=v1 --branch`."""
    status = RepoStatus(branch=None)
    for line in text.splitlines():
        if line.startswith("## "):
            header = line[3:]
            if header.startswith("HEAD (no branch)"):
                status.detached = True
                continue
            for prefix in ("No commits yet on ", "Initial commit on "):
                if header.startswith(prefix):
                    header = header[len(prefix):]
            header, _, track = header.partition(" [")
            branch, _, upstream = header.partition("...")
            status.branch = branch or None
            status.upstream = upstream or None
            for kind, count in _TRACK_RE.findall(track):
                setattr(status, kind, int(count))
            continue
        if len(line) < 4:
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        status.files.append(FileStatus(path=path.strip('"'), index=line[0], worktree=line[1]))
    return status


def parse_log(text: str) -> list[CommitInfo]:
    """Parse `git log` output produced with `_LOG_FORMAT`."""
    commits = []
    for line in text.splitlines():
        fields = line.split("\x1f")
        if len(fields) != 5:
            continue
        commits.append(CommitInfo(*fields))
    return commits


def classify_git_error(message: str) -> ErrorKind:
    """Map git's stderr onto the error taxonomy."""
    msg = message.lower()
    if "not a git repository" in msg:
        return ErrorKind.NOT_A_REPOSITORY
    if "permission denied" in msg:
        return ErrorKind.PERMISSION_DENIED
    if "couldn't find remote ref" in msg:
        return ErrorKind.REMOTE_BRANCH_MISSING
    if "nothing to commit" in msg or "nothing added to commit" in msg or "no changes added to commit" in msg:
        return ErrorKind.NOTHING_TO_COMMIT
    return ErrorKind.GIT_ERROR


class GitSyncEngine:
    """Stage, commit, pull and push for one working directory."""

    def __init__(self, root: Path, remote: str = "origin", initial_branch: str = "main",
                 commit_prefix: str = "[Loop]"):
        self.root = Path(root)
        self.remote = remote
        self.initial_branch = initial_branch
        self.commit_prefix = commit_prefix

    def _git(self, args: List[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        return run_git(["-C", str(self.root)] + list(args), check=check)

    def _run(self, operation: str, fn) -> OperationResult:
        """Run one engine operation, converting git failures into results."""
        start = time.time()
        try:
            result = fn()
        except GitNotFoundError as e:
            result = OperationResult.fail(ErrorKind.TOOL_MISSING, str(e))
        except GitCommandError as e:
            result = OperationResult.fail(classify_git_error(str(e) + "\n" + e.stdout), str(e))
        except OSError as e:
            # cwd vanished or is unreadable
            kind = ErrorKind.PERMISSION_DENIED if isinstance(e, PermissionError) else ErrorKind.NOT_FOUND
            result = OperationResult.fail(kind, str(e))
        duration_ms = (time.time() - start) * 1000
        if not result.success:
            logger.warning(f"git {operation} failed in {self.root}: {result.detail}")
        record_git_operation(operation, result.success, duration_ms,
                             result.error_kind.value if result.error_kind else None)
        return result

    # Repository setup

    def ensure_repo(self) -> OperationResult:
        """Initialize a repository at the root if it is not inside one."""
        def op():
            if not self.root.is_dir():
                return OperationResult.fail(ErrorKind.NOT_FOUND, f"No such directory: {self.root}")
            cp = self._git(["rev-parse", "--is-inside-work-tree"], check=False)
            if cp.returncode == 0 and cp.stdout.strip() == "true":
                return OperationResult.ok({"initialized": False})
            self._git(["init", "-b", self.initial_branch])
            logger.info(f"Git repository initialized in {self.root}")
            return OperationResult.ok({"initialized": True})
        return self._run("ensure_repo", op)

    # Read-only queries

    def status(self) -> OperationResult:
        """Working tree status as a `RepoStatus`."""
        return self._run("status", lambda: OperationResult.ok(
            parse_status(self._git(["status", "--porcelain=v1", "--branch", "--untracked-files=all"]).stdout)))

    def diff(self) -> OperationResult:
        """Unstaged diff against the index."""
        return self._run("diff", lambda: OperationResult.ok(self._git(["diff"]).stdout))

    def log(self, limit: int = 10) -> OperationResult:
        """Most recent commits, newest first. A repository without commits has an empty log."""
        def op():
            cp = self._git(["log", f"--max-count={int(limit)}", f"--pretty=format:{_LOG_FORMAT}"], check=False)
            if cp.returncode != 0:
                if "does not have any commits" in cp.stderr:
                    return OperationResult.ok([])
                raise GitCommandError(["log"], cp.returncode, cp.stdout, cp.stderr)
            return OperationResult.ok(parse_log(cp.stdout))
        return self._run("log", op)

    def current_branch(self) -> OperationResult:
        """Name of the checked-out branch. Fails on a detached HEAD or a repository without commits."""
        def op():
            cp = self._git(["rev-parse", "--abbrev-ref", "HEAD"], check=False)
            branch = cp.stdout.strip()
            if cp.returncode != 0:
                if "not a git repository" in cp.stderr.lower():
                    raise GitCommandError(["rev-parse"], cp.returncode, cp.stdout, cp.stderr)
                return OperationResult.fail(ErrorKind.NO_CURRENT_BRANCH, "No current branch")
            if not branch or branch == "HEAD":
                return OperationResult.fail(ErrorKind.NO_CURRENT_BRANCH, "No current branch (detached HEAD)")
            return OperationResult.ok(branch)
        return self._run("current_branch", op)

    def has_remote(self) -> OperationResult:
        """Whether any remote is configured."""
        def op():
            remotes = [r for r in self._git(["remote"]).stdout.splitlines() if r.strip()]
            return OperationResult.ok({"has_remote": bool(remotes), "remotes": remotes})
        return self._run("has_remote", op)

    def has_uncommitted_changes(self) -> OperationResult:
        """Derived from `status()`; a failed status propagates."""
        status = self.status()
        if not status.success:
            return status
        return OperationResult.ok(not status.data.is_clean)

    # Write operations

    def stage_all(self) -> OperationResult:
        return self._run("stage_all", lambda: OperationResult.ok(self._git(["add", "-A"]).stdout))

    def commit(self, message: str) -> OperationResult:
        """Commit what is staged. An empty index is NOTHING_TO_COMMIT, not a crash."""
        def op():
            cp = self._git(["commit", "-m", message], check=False)
            if cp.returncode != 0:
                raise GitCommandError(["commit"], cp.returncode, cp.stdout, cp.stderr)
            sha = self._git(["rev-parse", "HEAD"]).stdout.strip()
            return OperationResult.ok({"sha": sha, "summary": cp.stdout.strip()})
        return self._run("commit", op)

    def stage_and_commit(self, message: str) -> OperationResult:
        staged = self.stage_all()
        if not staged.success:
            return staged
        return self.commit(message)

    def commit_task_completion(self, task_id: str, description: str, iteration: int) -> OperationResult:
        message = f"{self.commit_prefix} Complete task {task_id}: {description} (Iteration {iteration})"
        return self.stage_and_commit(message)

    def add_remote(self, name: str, url: str) -> OperationResult:
        return self._run("add_remote", lambda: OperationResult.ok(self._git(["remote", "add", name, url]).stdout))

    def create_branch(self, name: str) -> OperationResult:
        """Create a branch and check it out."""
        return self._run("create_branch", lambda: OperationResult.ok(self._git(["checkout", "-b", name]).stdout))

    def checkout(self, name: str) -> OperationResult:
        return self._run("checkout", lambda: OperationResult.ok(self._git(["checkout", name]).stdout))

    # Remote synchronization

    def _resolve_branch(self, branch: str | None) -> OperationResult:
        if branch:
            return OperationResult.ok(branch)
        return self.current_branch()

    def push(self, branch: str | None = None, set_upstream: bool = False) -> OperationResult:
        resolved = self._resolve_branch(branch)
        if not resolved.success:
            return resolved
        args = ["push"] + (["-u"] if set_upstream else []) + [self.remote, resolved.data]
        return self._run("push", lambda: OperationResult.ok(self._git(args).stderr.strip()))

    def pull(self, branch: str | None = None) -> OperationResult:
        """Merge the remote branch in. Never rebases, never resolves conflicts."""
        resolved = self._resolve_branch(branch)
        if not resolved.success:
            return resolved
        result = self._run("pull", lambda: OperationResult.ok(
            self._git(["pull", "--no-rebase", "--no-edit", self.remote, resolved.data]).stdout.strip()))
        if not result.success and result.error_kind == ErrorKind.GIT_ERROR:
            result.error_kind = ErrorKind.SYNC_CONFLICT
        return result

    def sync(self, branch: str | None = None) -> OperationResult:
        """Pull, then push only if the pull succeeded.

        A failed pull is returned as it came back and nothing is pushed. A
        branch the remote does not have yet fails here too; publish it once
        with `push(set_upstream=True)`.
        """
        pulled = self.pull(branch)
        if not pulled.success:
            return pulled
        return self.push(branch)

    def commit_and_sync(self, message: str, should_sync: bool = True) -> OperationResult:
        """Stage and commit, then sync if asked to and a remote exists.

        Without a remote this is a successful local-only commit.
        """
        committed = self.stage_and_commit(message)
        if not committed.success:
            return committed
        data = dict(committed.data, synced=False)
        if not should_sync:
            return OperationResult.ok(data)

        remote = self.has_remote()
        if not remote.success:
            logger.warning(f"Could not list remotes, keeping commit local: {remote.detail}")
            return OperationResult.ok(data)
        if not remote.data["has_remote"]:
            logger.debug("No remote configured, commit stays local")
            return OperationResult.ok(data)

        synced = self.sync()
        if not synced.success:
            return synced
        data["synced"] = True
        return OperationResult.ok(data)
