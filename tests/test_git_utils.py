"""Tests for git utility functions and the sync engine."""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from git_utils import (
    GitCommandError,
    GitNotFoundError,
    GitSyncEngine,
    classify_git_error,
    git_version_ok,
    parse_log,
    parse_status,
    run_git,
)
from models import ErrorKind, OperationResult


def _git(cwd: Path, *args: str) -> str:
    return subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True).stdout


class TestRunGit:
    """Tests for run_git function."""

    def test_run_git_success(self, temp_git_repo: Path):
        result = run_git(["status", "--porcelain"], cwd=temp_git_repo)

        assert result.returncode == 0
        assert isinstance(result.stdout, str)

    def test_run_git_failure_raises_with_stderr(self, temp_git_repo: Path):
        with pytest.raises(GitCommandError) as excinfo:
            run_git(["invalid-command"], cwd=temp_git_repo)

        assert excinfo.value.returncode != 0
        assert "invalid-command" in str(excinfo.value)

    def test_run_git_no_check(self, temp_git_repo: Path):
        result = run_git(["invalid-command"], cwd=temp_git_repo, check=False)

        assert result.returncode != 0

    def test_run_git_missing_binary(self):
        with patch("git_utils.subprocess.run", side_effect=FileNotFoundError("git")):
            with pytest.raises(GitNotFoundError):
                run_git(["status"])


class TestGitVersionOk:
    """Tests for git_version_ok function."""

    @patch('git_utils.run_git')
    def test_sufficient(self, mock_run_git):
        mock_run_git.return_value = MagicMock(stdout="git version 2.39.2\n")
        assert git_version_ok(2, 28) is True

    @patch('git_utils.run_git')
    def test_insufficient(self, mock_run_git):
        mock_run_git.return_value = MagicMock(stdout="git version 2.20.0\n")
        assert git_version_ok(2, 28) is False

    @patch('git_utils.run_git')
    def test_parse_error(self, mock_run_git):
        mock_run_git.return_value = MagicMock(stdout="invalid version output\n")
        assert git_version_ok(2, 28) is False

    @patch('git_utils.run_git', side_effect=GitNotFoundError("Git not found on PATH."))
    def test_git_missing(self, mock_run_git):
        assert git_version_ok() is False


class TestParsers:
    """Tests for porcelain and log parsing."""

    def test_parse_status_tracking(self):
        status = parse_status("## main...origin/main [ahead 2, behind 1]\n M app.py\n?? notes.txt\n")

        assert status.branch == "main"
        assert status.upstream == "origin/main"
        assert (status.ahead, status.behind) == (2, 1)
        assert [f.path for f in status.files] == ["app.py", "notes.txt"]
        assert status.files[1].untracked
        assert not status.is_clean

    def test_parse_status_fresh_repo(self):
        status = parse_status("## No commits yet on main\n")

        assert status.branch == "main"
        assert status.upstream is None
        assert status.is_clean

    def test_parse_status_detached(self):
        status = parse_status("## HEAD (no branch)\n")

        assert status.detached
        assert status.branch is None

    def test_parse_status_rename(self):
        status = parse_status("## feature/x\nR  old.txt -> new.txt\n")

        assert status.branch == "feature/x"
        assert status.files[0].path == "new.txt"
        assert status.files[0].index == "R"

    def test_parse_log(self):
        line = "\x1f".join(["abc123", "Ann", "ann@example.com", "2024-01-01T10:00:00+00:00", "Add loop"])
        commits = parse_log(line + "\nnot a commit line\n")

        assert len(commits) == 1
        assert commits[0].sha == "abc123"
        assert commits[0].subject == "Add loop"

    @pytest.mark.parametrize("message,kind", [
        ("fatal: not a git repository (or any of the parent directories): .git", ErrorKind.NOT_A_REPOSITORY),
        ("fatal: couldn't find remote ref main", ErrorKind.REMOTE_BRANCH_MISSING),
        ("On branch main\nnothing to commit, working tree clean", ErrorKind.NOTHING_TO_COMMIT),
        ("error: open(\"x\"): Permission denied", ErrorKind.PERMISSION_DENIED),
        ("fatal: unable to access 'https://example.com/': Could not resolve host", ErrorKind.GIT_ERROR),
    ])
    def test_classify_git_error(self, message, kind):
        assert classify_git_error(message) == kind


class TestRepositorySetup:
    """ensure_repo, staging and committing."""

    def test_ensure_repo_then_commit_leaves_clean_tree(self, temp_dir: Path):
        engine = GitSyncEngine(temp_dir)

        initialized = engine.ensure_repo()
        assert initialized.success
        assert initialized.data == {"initialized": True}

        (temp_dir / "task.txt").write_text("first task\n")
        committed = engine.stage_and_commit("msg")
        assert committed.success, committed.detail
        assert len(committed.data["sha"]) == 40

        status = engine.status()
        assert status.success
        assert status.data.is_clean
        assert status.data.branch == "main"

    def test_ensure_repo_existing(self, temp_git_repo: Path):
        result = GitSyncEngine(temp_git_repo).ensure_repo()

        assert result.success
        assert result.data == {"initialized": False}

    def test_ensure_repo_missing_directory(self, temp_dir: Path):
        result = GitSyncEngine(temp_dir / "missing").ensure_repo()

        assert not result.success
        assert result.error_kind == ErrorKind.NOT_FOUND

    def test_commit_with_nothing_staged(self, temp_git_repo: Path):
        result = GitSyncEngine(temp_git_repo).commit("empty")

        assert not result.success
        assert result.error_kind == ErrorKind.NOTHING_TO_COMMIT

    def test_stage_and_commit_clean_tree(self, temp_git_repo: Path):
        result = GitSyncEngine(temp_git_repo).stage_and_commit("nothing changed")

        assert result.error_kind == ErrorKind.NOTHING_TO_COMMIT

    def test_commit_task_completion_message(self, temp_git_repo: Path):
        engine = GitSyncEngine(temp_git_repo, commit_prefix="[Loop]")
        (temp_git_repo / "feature.py").write_text("print('done')\n")

        assert engine.commit_task_completion("T-3", "Add feature", 2).success

        subject = _git(temp_git_repo, "log", "-1", "--pretty=%s").strip()
        assert subject == "[Loop] Complete task T-3: Add feature (Iteration 2)"

    def test_status_outside_repository(self, temp_dir: Path):
        result = GitSyncEngine(temp_dir).status()

        assert not result.success
        assert result.error_kind == ErrorKind.NOT_A_REPOSITORY

    def test_git_missing_is_reported_distinctly(self, temp_git_repo: Path):
        with patch("git_utils.subprocess.run", side_effect=FileNotFoundError("git")):
            result = GitSyncEngine(temp_git_repo).status()

        assert not result.success
        assert result.error_kind == ErrorKind.TOOL_MISSING


class TestQueries:
    """Read-only queries."""

    def test_log_and_diff(self, temp_git_repo: Path):
        engine = GitSyncEngine(temp_git_repo)
        (temp_git_repo / "README.md").write_text("# Changed\n")

        diff = engine.diff()
        assert diff.success
        assert "+# Changed" in diff.data

        log = engine.log(5)
        assert log.success
        assert [c.subject for c in log.data] == ["Initial commit"]

    def test_log_of_empty_repository(self, temp_dir: Path):
        engine = GitSyncEngine(temp_dir)
        engine.ensure_repo()

        result = engine.log()
        assert result.success
        assert result.data == []

    def test_has_uncommitted_changes(self, temp_git_repo: Path):
        engine = GitSyncEngine(temp_git_repo)
        assert engine.has_uncommitted_changes().data is False

        (temp_git_repo / "new.txt").write_text("x")
        assert engine.has_uncommitted_changes().data is True

    def test_has_uncommitted_changes_propagates_status_failure(self, temp_dir: Path):
        result = GitSyncEngine(temp_dir).has_uncommitted_changes()

        assert not result.success
        assert result.error_kind == ErrorKind.NOT_A_REPOSITORY

    def test_current_branch(self, temp_git_repo: Path):
        assert GitSyncEngine(temp_git_repo).current_branch().data == "main"

    def test_current_branch_fresh_repo_fails(self, temp_dir: Path):
        engine = GitSyncEngine(temp_dir)
        engine.ensure_repo()

        result = engine.current_branch()
        assert result.error_kind == ErrorKind.NO_CURRENT_BRANCH

    def test_current_branch_detached_fails(self, temp_git_repo: Path):
        _git(temp_git_repo, "checkout", "--detach")

        result = GitSyncEngine(temp_git_repo).current_branch()
        assert result.error_kind == ErrorKind.NO_CURRENT_BRANCH

    def test_push_without_branch_fails_explicitly(self, temp_git_repo: Path):
        _git(temp_git_repo, "checkout", "--detach")

        result = GitSyncEngine(temp_git_repo).push()
        assert not result.success
        assert result.error_kind == ErrorKind.NO_CURRENT_BRANCH

    def test_branches(self, temp_git_repo: Path):
        engine = GitSyncEngine(temp_git_repo)

        assert engine.create_branch("feature").success
        assert engine.current_branch().data == "feature"
        assert engine.checkout("main").success
        assert engine.current_branch().data == "main"
        assert not engine.checkout("does-not-exist").success


class TestSync:
    """pull-then-push and commit_and_sync."""

    def test_sync_skips_push_when_pull_fails(self, temp_git_repo: Path):
        engine = GitSyncEngine(temp_git_repo)
        failure = OperationResult.fail(ErrorKind.SYNC_CONFLICT, "fatal: network unreachable")

        with patch.object(engine, "pull", return_value=failure) as pull, \
                patch.object(engine, "push") as push:
            result = engine.sync()

        pull.assert_called_once_with(None)
        push.assert_not_called()
        assert result is failure

    def test_sync_pushes_after_successful_pull(self, temp_git_repo: Path):
        engine = GitSyncEngine(temp_git_repo)

        with patch.object(engine, "pull", return_value=OperationResult.ok("Already up to date.")), \
                patch.object(engine, "push", return_value=OperationResult.ok("")) as push:
            result = engine.sync("main")

        push.assert_called_once_with("main")
        assert result.success

    def test_sync_with_unreachable_remote(self, temp_git_repo: Path, temp_dir: Path):
        engine = GitSyncEngine(temp_git_repo)
        engine.add_remote("origin", str(temp_dir / "no-such-remote.git"))

        with patch.object(engine, "push") as push:
            result = engine.sync()

        push.assert_not_called()
        assert not result.success
        assert result.error_kind == ErrorKind.SYNC_CONFLICT
        assert "no-such-remote" in result.detail

    def test_commit_and_sync_without_remote_stays_local(self, temp_git_repo: Path):
        engine = GitSyncEngine(temp_git_repo)
        (temp_git_repo / "progress.txt").write_text("iteration 1\n")

        with patch.object(engine, "pull") as pull, patch.object(engine, "push") as push:
            result = engine.commit_and_sync("Iteration 1", True)

        assert result.success
        assert result.data["synced"] is False
        pull.assert_not_called()
        push.assert_not_called()

    def test_commit_and_sync_disabled(self, temp_git_repo: Path, bare_remote: Path):
        engine = GitSyncEngine(temp_git_repo)
        engine.add_remote("origin", str(bare_remote))
        (temp_git_repo / "progress.txt").write_text("iteration 1\n")

        with patch.object(engine, "sync") as sync:
            result = engine.commit_and_sync("Iteration 1", False)

        sync.assert_not_called()
        assert result.success

    def test_sync_never_pushes_a_branch_missing_on_the_remote(self, temp_git_repo: Path, bare_remote: Path):
        engine = GitSyncEngine(temp_git_repo)
        engine.add_remote("origin", str(bare_remote))
        real_push = engine.push

        with patch.object(engine, "push", side_effect=real_push) as push:
            result = engine.sync()

        push.assert_not_called()
        assert not result.success
        assert result.error_kind == ErrorKind.REMOTE_BRANCH_MISSING
        assert "main" in result.detail
        assert _git(bare_remote, "branch", "--list").strip() == ""

    def test_commit_and_sync_after_first_publish(self, temp_git_repo: Path, bare_remote: Path):
        engine = GitSyncEngine(temp_git_repo)
        assert engine.add_remote("origin", str(bare_remote)).success
        assert engine.has_remote().data == {"has_remote": True, "remotes": ["origin"]}
        published = engine.push(set_upstream=True)
        assert published.success, published.detail

        (temp_git_repo / "progress.txt").write_text("iteration 1\n")
        first = engine.commit_and_sync("Iteration 1", True)
        assert first.success, first.detail
        assert first.data["synced"] is True

        (temp_git_repo / "progress.txt").write_text("iteration 2\n")
        second = engine.commit_and_sync("Iteration 2", True)
        assert second.success, second.detail

        remote_head = _git(bare_remote, "rev-parse", "main").strip()
        assert remote_head == second.data["sha"]

    def test_commit_and_sync_unpublished_branch_keeps_commit(self, temp_git_repo: Path, bare_remote: Path):
        engine = GitSyncEngine(temp_git_repo)
        engine.add_remote("origin", str(bare_remote))
        (temp_git_repo / "progress.txt").write_text("iteration 1\n")

        result = engine.commit_and_sync("Iteration 1", True)

        assert result.error_kind == ErrorKind.REMOTE_BRANCH_MISSING
        assert not engine.has_uncommitted_changes().data

    def test_commit_and_sync_surfaces_commit_failure(self, temp_git_repo: Path):
        result = GitSyncEngine(temp_git_repo).commit_and_sync("nothing", True)

        assert result.error_kind == ErrorKind.NOTHING_TO_COMMIT
