"""Pytest configuration and fixtures for Loop Control Panel tests."""

import logging
import shutil
import subprocess
import tempfile
import time
from collections.abc import Generator
from pathlib import Path

import pytest
from PySide6.QtCore import QCoreApplication, QEventLoop


@pytest.fixture(autouse=True)
def git_identity(monkeypatch, tmp_path_factory):
    """Isolate git from the user's configuration and give it an identity."""
    global_config = tmp_path_factory.mktemp("gitconfig") / "config"
    global_config.write_text("")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(global_config))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test User")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test User")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def temp_git_repo(temp_dir: Path) -> Path:
    """Create a temporary git repository with one commit on `main`."""
    subprocess.run(["git", "init", "-b", "main"], cwd=temp_dir, check=True, capture_output=True)

    readme_file = temp_dir / "README.md"
    readme_file.write_text("# Test Repository\n")
    subprocess.run(["git", "add", "README.md"], cwd=temp_dir, check=True)
    subprocess.run(["git", "commit", "-m", "Initial commit"], cwd=temp_dir, check=True, capture_output=True)

    return temp_dir


@pytest.fixture
def bare_remote(tmp_path_factory) -> Path:
    """An empty bare repository, outside any working tree, usable as `origin`."""
    remote = tmp_path_factory.mktemp("remotes") / "remote.git"
    subprocess.run(["git", "init", "--bare", "-b", "main", str(remote)], check=True, capture_output=True)
    return remote


@pytest.fixture
def sample_config() -> dict:
    """Provide a sample configuration for testing."""
    return {
        "recent_workspaces": [],
        "last_workspace": None,
        "loop_shell": "bash",
        "loop_script": "loop.sh",
        "stop_grace_ms": 500,
        "kill_grace_ms": 1000,
        "watch_coalesce_ms": 30,
    }


@pytest.fixture
def config_file(temp_dir: Path, sample_config: dict) -> Path:
    """Create a temporary config file for testing."""
    import json

    config_path = temp_dir / "config.json"
    config_path.write_text(json.dumps(sample_config, indent=2))
    return config_path


@pytest.fixture(scope="session")
def qapp():
    """A QCoreApplication; the core never needs widgets."""
    app = QCoreApplication.instance() or QCoreApplication([])
    yield app


def _process_events():
    QCoreApplication.processEvents(QEventLoop.ProcessEventsFlag.AllEvents, 20)
    QCoreApplication.sendPostedEvents()


@pytest.fixture
def wait_until(qapp):
    """Spin the Qt event loop until `predicate()` is true or `timeout` seconds pass."""
    def _wait(predicate, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            _process_events()
            if predicate():
                return True
            time.sleep(0.01)
        return bool(predicate())
    return _wait


@pytest.fixture
def pump(qapp):
    """Spin the Qt event loop for `duration` seconds."""
    def _pump(duration: float = 0.2):
        deadline = time.monotonic() + duration
        while time.monotonic() < deadline:
            _process_events()
            time.sleep(0.01)
    return _pump


@pytest.fixture
def make_script():
    """Write a bash script into a directory."""
    def _make(directory: Path, name: str, body: str) -> Path:
        script = directory / name
        script.write_text("#!/usr/bin/env bash\n" + body)
        script.chmod(0o755)
        return script
    return _make


@pytest.fixture
def restore_root_logger():
    """Drop whatever handlers `setup_logging` installs during a test."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
