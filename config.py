"""Configuration management for Loop Control Panel."""

import os
import sys
import json
from pathlib import Path

APP_NAME = "LoopControlPanel"
RECENTS_MAX = 15

DEFAULT_CONFIG = {
    "recent_workspaces": [],  # list[str]
    "last_workspace": None,  # str | None
    "auto_reopen_last": True,  # bool
    "loop_shell": "bash",  # interpreter used to run the loop script
    "loop_script": "ralph-loop.sh",  # relative to the workspace root
    "task_file": "prd.json",  # structured task description, never parsed here
    "progress_file": "progress.txt",  # plain-text progress log, never parsed here
    "stop_grace_ms": 3000,  # wait after SIGTERM before giving up
    "kill_grace_ms": 1000,  # wait after SIGKILL when replacing a process
    "kill_on_replace": True,  # escalate to SIGKILL when start() replaces a live process
    "watch_coalesce_ms": 50,  # one reconciliation tick
    "git_remote": "origin",
    "initial_branch": "main",
    "commit_prefix": "[Loop]",
    "log_limit": 10,
    "auto_sync": True,
}


def _config_dir() -> Path:
    """Get the platform-specific configuration directory."""
    if sys.platform.startswith("win"):
        base = os.environ.get("APPDATA") or str(Path.home() / "AppData" / "Roaming")
        return Path(base) / APP_NAME
    elif sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_NAME
    else:
        base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
        return Path(base) / APP_NAME


def _config_path() -> Path:
    """Get the configuration file path."""
    return _config_dir() / "settings.json"


def default_config() -> dict:
    """Return a fresh copy of the defaults."""
    return json.loads(json.dumps(DEFAULT_CONFIG))


def load_config(path: Path | None = None) -> dict:
    """Load configuration from file, falling back to defaults."""
    p = path or _config_path()
    try:
        with p.open("r", encoding="utf-8") as f:
            cfg = json.load(f)
        if not isinstance(cfg, dict):
            return default_config()
        # Fill any missing keys with defaults
        for k, v in default_config().items():
            cfg.setdefault(k, v)
        return cfg
    except (OSError, ValueError):
        return default_config()


def save_config(cfg: dict, path: Path | None = None):
    """Save configuration to file."""
    target = path or _config_path()
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.parent / f".{target.name}.tmp"
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(cfg, f, indent=2)
    tmp.replace(target)


def push_recent_workspace(cfg: dict, workspace: Path):
    """Add a workspace to the recent workspaces list."""
    s = str(workspace)
    recents = [r for r in cfg.get("recent_workspaces", []) if r != s]
    recents.insert(0, s)
    if len(recents) > RECENTS_MAX:
        recents = recents[:RECENTS_MAX]
    cfg["recent_workspaces"] = recents
    cfg["last_workspace"] = s


def get_last_workspace(cfg: dict) -> Path | None:
    """Get the workspace to reopen on startup, if any."""
    if not cfg.get("auto_reopen_last", True):
        return None
    last = cfg.get("last_workspace")
    return Path(last) if last else None


def get_loop_command(cfg: dict, script_path: Path) -> list[str]:
    """Build the command line that runs a loop script."""
    return [cfg.get("loop_shell", DEFAULT_CONFIG["loop_shell"]), str(script_path)]


def get_artifact_names(cfg: dict) -> dict[str, str]:
    """Conventional file names of the loop script and its two artifacts."""
    return {
        "script": cfg.get("loop_script", DEFAULT_CONFIG["loop_script"]),
        "task_file": cfg.get("task_file", DEFAULT_CONFIG["task_file"]),
        "progress_file": cfg.get("progress_file", DEFAULT_CONFIG["progress_file"]),
    }


def get_int(cfg: dict, key: str) -> int:
    """Read an integer setting, falling back to the default on bad values."""
    try:
        return int(cfg.get(key, DEFAULT_CONFIG[key]))
    except (TypeError, ValueError):
        return int(DEFAULT_CONFIG[key])
