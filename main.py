#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Loop Control Panel - headless runner.
Opens a workspace, runs its agent loop and streams loop output and file edits to the console.
"""

import argparse
import signal
import sys
import time
from pathlib import Path

from PySide6.QtCore import QCoreApplication, QTimer

from config import APP_NAME, _config_dir, get_last_workspace, load_config, save_config
from error_handler import report_crash
from git_utils import git_version_ok
from logging_config import configure_qt_logging, get_logger, setup_logging
from metrics import finalize_metrics, initialize_metrics, record_startup_time
from models import OutputKind
from session import SessionCoordinator

logger = get_logger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="loop-control-panel", description=__doc__.strip().splitlines()[0])
    parser.add_argument("workspace", nargs="?", help="Project root (defaults to the last opened workspace)")
    parser.add_argument("--script", help="Loop script, relative to the workspace (default from settings)")
    parser.add_argument("--watch", action="append", default=[], metavar="FILE",
                        help="Report external edits of FILE (repeatable)")
    parser.add_argument("--init-git", action="store_true", help="Initialize a git repository if missing")
    parser.add_argument("--config", type=Path, help="Settings file to use instead of the default")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--json-logs", action="store_true")
    parser.add_argument("--no-log-file", action="store_true")
    parser.add_argument("--telemetry", action="store_true", help="Write metrics events to the config directory")
    return parser.parse_args(argv)


def run_session(app: QCoreApplication, coordinator: SessionCoordinator, args: argparse.Namespace,
                startup_start_time: float) -> int:
    """Open the workspace, run the loop to completion and return its exit code."""
    workspace = Path(args.workspace) if args.workspace else get_last_workspace(coordinator.cfg)
    if workspace is None:
        logger.error("No workspace given and none to reopen")
        return 2
    if not coordinator.open_workspace(workspace).success:
        return 2

    exit_code = 0

    def on_output(event):
        nonlocal exit_code
        if event.kind == OutputKind.STDOUT:
            sys.stdout.write(event.text)
            sys.stdout.flush()
        elif event.kind == OutputKind.STDERR:
            sys.stderr.write(event.text)
            sys.stderr.flush()
        else:
            logger.info(event.text)
            exit_code = event.exit_code if event.exit_code is not None else 130
            QTimer.singleShot(0, app.quit)

    def on_file_changed(event):
        state = "reloaded" if event.buffer_updated else "changed on disk"
        logger.info(f"{event.path} {state} ({len(event.content)} chars)")

    def on_loop_started(result):
        nonlocal exit_code
        if not result.success:
            exit_code = 1
            QTimer.singleShot(0, app.quit)

    coordinator.subscribe("terminal-output", on_output)
    coordinator.subscribe("file-changed", on_file_changed)
    coordinator.subscribe("loop-started", on_loop_started)

    if args.init_git:
        coordinator.git_ensure_repo()
    for path in args.watch:
        coordinator.watch_file(path)

    if not coordinator.start_loop(args.script).success:
        return 1

    record_startup_time((time.time() - startup_start_time) * 1000)

    # Let Python signal handlers run while Qt owns the main loop
    previous_handler = signal.signal(signal.SIGINT, lambda *_: coordinator.stop_loop())
    heartbeat = QTimer()
    heartbeat.start(200)
    heartbeat.timeout.connect(lambda: None)

    logger.info("Starting event loop")
    try:
        app.exec()
    finally:
        heartbeat.stop()
        signal.signal(signal.SIGINT, previous_handler)
    return exit_code


def main(argv=None) -> int:
    startup_start_time = time.time()
    args = parse_args(argv)
    setup_logging(level=args.log_level, log_to_file=not args.no_log_file, json_format=args.json_logs)
    configure_qt_logging()

    try:
        cfg = load_config(args.config)
        initialize_metrics(_config_dir(), enable_telemetry=args.telemetry)
        app = QCoreApplication.instance() or QCoreApplication(sys.argv[:1])
        app.setApplicationName(APP_NAME)
        coordinator = SessionCoordinator(cfg)
    except Exception as e:
        report_crash(e)
        return 1

    if not git_version_ok():
        logger.warning("Git 2.28+ is recommended; repository setup and sync may not work as expected.")

    try:
        exit_code = run_session(app, coordinator, args, startup_start_time)
    finally:
        coordinator.shutdown()
        try:
            save_config(cfg, args.config)
        except OSError as e:
            logger.warning(f"Could not save settings: {e}")
        finalize_metrics()
    logger.info(f"Exiting with code {exit_code}")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
