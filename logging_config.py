"""Logging configuration for Loop Control Panel."""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from pathlib import Path

from config import _config_dir

TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s:%(lineno)d - %(message)s'
MAIN_LOG = "loop_control_panel.log"
ERROR_LOG = "errors.log"


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'source': f"{record.module}:{record.funcName}:{record.lineno}",
            'pid': record.process or os.getpid(),
            'thread': record.threadName,
        }
        extra = getattr(record, 'extra_data', None)
        if extra:
            entry['extra'] = extra
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def _rotating_handler(path: Path, level: int, formatter: logging.Formatter,
                      max_file_size: int, backup_count: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_file_size, backupCount=backup_count, encoding='utf-8')
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    level: str = "INFO",
    log_to_file: bool = True,
    log_to_console: bool = True,
    json_format: bool = False,
    log_dir: Path | None = None,
    max_file_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_to_file: Write the main log and a separate error log, both rotating
        log_to_console: Log to stderr; stdout is left to the loop's own output
        json_format: Use `JSONFormatter` instead of the text format
        log_dir: Where log files go (defaults to `logs/` in the config directory)
        max_file_size: Maximum log file size in bytes
        backup_count: Number of rotated files to keep

    Returns:
        Configured root logger
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    formatter = JSONFormatter() if json_format else logging.Formatter(TEXT_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(root_logger.level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if log_to_file:
        directory = log_dir or _config_dir() / "logs"
        directory.mkdir(parents=True, exist_ok=True)
        root_logger.addHandler(_rotating_handler(
            directory / MAIN_LOG, logging.DEBUG, formatter, max_file_size, backup_count))
        root_logger.addHandler(_rotating_handler(
            directory / ERROR_LOG, logging.ERROR, formatter, max_file_size, backup_count))

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a specific module."""
    return logging.getLogger(name)


def log_exception(logger: logging.Logger, message: str, exc_info: bool = True, **kwargs):
    """Log the exception being handled, with keyword context attached as `extra_data`."""
    logger.error(message, exc_info=exc_info, extra={'extra_data': kwargs})


def log_performance(logger: logging.Logger, operation: str, duration: float, **kwargs):
    """Log how long an operation took, in seconds, at debug level."""
    extra_data = {'operation': operation, 'duration_ms': round(duration * 1000, 2), **kwargs}
    logger.debug(f"Performance: {operation} took {duration:.3f}s", extra={'extra_data': extra_data})


def configure_qt_logging():
    """Route QtCore's own diagnostics (QProcess, QFileSystemWatcher) into the 'qt' logger."""
    from PySide6.QtCore import QtMsgType, qInstallMessageHandler

    levels = {
        QtMsgType.QtDebugMsg: logging.DEBUG,
        QtMsgType.QtInfoMsg: logging.INFO,
        QtMsgType.QtWarningMsg: logging.WARNING,
        QtMsgType.QtCriticalMsg: logging.ERROR,
        QtMsgType.QtFatalMsg: logging.CRITICAL,
    }
    qt_logger = get_logger('qt')

    def qt_message_handler(msg_type: QtMsgType, context, message: str):
        qt_logger.log(levels.get(msg_type, logging.WARNING), f"Qt: {message}")

    qInstallMessageHandler(qt_message_handler)
