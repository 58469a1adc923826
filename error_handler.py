"""Centralized error handling and operator feedback."""

import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from logging_config import get_logger
from metrics import record_error
from models import ErrorKind, OperationResult

logger = get_logger(__name__)


class ErrorSeverity(Enum):
    """Error severity levels for user feedback."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """The four failure families plus the ambient ones."""
    NOT_FOUND = "not_found"  # missing file, repo, branch, or permission
    TOOL_MISSING = "tool_missing"
    PROCESS_LIFECYCLE = "process_lifecycle"
    SYNC_CONFLICT = "sync_conflict"
    GIT_OPERATION = "git_operation"
    FILE_SYSTEM = "file_system"
    CONFIGURATION = "configuration"
    STARTUP = "startup"
    UNKNOWN = "unknown"


KIND_CATEGORIES = {
    ErrorKind.NOT_FOUND: ErrorCategory.NOT_FOUND,
    ErrorKind.PERMISSION_DENIED: ErrorCategory.NOT_FOUND,
    ErrorKind.NO_WORKSPACE: ErrorCategory.NOT_FOUND,
    ErrorKind.NOT_A_REPOSITORY: ErrorCategory.NOT_FOUND,
    ErrorKind.NO_CURRENT_BRANCH: ErrorCategory.NOT_FOUND,
    ErrorKind.REMOTE_BRANCH_MISSING: ErrorCategory.NOT_FOUND,
    ErrorKind.TOOL_MISSING: ErrorCategory.TOOL_MISSING,
    ErrorKind.SPAWN_FAILED: ErrorCategory.PROCESS_LIFECYCLE,
    ErrorKind.NO_PROCESS: ErrorCategory.PROCESS_LIFECYCLE,
    ErrorKind.TERMINATION_IGNORED: ErrorCategory.PROCESS_LIFECYCLE,
    ErrorKind.SYNC_CONFLICT: ErrorCategory.SYNC_CONFLICT,
    ErrorKind.NOTHING_TO_COMMIT: ErrorCategory.GIT_OPERATION,
    ErrorKind.GIT_ERROR: ErrorCategory.GIT_OPERATION,
    ErrorKind.IO_ERROR: ErrorCategory.FILE_SYSTEM,
}

KIND_SEVERITIES = {
    ErrorKind.NOTHING_TO_COMMIT: ErrorSeverity.INFO,
    ErrorKind.NO_PROCESS: ErrorSeverity.WARNING,
    ErrorKind.TERMINATION_IGNORED: ErrorSeverity.WARNING,
}


@dataclass
class ErrorInfo:
    """Structured error information."""
    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    user_message: str
    operation: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    technical_details: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[Exception] = None


class ErrorHandler:
    """Turns failures into logged, counted, operator-facing `ErrorInfo`s."""

    def __init__(self):
        self.notification_callback: Optional[Callable[[ErrorInfo], None]] = None

    def set_notification_callback(self, callback: Optional[Callable[[ErrorInfo], None]]):
        """Set callback function for user notifications."""
        self.notification_callback = callback
        logger.debug("Error notification callback registered")

    def handle_result(self, result: OperationResult, context: Optional[Dict[str, Any]] = None) -> ErrorInfo:
        """Report a failed request."""
        kind = result.error_kind
        info = ErrorInfo(
            category=KIND_CATEGORIES.get(kind, ErrorCategory.UNKNOWN),
            severity=KIND_SEVERITIES.get(kind, ErrorSeverity.ERROR),
            message=result.detail or "",
            user_message=self._generate_user_message(result),
            operation=result.operation,
            error_kind=kind,
            context=context or {},
        )
        return self._dispatch(info)

    def handle_error(
        self,
        exception: Exception,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        user_message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> ErrorInfo:
        """Report an unexpected exception."""
        info = ErrorInfo(
            category=category,
            severity=severity,
            message=str(exception),
            user_message=user_message or f"An unexpected error occurred: {exception}",
            technical_details="".join(traceback.format_exception(type(exception), exception,
                                                                 exception.__traceback__)),
            context=context or {},
            exception=exception,
        )
        return self._dispatch(info)

    def _dispatch(self, info: ErrorInfo) -> ErrorInfo:
        self._log_error(info)
        try:
            record_error(
                error_type=f"{info.category.value}_{info.error_kind.value if info.error_kind else 'exception'}",
                error_message=info.message,
                context={"severity": info.severity.value, "operation": info.operation, **info.context},
            )
        except OSError as e:
            logger.debug(f"Failed to record error metrics: {e}")

        if self.notification_callback:
            try:
                self.notification_callback(info)
            except Exception as e:
                logger.error(f"Error in notification callback: {e}", exc_info=True)
        return info

    def _log_error(self, info: ErrorInfo):
        """Log error information appropriately based on severity."""
        prefix = f"[{info.category.value}]"
        if info.operation:
            prefix += f" {info.operation}:"
        log_message = f"{prefix} {info.message}"
        if info.context:
            log_message += f" | Context: {info.context}"

        if info.severity == ErrorSeverity.CRITICAL:
            logger.critical(log_message, exc_info=info.exception)
        elif info.severity == ErrorSeverity.ERROR:
            logger.error(log_message, exc_info=info.exception)
        elif info.severity == ErrorSeverity.WARNING:
            logger.warning(log_message)
        else:
            logger.info(log_message)

    def _generate_user_message(self, result: OperationResult) -> str:
        """Generate an operator-facing message, with a remediation path where one exists."""
        kind = result.error_kind
        detail = result.detail or ""
        operation = result.operation or "operation"

        if kind == ErrorKind.TOOL_MISSING:
            tool = detail.split()[0] if detail else "A required tool"
            return (f"{tool} is not installed or not on PATH. Install it, make sure it is on PATH, "
                    f"then retry '{operation}'.")
        if kind == ErrorKind.NO_WORKSPACE:
            return "Open a workspace first."
        if kind == ErrorKind.NOT_A_REPOSITORY:
            return "The workspace is not a Git repository. Initialize one before using Git operations."
        if kind == ErrorKind.NO_CURRENT_BRANCH:
            return "There is no current branch (detached HEAD or no commits yet). Check out a branch first."
        if kind == ErrorKind.PERMISSION_DENIED:
            return f"Permission denied during '{operation}'. Check file permissions."
        if kind == ErrorKind.NOT_FOUND:
            return f"Not found: {detail}"
        if kind == ErrorKind.NOTHING_TO_COMMIT:
            return "Nothing to commit, the working tree is clean."
        if kind == ErrorKind.SYNC_CONFLICT:
            return f"Pull failed, so nothing was pushed. Resolve it manually:\n{detail}"
        if kind == ErrorKind.NO_PROCESS:
            return "No loop is running."
        if kind == ErrorKind.TERMINATION_IGNORED:
            return f"The loop did not stop in time and may still be running. {detail}"
        if kind == ErrorKind.SPAWN_FAILED:
            return f"Could not start the loop: {detail}"
        return f"'{operation}' failed: {detail}"


# Global error handler instance
_error_handler = ErrorHandler()


def get_error_handler() -> ErrorHandler:
    """Get the global error handler instance."""
    return _error_handler


def handle_error(
    exception: Exception,
    category: ErrorCategory = ErrorCategory.UNKNOWN,
    severity: ErrorSeverity = ErrorSeverity.ERROR,
    user_message: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None
) -> ErrorInfo:
    """Convenience function to handle errors using the global handler."""
    return _error_handler.handle_error(exception, category, severity, user_message, context)


def report_crash(exception: Exception) -> ErrorInfo:
    """Startup failures of the whole application."""
    info = handle_error(exception, ErrorCategory.STARTUP, ErrorSeverity.CRITICAL,
                        user_message=f"Application startup error: {exception}",
                        context={"python_version": sys.version.split()[0], "platform": sys.platform})
    return info
