"""Tests for centralized error handling."""

from unittest.mock import Mock, patch

import pytest

from error_handler import ErrorCategory, ErrorHandler, ErrorSeverity, get_error_handler, report_crash
from models import ErrorKind, OperationResult


@pytest.fixture
def handler():
    return ErrorHandler()


class TestHandleResult:
    """Failed requests become ErrorInfo."""

    @pytest.mark.parametrize("kind,category", [
        (ErrorKind.NO_CURRENT_BRANCH, ErrorCategory.NOT_FOUND),
        (ErrorKind.PERMISSION_DENIED, ErrorCategory.NOT_FOUND),
        (ErrorKind.TOOL_MISSING, ErrorCategory.TOOL_MISSING),
        (ErrorKind.TERMINATION_IGNORED, ErrorCategory.PROCESS_LIFECYCLE),
        (ErrorKind.SYNC_CONFLICT, ErrorCategory.SYNC_CONFLICT),
        (ErrorKind.IO_ERROR, ErrorCategory.FILE_SYSTEM),
    ])
    def test_category(self, handler, kind, category):
        info = handler.handle_result(OperationResult.fail(kind, "detail").annotated("git_sync"))

        assert info.category == category
        assert info.error_kind == kind
        assert info.operation == "git_sync"

    def test_severity(self, handler):
        assert handler.handle_result(
            OperationResult.fail(ErrorKind.NOTHING_TO_COMMIT, "clean")).severity == ErrorSeverity.INFO
        assert handler.handle_result(
            OperationResult.fail(ErrorKind.NO_PROCESS, "idle")).severity == ErrorSeverity.WARNING
        assert handler.handle_result(
            OperationResult.fail(ErrorKind.SPAWN_FAILED, "boom")).severity == ErrorSeverity.ERROR

    def test_tool_missing_names_remediation(self, handler):
        result = OperationResult.fail(ErrorKind.TOOL_MISSING, "bash not found on PATH").annotated("start_loop")

        info = handler.handle_result(result)

        assert info.user_message.startswith("bash is not installed or not on PATH.")
        assert "'start_loop'" in info.user_message

    def test_sync_conflict_carries_git_output(self, handler):
        result = OperationResult.fail(ErrorKind.SYNC_CONFLICT, "CONFLICT (content): Merge conflict in a.txt")

        info = handler.handle_result(result)

        assert "nothing was pushed" in info.user_message
        assert "Merge conflict in a.txt" in info.user_message

    def test_notification_callback(self, handler):
        callback = Mock()
        handler.set_notification_callback(callback)

        info = handler.handle_result(OperationResult.fail(ErrorKind.NO_WORKSPACE, "No workspace open"))

        callback.assert_called_once_with(info)

    def test_failing_callback_does_not_propagate(self, handler):
        handler.set_notification_callback(Mock(side_effect=RuntimeError("ui gone")))

        info = handler.handle_result(OperationResult.fail(ErrorKind.GIT_ERROR, "fatal"))

        assert info.message == "fatal"

    @patch("error_handler.record_error")
    def test_records_error_metric(self, mock_record_error, handler):
        handler.handle_result(OperationResult.fail(ErrorKind.GIT_ERROR, "fatal").annotated("git_status"))

        mock_record_error.assert_called_once()
        kwargs = mock_record_error.call_args.kwargs
        assert kwargs["error_type"] == "git_operation_git_error"
        assert kwargs["context"]["operation"] == "git_status"


class TestHandleError:
    def test_unexpected_exception(self, handler):
        try:
            raise ValueError("bad value")
        except ValueError as e:
            info = handler.handle_error(e, ErrorCategory.CONFIGURATION)

        assert info.category == ErrorCategory.CONFIGURATION
        assert info.exception is not None
        assert "ValueError: bad value" in info.technical_details
        assert info.user_message == "An unexpected error occurred: bad value"


class TestGlobalHandler:
    def test_report_crash_goes_through_global_handler(self):
        callback = Mock()
        get_error_handler().set_notification_callback(callback)
        try:
            info = report_crash(RuntimeError("no event loop"))
        finally:
            get_error_handler().set_notification_callback(None)

        assert info.category == ErrorCategory.STARTUP
        assert info.severity == ErrorSeverity.CRITICAL
        assert info.user_message == "Application startup error: no event loop"
        callback.assert_called_once_with(info)
