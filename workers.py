"""Background tasks that keep blocking I/O off the event-dispatch thread."""

from typing import Any, Callable

from PySide6.QtCore import QObject, QRunnable, Signal

from logging_config import get_logger, log_exception

logger = get_logger(__name__)


class TaskSignals(QObject):
    """Signals of a `BackgroundTask`. Created on the dispatch thread, so delivery is queued back to it."""

    finished = Signal(object)  # return value of the task function
    failed = Signal(object)  # exception raised by the task function


class BackgroundTask(QRunnable):
    """Run `fn(*args)` on a QThreadPool and report through `signals`.

    The submitter keeps a reference until one of the signals has been
    delivered; the pool does not delete the task.
    """

    def __init__(self, fn: Callable[..., Any], *args: Any):
        super().__init__()
        self.setAutoDelete(False)
        self.fn = fn
        self.args = args
        self.signals = TaskSignals()

    def run(self):
        try:
            result = self.fn(*self.args)
        except Exception as e:
            name = getattr(self.fn, '__name__', repr(self.fn))
            log_exception(logger, f"Background task {name} raised: {e}", task=name)
            self.signals.failed.emit(e)
            return
        self.signals.finished.emit(result)
