"""Run metrics and opt-in telemetry for Loop Control Panel.

Counters always live in memory. Events are appended to `metrics/events.jsonl`
in the config directory only when telemetry is enabled; the session summary and
operation timings are written when the session is finalized.
"""

import json
import platform
import sys
import threading
import time
import uuid
from contextlib import contextmanager, nullcontext
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class MetricEvent:
    """Represents a single metric event."""
    timestamp: str
    event_type: str
    data: Dict[str, Any]
    session_id: str


@dataclass
class OperationTiming:
    """How long one operation took and whether it succeeded."""
    operation: str
    duration_ms: float
    success: bool
    error_type: Optional[str] = None
    timestamp: str = ""


@dataclass
class SessionMetrics:
    """Counters for one application run."""
    session_id: str
    start_time: str
    end_time: Optional[str] = None
    duration_seconds: Optional[float] = None
    loop_runs: int = 0
    loop_failures: int = 0  # non-zero exit or killed by a signal
    loop_seconds: float = 0.0
    git_operations: int = 0
    git_failures: int = 0
    file_watches: int = 0
    errors_count: int = 0


class MetricsCollector:
    """Collects counters for the current run and, if enabled, appends events to disk."""

    def __init__(self, config_dir: Path, enable_telemetry: bool = False):
        """Initialize metrics collector.

        Args:
            config_dir: Directory under which `metrics/` is created
            enable_telemetry: Whether anything is written to disk
        """
        self.metrics_dir = config_dir / "metrics"
        self.enable_telemetry = enable_telemetry
        self.session_id = str(uuid.uuid4())
        self.session = SessionMetrics(session_id=self.session_id, start_time=datetime.now().isoformat())
        self.timings: List[OperationTiming] = []

        # git requests and file reads report from worker threads
        self._lock = threading.Lock()

        if self.enable_telemetry:
            self.metrics_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Metrics collector initialized (session: {self.session_id[:8]}, "
                    f"telemetry {'on' if enable_telemetry else 'off'})")

    @property
    def events_file(self) -> Path:
        return self.metrics_dir / "events.jsonl"

    def _append_event(self, event_type: str, **data):
        if not self.enable_telemetry:
            return
        event = MetricEvent(datetime.now().isoformat(), event_type, data, self.session_id)
        with self._lock:
            try:
                with open(self.events_file, 'a', encoding='utf-8') as f:
                    f.write(json.dumps(asdict(event), default=str) + '\n')
            except OSError as e:
                logger.warning(f"Failed to record event {event_type}: {e}")

    def record_startup(self, startup_time_ms: float):
        self._append_event(
            'startup',
            startup_time_ms=startup_time_ms,
            python_version=platform.python_version(),
            platform=f"{platform.system()} {platform.release()} {platform.machine()}",
        )

    def record_loop_run(self, duration_seconds: float, exit_code: Optional[int]):
        """Count one finished loop process; `exit_code` is None when it was killed."""
        with self._lock:
            self.session.loop_runs += 1
            self.session.loop_seconds += duration_seconds
            if exit_code != 0:
                self.session.loop_failures += 1
        self._append_event('loop_run', duration_seconds=round(duration_seconds, 3), exit_code=exit_code)

    def record_git_operation(self, operation: str, success: bool, duration_ms: float,
                             error: Optional[str] = None):
        with self._lock:
            self.session.git_operations += 1
            if not success:
                self.session.git_failures += 1
        self.record_timing(f"git_{operation}", duration_ms, success, error)
        self._append_event('git_operation', operation=operation, success=success,
                           duration_ms=round(duration_ms, 2), error=error)

    def record_file_watch(self, path: str):
        with self._lock:
            self.session.file_watches += 1
        self._append_event('file_watch', path=path)

    def record_error(self, error_type: str, error_message: str, context: Dict[str, Any] = None):
        with self._lock:
            self.session.errors_count += 1
        self._append_event('error', error_type=error_type, error_message=error_message, context=context or {})

    def record_timing(self, operation: str, duration_ms: float, success: bool, error_type: Optional[str] = None):
        timing = OperationTiming(operation, duration_ms, success, error_type, datetime.now().isoformat())
        with self._lock:
            self.timings.append(timing)

    @contextmanager
    def time_operation(self, operation_name: str):
        """Context manager for timing operations.

        Usage:
            with metrics.time_operation('read_file'):
                ...
        """
        start_time = time.time()
        error_type = None
        try:
            yield
        except Exception as e:
            error_type = type(e).__name__
            raise
        finally:
            self.record_timing(operation_name, (time.time() - start_time) * 1000, error_type is None, error_type)

    def finalize_session(self):
        """Close the session and, with telemetry on, persist its summary and timings."""
        end = datetime.now()
        self.session.end_time = end.isoformat()
        self.session.duration_seconds = (end - datetime.fromisoformat(self.session.start_time)).total_seconds()

        if self.enable_telemetry:
            self._append_session()
            self._write_json(self.metrics_dir / "timings.json", [asdict(t) for t in self.timings])

        logger.info(f"Session finalized: {self.session.duration_seconds:.1f}s, "
                    f"{self.session.loop_runs} loop runs ({self.session.loop_failures} failed), "
                    f"{self.session.git_operations} git ops, {self.session.errors_count} errors")

    def _append_session(self):
        sessions_file = self.metrics_dir / "sessions.json"
        sessions = []
        try:
            if sessions_file.exists():
                sessions = json.loads(sessions_file.read_text(encoding='utf-8'))
        except (OSError, ValueError) as e:
            logger.warning(f"Discarding unreadable {sessions_file.name}: {e}")
        sessions.append(asdict(self.session))
        self._write_json(sessions_file, sessions)

    def _write_json(self, path: Path, payload):
        try:
            path.write_text(json.dumps(payload, indent=2, default=str), encoding='utf-8')
        except OSError as e:
            logger.warning(f"Failed to write {path.name}: {e}")

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Session counters plus per-operation count, failures, mean and max duration."""
        with self._lock:
            timings = list(self.timings)
        per_operation: Dict[str, Dict[str, Any]] = {}
        for t in timings:
            stats = per_operation.setdefault(t.operation, {'count': 0, 'failures': 0, 'total_ms': 0.0, 'max_ms': 0.0})
            stats['count'] += 1
            stats['failures'] += 0 if t.success else 1
            stats['total_ms'] += t.duration_ms
            stats['max_ms'] = max(stats['max_ms'], t.duration_ms)
        for stats in per_operation.values():
            stats['avg_ms'] = stats.pop('total_ms') / stats['count']

        return {
            'session': asdict(self.session),
            'operations': per_operation,
            'telemetry_enabled': self.enable_telemetry,
            'python_version': sys.version.split()[0],
        }


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def initialize_metrics(config_dir: Path, enable_telemetry: bool = False) -> MetricsCollector:
    """Initialize global metrics collector."""
    global _metrics_collector
    _metrics_collector = MetricsCollector(config_dir, enable_telemetry)
    return _metrics_collector


def get_metrics_collector() -> Optional[MetricsCollector]:
    """Get the global metrics collector instance."""
    return _metrics_collector


def finalize_metrics():
    if _metrics_collector:
        _metrics_collector.finalize_session()


def record_startup_time(startup_time_ms: float):
    if _metrics_collector:
        _metrics_collector.record_startup(startup_time_ms)


def record_loop_run(duration_seconds: float, exit_code: Optional[int]):
    if _metrics_collector:
        _metrics_collector.record_loop_run(duration_seconds, exit_code)


def record_git_operation(operation: str, success: bool, duration_ms: float, error: Optional[str] = None):
    if _metrics_collector:
        _metrics_collector.record_git_operation(operation, success, duration_ms, error)


def record_file_watch(path: str):
    if _metrics_collector:
        _metrics_collector.record_file_watch(path)


def record_error(error_type: str, error_message: str, context: Dict[str, Any] = None):
    if _metrics_collector:
        _metrics_collector.record_error(error_type, error_message, context)


def time_operation(operation_name: str):
    """Time a block with the global collector; a no-op before `initialize_metrics`."""
    if _metrics_collector:
        return _metrics_collector.time_operation(operation_name)
    return nullcontext()
