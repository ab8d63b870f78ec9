"""Logging setup and per-operation metrics for the note store.

Every store mutation runs inside :func:`timed_operation`, which times it,
logs start and end under a short correlation id, and feeds the shared
:data:`metrics` collector. Besides durations and failures the collector
keeps running tallies of what mutations did to the store: notes and
connections written or deleted, and how many updates forked or merged.
"""
import functools
import json
import logging
import os
import time
import uuid
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Mapping, Optional, TypeVar, Union

from tangle_notes.config import config

logger = logging.getLogger(__name__)

ROOT_LOGGER_NAME = "tangle_notes"
LOG_FILE_NAME = "tangle.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

DEFAULT_LOG_DIR = Path.home() / ".tangle" / "logs"
DEFAULT_METRICS_FILE = Path(
    os.getenv("TANGLE_METRICS_FILE", str(Path.home() / ".tangle" / "metrics.json"))
)

# Result keys of a timed operation that are summed into the store tallies
TALLY_KEYS = (
    "notes_written",
    "notes_deleted",
    "connections_written",
    "connections_deleted",
    "forks",
    "merges",
)

F = TypeVar("F", bound=Callable[..., Any])


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console: bool = True,
) -> Path:
    """Send the ``tangle_notes`` loggers to a rotating file, and optionally stderr.

    Calling this again for the same directory does not add handlers twice.
    Returns the log directory.
    """
    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = Path(os.path.abspath(log_path / LOG_FILE_NAME))

    package_logger = logging.getLogger(ROOT_LOGGER_NAME)
    package_logger.setLevel(level)

    new_handlers = []
    if not any(
        isinstance(h, RotatingFileHandler) and Path(h.baseFilename) == log_file
        for h in package_logger.handlers
    ):
        new_handlers.append(RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        ))
    if console and not any(type(h) is logging.StreamHandler for h in package_logger.handlers):
        new_handlers.append(logging.StreamHandler())

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    for handler in new_handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)

    package_logger.info(f"Logging to {log_file}")
    return log_path


def _sanitize_error_message(message: Optional[str], max_length: int = 200) -> Optional[str]:
    """Make an error message safe to persist in the metrics file.

    Replaces the home directory with ``~``, flattens newlines and truncates
    long messages with an ellipsis.
    """
    if message is None:
        return None
    home = str(Path.home())
    sanitized = message.replace(home, "~") if home and home != "/" else message
    sanitized = sanitized.replace("\r\n", " ").replace("\n", " ").replace("\r", " ")
    if len(sanitized) > max_length:
        sanitized = sanitized[: max_length - 3] + "..."
    return sanitized


@dataclass
class OperationStats:
    """Running figures for one operation name."""
    count: int = 0
    errors: int = 0
    total_ms: float = 0.0
    min_ms: Optional[float] = None
    max_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    tallies: Counter = field(default_factory=Counter)

    def to_dict(self) -> Dict[str, Any]:
        successes = self.count - self.errors
        return {
            "count": self.count,
            "success_count": successes,
            "error_count": self.errors,
            "success_rate": successes / self.count if self.count else 0,
            "avg_duration_ms": round(self.total_ms / self.count, 2) if self.count else 0,
            "min_duration_ms": round(self.min_ms or 0.0, 2),
            "max_duration_ms": round(self.max_ms, 2),
            "last_error": self.last_error,
            "last_error_time": self.last_error_at.isoformat() if self.last_error_at else None,
            "tallies": dict(self.tallies),
        }


class MetricsCollector:
    """Thread-safe per-operation metrics, optionally written to a JSON file.

    Each process starts from zero; a metrics file left by an earlier run is
    overwritten, never read. With ``enabled=None`` the collector follows
    ``config.metrics_enabled`` at the time of each write. A disabled
    collector still counts in memory, which the status tool reports, but
    never touches the metrics file.

    Args:
        metrics_file: Where to write. Defaults to ``TANGLE_METRICS_FILE``
            or ~/.tangle/metrics.json
        auto_save_interval: Write after this many operations (0 disables)
        enabled: Force writing on or off instead of following config
    """

    def __init__(
        self,
        metrics_file: Optional[Union[str, Path]] = None,
        auto_save_interval: int = 100,
        enabled: Optional[bool] = None,
    ):
        self._metrics_file = Path(metrics_file) if metrics_file else DEFAULT_METRICS_FILE
        self._auto_save_interval = auto_save_interval
        self._enabled = enabled
        self._lock = Lock()
        self._stats: Dict[str, OperationStats] = {}
        self._started = datetime.now(timezone.utc)
        self._unsaved = 0

    @property
    def enabled(self) -> bool:
        return config.metrics_enabled if self._enabled is None else self._enabled

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
        tallies: Optional[Mapping[str, int]] = None,
    ) -> None:
        with self._lock:
            stats = self._stats.setdefault(operation, OperationStats())
            stats.count += 1
            stats.total_ms += duration_ms
            stats.max_ms = max(stats.max_ms, duration_ms)
            stats.min_ms = duration_ms if stats.min_ms is None else min(stats.min_ms, duration_ms)
            if not success:
                stats.errors += 1
                stats.last_error = _sanitize_error_message(error)
                stats.last_error_at = datetime.now(timezone.utc)
            if tallies:
                stats.tallies.update(tallies)

            self._unsaved += 1
            if 0 < self._auto_save_interval <= self._unsaved:
                self._write_unlocked()

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Per-operation figures keyed by operation name."""
        with self._lock:
            return {name: stats.to_dict() for name, stats in self._stats.items()}

    def get_summary(self) -> Dict[str, Any]:
        """Totals across all operations, including the store tallies."""
        with self._lock:
            total = sum(s.count for s in self._stats.values())
            errors = sum(s.errors for s in self._stats.values())
            activity: Counter = Counter()
            for stats in self._stats.values():
                activity.update(stats.tallies)
            return {
                "uptime_seconds": (datetime.now(timezone.utc) - self._started).total_seconds(),
                "total_operations": total,
                "total_success": total - errors,
                "total_errors": errors,
                "overall_success_rate": (total - errors) / total if total else 1.0,
                "operations_tracked": list(self._stats),
                "store_activity": {key: activity.get(key, 0) for key in TALLY_KEYS},
            }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._started = datetime.now(timezone.utc)
            self._unsaved = 0

    def save_metrics(self) -> bool:
        """Write the metrics file now. False when disabled or the write failed."""
        with self._lock:
            return self._write_unlocked()

    def _write_unlocked(self) -> bool:
        self._unsaved = 0
        if not self.enabled:
            return False
        document = {
            "started_at": self._started.isoformat(),
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "operations": {name: stats.to_dict() for name, stats in self._stats.items()},
        }
        temp_file = self._metrics_file.with_suffix(".tmp")
        try:
            self._metrics_file.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2)
            os.replace(temp_file, self._metrics_file)
        except (OSError, TypeError) as e:
            logger.error(f"Failed to save metrics to {self._metrics_file}: {e}")
            return False
        return True

    def get_metrics_file(self) -> Path:
        return self._metrics_file


# Shared by the store, the server and the CLI
metrics = MetricsCollector()


@contextmanager
def timed_operation(operation: str, **context):
    """Time one store operation and record it in :data:`metrics`.

    Yields a dict the caller fills with result details for the end-of-operation
    log line. Integer values under :data:`TALLY_KEYS` are added to the store
    tallies. Setting ``op["failed"]`` marks the operation failed without
    raising, for operations that report errors in their result.
    """
    correlation_id = uuid.uuid4().hex[:8]
    details: Dict[str, Any] = {}
    described = ", ".join(f"{k}={v}" for k, v in context.items())
    logger.debug(f"[{correlation_id}] {operation} started ({described})")

    started = time.perf_counter()
    error: Optional[str] = None
    try:
        yield details
    except Exception as e:
        error = str(e) or type(e).__name__
        raise
    finally:
        if error is None and details.get("failed"):
            error = str(details["failed"])
        elapsed_ms = (time.perf_counter() - started) * 1000
        tallies = {key: details[key] for key in TALLY_KEYS if details.get(key)}
        metrics.record_operation(operation, elapsed_ms, error is None, error, tallies)

        outcome = "ok" if error is None else f"failed: {error}"
        extras = ", ".join(f"{k}={v}" for k, v in details.items() if k != "failed")
        logger.debug(f"[{correlation_id}] {operation} {outcome} in {elapsed_ms:.2f}ms {extras}")


def traced(operation_name: Optional[str] = None) -> Callable[[F], F]:
    """Run a store query inside :func:`timed_operation`, noting how many items it returned."""
    def decorator(func: F) -> F:
        name = operation_name or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with timed_operation(name) as op:
                result = func(*args, **kwargs)
                if isinstance(result, (list, tuple, dict)):
                    op["result_count"] = len(result)
                return result

        return wrapper  # type: ignore
    return decorator
