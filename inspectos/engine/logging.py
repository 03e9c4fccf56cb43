"""
InspectOS Event Log — JSONL audit trail for generation runs, tasks and hazards.

Layout:
    <log_dir>/<object_type>/<category>/<YYYY-MM-DD>.jsonl     (current days)
    <log_dir>/<object_type>/<category>/<YYYY-MM-DD>.jsonl.gz  (compressed days)

Callers build an entry with one of the ``log_*`` helpers and hand it to
log(); the global AsyncLogQueue appends it to disk from a background
thread. Event logging never fails the operation that produced the event:
a full queue drops the entry, a write error goes to the stdlib logger.

Diagnostic logging uses plain stdlib loggers named ``inspectos.<module>``.
"""

from __future__ import annotations

import gzip
import json
import logging
import shutil
import threading
import time
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from queue import Empty, Full, Queue
from typing import Any, Dict, Iterable, List, Optional

from inspectos.engine.config import LoggingConfig

logger = logging.getLogger("inspectos.engine.logging")

OBJECT_TYPE_CATEGORIES = {
    "generation": ["execution", "performance"],
    "tasks": ["execution"],
    "hazards": ["execution"],
    "schedule": ["execution"],
    "system": ["execution"],
}

# Days kept per category
DEFAULT_RETENTION = {
    "execution": 90,
    "performance": 30,
}


class LogEntry:
    """One event bound for ``<object_type>/<category>/<day>.jsonl``."""

    __slots__ = ("object_type", "category", "data", "day")

    def __init__(self, object_type: str, category: str, data: Dict[str, Any],
                 day: Optional[date] = None):
        self.object_type = object_type
        self.category = category
        self.data = data
        self.day = day or date.today()

    def to_json(self) -> str:
        return json.dumps(self.data, default=str, separators=(",", ":"))


def _read_entries(path: Path) -> List[Dict[str, Any]]:
    """Parsed lines of a day file, oldest first. Unparseable lines are skipped."""
    if not path.exists():
        return []
    opener = gzip.open if path.suffix == ".gz" else open
    entries: List[Dict[str, Any]] = []
    try:
        with opener(path, "rt", encoding="utf-8") as f:
            for line in f:
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
    except OSError as exc:
        logger.warning(f"Could not read event log {path}: {exc}")
    return entries


def _matches(entry: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    return not filters or all(entry.get(key) == value for key, value in filters.items())


class FileLogger:
    """Appends entries to day files and reads them back newest first."""

    def __init__(self, log_dir: str = "logs"):
        self._log_dir = Path(log_dir)
        self._write_lock = threading.Lock()
        for object_type, categories in OBJECT_TYPE_CATEGORIES.items():
            for category in categories:
                self.category_dir(object_type, category).mkdir(parents=True, exist_ok=True)

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    def category_dir(self, object_type: str, category: str) -> Path:
        return self._log_dir / object_type / category

    def path_for(self, entry: LogEntry) -> Path:
        return self.category_dir(entry.object_type, entry.category) / f"{entry.day.isoformat()}.jsonl"

    def write(self, entry: LogEntry) -> None:
        self.write_batch([entry])

    def write_batch(self, entries: Iterable[LogEntry]) -> int:
        """Append entries, one open() per target file. Returns the number written."""
        lines_by_path: Dict[Path, List[str]] = defaultdict(list)
        for entry in entries:
            lines_by_path[self.path_for(entry)].append(entry.to_json())

        with self._write_lock:
            for path, lines in lines_by_path.items():
                path.parent.mkdir(parents=True, exist_ok=True)
                with open(path, "a", encoding="utf-8") as f:
                    f.write("\n".join(lines) + "\n")
        return sum(len(lines) for lines in lines_by_path.values())

    def query(
        self,
        object_type: str,
        category: str,
        *,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        """
        Entries of one object type / category, newest first.

        The window defaults to the seven days before ``end_date`` (today).
        ``filters`` are exact matches on top-level keys, e.g.
        ``{"object_ref": "task:12"}``.
        """
        end_date = end_date or date.today()
        start_date = start_date or end_date - timedelta(days=7)
        base = self.category_dir(object_type, category)
        if not base.is_dir():
            return []

        found: List[Dict[str, Any]] = []
        day = end_date
        while day >= start_date and len(found) < limit:
            day_entries = (
                _read_entries(base / f"{day.isoformat()}.jsonl")
                + _read_entries(base / f"{day.isoformat()}.jsonl.gz")
            )
            found.extend(e for e in reversed(day_entries) if _matches(e, filters))
            day -= timedelta(days=1)
        return found[:limit]


class AsyncLogQueue:
    """
    Bounded buffer in front of a FileLogger.

    push() never blocks. The flush thread writes a batch as soon as
    ``flush_batch_size`` entries are waiting, or ``flush_interval_ms`` after
    the first entry of a batch arrived.
    """

    def __init__(
        self,
        file_logger: FileLogger,
        flush_interval_ms: int = 100,
        flush_batch_size: int = 50,
        max_queue_size: int = 10000,
    ):
        self._file_logger = file_logger
        self._interval = flush_interval_ms / 1000.0
        self._batch_size = max(1, flush_batch_size)
        self._queue: Queue[LogEntry] = Queue(maxsize=max_queue_size)
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._dropped = 0

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._run, name="inspectos-log-flush", daemon=True)
        self._thread.start()
        logger.debug("Event log flush thread started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the flush thread, then write everything still queued."""
        self._stopping.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        while True:
            batch = self._take(self._batch_size)
            if not batch:
                break
            self._flush(batch)
        if self._dropped:
            logger.warning(f"Event log queue stopped; {self._dropped} entries were dropped")

    def push(self, entry: LogEntry) -> bool:
        """Queue an entry; False when the queue is full and the entry was dropped."""
        try:
            self._queue.put_nowait(entry)
        except Full:
            self._dropped += 1
            return False
        return True

    def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                first = self._queue.get(timeout=self._interval)
            except Empty:
                continue
            batch = [first]
            deadline = time.monotonic() + self._interval
            while len(batch) < self._batch_size:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                try:
                    batch.append(self._queue.get(timeout=remaining))
                except Empty:
                    break
            self._flush(batch)

    def _take(self, count: int) -> List[LogEntry]:
        batch: List[LogEntry] = []
        while len(batch) < count:
            try:
                batch.append(self._queue.get_nowait())
            except Empty:
                break
        return batch

    def _flush(self, batch: List[LogEntry]) -> None:
        try:
            self._file_logger.write_batch(batch)
        except OSError as exc:
            logger.error(f"Event log write failed, {len(batch)} entries lost: {exc}")

    @property
    def pending_count(self) -> int:
        return self._queue.qsize()

    @property
    def dropped_count(self) -> int:
        return self._dropped


# ---------------------------------------------------------------------------
# Entry builders
# ---------------------------------------------------------------------------

def _event_data(event: str, level: str, object_ref: str,
                user_id: Optional[Any] = None, **fields: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "event": event,
        "object_ref": object_ref,
    }
    if user_id is not None:
        data["user_id"] = user_id
    data.update(fields)
    return data


def log_generation_run(
    run_log_id: Optional[int],
    run_source: str,
    status: str,
    created_count: int,
    duration_ms: float,
    triggered_by: Optional[int] = None,
    template_ids: Optional[List[int]] = None,
    failures: Optional[List[Dict[str, Any]]] = None,
) -> LogEntry:
    """One entry per generation invocation, mirroring its run log row."""
    data = _event_data(
        "generation_run",
        "INFO" if status == "success" else "ERROR",
        f"run_log:{run_log_id}",
        user_id=triggered_by,
        run_source=run_source,
        status=status,
        created_count=created_count,
        duration_ms=duration_ms,
    )
    if template_ids:
        data["template_ids"] = template_ids
    if failures:
        data["failures"] = failures
    return LogEntry("generation", "execution", data)


def log_generation_performance(template_id: int, duration_ms: float, created: int, skipped: int) -> LogEntry:
    data = _event_data(
        "template_generated", "INFO", f"template:{template_id}",
        duration_ms=duration_ms, created=created, skipped=skipped,
    )
    return LogEntry("generation", "performance", data)


def log_task_transition(
    task_id: int,
    from_status: str,
    to_status: str,
    user_id: Optional[Any] = None,
    **details: Any,
) -> LogEntry:
    data = _event_data(
        "task_transition", "INFO", f"task:{task_id}",
        user_id=user_id, from_status=from_status, to_status=to_status,
    )
    if details:
        data["details"] = details
    return LogEntry("tasks", "execution", data)


def log_hazard_event(
    event: str,
    hazard_id: int,
    user_id: Optional[Any] = None,
    from_status: Optional[str] = None,
    to_status: Optional[str] = None,
    fields_changed: Optional[List[str]] = None,
) -> LogEntry:
    """Escalation, status change, rejection or remediation update of a hazard."""
    data = _event_data(event, "INFO", f"hazard:{hazard_id}", user_id=user_id)
    if from_status:
        data["from_status"] = from_status
    if to_status:
        data["to_status"] = to_status
    if fields_changed:
        data["fields_changed"] = fields_changed
    return LogEntry("hazards", "execution", data)


def log_schedule_update(enabled: bool, run_time: str, user_id: Optional[Any] = None) -> LogEntry:
    data = _event_data(
        "schedule_config_updated", "INFO", "schedule_config",
        user_id=user_id, enabled=enabled, run_time=run_time,
    )
    return LogEntry("schedule", "execution", data)


def log_system_event(event: str, level: str = "INFO", details: Optional[Dict[str, Any]] = None) -> LogEntry:
    data = _event_data(event, level, "system")
    if details:
        data["details"] = details
    return LogEntry("system", "execution", data)


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------

def _file_day(path: Path) -> Optional[date]:
    try:
        return date.fromisoformat(path.name.split(".", 1)[0])
    except ValueError:
        return None


def _gzip_in_place(path: Path) -> bool:
    target = path.with_name(path.name + ".gz")
    try:
        with open(path, "rb") as src, gzip.open(target, "wb") as dst:
            shutil.copyfileobj(src, dst)
    except OSError as exc:
        logger.error(f"Failed to compress {path}: {exc}")
        target.unlink(missing_ok=True)
        return False
    path.unlink()
    return True


class LogRetentionManager:
    """Gzips day files older than ``compress_after_days``; deletes those past retention."""

    def __init__(
        self,
        log_dir: str = "logs",
        retention_days: Optional[Dict[str, int]] = None,
        compress_after_days: int = 7,
    ):
        self._log_dir = Path(log_dir)
        self._retention = {**DEFAULT_RETENTION, **(retention_days or {})}
        self._compress_after = compress_after_days

    @classmethod
    def from_config(cls, config: LoggingConfig) -> "LogRetentionManager":
        return cls(
            log_dir=config.directory,
            retention_days={
                "execution": config.retention.execution_days,
                "performance": config.retention.performance_days,
            },
            compress_after_days=config.compress_after_days,
        )

    def cleanup(self, today: Optional[date] = None) -> Dict[str, int]:
        """Returns ``{"deleted": n, "compressed": m}``."""
        today = today or date.today()
        counts = {"deleted": 0, "compressed": 0}

        for object_type, categories in OBJECT_TYPE_CATEGORIES.items():
            for category in categories:
                keep_days = self._retention.get(category, DEFAULT_RETENTION["execution"])
                for path in sorted((self._log_dir / object_type / category).glob("*.jsonl*")):
                    day = _file_day(path)
                    if day is None:
                        continue
                    age = (today - day).days
                    if age > keep_days:
                        path.unlink()
                        counts["deleted"] += 1
                    elif age > self._compress_after and path.suffix == ".jsonl":
                        if _gzip_in_place(path):
                            counts["compressed"] += 1

        logger.info(f"Event log cleanup: {counts}")
        return counts


# ---------------------------------------------------------------------------
# Process-wide queue
# ---------------------------------------------------------------------------

_global_queue: Optional[AsyncLogQueue] = None


def init_logging(
    log_dir: str = "logs",
    flush_interval_ms: int = 100,
    flush_batch_size: int = 50,
    max_queue_size: int = 10000,
) -> AsyncLogQueue:
    """Start the process-wide event queue, replacing any previous one."""
    global _global_queue
    if _global_queue is not None:
        _global_queue.stop()
    _global_queue = AsyncLogQueue(
        FileLogger(log_dir=log_dir),
        flush_interval_ms=flush_interval_ms,
        flush_batch_size=flush_batch_size,
        max_queue_size=max_queue_size,
    )
    _global_queue.start()
    return _global_queue


def init_logging_from_config(config: LoggingConfig) -> AsyncLogQueue:
    """init_logging() with the ``logging`` section of inspectos.yaml."""
    return init_logging(
        log_dir=config.directory,
        flush_interval_ms=config.async_queue.flush_interval_ms,
        flush_batch_size=config.async_queue.flush_batch_size,
        max_queue_size=config.async_queue.max_queue_size,
    )


def get_log_queue() -> Optional[AsyncLogQueue]:
    return _global_queue


def log(entry: LogEntry) -> bool:
    """Queue an event; False when logging is not initialised or the queue is full."""
    if _global_queue is None:
        logger.debug(f"Event log not initialised; {entry.object_type} event dropped")
        return False
    return _global_queue.push(entry)


def shutdown_logging() -> None:
    global _global_queue
    if _global_queue is not None:
        _global_queue.stop()
        _global_queue = None
