"""
Taskify Logging — Structured JSON-lines event log with an async flush queue.

Implements:
- FileLogger: Per-object-type, per-category log files (daily files)
- AsyncLogQueue: In-memory queue with background flush (interval / batch size)
- Log entry builders for remote calls, mutations, change events and sync runs
- configure_logging(): wires stdlib logging level and the global queue from config

Components never require the queue: they take an optional ``log_queue`` and
skip structured output when it is None.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import defaultdict
from datetime import date, datetime, timezone
from pathlib import Path
from queue import Empty, Full, Queue
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger("taskify.engine.logging")

# Valid object types and their permitted categories
OBJECT_TYPE_CATEGORIES = {
    "tasks": ["execution", "performance"],
    "teams": ["execution", "performance"],
    "team_members": ["execution", "performance"],
    "remote": ["execution", "performance"],
    "change_feed": ["execution"],
    "system": ["execution"],
}


class LogEntry:
    """A structured log entry destined for a specific file."""

    __slots__ = ("object_type", "category", "data")

    def __init__(self, object_type: str, category: str, data: Dict[str, Any]):
        self.object_type = object_type
        self.category = category
        self.data = data

    def to_json(self) -> str:
        return json.dumps(self.data, default=str, separators=(",", ":"))


class FileLogger:
    """
    Appends entries to ``{log_dir}/{object_type}/{category}/{YYYY-MM-DD}.jsonl``.

    Unknown object types go to ``system``, unknown categories to ``execution``.
    One lock serialises all writes.
    """

    def __init__(self, log_dir: str = "logs"):
        self._log_dir = Path(log_dir)
        self._lock = threading.Lock()
        for object_type, categories in OBJECT_TYPE_CATEGORIES.items():
            for category in categories:
                (self._log_dir / object_type / category).mkdir(parents=True, exist_ok=True)

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    def path_for(self, entry: LogEntry, day: Optional[date] = None) -> Path:
        object_type = entry.object_type if entry.object_type in OBJECT_TYPE_CATEGORIES else "system"
        category = entry.category
        if category not in OBJECT_TYPE_CATEGORIES[object_type]:
            category = "execution"
        day = day or date.today()
        return self._log_dir / object_type / category / f"{day.isoformat()}.jsonl"

    def write(self, entry: LogEntry) -> None:
        self.write_batch([entry])

    def write_batch(self, entries: Iterable[LogEntry]) -> int:
        """Append entries, one open per target file. Returns the number written."""
        lines: Dict[Path, List[str]] = defaultdict(list)
        for entry in entries:
            lines[self.path_for(entry)].append(entry.to_json())
        with self._lock:
            for path, batch in lines.items():
                with path.open("a", encoding="utf-8") as f:
                    f.write("\n".join(batch) + "\n")
        return sum(len(batch) for batch in lines.values())


class AsyncLogQueue:
    """
    Buffers entries for a FileLogger and writes them from a daemon thread.

    ``push`` never blocks: a full buffer drops the entry and counts it. The
    thread writes every ``flush_interval_ms``, or sooner once
    ``flush_batch_size`` entries are waiting. ``stop`` writes whatever is left.
    """

    def __init__(
        self,
        file_logger: FileLogger,
        flush_interval_ms: int = 100,
        flush_batch_size: int = 50,
        max_queue_size: int = 10000,
    ):
        self._writer = file_logger
        self._flush_interval = flush_interval_ms / 1000.0
        self._flush_batch_size = max(1, flush_batch_size)
        self._buffer: Queue[LogEntry] = Queue(maxsize=max_queue_size)
        self._wake = threading.Event()
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._dropped_count = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._run, name="taskify-log-flush", daemon=True)
        self._thread.start()
        logger.info("Structured log queue started")

    def stop(self, timeout: float = 5.0) -> None:
        self._stopping.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        self._flush()
        logger.info(f"Structured log queue stopped (dropped: {self._dropped_count})")

    def push(self, entry: LogEntry) -> bool:
        """Queue an entry. False when the buffer is full and the entry was dropped."""
        try:
            self._buffer.put_nowait(entry)
        except Full:
            self._dropped_count += 1
            return False
        if self._buffer.qsize() >= self._flush_batch_size:
            self._wake.set()
        return True

    def _run(self) -> None:
        while not self._stopping.is_set():
            self._wake.wait(self._flush_interval)
            self._wake.clear()
            self._flush()

    def _flush(self) -> None:
        while True:
            batch: List[LogEntry] = []
            while len(batch) < self._flush_batch_size:
                try:
                    batch.append(self._buffer.get_nowait())
                except Empty:
                    break
            if not batch:
                return
            try:
                self._writer.write_batch(batch)
            except (OSError, ValueError) as e:
                logger.error(f"Structured log write failed, {len(batch)} entries lost: {e}")

    @property
    def pending_count(self) -> int:
        return self._buffer.qsize()

    @property
    def dropped_count(self) -> int:
        return self._dropped_count


# ---------------------------------------------------------------------------
# Log Entry Builders
# ---------------------------------------------------------------------------

def _base_entry(
    event: str,
    level: str,
    user_id: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """Build a base log entry with common fields."""
    entry: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "event": event,
    }
    if user_id is not None:
        entry["user_id"] = user_id
    entry.update(extra)
    return entry


def log_remote_call(
    table: str,
    method: str,
    url: str,
    status_code: int,
    duration_ms: float,
    success: bool,
    attempts: int = 1,
    error: Optional[str] = None,
) -> LogEntry:
    """Build a remote store call log entry."""
    data = _base_entry(
        event="remote_called",
        level="INFO" if success else "ERROR",
        table=table,
        method=method,
        url=url,
        status_code=status_code,
        duration_ms=round(duration_ms, 2),
        success=success,
        attempts=attempts,
    )
    if error:
        data["error"] = error
    return LogEntry("remote", "execution", data)


def log_mutation(
    entity: str,
    operation: str,
    entity_id: Optional[str],
    success: bool,
    duration_ms: float,
    user_id: Optional[str] = None,
    fields_changed: Optional[List[str]] = None,
    resynced: bool = False,
    error: Optional[Dict[str, Any]] = None,
) -> LogEntry:
    """Build an optimistic mutation log entry (create/update/delete)."""
    data = _base_entry(
        event=f"{operation}_{'succeeded' if success else 'failed'}",
        level="INFO" if success else "WARNING",
        user_id=user_id,
        operation=operation,
        entity_id=entity_id,
        success=success,
        duration_ms=round(duration_ms, 2),
        resynced=resynced,
    )
    if fields_changed:
        data["fields_changed"] = fields_changed
    if error:
        data["error"] = error
    object_type = entity if entity in OBJECT_TYPE_CATEGORIES else "system"
    return LogEntry(object_type, "execution", data)


def log_change_event(
    table: str,
    kind: str,
    record_id: Optional[str],
    listener: str,
) -> LogEntry:
    """Build a change feed event log entry."""
    data = _base_entry(
        event="change_received",
        level="INFO",
        table=table,
        kind=kind,
        record_id=record_id,
        listener=listener,
    )
    return LogEntry("change_feed", "execution", data)


def log_sync_event(
    entity: str,
    count: int,
    duration_ms: float,
    success: bool,
    reason: str = "refresh",
    error: Optional[str] = None,
) -> LogEntry:
    """Build a fetch-and-replace (resynchronization) log entry."""
    data = _base_entry(
        event="sync_completed" if success else "sync_failed",
        level="INFO" if success else "WARNING",
        count=count,
        duration_ms=round(duration_ms, 2),
        reason=reason,
    )
    if error:
        data["error"] = error
    object_type = entity if entity in OBJECT_TYPE_CATEGORIES else "system"
    return LogEntry(object_type, "performance", data)


def log_system_event(
    event: str,
    level: str = "INFO",
    details: Optional[Dict[str, Any]] = None,
) -> LogEntry:
    """Build a system event log entry (session start, shutdown)."""
    data = _base_entry(event=event, level=level)
    if details:
        data["details"] = details
    return LogEntry("system", "execution", data)


def push_entry(log_queue: Optional[AsyncLogQueue], entry: LogEntry) -> None:
    """Push to an optional queue; a missing queue means structured logging is off."""
    if log_queue is not None:
        log_queue.push(entry)


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
    """Start the process-wide queue. A running queue is returned unchanged."""
    global _global_queue
    if _global_queue is None:
        _global_queue = AsyncLogQueue(
            FileLogger(log_dir=log_dir),
            flush_interval_ms=flush_interval_ms,
            flush_batch_size=flush_batch_size,
            max_queue_size=max_queue_size,
        )
        _global_queue.start()
    return _global_queue


def configure_logging(config: Any) -> Optional[AsyncLogQueue]:
    """
    Apply a LoggingConfig: set the ``taskify`` logger level and, when
    structured logging is enabled, start the process-wide queue.
    """
    logging.getLogger("taskify").setLevel(config.level)
    if not config.structured:
        return None
    return init_logging(
        log_dir=config.directory,
        flush_interval_ms=config.flush_interval_ms,
        flush_batch_size=config.flush_batch_size,
        max_queue_size=config.max_queue_size,
    )


def get_log_queue() -> Optional[AsyncLogQueue]:
    return _global_queue


def log(entry: LogEntry) -> bool:
    """Queue an entry on the process-wide queue. False when none is running."""
    if _global_queue is None:
        logger.debug(f"Structured logging off, {entry.data.get('event')} not recorded")
        return False
    return _global_queue.push(entry)


def shutdown_logging() -> None:
    """Stop the process-wide queue after writing what it holds."""
    global _global_queue
    queue, _global_queue = _global_queue, None
    if queue is not None:
        queue.stop()
