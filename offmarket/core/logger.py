"""
Buffered Structured Logger

Leveled, categorized application telemetry with three outputs:
- Console: one coloured line per entry, written synchronously
- Persistent sink: entries are buffered in memory and written in batches
  when the buffer reaches LOG_BUFFER_SIZE or when the periodic flush fires
- Alerts: ERROR and FATAL entries are handed to an alert notifier

Design Decisions:
- Log calls are synchronous and never raise; writes to the sink and alerts
  run as tasks on the event loop
- A failed batch is put back at the front of the buffer; the buffer is bounded
  by LOG_BUFFER_CAPACITY and the oldest entries are dropped beyond it
- Ambient identifiers come from the request-scoped context
  (offmarket.core.request_context), not from shared mutable state
- The buffer is process-local: unflushed entries of one instance are invisible
  to other instances and are lost if the process is killed without shutdown
"""

from __future__ import annotations

import asyncio
import logging
import traceback
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Sequence, Set, Union

from offmarket.core import request_context

# Internal diagnostics (sink and alert failures) use plain stdlib logging so
# they never loop back into the structured logger.
logger = logging.getLogger(__name__)

CONSOLE_LOGGER_NAME = "offmarket.console"
MAX_MESSAGE_LENGTH = 1000


class LogLevel(IntEnum):
    """Log levels in order of severity (values match stdlib logging)."""
    DEBUG = 10
    INFO = 20
    WARN = 30
    ERROR = 40
    FATAL = 50

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["LogLevel"]:
        """Parse a level name; WARNING and CRITICAL are accepted as aliases."""
        if not value:
            return None
        name = value.strip().upper()
        name = {"WARNING": "WARN", "CRITICAL": "FATAL"}.get(name, name)
        return cls.__members__.get(name)


class LogCategory(str, Enum):
    APPLICATION = "APPLICATION"
    AUTHENTICATION = "AUTHENTICATION"
    DATABASE = "DATABASE"
    API = "API"
    EMAIL = "EMAIL"
    SEARCH = "SEARCH"
    ENRICHMENT = "ENRICHMENT"
    SECURITY = "SECURITY"
    PERFORMANCE = "PERFORMANCE"
    EXTERNAL_API = "EXTERNAL_API"
    CRON_JOB = "CRON_JOB"


SECURITY_SEVERITY_LEVELS = {
    "CRITICAL": LogLevel.ERROR,
    "HIGH": LogLevel.ERROR,
    "MEDIUM": LogLevel.WARN,
    "LOW": LogLevel.INFO,
}


@dataclass
class LogEntry:
    level: LogLevel
    category: LogCategory
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    request_id: Optional[str] = None
    component: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration: Optional[float] = None
    error: Optional[BaseException] = None
    tags: Optional[List[str]] = None

    def to_record(self) -> Dict[str, Any]:
        """Flatten the entry into a JSON-serializable dict."""
        return {
            "level": self.level.name,
            "category": self.category.value,
            "message": self.message[:MAX_MESSAGE_LENGTH],
            "metadata": self.metadata or None,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "request_id": self.request_id,
            "timestamp": self.timestamp.isoformat(),
            "duration": self.duration,
            "tags": ",".join(self.tags) if self.tags else None,
        }


class LogSink(ABC):
    """Destination for batches of buffered log entries."""

    @abstractmethod
    async def write(self, entries: Sequence[LogEntry]) -> None:
        """
        Persist a batch of entries.

        Raises:
            Any exception: the batch is re-queued by the logger
        """
        pass


class AlertNotifier(ABC):
    """Receives ERROR and FATAL entries."""

    @abstractmethod
    async def notify(self, entry: LogEntry) -> None:
        pass


class ConsoleFormatter(logging.Formatter):
    """Formats LogEntry objects attached to records as coloured single lines."""

    COLORS = {
        LogLevel.DEBUG: "\x1b[36m",  # Cyan
        LogLevel.INFO: "\x1b[32m",   # Green
        LogLevel.WARN: "\x1b[33m",   # Yellow
        LogLevel.ERROR: "\x1b[31m",  # Red
        LogLevel.FATAL: "\x1b[35m",  # Magenta
    }
    RESET = "\x1b[0m"

    def __init__(self, show_details: bool = True, use_color: bool = True):
        super().__init__()
        self.show_details = show_details
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        entry: Optional[LogEntry] = getattr(record, "log_entry", None)
        if entry is None:
            return super().format(record)

        label = f"[{entry.level.name}]"
        if self.use_color:
            label = f"{self.COLORS[entry.level]}{label}{self.RESET}"

        parts = [label, entry.timestamp.strftime("%H:%M:%S.%f")[:12], f"[{entry.category.value}]"]
        if entry.user_id:
            parts.append(f"[User:{entry.user_id}]")
        if entry.request_id:
            parts.append(f"[Req:{entry.request_id[:8]}]")
        if entry.duration is not None:
            parts.append(f"[{entry.duration:g}ms]")
        parts.append(entry.message)
        line = " ".join(parts)

        if self.show_details:
            if entry.metadata:
                line += f"\n  Metadata: {entry.metadata}"
            if entry.error is not None:
                stack = "".join(
                    traceback.format_exception(type(entry.error), entry.error, entry.error.__traceback__)
                )
                line += f"\n  Stack: {stack.rstrip()}"
        return line


def build_console_logger(show_details: bool = True, use_color: bool = True) -> logging.Logger:
    """
    Return the console logger used by the structured logger.

    The logger has a single StreamHandler and does not propagate, so uvicorn's
    root configuration does not print entries twice.
    """
    console = logging.getLogger(CONSOLE_LOGGER_NAME)
    console.setLevel(logging.DEBUG)
    console.propagate = False
    if not console.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(ConsoleFormatter(show_details=show_details, use_color=use_color))
        console.addHandler(handler)
    return console


class StructuredLogger:
    """
    Leveled, categorized logger with a buffered persistent sink.

    Usage:
        app_logger.info(LogCategory.SEARCH, "Search completed", {"results": 12})
        app_logger.api("GET", "/companies", 200, 35.2)
    """

    def __init__(
        self,
        min_level: LogLevel = LogLevel.INFO,
        *,
        console: Optional[logging.Logger] = None,
        sink: Optional[LogSink] = None,
        alert_notifier: Optional[AlertNotifier] = None,
        buffer_size: int = 100,
        buffer_capacity: int = 1000,
        flush_interval: float = 30.0,
        environment: Optional[str] = None,
    ):
        """
        Args:
            min_level: Entries below this level are dropped before any output
            console: Logger receiving console lines (None disables console output)
            sink: Persistent sink (None disables buffering)
            alert_notifier: Receiver of ERROR/FATAL entries (optional)
            buffer_size: Number of buffered entries that triggers a flush
            buffer_capacity: Hard bound on entries kept after failed flushes
            flush_interval: Seconds between periodic flushes
            environment: Added to every entry's metadata
        """
        self.min_level = min_level
        self.console = console
        self.sink = sink
        self.alert_notifier = alert_notifier
        self.buffer_size = max(1, buffer_size)
        self.buffer_capacity = max(self.buffer_size, buffer_capacity)
        self.flush_interval = flush_interval
        self.environment = environment

        self._buffer: List[LogEntry] = []
        self._flush_task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()

    @property
    def buffered_count(self) -> int:
        return len(self._buffer)

    # Context

    def set_context(self, **fields: Any) -> None:
        request_context.set_context(**fields)

    def clear_context(self) -> None:
        request_context.clear_context()

    # Core

    def is_enabled_for(self, level: LogLevel) -> bool:
        return level >= self.min_level

    def log(
        self,
        level: Union[LogLevel, int],
        category: LogCategory,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        error: Optional[BaseException] = None,
        duration: Optional[float] = None,
        tags: Optional[List[str]] = None,
    ) -> None:
        """Record an entry. Never raises."""
        try:
            level = LogLevel(level)
            if not self.is_enabled_for(level):
                return

            entry = self._build_entry(level, category, message, metadata, error, duration, tags)

            if self.console is not None:
                self.console.log(int(level), entry.message, extra={"log_entry": entry})

            if self.sink is not None:
                self._buffer_entry(entry)

            if level >= LogLevel.ERROR and self.alert_notifier is not None:
                self._dispatch_alert(entry)
        except Exception:
            logger.exception("Structured logger failed to record an entry")

    def _build_entry(
        self,
        level: LogLevel,
        category: LogCategory,
        message: str,
        metadata: Optional[Dict[str, Any]],
        error: Optional[BaseException],
        duration: Optional[float],
        tags: Optional[List[str]],
    ) -> LogEntry:
        context = request_context.get_context()
        merged: Dict[str, Any] = dict(metadata or {})
        for name in ("ip", "user_agent"):
            if name in context:
                merged.setdefault(name, context[name])
        if self.environment:
            merged["environment"] = self.environment

        return LogEntry(
            level=level,
            category=LogCategory(category),
            message=str(message),
            metadata=merged,
            user_id=context.get("user_id"),
            session_id=context.get("session_id"),
            request_id=context.get("request_id"),
            component=context.get("component"),
            duration=duration,
            error=error,
            tags=tags,
        )

    # Level wrappers

    def debug(self, category: LogCategory, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        self.log(LogLevel.DEBUG, category, message, metadata)

    def info(self, category: LogCategory, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        self.log(LogLevel.INFO, category, message, metadata)

    def warn(self, category: LogCategory, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        self.log(LogLevel.WARN, category, message, metadata)

    def error(
        self,
        category: LogCategory,
        message: str,
        error: Optional[BaseException] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.log(LogLevel.ERROR, category, message, _with_error_details(metadata, error), error=error)

    def fatal(
        self,
        category: LogCategory,
        message: str,
        error: Optional[BaseException] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.log(LogLevel.FATAL, category, message, _with_error_details(metadata, error), error=error)

    # Domain wrappers

    def performance(
        self,
        category: LogCategory,
        operation: str,
        duration: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.log(
            LogLevel.INFO,
            category,
            f"Performance: {operation}",
            {**(metadata or {}), "operation": operation, "performanceLog": True},
            duration=duration,
            tags=["performance"],
        )

    def security(self, message: str, severity: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Log a security event; CRITICAL/HIGH map to ERROR, MEDIUM to WARN, LOW to INFO."""
        severity = severity.upper()
        level = SECURITY_SEVERITY_LEVELS.get(severity, LogLevel.INFO)
        self.log(
            level,
            LogCategory.SECURITY,
            f"Security Event: {message}",
            {**(metadata or {}), "severity": severity, "securityEvent": True},
            tags=["security", severity.lower()],
        )

    def api(
        self,
        method: str,
        endpoint: str,
        status_code: int,
        duration: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        if status_code >= 500:
            level = LogLevel.ERROR
        elif status_code >= 400:
            level = LogLevel.WARN
        else:
            level = LogLevel.INFO

        self.log(
            level,
            LogCategory.API,
            f"{method} {endpoint} - {status_code}",
            {
                **(metadata or {}),
                "method": method,
                "endpoint": endpoint,
                "statusCode": status_code,
                "apiLog": True,
            },
            duration=duration,
            tags=["api"],
        )

    def database(
        self,
        operation: str,
        table: str,
        duration: float,
        rows_affected: Optional[int] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        self.log(
            LogLevel.ERROR if error else LogLevel.DEBUG,
            LogCategory.DATABASE,
            f"DB {operation} on {table}{' failed' if error else ''}",
            {
                "operation": operation,
                "table": table,
                "rowsAffected": rows_affected,
                "databaseLog": True,
            },
            error=error,
            duration=duration,
            tags=["database"],
        )

    # Buffering

    def _buffer_entry(self, entry: LogEntry) -> None:
        self._buffer.append(entry)
        if len(self._buffer) >= self.buffer_size:
            self._schedule_flush()

    def _schedule_flush(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop: keep the entries for the next flush.
            self._trim_buffer()
            return

        batch = self._take_batch()
        if batch:
            self._track(loop.create_task(self._write_batch(batch)))

    def _take_batch(self) -> List[LogEntry]:
        batch, self._buffer = self._buffer, []
        return batch

    async def _write_batch(self, batch: List[LogEntry]) -> bool:
        try:
            await self.sink.write(batch)
            return True
        except asyncio.CancelledError:
            self._buffer[:0] = batch
            self._trim_buffer()
            raise
        except Exception as e:
            logger.warning(f"Failed to flush {len(batch)} log entries: {e}")
            self._buffer[:0] = batch
            self._trim_buffer()
            return False

    def _trim_buffer(self) -> None:
        overflow = len(self._buffer) - self.buffer_capacity
        if overflow > 0:
            del self._buffer[:overflow]
            logger.warning(f"Log buffer over capacity, dropped {overflow} oldest entries")

    async def flush(self) -> bool:
        """
        Write every buffered entry to the sink.

        Returns:
            False if the write failed (entries are re-queued), True otherwise
        """
        if self.sink is None:
            return True
        batch = self._take_batch()
        if not batch:
            return True
        return await self._write_batch(batch)

    # Alerts

    def _dispatch_alert(self, entry: LogEntry) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No event loop, alert not sent: [{entry.level.name}] {entry.message}")
            return
        self._track(loop.create_task(self._send_alert(entry)))

    async def _send_alert(self, entry: LogEntry) -> None:
        try:
            await self.alert_notifier.notify(entry)
        except Exception as e:
            logger.warning(f"Failed to send alert: {e}")

    def _track(self, task: asyncio.Task) -> None:
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def wait_pending(self) -> None:
        """Wait for in-flight sink writes and alerts."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # Lifecycle

    def start(self) -> None:
        """Start the periodic flush task. Must be called from a running loop."""
        if self.sink is None or self._flush_task is not None:
            return
        self._flush_task = asyncio.get_running_loop().create_task(self._flush_periodically())

    async def _flush_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            await self.flush()

    async def shutdown(self) -> None:
        """Stop the periodic flush and make a final flush attempt."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

        await self.wait_pending()
        if not await self.flush():
            logger.error(f"Final log flush failed, {len(self._buffer)} entries lost")


def _with_error_details(metadata: Optional[Dict[str, Any]], error: Optional[BaseException]) -> Dict[str, Any]:
    details = dict(metadata or {})
    if error is not None:
        details["errorName"] = type(error).__name__
        details["stack"] = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return details


__all__ = [
    "AlertNotifier",
    "ConsoleFormatter",
    "LogCategory",
    "LogEntry",
    "LogLevel",
    "LogSink",
    "StructuredLogger",
    "build_console_logger",
]
