"""
Database Log Sink

Writes batches of buffered log entries to the system_logs table.

Design Decisions:
- One session and one commit per batch (the logger already batches entries)
- Opens its own session: flushes run from the periodic task or after the
  request that filled the buffer has returned
- Errors propagate to the logger, which re-queues the batch
"""

from typing import Callable, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from offmarket.core.exceptions import LogSinkError
from offmarket.core.logger import LogEntry, LogSink
from offmarket.db.models import SystemLog, utc_now


def entry_to_row(entry: LogEntry, environment: Optional[str] = None) -> SystemLog:
    """Map a log entry to a system_logs row."""
    record = entry.to_record()
    return SystemLog(
        level=record["level"],
        category=record["category"],
        message=record["message"],
        log_metadata=_json_safe(record["metadata"]),
        user_id=record["user_id"],
        session_id=record["session_id"],
        request_id=record["request_id"],
        timestamp=entry.timestamp.replace(tzinfo=None),
        duration=record["duration"],
        tags=record["tags"],
        environment=environment,
        created_at=utc_now(),
    )


def _json_safe(value):
    """Coerce metadata into something the JSON column accepts."""
    if value is None:
        return None
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(v) for v in value]
    if isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


class DatabaseLogSink(LogSink):
    """
    Persistent sink backed by the system_logs table.

    Args:
        session_factory: Callable returning an async session context manager
            (normally offmarket.db.session.async_session_maker)
        environment: Value stored in the environment column
    """

    def __init__(self, session_factory: Callable[[], AsyncSession], environment: Optional[str] = None):
        self.session_factory = session_factory
        self.environment = environment

    async def write(self, entries: Sequence[LogEntry]) -> None:
        if not entries:
            return

        rows: List[SystemLog] = [entry_to_row(entry, self.environment) for entry in entries]
        try:
            async with self.session_factory() as session:
                session.add_all(rows)
                await session.commit()
        except Exception as e:
            raise LogSinkError(f"failed to insert {len(rows)} rows", original_error=e) from e
