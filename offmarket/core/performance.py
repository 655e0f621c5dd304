"""
Performance Monitoring

Timing and resource checks reported through the structured logger:

- RequestPerformanceMonitor: sampled PERFORMANCE record per HTTP request
- ExternalApiMonitor: call/failure/slow-call statistics for edge function calls
- DatabaseMonitor: query statistics and slow-query warnings via SQLAlchemy
  cursor events
- MemoryMonitor: periodic resident memory check with warning and critical
  thresholds

Design Decisions:
- Monitors are plain instances owned by the telemetry manager; tests build
  their own with a private logger
- Statistics are process-local and reset on restart
- Memory is measured as the process resident set size (psutil)
"""

import asyncio
import logging
import random
import time
from typing import Any, Callable, Dict, NamedTuple, Optional, Sequence

import psutil
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine

from offmarket.core.logger import LogCategory, StructuredLogger

logger = logging.getLogger(__name__)

MB = 1024 * 1024

SLOW_QUERY_THRESHOLD_MS = 1000
SLOW_EXTERNAL_API_THRESHOLD_MS = 5000
MEMORY_WARNING_BYTES = 500 * MB
MEMORY_CRITICAL_BYTES = 1000 * MB

DEFAULT_EXCLUDED_PATHS = ("/health", "/docs", "/redoc", "/openapi.json", "/favicon.ico")


class MemoryUsage(NamedTuple):
    rss: int
    vms: int

    def as_mb(self) -> Dict[str, int]:
        return {"rssMB": round(self.rss / MB), "vmsMB": round(self.vms / MB)}


def read_process_memory() -> MemoryUsage:
    info = psutil.Process().memory_info()
    return MemoryUsage(rss=info.rss, vms=info.vms)


class RequestPerformanceMonitor:
    """
    Records a sampled share of requests as PERFORMANCE entries.

    Args:
        app_logger: Structured logger receiving the records
        enabled: Turn request sampling on or off
        sample_rate: Share of requests recorded (0.0 - 1.0)
        excluded_paths: Path prefixes never recorded
        memory_reader: Returns the current process memory
    """

    def __init__(
        self,
        app_logger: StructuredLogger,
        enabled: bool = False,
        sample_rate: float = 0.1,
        excluded_paths: Sequence[str] = DEFAULT_EXCLUDED_PATHS,
        memory_reader: Callable[[], MemoryUsage] = read_process_memory,
    ):
        self.app_logger = app_logger
        self.enabled = enabled
        self.sample_rate = min(max(sample_rate, 0.0), 1.0)
        self.excluded_paths = tuple(excluded_paths)
        self.memory_reader = memory_reader

    def should_monitor(self, path: str) -> bool:
        if not self.enabled or path.startswith(self.excluded_paths):
            return False
        return random.random() < self.sample_rate

    def record(
        self,
        method: str,
        path: str,
        status_code: int,
        duration_ms: float,
        user_agent: Optional[str] = None,
        content_length: Optional[int] = None,
    ) -> None:
        memory = self.memory_reader()
        self.app_logger.performance(
            LogCategory.API,
            f"{method} {path}",
            duration_ms,
            {
                "method": method,
                "pathname": path,
                "statusCode": status_code,
                "userAgent": user_agent,
                "contentLength": content_length,
                "memoryUsage": memory.as_mb(),
                "performanceMonitoring": True,
            },
        )


class ExternalApiMonitor:
    """Call statistics of external APIs, with a warning for slow calls."""

    def __init__(
        self,
        app_logger: Optional[StructuredLogger] = None,
        slow_threshold_ms: float = SLOW_EXTERNAL_API_THRESHOLD_MS,
    ):
        self.app_logger = app_logger
        self.slow_threshold_ms = slow_threshold_ms
        self.reset()

    def reset(self) -> None:
        self.call_count = 0
        self.failure_count = 0
        self.slow_call_count = 0
        self.total_call_time_ms = 0.0

    def record(self, api_name: str, duration_ms: float, success: bool) -> None:
        self.call_count += 1
        self.total_call_time_ms += duration_ms
        if not success:
            self.failure_count += 1

        slow = duration_ms > self.slow_threshold_ms
        if slow:
            self.slow_call_count += 1

        if self.app_logger is None:
            return
        if slow:
            self.app_logger.warn(
                LogCategory.EXTERNAL_API,
                f"Slow external API call: {api_name}",
                {"duration": duration_ms, "apiName": api_name},
            )
        self.app_logger.debug(
            LogCategory.EXTERNAL_API,
            f"External API call: {api_name}",
            {"duration": duration_ms, "apiName": api_name, "success": success},
        )

    def stats(self) -> Dict[str, Any]:
        calls = self.call_count
        return {
            "callCount": calls,
            "failureCount": self.failure_count,
            "slowCallCount": self.slow_call_count,
            "totalCallTime": round(self.total_call_time_ms, 2),
            "averageCallTime": round(self.total_call_time_ms / calls, 2) if calls else 0.0,
            "successRate": round((calls - self.failure_count) / calls * 100, 2) if calls else 100.0,
        }


class DatabaseMonitor:
    """
    Query statistics with a warning for slow queries.

    instrument() hooks the engine's cursor events; record() can also be
    called directly with a measured duration.
    """

    def __init__(
        self,
        app_logger: Optional[StructuredLogger] = None,
        slow_threshold_ms: float = SLOW_QUERY_THRESHOLD_MS,
    ):
        self.app_logger = app_logger
        self.slow_threshold_ms = slow_threshold_ms
        self._instrumented = set()
        self.reset()

    def reset(self) -> None:
        self.query_count = 0
        self.slow_query_count = 0
        self.total_query_time_ms = 0.0

    def record(self, duration_ms: float, statement: Optional[str] = None) -> None:
        self.query_count += 1
        self.total_query_time_ms += duration_ms

        if duration_ms > self.slow_threshold_ms:
            self.slow_query_count += 1
            if self.app_logger is not None:
                self.app_logger.warn(
                    LogCategory.DATABASE,
                    "Slow database query detected",
                    {
                        "duration": duration_ms,
                        "queryNumber": self.query_count,
                        "statement": (statement or "")[:200],
                    },
                )

    def stats(self) -> Dict[str, Any]:
        queries = self.query_count
        return {
            "queryCount": queries,
            "slowQueryCount": self.slow_query_count,
            "totalQueryTime": round(self.total_query_time_ms, 2),
            "averageQueryTime": round(self.total_query_time_ms / queries, 2) if queries else 0.0,
        }

    def instrument(self, engine: AsyncEngine) -> None:
        """Time every statement executed through engine (idempotent)."""
        sync_engine = engine.sync_engine
        if id(sync_engine) in self._instrumented:
            return

        @event.listens_for(sync_engine, "before_cursor_execute")
        def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            conn.info.setdefault("query_start_time", []).append(time.perf_counter())

        @event.listens_for(sync_engine, "after_cursor_execute")
        def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            started = conn.info["query_start_time"].pop()
            self.record(round((time.perf_counter() - started) * 1000, 2), statement)

        @event.listens_for(sync_engine, "handle_error")
        def handle_error(exception_context):
            conn = exception_context.connection
            if conn is not None and conn.info.get("query_start_time"):
                conn.info["query_start_time"].pop()

        self._instrumented.add(id(sync_engine))


class MemoryMonitor:
    """
    Periodic resident memory check.

    Above the critical threshold an ERROR is logged (and alerted), above the
    warning threshold a WARN.
    """

    def __init__(
        self,
        app_logger: StructuredLogger,
        warning_bytes: int = MEMORY_WARNING_BYTES,
        critical_bytes: int = MEMORY_CRITICAL_BYTES,
        interval: Optional[float] = 60.0,
        memory_reader: Callable[[], MemoryUsage] = read_process_memory,
    ):
        self.app_logger = app_logger
        self.warning_bytes = warning_bytes
        self.critical_bytes = max(warning_bytes, critical_bytes)
        self.interval = interval
        self.memory_reader = memory_reader
        self._check_task: Optional[asyncio.Task] = None

    def check(self) -> Optional[str]:
        """
        Read memory usage and log it when over a threshold.

        Returns:
            "critical", "warning" or None
        """
        usage = self.memory_reader()
        details = usage.as_mb()

        if usage.rss > self.critical_bytes:
            self.app_logger.error(LogCategory.PERFORMANCE, "Critical memory usage detected", None, details)
            return "critical"
        if usage.rss > self.warning_bytes:
            self.app_logger.warn(LogCategory.PERFORMANCE, "High memory usage detected", details)
            return "warning"
        return None

    def start(self) -> None:
        """Start the periodic check. Must be called from a running event loop."""
        if self.interval is None or self._check_task is not None:
            return
        self._check_task = asyncio.get_running_loop().create_task(self._check_periodically())

    async def _check_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.check()
            except Exception as e:
                logger.error(f"Memory check failed: {e}", exc_info=True)

    async def stop(self) -> None:
        if self._check_task is None:
            return
        self._check_task.cancel()
        try:
            await self._check_task
        except asyncio.CancelledError:
            pass
        self._check_task = None
