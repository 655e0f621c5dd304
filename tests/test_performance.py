"""
Tests for the performance monitors: thresholds, statistics and the
periodic memory check.
"""

import asyncio

import httpx
import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from offmarket.core.logger import LogCategory, LogLevel
from offmarket.core.performance import (
    MB,
    DatabaseMonitor,
    ExternalApiMonitor,
    MemoryMonitor,
    MemoryUsage,
    RequestPerformanceMonitor,
)
from offmarket.db.sqlite_adapter import SQLiteAdapter
from offmarket.services.edge_functions import EdgeFunctionClient


def fixed_memory(rss_mb, vms_mb=None):
    usage = MemoryUsage(rss=rss_mb * MB, vms=(vms_mb or rss_mb * 2) * MB)
    return lambda: usage


class TestRequestPerformanceMonitor:

    def test_disabled_never_samples(self, app_logger):
        monitor = RequestPerformanceMonitor(app_logger, enabled=False, sample_rate=1.0)

        assert not monitor.should_monitor("/api/cron/all")

    def test_sample_rate_bounds(self, app_logger):
        always = RequestPerformanceMonitor(app_logger, enabled=True, sample_rate=1.0)
        never = RequestPerformanceMonitor(app_logger, enabled=True, sample_rate=0.0)

        assert all(always.should_monitor("/admin/logs/stats") for _ in range(50))
        assert not any(never.should_monitor("/admin/logs/stats") for _ in range(50))

    def test_excluded_paths(self, app_logger):
        monitor = RequestPerformanceMonitor(app_logger, enabled=True, sample_rate=1.0)

        assert not monitor.should_monitor("/health")
        assert not monitor.should_monitor("/docs")

    def test_record_is_performance_entry(self, app_logger, console):
        _, handler = console
        monitor = RequestPerformanceMonitor(
            app_logger, enabled=True, sample_rate=1.0, memory_reader=fixed_memory(120, 300)
        )

        monitor.record("GET", "/admin/logs/stats", 200, 42.5, user_agent="curl/8", content_length=120)

        entry = handler.entries()[0]
        assert entry.level == LogLevel.INFO
        assert entry.category == LogCategory.API
        assert entry.message == "Performance: GET /admin/logs/stats"
        assert entry.duration == 42.5
        assert entry.metadata["statusCode"] == 200
        assert entry.metadata["memoryUsage"] == {"rssMB": 120, "vmsMB": 300}
        assert entry.metadata["performanceMonitoring"] is True


class TestExternalApiMonitor:

    def test_statistics(self):
        monitor = ExternalApiMonitor()

        monitor.record("enrich-company", 100.0, success=True)
        monitor.record("enrich-company", 300.0, success=False)

        assert monitor.stats() == {
            "callCount": 2,
            "failureCount": 1,
            "slowCallCount": 0,
            "totalCallTime": 400.0,
            "averageCallTime": 200.0,
            "successRate": 50.0,
        }

    def test_empty_statistics(self):
        stats = ExternalApiMonitor().stats()

        assert stats["averageCallTime"] == 0.0
        assert stats["successRate"] == 100.0

    def test_slow_call_threshold(self, app_logger, console):
        _, handler = console
        monitor = ExternalApiMonitor(app_logger)

        monitor.record("generate-report", 5000.0, success=True)
        assert handler.entries(LogLevel.WARN) == []

        monitor.record("generate-report", 5000.1, success=True)
        warnings = handler.entries(LogLevel.WARN)
        assert len(warnings) == 1
        assert warnings[0].category == LogCategory.EXTERNAL_API
        assert warnings[0].message == "Slow external API call: generate-report"
        assert monitor.stats()["slowCallCount"] == 1

    def test_reset(self):
        monitor = ExternalApiMonitor()
        monitor.record("send-emails", 10.0, success=False)

        monitor.reset()

        assert monitor.stats()["callCount"] == 0

    @pytest.mark.asyncio
    async def test_edge_client_records_calls(self):
        responses = iter([httpx.Response(200, json={"success": True}), httpx.Response(500)])
        monitor = ExternalApiMonitor()
        client = EdgeFunctionClient(
            "https://functions.test/functions/v1",
            transport=httpx.MockTransport(lambda request: next(responses)),
            backoff_seconds=0,
            api_monitor=monitor,
        )

        await client.enrich_company(1)
        await client.generate_report(1, "user-1")

        stats = monitor.stats()
        assert stats["callCount"] == 2
        assert stats["failureCount"] == 1


class TestDatabaseMonitor:

    def test_slow_query_threshold(self, app_logger, console):
        _, handler = console
        monitor = DatabaseMonitor(app_logger)

        monitor.record(1000.0, "SELECT 1")
        monitor.record(1500.0, "SELECT * FROM system_logs")

        warnings = handler.entries(LogLevel.WARN)
        assert len(warnings) == 1
        assert warnings[0].category == LogCategory.DATABASE
        assert warnings[0].metadata["queryNumber"] == 2
        assert warnings[0].metadata["statement"] == "SELECT * FROM system_logs"
        assert monitor.stats() == {
            "queryCount": 2,
            "slowQueryCount": 1,
            "totalQueryTime": 2500.0,
            "averageQueryTime": 1250.0,
        }

    @pytest.mark.asyncio
    async def test_instrumented_engine_counts_queries(self):
        engine = SQLiteAdapter().create_engine("sqlite+aiosqlite://", poolclass=StaticPool)
        monitor = DatabaseMonitor()
        monitor.instrument(engine)
        monitor.instrument(engine)

        async with engine.connect() as conn:
            before = monitor.stats()["queryCount"]
            await conn.execute(text("SELECT 1"))
            await conn.execute(text("SELECT 2"))
            with pytest.raises(OperationalError):
                await conn.execute(text("SELECT * FROM missing_table"))
            after = monitor.stats()["queryCount"]

        await engine.dispose()

        assert after - before == 2

    @pytest.mark.asyncio
    async def test_slow_query_threshold_with_engine(self, app_logger, console):
        _, handler = console
        engine = SQLiteAdapter().create_engine("sqlite+aiosqlite://", poolclass=StaticPool)
        monitor = DatabaseMonitor(app_logger, slow_threshold_ms=-1)
        monitor.instrument(engine)

        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

        await engine.dispose()

        statements = [w.metadata["statement"] for w in handler.entries(LogLevel.WARN)]
        assert "SELECT 1" in statements


class TestMemoryMonitor:

    def test_below_warning(self, app_logger, console):
        _, handler = console
        monitor = MemoryMonitor(app_logger, memory_reader=fixed_memory(200))

        assert monitor.check() is None
        assert handler.entries() == []

    def test_warning_threshold(self, app_logger, console):
        _, handler = console
        monitor = MemoryMonitor(app_logger, memory_reader=fixed_memory(600))

        assert monitor.check() == "warning"

        entry = handler.entries(LogLevel.WARN)[0]
        assert entry.category == LogCategory.PERFORMANCE
        assert entry.message == "High memory usage detected"
        assert entry.metadata["rssMB"] == 600

    def test_critical_threshold(self, app_logger, console):
        _, handler = console
        monitor = MemoryMonitor(app_logger, memory_reader=fixed_memory(1200))

        assert monitor.check() == "critical"

        entry = handler.entries(LogLevel.ERROR)[0]
        assert entry.message == "Critical memory usage detected"
        assert handler.entries(LogLevel.WARN) == []

    @pytest.mark.asyncio
    async def test_periodic_check_start_and_stop(self, app_logger, console):
        _, handler = console
        monitor = MemoryMonitor(app_logger, interval=0.01, memory_reader=fixed_memory(600))

        monitor.start()
        first_task = monitor._check_task
        monitor.start()
        assert monitor._check_task is first_task

        for _ in range(100):
            if handler.entries(LogLevel.WARN):
                break
            await asyncio.sleep(0.01)
        await monitor.stop()

        assert handler.entries(LogLevel.WARN)
        assert monitor._check_task is None
        assert first_task.cancelled()

    @pytest.mark.asyncio
    async def test_no_interval_never_starts(self, app_logger):
        monitor = MemoryMonitor(app_logger, interval=None)

        monitor.start()

        assert monitor._check_task is None
        await monitor.stop()
