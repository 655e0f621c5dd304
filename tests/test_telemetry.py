"""
Tests for telemetry wiring: settings resolution, the database log sink and
log statistics.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from conftest import RecordingSink
from offmarket.core.exceptions import LogSinkError
from offmarket.core.logger import LogCategory, LogEntry, LogLevel, StructuredLogger
from offmarket.core.performance import MB, MemoryMonitor
from offmarket.core.rate_limit import RateLimiter
from offmarket.core.setting import Settings
from offmarket.core.telemetry_manager import (
    build_alert_notifier,
    build_app_logger,
    build_memory_monitor,
    build_rate_limiter,
    build_request_monitor,
    configure_telemetry,
    get_api_monitor,
    get_memory_monitor,
    initialize_telemetry,
    resolve_min_level,
    shutdown_telemetry,
)
from offmarket.db.models import SystemLog
from offmarket.ratelimit import FixedWindowCounterStore, SharedFixedWindowStore, SlidingWindowCounterStore
from offmarket.services.alerting import ConsoleAlertNotifier, WebhookAlertNotifier
from offmarket.services.log_sink import DatabaseLogSink, entry_to_row
from offmarket.services.log_stats_service import LogStatsService


class TestTelemetryManager:

    def test_min_level_defaults_by_environment(self):
        assert resolve_min_level(Settings(ENV_SETTING="production")) == LogLevel.INFO
        assert resolve_min_level(Settings(ENV_SETTING="dev")) == LogLevel.DEBUG

    def test_min_level_from_setting(self):
        assert resolve_min_level(Settings(LOG_LEVEL="warning")) == LogLevel.WARN
        assert resolve_min_level(Settings(ENV_SETTING="production", LOG_LEVEL="bogus")) == LogLevel.INFO

    def test_alert_notifier_selection(self):
        webhook = build_alert_notifier(Settings(ALERT_WEBHOOK_URL="https://hooks.test/x"))
        assert isinstance(webhook, WebhookAlertNotifier)
        assert isinstance(build_alert_notifier(Settings(ENV_SETTING="production")), ConsoleAlertNotifier)
        assert build_alert_notifier(Settings(ENV_SETTING="dev")) is None

    def test_app_logger_without_database(self):
        app_logger = build_app_logger(Settings(ENABLE_DATABASE_LOGGING=False, LOG_BUFFER_SIZE=7))

        assert app_logger.sink is None
        assert app_logger.buffer_size == 7

    def test_app_logger_with_database(self):
        app_logger = build_app_logger(Settings(ENABLE_DATABASE_LOGGING=True, ENV_SETTING="staging"))

        assert isinstance(app_logger.sink, DatabaseLogSink)
        assert app_logger.environment == "staging"

    def test_in_memory_rate_limiter(self):
        limiter = build_rate_limiter(StructuredLogger(), Settings(RATE_LIMIT_STORAGE_URI="memory"))

        assert isinstance(limiter.fixed_store, FixedWindowCounterStore)
        assert isinstance(limiter.sliding_store, SlidingWindowCounterStore)

    def test_shared_rate_limiter(self):
        limiter = build_rate_limiter(
            StructuredLogger(),
            Settings(RATE_LIMIT_STORAGE_URI="async+memory://", RATE_LIMIT_ENABLED=False),
        )

        assert isinstance(limiter.fixed_store, SharedFixedWindowStore)
        assert limiter.sliding_store is limiter.fixed_store
        assert not limiter.enabled

    def test_request_sampling_defaults_by_environment(self):
        app_logger = StructuredLogger()

        assert build_request_monitor(app_logger, Settings(ENV_SETTING="production")).enabled
        assert not build_request_monitor(app_logger, Settings(ENV_SETTING="dev")).enabled
        assert build_request_monitor(app_logger, Settings(PERFORMANCE_MONITORING_ENABLED=True)).enabled

    def test_memory_monitor_thresholds_from_settings(self):
        monitor = build_memory_monitor(
            StructuredLogger(),
            Settings(MEMORY_WARNING_MB=256, MEMORY_CRITICAL_MB=512, MEMORY_CHECK_INTERVAL_SECONDS=15),
        )

        assert monitor.warning_bytes == 256 * MB
        assert monitor.critical_bytes == 512 * MB
        assert monitor.interval == 15

    def test_new_logger_rebuilds_monitors(self):
        first = StructuredLogger()
        configure_telemetry(app_logger=first)
        assert get_api_monitor().app_logger is first

        second = StructuredLogger()
        configure_telemetry(app_logger=second)

        assert get_api_monitor().app_logger is second
        assert get_memory_monitor().app_logger is second


class TestDatabaseLogSink:

    def test_entry_to_row(self):
        entry = LogEntry(
            level=LogLevel.WARN,
            category=LogCategory.SEARCH,
            message="m" * 1200,
            metadata={"when": datetime(2026, 1, 1), "ids": (1, 2)},
            request_id="req-1",
            tags=["search", "slow"],
        )

        row = entry_to_row(entry, environment="production")

        assert row.level == "WARN"
        assert len(row.message) == 1000
        assert row.log_metadata == {"when": "2026-01-01 00:00:00", "ids": [1, 2]}
        assert row.tags == "search,slow"
        assert row.environment == "production"
        assert row.timestamp.tzinfo is None

    @pytest.mark.asyncio
    async def test_write_inserts_rows(self, session_factory):
        sink = DatabaseLogSink(session_factory, environment="dev")
        log = StructuredLogger(LogLevel.DEBUG, sink=sink, buffer_size=100)
        log.info(LogCategory.ENRICHMENT, "enriched", {"companyId": 4})
        log.error(LogCategory.EMAIL, "bounced")

        assert await log.flush()

        async with session_factory() as session:
            rows = (await session.execute(select(SystemLog).order_by(SystemLog.id))).scalars().all()
        assert [(r.level, r.category, r.message) for r in rows] == [
            ("INFO", "ENRICHMENT", "enriched"),
            ("ERROR", "EMAIL", "bounced"),
        ]
        assert rows[0].log_metadata == {"companyId": 4}

    @pytest.mark.asyncio
    async def test_write_failure_raises_sink_error(self):
        def broken_session_factory():
            raise RuntimeError("no database")

        sink = DatabaseLogSink(broken_session_factory)
        entry = LogEntry(level=LogLevel.INFO, category=LogCategory.API, message="x")

        with pytest.raises(LogSinkError):
            await sink.write([entry])


class TestLogStats:

    @pytest.mark.asyncio
    async def test_breakdowns(self, session_factory):
        now = datetime(2026, 10, 18, 12, 0)

        def row(level, category, hours_ago):
            created = now - timedelta(hours=hours_ago)
            return SystemLog(level=level, category=category, message="x", timestamp=created, created_at=created)

        async with session_factory() as session:
            session.add_all([
                row("INFO", "API", 1),
                row("INFO", "API", 1.5),
                row("WARN", "SECURITY", 3),
                row("ERROR", "EMAIL", 11),
                row("ERROR", "EMAIL", 30),  # outside the window
            ])
            await session.commit()

        async with session_factory() as session:
            stats = await LogStatsService(session).get_log_stats(hours=24, now=now)

        assert stats["total"] == 4
        assert stats["levelBreakdown"] == {"INFO": 2, "WARN": 1, "ERROR": 1}
        assert stats["categoryBreakdown"] == {"API": 2, "SECURITY": 1, "EMAIL": 1}
        assert stats["hourlyBreakdown"] == {"01": 1, "09": 1, "10": 1, "11": 1}
        assert stats["since"] == "2026-10-17T12:00:00"


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_startup_and_shutdown(self):
        sink = RecordingSink()
        app_logger = StructuredLogger(LogLevel.DEBUG, sink=sink, buffer_size=100, flush_interval=3600)
        limiter = RateLimiter(
            FixedWindowCounterStore(sweep_interval=3600),
            SlidingWindowCounterStore(sweep_interval=3600),
            app_logger=app_logger,
        )
        memory_monitor = MemoryMonitor(app_logger, interval=3600)
        configure_telemetry(app_logger=app_logger, rate_limiter=limiter, memory_monitor=memory_monitor)

        await initialize_telemetry()
        assert limiter.fixed_store._sweep_task is not None
        assert app_logger._flush_task is not None
        assert memory_monitor._check_task is not None

        app_logger.info(LogCategory.APPLICATION, "before shutdown")
        await shutdown_telemetry()

        assert [e.message for e in sink.written] == ["before shutdown"]
        assert limiter.fixed_store._sweep_task is None
        assert limiter.sliding_store._sweep_task is None
        assert app_logger._flush_task is None
        assert memory_monitor._check_task is None
