"""
Telemetry Manager

This module owns the process-wide structured logger and rate limiter.

Design:
- One logger and one limiter per application instance, built from settings
- Created lazily on first use, so importing modules never opens resources
- Background work (log flush, counter sweeps, memory checks) starts on
  application startup and is cancelled on shutdown, followed by a final log
  flush
- Performance monitors share the logger; the database monitor is attached
  to the engine on startup
- Each instance keeps its own counters and log buffer
"""

import logging
from typing import Optional

from offmarket.core.logger import (
    AlertNotifier,
    LogLevel,
    StructuredLogger,
    build_console_logger,
)
from offmarket.core.performance import (
    MB,
    DatabaseMonitor,
    ExternalApiMonitor,
    MemoryMonitor,
    RequestPerformanceMonitor,
)
from offmarket.core.rate_limit import RateLimiter
from offmarket.core.setting import Settings, settings
from offmarket.ratelimit import (
    FixedWindowCounterStore,
    SharedFixedWindowStore,
    SlidingWindowCounterStore,
)

logger = logging.getLogger(__name__)

# Global instances (created on first use)
_app_logger: Optional[StructuredLogger] = None
_rate_limiter: Optional[RateLimiter] = None
_request_monitor: Optional[RequestPerformanceMonitor] = None
_api_monitor: Optional[ExternalApiMonitor] = None
_db_monitor: Optional[DatabaseMonitor] = None
_memory_monitor: Optional[MemoryMonitor] = None
_started = False


def resolve_min_level(config: Settings) -> LogLevel:
    """LOG_LEVEL if valid, otherwise INFO in production and DEBUG elsewhere."""
    level = LogLevel.parse(config.LOG_LEVEL)
    if level is not None:
        return level
    return LogLevel.INFO if config.is_production else LogLevel.DEBUG


def build_alert_notifier(config: Settings) -> Optional[AlertNotifier]:
    from offmarket.services.alerting import ConsoleAlertNotifier, WebhookAlertNotifier

    if config.ALERT_WEBHOOK_URL:
        return WebhookAlertNotifier(config.ALERT_WEBHOOK_URL)
    if config.is_production:
        return ConsoleAlertNotifier()
    return None


def build_app_logger(config: Settings = settings) -> StructuredLogger:
    sink = None
    if config.ENABLE_DATABASE_LOGGING:
        from offmarket.db.session import async_session_maker
        from offmarket.services.log_sink import DatabaseLogSink

        sink = DatabaseLogSink(async_session_maker, environment=config.ENV_SETTING.value)

    console = None
    if config.ENABLE_CONSOLE_LOGGING:
        console = build_console_logger(show_details=not config.is_production)

    return StructuredLogger(
        resolve_min_level(config),
        console=console,
        sink=sink,
        alert_notifier=build_alert_notifier(config),
        buffer_size=config.LOG_BUFFER_SIZE,
        buffer_capacity=config.LOG_BUFFER_CAPACITY,
        flush_interval=config.LOG_FLUSH_INTERVAL_SECONDS,
        environment=config.ENV_SETTING.value,
    )


def build_rate_limiter(app_logger: StructuredLogger, config: Settings = settings) -> RateLimiter:
    """
    Build the limiter from settings.

    With a shared storage URI both strategies use the shared fixed-window
    store, trading sliding-window precision for one global quota.
    """
    if config.RATE_LIMIT_STORAGE_URI and config.RATE_LIMIT_STORAGE_URI != "memory":
        shared = SharedFixedWindowStore(config.RATE_LIMIT_STORAGE_URI)
        fixed_store, sliding_store = shared, shared
    else:
        fixed_store = FixedWindowCounterStore(sweep_interval=config.FIXED_WINDOW_SWEEP_SECONDS)
        sliding_store = SlidingWindowCounterStore(sweep_interval=config.SLIDING_WINDOW_SWEEP_SECONDS)

    return RateLimiter(
        fixed_store,
        sliding_store,
        app_logger=app_logger,
        whitelist=config.RATE_LIMIT_WHITELIST,
        enabled=config.RATE_LIMIT_ENABLED,
    )


def build_request_monitor(app_logger: StructuredLogger, config: Settings = settings) -> RequestPerformanceMonitor:
    return RequestPerformanceMonitor(
        app_logger,
        enabled=config.performance_monitoring_enabled,
        sample_rate=config.PERFORMANCE_SAMPLE_RATE,
    )


def build_memory_monitor(app_logger: StructuredLogger, config: Settings = settings) -> MemoryMonitor:
    return MemoryMonitor(
        app_logger,
        warning_bytes=config.MEMORY_WARNING_MB * MB,
        critical_bytes=config.MEMORY_CRITICAL_MB * MB,
        interval=config.MEMORY_CHECK_INTERVAL_SECONDS,
    )


def get_app_logger() -> StructuredLogger:
    """Get the global structured logger, creating it on first use."""
    global _app_logger
    if _app_logger is None:
        _app_logger = build_app_logger()
    return _app_logger


def get_rate_limiter() -> RateLimiter:
    """Get the global rate limiter, creating it on first use."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = build_rate_limiter(get_app_logger())
    return _rate_limiter


def get_request_monitor() -> RequestPerformanceMonitor:
    global _request_monitor
    if _request_monitor is None:
        _request_monitor = build_request_monitor(get_app_logger())
    return _request_monitor


def get_api_monitor() -> ExternalApiMonitor:
    global _api_monitor
    if _api_monitor is None:
        _api_monitor = ExternalApiMonitor(get_app_logger(), slow_threshold_ms=settings.SLOW_EXTERNAL_API_THRESHOLD_MS)
    return _api_monitor


def get_db_monitor() -> DatabaseMonitor:
    global _db_monitor
    if _db_monitor is None:
        _db_monitor = DatabaseMonitor(get_app_logger(), slow_threshold_ms=settings.SLOW_QUERY_THRESHOLD_MS)
    return _db_monitor


def get_memory_monitor() -> MemoryMonitor:
    global _memory_monitor
    if _memory_monitor is None:
        _memory_monitor = build_memory_monitor(get_app_logger())
    return _memory_monitor


def configure_telemetry(
    app_logger: Optional[StructuredLogger] = None,
    rate_limiter: Optional[RateLimiter] = None,
    request_monitor: Optional[RequestPerformanceMonitor] = None,
    api_monitor: Optional[ExternalApiMonitor] = None,
    db_monitor: Optional[DatabaseMonitor] = None,
    memory_monitor: Optional[MemoryMonitor] = None,
) -> None:
    """
    Replace the global instances (used by tests and embedding applications).

    A new logger drops the monitors that are not passed in, so they are
    rebuilt around it on next use.
    """
    global _app_logger, _rate_limiter, _request_monitor, _api_monitor, _db_monitor, _memory_monitor
    if app_logger is not None:
        _app_logger = app_logger
        _request_monitor = _api_monitor = _db_monitor = _memory_monitor = None
    if rate_limiter is not None:
        _rate_limiter = rate_limiter
    if request_monitor is not None:
        _request_monitor = request_monitor
    if api_monitor is not None:
        _api_monitor = api_monitor
    if db_monitor is not None:
        _db_monitor = db_monitor
    if memory_monitor is not None:
        _memory_monitor = memory_monitor


async def initialize_telemetry() -> None:
    """Start the periodic log flush, the counter sweeps and the memory checks."""
    global _started

    if _started:
        logger.warning("Telemetry already initialized")
        return

    from offmarket.db.session import engine

    app_logger = get_app_logger()
    rate_limiter = get_rate_limiter()
    app_logger.start()
    rate_limiter.start()
    get_memory_monitor().start()
    get_db_monitor().instrument(engine)
    _started = True

    logger.info(
        f"Telemetry initialized: min_level={app_logger.min_level.name}, "
        f"persistent_logging={app_logger.sink is not None}, "
        f"rate_limiting={rate_limiter.enabled}, "
        f"request_sampling={get_request_monitor().enabled}"
    )


async def shutdown_telemetry() -> None:
    """Stop background tasks and flush the remaining log entries."""
    global _started

    if _memory_monitor is not None:
        await _memory_monitor.stop()

    if _rate_limiter is not None:
        try:
            await _rate_limiter.stop()
        except Exception as e:
            logger.warning(f"Failed to stop rate limiter sweeps: {e}")

    if _app_logger is not None:
        logger.info(f"Flushing {_app_logger.buffered_count} buffered log entries")
        await _app_logger.shutdown()

    _started = False
