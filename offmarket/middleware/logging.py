"""
Request Telemetry Middleware

This middleware sets up the log context of each request and records it.
It captures:
- Request id (X-Request-ID header, or a new UUID)
- Client IP address and user agent
- Response status code and processing time

Design Decisions:
- Uses Starlette's BaseHTTPMiddleware; the endpoint runs in a child task that
  inherits the context set here, and other requests never see it
- Requests are logged through the structured logger's api() wrapper, so
  5xx responses are ERROR and 4xx are WARN
- Slow requests (SLOW_REQUEST_THRESHOLD_MS) get an extra PERFORMANCE warning
- A sampled share of requests is also recorded by the performance monitor
"""

import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from offmarket.core import request_context
from offmarket.core.logger import LogCategory
from offmarket.core.rate_limit import get_client_ip
from offmarket.core.setting import settings
from offmarket.core.telemetry_manager import get_app_logger, get_request_monitor

EXCLUDED_PATHS = ("/health", "/docs", "/redoc", "/openapi.json", "/favicon.ico")


class RequestTelemetryMiddleware(BaseHTTPMiddleware):
    """Binds request identifiers to the log context and logs every request."""

    def __init__(self, app, slow_request_threshold_ms: int = 2000):
        super().__init__(app)
        self.slow_request_threshold_ms = slow_request_threshold_ms

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or request_context.generate_request_id()
        client_ip = get_client_ip(request, settings.TRUSTED_PROXIES)

        request_context.clear_context()
        request_context.set_context(
            request_id=request_id,
            ip=client_ip,
            user_agent=request.headers.get("User-Agent"),
        )

        app_logger = get_app_logger()
        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
            app_logger.error(
                LogCategory.API,
                f"Unhandled error on {request.method} {request.url.path}",
                e,
                {"durationMs": duration_ms},
            )
            request_context.clear_context()
            raise

        duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
        path = request.url.path

        if not path.startswith(EXCLUDED_PATHS):
            app_logger.api(request.method, path, response.status_code, duration_ms)
            if duration_ms > self.slow_request_threshold_ms:
                app_logger.warn(
                    LogCategory.PERFORMANCE,
                    f"Slow request detected: {request.method} {path}",
                    {"duration": duration_ms, "pathname": path, "statusCode": response.status_code},
                )

        request_monitor = get_request_monitor()
        if request_monitor.should_monitor(path):
            content_length = response.headers.get("Content-Length")
            request_monitor.record(
                request.method,
                path,
                response.status_code,
                duration_ms,
                user_agent=request.headers.get("User-Agent"),
                content_length=int(content_length) if content_length else None,
            )

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(duration_ms / 1000)
        request_context.clear_context()

        return response


def add_logging_middleware(app):
    """
    Add request telemetry middleware to FastAPI app.

    Args:
        app: FastAPI application instance
    """
    app.add_middleware(
        RequestTelemetryMiddleware,
        slow_request_threshold_ms=settings.SLOW_REQUEST_THRESHOLD_MS,
    )
