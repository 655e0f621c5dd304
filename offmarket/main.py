"""
FastAPI Application Entry Point

This module initializes the FastAPI application and configures:
- API routes (cron triggers, admin)
- Middleware (request telemetry, CORS)
- Rate limit error handling
- Startup/shutdown of the logger flush and counter sweeps

Shutdown: uvicorn turns SIGINT/SIGTERM into the shutdown event, which makes
the final log flush before the process exits.
"""

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from offmarket.api.deps import rate_limit, rate_limit_exceeded_handler
from offmarket.api.endpoints import admin_router, cron_router
from offmarket.api.schemas import HealthResponse, RateLimitErrorResponse
from offmarket.core.exceptions import RateLimitExceeded
from offmarket.core.setting import settings
from offmarket.core.telemetry_manager import (
    get_app_logger,
    get_rate_limiter,
    initialize_telemetry,
    shutdown_telemetry,
)
from offmarket.middleware.logging import add_logging_middleware

app = FastAPI(
    title="Exit School Off-Market Tool",
    description="Rate limiting, structured telemetry and scheduled jobs for the off-market tool",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

add_logging_middleware(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", tags=["Health"])
async def root():
    return {
        "message": "Exit School Off-Market Tool",
        "version": "1.0.0",
        "docs": "/docs"
    }


@app.get(
    "/health",
    tags=["Health"],
    response_model=HealthResponse,
    responses={429: {"model": RateLimitErrorResponse}},
    dependencies=[Depends(rate_limit("health"))],
)
async def health_check() -> HealthResponse:
    """
    Health check endpoint for monitoring.

    Reports this instance's buffered log entries; the buffer and the rate
    limit counters are per instance.
    """
    return HealthResponse(
        status="healthy",
        environment=settings.ENV_SETTING.value,
        bufferedLogEntries=get_app_logger().buffered_count,
        rateLimiting=get_rate_limiter().enabled,
    )


app.include_router(cron_router, tags=["Cron"])
app.include_router(admin_router, tags=["Admin"])


@app.on_event("startup")
async def startup_event():
    """Start the log flush and counter sweeps."""
    await initialize_telemetry()


@app.on_event("shutdown")
async def shutdown_event():
    """Stop background tasks and flush remaining log entries."""
    await shutdown_telemetry()
