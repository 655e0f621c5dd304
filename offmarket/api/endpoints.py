"""
FastAPI Endpoints for the Off-Market Service

Endpoints only handle:
- Authentication of the scheduler / admin caller (bearer secret)
- Rate limiting
- Error handling and HTTP responses
- Delegating to the service layer

Routes:
- POST /api/cron/{job_name}        Run a scheduled job (enrichments, emails,
                                   maintenance, reports, all)
- GET  /api/cron/{job_name}        Liveness of a cron route
- GET  /admin/logs/stats           Persisted log statistics
- POST /admin/logs/flush           Flush this instance's log buffer
- DELETE /admin/rate-limits/{key}  Unblock a rate limit key
- GET  /admin/edge-functions/health Reachability of the edge functions
- GET  /admin/performance          Call, query and memory statistics
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from offmarket.api.deps import CronAuth, rate_limit
from offmarket.api.schemas import (
    EdgeFunctionHealthResponse,
    LogStatsResponse,
    PerformanceStatsResponse,
    RateLimitResetResponse,
)
from offmarket.core.exceptions import DatabaseError, UnknownJobError
from offmarket.core.logger import LogCategory
from offmarket.core.performance import read_process_memory
from offmarket.core.setting import settings
from offmarket.core.telemetry_manager import (
    get_api_monitor,
    get_app_logger,
    get_db_monitor,
    get_rate_limiter,
    get_request_monitor,
)
from offmarket.db.models import utc_now
from offmarket.db.session import get_session
from offmarket.services.cron_jobs import JOB_NAMES, CronJobManager, build_cron_manager
from offmarket.services.edge_functions import EdgeFunctionClient
from offmarket.services.log_stats_service import LogStatsService

cron_router = APIRouter(prefix="/api/cron")
admin_router = APIRouter(prefix="/admin", dependencies=[CronAuth, Depends(rate_limit("api"))])


def get_cron_manager() -> CronJobManager:
    return build_cron_manager()


def get_edge_client() -> EdgeFunctionClient:
    return EdgeFunctionClient(
        settings.EDGE_FUNCTIONS_URL,
        token=settings.EDGE_FUNCTIONS_TOKEN,
        api_monitor=get_api_monitor(),
    )


@cron_router.post(
    "/{job_name}",
    summary="Run a scheduled job",
    description="Runs one job, or all jobs in sequence, and returns their results",
    dependencies=[CronAuth],
)
async def run_job(job_name: str, manager: CronJobManager = Depends(get_cron_manager)) -> dict:
    """
    Raises:
        HTTPException 400: If the job name is unknown
        HTTPException 401: If the cron secret is missing or wrong
    """
    app_logger = get_app_logger()
    app_logger.info(LogCategory.CRON_JOB, f"Cron job {job_name} triggered")

    try:
        result = await manager.run(job_name)
    except UnknownJobError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{e}. Expected one of: {', '.join(JOB_NAMES)}"
        )

    return {"success": True, "job": job_name, "result": result.model_dump()}


@cron_router.get("/{job_name}", summary="Cron route liveness")
async def job_health(job_name: str) -> dict:
    """
    Raises:
        HTTPException 404: If the job name is unknown
    """
    if job_name not in JOB_NAMES:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown cron job: {job_name}"
        )
    return {
        "status": "healthy",
        "service": job_name,
        "timestamp": utc_now().isoformat(),
    }


@admin_router.get(
    "/logs/stats",
    response_model=LogStatsResponse,
    summary="Log statistics",
    description="Counts of persisted log entries by level, category and hour",
)
async def log_stats(
    hours: int = Query(24, ge=1, le=24 * 90),
    session: AsyncSession = Depends(get_session),
) -> LogStatsResponse:
    try:
        stats = await LogStatsService(session).get_log_stats(hours)
    except DatabaseError as e:
        get_app_logger().error(LogCategory.DATABASE, "Log statistics query failed", e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )
    return LogStatsResponse(**stats)


@admin_router.post("/logs/flush", summary="Flush buffered log entries")
async def flush_logs() -> dict:
    app_logger = get_app_logger()
    buffered = app_logger.buffered_count
    flushed = await app_logger.flush()
    return {"flushed": flushed, "entries": buffered, "remaining": app_logger.buffered_count}


@admin_router.delete(
    "/rate-limits/{key:path}",
    response_model=RateLimitResetResponse,
    summary="Unblock a rate limit key",
    description="Keys look like 'ip:<address>:<path>' or 'user:<id>:<path>'",
)
async def reset_rate_limit(key: str) -> RateLimitResetResponse:
    await get_rate_limiter().reset(key)
    get_app_logger().security("Rate limit reset", "LOW", {"key": key})
    return RateLimitResetResponse(key=key)


@admin_router.get(
    "/edge-functions/health",
    response_model=EdgeFunctionHealthResponse,
    summary="Edge function reachability",
)
async def edge_functions_health(
    client: EdgeFunctionClient = Depends(get_edge_client),
) -> EdgeFunctionHealthResponse:
    return EdgeFunctionHealthResponse(**await client.check_health())


@admin_router.get(
    "/performance",
    response_model=PerformanceStatsResponse,
    summary="Performance statistics",
    description="Edge function call and database query statistics of this instance, plus its memory usage",
)
async def performance_stats() -> PerformanceStatsResponse:
    return PerformanceStatsResponse(
        externalApi=get_api_monitor().stats(),
        database=get_db_monitor().stats(),
        memory=read_process_memory().as_mb(),
        requestSampling=get_request_monitor().enabled,
    )
