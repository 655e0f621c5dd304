"""
FastAPI Dependencies

- rate_limit(route_class): applies the route class's quota to an endpoint
- require_cron_secret: bearer-token check for cron and admin endpoints
"""

import hmac
import time

from fastapi import Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse

from offmarket.core.exceptions import RateLimitExceeded
from offmarket.core.rate_limit import RATE_LIMITS, RateLimitDecision, resolve_identity
from offmarket.core.setting import settings
from offmarket.core.telemetry_manager import get_rate_limiter


def rate_limit(route_class: str):
    """
    Build a dependency enforcing RATE_LIMITS[route_class].

    Usage:
        @router.get("/search", dependencies=[Depends(rate_limit("search"))])

    Allowed responses get the X-RateLimit-* headers; denied requests raise
    RateLimitExceeded, turned into a 429 by rate_limit_exceeded_handler.
    """
    config = RATE_LIMITS[route_class]

    async def dependency(request: Request, response: Response) -> RateLimitDecision:
        identity = resolve_identity(
            request,
            trusted_proxies=settings.TRUSTED_PROXIES,
            trust_user_id_header=settings.TRUST_USER_ID_HEADER,
        )
        decision = await get_rate_limiter().evaluate(
            identity,
            config,
            request.url.path,
            metadata={"userAgent": request.headers.get("User-Agent"), "routeClass": route_class},
        )
        if not decision.allowed:
            raise RateLimitExceeded(decision, config.message)

        for name, value in decision.headers().items():
            response.headers[name] = value
        return decision

    return dependency


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Turn a denied decision into a 429 response with quota headers."""
    now = time.time()
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "error": exc.message,
            "retryAfter": exc.decision.retry_after(now),
        },
        headers=exc.decision.headers(now),
    )


async def require_cron_secret(request: Request) -> None:
    """
    Require "Authorization: Bearer <CRON_SECRET>".

    Raises:
        HTTPException 401: Secret missing, not configured, or wrong
    """
    expected = settings.CRON_SECRET
    # Header values arrive latin-1 decoded; compare raw bytes
    provided = request.headers.get("Authorization", "").encode("latin-1")
    if not expected or not hmac.compare_digest(provided, f"Bearer {expected}".encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized"
        )


CronAuth = Depends(require_cron_secret)
