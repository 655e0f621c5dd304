"""
Rate Limiting

This module decides whether a request may proceed and builds the quota
headers returned to clients.

Rate Limits (per identity and route path):
    - api:     1000 requests / 15 minutes (general API traffic)
    - auth:      50 requests / 15 minutes (sliding window, abuse-prone)
    - search:    30 requests / minute
    - email:    100 requests / hour (sliding window, costly)
    - reports:   50 requests / hour
    - health:   100 requests / minute

Design Decisions:
- Identity is the authenticated user id when known, otherwise the client IP.
  Clients behind the same NAT or proxy share one quota until they log in.
- Forwarded-for headers are only honoured from TRUSTED_PROXIES (when set)
- Whitelisted addresses bypass the stores entirely
- The limiter fails open: a store error allows the request and is logged
  at ERROR. Availability matters more than strict quotas here.
- Counters are process-local unless RATE_LIMIT_STORAGE_URI points at a
  shared backend; with N instances a client may get N times the quota.

Error Responses:
    - 429 Too Many Requests with X-RateLimit-Limit, X-RateLimit-Remaining,
      X-RateLimit-Reset and Retry-After headers
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional

from starlette.requests import Request

from offmarket.core.logger import LogCategory, StructuredLogger
from offmarket.ratelimit import CounterStore

FIXED_WINDOW = "fixed"
SLIDING_WINDOW = "sliding"


@dataclass(frozen=True)
class RateLimitConfig:
    window_ms: int
    max_requests: int
    message: str = "Rate limit exceeded"
    strategy: str = FIXED_WINDOW


RATE_LIMITS: Dict[str, RateLimitConfig] = {
    "api": RateLimitConfig(
        window_ms=15 * 60 * 1000,
        max_requests=1000,
        message="Too many requests from this IP, please try again later.",
    ),
    "auth": RateLimitConfig(
        window_ms=15 * 60 * 1000,
        max_requests=50,
        message="Too many authentication attempts, please try again later.",
        strategy=SLIDING_WINDOW,
    ),
    "search": RateLimitConfig(
        window_ms=60 * 1000,
        max_requests=30,
        message="Search rate limit exceeded, please wait before searching again.",
    ),
    "email": RateLimitConfig(
        window_ms=60 * 60 * 1000,
        max_requests=100,
        message="Email sending limit exceeded, please try again later.",
        strategy=SLIDING_WINDOW,
    ),
    "reports": RateLimitConfig(
        window_ms=60 * 60 * 1000,
        max_requests=50,
        message="Report generation limit exceeded, please try again later.",
    ),
    "health": RateLimitConfig(
        window_ms=60 * 1000,
        max_requests=100,
        message="Health check rate limit exceeded.",
    ),
}


@dataclass(frozen=True)
class RequestIdentity:
    """Who a request is counted against."""
    ip: str
    user_id: Optional[str] = None

    @property
    def key_prefix(self) -> str:
        return f"user:{self.user_id}" if self.user_id else f"ip:{self.ip}"

    def key_for(self, path: str) -> str:
        return f"{self.key_prefix}:{path}"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_epoch_seconds: int

    def retry_after(self, now: Optional[float] = None) -> int:
        """Seconds until the quota resets (never negative)."""
        now = time.time() if now is None else now
        return max(0, self.reset_epoch_seconds - math.ceil(now))

    def headers(self, now: Optional[float] = None) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_epoch_seconds),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after(now))
        return headers


def get_client_ip(request: Request, trusted_proxies: Iterable[str] = ()) -> str:
    """
    Extract the client IP address from a request.

    Checks X-Forwarded-For (first entry), X-Real-IP and CF-Connecting-IP,
    then the socket peer. Forwarded headers are ignored when trusted_proxies
    is non-empty and the peer is not one of them.

    Returns:
        IP address as string, "unknown" if nothing is available
    """
    peer = request.client.host if request.client else None
    trusted = set(trusted_proxies)

    if not trusted or (peer is not None and peer in trusted):
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            first = forwarded_for.split(",")[0].strip()
            if first:
                return first
        for header in ("X-Real-IP", "CF-Connecting-IP"):
            value = request.headers.get(header)
            if value:
                return value.strip()

    return peer or "unknown"


def resolve_identity(
    request: Request,
    trusted_proxies: Iterable[str] = (),
    trust_user_id_header: bool = False,
) -> RequestIdentity:
    """
    Derive the rate limit identity of a request.

    The user id comes from request.state.user_id (set by authentication),
    or from the X-User-Id header when trust_user_id_header is enabled.
    """
    user_id = getattr(request.state, "user_id", None)
    if not user_id and trust_user_id_header:
        user_id = request.headers.get("X-User-Id") or None
    return RequestIdentity(
        ip=get_client_ip(request, trusted_proxies),
        user_id=str(user_id) if user_id else None,
    )


class RateLimiter:
    """
    Rate limit decision function over a fixed-window and a sliding-window store.

    Args:
        fixed_store: Store used by configs with the fixed strategy
        sliding_store: Store used by configs with the sliding strategy
            (defaults to fixed_store)
        app_logger: Structured logger for deny and failure events
        whitelist: Client addresses that are never limited
        enabled: When False every request is allowed
        clock: Seconds since the epoch (injectable for tests)
    """

    def __init__(
        self,
        fixed_store: CounterStore,
        sliding_store: Optional[CounterStore] = None,
        *,
        app_logger: Optional[StructuredLogger] = None,
        whitelist: Iterable[str] = ("127.0.0.1", "::1"),
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.fixed_store = fixed_store
        self.sliding_store = sliding_store or fixed_store
        self.app_logger = app_logger
        self.whitelist = frozenset(whitelist)
        self.enabled = enabled
        self._clock = clock

    def store_for(self, config: RateLimitConfig) -> CounterStore:
        return self.sliding_store if config.strategy == SLIDING_WINDOW else self.fixed_store

    def is_whitelisted(self, identity: RequestIdentity) -> bool:
        return identity.ip in self.whitelist

    def _full_quota(self, config: RateLimitConfig) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=True,
            limit=config.max_requests,
            remaining=config.max_requests,
            reset_epoch_seconds=math.ceil(self._clock() + config.window_ms / 1000),
        )

    async def evaluate(
        self,
        identity: RequestIdentity,
        config: RateLimitConfig,
        path: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> RateLimitDecision:
        """
        Count a request and decide whether it may proceed.

        Never raises: store failures are logged and the request is allowed.
        """
        if not self.enabled or self.is_whitelisted(identity):
            return self._full_quota(config)

        key = identity.key_for(path)
        try:
            result = await self.store_for(config).consume(key, config.max_requests, config.window_ms)
        except Exception as e:
            if self.app_logger is not None:
                self.app_logger.error(
                    LogCategory.SECURITY,
                    "Rate limiting error",
                    e,
                    {"key": key, "path": path, "strategy": config.strategy},
                )
            return self._full_quota(config)

        if not result.success and self.app_logger is not None:
            self.app_logger.warn(
                LogCategory.SECURITY,
                "Rate limit exceeded",
                {
                    **(metadata or {}),
                    "key": key,
                    "totalHits": result.total_hits,
                    "maxRequests": config.max_requests,
                    "ip": identity.ip,
                    "userId": identity.user_id,
                    "path": path,
                    "strategy": config.strategy,
                },
            )

        return RateLimitDecision(
            allowed=result.success,
            limit=config.max_requests,
            remaining=result.remaining,
            reset_epoch_seconds=result.reset_epoch_seconds,
        )

    async def reset(self, key: str) -> None:
        """Clear a key in every store (admin unblock)."""
        await self.fixed_store.reset(key)
        if self.sliding_store is not self.fixed_store:
            await self.sliding_store.reset(key)

    def start(self) -> None:
        self.fixed_store.start()
        if self.sliding_store is not self.fixed_store:
            self.sliding_store.start()

    async def stop(self) -> None:
        await self.fixed_store.stop()
        if self.sliding_store is not self.fixed_store:
            await self.sliding_store.stop()
