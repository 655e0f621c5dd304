"""
Edge Function Client

HTTP client for the functions that do the actual enrichment, report
generation and email dispatch. The cron jobs only orchestrate; these calls
are where third-party APIs are hit.

Design Decisions:
- Every call has an explicit timeout (health 10s, enrichment/email 30s,
  reports 60s); a timed-out call is a failed call, not a crash
- Transient failures are retried a small fixed number of times with
  linear backoff (1s, 2s, ...); report generation is never retried
- Failures are returned as EdgeFunctionResponse(success=False), never raised
- Each call, retries included, is timed by an ExternalApiMonitor when one
  is given
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel

from offmarket.core.exceptions import EdgeFunctionError
from offmarket.core.logger import LogCategory, StructuredLogger
from offmarket.core.performance import ExternalApiMonitor

logger = logging.getLogger(__name__)

FUNCTION_NAMES = ("enrich-company", "generate-report", "send-emails")

HEALTH_TIMEOUT = 10.0
DEFAULT_TIMEOUT = 30.0
REPORT_TIMEOUT = 60.0


class EdgeFunctionResponse(BaseModel):
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    message: Optional[str] = None


class EdgeFunctionClient:
    """
    Client for the enrichment/report/email functions.

    Args:
        base_url: Functions base URL (e.g. https://<project>.supabase.co/functions/v1)
        token: Bearer token sent with every call
        transport: Optional httpx transport (tests use httpx.MockTransport)
        backoff_seconds: Base delay of the linear retry backoff
        app_logger: Structured logger for EXTERNAL_API events (optional)
        api_monitor: Call statistics and slow-call warnings (optional)
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        backoff_seconds: float = 1.0,
        app_logger: Optional[StructuredLogger] = None,
        api_monitor: Optional[ExternalApiMonitor] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.transport = transport
        self.backoff_seconds = backoff_seconds
        self.app_logger = app_logger
        self.api_monitor = api_monitor

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def call_function(
        self,
        function_name: str,
        payload: Dict[str, Any],
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = 1,
    ) -> EdgeFunctionResponse:
        """
        POST payload to a function.

        Returns:
            The function's response body, or success=False after the last
            failed attempt
        """
        started = time.perf_counter()
        result = await self._post_with_retries(function_name, payload, timeout, retries)
        if self.api_monitor is not None:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            self.api_monitor.record(function_name, duration_ms, result.success)
        return result

    async def _post_with_retries(
        self,
        function_name: str,
        payload: Dict[str, Any],
        timeout: float,
        retries: int,
    ) -> EdgeFunctionResponse:
        url = f"{self.base_url}/{function_name}"
        last_error = "All retry attempts failed"

        for attempt in range(retries + 1):
            try:
                async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                    response = await client.post(url, json=payload, headers=self._headers())

                if response.is_error:
                    raise EdgeFunctionError(function_name, f"HTTP {response.status_code}: {response.reason_phrase}")
                return EdgeFunctionResponse.model_validate(response.json())

            except (httpx.HTTPError, EdgeFunctionError, ValueError) as e:
                last_error = str(e) or type(e).__name__
                logger.warning(f"Edge function {function_name} attempt {attempt + 1} failed: {last_error}")

                if attempt < retries:
                    await asyncio.sleep(self.backoff_seconds * (attempt + 1))

        if self.app_logger is not None:
            self.app_logger.warn(
                LogCategory.EXTERNAL_API,
                f"Edge function {function_name} failed",
                {"function": function_name, "attempts": retries + 1, "error": last_error},
            )
        return EdgeFunctionResponse(success=False, error=last_error)

    async def enrich_company(
        self,
        company_id: int,
        providers: Optional[List[str]] = None,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = 1,
    ) -> EdgeFunctionResponse:
        payload = {"companyId": company_id, "providers": providers or ["hunter", "apollo"]}
        return await self.call_function("enrich-company", payload, timeout=timeout, retries=retries)

    async def generate_report(
        self,
        company_id: int,
        user_id: str,
        tier: str = "ENHANCED",
        timeout: float = REPORT_TIMEOUT,
        retries: int = 0,
    ) -> EdgeFunctionResponse:
        payload = {"companyId": company_id, "userId": user_id, "tier": tier}
        return await self.call_function("generate-report", payload, timeout=timeout, retries=retries)

    async def send_emails(
        self,
        campaign_id: Optional[int] = None,
        user_id: Optional[str] = None,
        immediate: bool = False,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = 1,
    ) -> EdgeFunctionResponse:
        payload = {"campaignId": campaign_id, "userId": user_id, "immediate": immediate}
        return await self.call_function("send-emails", payload, timeout=timeout, retries=retries)

    async def check_health(self) -> Dict[str, Any]:
        """
        Probe every function with an OPTIONS request.

        Returns:
            {"available": bool, "functions": {name: bool}}
        """
        results: Dict[str, bool] = {}
        async with httpx.AsyncClient(timeout=HEALTH_TIMEOUT, transport=self.transport) as client:
            for name in FUNCTION_NAMES:
                try:
                    response = await client.options(f"{self.base_url}/{name}")
                    results[name] = response.is_success
                except httpx.HTTPError:
                    results[name] = False

        return {"available": any(results.values()), "functions": results}
