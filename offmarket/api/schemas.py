"""
API Request and Response Schemas

This module defines the Pydantic models for API responses.
Job results are defined with the jobs (offmarket.services.cron_jobs) and
returned as-is.
"""

from typing import Dict

from pydantic import BaseModel, Field


class RateLimitErrorResponse(BaseModel):
    """Body of a 429 response."""
    error: str = Field(..., description="Route-class specific message")
    retryAfter: int = Field(..., description="Seconds until the quota resets")


class LogStatsResponse(BaseModel):
    total: int
    levelBreakdown: Dict[str, int]
    categoryBreakdown: Dict[str, int]
    hourlyBreakdown: Dict[str, int]
    since: str


class RateLimitResetResponse(BaseModel):
    key: str
    reset: bool = True


class HealthResponse(BaseModel):
    status: str
    environment: str
    bufferedLogEntries: int
    rateLimiting: bool


class EdgeFunctionHealthResponse(BaseModel):
    available: bool = Field(..., description="True when at least one function answers")
    functions: Dict[str, bool]


class PerformanceStatsResponse(BaseModel):
    externalApi: Dict[str, float]
    database: Dict[str, float]
    memory: Dict[str, int] = Field(..., description="Resident and virtual memory in MB")
    requestSampling: bool
