"""
Custom Exceptions

This module defines custom exceptions for better error handling
and more specific error messages.

Benefits:
- More specific error types for different failure scenarios
- Better error messages for API consumers
- Easier error handling and logging
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from offmarket.core.rate_limit import RateLimitDecision


class OffMarketException(Exception):
    """Base exception for the off-market service."""
    pass


class RateLimitStoreError(OffMarketException):
    """Raised when a counter store cannot be read or updated."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(f"Rate limit store error: {message}")


class RateLimitExceeded(OffMarketException):
    """Raised by the rate limit dependency when a request is denied."""

    def __init__(self, decision: "RateLimitDecision", message: str):
        self.decision = decision
        self.message = message
        super().__init__(message)


class EdgeFunctionError(OffMarketException):
    """Raised when an edge function call fails."""

    def __init__(self, function_name: str, reason: str):
        self.function_name = function_name
        self.reason = reason
        super().__init__(f"Edge function '{function_name}' failed: {reason}")


class UnknownJobError(OffMarketException):
    """Raised when a cron job name is not recognised."""

    def __init__(self, job_name: str):
        self.job_name = job_name
        super().__init__(f"Unknown cron job: {job_name}")


class LogSinkError(OffMarketException):
    """Raised when a batch of log entries cannot be persisted."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(f"Log sink error: {message}")


class DatabaseError(OffMarketException):
    """Raised when database operations fail."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(f"Database error: {message}")
