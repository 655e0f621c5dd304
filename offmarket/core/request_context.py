"""
Request-Scoped Log Context

Ambient identifiers (user, session, request id, component, client address)
attached to every structured log entry.

The context lives in a ContextVar, so each asyncio task (and therefore each
request handled by the event loop) sees its own copy. Values are never
mutated in place: set_context() builds a new dict and stores it, which keeps
a child task from leaking fields back into its parent.
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

CONTEXT_FIELDS = ("user_id", "session_id", "request_id", "component", "ip", "user_agent")

_log_context_var: ContextVar[Optional[Dict[str, Any]]] = ContextVar("log_context", default=None)


def generate_request_id() -> str:
    """Generate a new UUIDv4 request ID."""
    return str(uuid.uuid4())


def get_context() -> Dict[str, Any]:
    """Return a copy of the current log context."""
    return dict(_log_context_var.get() or {})


def set_context(**fields: Any) -> None:
    """
    Merge fields into the current log context.

    Unknown field names raise TypeError; None values remove the field.
    """
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise TypeError(f"Unknown log context fields: {', '.join(sorted(unknown))}")

    context = get_context()
    for name, value in fields.items():
        if value is None:
            context.pop(name, None)
        else:
            context[name] = value
    _log_context_var.set(context)


def clear_context() -> None:
    _log_context_var.set(None)


@contextmanager
def log_context(**fields: Any) -> Iterator[Dict[str, Any]]:
    """
    Temporarily extend the log context.

    Usage:
        with log_context(component="cron"):
            logger.info(LogCategory.CRON_JOB, "Started")
    """
    token = _log_context_var.set(get_context())
    try:
        set_context(**fields)
        yield get_context()
    finally:
        _log_context_var.reset(token)


__all__ = [
    "CONTEXT_FIELDS",
    "clear_context",
    "generate_request_id",
    "get_context",
    "log_context",
    "set_context",
]
