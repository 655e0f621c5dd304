"""
Database Models for the Off-Market Service

This module defines the SQLModel database schemas for:
- SystemLog: Batches written by the structured logger's persistent sink
- Company / Enrichment / Report: Work items of the enrichment and report jobs
- Campaign: Scheduled email campaigns (weekday + hour)
- Invitation / AuditLog: Records subject to maintenance retention

Design Decisions:
- All timestamps are stored as naive UTC
- Statuses are stored as short strings for portability between SQLite and PostgreSQL
- Campaign.weekday uses 0 = Sunday, matching the scheduling data entered by users
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String
from sqlmodel import Column, Field, SQLModel


def utc_now() -> datetime:
    """Current time as naive UTC (the storage convention of every table)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class EnrichmentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SystemLog(SQLModel, table=True):
    """
    Structured log entries flushed from the in-memory buffer.

    Indexes:
    - created_at: Retention sweeps and log statistics
    - level / category: Breakdown queries
    """
    __tablename__ = "system_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    level: str = Field(sa_column=Column(String(10), nullable=False, index=True))
    category: str = Field(sa_column=Column(String(30), nullable=False, index=True))
    message: str = Field(sa_column=Column(String(1000), nullable=False))
    # "metadata" is reserved on SQLModel classes, so the attribute is renamed
    log_metadata: Optional[dict[str, Any]] = Field(
        default=None,
        sa_column=Column("metadata", JSON, nullable=True)
    )
    user_id: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
    session_id: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
    request_id: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
    timestamp: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    duration: Optional[float] = Field(default=None, sa_column=Column(Float, nullable=True))
    tags: Optional[str] = Field(default=None, sa_column=Column(String(255), nullable=True))
    environment: Optional[str] = Field(default=None, sa_column=Column(String(20), nullable=True))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True)
    )


class Company(SQLModel, table=True):
    """Businesses saved by users from a search."""
    __tablename__ = "companies"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(sa_column=Column(String(255), nullable=False))
    user_id: Optional[str] = Field(
        default=None,
        sa_column=Column(String(64), nullable=True, index=True)
    )
    selected: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class Enrichment(SQLModel, table=True):
    """
    Enrichment status of a company.

    Rows are created as PENDING; the enrichment function moves them to
    COMPLETED or FAILED as a side effect of its own work.
    """
    __tablename__ = "enrichments"

    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: int = Field(sa_column=Column(Integer, nullable=False, index=True))
    status: str = Field(
        default=EnrichmentStatus.PENDING.value,
        sa_column=Column(String(20), nullable=False, index=True)
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True)
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True)
    )


class Campaign(SQLModel, table=True):
    """Weekly email campaign, sent when weekday (0 = Sunday) and hour match."""
    __tablename__ = "campaigns"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(sa_column=Column(String(255), nullable=False))
    user_id: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    weekday: int = Field(sa_column=Column(Integer, nullable=False))
    hour: int = Field(sa_column=Column(Integer, nullable=False))


class Report(SQLModel, table=True):
    __tablename__ = "reports"

    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: int = Field(sa_column=Column(Integer, nullable=False, index=True))
    user_id: str = Field(sa_column=Column(String(64), nullable=False, index=True))
    tier: str = Field(default="ENHANCED", sa_column=Column(String(20), nullable=False))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True)
    )


class Invitation(SQLModel, table=True):
    __tablename__ = "invitations"

    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(sa_column=Column(String(255), nullable=False))
    token: str = Field(sa_column=Column(String(64), nullable=False, unique=True))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False, index=True))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class AuditLog(SQLModel, table=True):
    """Audit trail; rows older than the retention window are deleted by maintenance."""
    __tablename__ = "audit_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
    action: str = Field(sa_column=Column(String(50), nullable=False))
    entity: str = Field(sa_column=Column(String(50), nullable=False))
    details: Optional[dict[str, Any]] = Field(
        default=None,
        sa_column=Column("metadata", JSON, nullable=True)
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True)
    )


__all__ = [
    "AuditLog",
    "Campaign",
    "Company",
    "Enrichment",
    "EnrichmentStatus",
    "Invitation",
    "Report",
    "SystemLog",
    "utc_now",
]
