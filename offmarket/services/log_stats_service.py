"""
Log Statistics Service

Aggregates the persisted structured logs for the admin dashboard.

Design Decisions:
- Counts are computed in SQL (GROUP BY) rather than by loading rows
- Hourly buckets are keyed by the zero-padded UTC hour ("00".."23")
- Only rows flushed to the database are counted; entries still buffered
  in any instance's memory are not visible here
"""

from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from offmarket.core.exceptions import DatabaseError
from offmarket.db.models import SystemLog, utc_now


class LogStatsService:
    """Service for summarising the system_logs table."""

    def __init__(self, session: AsyncSession):
        """
        Args:
            session: Async database session for database operations
        """
        self.session = session

    async def _breakdown(self, column, since: datetime) -> Dict[str, int]:
        result = await self.session.execute(
            select(column, func.count())
            .where(SystemLog.created_at >= since)
            .group_by(column)
        )
        return {str(key): count for key, count in result.all()}

    async def get_log_stats(self, hours: int = 24, now: Optional[datetime] = None) -> dict:
        """
        Get log counts for the last `hours` hours.

        Returns:
            Dictionary with:
            - total: Number of log rows
            - levelBreakdown: Count per level
            - categoryBreakdown: Count per category
            - hourlyBreakdown: Count per hour of day
            - since: Start of the period (ISO 8601)

        Raises:
            DatabaseError: If the system_logs table cannot be queried
        """
        since = (now or utc_now()) - timedelta(hours=hours)

        try:
            level_breakdown = await self._breakdown(SystemLog.level, since)
            category_breakdown = await self._breakdown(SystemLog.category, since)
            result = await self.session.execute(
                select(SystemLog.created_at).where(SystemLog.created_at >= since)
            )
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to read log statistics: {e}", original_error=e) from e

        hourly: Dict[str, int] = {}
        for created_at in result.scalars():
            hour = f"{created_at.hour:02d}"
            hourly[hour] = hourly.get(hour, 0) + 1

        return {
            "total": sum(level_breakdown.values()),
            "levelBreakdown": level_breakdown,
            "categoryBreakdown": category_breakdown,
            "hourlyBreakdown": dict(sorted(hourly.items())),
            "since": since.isoformat(),
        }
