"""
Activity Log Service - persisted pipeline log shown in the admin UI.

Every entry is mirrored to the application logger. A failed write is logged
and swallowed: losing an activity line must never fail a send.
"""
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from outreach.core.clock import Clock, utcnow
from outreach.core.logging import get_logger, log_async_operation
from outreach.core.validation import PhoneNumberValidator
from outreach.db.models.log_entry import LogCategory, LogEntry, LogLevel

logger = get_logger(__name__)

DEFAULT_RECENT_HOURS = 24
DEFAULT_RECENT_LIMIT = 100


class ActivityLogService:
    def __init__(self, session_factory: async_sessionmaker, clock: Clock = utcnow):
        self._session_factory = session_factory
        self._clock = clock

    async def record(
        self,
        level: LogLevel,
        category: LogCategory,
        message: str,
        details: Optional[dict[str, Any]] = None,
        *,
        contact: Optional[str] = None,
        job_id: Optional[int] = None,
    ) -> None:
        getattr(logger, level.value)(
            message,
            extra_data={
                "category": category.value,
                "job_id": job_id,
                "phone": PhoneNumberValidator.mask(contact) if contact else None,
                **(details or {}),
            },
        )
        try:
            async with self._session_factory() as session:
                session.add(LogEntry(
                    level=level,
                    category=category,
                    message=message,
                    details=details,
                    contact=contact,
                    job_id=job_id,
                    created_at=self._clock(),
                ))
                await session.commit()
        except Exception as e:
            logger.error(
                "Failed to persist activity log entry",
                extra_data={"category": category.value, "error": str(e)},
                exc_info=True,
            )

    async def info(self, category: LogCategory, message: str, details=None, **kwargs) -> None:
        await self.record(LogLevel.INFO, category, message, details, **kwargs)

    async def warning(self, category: LogCategory, message: str, details=None, **kwargs) -> None:
        await self.record(LogLevel.WARNING, category, message, details, **kwargs)

    async def error(self, category: LogCategory, message: str, details=None, **kwargs) -> None:
        await self.record(LogLevel.ERROR, category, message, details, **kwargs)

    async def recent(
        self,
        *,
        level: Optional[LogLevel] = None,
        category: Optional[LogCategory] = None,
        since: Optional[datetime] = None,
        limit: int = DEFAULT_RECENT_LIMIT,
    ) -> list[LogEntry]:
        """Newest first. ``since`` defaults to the last 24 hours."""
        if since is None:
            since = self._clock() - timedelta(hours=DEFAULT_RECENT_HOURS)

        query = select(LogEntry).where(LogEntry.created_at >= since)
        if level is not None:
            query = query.where(LogEntry.level == level)
        if category is not None:
            query = query.where(LogEntry.category == category)
        query = query.order_by(LogEntry.created_at.desc(), LogEntry.id.desc()).limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    @log_async_operation("cleanup_old_logs")
    async def cleanup_old_logs(self, days: int) -> int:
        cutoff = self._clock() - timedelta(days=days)
        async with self._session_factory() as session:
            result = await session.execute(delete(LogEntry).where(LogEntry.created_at < cutoff))
            await session.commit()
            return result.rowcount or 0
