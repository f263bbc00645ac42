"""
Compliance Service - decides whether a message may be sent now.

Rules, checked in this order by full_check():
1. send window: working day and business hours in the business timezone
2. daily volume cap for the gateway instance
3. minimum interval between two sends to the same contact
4. opt-out blacklist

A denial is a deferral, not an error. Any failure while checking denies
(reason_code "check_failed"); the gate never fails open.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from outreach.core.clock import Clock, local_day_bounds, to_local, to_utc, utcnow
from outreach.core.config import Settings
from outreach.core.logging import get_logger
from outreach.core.validation import PhoneNumberValidator, TextSanitizer
from outreach.db.models.blacklist_entry import BlacklistEntry
from outreach.db.models.queued_message import QueuedMessage

logger = get_logger(__name__)

REASON_OUTSIDE_WINDOW = "outside_window"
REASON_DAILY_CAP = "daily_cap"
REASON_CONTACT_INTERVAL = "contact_interval"
REASON_BLACKLISTED = "blacklisted"
REASON_CHECK_FAILED = "check_failed"

OPT_OUT_REASON = "opt-out"
RECENT_OPT_OUT_DAYS = 7
# next_window_start() looks this many days ahead before giving up
_MAX_WINDOW_SEARCH_DAYS = 7


@dataclass
class ComplianceDecision:
    allowed: bool
    reason: Optional[str] = None
    reason_code: Optional[str] = None
    next_eligible_at: Optional[datetime] = None

    @classmethod
    def allow(cls) -> "ComplianceDecision":
        return cls(allowed=True)


@dataclass
class DailyCapStatus:
    allowed: bool
    count: int
    cap: int
    error: Optional[str] = None


class ComplianceService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        settings: Settings,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self._settings = settings
        self._clock = clock
        self._tz = ZoneInfo(settings.BUSINESS_TIMEZONE)
        self._work_days = settings.work_days
        self._keywords = settings.opt_out_keywords

    def _normalize(self, contact: str) -> str:
        return PhoneNumberValidator.normalize(contact, self._settings.DEFAULT_COUNTRY_CODE)

    # ── send window ──

    def is_within_send_window(self, now: Optional[datetime] = None) -> bool:
        local = to_local(now or self._clock(), self._tz)
        return (
            local.isoweekday() in self._work_days
            and self._settings.BUSINESS_HOURS_START <= local.hour < self._settings.BUSINESS_HOURS_END
        )

    def next_window_start(self, now: Optional[datetime] = None) -> datetime:
        """``now`` when already inside the window, else the next window opening (naive UTC)."""
        now = now or self._clock()
        if self.is_within_send_window(now):
            return now

        local_now = to_local(now, self._tz)
        for offset in range(_MAX_WINDOW_SEARCH_DAYS + 1):
            day = local_now.date() + timedelta(days=offset)
            if day.isoweekday() not in self._work_days:
                continue
            opening = datetime(
                day.year, day.month, day.day, self._settings.BUSINESS_HOURS_START, tzinfo=self._tz
            )
            if opening > local_now:
                return to_utc(opening)

        # unreachable with a validated WORK_DAYS; keep a bounded answer anyway
        return now + timedelta(minutes=self._settings.COMPLIANCE_FALLBACK_DELAY_MINUTES)

    # ── daily cap ──

    async def _count_sent_today(self, session: AsyncSession, now: datetime) -> int:
        day_start, day_end = local_day_bounds(now, self._tz)
        result = await session.execute(
            select(func.count(QueuedMessage.id)).where(
                QueuedMessage.sent_at >= day_start,
                QueuedMessage.sent_at < day_end,
            )
        )
        return int(result.scalar() or 0)

    async def check_daily_cap(self, scope: Optional[str] = None) -> DailyCapStatus:
        """
        Sends counted on the current local date.

        ``scope`` names the gateway instance. A single instance is supported, so
        the count covers the whole deployment.
        """
        cap = self._settings.DAILY_MESSAGE_CAP
        try:
            async with self._session_factory() as session:
                count = await self._count_sent_today(session, self._clock())
        except Exception as e:
            logger.error(
                "Daily cap check failed",
                extra_data={"scope": scope or self._settings.GATEWAY_INSTANCE_ID, "error": str(e)},
                exc_info=True,
            )
            return DailyCapStatus(allowed=False, count=0, cap=cap, error=str(e))
        return DailyCapStatus(allowed=count < cap, count=count, cap=cap)

    def _next_day_window(self, now: datetime) -> datetime:
        _, day_end = local_day_bounds(now, self._tz)
        return self.next_window_start(day_end)

    # ── per contact ──

    async def _is_blacklisted(self, session: AsyncSession, contact: str) -> bool:
        result = await session.execute(
            select(BlacklistEntry.contact).where(BlacklistEntry.contact == contact)
        )
        return result.scalar_one_or_none() is not None

    async def _contact_decision(
        self, session: AsyncSession, contact: str, now: datetime
    ) -> ComplianceDecision:
        interval = timedelta(hours=self._settings.MIN_CONTACT_INTERVAL_HOURS)
        result = await session.execute(
            select(func.max(QueuedMessage.sent_at)).where(QueuedMessage.contact == contact)
        )
        last_sent = result.scalar()
        if last_sent is not None and now - last_sent < interval:
            return ComplianceDecision(
                allowed=False,
                reason=f"contact messaged less than {self._settings.MIN_CONTACT_INTERVAL_HOURS}h ago",
                reason_code=REASON_CONTACT_INTERVAL,
                next_eligible_at=last_sent + interval,
            )

        if await self._is_blacklisted(session, contact):
            return ComplianceDecision(
                allowed=False,
                reason="contact opted out",
                reason_code=REASON_BLACKLISTED,
            )

        return ComplianceDecision.allow()

    async def can_send_to_contact(self, contact: str) -> ComplianceDecision:
        normalized = self._normalize(contact)
        try:
            async with self._session_factory() as session:
                return await self._contact_decision(session, normalized, self._clock())
        except Exception as e:
            return self._check_failed("can_send_to_contact", normalized, e)

    async def full_check(self, contact: str) -> ComplianceDecision:
        """Window, daily cap, contact interval, blacklist. First failing rule wins."""
        normalized = self._normalize(contact)
        now = self._clock()

        if not self.is_within_send_window(now):
            return ComplianceDecision(
                allowed=False,
                reason="outside business hours",
                reason_code=REASON_OUTSIDE_WINDOW,
                next_eligible_at=self.next_window_start(now),
            )

        try:
            async with self._session_factory() as session:
                count = await self._count_sent_today(session, now)
                if count >= self._settings.DAILY_MESSAGE_CAP:
                    return ComplianceDecision(
                        allowed=False,
                        reason=f"daily cap reached ({count}/{self._settings.DAILY_MESSAGE_CAP})",
                        reason_code=REASON_DAILY_CAP,
                        next_eligible_at=self._next_day_window(now),
                    )
                return await self._contact_decision(session, normalized, now)
        except Exception as e:
            return self._check_failed("full_check", normalized, e)

    def _check_failed(self, operation: str, contact: str, error: Exception) -> ComplianceDecision:
        logger.error(
            "Compliance check failed, denying send",
            extra_data={
                "operation": operation,
                "phone": PhoneNumberValidator.mask(contact),
                "error": str(error),
            },
            exc_info=True,
        )
        return ComplianceDecision(
            allowed=False,
            reason="compliance check failed",
            reason_code=REASON_CHECK_FAILED,
        )

    # ── opt-out ──

    def append_opt_out_notice(self, body: str) -> str:
        """Append the opt-out instruction once"""
        if self._settings.OPT_OUT_MARKER.lower() in body.lower():
            return body
        return body + self._settings.OPT_OUT_NOTICE

    def match_opt_out_keyword(self, text: str) -> Optional[str]:
        return TextSanitizer.contains_word(text, self._keywords)

    async def process_inbound_text(self, contact: str, text: str) -> bool:
        """Blacklist the contact when the text contains an opt-out keyword."""
        keyword = self.match_opt_out_keyword(text)
        if keyword is None:
            return False
        await self.add_to_blacklist(contact, OPT_OUT_REASON)
        logger.info(
            "Contact opted out",
            extra_data={"phone": PhoneNumberValidator.mask(self._normalize(contact)), "keyword": keyword},
        )
        return True

    # ── blacklist management ──

    async def add_to_blacklist(self, contact: str, reason: str = "manual") -> None:
        """Upsert by contact"""
        normalized = self._normalize(contact)
        now = self._clock()
        async with self._session_factory() as session:
            result = await session.execute(
                update(BlacklistEntry)
                .where(BlacklistEntry.contact == normalized)
                .values(reason=reason, updated_at=now)
            )
            if not result.rowcount:
                try:
                    async with session.begin_nested():
                        session.add(BlacklistEntry(
                            contact=normalized, reason=reason, created_at=now, updated_at=now
                        ))
                except IntegrityError:
                    # inserted concurrently
                    await session.execute(
                        update(BlacklistEntry)
                        .where(BlacklistEntry.contact == normalized)
                        .values(reason=reason, updated_at=now)
                    )
            await session.commit()

    async def remove_from_blacklist(self, contact: str) -> bool:
        normalized = self._normalize(contact)
        async with self._session_factory() as session:
            result = await session.execute(
                delete(BlacklistEntry).where(BlacklistEntry.contact == normalized)
            )
            await session.commit()
            return bool(result.rowcount)

    async def is_blacklisted(self, contact: str) -> bool:
        async with self._session_factory() as session:
            return await self._is_blacklisted(session, self._normalize(contact))

    # ── stats ──

    async def stats(self) -> dict[str, Any]:
        now = self._clock()
        cap = self._settings.DAILY_MESSAGE_CAP
        async with self._session_factory() as session:
            daily_count = await self._count_sent_today(session, now)
            blacklist_count = (
                await session.execute(select(func.count()).select_from(BlacklistEntry))
            ).scalar() or 0
            recent_opt_outs = (
                await session.execute(
                    select(func.count()).select_from(BlacklistEntry).where(
                        BlacklistEntry.reason == OPT_OUT_REASON,
                        BlacklistEntry.updated_at >= now - timedelta(days=RECENT_OPT_OUT_DAYS),
                    )
                )
            ).scalar() or 0

        return {
            "daily_count": daily_count,
            "daily_cap": cap,
            "utilization": round(daily_count / cap, 4) if cap else 0.0,
            "blacklist_count": int(blacklist_count),
            "recent_opt_outs": int(recent_opt_outs),
            "within_send_window": self.is_within_send_window(now),
            "next_window_start": self.next_window_start(now),
            "config": {
                "business_hours": [
                    self._settings.BUSINESS_HOURS_START,
                    self._settings.BUSINESS_HOURS_END,
                ],
                "work_days": sorted(self._work_days),
                "timezone": self._settings.BUSINESS_TIMEZONE,
                "min_contact_interval_hours": self._settings.MIN_CONTACT_INTERVAL_HOURS,
                "opt_out_keywords": self._keywords,
            },
        }
