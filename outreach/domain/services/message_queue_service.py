"""
Message Queue Service - durable, priority-ordered outbound queue.

enqueue() stores a job and never sends. process_tick(), driven by a Ticker,
claims due jobs, re-checks compliance, calls the transport and applies the
retry policy. Every status change is a single UPDATE guarded by the
transition table, so a job cancelled mid-flight is never overwritten.
"""
from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from outreach.core.clock import Clock, local_day_bounds, utcnow
from outreach.core.config import Settings
from outreach.core.events import EventBus, EventType
from outreach.core.exceptions import ErrorCode, NotFoundException, ValidationException
from outreach.core.logging import get_logger, log_async_operation
from outreach.core.ticker import Ticker
from outreach.core.validation import PhoneNumberValidator, TextSanitizer, ValidationPatterns
from outreach.db.models.log_entry import LogCategory
from outreach.db.models.queued_message import QueuedMessage
from outreach.domain.services.activity_log_service import ActivityLogService
from outreach.domain.services.compliance_service import REASON_BLACKLISTED, ComplianceService
from outreach.domain.services.transport.base_transport import BaseTransport, SendResult
from outreach.state_machine.states import (
    NON_TERMINAL_STATUSES,
    SENT_FAMILY,
    TERMINAL_STATUSES,
    MessagePriority,
    MessageStatus,
    allowed_sources,
    ensure_transition,
)

logger = get_logger(__name__)

MIN_MAX_RETRIES = 1
MAX_MAX_RETRIES = 10
AVG_PROCESSING_WINDOW_DAYS = 7


def calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    multiplier: int,
    max_backoff_seconds: int,
) -> int:
    """
    Exponential backoff with a hard upper bound.

        backoff = base_seconds * multiplier ** retry_count

    Capped at max_backoff_seconds. Multiplies step by step and stops at the
    cap, so a huge retry_count never builds a huge power.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    if multiplier <= 1:
        return base_seconds

    backoff = base_seconds
    for _ in range(retry_count):
        backoff *= multiplier
        if backoff >= max_backoff_seconds:
            return max_backoff_seconds
    return backoff


@dataclass
class TickResult:
    skipped: bool = False
    selected: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    deferred: int = 0
    cancelled: int = 0
    discarded: int = 0
    errors: int = 0
    released_stale: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class QueueStats:
    pending: int = 0
    processing: int = 0
    sent: int = 0  # sent plus its refinements (delivered, read)
    delivered: int = 0
    read: int = 0
    failed: int = 0
    cancelled: int = 0
    total_today: int = 0
    avg_processing_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class MessageQueueService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        settings: Settings,
        compliance: ComplianceService,
        transport: BaseTransport,
        *,
        events: Optional[EventBus] = None,
        activity_log: Optional[ActivityLogService] = None,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._session_factory = session_factory
        self._settings = settings
        self._compliance = compliance
        self._transport = transport
        self._events = events or EventBus()
        self._activity_log = activity_log or ActivityLogService(session_factory, clock)
        self._clock = clock
        self._sleep = sleep
        self._tz = ZoneInfo(settings.BUSINESS_TIMEZONE)
        self._processing = False
        self._in_flight: set[str] = set()
        self._ticker = Ticker("message-queue", settings.QUEUE_TICK_SECONDS, self.process_tick)

    # ── lifecycle ──

    def start(self) -> None:
        self._ticker.start()

    async def stop(self) -> None:
        await self._ticker.stop()

    @property
    def is_processing(self) -> bool:
        return self._processing

    def backoff_seconds(self, retries: int) -> int:
        return calculate_backoff_seconds(
            retries,
            base_seconds=self._settings.QUEUE_RETRY_BASE_MINUTES * 60,
            multiplier=self._settings.QUEUE_RETRY_MULTIPLIER,
            max_backoff_seconds=self._settings.QUEUE_RETRY_MAX_MINUTES * 60,
        )

    # ── enqueue ──

    def _validate(
        self,
        contact: str,
        body: str,
        priority: "str | MessagePriority",
        max_retries: int,
        created_by: str,
    ) -> tuple[str, str, MessagePriority]:
        clean_body = TextSanitizer.sanitize(body or "")
        if not clean_body:
            raise ValidationException("Message body is empty", field="body")
        if len(clean_body) > self._settings.MAX_MESSAGE_LENGTH:
            raise ValidationException(
                f"Message body exceeds {self._settings.MAX_MESSAGE_LENGTH} characters",
                field="body",
                details={"length": len(clean_body)},
            )

        normalized = PhoneNumberValidator.normalize(contact or "", self._settings.DEFAULT_COUNTRY_CODE)
        if not ValidationPatterns.CONTACT_DIGITS.match(normalized):
            raise ValidationException("Invalid contact phone number", field="contact")

        try:
            parsed_priority = MessagePriority.from_name(priority)
        except ValueError:
            raise ValidationException(f"Unknown priority: {priority}", field="priority") from None

        if isinstance(max_retries, bool) or not isinstance(max_retries, int) or not (
            MIN_MAX_RETRIES <= max_retries <= MAX_MAX_RETRIES
        ):
            raise ValidationException(
                f"max_retries must be between {MIN_MAX_RETRIES} and {MAX_MAX_RETRIES}",
                field="max_retries",
            )

        if not created_by or not created_by.strip():
            raise ValidationException("created_by is required", field="created_by")

        return normalized, clean_body, parsed_priority

    async def enqueue(
        self,
        contact: str,
        body: str,
        *,
        created_by: str,
        correlation_id: Optional[str] = None,
        template_id: Optional[str] = None,
        priority: "str | MessagePriority" = MessagePriority.NORMAL,
        scheduled_for: Optional[datetime] = None,
        max_retries: int = 3,
        metadata: Optional[dict[str, Any]] = None,
    ) -> int:
        """
        Store a pending job and return its id.

        Without an explicit ``scheduled_for`` the job is scheduled for now, or
        for the next eligible time when compliance currently denies it.

        Raises:
            ValidationException: on invalid input, before anything is stored.
        """
        normalized, clean_body, parsed_priority = self._validate(
            contact, body, priority, max_retries, created_by
        )
        now = self._clock()

        deferred_reason = None
        if scheduled_for is not None:
            if scheduled_for.tzinfo is not None:
                scheduled_for = scheduled_for.astimezone(timezone.utc).replace(tzinfo=None)
        else:
            decision = await self._compliance.full_check(normalized)
            if decision.allowed:
                scheduled_for = now
            else:
                deferred_reason = decision.reason
                scheduled_for = decision.next_eligible_at or now + timedelta(
                    minutes=self._settings.COMPLIANCE_FALLBACK_DELAY_MINUTES
                )

        async with self._session_factory() as session:
            job = QueuedMessage(
                correlation_id=correlation_id,
                contact=normalized,
                body=clean_body,
                template_id=template_id,
                priority=int(parsed_priority),
                scheduled_for=scheduled_for,
                status=MessageStatus.PENDING,
                current_retries=0,
                max_retries=max_retries,
                created_by=created_by.strip(),
                extra_metadata=metadata,
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            await session.commit()
            job_id = job.id

        await self._activity_log.info(
            LogCategory.QUEUE,
            "Message enqueued",
            {
                "priority": parsed_priority.name.lower(),
                "scheduled_for": scheduled_for.isoformat(),
                "deferred_reason": deferred_reason,
            },
            contact=normalized,
            job_id=job_id,
        )
        await self._events.publish(EventType.MESSAGE_ENQUEUED, {
            "job_id": job_id,
            "correlation_id": correlation_id,
            "priority": parsed_priority.name.lower(),
            "scheduled_for": scheduled_for.isoformat(),
        })
        return job_id

    # ── guarded status updates ──

    async def _transition(
        self,
        job_id: int,
        target: MessageStatus,
        *,
        expected: Optional[Sequence[MessageStatus]] = None,
        **values: Any,
    ) -> bool:
        """Apply ``target`` only if the row is still in one of ``expected``."""
        sources = list(expected) if expected is not None else allowed_sources(target)
        for source in sources:
            ensure_transition(source, target, job_id=job_id)

        values.setdefault("updated_at", self._clock())
        async with self._session_factory() as session:
            result = await session.execute(
                update(QueuedMessage)
                .where(QueuedMessage.id == job_id, QueuedMessage.status.in_(sources))
                .values(status=target, **values)
            )
            await session.commit()
            return bool(result.rowcount)

    async def _claim(self, job: QueuedMessage, now: datetime) -> bool:
        return await self._transition(
            job.id,
            MessageStatus.PROCESSING,
            expected=[MessageStatus.PENDING],
            processing_started_at=now,
        )

    async def _release_stale_jobs(self, now: datetime) -> int:
        """Jobs stuck in processing (crash mid-send) go back to pending; retries untouched."""
        cutoff = now - timedelta(minutes=self._settings.QUEUE_STALE_PROCESSING_MINUTES)
        async with self._session_factory() as session:
            result = await session.execute(
                update(QueuedMessage)
                .where(
                    QueuedMessage.status == MessageStatus.PROCESSING,
                    QueuedMessage.processing_started_at < cutoff,
                )
                .values(status=MessageStatus.PENDING, updated_at=now)
            )
            await session.commit()
            released = result.rowcount or 0
        if released:
            await self._activity_log.warning(
                LogCategory.QUEUE,
                "Released stale processing jobs",
                {"count": released},
            )
        return released

    async def _select_due_jobs(self, now: datetime) -> list[QueuedMessage]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(QueuedMessage)
                .where(
                    QueuedMessage.status == MessageStatus.PENDING,
                    QueuedMessage.scheduled_for <= now,
                    QueuedMessage.current_retries < QueuedMessage.max_retries,
                )
                .order_by(
                    QueuedMessage.priority.desc(),
                    QueuedMessage.scheduled_for.asc(),
                    QueuedMessage.id.asc(),
                )
                .limit(self._settings.QUEUE_BATCH_SIZE)
            )
            return list(result.scalars().all())

    # ── processing ──

    async def process_tick(self) -> TickResult:
        """Process one batch of due jobs. An overlapping call returns skipped=True."""
        if self._processing:
            return TickResult(skipped=True)

        self._processing = True
        result = TickResult()
        try:
            now = self._clock()
            result.released_stale = await self._release_stale_jobs(now)
            jobs = await self._select_due_jobs(now)
            result.selected = len(jobs)

            sent_before = False
            for job in jobs:
                if job.contact in self._in_flight:
                    continue
                self._in_flight.add(job.contact)
                try:
                    called_transport = await self._process_job(job, result, delay=sent_before)
                    sent_before = sent_before or called_transport
                except Exception as e:
                    result.errors += 1
                    logger.error(
                        "Job processing aborted",
                        extra_data={"job_id": job.id, "error": str(e)},
                        exc_info=True,
                    )
                    await self._recover_aborted_job(job, f"unexpected error: {e}", result)
                finally:
                    self._in_flight.discard(job.contact)
        finally:
            self._processing = False

        if result.selected:
            logger.info("Queue tick finished", extra_data=result.to_dict())
        return result

    async def _process_job(self, job: QueuedMessage, result: TickResult, *, delay: bool) -> bool:
        """Returns True when the transport was called."""
        now = self._clock()
        if not await self._claim(job, now):
            logger.debug("Lost claim on job", extra_data={"job_id": job.id})
            return False

        called_transport = False
        try:
            decision = await self._compliance.full_check(job.contact)
            if not decision.allowed:
                await self._handle_denial(job, decision, result)
                return False

            body = self._compliance.append_opt_out_notice(job.body)
            if delay:
                await self._sleep(self._settings.QUEUE_SEND_DELAY_SECONDS)
            called_transport = True
            send_result = await self._transport.send(job.contact, body)
        except Exception as e:
            logger.error(
                "Unexpected error while processing job",
                extra_data={"job_id": job.id, "error": str(e)},
                exc_info=True,
            )
            send_result = SendResult(accepted=False, error=f"unexpected error: {e}")

        if send_result.accepted:
            await self._handle_sent(job, send_result, result)
        else:
            await self._handle_failure(job, send_result.error or "send failed", result)
        return called_transport

    async def _recover_aborted_job(self, job: QueuedMessage, error: str, result: TickResult) -> None:
        """Count an aborted job as a failed attempt; a job still pending is left as is."""
        try:
            await self._handle_failure(job, error, result)
        except Exception as e:
            # stays in processing until the stale release picks it up
            logger.error(
                "Could not record aborted job",
                extra_data={"job_id": job.id, "error": str(e)},
                exc_info=True,
            )

    async def _handle_denial(self, job: QueuedMessage, decision, result: TickResult) -> None:
        now = self._clock()
        if decision.reason_code == REASON_BLACKLISTED:
            # an opted-out contact never becomes eligible again
            applied = await self._transition(
                job.id,
                MessageStatus.CANCELLED,
                expected=[MessageStatus.PROCESSING],
                last_error="contact opted out",
                cancelled_at=now,
            )
            if applied:
                result.cancelled += 1
                await self._activity_log.warning(
                    LogCategory.COMPLIANCE,
                    "Job cancelled, contact opted out",
                    contact=job.contact,
                    job_id=job.id,
                )
                await self._events.publish(EventType.MESSAGES_CANCELLED, {
                    "job_ids": [job.id],
                    "reason": decision.reason,
                })
            return

        next_at = decision.next_eligible_at or now + timedelta(
            minutes=self._settings.COMPLIANCE_FALLBACK_DELAY_MINUTES
        )
        applied = await self._transition(
            job.id,
            MessageStatus.PENDING,
            expected=[MessageStatus.PROCESSING],
            scheduled_for=next_at,
            last_error=decision.reason,
        )
        if not applied:
            return
        result.deferred += 1
        await self._activity_log.warning(
            LogCategory.COMPLIANCE,
            "Job deferred by compliance",
            {"reason": decision.reason, "reason_code": decision.reason_code, "next_eligible_at": next_at.isoformat()},
            contact=job.contact,
            job_id=job.id,
        )
        await self._events.publish(EventType.MESSAGE_DEFERRED, {
            "job_id": job.id,
            "reason": decision.reason,
            "reason_code": decision.reason_code,
            "next_eligible_at": next_at.isoformat(),
        })

    async def _handle_sent(self, job: QueuedMessage, send_result: SendResult, result: TickResult) -> None:
        sent_at = self._clock()
        applied = await self._transition(
            job.id,
            MessageStatus.SENT,
            expected=[MessageStatus.PROCESSING],
            sent_at=sent_at,
            external_id=send_result.external_id,
            last_error=None,
        )
        if not applied:
            result.discarded += 1
            await self._activity_log.warning(
                LogCategory.QUEUE,
                "Send result discarded, job no longer processing",
                {"external_id": send_result.external_id},
                contact=job.contact,
                job_id=job.id,
            )
            return

        result.sent += 1
        await self._activity_log.info(
            LogCategory.TRANSPORT,
            "Message sent",
            {"external_id": send_result.external_id},
            contact=job.contact,
            job_id=job.id,
        )
        await self._events.publish(EventType.MESSAGE_SENT, {
            "job_id": job.id,
            "correlation_id": job.correlation_id,
            "external_id": send_result.external_id,
        })

    async def _handle_failure(self, job: QueuedMessage, error: str, result: TickResult) -> None:
        now = self._clock()
        retries = job.current_retries + 1
        error = error[:1000]

        if retries >= job.max_retries:
            applied = await self._transition(
                job.id,
                MessageStatus.FAILED,
                expected=[MessageStatus.PROCESSING],
                current_retries=job.max_retries,
                last_error=error,
                failed_at=now,
            )
            if not applied:
                result.discarded += 1
                return
            result.failed += 1
            await self._activity_log.error(
                LogCategory.TRANSPORT,
                "Message failed permanently",
                {"error": error, "retries": job.max_retries},
                contact=job.contact,
                job_id=job.id,
            )
            await self._events.publish(EventType.MESSAGE_FAILED, {
                "job_id": job.id,
                "correlation_id": job.correlation_id,
                "error": error,
            })
            return

        next_at = now + timedelta(seconds=self.backoff_seconds(retries))
        applied = await self._transition(
            job.id,
            MessageStatus.PENDING,
            expected=[MessageStatus.PROCESSING],
            current_retries=retries,
            last_error=error,
            scheduled_for=next_at,
        )
        if not applied:
            result.discarded += 1
            return
        result.retried += 1
        await self._activity_log.warning(
            LogCategory.TRANSPORT,
            "Send failed, retry scheduled",
            {"error": error, "retries": retries, "next_attempt_at": next_at.isoformat()},
            contact=job.contact,
            job_id=job.id,
        )

    # ── cancel ──

    async def cancel(
        self,
        *,
        job_ids: Optional[Iterable[int]] = None,
        correlation_ids: Optional[Iterable[str]] = None,
        contacts: Optional[Iterable[str]] = None,
        statuses: Optional[Iterable["str | MessageStatus"]] = None,
    ) -> int:
        """
        Cancel matching pending/processing jobs and return how many changed.

        Selectors are OR-ed; the status filter narrows them and is intersected
        with the non-terminal statuses.
        """
        job_ids = list(job_ids or [])
        correlation_ids = list(correlation_ids or [])
        contacts = [
            PhoneNumberValidator.normalize(c, self._settings.DEFAULT_COUNTRY_CODE)
            for c in (contacts or [])
        ]
        if not (job_ids or correlation_ids or contacts) and statuses is None:
            raise ValidationException("At least one cancel selector is required")

        if statuses is None:
            target_statuses = list(NON_TERMINAL_STATUSES)
        else:
            try:
                requested = {MessageStatus(s) for s in statuses}
            except ValueError as e:
                raise ValidationException(str(e), field="statuses") from None
            target_statuses = [s for s in NON_TERMINAL_STATUSES if s in requested]
        if not target_statuses:
            return 0

        selectors = []
        if job_ids:
            selectors.append(QueuedMessage.id.in_(job_ids))
        if correlation_ids:
            selectors.append(QueuedMessage.correlation_id.in_(correlation_ids))
        if contacts:
            selectors.append(QueuedMessage.contact.in_(contacts))

        conditions = [QueuedMessage.status.in_(target_statuses)]
        if selectors:
            conditions.append(or_(*selectors))

        now = self._clock()
        async with self._session_factory() as session:
            matched = await session.execute(select(QueuedMessage.id).where(and_(*conditions)))
            matched_ids = list(matched.scalars().all())
            if not matched_ids:
                return 0
            result = await session.execute(
                update(QueuedMessage)
                .where(
                    QueuedMessage.id.in_(matched_ids),
                    QueuedMessage.status.in_(target_statuses),
                )
                .values(
                    status=MessageStatus.CANCELLED,
                    cancelled_at=now,
                    updated_at=now,
                    last_error="cancelled",
                )
            )
            await session.commit()
            cancelled = result.rowcount or 0

        await self._activity_log.info(
            LogCategory.QUEUE,
            "Messages cancelled",
            {"count": cancelled},
        )
        await self._events.publish(EventType.MESSAGES_CANCELLED, {
            "job_ids": matched_ids,
            "count": cancelled,
        })
        return cancelled

    # ── queries ──

    async def get_job(self, job_id: int) -> QueuedMessage:
        async with self._session_factory() as session:
            job = await session.get(QueuedMessage, job_id)
        if job is None:
            raise NotFoundException("Queued message", job_id, ErrorCode.MESSAGE_NOT_FOUND)
        return job

    async def stats(self) -> QueueStats:
        now = self._clock()
        stats = QueueStats()
        day_start, day_end = local_day_bounds(now, self._tz)

        async with self._session_factory() as session:
            rows = await session.execute(
                select(QueuedMessage.status, func.count(QueuedMessage.id)).group_by(QueuedMessage.status)
            )
            for status, count in rows.all():
                status = MessageStatus(status)
                if status in SENT_FAMILY:
                    stats.sent += count
                if status != MessageStatus.SENT:
                    setattr(stats, status.value, count)

            stats.total_today = (
                await session.execute(
                    select(func.count(QueuedMessage.id)).where(
                        QueuedMessage.created_at >= day_start,
                        QueuedMessage.created_at < day_end,
                    )
                )
            ).scalar() or 0

            durations = await session.execute(
                select(QueuedMessage.processing_started_at, QueuedMessage.sent_at).where(
                    QueuedMessage.sent_at.is_not(None),
                    QueuedMessage.processing_started_at.is_not(None),
                    QueuedMessage.sent_at >= now - timedelta(days=AVG_PROCESSING_WINDOW_DAYS),
                )
            )
            seconds = [
                (sent_at - started_at).total_seconds()
                for started_at, sent_at in durations.all()
                if sent_at >= started_at
            ]

        if seconds:
            stats.avg_processing_seconds = round(sum(seconds) / len(seconds), 3)
        return stats

    @log_async_operation("cleanup_old_messages")
    async def cleanup_old_messages(self, days: Optional[int] = None) -> int:
        """Delete terminal jobs older than ``days`` (QUEUE_RETENTION_DAYS by default)."""
        days = days if days is not None else self._settings.QUEUE_RETENTION_DAYS
        cutoff = self._clock() - timedelta(days=days)
        async with self._session_factory() as session:
            result = await session.execute(
                delete(QueuedMessage).where(
                    QueuedMessage.status.in_(TERMINAL_STATUSES),
                    QueuedMessage.updated_at < cutoff,
                )
            )
            await session.commit()
            return result.rowcount or 0
