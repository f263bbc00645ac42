"""
Health Monitor - periodic snapshot of the pipeline and alert evaluation.

Components:
- transport: live gateway probe, plus the state last reported by webhooks
- queue: backlog and today's failures
- compliance: daily cap utilization and recent opt-outs; blocked sends feed an alert rule
- persistence: SELECT 1 latency

A component check that raises reports "unknown"; a snapshot is always
produced. The overall status is the worst component status.
"""
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import func, or_, select, text
from sqlalchemy.ext.asyncio import async_sessionmaker

from outreach.core.clock import Clock, local_day_bounds, utcnow
from outreach.core.config import Settings
from outreach.core.events import EventBus, EventType
from outreach.core.exceptions import HealthCheckError
from outreach.core.logging import get_logger
from outreach.core.ticker import Ticker
from outreach.db.models.alert import Alert, AlertSeverity
from outreach.db.models.gateway_connection import GatewayConnection
from outreach.db.models.log_entry import LogCategory, LogEntry, LogLevel
from outreach.db.models.queued_message import QueuedMessage
from outreach.domain.services.alert_service import (
    COMPLIANCE_BLOCKS_HIGH,
    DAILY_CAP_UTILIZATION,
    HIGH_FAILURE_RATE,
    QUEUE_BACKLOG,
    TRANSPORT_DISCONNECTED,
    AlertService,
)
from outreach.domain.services.compliance_service import ComplianceService
from outreach.domain.services.message_queue_service import MessageQueueService
from outreach.domain.services.transport.base_transport import BaseTransport
from outreach.state_machine.states import MessageStatus

logger = get_logger(__name__)

STATUS_HEALTHY = "healthy"
STATUS_WARNING = "warning"
STATUS_UNKNOWN = "unknown"
STATUS_CRITICAL = "critical"

_STATUS_RANK = {
    STATUS_HEALTHY: 0,
    STATUS_WARNING: 1,
    STATUS_UNKNOWN: 2,
    STATUS_CRITICAL: 3,
}

# queue check: "more failures than sends" only counts past this many jobs today
_FAILURE_CHECK_MIN_JOBS_TODAY = 10


def worst_status(statuses) -> str:
    return max(statuses, key=lambda s: _STATUS_RANK[s], default=STATUS_HEALTHY)


@dataclass
class ComponentHealth:
    status: str
    message: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "message": self.message, "details": self.details}


@dataclass
class SystemHealth:
    status: str
    components: dict[str, ComponentHealth]
    metrics: dict[str, Any]
    alerts: list[dict[str, Any]]
    checked_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "components": {name: c.to_dict() for name, c in self.components.items()},
            "metrics": self.metrics,
            "alerts": self.alerts,
            "checked_at": self.checked_at.isoformat(),
        }


def alert_summary(alert: Alert) -> dict[str, Any]:
    return {
        "id": alert.id,
        "rule_id": alert.rule_id,
        "severity": alert.severity.value,
        "message": alert.message,
        "triggered_at": alert.triggered_at.isoformat() if alert.triggered_at else None,
        "acknowledged": alert.acknowledged,
    }


class HealthMonitor:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        settings: Settings,
        transport: BaseTransport,
        queue: MessageQueueService,
        compliance: ComplianceService,
        alerts: AlertService,
        *,
        events: Optional[EventBus] = None,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self._settings = settings
        self._transport = transport
        self._queue = queue
        self._compliance = compliance
        self._alerts = alerts
        self._events = events or EventBus()
        self._clock = clock
        self._tz = ZoneInfo(settings.BUSINESS_TIMEZONE)
        self._running = False
        self.last_snapshot: Optional[SystemHealth] = None
        self._ticker = Ticker("health-monitor", settings.HEALTH_TICK_SECONDS, self.run_tick)

    def start(self) -> None:
        self._ticker.start()

    async def stop(self) -> None:
        await self._ticker.stop()

    # ── component checks ──

    async def _run_check(
        self, name: str, check: Callable[[dict[str, Any]], Awaitable[ComponentHealth]], metrics: dict[str, Any]
    ) -> ComponentHealth:
        try:
            return await check(metrics)
        except Exception as e:
            error = e if isinstance(e, HealthCheckError) else HealthCheckError(name, str(e))
            logger.warning(
                "Health check failed",
                extra_data={"component": name, "error": error.message},
            )
            return ComponentHealth(status=STATUS_UNKNOWN, message=error.message)

    async def _check_transport(self, metrics: dict[str, Any]) -> ComponentHealth:
        connectivity = await self._transport.get_connectivity()
        details = {
            "provider": self._transport.provider_name,
            "connected": connectivity.connected,
            "identity": connectivity.identity,
        }
        breaker = getattr(self._transport, "circuit_breaker", None)
        if breaker is not None:
            details["circuit"] = breaker.snapshot()
        reported = await self._reported_connectivity()
        if reported is not None:
            details["reported"] = reported
        if connectivity.connected:
            return ComponentHealth(status=STATUS_HEALTHY, details=details)
        return ComponentHealth(
            status=STATUS_CRITICAL,
            message=connectivity.error or "gateway not connected",
            details=details,
        )

    async def _reported_connectivity(self) -> Optional[dict[str, Any]]:
        """Last state the gateway pushed through webhooks, if any"""
        instance_id = self._settings.GATEWAY_INSTANCE_ID or "default"
        async with self._session_factory() as session:
            row = await session.get(GatewayConnection, instance_id)
        if row is None:
            return None
        return {
            "connected": row.connected,
            "last_seen_at": row.last_seen_at.isoformat() if row.last_seen_at else None,
            "last_error": row.last_error,
        }

    async def _today_outcomes(self, now: datetime) -> dict[str, int]:
        day_start, day_end = local_day_bounds(now, self._tz)

        def in_today(column):
            return select(func.count(QueuedMessage.id)).where(column >= day_start, column < day_end)

        async with self._session_factory() as session:
            return {
                "sent_today": (await session.execute(in_today(QueuedMessage.sent_at))).scalar() or 0,
                "failed_today": (await session.execute(
                    in_today(QueuedMessage.failed_at).where(QueuedMessage.status == MessageStatus.FAILED)
                )).scalar() or 0,
                "delivered_today": (await session.execute(in_today(QueuedMessage.delivered_at))).scalar() or 0,
                "read_today": (await session.execute(in_today(QueuedMessage.read_at))).scalar() or 0,
            }

    async def _check_queue(self, metrics: dict[str, Any]) -> ComponentHealth:
        stats = await self._queue.stats()
        today = await self._today_outcomes(self._clock())
        metrics["queue_backlog"] = stats.pending
        metrics["avg_latency"] = stats.avg_processing_seconds
        metrics["delivered_today"] = today["delivered_today"]
        metrics["read_today"] = today["read_today"]

        details = {**stats.to_dict(), **today}
        if stats.pending > self._settings.QUEUE_BACKLOG_CRITICAL:
            return ComponentHealth(STATUS_CRITICAL, f"{stats.pending} pending jobs", details)
        if stats.pending > self._settings.QUEUE_BACKLOG_WARNING:
            return ComponentHealth(STATUS_WARNING, f"{stats.pending} pending jobs", details)
        if (
            stats.total_today > _FAILURE_CHECK_MIN_JOBS_TODAY
            and today["failed_today"] > today["sent_today"]
        ):
            return ComponentHealth(STATUS_WARNING, "more failures than sends today", details)
        return ComponentHealth(STATUS_HEALTHY, details=details)

    async def _check_compliance(self, metrics: dict[str, Any]) -> ComponentHealth:
        stats = await self._compliance.stats()
        metrics["daily_sent"] = stats["daily_count"]
        metrics["daily_cap_utilization"] = stats["utilization"]

        details = {
            "daily_count": stats["daily_count"],
            "daily_cap": stats["daily_cap"],
            "utilization": stats["utilization"],
            "recent_opt_outs": stats["recent_opt_outs"],
            "within_send_window": stats["within_send_window"],
        }
        if stats["utilization"] > self._settings.DAILY_CAP_ALERT_RATIO:
            return ComponentHealth(STATUS_WARNING, "daily cap nearly reached", details)
        if stats["recent_opt_outs"] > self._settings.OPT_OUT_WARNING_COUNT:
            return ComponentHealth(STATUS_WARNING, "unusual number of opt-outs", details)
        return ComponentHealth(STATUS_HEALTHY, details=details)

    async def _check_persistence(self, metrics: dict[str, Any]) -> ComponentHealth:
        started = time.perf_counter()
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            logger.warning("Database health check failed", extra_data={"error": str(e)})
            return ComponentHealth(STATUS_CRITICAL, "database unavailable")

        latency_ms = round((time.perf_counter() - started) * 1000, 2)
        details = {"latency_ms": latency_ms}
        if latency_ms > self._settings.DB_LATENCY_CRITICAL_MS:
            return ComponentHealth(STATUS_CRITICAL, "database very slow", details)
        if latency_ms > self._settings.DB_LATENCY_WARNING_MS:
            return ComponentHealth(STATUS_WARNING, "database slow", details)
        return ComponentHealth(STATUS_HEALTHY, details=details)

    async def _failure_ratio(self, metrics: dict[str, Any]) -> None:
        """Failed share of send outcomes in the trailing window."""
        since = self._clock() - timedelta(hours=self._settings.FAILURE_RATE_WINDOW_HOURS)
        async with self._session_factory() as session:
            outcomes = (await session.execute(
                select(func.count(QueuedMessage.id)).where(
                    or_(QueuedMessage.sent_at >= since, QueuedMessage.failed_at >= since)
                )
            )).scalar() or 0
            failed = (await session.execute(
                select(func.count(QueuedMessage.id)).where(
                    QueuedMessage.status == MessageStatus.FAILED,
                    QueuedMessage.failed_at >= since,
                )
            )).scalar() or 0
        metrics["failure_sample"] = outcomes
        metrics["failure_ratio"] = round(failed / outcomes, 4) if outcomes else 0.0

    async def _compliance_blocks(self, metrics: dict[str, Any]) -> None:
        """Sends held back by compliance (deferred or cancelled) in the trailing window."""
        since = self._clock() - timedelta(minutes=self._settings.COMPLIANCE_BLOCKS_WINDOW_MINUTES)
        async with self._session_factory() as session:
            blocks = (await session.execute(
                select(func.count(LogEntry.id)).where(
                    LogEntry.category == LogCategory.COMPLIANCE,
                    LogEntry.level == LogLevel.WARNING,
                    LogEntry.created_at >= since,
                )
            )).scalar() or 0
        metrics["compliance_blocks"] = blocks

    # ── snapshot ──

    async def check_health(self) -> SystemHealth:
        metrics: dict[str, Any] = {
            "daily_sent": None,
            "queue_backlog": None,
            "failure_ratio": None,
            "failure_sample": None,
            "avg_latency": None,
            "delivered_today": None,
            "read_today": None,
            "daily_cap_utilization": None,
            "compliance_blocks": None,
        }
        components = {
            "transport": await self._run_check("transport", self._check_transport, metrics),
            "queue": await self._run_check("queue", self._check_queue, metrics),
            "compliance": await self._run_check("compliance", self._check_compliance, metrics),
            "persistence": await self._run_check("persistence", self._check_persistence, metrics),
        }

        try:
            await self._failure_ratio(metrics)
        except Exception as e:
            logger.warning("Failure ratio unavailable", extra_data={"error": str(e)})

        try:
            await self._compliance_blocks(metrics)
        except Exception as e:
            logger.warning("Compliance block count unavailable", extra_data={"error": str(e)})

        try:
            active = [alert_summary(a) for a in await self._alerts.active_alerts()]
        except Exception as e:
            logger.warning("Active alerts unavailable", extra_data={"error": str(e)})
            active = []

        snapshot = SystemHealth(
            status=worst_status(c.status for c in components.values()),
            components=components,
            metrics=metrics,
            alerts=active,
            checked_at=self._clock(),
        )
        self.last_snapshot = snapshot
        return snapshot

    async def evaluate_alerts(self, snapshot: SystemHealth) -> list[Alert]:
        """Trigger every rule the snapshot breaks; returns the alerts actually created."""
        settings = self._settings
        metrics = snapshot.metrics
        candidates: list[tuple[str, str, dict[str, Any], Optional[AlertSeverity]]] = []

        transport = snapshot.components.get("transport")
        if transport is not None and transport.details.get("connected") is False:
            candidates.append((
                TRANSPORT_DISCONNECTED,
                "Gateway instance disconnected",
                {"error": transport.message},
                None,
            ))

        backlog = metrics.get("queue_backlog")
        if backlog is not None and backlog > settings.QUEUE_BACKLOG_ALERT_THRESHOLD:
            severity = (
                AlertSeverity.CRITICAL if backlog > settings.QUEUE_BACKLOG_CRITICAL else AlertSeverity.WARNING
            )
            candidates.append((
                QUEUE_BACKLOG,
                f"{backlog} messages waiting in the queue",
                {"pending": backlog, "threshold": settings.QUEUE_BACKLOG_ALERT_THRESHOLD},
                severity,
            ))

        ratio = metrics.get("failure_ratio")
        sample = metrics.get("failure_sample") or 0
        if ratio is not None and sample >= settings.FAILURE_RATE_MIN_SAMPLE and ratio > settings.FAILURE_RATE_THRESHOLD:
            candidates.append((
                HIGH_FAILURE_RATE,
                f"Failure rate {ratio:.0%} over the last {settings.FAILURE_RATE_WINDOW_HOURS}h",
                {"failure_ratio": ratio, "sample": sample},
                None,
            ))

        utilization = metrics.get("daily_cap_utilization")
        if utilization is not None and utilization > settings.DAILY_CAP_ALERT_RATIO:
            candidates.append((
                DAILY_CAP_UTILIZATION,
                f"Daily cap {utilization:.0%} used",
                {"utilization": utilization, "daily_sent": metrics.get("daily_sent")},
                None,
            ))

        blocks = metrics.get("compliance_blocks")
        if blocks is not None and blocks > settings.COMPLIANCE_BLOCKS_ALERT_THRESHOLD:
            candidates.append((
                COMPLIANCE_BLOCKS_HIGH,
                f"{blocks} sends held back by compliance in the last {settings.COMPLIANCE_BLOCKS_WINDOW_MINUTES} minutes",
                {"blocks": blocks, "threshold": settings.COMPLIANCE_BLOCKS_ALERT_THRESHOLD},
                None,
            ))

        triggered: list[Alert] = []
        for rule_id, message, details, severity in candidates:
            try:
                alert = await self._alerts.trigger(rule_id, message, details, severity=severity)
            except Exception as e:
                logger.error(
                    "Failed to trigger alert",
                    extra_data={"rule_id": rule_id, "error": str(e)},
                    exc_info=True,
                )
                continue
            if alert is not None:
                triggered.append(alert)
        return triggered

    async def run_tick(self) -> Optional[SystemHealth]:
        """One monitoring pass; None when a pass is already running."""
        if self._running:
            return None
        self._running = True
        try:
            snapshot = await self.check_health()
            triggered = await self.evaluate_alerts(snapshot)
            snapshot.alerts.extend(alert_summary(a) for a in triggered)
        finally:
            self._running = False

        if snapshot.status != STATUS_HEALTHY:
            logger.warning(
                "Pipeline health degraded",
                extra_data={
                    "status": snapshot.status,
                    "components": {n: c.status for n, c in snapshot.components.items()},
                },
            )
        await self._events.publish(EventType.HEALTH_CHECKED, {
            "status": snapshot.status,
            "new_alerts": len(triggered),
        })
        return snapshot
