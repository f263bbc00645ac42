"""
Alert Service - persisted monitoring alerts with deduplication.

Rules:
- transport_disconnected: gateway instance lost its session
- queue_backlog: too many pending jobs
- high_failure_rate: share of failed sends in the trailing window
- daily_cap_utilization: daily volume close to the cap

An unacknowledged alert for a rule suppresses new ones for the same rule
within ALERT_DEDUP_MINUTES.
"""
import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from outreach.core.clock import Clock, utcnow
from outreach.core.config import Settings
from outreach.core.events import EventBus, EventType
from outreach.core.logging import get_logger
from outreach.db.models.alert import Alert, AlertSeverity

logger = get_logger(__name__)

DEFAULT_ACTIVE_LIMIT = 50


@dataclass(frozen=True)
class AlertRule:
    id: str
    name: str
    severity: AlertSeverity
    description: str


TRANSPORT_DISCONNECTED = "transport_disconnected"
QUEUE_BACKLOG = "queue_backlog"
HIGH_FAILURE_RATE = "high_failure_rate"
DAILY_CAP_UTILIZATION = "daily_cap_utilization"
COMPLIANCE_BLOCKS_HIGH = "compliance_blocks_high"

ALERT_RULES: dict[str, AlertRule] = {
    TRANSPORT_DISCONNECTED: AlertRule(
        id=TRANSPORT_DISCONNECTED,
        name="Gateway disconnected",
        severity=AlertSeverity.CRITICAL,
        description="The gateway instance is not connected; no message can be sent",
    ),
    QUEUE_BACKLOG: AlertRule(
        id=QUEUE_BACKLOG,
        name="Queue backlog",
        severity=AlertSeverity.WARNING,
        description="Pending jobs above the alert threshold",
    ),
    HIGH_FAILURE_RATE: AlertRule(
        id=HIGH_FAILURE_RATE,
        name="High failure rate",
        severity=AlertSeverity.HIGH,
        description="Share of failed sends in the trailing window above the threshold",
    ),
    DAILY_CAP_UTILIZATION: AlertRule(
        id=DAILY_CAP_UTILIZATION,
        name="Daily cap utilization",
        severity=AlertSeverity.MEDIUM,
        description="Daily volume close to the configured cap",
    ),
    COMPLIANCE_BLOCKS_HIGH: AlertRule(
        id=COMPLIANCE_BLOCKS_HIGH,
        name="Many compliance blocks",
        severity=AlertSeverity.MEDIUM,
        description="Sends held back by compliance in the trailing window above the threshold",
    ),
}


class AlertService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        settings: Settings,
        *,
        events: Optional[EventBus] = None,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self._settings = settings
        self._events = events or EventBus()
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, rule_id: str) -> asyncio.Lock:
        lock = self._locks.get(rule_id)
        if lock is None:
            lock = self._locks[rule_id] = asyncio.Lock()
        return lock

    async def trigger(
        self,
        rule_id: str,
        message: str,
        details: Optional[dict[str, Any]] = None,
        severity: Optional[AlertSeverity] = None,
    ) -> Optional[Alert]:
        """
        Persist a new alert unless one for the same rule is still open and recent.

        Returns:
            The new alert, or None when deduplicated.

        Raises:
            ValueError: for an unknown rule id.
        """
        rule = ALERT_RULES.get(rule_id)
        if rule is None:
            raise ValueError(f"Unknown alert rule: {rule_id}")

        async with self._lock_for(rule_id):
            now = self._clock()
            window_start = now - timedelta(minutes=self._settings.ALERT_DEDUP_MINUTES)
            async with self._session_factory() as session:
                existing = await session.execute(
                    select(Alert.id).where(
                        Alert.rule_id == rule_id,
                        Alert.acknowledged.is_(False),
                        Alert.triggered_at >= window_start,
                    ).limit(1)
                )
                if existing.scalar_one_or_none() is not None:
                    logger.debug("Alert deduplicated", extra_data={"rule_id": rule_id})
                    return None

                alert = Alert(
                    rule_id=rule_id,
                    severity=severity or rule.severity,
                    message=message,
                    details=details,
                    triggered_at=now,
                    acknowledged=False,
                )
                session.add(alert)
                await session.commit()
                await session.refresh(alert)

        logger.warning(
            "Alert triggered",
            extra_data={
                "alert_id": alert.id,
                "rule_id": rule_id,
                "severity": alert.severity.value,
                "alert_message": message,
            },
        )
        await self._events.publish(EventType.ALERT_TRIGGERED, {
            "alert_id": alert.id,
            "rule_id": rule_id,
            "severity": alert.severity.value,
            "message": message,
            "details": details or {},
        })
        return alert

    async def acknowledge_alert(self, alert_id: int, who: str, note: Optional[str] = None) -> bool:
        """False when the alert does not exist or was already acknowledged."""
        now = self._clock()
        async with self._session_factory() as session:
            result = await session.execute(
                update(Alert)
                .where(Alert.id == alert_id, Alert.acknowledged.is_(False))
                .values(
                    acknowledged=True,
                    acknowledged_by=who,
                    acknowledged_at=now,
                    acknowledgement_note=note,
                )
            )
            await session.commit()
            acknowledged = bool(result.rowcount)

        if acknowledged:
            logger.info("Alert acknowledged", extra_data={"alert_id": alert_id, "by": who})
            await self._events.publish(EventType.ALERT_ACKNOWLEDGED, {
                "alert_id": alert_id,
                "acknowledged_by": who,
            })
        return acknowledged

    async def active_alerts(self, limit: int = DEFAULT_ACTIVE_LIMIT) -> list[Alert]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Alert)
                .where(Alert.acknowledged.is_(False))
                .order_by(Alert.triggered_at.desc(), Alert.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
