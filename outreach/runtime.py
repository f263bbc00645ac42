"""
Pipeline wiring.

build_pipeline() constructs every service explicitly from a session factory,
settings, transport, clock and event bus. The FastAPI app and the Celery
tasks both build their pipeline here.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from outreach.core.clock import Clock, utcnow
from outreach.core.config import Settings
from outreach.core.events import EventBus
from outreach.core.logging import get_logger
from outreach.domain.services.activity_log_service import ActivityLogService
from outreach.domain.services.alert_service import AlertService
from outreach.domain.services.compliance_service import ComplianceService
from outreach.domain.services.event_publisher import RedisEventPublisher
from outreach.domain.services.health_monitor import HealthMonitor
from outreach.domain.services.message_queue_service import MessageQueueService
from outreach.domain.services.transport import BaseTransport, create_transport
from outreach.domain.services.webhook_processor import WebhookProcessor

logger = get_logger(__name__)


@dataclass
class Pipeline:
    settings: Settings
    events: EventBus
    transport: BaseTransport
    activity_log: ActivityLogService
    compliance: ComplianceService
    alerts: AlertService
    queue: MessageQueueService
    webhooks: WebhookProcessor
    monitor: HealthMonitor
    publisher: Optional[RedisEventPublisher] = None

    def start(self) -> None:
        """Start the queue and health tickers."""
        self.queue.start()
        self.monitor.start()
        logger.info("Pipeline started", extra_data={"provider": self.transport.provider_name})

    async def stop(self) -> None:
        await self.queue.stop()
        await self.monitor.stop()
        logger.info("Pipeline stopped")


def build_pipeline(
    session_factory: async_sessionmaker,
    settings: Settings,
    *,
    transport: Optional[BaseTransport] = None,
    events: Optional[EventBus] = None,
    clock: Clock = utcnow,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Pipeline:
    events = events or EventBus()
    publisher = None
    if settings.EVENTS_REDIS_ENABLED:
        publisher = RedisEventPublisher()
        publisher.attach(events)

    transport = transport or create_transport(settings)
    activity_log = ActivityLogService(session_factory, clock)
    compliance = ComplianceService(session_factory, settings, clock)
    alerts = AlertService(session_factory, settings, events=events, clock=clock)
    queue = MessageQueueService(
        session_factory,
        settings,
        compliance,
        transport,
        events=events,
        activity_log=activity_log,
        clock=clock,
        sleep=sleep,
    )
    webhooks = WebhookProcessor(
        session_factory,
        settings,
        compliance,
        alerts,
        events=events,
        activity_log=activity_log,
        clock=clock,
    )
    monitor = HealthMonitor(
        session_factory,
        settings,
        transport,
        queue,
        compliance,
        alerts,
        events=events,
        clock=clock,
    )
    return Pipeline(
        settings=settings,
        events=events,
        transport=transport,
        activity_log=activity_log,
        compliance=compliance,
        alerts=alerts,
        queue=queue,
        webhooks=webhooks,
        monitor=monitor,
        publisher=publisher,
    )
