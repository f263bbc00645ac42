"""
In-process event bus.

Services receive a bus at construction and publish typed events on it.
Subscribers may be plain functions or coroutines; a failing subscriber is
logged and never breaks the publisher.
"""
import asyncio
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Union

from outreach.core.logging import get_logger

logger = get_logger(__name__)


class EventType(str, enum.Enum):
    """Pipeline event types"""
    MESSAGE_ENQUEUED = "message_enqueued"
    MESSAGE_DEFERRED = "message_deferred"
    MESSAGE_SENT = "message_sent"
    MESSAGE_FAILED = "message_failed"
    MESSAGES_CANCELLED = "messages_cancelled"
    MESSAGE_DELIVERED = "message_delivered"
    MESSAGE_READ = "message_read"
    MESSAGE_DELIVERY_FAILED = "message_delivery_failed"
    INBOUND_RECEIVED = "inbound_received"
    CONTACT_OPTED_OUT = "contact_opted_out"
    CONNECTIVITY_CHANGED = "connectivity_changed"
    HEALTH_CHECKED = "health_checked"
    ALERT_TRIGGERED = "alert_triggered"
    ALERT_ACKNOWLEDGED = "alert_acknowledged"


@dataclass
class PipelineEvent:
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.occurred_at.isoformat() + "Z",
        }


Subscriber = Callable[[PipelineEvent], Union[None, Awaitable[None]]]


class EventBus:
    """Typed publish/subscribe channel"""

    def __init__(self) -> None:
        self._subscribers: dict[EventType | None, list[Subscriber]] = {}

    def subscribe(self, callback: Subscriber, event_type: EventType | None = None) -> None:
        """Register a callback for one event type, or for every event when None."""
        self._subscribers.setdefault(event_type, []).append(callback)

    def unsubscribe(self, callback: Subscriber, event_type: EventType | None = None) -> None:
        callbacks = self._subscribers.get(event_type, [])
        if callback in callbacks:
            callbacks.remove(callback)

    async def publish(self, event_type: EventType, data: dict[str, Any] | None = None) -> PipelineEvent:
        event = PipelineEvent(type=event_type, data=data or {})
        callbacks = self._subscribers.get(event_type, []) + self._subscribers.get(None, [])
        for callback in list(callbacks):
            try:
                result = callback(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(
                    "Event subscriber failed",
                    extra_data={
                        "event_type": event_type.value,
                        "subscriber": getattr(callback, "__qualname__", repr(callback)),
                        "error": str(e),
                    },
                    exc_info=True,
                )
        return event
