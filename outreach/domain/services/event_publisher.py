"""
Redis Event Publisher - forwards pipeline events to Redis.

Each event is published on a Pub/Sub channel for live dashboards and pushed
onto a bounded history list. A Redis failure is logged and never reaches the
publishing service.
"""
import json

from outreach.core.events import EventBus, PipelineEvent
from outreach.core.logging import get_logger
from outreach.core.redis_client import get_redis

logger = get_logger(__name__)

CHANNEL = "outreach_events"
HISTORY_KEY = "outreach_event_history"
MAX_HISTORY_SIZE = 100


class RedisEventPublisher:
    def __init__(self, redis_getter=get_redis):
        self._redis_getter = redis_getter

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(self.publish)

    async def publish(self, event: PipelineEvent) -> None:
        try:
            message = json.dumps(event.to_dict(), ensure_ascii=False, default=str)
            redis = await self._redis_getter()
            await redis.publish(CHANNEL, message)
            await redis.lpush(HISTORY_KEY, message)
            await redis.ltrim(HISTORY_KEY, 0, MAX_HISTORY_SIZE - 1)
        except Exception as e:
            logger.error(
                "Failed to publish event to Redis",
                extra_data={"event_type": event.type.value, "error": str(e)},
                exc_info=True,
            )

    async def history(self, limit: int = 50) -> list[dict]:
        """Latest events, newest first"""
        try:
            redis = await self._redis_getter()
            raw_items = await redis.lrange(HISTORY_KEY, 0, limit - 1)
            return [json.loads(item) for item in raw_items]
        except Exception as e:
            logger.error(
                "Failed to read event history",
                extra_data={"error": str(e)},
                exc_info=True,
            )
            return []
