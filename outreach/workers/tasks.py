"""
Celery maintenance tasks.

Each task runs on its own event loop with a fresh engine
(get_task_session_factory) and builds a pipeline around it.
"""
import asyncio
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Optional

from outreach.core.config import settings
from outreach.core.logging import get_logger, set_correlation_id
from outreach.db.database import get_task_session_factory
from outreach.runtime import Pipeline, build_pipeline
from outreach.workers.celery_app import celery_app

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # a Redis client bound to a closed loop cannot be reused by the next task
            from outreach.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def _with_pipeline(func: Callable[[Pipeline], Awaitable[Any]]) -> Any:
    async with get_task_session_factory() as session_factory:
        pipeline = build_pipeline(session_factory, settings)
        return await func(pipeline)


@celery_app.task(name="outreach.workers.tasks.reprocess_webhook_events")
def reprocess_webhook_events(limit: Optional[int] = None):
    """Retry webhook records whose handling failed"""

    async def _reprocess(pipeline: Pipeline):
        recovered = await pipeline.webhooks.reprocess_unprocessed(limit)
        return {"recovered": recovered}

    return run_async(_with_pipeline(_reprocess))


@celery_app.task(name="outreach.workers.tasks.cleanup_old_messages")
def cleanup_old_messages(days: Optional[int] = None):
    """Delete terminal queued messages past retention"""

    async def _cleanup(pipeline: Pipeline):
        deleted = await pipeline.queue.cleanup_old_messages(days)
        logger.info("Cleaned up old queued messages", extra_data={"deleted": deleted})
        return {"deleted": deleted}

    return run_async(_with_pipeline(_cleanup))


@celery_app.task(name="outreach.workers.tasks.cleanup_old_webhook_events")
def cleanup_old_webhook_events(days: Optional[int] = None):
    """Delete processed webhook records past retention"""

    async def _cleanup(pipeline: Pipeline):
        deleted = await pipeline.webhooks.cleanup_old_events(days)
        logger.info(
            "Cleaned up old webhook events",
            extra_data={"deleted": deleted, "cutoff_days": days or settings.WEBHOOK_RETENTION_DAYS},
        )
        return {"deleted": deleted}

    return run_async(_with_pipeline(_cleanup))


@celery_app.task(name="outreach.workers.tasks.cleanup_old_logs")
def cleanup_old_logs(days: Optional[int] = None):
    async def _cleanup(pipeline: Pipeline):
        deleted = await pipeline.activity_log.cleanup_old_logs(days or settings.LOG_RETENTION_DAYS)
        return {"deleted": deleted}

    return run_async(_with_pipeline(_cleanup))
