"""
Periodic task runner.

A Ticker calls an async function every ``interval_seconds`` until stopped.
Tests drive the same function directly through ``tick()``.
"""
import asyncio
from typing import Any, Awaitable, Callable

from outreach.core.logging import get_logger

logger = get_logger(__name__)


class Ticker:
    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], Awaitable[Any]],
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self._func = func
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> Any:
        """Run one iteration. Errors are logged so the loop keeps going."""
        try:
            return await self._func()
        except Exception as e:
            logger.error(
                f"Ticker '{self.name}' iteration failed",
                extra_data={"ticker": self.name, "error": str(e)},
                exc_info=True,
            )
            return None

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name=f"ticker:{self.name}")
        logger.info(
            f"Ticker '{self.name}' started",
            extra_data={"ticker": self.name, "interval_seconds": self.interval_seconds},
        )

    async def stop(self) -> None:
        """Signal the loop and wait for the in-flight iteration to finish."""
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info(f"Ticker '{self.name}' stopped", extra_data={"ticker": self.name})
