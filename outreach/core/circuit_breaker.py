"""
Gateway circuit breaker.

Stops hammering the messaging gateway once it keeps failing. While open,
sends are reported as not accepted without a network call. Each transport
owns its breaker; build_pipeline() wires one per process.
"""
import asyncio
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, ParamSpec, TypeVar

from outreach.core.config import Settings
from outreach.core.exceptions import CircuitBreakerOpenError
from outreach.core.logging import get_logger

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"        # sends go through
    OPEN = "open"            # sends refused until the cool-down ends
    HALF_OPEN = "half_open"  # a few trial sends decide


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5      # consecutive failures that open the circuit
    success_threshold: int = 2      # trial successes that close it again
    timeout_seconds: float = 30.0   # cool-down before the first trial
    half_open_max_calls: int = 3


@dataclass
class CircuitBreakerState:
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_at: float = 0.0
    half_open_calls: int = 0


class CircuitBreaker:
    """
    Failure counter in front of one gateway.

    CLOSED counts consecutive failures; reaching the threshold opens the
    circuit. OPEN refuses every call until timeout_seconds have passed since
    the last failure, then lets up to half_open_max_calls trial calls through.
    Enough trial successes close it; any trial failure opens it again.
    """

    def __init__(self, service_name: str, config: CircuitBreakerConfig | None = None):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitBreakerState()
        # not an asyncio.Lock: callers may run on different event loops
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state.state

    @property
    def is_closed(self) -> bool:
        return self._state.state == CircuitState.CLOSED

    def _cooled_down(self) -> bool:
        return time.monotonic() - self._state.last_failure_at >= self.config.timeout_seconds

    def _move_to(self, new_state: CircuitState) -> None:
        """Caller holds self._lock"""
        old_state = self._state.state
        self._state.state = new_state
        if new_state != CircuitState.OPEN:
            self._state.success_count = 0
            self._state.half_open_calls = 0
        if new_state == CircuitState.CLOSED:
            self._state.failure_count = 0

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            "Gateway circuit state changed",
            extra_data={
                "service": self.service_name,
                "from": old_state.value,
                "to": new_state.value,
                "failure_count": self._state.failure_count,
            },
        )

    async def record_success(self) -> None:
        with self._lock:
            if self._state.state == CircuitState.HALF_OPEN:
                self._state.success_count += 1
                if self._state.success_count >= self.config.success_threshold:
                    self._move_to(CircuitState.CLOSED)
            elif self._state.state == CircuitState.CLOSED:
                self._state.failure_count = 0

    async def record_failure(self, error: Exception | None = None) -> None:
        with self._lock:
            self._state.failure_count += 1
            self._state.last_failure_at = time.monotonic()
            logger.debug(
                "Gateway call failed",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._state.failure_count,
                    "error": str(error) if error else None,
                },
            )
            if (
                self._state.state == CircuitState.HALF_OPEN
                or self._state.failure_count >= self.config.failure_threshold
            ):
                self._move_to(CircuitState.OPEN)

    async def can_execute(self) -> bool:
        with self._lock:
            if self._state.state == CircuitState.CLOSED:
                return True
            if self._state.state == CircuitState.OPEN:
                if not self._cooled_down():
                    return False
                self._move_to(CircuitState.HALF_OPEN)
            if self._state.half_open_calls >= self.config.half_open_max_calls:
                return False
            self._state.half_open_calls += 1
            return True

    def get_retry_after(self) -> float:
        """Seconds left in the cool-down; 0 unless open"""
        if self._state.state != CircuitState.OPEN:
            return 0.0
        elapsed = time.monotonic() - self._state.last_failure_at
        return max(0.0, self.config.timeout_seconds - elapsed)

    def snapshot(self) -> dict[str, Any]:
        return {
            "service": self.service_name,
            "state": self._state.state.value,
            "failure_count": self._state.failure_count,
            "retry_after_seconds": round(self.get_retry_after(), 1),
        }

    async def execute(self, func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
        """
        Run func through the breaker.

        Raises:
            CircuitBreakerOpenError: the circuit refused the call
        """
        if not await self.can_execute():
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())

        try:
            if asyncio.iscoroutinefunction(func):
                result = await func(*args, **kwargs)
            else:
                result = func(*args, **kwargs)
        except Exception as e:
            await self.record_failure(e)
            raise
        await self.record_success()
        return result


def gateway_circuit_breaker(settings: Settings) -> CircuitBreaker:
    """Breaker for the messaging gateway, tuned from settings"""
    return CircuitBreaker(
        "gateway",
        CircuitBreakerConfig(
            failure_threshold=settings.GATEWAY_CIRCUIT_FAILURE_THRESHOLD,
            timeout_seconds=settings.GATEWAY_CIRCUIT_TIMEOUT_SECONDS,
        ),
    )
