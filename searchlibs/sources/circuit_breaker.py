"""Circuit breaker guarding calls into a search backend.

A backend that keeps failing is short-circuited for ``recovery_timeout``
seconds so requests degrade immediately instead of spending their deadline
on it. After the pause a single trial call is let through (HALF_OPEN); success
closes the breaker again.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger("sources.circuit_breaker")


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, reject calls
    HALF_OPEN = "half_open"  # Testing if backend recovered


class CircuitBreakerError(Exception):
    """Circuit breaker is open."""
    pass


class CircuitBreaker:
    """Circuit breaker for calls into one backend."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        expected_exception: type = Exception,
        name: str = "circuit_breaker",
        clock: Callable[[], float] = time.monotonic,
    ):
        """Configure a circuit breaker.

        Parameters
        - failure_threshold: Consecutive failures before opening the breaker
        - recovery_timeout: Seconds to wait before a HALF_OPEN trial call
        - expected_exception: Exception type(s) treated as failures
        - name: Identifier for logs
        - clock: Monotonic time source (injectable for tests)
        """
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.name = name
        self._clock = clock

        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitBreakerState.CLOSED
        self._trial_in_flight = False
        self._lock = asyncio.Lock()

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Await ``func(*args, **kwargs)`` with circuit breaker protection.

        Cancellation (e.g. a caller-side timeout) is recorded as a failure so a
        backend that hangs opens the breaker just like one that errors. While
        HALF_OPEN only the trial call runs; concurrent calls are rejected.
        """
        async with self._lock:
            if self.state == CircuitBreakerState.OPEN:
                if self._should_attempt_reset():
                    self.state = CircuitBreakerState.HALF_OPEN
                    logger.info("Circuit breaker transitioning to HALF_OPEN", name=self.name)
                else:
                    raise CircuitBreakerError(f"Circuit breaker {self.name} is open")
            elif self.state == CircuitBreakerState.HALF_OPEN and self._trial_in_flight:
                raise CircuitBreakerError(f"Circuit breaker {self.name} is waiting for its trial call")

            is_trial = self.state == CircuitBreakerState.HALF_OPEN
            if is_trial:
                self._trial_in_flight = True

        try:
            result = await func(*args, **kwargs)
        except asyncio.CancelledError:
            self._on_failure()
            raise
        except self.expected_exception:
            self._on_failure()
            raise
        finally:
            if is_trial:
                self._trial_in_flight = False

        self._on_success()
        return result

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_time is None:
            return True
        return (self._clock() - self.last_failure_time) >= self.recovery_timeout

    def _on_success(self) -> None:
        if self.state == CircuitBreakerState.HALF_OPEN:
            logger.info("Circuit breaker reset to CLOSED", name=self.name)
        self.state = CircuitBreakerState.CLOSED
        self.failure_count = 0

    def _on_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self.state == CircuitBreakerState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            if self.state != CircuitBreakerState.OPEN:
                logger.warning(
                    "Circuit breaker opened due to failures",
                    name=self.name,
                    failure_count=self.failure_count,
                    threshold=self.failure_threshold
                )
            self.state = CircuitBreakerState.OPEN

    def get_state(self) -> CircuitBreakerState:
        """Get current circuit breaker state."""
        return self.state

    def get_stats(self) -> dict:
        """Get circuit breaker statistics."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "last_failure_time": self.last_failure_time,
            "recovery_timeout": self.recovery_timeout
        }
