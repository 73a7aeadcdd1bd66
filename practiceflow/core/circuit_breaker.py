"""
Circuit Breaker for outbound messaging

Stops hammering the messaging provider when it is down: after too many
consecutive delivery failures, sends fail fast until a cool-down passes.

States:
- CLOSED: Normal operation, sends go through
- OPEN: Too many failures, sends are rejected immediately
- HALF_OPEN: Cool-down passed, a single trial send is allowed

Example:
    if messaging_circuit_breaker.is_open():
        raise MessageDeliveryError("Messaging circuit breaker is OPEN")

    try:
        await client.post(...)
        messaging_circuit_breaker.record_success()
    except httpx.HTTPError:
        messaging_circuit_breaker.record_failure()
        raise
"""

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class CircuitBreakerState:
    """Circuit breaker states"""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Thread-safe consecutive-failure circuit breaker."""

    def __init__(
        self,
        name: str = "messaging",
        failure_threshold: int = 5,
        timeout: int = 300,
        half_open_max_calls: int = 1,
        time_source: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            name: Label used in logs and status output
            failure_threshold: Consecutive failures before opening
            timeout: Seconds to stay OPEN before allowing a trial send
            half_open_max_calls: Trial sends allowed while HALF_OPEN
            time_source: Seconds clock (monotonic by default)
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.half_open_max_calls = half_open_max_calls
        self._time = time_source

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._half_open_calls = 0

        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    def is_open(self) -> bool:
        """True when calls should be rejected without trying."""
        with self._lock:
            if self._state == CircuitBreakerState.OPEN:
                if self._opened_at is not None and self._time() - self._opened_at >= self.timeout:
                    logger.info(f"CircuitBreaker[{self.name}]: OPEN → HALF_OPEN (timeout passed)")
                    self._state = CircuitBreakerState.HALF_OPEN
                    self._half_open_calls = 1
                    return False
                return True

            if self._state == CircuitBreakerState.HALF_OPEN:
                if self._half_open_calls >= self.half_open_max_calls:
                    return True
                self._half_open_calls += 1
                return False

            return False

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitBreakerState.CLOSED:
                logger.info(f"CircuitBreaker[{self.name}]: {self._state} → CLOSED (success)")
            self._state = CircuitBreakerState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._half_open_calls = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1

            if self._state == CircuitBreakerState.HALF_OPEN:
                self._open()
                logger.warning(
                    f"CircuitBreaker[{self.name}]: HALF_OPEN → OPEN "
                    f"(trial send failed, will retry in {self.timeout}s)"
                )
            elif self._state == CircuitBreakerState.CLOSED and self._failure_count >= self.failure_threshold:
                self._open()
                logger.error(
                    f"CircuitBreaker[{self.name}]: CLOSED → OPEN "
                    f"({self._failure_count} consecutive failures, will retry in {self.timeout}s)"
                )
            else:
                logger.warning(
                    f"CircuitBreaker[{self.name}]: Failures={self._failure_count}/{self.failure_threshold}"
                )

    def _open(self) -> None:
        self._state = CircuitBreakerState.OPEN
        self._opened_at = self._time()

    def reset(self) -> None:
        """Manually force the breaker back to CLOSED."""
        with self._lock:
            self._state = CircuitBreakerState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._half_open_calls = 0

    def get_status(self) -> dict:
        """Snapshot for the metrics endpoint."""
        with self._lock:
            return {
                "name": self.name,
                "state": self._state,
                "failure_count": self._failure_count,
                "failure_threshold": self.failure_threshold,
                "timeout_seconds": self.timeout,
            }


# Shared by every HttpMessageSender in the process
messaging_circuit_breaker = CircuitBreaker(
    name="messaging",
    failure_threshold=5,
    timeout=300,
    half_open_max_calls=1,
)
