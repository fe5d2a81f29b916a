"""
Circuit Breaker for Generation Backends

Stops sending effect executions to a generation backend after too many
consecutive failed executions, so a backend outage fails records fast
instead of burning every record's full retry budget.

States:
- CLOSED: Normal operation, requests go through
- OPEN: Too many failures, blocking requests (fast-fail)
- HALF_OPEN: Testing if the backend recovered (allows N requests)

Example:
    breaker = CircuitBreaker(name="groq", failure_threshold=5, timeout=300)

    if breaker.is_open():
        raise ProviderUnavailableError("groq circuit breaker is OPEN")

    try:
        payload = await run_bounded(...)
        breaker.record_success()
    except RunnerError:
        breaker.record_failure()
        raise
"""

import threading
import logging
import time
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


class CircuitBreakerState:
    """Circuit breaker states"""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Blocking requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    One failure is one failed execution (retries exhausted), not one attempt.
    """

    def __init__(
        self,
        name: str = "generation",
        failure_threshold: int = 5,
        timeout: float = 300,
        half_open_max_calls: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Backend name used in logs
            failure_threshold: Consecutive failures before opening
            timeout: Seconds to stay OPEN before allowing a test call
            half_open_max_calls: Test calls allowed in HALF_OPEN state
            clock: Monotonic time source (injectable for tests)
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._half_open_calls = 0

        self._lock = threading.Lock()

        logger.info(f"CircuitBreaker[{name}] initialized: threshold={failure_threshold}, timeout={timeout}s")

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    def is_open(self) -> bool:
        """
        Check whether calls are blocked.

        Moves OPEN -> HALF_OPEN once the timeout has elapsed, and counts the
        call as a HALF_OPEN test call when it is let through.
        """
        with self._lock:
            if self._state == CircuitBreakerState.OPEN:
                if self._opened_at is not None and self._clock() - self._opened_at >= self.timeout:
                    logger.info(f"CircuitBreaker[{self.name}]: OPEN -> HALF_OPEN (timeout passed)")
                    self._state = CircuitBreakerState.HALF_OPEN
                    self._half_open_calls = 0
                else:
                    return True

            if self._state == CircuitBreakerState.HALF_OPEN:
                if self._half_open_calls >= self.half_open_max_calls:
                    logger.warning(f"CircuitBreaker[{self.name}]: HALF_OPEN max calls reached, blocking request")
                    return True
                self._half_open_calls += 1

            return False

    def is_closed(self) -> bool:
        return self.state == CircuitBreakerState.CLOSED

    def is_half_open(self) -> bool:
        return self.state == CircuitBreakerState.HALF_OPEN

    def record_success(self):
        """A record got its effects: close the circuit and forget past failures."""
        with self._lock:
            self._close("success")

    def record_failure(self):
        """A record exhausted its retries against this backend."""
        with self._lock:
            self._failure_count += 1

            if self._state == CircuitBreakerState.HALF_OPEN:
                self._open()
                logger.warning(
                    f"CircuitBreaker[{self.name}]: HALF_OPEN -> OPEN "
                    f"(test call failed, will retry in {self.timeout}s)"
                )
            elif self._state == CircuitBreakerState.CLOSED and self._failure_count >= self.failure_threshold:
                self._open()
                logger.error(
                    f"CircuitBreaker[{self.name}]: CLOSED -> OPEN "
                    f"({self._failure_count} consecutive failures, will retry in {self.timeout}s)"
                )
            else:
                logger.warning(
                    f"CircuitBreaker[{self.name}]: State={self._state}, "
                    f"Failures={self._failure_count}/{self.failure_threshold}"
                )

    def release(self):
        """
        Give back a HALF_OPEN test call that ended without a verdict
        (cancelled before success or failure could be recorded).
        """
        with self._lock:
            if self._state == CircuitBreakerState.HALF_OPEN and self._half_open_calls > 0:
                self._half_open_calls -= 1

    def _open(self):
        self._state = CircuitBreakerState.OPEN
        self._opened_at = self._clock()
        self._half_open_calls = 0

    def _close(self, reason: str):
        if self._state != CircuitBreakerState.CLOSED:
            logger.info(f"CircuitBreaker[{self.name}]: {self._state.upper()} -> CLOSED ({reason})")
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._half_open_calls = 0

    def reset(self):
        """Force the circuit CLOSED (operator override)"""
        with self._lock:
            self._close("manual reset")

    def get_status(self) -> dict:
        """Get circuit breaker status (for monitoring)"""
        with self._lock:
            return {
                "name": self.name,
                "state": self._state,
                "failure_count": self._failure_count,
                "failure_threshold": self.failure_threshold,
                "timeout_seconds": self.timeout,
                "half_open_calls": self._half_open_calls if self._state == CircuitBreakerState.HALF_OPEN else None,
            }


# ============================================================================
# PROCESS-WIDE BREAKERS
# ============================================================================

# One breaker per generation backend, shared by every cycle and Celery task
# of this process so failures are remembered between hourly runs.
_BREAKERS: Dict[str, CircuitBreaker] = {}
_BREAKERS_LOCK = threading.Lock()


def get_circuit_breaker(name: str, failure_threshold: int = 5, timeout: float = 300) -> CircuitBreaker:
    """
    Get the shared breaker of a backend, creating it on first use.

    Thresholds only apply on creation; later calls return the existing
    instance unchanged.
    """
    with _BREAKERS_LOCK:
        breaker = _BREAKERS.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name=name, failure_threshold=failure_threshold, timeout=timeout)
            _BREAKERS[name] = breaker
        return breaker


def clear_circuit_breakers():
    """Forget all shared breakers (tests)"""
    with _BREAKERS_LOCK:
        _BREAKERS.clear()
