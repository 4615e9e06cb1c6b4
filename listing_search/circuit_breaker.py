"""Circuit breaker guarding calls to embedding providers and vector stores.

States:
    closed     normal operation, calls pass through
    open       too many consecutive failures, calls are rejected
    half-open  reset timeout elapsed, a few trial calls are let through
"""
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Dict, TypeVar

from listing_search.errors import CircuitOpenError

# Configure logging
logger = logging.getLogger(__name__)

T = TypeVar("T")

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half-open"


class CircuitBreaker:
    """Thread-safe circuit breaker owned by a single dependency client."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        reset_timeout: float = 30.0,
        half_open_max_attempts: int = 3,
        success_threshold: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the breaker.

        Args:
            name: Dependency name used in logs and errors
            failure_threshold: Consecutive failures that open the circuit
            reset_timeout: Seconds to wait before trying a half-open call
            half_open_max_attempts: Trial calls allowed while half-open
            success_threshold: Half-open successes needed to close again
            clock: Monotonic time source (injectable for tests)
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_max_attempts = half_open_max_attempts
        self.success_threshold = success_threshold
        self._clock = clock
        self._lock = threading.Lock()

        self._state = CLOSED
        self._failures = 0
        self._successes = 0
        self._half_open_attempts = 0
        self._last_failure_time = 0.0
        self._total_requests = 0
        self._total_failures = 0

    @property
    def state(self) -> str:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def is_open(self) -> bool:
        return self.state == OPEN

    def _transition(self, new_state: str) -> None:
        if self._state == new_state:
            return
        logger.info(f"Circuit {self.name}: {self._state} -> {new_state}")
        self._state = new_state
        if new_state == HALF_OPEN:
            self._half_open_attempts = 0
            self._successes = 0
        elif new_state == CLOSED:
            self._failures = 0
            self._successes = 0

    def _maybe_half_open(self) -> None:
        if self._state == OPEN and self._clock() - self._last_failure_time >= self.reset_timeout:
            self._transition(HALF_OPEN)

    def _acquire(self) -> None:
        with self._lock:
            self._maybe_half_open()
            if self._state == CLOSED:
                return
            if self._state == HALF_OPEN and self._half_open_attempts < self.half_open_max_attempts:
                self._half_open_attempts += 1
                return
            retry_after = self.reset_timeout - (self._clock() - self._last_failure_time)
            raise CircuitOpenError(self.name, retry_after)

    def record_success(self) -> None:
        with self._lock:
            self._total_requests += 1
            if self._state == HALF_OPEN:
                self._successes += 1
                if self._successes >= self.success_threshold:
                    self._transition(CLOSED)
            else:
                self._failures = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._total_failures += 1
            self._total_requests += 1
            self._last_failure_time = self._clock()
            if self._state == HALF_OPEN:
                self._transition(OPEN)
            elif self._state == CLOSED and self._failures >= self.failure_threshold:
                logger.warning(f"Circuit {self.name} opened after {self._failures} consecutive failures")
                self._transition(OPEN)

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run *fn* under the breaker, recording its outcome."""
        self._acquire()
        try:
            result = await fn()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._transition(CLOSED)
            self._failures = 0

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            self._maybe_half_open()
            return {
                "state": self._state,
                "failures": self._failures,
                "total_requests": self._total_requests,
                "total_failures": self._total_failures,
            }
