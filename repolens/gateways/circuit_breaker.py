"""Circuit breaker for agent endpoint protection.

Prevents a pile-up of long agent calls when the agent runtime is down by
tracking consecutive failures and short-circuiting requests during outages.

States:
  CLOSED    -- normal operation, requests pass through
  OPEN      -- endpoint is down, requests fail immediately
  HALF_OPEN -- cooldown expired, one trial request allowed

``run_with_timeout`` combines ``asyncio.wait_for`` with the breaker
bookkeeping so agent calls get a single helper.
"""

import asyncio
import logging
import threading
import time
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, TypeVar

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3    # consecutive failures before opening
DEFAULT_COOLDOWN_SECONDS = 60    # seconds to wait before a half-open trial request

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """Raised when the circuit is open and requests are blocked."""

    def __init__(self, endpoint: str, retry_after: float):
        self.endpoint = endpoint
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker OPEN for '{endpoint}'. "
            f"Retry after {retry_after:.0f}s."
        )


class CircuitBreaker:
    """Per-endpoint circuit breaker.

    Guarded by a plain Lock: it is touched from the event loop and from
    worker threads alike, and no method awaits while holding it.
    """

    def __init__(
        self,
        endpoint: str,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.endpoint = endpoint
        self._failure_threshold = failure_threshold
        self._cooldown_seconds = cooldown_seconds
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def check(self) -> None:
        """Check if a request is allowed. Raises CircuitBreakerOpen if not."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return
            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - self._last_failure_time
                if elapsed >= self._cooldown_seconds:
                    self._state = CircuitState.HALF_OPEN
                    logger.info("Circuit %s: OPEN -> HALF_OPEN (cooldown expired)", self.endpoint)
                    return
                raise CircuitBreakerOpen(self.endpoint, self._cooldown_seconds - elapsed)

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info("Circuit %s: HALF_OPEN -> CLOSED", self.endpoint)
            self._state = CircuitState.CLOSED
            self._failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.warning("Circuit %s: HALF_OPEN -> OPEN (trial request failed)", self.endpoint)
            elif self._failure_count >= self._failure_threshold and self._state != CircuitState.OPEN:
                self._state = CircuitState.OPEN
                logger.warning(
                    "Circuit %s: CLOSED -> OPEN (%d consecutive failures)",
                    self.endpoint, self._failure_count,
                )


class BreakerRegistry:
    """One breaker per agent endpoint, created on first use."""

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
    ) -> None:
        self._failure_threshold = failure_threshold
        self._cooldown_seconds = cooldown_seconds
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, endpoint: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(endpoint)
            if breaker is None:
                breaker = CircuitBreaker(
                    endpoint,
                    failure_threshold=self._failure_threshold,
                    cooldown_seconds=self._cooldown_seconds,
                )
                self._breakers[endpoint] = breaker
            return breaker

    def reset(self) -> None:
        with self._lock:
            self._breakers.clear()


async def run_with_timeout(
    fn: Callable[[], Awaitable[T]],
    timeout: Optional[float],
    breaker: CircuitBreaker,
    label: str = "agent call",
) -> T:
    """Await *fn()* with a wall-clock timeout and circuit-breaker bookkeeping.

    Raises:
        CircuitBreakerOpen: if the breaker is open.
        TimeoutError: if *fn* exceeds *timeout* seconds.
        Exception: any exception raised by *fn*.
    """
    breaker.check()

    try:
        result = await asyncio.wait_for(fn(), timeout=timeout)
    except asyncio.TimeoutError:
        breaker.record_failure()
        logger.error("%s timed out after %ss", label, timeout)
        raise TimeoutError(f"{label} exceeded {timeout}s timeout") from None
    except asyncio.CancelledError:
        raise
    except Exception:
        breaker.record_failure()
        raise
    breaker.record_success()
    return result
