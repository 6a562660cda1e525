"""Token-bucket rate limiter for outbound Jira requests"""

import logging
import threading
import time
from typing import Callable, Optional

from jiracdc.errors import OperationCancelledError

logger = logging.getLogger(__name__)

# Absorbs float rounding in the refill arithmetic.
_EPSILON = 1e-9


class TokenBucket:
    """Thread-safe token bucket.

    Tokens refill continuously at `rate` per second up to `burst`. The bucket starts
    full, so the first `burst` acquisitions are immediate.
    """

    def __init__(
        self,
        rate: float = 10.0,
        burst: int = 20,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.rate = float(rate)
        self.burst = int(burst)
        self._clock = clock
        self._tokens = float(burst)
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self, now: float) -> None:
        elapsed = now - self._updated
        if elapsed > 0:
            self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
            self._updated = now

    def try_acquire(self) -> bool:
        """Take a token if one is available right now."""
        with self._lock:
            self._refill(self._clock())
            if self._tokens >= 1.0 - _EPSILON:
                self._tokens -= 1.0
                return True
            return False

    def acquire(
        self,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> float:
        """Block until a token is available.

        Returns the number of seconds spent waiting. Raises OperationCancelledError if
        `cancel_event` fires first and TimeoutError if `timeout` elapses.
        """
        started = self._clock()
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelledError("Rate limiter wait cancelled")

            with self._lock:
                now = self._clock()
                self._refill(now)
                if self._tokens >= 1.0 - _EPSILON:
                    self._tokens -= 1.0
                    return now - started
                delay = (1.0 - self._tokens) / self.rate

            if timeout is not None:
                remaining = timeout - (self._clock() - started)
                if remaining <= 0:
                    raise TimeoutError("Timed out waiting for a rate limit token")
                delay = min(delay, remaining)

            # Event.wait doubles as an interruptible sleep.
            if cancel_event is not None:
                cancel_event.wait(delay)
            else:
                time.sleep(delay)
