"""
Rate limiting primitives for the SSO endpoint families.
Minimum-interval limiter per endpoint family and capped exponential backoff
for device token polling.
"""

import time
import threading
import logging
from contextlib import contextmanager
from typing import Iterator, Optional


logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Minimum-interval rate limiter for one endpoint family.
    Thread-safe: concurrent callers are serialized and spaced.
    """

    def __init__(self, min_interval_ms: int, name: str = "default"):
        """
        Initialize rate limiter.

        Args:
            min_interval_ms: Minimum spacing between calls in milliseconds
            name: Endpoint family name used in log messages
        """
        if min_interval_ms < 0:
            raise ValueError("min_interval_ms must be >= 0")

        self.min_interval = min_interval_ms / 1000.0
        self.name = name

        # Held for the whole of a reserved call, see hold()
        self._family_lock = threading.RLock()
        self._lock = threading.Lock()
        self._last_call_time: Optional[float] = None

        logger.debug(f"Rate limiter '{name}' initialized: {min_interval_ms}ms spacing")

    def wait_for_next(self) -> float:
        """
        Block until min_interval has elapsed since the previous call, then
        record now as the last call time.

        Returns:
            Seconds spent waiting
        """
        with self._lock:
            waited = 0.0

            if self._last_call_time is not None:
                since_last = time.monotonic() - self._last_call_time
                if since_last < self.min_interval:
                    waited = self.min_interval - since_last

            if waited > 0:
                logger.debug(f"Rate limiter '{self.name}' waiting {waited:.3f}s")
                time.sleep(waited)

            self._last_call_time = time.monotonic()
            return waited

    @contextmanager
    def hold(self) -> Iterator[None]:
        """
        Reserve the endpoint family for the duration of the block.

        Other callers of hold() on this limiter wait until the block exits,
        so a call plus its settle delay is not interleaved with another call
        of the same family.
        """
        with self._family_lock:
            self.wait_for_next()
            yield

    def get_status(self) -> dict:
        """Get current limiter status."""
        with self._lock:
            if self._last_call_time is None:
                since_last = None
                ready = True
            else:
                since_last = time.monotonic() - self._last_call_time
                ready = since_last >= self.min_interval
            return {
                "name": self.name,
                "min_interval": self.min_interval,
                "seconds_since_last_call": since_last,
                "ready": ready,
            }


class ExponentialBackoff:
    """
    Capped multiplicative backoff for the device token poll loop.
    Thread-safe implementation.
    """

    def __init__(
        self,
        base_delay: float = 2.0,
        max_delay: float = 10.0,
        factor: float = 1.5
    ):
        """
        Initialize backoff.

        Args:
            base_delay: Initial delay in seconds
            max_delay: Maximum delay in seconds
            factor: Multiplier applied after every delay
        """
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.factor = factor
        self._attempts = 0
        self._current = base_delay
        self._lock = threading.Lock()

    @property
    def attempts(self) -> int:
        """Number of delays handed out since the last reset."""
        return self._attempts

    def reset(self):
        """Reset to the base delay."""
        with self._lock:
            self._attempts = 0
            self._current = self.base_delay

    def peek(self) -> float:
        """Current delay without advancing."""
        with self._lock:
            return self._current

    def extend(self, seconds: float):
        """Add seconds to the current delay (server asked to slow down)."""
        with self._lock:
            self._current += seconds
            logger.debug(f"Backoff extended by {seconds:.2f}s to {self._current:.2f}s")

    def get_delay(self) -> float:
        """Return the current delay and advance to the next one."""
        with self._lock:
            delay = self._current
            self._attempts += 1
            self._current = min(self._current * self.factor, self.max_delay)

            logger.debug(f"Backoff delay: {delay:.2f}s (attempt {self._attempts})")
            return delay

    def sleep(self):
        """Sleep for current backoff duration."""
        delay = self.get_delay()
        time.sleep(delay)
