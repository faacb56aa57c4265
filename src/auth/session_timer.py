"""
Fixed-window session timer.
The session is valid for SESSION_DURATION after the last successful login,
independent of the bearer token's own expiry.
"""

import logging
import threading
import time
from enum import Enum
from typing import Callable, Optional


logger = logging.getLogger(__name__)

SESSION_DURATION = 8 * 60 * 60  # 8 hours, in seconds
WARNING_THRESHOLD = 15 * 60
CRITICAL_THRESHOLD = 5 * 60


class SessionStatus(Enum):
    """Display band for the remaining session time."""
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    EXPIRED = "expired"


def format_time_left(seconds: Optional[float]) -> str:
    """Format remaining seconds as HH:MM:SS."""
    if not seconds or seconds <= 0:
        return "00:00:00"

    total = int(seconds)
    hours = total // 3600
    minutes = (total % 3600) // 60
    secs = total % 60
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class SessionTimer:
    """Tracks session start time and remaining validity."""

    def __init__(
        self,
        duration: float = SESSION_DURATION,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize session timer.

        Args:
            duration: Session length in seconds
            clock: Wall-clock source (seconds since epoch)
        """
        self.duration = duration
        self._clock = clock
        self._lock = threading.Lock()
        self._started_at: Optional[float] = None

        self._ticker: Optional[threading.Thread] = None
        self._ticker_stop = threading.Event()

    @property
    def started_at(self) -> Optional[float]:
        with self._lock:
            return self._started_at

    @property
    def is_running(self) -> bool:
        return self.started_at is not None

    def start(self, session_started_at: Optional[float] = None):
        """Arm the timer with a fresh session start time."""
        started_at = self._clock() if session_started_at is None else session_started_at
        with self._lock:
            self._started_at = started_at
        logger.info(f"Session timer started, {format_time_left(self.remaining())} remaining")

    def stop(self):
        """Disarm the timer. A running ticker keeps ticking with 0 remaining."""
        with self._lock:
            self._started_at = None

    def remaining(self, now: Optional[float] = None) -> float:
        """
        Seconds left in the session.

        Returns:
            started_at + duration - now, or 0.0 when the timer is not armed
        """
        now = self._clock() if now is None else now
        with self._lock:
            if self._started_at is None:
                return 0.0
            return self._started_at + self.duration - now

    def is_expired(self, now: Optional[float] = None) -> bool:
        return self.remaining(now) <= 0

    def status(self, now: Optional[float] = None) -> SessionStatus:
        """Display band for the remaining time."""
        remaining = self.remaining(now)
        if remaining <= 0:
            return SessionStatus.EXPIRED
        if remaining < CRITICAL_THRESHOLD:
            return SessionStatus.CRITICAL
        if remaining < WARNING_THRESHOLD:
            return SessionStatus.WARNING
        return SessionStatus.NORMAL

    def start_ticker(self, callback: Callable[[float], None], interval: float = 1.0):
        """
        Call callback(remaining) every interval seconds on a daemon thread.

        The ticker is for display only; callers must still check
        remaining() before privileged operations.
        """
        self.stop_ticker()
        self._ticker_stop = threading.Event()
        stop_event = self._ticker_stop

        def _run():
            while not stop_event.wait(interval):
                try:
                    callback(self.remaining())
                except Exception:
                    logger.exception("Session timer callback failed")

        self._ticker = threading.Thread(
            target=_run, name="session-timer-ticker", daemon=True
        )
        self._ticker.start()
        logger.debug(f"Session ticker started ({interval}s interval)")

    def stop_ticker(self):
        """Stop the ticker thread if it is running."""
        ticker = self._ticker
        if ticker is None:
            return

        self._ticker_stop.set()
        self._ticker = None
        if ticker is not threading.current_thread():
            ticker.join(timeout=1.0)
        logger.debug("Session ticker stopped")
