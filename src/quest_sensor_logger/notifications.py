"""User-facing notifications and the sample acknowledgment indicator.

Error notifications are rate limited: once one has been shown, further errors
are suppressed (and only logged) until ``min_interval_ms`` has passed. This
keeps a burst of failing callbacks from flooding the user with duplicates.
"""

from __future__ import annotations

import asyncio
import collections
import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional

from .session_state import Indicator, SessionState

logger = logging.getLogger(__name__)

DEFAULT_ERROR_DURATION_MS = 2000
LONG_ERROR_DURATION_MS = 15000
HISTORY_SIZE = 200


def now_ms() -> int:
    return int(time.time() * 1000)


class Severity(str, enum.Enum):
    INFO = "info"
    ERROR = "error"
    HIGH = "high"


@dataclass(frozen=True)
class Notification:
    """A message for the user, with how long it should stay on screen."""

    message: str
    severity: Severity
    duration_ms: int
    timestamp_ms: int


NotificationListener = Callable[[Notification], None]


class Notifier:
    """Delivers notifications to listeners and drives the status indicator.

    Args:
        state: Session state holding the throttle timestamp and the indicator.
        min_interval_ms: Minimum gap between two error notifications.
        ack_duration_ms: How long the green acknowledgment stays lit.
        clock: Millisecond wall clock, replaceable in tests.
        history_size: How many recent notifications ``history`` keeps.
    """

    def __init__(
        self,
        state: SessionState,
        min_interval_ms: int = 5000,
        ack_duration_ms: int = 500,
        clock: Callable[[], int] = now_ms,
        history_size: int = HISTORY_SIZE,
    ) -> None:
        self._state = state
        self._min_interval_ms = min_interval_ms
        self._ack_duration_ms = ack_duration_ms
        self._clock = clock
        self._listeners: List[NotificationListener] = []
        self._ack_handle: Optional[asyncio.TimerHandle] = None
        self.history: Deque[Notification] = collections.deque(maxlen=history_size)

    def add_listener(self, listener: NotificationListener) -> None:
        self._listeners.append(listener)

    def _emit(self, notification: Notification) -> None:
        self.history.append(notification)
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception:
                logger.exception("Notification listener failed")

    def error(
        self,
        message: str,
        duration_ms: int = DEFAULT_ERROR_DURATION_MS,
        severity: Severity = Severity.ERROR,
    ) -> bool:
        """Show an error unless one was shown within the throttle interval.

        Returns:
            True if the notification was delivered, False if suppressed.
        """
        now = self._clock()
        self._state.set_last_error(message)
        if not self._state.claim_error_slot(now, self._min_interval_ms):
            logger.info("Suppressed error notification: %s", message)
            return False
        logger.error("%s", message)
        self._emit(Notification(message, severity, duration_ms, now))
        return True

    def info(self, message: str, duration_ms: int = DEFAULT_ERROR_DURATION_MS) -> None:
        logger.info("%s", message)
        self._emit(Notification(message, Severity.INFO, duration_ms, self._clock()))

    def acknowledge(self) -> None:
        """Light the green indicator and clear it after ``ack_duration_ms``."""
        self._state.set_indicator(Indicator.GREEN)
        if self._ack_handle is not None:
            self._ack_handle.cancel()
        loop = asyncio.get_running_loop()
        self._ack_handle = loop.call_later(self._ack_duration_ms / 1000.0, self._clear_ack)

    def _clear_ack(self) -> None:
        self._ack_handle = None
        if self._state.snapshot().indicator is Indicator.GREEN:
            self._state.set_indicator(Indicator.NONE)

    def fail_indicator(self) -> None:
        if self._ack_handle is not None:
            self._ack_handle.cancel()
            self._ack_handle = None
        self._state.set_indicator(Indicator.RED)
