"""Session state shared by the connection, pairing and sampling flows.

``SessionState`` is the single source of truth for one logger instance. It
replaces a process-wide bag of mutable cells with an explicit context object
that is passed to each flow, plus an observer channel so the UI never reaches
into the cells directly.

Design decisions:

1. **Locked cells**: Every read and write goes through an ``RLock``. The core
   runs on one asyncio loop, but the dashboard thread reads snapshots while the
   loop mutates state, and callbacks from the BLE and location backends can
   interleave with any in-flight coroutine.

2. **Atomic ownership transfer**: ``bind_device()`` and ``release_device()``
   move the device, characteristic and connected flag in one locked update, so
   no observer ever sees a characteristic without its device.

3. **Generation token**: ``generation`` increases on every sampling start and
   teardown. A location callback captures the generation current when its
   subscription was installed and becomes a no-op once it no longer matches.

4. **Snapshots for observers**: Listeners receive an immutable
   ``SessionSnapshot`` after each change, outside the lock.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, List, Optional

if TYPE_CHECKING:
    from .capabilities import SensorCharacteristic, SensorDevice, Subscription

logger = logging.getLogger(__name__)


class Indicator(str, enum.Enum):
    """Status light shown next to the sample counter."""

    NONE = "none"
    GREEN = "green"
    RED = "red"


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable view of the session for display binding."""

    device_name: Optional[str]
    connected: bool
    scanning: bool
    sampling: bool
    sample_count: int
    last_temperature: Optional[float]
    last_accuracy: Optional[int]
    last_error: Optional[str]
    indicator: Indicator
    generation: int


SnapshotListener = Callable[[SessionSnapshot], None]


class SessionState:
    """Mutable session record guarded by a reentrant lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._listeners: List[SnapshotListener] = []

        self._device: Optional["SensorDevice"] = None
        self._characteristic: Optional["SensorCharacteristic"] = None
        self._connected = False
        self._scanning = False
        self._sampling = False
        self._intentional_disconnect = False
        self._location_subscription: Optional["Subscription"] = None
        self._last_write_timestamp = 0
        self._last_error_notification_ms = 0
        self._generation = 0

        self._sample_count = 0
        self._last_temperature: Optional[float] = None
        self._last_accuracy: Optional[int] = None
        self._last_error: Optional[str] = None
        self._indicator = Indicator.NONE

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return SessionSnapshot(
                device_name=self._device.name if self._device is not None else None,
                connected=self._connected,
                scanning=self._scanning,
                sampling=self._sampling,
                sample_count=self._sample_count,
                last_temperature=self._last_temperature,
                last_accuracy=self._last_accuracy,
                last_error=self._last_error,
                indicator=self._indicator,
                generation=self._generation,
            )

    def notify(self) -> None:
        """Push the current snapshot to every listener."""
        snap = self.snapshot()
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snap)
            except Exception:
                logger.exception("Session listener failed")

    # ------------------------------------------------------------------
    # Device ownership
    # ------------------------------------------------------------------

    @property
    def device(self) -> Optional["SensorDevice"]:
        with self._lock:
            return self._device

    @property
    def characteristic(self) -> Optional["SensorCharacteristic"]:
        with self._lock:
            return self._characteristic

    def bind_device(
        self, device: "SensorDevice", characteristic: "SensorCharacteristic"
    ) -> None:
        with self._lock:
            self._device = device
            self._characteristic = characteristic
            self._connected = True
        self.notify()

    def release_device(self) -> Optional["SensorDevice"]:
        """Clear device, characteristic and connected flag; return the old device."""
        with self._lock:
            device = self._device
            self._device = None
            self._characteristic = None
            self._connected = False
        self.notify()
        return device

    # ------------------------------------------------------------------
    # Flags
    # ------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        with self._lock:
            return self._connected

    @property
    def scanning(self) -> bool:
        with self._lock:
            return self._scanning

    @scanning.setter
    def scanning(self, value: bool) -> None:
        with self._lock:
            self._scanning = value
        self.notify()

    @property
    def sampling(self) -> bool:
        with self._lock:
            return self._sampling

    @property
    def intentional_disconnect(self) -> bool:
        with self._lock:
            return self._intentional_disconnect

    @intentional_disconnect.setter
    def intentional_disconnect(self, value: bool) -> None:
        with self._lock:
            self._intentional_disconnect = value

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    @property
    def location_subscription(self) -> Optional["Subscription"]:
        with self._lock:
            return self._location_subscription

    def begin_sampling(self, subscription: "Subscription", generation: int) -> bool:
        """Install the live subscription and flip sampling on.

        Returns False (installing nothing) if ``generation`` is stale, i.e. a
        teardown happened while the caller was awaiting.
        """
        with self._lock:
            if generation != self._generation or not self._connected:
                return False
            self._location_subscription = subscription
            self._sampling = True
            self._indicator = Indicator.NONE
        self.notify()
        return True

    def next_generation(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    def end_sampling(self) -> Optional["Subscription"]:
        """Flip sampling off, clear flags and hand back the subscription to remove.

        Also advances the generation so that any callback captured under the
        previous one is recognised as stale.
        """
        with self._lock:
            subscription = self._location_subscription
            self._location_subscription = None
            self._sampling = False
            self._intentional_disconnect = False
            self._generation += 1
            return subscription

    def is_current(self, generation: int) -> bool:
        with self._lock:
            return self._sampling and generation == self._generation

    # ------------------------------------------------------------------
    # Write watermark and display values
    # ------------------------------------------------------------------

    @property
    def last_write_timestamp(self) -> int:
        with self._lock:
            return self._last_write_timestamp

    def record_write(self, timestamp: int) -> int:
        """Advance the dedup watermark and the sample counter; return the count."""
        with self._lock:
            self._last_write_timestamp = timestamp
            self._sample_count += 1
            count = self._sample_count
        self.notify()
        return count

    @property
    def sample_count(self) -> int:
        with self._lock:
            return self._sample_count

    def reset_sample_count(self) -> None:
        with self._lock:
            self._sample_count = 0
        self.notify()

    def set_reading(self, temperature: float, accuracy: Optional[int]) -> None:
        with self._lock:
            self._last_temperature = temperature
            self._last_accuracy = accuracy
        self.notify()

    def set_indicator(self, indicator: Indicator) -> None:
        with self._lock:
            self._indicator = indicator
        self.notify()

    def set_last_error(self, message: Optional[str]) -> None:
        with self._lock:
            self._last_error = message
        self.notify()

    def claim_error_slot(self, now_ms: int, min_interval_ms: int) -> bool:
        """Return True and stamp ``now_ms`` if an error notification may be shown."""
        with self._lock:
            if now_ms - self._last_error_notification_ms > min_interval_ms:
                self._last_error_notification_ms = now_ms
                return True
            return False
