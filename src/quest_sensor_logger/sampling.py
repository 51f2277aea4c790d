"""Sampling engine: the connection and sampling state machine.

The engine overlays a periodic location stream on the bound temperature
characteristic. Each location update reads the sensor once, joins the reading
with the fix and writes one record to the local store.

State machine::

    IDLE --start()--> STARTING --subscription installed--> SAMPLING
      ^                   |                                   |
      +------ teardown() -+-----------------------------------+

Every way out of STARTING or SAMPLING (explicit stop, device loss, read
failure, store failure, unexpected exception) goes through ``teardown()``,
which is idempotent.

Concurrency:
- Location callbacks schedule one task per event. Events are processed one at
  a time under an ``asyncio.Lock``, so two events never interleave their
  read and write steps.
- Each callback carries the generation that was current when its subscription
  was installed. ``teardown()`` advances the generation, so events still queued
  or mid-read after a stop become no-ops instead of writing.
- After every await the event re-checks that it is still current.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import enum
import functools
import logging
import math
import re
import time
from typing import Callable, Optional, Set

from .capabilities import (
    Capabilities,
    Coordinate,
    LocationAccuracy,
    SensorCharacteristic,
    SensorDevice,
    WatchOptions,
)
from .config import AppConfig
from .connection import ConnectionSupervisor
from .errors import EmptyPayload, ReadFailure, StoreUnavailable, StoreWriteFailure
from .notifications import LONG_ERROR_DURATION_MS, Notifier, Severity
from .session_state import SessionState
from .store import SampleRecord, StoreProvider

logger = logging.getLogger(__name__)

# Leading decimal number, as a lenient float parser would accept it
_NUMBER_RE = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")

MSG_DEVICE_DISCONNECTED = "Device disconnected"
MSG_READ_FAILED = "Sensor read failed. Press start to try again."
MSG_NO_VALUE = "No value from device"
MSG_DB_UNAVAILABLE = "Database not available"
MSG_DB_WRITE_FAILED = "Critical error: could not save data! Restart the app."
MSG_DEVICE_LOST = "Sensor disconnected! Press start to reconnect."
MSG_NOT_FOUND = "Sensor not found or failed to connect"
MSG_UNEXPECTED = "Sampling stopped after an unexpected error"


def now_ms() -> int:
    return int(time.time() * 1000)


def decode_temperature(payload: str) -> float:
    """Decode a base64 text payload into degrees Celsius.

    The sensor sends its reading as ASCII text such as ``"21.50"``. Anything
    that does not start with a number decodes to NaN instead of raising.
    """
    try:
        text = base64.b64decode(payload, validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        return math.nan
    match = _NUMBER_RE.match(text.strip())
    if match is None:
        return math.nan
    try:
        return round(float(match.group()), 2)
    except (ValueError, OverflowError):
        return math.nan


class EngineState(str, enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    SAMPLING = "sampling"


class SamplingEngine:
    """Owns the location subscription and the per-event write path.

    Args:
        capabilities: BLE and location capabilities.
        state: Shared session state.
        store: Provider of the cached store handle.
        notifier: Error notifications and the acknowledgment indicator.
        supervisor: Connects to the paired sensor and owns the disconnect
            listener.
        config: Timing constants.
        clock: Millisecond wall clock used to timestamp records.
    """

    def __init__(
        self,
        capabilities: Capabilities,
        state: SessionState,
        store: StoreProvider,
        notifier: Notifier,
        supervisor: ConnectionSupervisor,
        config: AppConfig,
        clock: Callable[[], int] = now_ms,
    ):
        self._ble = capabilities.ble
        self._location = capabilities.location
        self._state = state
        self._store = store
        self._notifier = notifier
        self._supervisor = supervisor
        self._config = config
        self._clock = clock
        self._engine_state = EngineState.IDLE
        self._event_lock = asyncio.Lock()
        self._pending: Set[asyncio.Task[None]] = set()

        supervisor.set_device_lost_handler(self.handle_device_lost)

    @property
    def engine_state(self) -> EngineState:
        return self._engine_state

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    async def start(self, device_name: Optional[str] = None) -> bool:
        """Connect to the paired sensor and begin sampling.

        An existing session is stopped first, so two sessions never coexist.

        Args:
            device_name: Sensor name to connect to; defaults to the paired
                identity.

        Returns:
            True once sampling is running. False if a permission is missing,
            the store cannot be opened, or the sensor was not found.

        Raises:
            AdapterUnavailable: The adapter never reported powered on.
            ScanError: The backend reported a scan error.
        """
        if (
            self._state.connected
            or self._state.sampling
            or self._state.device is not None
            or self._engine_state is not EngineState.IDLE
        ):
            logger.info("Session already active; stopping it first")
            await self.stop()

        if not await self._check_permissions():
            return False

        try:
            self._store.open()
        except StoreUnavailable as e:
            logger.error("Could not open store: %s", e)
            self._notifier.fail_indicator()
            self._notifier.error(
                "Critical error: could not open database! Restart the app.",
                LONG_ERROR_DURATION_MS,
                Severity.HIGH,
            )
            return False

        if self._state.location_subscription is not None:
            logger.warning("Removing leftover location subscription")
            self.teardown()

        # stop() during the connect phase advances the generation
        self._engine_state = EngineState.STARTING
        generation = self._state.next_generation()

        self._state.scanning = True
        try:
            outcome = await self._supervisor.connect(device_name)
        except (Exception, asyncio.CancelledError):
            self._abandon_start(generation)
            raise
        finally:
            self._state.scanning = False

        if self._state.generation != generation:
            logger.info("Start cancelled while connecting")
            await self._supervisor.disconnect()
            return False

        if not outcome.connected:
            self._abandon_start(generation)
            self._notifier.error(MSG_NOT_FOUND)
            return False

        await asyncio.sleep(self._config.settle_delay_ms / 1000.0)
        if self._state.generation != generation:
            logger.info("Start cancelled before sampling began")
            await self._supervisor.disconnect()
            return False
        if not self._state.connected or self._state.characteristic is None:
            logger.warning("Sensor went away before sampling could start")
            self._abandon_start(generation)
            return False

        return await self._begin_sampling(generation)

    def _abandon_start(self, generation: int) -> None:
        if self._state.generation == generation and self._engine_state is EngineState.STARTING:
            self._engine_state = EngineState.IDLE

    async def _check_permissions(self) -> bool:
        if not await self._location.request_foreground_permission():
            self._notifier.fail_indicator()
            self._notifier.error("Location permission is required to record samples")
            return False
        if not await self._ble.request_runtime_permissions():
            self._notifier.fail_indicator()
            self._notifier.error("Bluetooth permission is required to connect")
            return False
        return True

    async def _begin_sampling(self, generation: int) -> bool:
        try:
            fix = await self._location.get_current_fix()
        except Exception as e:
            logger.error("Initial location fix failed: %s", e)
            self.teardown()
            self._notifier.fail_indicator()
            self._notifier.error("Could not get a location fix")
            return False
        logger.info(
            "Initial fix: lat=%.6f lon=%.6f acc=%s",
            fix.latitude,
            fix.longitude,
            fix.accuracy,
        )

        if self._state.generation != generation:
            logger.info("Start cancelled while waiting for a location fix")
            return False

        options = WatchOptions(
            accuracy=LocationAccuracy.HIGH,
            interval_ms=self._config.location_interval_ms,
            distance_filter=0.0,
        )
        subscription = await self._location.watch(
            options, functools.partial(self._on_location, generation)
        )
        if not self._state.begin_sampling(subscription, generation):
            subscription.remove()
            logger.info("Start cancelled while installing location updates")
            if self._engine_state is EngineState.STARTING:
                self._engine_state = EngineState.IDLE
            return False

        self._engine_state = EngineState.SAMPLING
        logger.info("Sampling started")
        self._notifier.info("Sampling started")
        return True

    def teardown(self) -> None:
        """Leave STARTING/SAMPLING: remove the subscription and clear flags.

        Calling this while idle does nothing.
        """
        if (
            self._engine_state is EngineState.IDLE
            and not self._state.sampling
            and self._state.location_subscription is None
        ):
            return
        subscription = self._state.end_sampling()
        self._engine_state = EngineState.IDLE
        if subscription is not None:
            try:
                subscription.remove()
            except Exception:
                logger.exception("Error removing location subscription")
        self._state.notify()
        logger.info("Sampling stopped")

    async def stop(self) -> None:
        """Stop sampling and disconnect. Safe to call in any state."""
        self._state.intentional_disconnect = True
        self.teardown()
        await self._supervisor.disconnect()
        self._state.intentional_disconnect = False

    def handle_device_lost(self, device: SensorDevice) -> None:
        """Handle an unexpected link loss reported by the supervisor."""
        self.teardown()
        self._notifier.fail_indicator()
        self._notifier.error(MSG_DEVICE_LOST)

    # ------------------------------------------------------------------
    # Location events
    # ------------------------------------------------------------------

    def _on_location(self, generation: int, coordinate: Coordinate) -> None:
        task = asyncio.get_running_loop().create_task(
            self._process_update(coordinate, generation)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _process_update(self, coordinate: Coordinate, generation: int) -> None:
        try:
            await self.handle_location_update(coordinate, generation)
        except Exception:
            logger.exception("Unexpected error handling location update")
            self.teardown()
            self._notifier.fail_indicator()
            self._notifier.error(MSG_UNEXPECTED)

    async def flush_pending_updates(self) -> None:
        """Wait until every scheduled location event has been processed."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @staticmethod
    async def _read_payload(characteristic: SensorCharacteristic) -> str:
        try:
            value = await characteristic.read()
        except Exception as e:
            raise ReadFailure(f"Characteristic read failed: {e}") from e
        if not value.value:
            raise EmptyPayload("Characteristic returned no value")
        return value.value

    async def handle_location_update(
        self, coordinate: Coordinate, generation: Optional[int] = None
    ) -> None:
        """Process one location event.

        Args:
            coordinate: The location fix.
            generation: Generation captured when the subscription was
                installed; defaults to the current one.
        """
        if generation is None:
            generation = self._state.generation
        async with self._event_lock:
            await self._handle_event(coordinate, generation)

    async def _handle_event(self, coordinate: Coordinate, generation: int) -> None:
        if generation != self._state.generation:
            return

        characteristic = self._state.characteristic
        if characteristic is None:
            self.teardown()
            self._notifier.fail_indicator()
            self._notifier.error(MSG_DEVICE_DISCONNECTED)
            return

        if not self._state.is_current(generation):
            return

        try:
            payload = await self._read_payload(characteristic)
        except ReadFailure as e:
            if not self._state.is_current(generation):
                return
            logger.error("%s", e)
            self.teardown()
            self._notifier.fail_indicator()
            self._notifier.error(MSG_READ_FAILED)
            return
        except EmptyPayload:
            if not self._state.is_current(generation):
                return
            self._notifier.fail_indicator()
            self._notifier.error(MSG_NO_VALUE)
            return

        if not self._state.is_current(generation):
            return

        temperature = decode_temperature(payload)
        accuracy = None if coordinate.accuracy is None else int(round(coordinate.accuracy))
        self._state.set_reading(temperature, accuracy)

        now = self._clock()
        last_write = self._state.last_write_timestamp
        if now < last_write:
            logger.warning("Clock moved backwards by %dms", last_write - now)
        elif now - last_write < self._config.dedup_window_ms:
            logger.debug("Discarding duplicate event at %d", now)
            return

        record = SampleRecord.from_reading(now, temperature, coordinate)

        store = self._store.handle
        if store is None:
            self.teardown()
            self._notifier.fail_indicator()
            self._notifier.error(MSG_DB_UNAVAILABLE)
            return

        try:
            store.insert(record)
        except StoreWriteFailure as e:
            logger.error("Store write failed: %s", e)
            self.teardown()
            self._store.invalidate()
            self._notifier.fail_indicator()
            self._notifier.error(MSG_DB_WRITE_FAILED, LONG_ERROR_DURATION_MS, Severity.HIGH)
            return

        count = self._state.record_write(now)
        logger.debug("Sample %d written: %.2f°C", count, temperature)
        self._notifier.acknowledge()
