"""Connection supervision for the paired temperature sensor.

``ConnectionSupervisor.connect()`` turns a paired identity into a live
device and characteristic, or reports that it could not. "Not found" and
"found but could not connect" are ordinary negative outcomes, not
exceptions; only faults of the BLE backend itself (adapter never powers on,
scan error) propagate.

The supervisor also owns the device's disconnect listener. An intentional
disconnect detaches the listener first, so only an unexpected link loss
reaches ``on_device_lost``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .capabilities import Advertisement, BleCapability, SensorDevice, Subscription
from .config import AppConfig
from .scan_race import ScanRace, wait_for_powered_on
from .session_state import SessionState
from .settings import PAIRED_SENSOR_KEY, KeyValueStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectionOutcome:
    """Result of a connect attempt."""

    connected: bool
    device_name: Optional[str] = None


class ConnectionSupervisor:
    """Finds the paired sensor, connects, and binds its characteristic.

    Args:
        ble: BLE capability.
        state: Session state receiving the bound device.
        settings: Key-value store holding the paired identity.
        config: Service/characteristic UUIDs and timeouts.
        on_device_lost: Called with the device after an unexpected
            disconnect, once the session state has been cleared.
    """

    def __init__(
        self,
        ble: BleCapability,
        state: SessionState,
        settings: KeyValueStore,
        config: AppConfig,
        on_device_lost: Optional[Callable[[SensorDevice], None]] = None,
    ):
        self._ble = ble
        self._state = state
        self._settings = settings
        self._config = config
        self._on_device_lost = on_device_lost
        self._disconnect_subscription: Optional[Subscription] = None
        self.last_race: Optional[ScanRace[ConnectionOutcome]] = None

    def set_device_lost_handler(self, handler: Callable[[SensorDevice], None]) -> None:
        self._on_device_lost = handler

    async def connect(
        self, paired_name: Optional[str] = None, scan_timeout_ms: Optional[int] = None
    ) -> ConnectionOutcome:
        """Scan for the paired sensor and connect to it.

        Args:
            paired_name: Name to look for. Defaults to the identity saved by
                pairing.
            scan_timeout_ms: Scan time limit; defaults to the configured value.

        Returns:
            ``ConnectionOutcome(connected=True)`` with the device and
            characteristic bound in the session state, or
            ``ConnectionOutcome(connected=False)``.

        Raises:
            AdapterUnavailable: The adapter never reported powered on.
            ScanError: The backend reported a scan error.
        """
        name = paired_name or self._settings.get(PAIRED_SENSOR_KEY)
        if not name:
            logger.warning("No paired sensor; pair a sensor before starting")
            return ConnectionOutcome(connected=False)

        if scan_timeout_ms is None:
            scan_timeout_ms = self._config.scan_timeout_ms

        await wait_for_powered_on(self._ble, self._config.adapter_timeout_ms)

        race: ScanRace[ConnectionOutcome] = ScanRace(self._ble, scan_timeout_ms)
        self.last_race = race
        logger.info("Looking for paired sensor %s", name)
        return await race.run(
            matches=lambda adv: adv.name == name,
            on_match=self._establish,
            on_timeout=lambda: ConnectionOutcome(connected=False),
        )

    async def _establish(self, advertisement: Advertisement) -> ConnectionOutcome:
        device = advertisement.device
        try:
            await device.connect()
            await device.discover_services_and_characteristics()
            for service in await device.list_services():
                logger.debug(
                    "Service %s: %s", service.uuid, ", ".join(service.characteristics)
                )
            characteristic = await device.read_characteristic(
                self._config.service_uuid, self._config.characteristic_uuid
            )
        except asyncio.CancelledError:
            logger.info("Connection to %s cancelled", advertisement.name)
            await self._cancel_quietly(device)
            raise
        except Exception as e:
            # Any backend failure here is a failed connection, never an error
            logger.warning("Connection to %s failed: %s", advertisement.name, e)
            await self._cancel_quietly(device)
            if self._state.device is device:
                self._state.release_device()
            return ConnectionOutcome(connected=False)

        self._detach_listener()
        self._disconnect_subscription = device.on_disconnected(self._handle_disconnect)
        self._state.bind_device(device, characteristic)
        logger.info("Connected to %s", advertisement.name)
        return ConnectionOutcome(connected=True, device_name=advertisement.name)

    def _handle_disconnect(self, device: SensorDevice) -> None:
        if self._state.device is not device:
            return
        self._detach_listener()
        if self._state.intentional_disconnect:
            logger.info("Sensor %s disconnected", device.name)
            self._state.release_device()
            return
        logger.warning("Sensor %s disconnected unexpectedly", device.name)
        self._state.release_device()
        if self._on_device_lost is not None:
            self._on_device_lost(device)

    def _detach_listener(self) -> None:
        if self._disconnect_subscription is not None:
            self._disconnect_subscription.remove()
            self._disconnect_subscription = None

    async def disconnect(self) -> None:
        """Release the held device and disconnect it (best effort)."""
        self._detach_listener()
        device = self._state.release_device()
        if device is None:
            return
        await self._cancel_quietly(device)
        logger.info("Disconnected from %s", device.name)

    @staticmethod
    async def _cancel_quietly(device: SensorDevice) -> None:
        try:
            await device.cancel_connection()
        except Exception as e:
            logger.warning("Error disconnecting %s: %s", device.name, e)
