"""Pairing: capture the identity of a nearby quest sensor.

Pairing is identity capture, not a session. It connects just long enough to
confirm the device is a working peripheral, saves its name as the paired
identity, and disconnects again.
"""

from __future__ import annotations

import logging
import re
from typing import Awaitable, Callable, Optional

from .capabilities import Advertisement, Capabilities
from .config import AppConfig
from .connection import ConnectionSupervisor
from .errors import ConnectionFailed, PairingNotFound, PermissionDenied
from .scan_race import ScanRace, wait_for_powered_on
from .session_state import SessionState
from .settings import PAIRED_SENSOR_KEY, KeyValueStore

logger = logging.getLogger(__name__)


class PairingResolver:
    """Scans for a device whose name matches the sensor pattern and saves it.

    Args:
        capabilities: BLE and location capabilities.
        state: Session state, consulted for an active session.
        settings: Key-value store receiving ``pairedSensorName``.
        supervisor: Used to release a device that is still held.
        stop_sampling: Coroutine that stops an active sampling session.
        config: Name pattern and timeouts.
    """

    def __init__(
        self,
        capabilities: Capabilities,
        state: SessionState,
        settings: KeyValueStore,
        supervisor: ConnectionSupervisor,
        stop_sampling: Callable[[], Awaitable[None]],
        config: AppConfig,
    ):
        self._ble = capabilities.ble
        self._location = capabilities.location
        self._state = state
        self._settings = settings
        self._supervisor = supervisor
        self._stop_sampling = stop_sampling
        self._config = config
        self._pattern = re.compile(config.name_pattern, re.IGNORECASE)

    async def check_permissions(self) -> None:
        """Raise ``PermissionDenied`` unless every capability is granted."""
        if not await self._location.request_foreground_permission():
            raise PermissionDenied("location", "Location permission denied")
        if not await self._location.services_enabled():
            raise PermissionDenied("location-services", "Location services are off")
        if not await self._ble.request_runtime_permissions():
            raise PermissionDenied("bluetooth", "Bluetooth permission denied")

    def matches(self, advertisement: Advertisement) -> bool:
        return bool(advertisement.name) and self._pattern.search(advertisement.name) is not None

    async def pair(self, scan_timeout_ms: Optional[int] = None) -> bool:
        """Find a sensor, remember its name and disconnect.

        Returns:
            True once the name has been saved.

        Raises:
            PermissionDenied: A permission or location services is refused.
            AdapterUnavailable: The adapter never reported powered on.
            PairingNotFound: No matching device within the scan timeout.
            ConnectionFailed: The matched device could not be connected.
            ScanError: The backend reported a scan error.
        """
        await self.check_permissions()

        if self._state.sampling:
            logger.info("Stopping active session before pairing")
            await self._stop_sampling()
        if self._state.device is not None:
            await self._supervisor.disconnect()

        if scan_timeout_ms is None:
            scan_timeout_ms = self._config.scan_timeout_ms

        await wait_for_powered_on(self._ble, self._config.adapter_timeout_ms)

        def not_found() -> bool:
            raise PairingNotFound(
                f"No sensor found within {scan_timeout_ms / 1000.0:.0f}s"
            )

        race: ScanRace[bool] = ScanRace(self._ble, scan_timeout_ms)
        self._state.scanning = True
        try:
            return await race.run(
                matches=self.matches, on_match=self._capture, on_timeout=not_found
            )
        finally:
            self._state.scanning = False

    async def _capture(self, advertisement: Advertisement) -> bool:
        device = advertisement.device
        name = advertisement.name or ""
        try:
            await device.connect()
            await device.discover_services_and_characteristics()
            for service in await device.list_services():
                logger.info(
                    "  service %s: %s", service.uuid, ", ".join(service.characteristics)
                )
        except Exception as e:
            try:
                await device.cancel_connection()
            except Exception as cancel_error:
                logger.warning("Error disconnecting %s: %s", name, cancel_error)
            raise ConnectionFailed(f"Could not connect to {name}: {e}") from e

        self._settings.set(PAIRED_SENSOR_KEY, name)
        logger.info("Paired with %s", name)

        try:
            await device.cancel_connection()
        except Exception as e:
            logger.warning("Error disconnecting %s after pairing: %s", name, e)
        return True
