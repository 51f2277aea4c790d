"""Real-hardware BLE capability built on bleak.

This module adapts bleak's scanner and client objects to the callback-style
capability contract in ``capabilities``. bleak is cross-platform (BlueZ on
Linux, CoreBluetooth on macOS, WinRT on Windows), so the same code runs on a
laptop in the field or a Raspberry Pi in a vehicle.

Key points:
- **Scanning**: ``BleakScanner`` runs unfiltered with a detection callback;
  every advertisement is forwarded to the consumer. Start/stop are scheduled
  as tasks so the synchronous ``start_scan()``/``stop_scan()`` contract holds.
- **Adapter state**: bleak has no portable power-state API, so the state is
  probed by starting and stopping a scanner. A failing probe is reported as
  powered off and re-probed periodically for ``on_adapter_state_change``.
- **Reads**: characteristic values are returned base64-encoded, matching the
  payload shape the sampling engine decodes.

Requirements:
- bleak: Cross-platform BLE library for device communication
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Callable, List, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from .capabilities import (
    AdapterState,
    AdapterStateCallback,
    Advertisement,
    BleCapability,
    CallbackSubscription,
    CharacteristicValue,
    ScanCallback,
    SensorCharacteristic,
    SensorDevice,
    ServiceInfo,
    Subscription,
)

logger = logging.getLogger(__name__)

ADAPTER_POLL_INTERVAL = 2.0


class BleakSensorCharacteristic(SensorCharacteristic):
    """A characteristic on a connected ``BleakClient``."""

    def __init__(self, client: BleakClient, characteristic: BleakGATTCharacteristic):
        self._client = client
        self._characteristic = characteristic

    @property
    def uuid(self) -> str:
        return self._characteristic.uuid

    async def read(self) -> CharacteristicValue:
        data = await self._client.read_gatt_char(self._characteristic)
        if not data:
            return CharacteristicValue(value=None)
        return CharacteristicValue(value=base64.b64encode(bytes(data)).decode("ascii"))


class BleakSensorDevice(SensorDevice):
    """Wraps a discovered ``BLEDevice`` and lazily creates its ``BleakClient``."""

    def __init__(self, ble_device: BLEDevice) -> None:
        self._ble_device = ble_device
        self._client: Optional[BleakClient] = None
        self._disconnect_listeners: List[Callable[[SensorDevice], None]] = []

    @property
    def name(self) -> Optional[str]:
        return self._ble_device.name

    @property
    def address(self) -> str:
        return self._ble_device.address

    def _handle_disconnect(self, _client: BleakClient) -> None:
        logger.warning("BLE connection lost (callback): %s", self.address)
        for listener in list(self._disconnect_listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Disconnect listener failed")

    async def connect(self) -> None:
        if self._client is None:
            self._client = BleakClient(
                self._ble_device, disconnected_callback=self._handle_disconnect
            )
        logger.info("BLE connection starting: %s", self.address)
        await self._client.connect()
        if not self._client.is_connected:
            raise BleakError("BLE connection failed.")
        logger.info("BLE connection established: %s", self.address)

    async def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    async def cancel_connection(self) -> None:
        if self._client is None:
            return
        await self._client.disconnect()

    async def discover_services_and_characteristics(self) -> None:
        # bleak resolves the GATT table during connect(); touching it here
        # surfaces a missing table as an error at the same step as other stacks.
        client = self._require_client()
        services = client.services
        logger.debug("Services resolved: %d", len(list(services)))

    async def list_services(self) -> List[ServiceInfo]:
        client = self._require_client()
        return [
            ServiceInfo(
                uuid=service.uuid,
                characteristics=tuple(c.uuid for c in service.characteristics),
            )
            for service in client.services
        ]

    async def read_characteristic(
        self, service_uuid: str, characteristic_uuid: str
    ) -> SensorCharacteristic:
        client = self._require_client()
        service = client.services.get_service(service_uuid)
        if service is None:
            raise BleakError(f"Service {service_uuid} not found")
        characteristic = service.get_characteristic(characteristic_uuid)
        if characteristic is None:
            raise BleakError(f"Characteristic {characteristic_uuid} not found")
        handle = BleakSensorCharacteristic(client, characteristic)
        # Initial read proves the characteristic is readable before sampling starts
        await handle.read()
        return handle

    def on_disconnected(self, callback: Callable[[SensorDevice], None]) -> Subscription:
        self._disconnect_listeners.append(callback)

        def remove() -> None:
            if callback in self._disconnect_listeners:
                self._disconnect_listeners.remove(callback)

        return CallbackSubscription(remove)

    def _require_client(self) -> BleakClient:
        if self._client is None or not self._client.is_connected:
            raise BleakError("Device is not connected")
        return self._client


class BleakBleCapability(BleCapability):
    """BLE capability backed by ``BleakScanner``/``BleakClient``."""

    def __init__(self) -> None:
        self._scanner: Optional[BleakScanner] = None
        self._scan_task: Optional[asyncio.Task[None]] = None
        self._devices: dict[str, BleakSensorDevice] = {}

    async def query_adapter_state(self) -> AdapterState:
        probe = BleakScanner()
        try:
            await probe.start()
            await probe.stop()
            return AdapterState.POWERED_ON
        except BleakError as e:
            logger.info("Bluetooth adapter not ready: %s", e)
            return AdapterState.POWERED_OFF
        except OSError as e:
            logger.warning("Bluetooth adapter unavailable: %s", e)
            return AdapterState.UNSUPPORTED

    def on_adapter_state_change(
        self, callback: AdapterStateCallback, emit_current: bool = False
    ) -> Subscription:
        async def poll() -> None:
            last: Optional[AdapterState] = None
            first = True
            while True:
                state = await self.query_adapter_state()
                if (first and emit_current) or (not first and state != last):
                    callback(state)
                last = state
                first = False
                await asyncio.sleep(ADAPTER_POLL_INTERVAL)

        task = asyncio.get_running_loop().create_task(poll())
        return CallbackSubscription(task.cancel)

    def _device_for(self, ble_device: BLEDevice) -> BleakSensorDevice:
        device = self._devices.get(ble_device.address)
        if device is None:
            device = BleakSensorDevice(ble_device)
            self._devices[ble_device.address] = device
        return device

    def start_scan(self, callback: ScanCallback) -> None:
        if self._scan_task is not None and not self._scan_task.done():
            logger.warning("Scan already running; restarting with new callback")
            self.stop_scan()

        def detection(ble_device: BLEDevice, adv: AdvertisementData) -> None:
            logger.debug(
                "Device discovered: addr=%s name=%s rssi=%s",
                ble_device.address,
                ble_device.name,
                adv.rssi,
            )
            callback(
                None,
                Advertisement(
                    device=self._device_for(ble_device),
                    name=ble_device.name or adv.local_name,
                    address=ble_device.address,
                    rssi=adv.rssi,
                ),
            )

        scanner = BleakScanner(detection_callback=detection)
        self._scanner = scanner

        async def run() -> None:
            try:
                await scanner.start()
                logger.info("BLE scan started")
            except BleakError as e:
                logger.error("BLE scanner initialization failed: %s", e)
                callback(e, None)

        self._scan_task = asyncio.get_running_loop().create_task(run())

    def stop_scan(self) -> None:
        scanner = self._scanner
        start_task = self._scan_task
        self._scanner = None
        self._scan_task = None
        if scanner is None:
            return

        async def run() -> None:
            if start_task is not None:
                try:
                    await start_task
                except asyncio.CancelledError:
                    return
            try:
                await scanner.stop()
                logger.info("BLE scan stopped")
            except BleakError as e:
                logger.warning("Error stopping BLE scan: %s", e)

        asyncio.get_running_loop().create_task(run())

    async def request_runtime_permissions(self) -> bool:
        # Desktop stacks have no runtime permission prompt for BLE
        return True

    async def close(self) -> None:
        self.stop_scan()
        for device in self._devices.values():
            try:
                await device.cancel_connection()
            except BleakError as e:
                logger.warning("Error disconnecting %s: %s", device.address, e)
        self._devices.clear()
