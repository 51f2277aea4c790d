"""Synthetic BLE temperature sensor for simulation mode and tests.

Implements the same capability contract as the bleak backend, so the
sampling engine cannot tell the difference. The simulated sensor advertises as
``quest_100`` and answers characteristic reads with a temperature generated by
a slow sinusoid plus linear drift and noise, encoded as text and then base64,
exactly as the real firmware does.

Data generation is seeded: two simulators created with the same seed produce
the same advertisement RSSI sequence and the same temperature noise, which
keeps tests and demonstrations reproducible.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import math
import random
import time
from typing import Callable, List, Optional

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
from .config import SENSOR_CHARACTERISTIC_UUID, SENSOR_SERVICE_UUID

logger = logging.getLogger(__name__)

SIMULATED_DEVICE_NAME = "quest_100"
ADVERTISE_INTERVAL = 0.8


def _now_ms() -> int:
    return int(time.time() * 1000)


class SimWave:
    """Room-temperature waveform: base + sinusoid + drift + uniform noise.

    Args:
        base: Mean temperature in degrees Celsius.
        amp: Sinusoid amplitude in degrees.
        period_ms: Sinusoid period. Five minutes resembles walking between
            shaded and sunny areas.
        noise: Half-width of the uniform noise band.
        drift_per_hour: Linear drift in degrees per hour.
        rng: Random source; seeds the phase offset and the noise.
    """

    def __init__(
        self,
        base: float = 24.0,
        amp: float = 3.5,
        period_ms: float = 5 * 60 * 1000,
        noise: float = 0.25,
        drift_per_hour: float = 0.05,
        rng: Optional[random.Random] = None,
        t0_ms: Optional[float] = None,
    ) -> None:
        self._rng = rng or random.Random()
        self.base = base
        self.amp = amp
        self.period_ms = period_ms
        self.noise = noise
        self.drift_per_ms = drift_per_hour / (60 * 60 * 1000)
        if t0_ms is None:
            t0_ms = _now_ms() - self._rng.random() * period_ms
        self.t0_ms = t0_ms

    def sample(self, t_ms: float) -> float:
        elapsed = t_ms - self.t0_ms
        phase = 2 * math.pi * (elapsed % self.period_ms) / self.period_ms
        drift = elapsed * self.drift_per_ms
        n = (self._rng.random() - 0.5) * 2 * self.noise
        return self.base + self.amp * math.sin(phase) + drift + n


class SimulatedCharacteristic(SensorCharacteristic):
    def __init__(self, device: "SimulatedSensorDevice", uuid: str) -> None:
        self._device = device
        self._uuid = uuid

    @property
    def uuid(self) -> str:
        return self._uuid

    async def read(self) -> CharacteristicValue:
        if not self._device.connected:
            raise ConnectionError("Simulated sensor is not connected")
        temp_c = self._device.wave.sample(_now_ms())
        payload = f"{temp_c:.2f}".encode("utf-8")
        return CharacteristicValue(value=base64.b64encode(payload).decode("ascii"))


class SimulatedSensorDevice(SensorDevice):
    """In-memory peripheral exposing one temperature characteristic."""

    def __init__(
        self,
        name: str = SIMULATED_DEVICE_NAME,
        service_uuid: str = SENSOR_SERVICE_UUID,
        characteristic_uuid: str = SENSOR_CHARACTERISTIC_UUID,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._rng = rng or random.Random()
        self._name = name
        self._service_uuid = service_uuid
        self._characteristic_uuid = characteristic_uuid
        self.connected = False
        self.wave = SimWave(rng=self._rng)
        self._base_rssi = -55
        self._disconnect_listeners: List[Callable[[SensorDevice], None]] = []

    @property
    def name(self) -> Optional[str]:
        return self._name

    @property
    def address(self) -> str:
        return "SIM-" + self._name

    def rssi(self) -> int:
        return self._base_rssi + round((self._rng.random() - 0.5) * 6)

    async def connect(self) -> None:
        self.connected = True

    async def is_connected(self) -> bool:
        return self.connected

    async def cancel_connection(self) -> None:
        if not self.connected:
            return
        self.connected = False
        self._notify_disconnect()

    def simulate_link_loss(self) -> None:
        """Drop the link as if the sensor went out of range."""
        if self.connected:
            self.connected = False
            self._notify_disconnect()

    def _notify_disconnect(self) -> None:
        for listener in list(self._disconnect_listeners):
            listener(self)

    async def discover_services_and_characteristics(self) -> None:
        pass

    async def list_services(self) -> List[ServiceInfo]:
        return [
            ServiceInfo(
                uuid=self._service_uuid, characteristics=(self._characteristic_uuid,)
            )
        ]

    async def read_characteristic(
        self, service_uuid: str, characteristic_uuid: str
    ) -> SensorCharacteristic:
        if (
            service_uuid.lower() != self._service_uuid.lower()
            or characteristic_uuid.lower() != self._characteristic_uuid.lower()
        ):
            raise LookupError("Characteristic not found")
        characteristic = SimulatedCharacteristic(self, characteristic_uuid)
        await characteristic.read()
        return characteristic

    def on_disconnected(self, callback: Callable[[SensorDevice], None]) -> Subscription:
        self._disconnect_listeners.append(callback)

        def remove() -> None:
            if callback in self._disconnect_listeners:
                self._disconnect_listeners.remove(callback)

        return CallbackSubscription(remove)


class SimulatedBleCapability(BleCapability):
    """Adapter that is always powered on and advertises one simulated sensor."""

    def __init__(
        self,
        service_uuid: str = SENSOR_SERVICE_UUID,
        characteristic_uuid: str = SENSOR_CHARACTERISTIC_UUID,
        seed: Optional[int] = None,
        advertise_interval: float = ADVERTISE_INTERVAL,
    ) -> None:
        self._rng = random.Random(seed)
        self.device = SimulatedSensorDevice(
            service_uuid=service_uuid,
            characteristic_uuid=characteristic_uuid,
            rng=self._rng,
        )
        self._advertise_interval = advertise_interval
        self._scan_handle: Optional[asyncio.Handle] = None
        self._scanning = False

    async def query_adapter_state(self) -> AdapterState:
        return AdapterState.POWERED_ON

    def on_adapter_state_change(
        self, callback: AdapterStateCallback, emit_current: bool = False
    ) -> Subscription:
        subscription = CallbackSubscription()
        if emit_current:

            def emit() -> None:
                if not subscription.removed:
                    callback(AdapterState.POWERED_ON)

            asyncio.get_running_loop().call_soon(emit)
        return subscription

    def start_scan(self, callback: ScanCallback) -> None:
        loop = asyncio.get_running_loop()
        self._scanning = True

        def emit() -> None:
            if not self._scanning:
                return
            callback(
                None,
                Advertisement(
                    device=self.device,
                    name=self.device.name,
                    address=self.device.address,
                    rssi=self.device.rssi(),
                ),
            )
            if self._scanning:
                self._scan_handle = loop.call_later(self._advertise_interval, emit)

        logger.info("Simulated scan started")
        self._scan_handle = loop.call_soon(emit)

    def stop_scan(self) -> None:
        self._scanning = False
        if self._scan_handle is not None:
            self._scan_handle.cancel()
            self._scan_handle = None

    async def request_runtime_permissions(self) -> bool:
        return True
