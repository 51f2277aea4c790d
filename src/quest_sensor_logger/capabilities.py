"""Capability contract between the sampling core and the platform services.

The sampling core never talks to ``bleak`` or to a GPS receiver directly. It is
written against the abstract classes in this module, and two interchangeable
families of implementations exist:

- **Real hardware**: ``ble_backend.BleakBleCapability`` for the Bluetooth radio
  and ``location.TermuxLocation`` for GPS fixes on an Android/Termux device.
- **Synthetic**: ``simulation.SimulatedBleCapability`` and
  ``location.SimulatedLocation``, which generate deterministic data so the
  whole pipeline can run without a sensor.

Which family is used is a configuration value resolved once, by
``resolve_capabilities()``, when the logger is created.

Design notes:
- Callbacks registered with a capability (scan results, adapter state, location
  updates) are invoked on the event loop thread. They may fire at any time
  relative to in-flight coroutines, so consumers re-validate their state after
  every await.
- Every listener registration returns a ``Subscription`` whose ``remove()`` is
  idempotent.
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, List, Optional, Tuple

if TYPE_CHECKING:
    from .config import AppConfig


class AdapterState(str, enum.Enum):
    """Power state of the Bluetooth adapter."""

    POWERED_ON = "PoweredOn"
    POWERED_OFF = "PoweredOff"
    UNAUTHORIZED = "Unauthorized"
    UNSUPPORTED = "Unsupported"
    UNKNOWN = "Unknown"


class LocationAccuracy(enum.IntEnum):
    """Requested accuracy for location fixes."""

    LOW = 1
    BALANCED = 3
    HIGH = 4
    HIGHEST = 5


class Subscription(ABC):
    """Handle for an installed listener."""

    @abstractmethod
    def remove(self) -> None:
        """Detach the listener. Calling this more than once is harmless."""
        pass


class CallbackSubscription(Subscription):
    """Subscription that runs a cleanup callable exactly once."""

    def __init__(self, on_remove: Optional[Callable[[], None]] = None) -> None:
        self._on_remove = on_remove
        self.removed = False

    def remove(self) -> None:
        if self.removed:
            return
        self.removed = True
        if self._on_remove is not None:
            self._on_remove()


@dataclass(frozen=True)
class Coordinate:
    """One location fix.

    Attributes:
        latitude: Degrees, WGS84.
        longitude: Degrees, WGS84.
        altitude: Meters above the ellipsoid, if the fix has one.
        accuracy: Horizontal accuracy radius in meters, if known.
        speed: Ground speed in meters per second, if known.
        timestamp_ms: Time of the fix as reported by the provider.
    """

    latitude: float
    longitude: float
    altitude: Optional[float] = None
    accuracy: Optional[float] = None
    speed: Optional[float] = None
    timestamp_ms: Optional[int] = None


@dataclass(frozen=True)
class WatchOptions:
    """Options for a periodic location subscription."""

    accuracy: LocationAccuracy = LocationAccuracy.HIGH
    interval_ms: int = 1000
    distance_filter: float = 0.0


@dataclass(frozen=True)
class CharacteristicValue:
    """Result of a characteristic read.

    ``value`` is the payload encoded as base64 text, or None when the
    peripheral answered with nothing.
    """

    value: Optional[str]


@dataclass(frozen=True)
class ServiceInfo:
    """A discovered GATT service and the UUIDs of its characteristics."""

    uuid: str
    characteristics: Tuple[str, ...] = field(default_factory=tuple)


class SensorCharacteristic(ABC):
    """A bound, readable GATT characteristic."""

    @property
    @abstractmethod
    def uuid(self) -> str:
        pass

    @abstractmethod
    async def read(self) -> CharacteristicValue:
        """Read the current value.

        Raises:
            Exception: Any backend-specific error when the read fails. Callers
                treat every exception as a read failure.
        """
        pass


class SensorDevice(ABC):
    """A connectable peripheral found during a scan."""

    @property
    @abstractmethod
    def name(self) -> Optional[str]:
        pass

    @property
    @abstractmethod
    def address(self) -> str:
        pass

    @abstractmethod
    async def connect(self) -> None:
        pass

    @abstractmethod
    async def is_connected(self) -> bool:
        pass

    @abstractmethod
    async def cancel_connection(self) -> None:
        pass

    @abstractmethod
    async def discover_services_and_characteristics(self) -> None:
        pass

    @abstractmethod
    async def list_services(self) -> List[ServiceInfo]:
        pass

    @abstractmethod
    async def read_characteristic(
        self, service_uuid: str, characteristic_uuid: str
    ) -> SensorCharacteristic:
        """Resolve a characteristic by service/characteristic UUID and read it once.

        Raises:
            Exception: If the service or characteristic does not exist or the
                initial read fails.
        """
        pass

    @abstractmethod
    def on_disconnected(self, callback: Callable[["SensorDevice"], None]) -> Subscription:
        """Register a callback fired when the link drops for any reason."""
        pass


@dataclass(frozen=True)
class Advertisement:
    """One advertisement seen while scanning."""

    device: SensorDevice
    name: Optional[str]
    address: str
    rssi: Optional[int] = None


ScanCallback = Callable[[Optional[BaseException], Optional[Advertisement]], None]
AdapterStateCallback = Callable[[AdapterState], None]
LocationCallback = Callable[[Coordinate], None]


class BleCapability(ABC):
    """Bluetooth radio operations needed by the core."""

    @abstractmethod
    async def query_adapter_state(self) -> AdapterState:
        pass

    @abstractmethod
    def on_adapter_state_change(
        self, callback: AdapterStateCallback, emit_current: bool = False
    ) -> Subscription:
        """Subscribe to adapter power state changes.

        Args:
            callback: Called with each new state.
            emit_current: Also deliver the current state soon after
                subscribing (asynchronously, never from inside this call).
        """
        pass

    @abstractmethod
    def start_scan(self, callback: ScanCallback) -> None:
        """Start an unfiltered scan.

        ``callback(error, advertisement)`` is invoked for every advertisement
        seen, or once with an error if scanning fails.
        """
        pass

    @abstractmethod
    def stop_scan(self) -> None:
        pass

    @abstractmethod
    async def request_runtime_permissions(self) -> bool:
        """Return True if scanning and connecting are permitted."""
        pass

    async def close(self) -> None:
        """Release backend resources."""
        pass


class LocationCapability(ABC):
    """GPS operations needed by the core."""

    @abstractmethod
    async def request_foreground_permission(self) -> bool:
        pass

    @abstractmethod
    async def services_enabled(self) -> bool:
        pass

    @abstractmethod
    async def get_current_fix(self) -> Coordinate:
        pass

    @abstractmethod
    async def watch(
        self, options: WatchOptions, on_update: LocationCallback
    ) -> Subscription:
        """Start delivering periodic fixes to ``on_update``."""
        pass


@dataclass(frozen=True)
class Capabilities:
    """The pair of capabilities a logger session runs against."""

    ble: BleCapability
    location: LocationCapability
    simulated: bool = False


def resolve_capabilities(config: "AppConfig") -> Capabilities:
    """Select the real or synthetic backends from configuration.

    Imports are local so that the synthetic path works on machines without a
    Bluetooth stack, and the real path doesn't pay for the simulator.
    """
    if config.simulation:
        from .location import SimulatedLocation
        from .simulation import SimulatedBleCapability

        return Capabilities(
            ble=SimulatedBleCapability(
                service_uuid=config.service_uuid,
                characteristic_uuid=config.characteristic_uuid,
                seed=config.seed,
            ),
            location=SimulatedLocation(seed=config.seed),
            simulated=True,
        )

    from .ble_backend import BleakBleCapability
    from .location import TermuxLocation

    return Capabilities(ble=BleakBleCapability(), location=TermuxLocation())
