"""Exception hierarchy for the sensor logger.

Permission, adapter and scan faults propagate to whoever started the
operation. Faults that happen mid-session (read failures, store failures)
are never raised to the UI; the sampling engine converts them into a
teardown plus a notification.
"""

from __future__ import annotations


class SensorLoggerError(Exception):
    """Base class for all sensor logger errors."""


class PermissionDenied(SensorLoggerError):
    """A location or BLE runtime permission was refused.

    Attributes:
        reason: Short machine-readable reason, one of ``"location"``,
            ``"location-services"`` or ``"bluetooth"``.
    """

    def __init__(self, reason: str, message: str = "") -> None:
        self.reason = reason
        super().__init__(message or f"Permission denied: {reason}")


class AdapterUnavailable(SensorLoggerError):
    """The Bluetooth adapter never reached the powered-on state."""


class ScanError(SensorLoggerError):
    """The capability provider reported an error while scanning."""


class PairingNotFound(SensorLoggerError):
    """No device matching the sensor name pattern was seen before the timeout."""


class ConnectionFailed(SensorLoggerError):
    """Connecting to or discovering a matched device failed."""


class ReadFailure(SensorLoggerError):
    """Reading the bound characteristic raised."""


class EmptyPayload(SensorLoggerError):
    """A characteristic read succeeded but returned no value.

    Tolerated: the event is dropped but the session keeps sampling.
    """


class StoreUnavailable(SensorLoggerError):
    """The local store could not be opened or its handle was invalidated."""


class StoreWriteFailure(SensorLoggerError):
    """Inserting or deleting records in the local store failed."""


class UploadError(SensorLoggerError):
    """Requesting a presigned URL or uploading the CSV failed."""
