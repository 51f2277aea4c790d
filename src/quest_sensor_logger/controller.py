"""Application facade used by the dashboard and the CLI.

``SensorLogger`` wires one session together: capabilities, session state,
settings, the store, notifications, the connection supervisor, the pairing
resolver and the sampling engine. Its coroutines must run on the event loop
that owns the session.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional

from .capabilities import Capabilities, resolve_capabilities
from .config import AppConfig
from .connection import ConnectionSupervisor
from .errors import StoreUnavailable, StoreWriteFailure, UploadError
from .export import PresignedUploader, export_csv, render_csv
from .notifications import LONG_ERROR_DURATION_MS, Notifier, Severity
from .pairing import PairingResolver
from .sampling import SamplingEngine, now_ms
from .session_state import SessionSnapshot, SessionState
from .settings import DEVICE_NAME_KEY, JOBCODE_KEY, PAIRED_SENSOR_KEY, KeyValueStore
from .store import SampleStore, StoreProvider

logger = logging.getLogger(__name__)


class SensorLogger:
    """One logger session: start/stop sampling, pair, and manage stored data."""

    def __init__(
        self,
        config: AppConfig,
        capabilities: Optional[Capabilities] = None,
        uploader: Optional[PresignedUploader] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config
        self.capabilities = capabilities or resolve_capabilities(config)
        self.state = SessionState()
        self.settings = KeyValueStore(config.settings_path)
        self.store = StoreProvider(config.database_path)
        self.notifier = Notifier(
            self.state,
            min_interval_ms=config.error_throttle_ms,
            ack_duration_ms=config.ack_duration_ms,
            clock=clock,
        )
        self.supervisor = ConnectionSupervisor(
            self.capabilities.ble, self.state, self.settings, config
        )
        self.engine = SamplingEngine(
            self.capabilities,
            self.state,
            self.store,
            self.notifier,
            self.supervisor,
            config,
            clock=clock,
        )
        self.pairing = PairingResolver(
            self.capabilities,
            self.state,
            self.settings,
            self.supervisor,
            self.engine.stop,
            config,
        )
        self.uploader = uploader or PresignedUploader(
            config.presign_url, config.upload_bucket, config.upload_timeout_s
        )

    @classmethod
    def create(cls, config: AppConfig) -> "SensorLogger":
        logger.info(
            "Creating sensor logger (%s mode, data in %s)",
            "simulation" if config.simulation else "hardware",
            config.data_dir,
        )
        return cls(config)

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def snapshot(self) -> SessionSnapshot:
        return self.state.snapshot()

    def subscribe(self, listener: Callable[[SessionSnapshot], None]) -> Callable[[], None]:
        return self.state.subscribe(listener)

    @property
    def paired_sensor(self) -> Optional[str]:
        return self.settings.get(PAIRED_SENSOR_KEY)

    @property
    def jobcode(self) -> str:
        return self.settings.get(JOBCODE_KEY) or ""

    @jobcode.setter
    def jobcode(self, value: str) -> None:
        self.settings.set(JOBCODE_KEY, value)

    @property
    def device_name(self) -> Optional[str]:
        return self.settings.get(DEVICE_NAME_KEY)

    @device_name.setter
    def device_name(self, value: str) -> None:
        self.settings.set(DEVICE_NAME_KEY, value)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def start(self, device_name: Optional[str] = None) -> bool:
        return await self.engine.start(device_name)

    async def stop(self) -> None:
        await self.engine.stop()

    async def pair(self, scan_timeout_ms: Optional[int] = None) -> bool:
        return await self.pairing.pair(scan_timeout_ms)

    async def close(self) -> None:
        await self.engine.stop()
        await self.capabilities.ble.close()
        self.store.invalidate()

    # ------------------------------------------------------------------
    # Stored data
    # ------------------------------------------------------------------

    def _open_store(self) -> Optional[SampleStore]:
        try:
            return self.store.open()
        except StoreUnavailable as e:
            self.notifier.error(f"Database not available: {e}", LONG_ERROR_DURATION_MS, Severity.HIGH)
            return None

    def _refuse_while_sampling(self, action: str) -> bool:
        if self.state.sampling:
            self.notifier.error(f"Stop sampling before you {action}")
            return True
        return False

    async def clear_all(self) -> bool:
        """Delete every stored sample. Refused while sampling."""
        if self._refuse_while_sampling("clear data"):
            return False
        store = self._open_store()
        if store is None:
            return False
        try:
            deleted = store.delete_all()
        except StoreWriteFailure as e:
            logger.error("Clearing data failed: %s", e)
            self.store.invalidate()
            self.notifier.error("Failed to clear data", LONG_ERROR_DURATION_MS, Severity.HIGH)
            return False
        self.state.reset_sample_count()
        self.notifier.info(f"Cleared {deleted} samples")
        return True

    async def export_csv(self, path: Path) -> Optional[int]:
        """Write all stored samples to ``path``; returns the row count."""
        if self._refuse_while_sampling("export"):
            return None
        store = self._open_store()
        if store is None:
            return None
        try:
            records = store.select_all()
        except StoreUnavailable as e:
            self.store.invalidate()
            self.notifier.error(f"Export failed: {e}")
            return None
        count = export_csv(records, path, self.jobcode)
        self.notifier.info(f"Exported {count} samples to {path}")
        return count

    async def upload(self) -> Optional[str]:
        """Upload all stored samples as ``<deviceName>.csv``.

        Returns:
            The public URL, or None if the upload was skipped or failed.
        """
        if self.capabilities.simulated:
            self.notifier.info("Simulation mode: upload disabled (no data sent).")
            return None
        if self._refuse_while_sampling("upload"):
            return None
        store = self._open_store()
        if store is None:
            return None

        jobcode = self.jobcode
        try:
            store.prepare_upload_columns(jobcode)
        except StoreWriteFailure as e:
            logger.error("Preparing upload failed: %s", e)
            self.store.invalidate()
            self.notifier.error("Failed to access database for upload")
            return None

        try:
            records = store.select_all()
        except StoreUnavailable as e:
            self.store.invalidate()
            self.notifier.error(f"Failed to access database for upload: {e}")
            return None
        if not records:
            self.notifier.info("There is no data in the database to upload.")
            return None
        device_name = self.device_name
        if not device_name:
            self.notifier.error("Device name missing. Cannot upload.")
            return None

        content = render_csv(records, jobcode)
        try:
            public_url = await asyncio.to_thread(
                self.uploader.upload, f"{device_name}.csv", content
            )
        except UploadError as e:
            self.notifier.error(f"Failed to upload data: {e}", 8000)
            return None
        self.notifier.info("File uploaded to cloud storage", 5000)
        return public_url
