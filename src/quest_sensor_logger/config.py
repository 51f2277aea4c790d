"""Runtime configuration for the sensor logger.

All tunables live in one frozen dataclass. The CLI builds it from parsed
arguments; tests build it directly with the fields they care about.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

# Environmental Sensing service / Temperature characteristic
SENSOR_SERVICE_UUID = "0000181a-0000-1000-8000-00805f9b34fb"
SENSOR_CHARACTERISTIC_UUID = "00002a6e-0000-1000-8000-00805f9b34fb"

SENSOR_NAME_PATTERN = r"^quest"
PRESIGN_URL = "https://mobile.quest-science.net/get_presigned_url"

DEFAULT_DATA_DIR = Path.home() / ".quest-sensor-logger"


@dataclass(frozen=True)
class AppConfig:
    """Configuration values resolved once at startup.

    Attributes:
        simulation: Use the synthetic sensor and synthetic GPS track instead
            of real hardware. Resolved once when capabilities are created.
        data_dir: Directory holding the SQLite database and settings file.
        scan_timeout_ms: How long a connect or pair scan runs before giving up.
        adapter_timeout_ms: How long to wait for the Bluetooth adapter to
            report powered-on before raising ``AdapterUnavailable``.
        settle_delay_ms: Pause between a successful connect and the start of
            sampling.
        dedup_window_ms: Events closer than this to the last accepted write
            are discarded.
        error_throttle_ms: Minimum interval between two error notifications.
    """

    simulation: bool = False
    data_dir: Path = DEFAULT_DATA_DIR
    database_name: str = "appData.db"
    settings_name: str = "settings.json"
    scan_timeout_ms: int = 10000
    adapter_timeout_ms: int = 30000
    settle_delay_ms: int = 500
    location_interval_ms: int = 1000
    dedup_window_ms: int = 50
    error_throttle_ms: int = 5000
    ack_duration_ms: int = 500
    service_uuid: str = SENSOR_SERVICE_UUID
    characteristic_uuid: str = SENSOR_CHARACTERISTIC_UUID
    name_pattern: str = SENSOR_NAME_PATTERN
    presign_url: str = PRESIGN_URL
    upload_bucket: Optional[str] = None
    upload_timeout_s: float = 30.0
    seed: Optional[int] = None

    @property
    def database_path(self) -> Path:
        return self.data_dir / self.database_name

    @property
    def settings_path(self) -> Path:
        return self.data_dir / self.settings_name

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "AppConfig":
        """Build a configuration from parsed CLI arguments.

        Only attributes present on ``args`` override the defaults, so
        subcommands that don't declare a flag keep the default value.
        """
        config = cls()
        overrides = {}
        if getattr(args, "mock", False):
            overrides["simulation"] = True
        if getattr(args, "data_dir", None):
            overrides["data_dir"] = Path(args.data_dir).expanduser()
        if getattr(args, "scan_timeout", None) is not None:
            overrides["scan_timeout_ms"] = int(args.scan_timeout * 1000)
        if getattr(args, "bucket", None):
            overrides["upload_bucket"] = args.bucket
        if getattr(args, "seed", None) is not None:
            overrides["seed"] = args.seed
        return replace(config, **overrides)
