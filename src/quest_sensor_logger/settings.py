"""Durable key-value settings stored as a JSON file."""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

PAIRED_SENSOR_KEY = "pairedSensorName"
JOBCODE_KEY = "jobcode"
DEVICE_NAME_KEY = "deviceName"


class KeyValueStore:
    """String key-value store persisted to a JSON file.

    Writes go to a temporary file that then replaces the original, so a crash
    mid-write never leaves a truncated settings file.
    """

    def __init__(self, path: Path):
        self._path = path
        self._lock = threading.Lock()
        self._cache: Optional[Dict[str, str]] = None

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Dict[str, str]:
        if self._cache is not None:
            return self._cache
        if not self._path.exists():
            self._cache = {}
            return self._cache
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read settings file {self._path}: {e}")
            data = {}
        self._cache = {str(k): str(v) for k, v in data.items() if v is not None}
        return self._cache

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = dict(self._load())
            data[key] = value
            self._write(data)
            self._cache = data
        logger.info(f"Saved setting {key}={value!r}")

    def delete(self, key: str) -> None:
        with self._lock:
            data = dict(self._load())
            if data.pop(key, None) is not None:
                self._write(data)
            self._cache = data

    def _write(self, data: Dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self._path)
