"""Local SQLite store for joined temperature and location samples.

Samples are kept as fixed-point integers so the store never accumulates
floating-point drift; conversion back to human units happens only at export.

- SampleRecord: one row of the ``appData`` table
- SampleStore: insert / select-all / delete-all over an open connection
- StoreProvider: lazily opened, cached handle with an explicit invalidation
"""

from __future__ import annotations

import logging
import math
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .capabilities import Coordinate
from .errors import StoreUnavailable, StoreWriteFailure

logger = logging.getLogger(__name__)

TEMPERATURE_SCALE = 100
DEGREE_SCALE = 10_000_000
METER_SCALE = 100
SPEED_SCALE = 100

_SCHEMA = """
CREATE TABLE IF NOT EXISTS appData (
    timestamp INTEGER PRIMARY KEY NOT NULL,
    temperature INTEGER NOT NULL,
    humidity INTEGER,
    latitude INTEGER NOT NULL,
    longitude INTEGER NOT NULL,
    altitude INTEGER,
    accuracy INTEGER,
    speed INTEGER
)
"""

_BASE_COLUMNS = (
    "timestamp",
    "temperature",
    "humidity",
    "latitude",
    "longitude",
    "altitude",
    "accuracy",
    "speed",
)


def to_fixed_point(value: Optional[float], scale: int) -> Optional[int]:
    """Scale and round half up; None and NaN map to None."""
    if value is None:
        return None
    value = float(value)
    if math.isnan(value) or math.isinf(value):
        return None
    return int(math.floor(value * scale + 0.5))


@dataclass(frozen=True)
class SampleRecord:
    """One stored sample. All measurement fields are fixed-point integers."""

    timestamp: int
    temperature: Optional[int]
    humidity: int
    latitude: Optional[int]
    longitude: Optional[int]
    altitude: Optional[int]
    accuracy: Optional[int]
    speed: Optional[int]
    jobcode: Optional[str] = None
    rownumber: Optional[int] = None

    @classmethod
    def from_reading(
        cls, timestamp: int, temperature: float, coordinate: Coordinate
    ) -> "SampleRecord":
        return cls(
            timestamp=timestamp,
            temperature=to_fixed_point(temperature, TEMPERATURE_SCALE),
            humidity=0,
            latitude=to_fixed_point(coordinate.latitude, DEGREE_SCALE),
            longitude=to_fixed_point(coordinate.longitude, DEGREE_SCALE),
            altitude=to_fixed_point(coordinate.altitude, METER_SCALE),
            accuracy=to_fixed_point(coordinate.accuracy, METER_SCALE),
            speed=to_fixed_point(coordinate.speed, SPEED_SCALE),
        )


class SampleStore:
    """Operations on an open ``appData`` database."""

    def __init__(self, connection: sqlite3.Connection):
        self._conn = connection
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def insert(self, record: SampleRecord) -> None:
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    "INSERT INTO appData (timestamp, temperature, humidity, latitude, "
                    "longitude, altitude, accuracy, speed) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.timestamp,
                        record.temperature,
                        record.humidity,
                        record.latitude,
                        record.longitude,
                        record.altitude,
                        record.accuracy,
                        record.speed,
                    ),
                )
        except sqlite3.Error as e:
            raise StoreWriteFailure(f"Insert failed for {record.timestamp}: {e}") from e

    def _columns(self) -> List[str]:
        return [row[1] for row in self._conn.execute("PRAGMA table_info(appData)")]

    def select_all(self) -> List[SampleRecord]:
        """Return every record ordered by timestamp."""
        try:
            with self._lock:
                columns = self._columns()
                extra = [c for c in ("jobcode", "rownumber") if c in columns]
                query = "SELECT {} FROM appData ORDER BY timestamp".format(
                    ", ".join(_BASE_COLUMNS + tuple(extra))
                )
                rows = self._conn.execute(query).fetchall()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Read failed: {e}") from e

        records = []
        for row in rows:
            values = dict(zip(_BASE_COLUMNS + tuple(extra), row))
            records.append(SampleRecord(**values))
        return records

    def select_recent(self, limit: int) -> List[SampleRecord]:
        """Return the newest ``limit`` records, oldest first."""
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT {} FROM appData ORDER BY timestamp DESC LIMIT ?".format(
                        ", ".join(_BASE_COLUMNS)
                    ),
                    (limit,),
                ).fetchall()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Read failed: {e}") from e
        return [SampleRecord(**dict(zip(_BASE_COLUMNS, row))) for row in reversed(rows)]

    def count(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM appData").fetchone()[0]

    def delete_all(self) -> int:
        try:
            with self._lock, self._conn:
                cursor = self._conn.execute("DELETE FROM appData")
        except sqlite3.Error as e:
            raise StoreWriteFailure(f"Delete failed: {e}") from e
        logger.info(f"Deleted {cursor.rowcount} records")
        return cursor.rowcount

    def prepare_upload_columns(self, jobcode: str) -> None:
        """Add the ``jobcode``/``rownumber`` columns if missing and fill them.

        Row numbers start at 1 in timestamp order.
        """
        try:
            with self._lock, self._conn:
                columns = self._columns()
                if "jobcode" not in columns:
                    self._conn.execute("ALTER TABLE appData ADD COLUMN jobcode TEXT")
                self._conn.execute("UPDATE appData SET jobcode = ?", (jobcode,))
                if "rownumber" not in columns:
                    self._conn.execute("ALTER TABLE appData ADD COLUMN rownumber INTEGER")
                self._conn.execute(
                    "UPDATE appData SET rownumber = (SELECT COUNT(*) FROM appData AS earlier "
                    "WHERE earlier.timestamp <= appData.timestamp)"
                )
        except sqlite3.Error as e:
            raise StoreWriteFailure(f"Schema update failed: {e}") from e


class StoreProvider:
    """Cached, lazily opened store handle.

    ``open()`` returns the cached handle if there is one. ``invalidate()`` is
    the only other mutation: it drops the handle so the next ``open()`` starts
    from a fresh connection.
    """

    def __init__(self, path: Path):
        self._path = path
        self._handle: Optional[SampleStore] = None
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def handle(self) -> Optional[SampleStore]:
        with self._lock:
            return self._handle

    def open(self) -> SampleStore:
        with self._lock:
            if self._handle is not None:
                return self._handle
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(str(self._path), check_same_thread=False)
                conn.execute("PRAGMA journal_mode = WAL")
                conn.execute(_SCHEMA)
                conn.commit()
            except (sqlite3.Error, OSError) as e:
                logger.error(f"Could not open database {self._path}: {e}")
                raise StoreUnavailable(f"Could not open database: {e}") from e
            self._handle = SampleStore(conn)
            logger.info(f"Database opened: {self._path}")
            return self._handle

    def invalidate(self) -> None:
        with self._lock:
            handle = self._handle
            self._handle = None
        if handle is not None:
            try:
                handle.close()
            except sqlite3.Error as e:
                logger.warning(f"Error closing database: {e}")
            logger.info("Database handle invalidated")
