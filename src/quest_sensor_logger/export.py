"""CSV export and presigned-URL upload of stored samples."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Tuple

import requests

from .errors import UploadError
from .store import DEGREE_SCALE, METER_SCALE, SPEED_SCALE, TEMPERATURE_SCALE, SampleRecord

logger = logging.getLogger(__name__)

CSV_HEADER = (
    "rownumber,jobcode,Timestamp,Local Date,Local Time,Temperature (°C),"
    "Humidity (%),Latitude,Longitude,Altitude (m),Accuracy (m),Speed (MPH)"
)

MPS_TO_MPH = 2.23694


def _local_date_time(timestamp_ms: int) -> Tuple[str, str]:
    try:
        dt = datetime.fromtimestamp(timestamp_ms / 1000.0)
    except (OverflowError, OSError, ValueError):
        return "", ""
    return f"{dt.month}/{dt.day}/{dt.year}", dt.strftime("%H:%M:%S")


def format_row(record: SampleRecord, rownumber: Optional[int], jobcode: str) -> str:
    """Convert one fixed-point record to a CSV line in human units."""
    local_date, local_time = _local_date_time(record.timestamp)
    temperature = (record.temperature or 0) / TEMPERATURE_SCALE
    latitude = (record.latitude or 0) / DEGREE_SCALE
    longitude = (record.longitude or 0) / DEGREE_SCALE
    altitude = (record.altitude or 0) / METER_SCALE
    accuracy = (record.accuracy or 0) / METER_SCALE
    speed_mph = (record.speed or 0) / SPEED_SCALE * MPS_TO_MPH
    return (
        f"{'' if rownumber is None else rownumber},{jobcode},{record.timestamp},"
        f"{local_date},{local_time},{temperature:.2f},{float(record.humidity or 0):.1f},"
        f"{latitude:.6f},{longitude:.6f},{altitude:.2f},{accuracy:.2f},{speed_mph:.2f}"
    )


def render_csv(records: Iterable[SampleRecord], jobcode: str = "") -> str:
    """Render records as CSV text with a header line.

    Row numbers and job codes stored with the record take precedence; records
    without them are numbered in order from 1 and get ``jobcode``.
    """
    lines = [CSV_HEADER]
    for index, record in enumerate(records, start=1):
        rownumber = record.rownumber if record.rownumber is not None else index
        lines.append(format_row(record, rownumber, record.jobcode or jobcode))
    return "\n".join(lines) + "\n"


def export_csv(records: Iterable[SampleRecord], path: Path, jobcode: str = "") -> int:
    """Write records to ``path`` as CSV; returns the number of data rows."""
    records = list(records)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="", encoding="utf-8") as f:
        f.write(render_csv(records, jobcode))
    logger.info(f"Exported {len(records)} samples to {path}")
    return len(records)


class PresignedUploader:
    """Uploads CSV text through a presigned URL service.

    The service answers ``POST {filename, bucket}`` with ``{uploadUrl,
    publicUrl}``; the CSV is then ``PUT`` to ``uploadUrl``.
    """

    def __init__(
        self,
        presign_url: str,
        bucket: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self._presign_url = presign_url
        self._bucket = bucket
        self._timeout = timeout
        self._session = session or requests.Session()

    def request_upload_url(self, filename: str) -> Tuple[str, str]:
        """Return ``(upload_url, public_url)`` for ``filename``."""
        body = {"filename": filename, "bucket": self._bucket}
        logger.debug(f"Requesting presigned URL: {body}")
        try:
            response = self._session.post(
                self._presign_url, json=body, timeout=self._timeout
            )
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise UploadError(f"Could not get upload URL: {e}") from e
        except ValueError as e:
            raise UploadError(f"Invalid response from upload service: {e}") from e

        upload_url = data.get("uploadUrl")
        public_url = data.get("publicUrl")
        if not upload_url:
            raise UploadError("Upload service returned no uploadUrl")
        return upload_url, public_url or ""

    def upload(self, filename: str, content: str) -> str:
        """Upload CSV content; returns the public URL."""
        upload_url, public_url = self.request_upload_url(filename)
        try:
            response = self._session.put(
                upload_url,
                data=content.encode("utf-8"),
                headers={"Content-Type": "text/csv"},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise UploadError(f"Upload failed: {e}") from e
        if not response.ok:
            raise UploadError(f"Upload failed with status {response.status_code}")
        logger.info(f"Uploaded {filename}: {public_url}")
        return public_url
