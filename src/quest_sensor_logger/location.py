"""Location capability implementations.

Two backends share the ``LocationCapability`` contract:

- ``TermuxLocation`` asks the Android location service for fixes through the
  ``termux-location`` command from Termux:API. Each request runs as an async
  subprocess with a hard timeout, so a stalled provider never blocks the event
  loop or the sampling engine.
- ``SimulatedLocation`` produces a seeded random walk around a start point at
  walking speed, for simulation mode and tests.

Periodic subscriptions (``watch``) are asyncio tasks; ``Subscription.remove()``
cancels the task, after which no further updates are delivered.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import random
import shutil
import time
from typing import Any, Optional

from .capabilities import (
    CallbackSubscription,
    Coordinate,
    LocationAccuracy,
    LocationCallback,
    LocationCapability,
    Subscription,
    WatchOptions,
)

logger = logging.getLogger(__name__)

TERMUX_LOCATION = "termux-location"
REQUEST_TIMEOUT = 30.0

# Meters per degree of latitude (spherical approximation)
METERS_PER_DEGREE = 111_320.0


def _now_ms() -> int:
    return int(time.time() * 1000)


def _coordinate_from_json(data: dict[str, Any]) -> Coordinate:
    return Coordinate(
        latitude=float(data["latitude"]),
        longitude=float(data["longitude"]),
        altitude=data.get("altitude"),
        accuracy=data.get("accuracy"),
        speed=data.get("speed"),
        timestamp_ms=_now_ms(),
    )


class LocationUnavailable(RuntimeError):
    """The location provider returned no usable fix."""


def _watch_task(
    interval_ms: int, next_fix: Any, on_update: LocationCallback, label: str
) -> Subscription:
    """Run ``next_fix`` every ``interval_ms`` and feed results to ``on_update``."""

    async def run() -> None:
        interval = interval_ms / 1000.0
        while True:
            started = time.monotonic()
            try:
                coordinate = await next_fix()
            except LocationUnavailable as e:
                logger.warning("%s: no fix this interval (%s)", label, e)
            else:
                on_update(coordinate)
            elapsed = time.monotonic() - started
            await asyncio.sleep(max(0.0, interval - elapsed))

    task = asyncio.get_running_loop().create_task(run())
    logger.info("%s: location watch started (interval=%dms)", label, interval_ms)

    def stop() -> None:
        task.cancel()
        logger.info("%s: location watch removed", label)

    return CallbackSubscription(stop)


class TermuxLocation(LocationCapability):
    """GPS fixes from Termux:API on Android.

    Args:
        provider: ``gps`` for satellite fixes, ``network`` for Wi-Fi/cell.
        timeout: Seconds before a single request is killed.
    """

    def __init__(self, provider: str = "gps", timeout: float = REQUEST_TIMEOUT) -> None:
        self._provider = provider
        self._timeout = timeout

    async def _request(self, provider: str, request: str = "once") -> Coordinate:
        proc = await asyncio.create_subprocess_exec(
            TERMUX_LOCATION,
            "-p",
            provider,
            "-r",
            request,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise LocationUnavailable(f"request exceeded {self._timeout:.0f}s")

        if proc.returncode != 0 or not stdout.strip():
            raise LocationUnavailable(
                stderr.decode("utf-8", errors="replace").strip() or "empty response"
            )
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError as e:
            raise LocationUnavailable(f"unparseable response: {e}") from e
        if "error" in data or data.get("latitude") is None:
            raise LocationUnavailable(str(data.get("error", "no latitude in response")))
        return _coordinate_from_json(data)

    async def request_foreground_permission(self) -> bool:
        if shutil.which(TERMUX_LOCATION) is None:
            logger.error("%s not found; install Termux:API", TERMUX_LOCATION)
            return False
        try:
            await self._request("network", "last")
            return True
        except LocationUnavailable as e:
            # No cached fix is fine; a permission error is not
            message = str(e).lower()
            if "permission" in message:
                logger.error("Location permission refused: %s", e)
                return False
            return True

    async def services_enabled(self) -> bool:
        if shutil.which(TERMUX_LOCATION) is None:
            return False
        try:
            await self._request(self._provider, "last")
        except LocationUnavailable as e:
            if "disabled" in str(e).lower():
                return False
        return True

    async def get_current_fix(self) -> Coordinate:
        return await self._request(self._provider)

    async def watch(
        self, options: WatchOptions, on_update: LocationCallback
    ) -> Subscription:
        provider = "gps" if options.accuracy >= LocationAccuracy.HIGH else "network"
        return _watch_task(
            options.interval_ms,
            lambda: self._request(provider),
            on_update,
            "termux",
        )


class SimulatedLocation(LocationCapability):
    """Seeded random walk at walking pace.

    Args:
        latitude: Start latitude in degrees.
        longitude: Start longitude in degrees.
        altitude: Start altitude in meters.
        speed: Mean ground speed in m/s.
        seed: Random seed; equal seeds give equal tracks.
    """

    def __init__(
        self,
        latitude: float = 41.8827,
        longitude: float = -87.6233,
        altitude: float = 181.0,
        speed: float = 1.4,
        seed: Optional[int] = None,
    ) -> None:
        self._rng = random.Random(seed)
        self._latitude = latitude
        self._longitude = longitude
        self._altitude = altitude
        self._speed = speed
        self._heading = self._rng.uniform(0, 2 * math.pi)
        self._last_step_ms: Optional[int] = None
        self.permission_granted = True
        self.enabled = True

    async def request_foreground_permission(self) -> bool:
        return self.permission_granted

    async def services_enabled(self) -> bool:
        return self.enabled

    def _step(self) -> Coordinate:
        now = _now_ms()
        dt = 1.0 if self._last_step_ms is None else (now - self._last_step_ms) / 1000.0
        self._last_step_ms = now

        self._heading += self._rng.gauss(0, 0.2)
        speed = max(0.0, self._speed + self._rng.gauss(0, 0.2))
        distance = speed * dt
        self._latitude += distance * math.cos(self._heading) / METERS_PER_DEGREE
        self._longitude += (
            distance
            * math.sin(self._heading)
            / (METERS_PER_DEGREE * math.cos(math.radians(self._latitude)))
        )
        self._altitude += self._rng.gauss(0, 0.1)

        return Coordinate(
            latitude=self._latitude,
            longitude=self._longitude,
            altitude=self._altitude,
            accuracy=self._rng.uniform(3.0, 8.0),
            speed=speed,
            timestamp_ms=now,
        )

    async def get_current_fix(self) -> Coordinate:
        return self._step()

    async def watch(
        self, options: WatchOptions, on_update: LocationCallback
    ) -> Subscription:
        async def next_fix() -> Coordinate:
            return self._step()

        return _watch_task(options.interval_ms, next_fix, on_update, "simulated")
