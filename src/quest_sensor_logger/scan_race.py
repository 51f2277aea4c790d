"""Scan-versus-timeout race shared by connecting and pairing.

A scan produces a stream of advertisements; a timer fires once. Both feed a
single future, and whichever gets there first decides the outcome:

- **Match**: the first advertisement accepted by ``matches`` claims the race.
  The timer is cancelled, scanning stops, and ``on_match`` runs. Later
  advertisements (for the same or another device) are ignored even while
  ``on_match`` is still awaiting a connect.
- **Timeout**: if nothing has claimed the race when the timer fires, scanning
  stops and ``on_timeout`` decides the result (a value or an exception).
- **Scan error**: the backend reports an error; scanning stops and the future
  fails with ``ScanError``.

Whatever path wins, ``stop_scan()`` reaches the backend exactly once and no
timer or match task outlives ``run()``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from .capabilities import AdapterState, Advertisement, BleCapability
from .errors import AdapterUnavailable, ScanError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def wait_for_powered_on(ble: BleCapability, timeout_ms: int) -> None:
    """Wait until the adapter reports powered on.

    Subscribes with ``emit_current`` so an already powered adapter resolves
    immediately, and removes the subscription after the first power-on event.

    Raises:
        AdapterUnavailable: If the adapter is not powered on within
            ``timeout_ms``.
    """
    loop = asyncio.get_running_loop()
    powered: asyncio.Future[None] = loop.create_future()

    def on_state(state: AdapterState) -> None:
        if state is AdapterState.POWERED_ON:
            if not powered.done():
                powered.set_result(None)
        else:
            logger.info("Bluetooth adapter state: %s", state.value)

    subscription = ble.on_adapter_state_change(on_state, emit_current=True)
    try:
        await asyncio.wait_for(powered, timeout=timeout_ms / 1000.0)
    except asyncio.TimeoutError:
        raise AdapterUnavailable(
            f"Bluetooth adapter not powered on after {timeout_ms / 1000.0:.0f}s"
        ) from None
    finally:
        subscription.remove()


class ScanRace(Generic[T]):
    """One single-resolution scan, built fresh for every connect or pair call.

    Args:
        ble: BLE capability to scan with.
        timeout_ms: Wall-clock limit for finding a match.
    """

    def __init__(self, ble: BleCapability, timeout_ms: int):
        self._ble = ble
        self._timeout_ms = timeout_ms
        self._future: Optional[asyncio.Future[T]] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._match_task: Optional[asyncio.Task[None]] = None
        self._claimed = False
        self._scan_stopped = False
        self.scan_started = False
        self.timer_fired = False

    @property
    def claimed(self) -> bool:
        return self._claimed

    def claim(self) -> bool:
        """Return True for the first caller only."""
        if self._claimed:
            return False
        self._claimed = True
        return True

    def stop_scan(self) -> None:
        if self._scan_stopped or not self.scan_started:
            return
        self._scan_stopped = True
        try:
            self._ble.stop_scan()
        except Exception:
            logger.exception("Error stopping scan")

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def run(
        self,
        matches: Callable[[Advertisement], bool],
        on_match: Callable[[Advertisement], Awaitable[T]],
        on_timeout: Callable[[], T],
    ) -> T:
        """Scan until a match or the timeout, and return the winning result.

        Args:
            matches: Predicate applied to each advertisement.
            on_match: Coroutine run for the claiming advertisement; its return
                value (or exception) becomes the result.
            on_timeout: Called when the timer wins; may raise.

        Raises:
            ScanError: If the backend reports a scan error first.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()
        self._future = future

        def on_advertisement(
            error: Optional[BaseException], advertisement: Optional[Advertisement]
        ) -> None:
            if future.done() or self._claimed:
                return
            if error is not None:
                logger.error("Scan error: %s", error)
                self._cancel_timer()
                self.stop_scan()
                future.set_exception(ScanError(str(error)))
                return
            if advertisement is None or not matches(advertisement):
                return
            if not self.claim():
                return
            logger.info(
                "Matched %s (%s, rssi=%s)",
                advertisement.name,
                advertisement.address,
                advertisement.rssi,
            )
            self._cancel_timer()
            self.stop_scan()
            self._match_task = loop.create_task(self._run_match(advertisement, on_match))

        def on_timer() -> None:
            self._timer = None
            self.timer_fired = True
            if future.done() or self._claimed:
                return
            logger.info("No match within %dms", self._timeout_ms)
            self.stop_scan()
            try:
                result = on_timeout()
            except Exception as e:
                future.set_exception(e)
            else:
                future.set_result(result)

        self._timer = loop.call_later(self._timeout_ms / 1000.0, on_timer)
        self.scan_started = True
        logger.info("Scanning (timeout %dms)", self._timeout_ms)
        self._ble.start_scan(on_advertisement)
        try:
            return await future
        finally:
            self._cancel_timer()
            self.stop_scan()
            task = self._match_task
            if task is not None and not task.done():
                task.cancel()

    async def _run_match(
        self, advertisement: Advertisement, on_match: Callable[[Advertisement], Awaitable[T]]
    ) -> None:
        future = self._future
        assert future is not None
        try:
            result = await on_match(advertisement)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not future.done():
                future.set_exception(e)
        else:
            if not future.done():
                future.set_result(result)
