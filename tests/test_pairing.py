import pytest

from fakes import FakeBle, FakeDevice, FakeLocation

from quest_sensor_logger.capabilities import AdapterState, Capabilities
from quest_sensor_logger.controller import SensorLogger
from quest_sensor_logger.errors import (
    AdapterUnavailable,
    ConnectionFailed,
    PairingNotFound,
    PermissionDenied,
)
from quest_sensor_logger.settings import PAIRED_SENSOR_KEY


def make_logger(config, clock, devices, location=None, **ble_kwargs):
    ble = FakeBle(devices, **ble_kwargs)
    logger = SensorLogger(
        config, Capabilities(ble=ble, location=location or FakeLocation()), clock=clock
    )
    return logger, ble


class TestPermissions:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "location_kwargs, ble_permitted, reason",
        [
            ({"permission": False}, True, "location"),
            ({"enabled": False}, True, "location-services"),
            ({}, False, "bluetooth"),
        ],
    )
    async def test_refused_permission_raises_with_reason(
        self, config, clock, location_kwargs, ble_permitted, reason
    ):
        logger, ble = make_logger(
            config,
            clock,
            [FakeDevice(name="quest_1")],
            location=FakeLocation(**location_kwargs),
            permitted=ble_permitted,
        )

        with pytest.raises(PermissionDenied) as exc_info:
            await logger.pair()

        assert exc_info.value.reason == reason
        assert ble.start_scan_calls == 0
        assert logger.paired_sensor is None


class TestPair:
    @pytest.mark.asyncio
    async def test_saves_name_and_disconnects(self, config, clock):
        device = FakeDevice(name="quest_9")
        logger, ble = make_logger(config, clock, [device])

        assert await logger.pair() is True

        assert logger.settings.get(PAIRED_SENSOR_KEY) == "quest_9"
        assert device.connect_calls == 1
        assert device.cancel_calls == 1
        assert not device.connected
        assert ble.stop_scan_calls == 1
        assert not logger.snapshot().scanning
        assert not logger.snapshot().connected

    @pytest.mark.asyncio
    async def test_name_pattern_is_case_insensitive(self, config, clock):
        logger, _ = make_logger(
            config, clock, [FakeDevice(name="thermo"), FakeDevice(name="QUEST_7")]
        )

        await logger.pair()

        assert logger.paired_sensor == "QUEST_7"

    @pytest.mark.asyncio
    async def test_unnamed_and_non_matching_devices_are_ignored(self, config, clock):
        logger, _ = make_logger(
            config,
            clock,
            [FakeDevice(name=None), FakeDevice(name="my_quest")],
        )

        with pytest.raises(PairingNotFound):
            await logger.pair(scan_timeout_ms=100)

    @pytest.mark.asyncio
    async def test_not_found_after_timeout(self, config, clock):
        logger, ble = make_logger(config, clock, [])

        with pytest.raises(PairingNotFound):
            await logger.pair(scan_timeout_ms=100)

        assert ble.stop_scan_calls == 1
        assert logger.paired_sensor is None
        assert not logger.snapshot().scanning

    @pytest.mark.asyncio
    async def test_connect_failure_raises_and_keeps_old_pairing(self, config, clock):
        device = FakeDevice(name="quest_3", connect_error=ConnectionError("refused"))
        logger, _ = make_logger(config, clock, [device])
        logger.settings.set(PAIRED_SENSOR_KEY, "quest_1")

        with pytest.raises(ConnectionFailed):
            await logger.pair()

        assert device.cancel_calls == 1
        assert logger.paired_sensor == "quest_1"

    @pytest.mark.asyncio
    async def test_adapter_off_raises(self, config, clock):
        logger, ble = make_logger(
            config,
            clock,
            [FakeDevice(name="quest_1")],
            adapter_state=AdapterState.POWERED_OFF,
        )

        with pytest.raises(AdapterUnavailable):
            await logger.pair()
        assert ble.start_scan_calls == 0

    @pytest.mark.asyncio
    async def test_stops_active_session_first(self, config, clock):
        device = FakeDevice(name="quest_42")
        location = FakeLocation()
        logger, _ = make_logger(config, clock, [device], location=location)
        logger.settings.set(PAIRED_SENSOR_KEY, "quest_42")
        assert await logger.start() is True

        assert await logger.pair() is True

        assert not logger.snapshot().sampling
        assert location.active_subscriptions == 0
        assert logger.notifier.history[-1].message == "Sampling started"
        assert device.connect_calls == 2
