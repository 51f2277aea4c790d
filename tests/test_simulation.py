import asyncio
import dataclasses
import math
import random

import pytest

from quest_sensor_logger.capabilities import AdapterState, WatchOptions
from quest_sensor_logger.config import SENSOR_CHARACTERISTIC_UUID, SENSOR_SERVICE_UUID
from quest_sensor_logger.controller import SensorLogger
from quest_sensor_logger.location import SimulatedLocation
from quest_sensor_logger.sampling import MSG_DEVICE_LOST, decode_temperature
from quest_sensor_logger.simulation import (
    SIMULATED_DEVICE_NAME,
    SimulatedBleCapability,
    SimWave,
)


@pytest.fixture
def sim_config(config):
    return dataclasses.replace(config, simulation=True, seed=7, location_interval_ms=100)


class TestSimWave:
    def test_same_seed_same_samples(self):
        a = SimWave(rng=random.Random(3), t0_ms=0)
        b = SimWave(rng=random.Random(3), t0_ms=0)
        assert [a.sample(t) for t in range(0, 5000, 1000)] == [
            b.sample(t) for t in range(0, 5000, 1000)
        ]

    def test_stays_near_base(self):
        wave = SimWave(base=24.0, amp=3.5, noise=0.25, rng=random.Random(1), t0_ms=0)
        for t in range(0, 300_000, 10_000):
            assert 20.0 < wave.sample(t) < 28.0


class TestSimulatedBle:
    @pytest.mark.asyncio
    async def test_adapter_is_powered_on(self):
        ble = SimulatedBleCapability(seed=1)
        assert await ble.query_adapter_state() is AdapterState.POWERED_ON

        seen = []
        ble.on_adapter_state_change(seen.append, emit_current=True)
        await asyncio.sleep(0)
        assert seen == [AdapterState.POWERED_ON]

    @pytest.mark.asyncio
    async def test_scan_advertises_until_stopped(self):
        ble = SimulatedBleCapability(seed=1, advertise_interval=0.01)
        seen = []

        ble.start_scan(lambda error, adv: seen.append(adv))
        await asyncio.sleep(0.05)
        ble.stop_scan()
        count = len(seen)
        await asyncio.sleep(0.03)

        assert count >= 2
        assert len(seen) == count
        assert all(adv.name == SIMULATED_DEVICE_NAME for adv in seen)

    @pytest.mark.asyncio
    async def test_characteristic_reads_base64_temperature(self):
        device = SimulatedBleCapability(seed=1).device
        await device.connect()

        characteristic = await device.read_characteristic(
            SENSOR_SERVICE_UUID, SENSOR_CHARACTERISTIC_UUID
        )
        value = await characteristic.read()

        assert not math.isnan(decode_temperature(value.value))

    @pytest.mark.asyncio
    async def test_unknown_characteristic(self):
        device = SimulatedBleCapability(seed=1).device
        await device.connect()

        with pytest.raises(LookupError):
            await device.read_characteristic(SENSOR_SERVICE_UUID, "0000ffff-0000-1000-8000-00805f9b34fb")

    @pytest.mark.asyncio
    async def test_read_after_disconnect_raises(self):
        device = SimulatedBleCapability(seed=1).device
        await device.connect()
        characteristic = await device.read_characteristic(
            SENSOR_SERVICE_UUID, SENSOR_CHARACTERISTIC_UUID
        )
        await device.cancel_connection()

        with pytest.raises(ConnectionError):
            await characteristic.read()


class TestSimulatedLocation:
    @pytest.mark.asyncio
    async def test_same_seed_same_heading(self):
        a = SimulatedLocation(seed=5)
        b = SimulatedLocation(seed=5)
        fix_a = await a.get_current_fix()
        fix_b = await b.get_current_fix()
        assert fix_a.latitude == pytest.approx(fix_b.latitude)
        assert fix_a.longitude == pytest.approx(fix_b.longitude)

    @pytest.mark.asyncio
    async def test_watch_delivers_until_removed(self):
        location = SimulatedLocation(seed=1)
        fixes = []

        subscription = await location.watch(WatchOptions(interval_ms=10), fixes.append)
        await asyncio.sleep(0.06)
        subscription.remove()
        await asyncio.sleep(0)
        count = len(fixes)
        await asyncio.sleep(0.03)

        assert count >= 2
        assert len(fixes) == count
        assert all(3.0 <= f.accuracy <= 8.0 for f in fixes)


class TestSimulatedSession:
    @pytest.mark.asyncio
    async def test_pair_then_sample(self, sim_config):
        logger = SensorLogger(sim_config)
        assert logger.capabilities.simulated

        assert await logger.pair() is True
        assert logger.paired_sensor == SIMULATED_DEVICE_NAME

        assert await logger.start() is True
        await asyncio.sleep(0.45)
        await logger.stop()
        await logger.engine.flush_pending_updates()

        records = logger.store.open().select_all()
        assert len(records) >= 2
        assert logger.snapshot().sample_count == len(records)
        timestamps = [r.timestamp for r in records]
        assert all(b - a >= sim_config.dedup_window_ms for a, b in zip(timestamps, timestamps[1:]))
        assert all(r.humidity == 0 for r in records)
        assert all(1000 < r.temperature < 4000 for r in records)

        await asyncio.sleep(0.25)
        assert len(logger.store.open().select_all()) == len(records)
        await logger.close()

    @pytest.mark.asyncio
    async def test_link_loss_mid_session(self, sim_config):
        logger = SensorLogger(sim_config)
        await logger.pair()
        await logger.start()

        logger.capabilities.ble.device.simulate_link_loss()

        assert not logger.snapshot().sampling
        assert logger.notifier.history[-1].message == MSG_DEVICE_LOST
        await logger.close()
