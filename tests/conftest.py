import pytest

from fakes import FakeBle, FakeClock, FakeDevice, FakeLocation

from quest_sensor_logger.capabilities import Capabilities
from quest_sensor_logger.config import AppConfig
from quest_sensor_logger.controller import SensorLogger
from quest_sensor_logger.settings import PAIRED_SENSOR_KEY


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        data_dir=tmp_path,
        scan_timeout_ms=500,
        adapter_timeout_ms=500,
        settle_delay_ms=0,
        ack_duration_ms=50,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def device():
    return FakeDevice(name="quest_42")


@pytest.fixture
def ble(device):
    return FakeBle([device])


@pytest.fixture
def location():
    return FakeLocation()


@pytest.fixture
def session(config, ble, location, clock):
    logger = SensorLogger(config, Capabilities(ble=ble, location=location), clock=clock)
    logger.settings.set(PAIRED_SENSOR_KEY, "quest_42")
    return logger
