import math

import pytest

from quest_sensor_logger.capabilities import Coordinate
from quest_sensor_logger.errors import StoreUnavailable, StoreWriteFailure
from quest_sensor_logger.store import SampleRecord, StoreProvider, to_fixed_point


@pytest.fixture
def provider(tmp_path):
    provider = StoreProvider(tmp_path / "data" / "appData.db")
    yield provider
    provider.invalidate()


COORD = Coordinate(latitude=41.8827, longitude=-87.6233, altitude=181.25, accuracy=4.6, speed=1.5)


def record(timestamp, temperature=21.5, coordinate=COORD):
    return SampleRecord.from_reading(timestamp, temperature, coordinate)


class TestFixedPoint:
    @pytest.mark.parametrize(
        "value, scale, expected",
        [
            (21.5, 100, 2150),
            (21.456, 100, 2146),
            (-4.5, 100, -450),
            (41.8827, 10_000_000, 418827000),
            (-87.6233, 10_000_000, -876233000),
        ],
    )
    def test_rounds_half_up(self, value, scale, expected):
        assert to_fixed_point(value, scale) == expected

    @pytest.mark.parametrize("value", [None, math.nan, math.inf])
    def test_missing_values_are_none(self, value):
        assert to_fixed_point(value, 100) is None


class TestSampleRecord:
    def test_from_reading_scales_every_field(self):
        rec = record(1_700_000_000_000)

        assert rec.timestamp == 1_700_000_000_000
        assert rec.temperature == 2150
        assert rec.humidity == 0
        assert (rec.latitude, rec.longitude) == (418827000, -876233000)
        assert (rec.altitude, rec.accuracy, rec.speed) == (18125, 460, 150)

    def test_optional_location_fields_may_be_missing(self):
        rec = record(1, coordinate=Coordinate(latitude=1.0, longitude=2.0))

        assert rec.altitude is None
        assert rec.accuracy is None
        assert rec.speed is None


class TestStoreProvider:
    def test_open_is_idempotent(self, provider):
        first = provider.open()
        assert provider.open() is first
        assert provider.handle is first

    def test_invalidate_forces_fresh_handle(self, provider):
        first = provider.open()
        provider.invalidate()

        assert provider.handle is None
        second = provider.open()
        assert second is not first

    def test_data_survives_reopen(self, provider):
        provider.open().insert(record(1000))
        provider.invalidate()

        assert [r.timestamp for r in provider.open().select_all()] == [1000]

    def test_unopenable_path_raises(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        provider = StoreProvider(blocker / "appData.db")

        with pytest.raises(StoreUnavailable):
            provider.open()
        assert provider.handle is None


class TestSampleStore:
    def test_select_all_orders_by_timestamp(self, provider):
        store = provider.open()
        for ts in (3000, 1000, 2000):
            store.insert(record(ts))

        assert [r.timestamp for r in store.select_all()] == [1000, 2000, 3000]
        assert store.count() == 3

    def test_duplicate_timestamp_is_write_failure(self, provider):
        store = provider.open()
        store.insert(record(1000))

        with pytest.raises(StoreWriteFailure):
            store.insert(record(1000, temperature=22.0))
        assert store.count() == 1

    def test_missing_temperature_is_write_failure(self, provider):
        store = provider.open()

        with pytest.raises(StoreWriteFailure):
            store.insert(record(1000, temperature=math.nan))
        assert store.count() == 0

    def test_select_recent(self, provider):
        store = provider.open()
        for ts in range(1000, 6000, 1000):
            store.insert(record(ts))

        assert [r.timestamp for r in store.select_recent(2)] == [4000, 5000]

    def test_delete_all(self, provider):
        store = provider.open()
        store.insert(record(1000))
        store.insert(record(2000))

        assert store.delete_all() == 2
        assert store.select_all() == []

    def test_prepare_upload_columns(self, provider):
        store = provider.open()
        for ts in (1_700_000_002_000, 1_700_000_001_000):
            store.insert(record(ts))

        store.prepare_upload_columns("JOB-7")
        records = store.select_all()

        assert [r.rownumber for r in records] == [1, 2]
        assert {r.jobcode for r in records} == {"JOB-7"}

    def test_prepare_upload_columns_twice_updates_jobcode(self, provider):
        store = provider.open()
        store.insert(record(1000))
        store.prepare_upload_columns("A")
        store.prepare_upload_columns("B")

        assert store.select_all()[0].jobcode == "B"

    def test_insert_after_upload_columns_exist(self, provider):
        store = provider.open()
        store.insert(record(1000))
        store.prepare_upload_columns("A")
        store.insert(record(2000))

        later = store.select_all()[1]
        assert later.jobcode is None
        assert later.rownumber is None
