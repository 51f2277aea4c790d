import pytest

from fakes import FakeBle, FakeDevice, FakeLocation

from quest_sensor_logger.capabilities import Capabilities
from quest_sensor_logger.controller import SensorLogger
from quest_sensor_logger.errors import UploadError
from quest_sensor_logger.notifications import Severity
from quest_sensor_logger.settings import PAIRED_SENSOR_KEY
from quest_sensor_logger.store import SampleRecord


class RecordingUploader:
    def __init__(self, error=None):
        self.error = error
        self.uploads = []

    def upload(self, filename, content):
        self.uploads.append((filename, content))
        if self.error is not None:
            raise self.error
        return f"https://cdn.example/{filename}"


def seed(logger, *timestamps):
    store = logger.store.open()
    for ts in timestamps:
        store.insert(
            SampleRecord(
                timestamp=ts,
                temperature=2150,
                humidity=0,
                latitude=418827000,
                longitude=-876233000,
                altitude=None,
                accuracy=None,
                speed=None,
            )
        )


@pytest.fixture
def uploader():
    return RecordingUploader()


@pytest.fixture
def app(config, clock, uploader):
    caps = Capabilities(ble=FakeBle([FakeDevice(name="quest_42")]), location=FakeLocation())
    logger = SensorLogger(config, caps, uploader=uploader, clock=clock)
    logger.settings.set(PAIRED_SENSOR_KEY, "quest_42")
    logger.device_name = "field_phone_3"
    logger.jobcode = "J-100"
    return logger


def messages(logger, severity=None):
    return [
        n.message
        for n in logger.notifier.history
        if severity is None or n.severity is severity
    ]


class TestUpload:
    @pytest.mark.asyncio
    async def test_uploads_device_named_csv(self, app, uploader):
        seed(app, 1000, 2000)

        url = await app.upload()

        assert url == "https://cdn.example/field_phone_3.csv"
        filename, content = uploader.uploads[0]
        assert filename == "field_phone_3.csv"
        rows = content.splitlines()[1:]
        assert [r.split(",")[:2] for r in rows] == [["1", "J-100"], ["2", "J-100"]]
        assert "File uploaded to cloud storage" in messages(app)

    @pytest.mark.asyncio
    async def test_disabled_in_simulation(self, config, clock, uploader):
        caps = Capabilities(ble=FakeBle(), location=FakeLocation(), simulated=True)
        logger = SensorLogger(config, caps, uploader=uploader, clock=clock)
        logger.device_name = "phone"
        seed(logger, 1000)

        assert await logger.upload() is None
        assert uploader.uploads == []
        assert messages(logger) == ["Simulation mode: upload disabled (no data sent)."]

    @pytest.mark.asyncio
    async def test_refused_while_sampling(self, app, uploader):
        await app.start()

        assert await app.upload() is None
        assert uploader.uploads == []
        assert messages(app, Severity.ERROR) == ["Stop sampling before you upload"]
        await app.stop()

    @pytest.mark.asyncio
    async def test_empty_store(self, app, uploader):
        assert await app.upload() is None
        assert uploader.uploads == []
        assert "There is no data in the database to upload." in messages(app)

    @pytest.mark.asyncio
    async def test_missing_device_name(self, app, uploader):
        app.settings.delete("deviceName")
        seed(app, 1000)

        assert await app.upload() is None
        assert messages(app, Severity.ERROR) == ["Device name missing. Cannot upload."]

    @pytest.mark.asyncio
    async def test_upload_failure_is_reported(self, app, uploader):
        uploader.error = UploadError("status 500")
        seed(app, 1000)

        assert await app.upload() is None
        assert messages(app, Severity.ERROR) == ["Failed to upload data: status 500"]
        assert app.notifier.history[-1].duration_ms == 8000


class TestClearAll:
    @pytest.mark.asyncio
    async def test_clears_rows_and_counter(self, app):
        seed(app, 1000, 2000)

        assert await app.clear_all() is True

        assert app.store.open().select_all() == []
        assert app.snapshot().sample_count == 0
        assert messages(app) == ["Cleared 2 samples"]

    @pytest.mark.asyncio
    async def test_refused_while_sampling(self, app):
        seed(app, 1000)
        await app.start()

        assert await app.clear_all() is False
        assert app.store.open().count() == 1
        await app.stop()


class TestExport:
    @pytest.mark.asyncio
    async def test_writes_csv(self, app, tmp_path):
        seed(app, 1000, 2000, 3000)
        path = tmp_path / "export" / "samples.csv"

        assert await app.export_csv(path) == 3
        assert len(path.read_text(encoding="utf-8").splitlines()) == 4

    @pytest.mark.asyncio
    async def test_refused_while_sampling(self, app, tmp_path):
        await app.start()

        assert await app.export_csv(tmp_path / "x.csv") is None
        assert not (tmp_path / "x.csv").exists()
        await app.stop()


class TestSettings:
    def test_jobcode_defaults_to_empty(self, config, clock):
        caps = Capabilities(ble=FakeBle(), location=FakeLocation())
        logger = SensorLogger(config, caps, uploader=RecordingUploader(), clock=clock)
        assert logger.jobcode == ""
        assert logger.paired_sensor is None

    def test_values_persist_across_instances(self, app, config, clock):
        caps = Capabilities(ble=FakeBle(), location=FakeLocation())
        again = SensorLogger(config, caps, uploader=RecordingUploader(), clock=clock)

        assert again.jobcode == "J-100"
        assert again.device_name == "field_phone_3"
        assert again.paired_sensor == "quest_42"


class TestClose:
    @pytest.mark.asyncio
    async def test_close_stops_and_releases_store(self, app):
        await app.start()

        await app.close()

        assert not app.snapshot().sampling
        assert app.store.handle is None
