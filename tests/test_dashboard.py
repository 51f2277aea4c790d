import pytest

from fakes import FakeBle, FakeDevice, FakeLocation

from quest_sensor_logger.capabilities import Capabilities
from quest_sensor_logger.controller import SensorLogger
from quest_sensor_logger.dashboard import create_app
from quest_sensor_logger.dashboard.plots import (
    create_session_layout,
    create_temperature_plot,
    create_track_plot,
)
from quest_sensor_logger.errors import PairingNotFound
from quest_sensor_logger.notifications import Severity
from quest_sensor_logger.settings import PAIRED_SENSOR_KEY
from quest_sensor_logger.store import SampleRecord


def records(n=3):
    return [
        SampleRecord(
            timestamp=1_700_000_000_000 + i * 1000,
            temperature=2150 + i * 10,
            humidity=0,
            latitude=418827000 + i * 100,
            longitude=-876233000,
            altitude=None,
            accuracy=None,
            speed=None,
        )
        for i in range(n)
    ]


@pytest.fixture
def dashboard(config, clock):
    caps = Capabilities(ble=FakeBle([FakeDevice(name="quest_42")]), location=FakeLocation())
    session = SensorLogger(config, caps, clock=clock)
    session.settings.set(PAIRED_SENSOR_KEY, "quest_42")
    app = create_app(session=session)
    yield app
    app.stop_event_loop()


class TestPlots:
    def test_temperature_plot_uses_relative_seconds(self):
        fig = create_temperature_plot(records())
        trace = fig.data[0]
        assert list(trace.x) == [0.0, 1.0, 2.0]
        assert list(trace.y) == [21.5, 21.6, 21.7]

    def test_track_plot_uses_degrees(self):
        fig = create_track_plot(records(1))
        assert fig.data[0].y[0] == pytest.approx(41.8827)
        assert fig.data[0].x[0] == pytest.approx(-87.6233)

    def test_empty_session_layout_has_placeholder(self):
        fig = create_session_layout([])
        assert len(fig.data) == 0
        assert any("No samples" in a.text for a in fig.layout.annotations)

    def test_session_layout_has_both_traces(self):
        assert len(create_session_layout(records()).data) == 2


class TestDashboardApp:
    def test_layout_contains_controls(self, dashboard):
        layout = str(dashboard.app.layout)
        for component_id in ("start-btn", "stop-btn", "pair-btn", "upload-btn", "sample-count"):
            assert component_id in layout

    def test_idle_status(self, dashboard):
        status, _ = dashboard._render_status(dashboard.session.snapshot())
        assert "Idle" in status.children

    def test_submit_requires_running_loop(self, dashboard):
        coro = dashboard.session.stop()
        with pytest.raises(RuntimeError):
            dashboard.submit("stop", coro)
        coro.close()

    def test_submit_runs_on_session_loop(self, dashboard):
        dashboard.start_event_loop()

        assert dashboard.submit("start", dashboard.session.start()).result(timeout=5) is True
        assert dashboard.session.snapshot().sampling

        dashboard.submit("stop", dashboard.session.stop()).result(timeout=5)
        assert not dashboard.session.snapshot().sampling

    def test_failed_action_becomes_notification(self, dashboard):
        dashboard.start_event_loop()

        async def failing():
            raise PairingNotFound("No sensor found within 10s")

        assert dashboard.submit("pair", failing()).result(timeout=5) is None
        rendered = dashboard._render_notifications()
        assert rendered[0].children == "Pair failed: No sensor found within 10s"
        assert dashboard.session.notifier.history[-1].severity is Severity.ERROR
