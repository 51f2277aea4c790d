"""
Dash application for controlling the sensor logger.
"""

import asyncio
import collections
import logging
import threading
from concurrent.futures import Future
from typing import Any, Awaitable, Deque, List, Optional

import dash  # type: ignore
from dash import dcc, html, Input, Output, State

from ..controller import SensorLogger
from ..errors import SensorLoggerError, StoreUnavailable
from ..notifications import Notification, Severity
from ..session_state import Indicator, SessionSnapshot
from .plots import create_session_layout

logger = logging.getLogger(__name__)

PANEL_STYLE = {
    "display": "inline-block",
    "verticalAlign": "top",
    "padding": "10px",
    "border": "1px solid #ddd",
    "borderRadius": "5px",
    "margin": "5px",
}

INDICATOR_COLORS = {
    Indicator.NONE: "#e0e0e0",
    Indicator.GREEN: "#28a745",
    Indicator.RED: "#dc3545",
}


def _button_style(color: str, enabled: bool = True) -> dict:
    return {
        "marginRight": "10px",
        "padding": "8px 16px",
        "backgroundColor": color if enabled else "#6c757d",
        "color": "white",
        "border": "none",
        "borderRadius": "4px",
        "cursor": "pointer" if enabled else "not-allowed",
    }


class DashboardApp:
    """Web control panel for one sensor logger session.

    The session's asyncio event loop runs in a background thread, so BLE and
    location callbacks keep flowing while Dash serves requests. Button
    callbacks hand coroutines to that loop with
    ``asyncio.run_coroutine_threadsafe`` and return immediately; the interval
    callback renders the latest ``SessionSnapshot``.

    Attributes:
        session: The sensor logger driven by this dashboard.
        update_interval: UI refresh interval in milliseconds.
        max_points: Most recent samples shown in the plots.
        app: Dash application instance.
    """

    def __init__(
        self, session: SensorLogger, update_interval: int = 1000, max_points: int = 600
    ):
        self.session = session
        self.update_interval = update_interval
        self.max_points = max_points

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[threading.Thread] = None
        self._loop_ready = threading.Event()

        self._messages: Deque[Notification] = collections.deque(maxlen=6)
        self._messages_lock = threading.Lock()
        self._busy: Optional[str] = None
        session.notifier.add_listener(self._on_notification)

        self.app = dash.Dash(__name__)
        self._setup_layout()
        self._setup_callbacks()

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    def _setup_layout(self) -> None:
        mode = "🧪 Simulation" if self.session.capabilities.simulated else "📡 Hardware"
        self.app.layout = html.Div(
            [
                html.H1("Quest Sensor Logger", style={"textAlign": "center"}),
                html.Div(mode, style={"textAlign": "center", "color": "#666"}),
                html.Div(
                    [
                        html.Div(
                            [
                                html.H3("Connection Status"),
                                html.Div(id="connection-status", children="Initializing..."),
                                html.Div(id="connection-details", children=""),
                            ],
                            style={**PANEL_STYLE, "width": "30%"},
                        ),
                        html.Div(
                            [
                                html.H3("Session"),
                                html.Div(
                                    [
                                        html.Span(
                                            id="sample-indicator",
                                            style={
                                                "display": "inline-block",
                                                "width": "16px",
                                                "height": "16px",
                                                "borderRadius": "8px",
                                                "marginRight": "8px",
                                                "backgroundColor": INDICATOR_COLORS[
                                                    Indicator.NONE
                                                ],
                                            },
                                        ),
                                        html.Span(id="sample-count", children="0 samples"),
                                    ]
                                ),
                                html.Div(id="session-details", children=""),
                            ],
                            style={**PANEL_STYLE, "width": "30%"},
                        ),
                        html.Div(
                            [
                                html.H3("Settings"),
                                html.Div(
                                    [
                                        html.Label("Job code"),
                                        dcc.Input(
                                            id="jobcode-input",
                                            type="text",
                                            value=self.session.jobcode,
                                            style={"width": "100%"},
                                        ),
                                    ]
                                ),
                                html.Div(
                                    [
                                        html.Label("Device name (upload filename)"),
                                        dcc.Input(
                                            id="device-name-input",
                                            type="text",
                                            value=self.session.device_name or "",
                                            style={"width": "100%"},
                                        ),
                                    ]
                                ),
                                html.Button(
                                    "💾 Save",
                                    id="save-settings-btn",
                                    style={**_button_style("#007bff"), "marginTop": "8px"},
                                ),
                            ],
                            style={**PANEL_STYLE, "width": "30%"},
                        ),
                    ]
                ),
                html.Div(
                    [
                        html.H3("Controls"),
                        html.Button("🔗 Pair", id="pair-btn", style=_button_style("#6f42c1")),
                        html.Button("▶️ Start", id="start-btn", style=_button_style("#28a745")),
                        html.Button("⏹️ Stop", id="stop-btn", style=_button_style("#dc3545")),
                        html.Button("🗑️ Clear", id="clear-btn", style=_button_style("#fd7e14")),
                        html.Button("📄 Export", id="export-btn", style=_button_style("#17a2b8")),
                        html.Button("☁️ Upload", id="upload-btn", style=_button_style("#007bff")),
                        html.Div(id="notifications", style={"marginTop": "10px"}),
                    ],
                    style={**PANEL_STYLE, "width": "95%"},
                ),
                dcc.Graph(id="session-plot"),
                dcc.Interval(
                    id="interval-component", interval=self.update_interval, n_intervals=0
                ),
                html.Div(id="action-store", style={"display": "none"}),
            ]
        )

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _setup_callbacks(self) -> None:
        @self.app.callback(  # type: ignore
            [
                Output("connection-status", "children"),
                Output("connection-details", "children"),
                Output("sample-count", "children"),
                Output("sample-indicator", "style"),
                Output("session-details", "children"),
                Output("notifications", "children"),
                Output("session-plot", "figure"),
                Output("start-btn", "disabled"),
                Output("stop-btn", "disabled"),
                Output("clear-btn", "disabled"),
                Output("export-btn", "disabled"),
                Output("upload-btn", "disabled"),
            ],
            [Input("interval-component", "n_intervals")],
            [State("sample-indicator", "style")],
        )
        def update_dashboard(n_intervals: int, indicator_style: dict):  # type: ignore
            snap = self.session.snapshot()
            status, details = self._render_status(snap)
            indicator_style = {
                **(indicator_style or {}),
                "backgroundColor": INDICATOR_COLORS[snap.indicator],
            }
            busy = snap.scanning or self._busy is not None
            return (
                status,
                details,
                f"{snap.sample_count} samples",
                indicator_style,
                self._render_session(snap),
                self._render_notifications(),
                create_session_layout(self._recent_records()),
                busy,
                not (snap.connected or snap.sampling or busy),
                snap.sampling,
                snap.sampling,
                snap.sampling or self.session.capabilities.simulated,
            )

        @self.app.callback(  # type: ignore
            Output("action-store", "children"),
            [Input("pair-btn", "n_clicks")],
            prevent_initial_call=True,
        )
        def pair(n_clicks: int):  # type: ignore
            if n_clicks:
                self.submit("pair", self.session.pair())
                return "pair"
            return "idle"

        @self.app.callback(  # type: ignore
            Output("action-store", "children", allow_duplicate=True),
            [Input("start-btn", "n_clicks")],
            prevent_initial_call=True,
        )
        def start(n_clicks: int):  # type: ignore
            if n_clicks:
                self.submit("start", self.session.start())
                return "start"
            return "idle"

        @self.app.callback(  # type: ignore
            Output("action-store", "children", allow_duplicate=True),
            [Input("stop-btn", "n_clicks")],
            prevent_initial_call=True,
        )
        def stop(n_clicks: int):  # type: ignore
            if n_clicks:
                self.submit("stop", self.session.stop())
                return "stop"
            return "idle"

        @self.app.callback(  # type: ignore
            Output("action-store", "children", allow_duplicate=True),
            [Input("clear-btn", "n_clicks")],
            prevent_initial_call=True,
        )
        def clear(n_clicks: int):  # type: ignore
            if n_clicks:
                self.submit("clear", self.session.clear_all())
                return "clear"
            return "idle"

        @self.app.callback(  # type: ignore
            Output("action-store", "children", allow_duplicate=True),
            [Input("export-btn", "n_clicks")],
            prevent_initial_call=True,
        )
        def export(n_clicks: int):  # type: ignore
            if n_clicks:
                name = self.session.jobcode or "export"
                path = self.session.config.data_dir / "exports" / f"{name}.csv"
                self.submit("export", self.session.export_csv(path))
                return "export"
            return "idle"

        @self.app.callback(  # type: ignore
            Output("action-store", "children", allow_duplicate=True),
            [Input("upload-btn", "n_clicks")],
            prevent_initial_call=True,
        )
        def upload(n_clicks: int):  # type: ignore
            if n_clicks:
                self.submit("upload", self.session.upload())
                return "upload"
            return "idle"

        @self.app.callback(  # type: ignore
            Output("action-store", "children", allow_duplicate=True),
            [Input("save-settings-btn", "n_clicks")],
            [State("jobcode-input", "value"), State("device-name-input", "value")],
            prevent_initial_call=True,
        )
        def save_settings(n_clicks: int, jobcode: str, device_name: str):  # type: ignore
            if not n_clicks:
                return "idle"
            self.session.jobcode = (jobcode or "").strip()
            if device_name and device_name.strip():
                self.session.device_name = device_name.strip()
            logger.info("💾 Settings saved")
            return "settings"

    # ------------------------------------------------------------------
    # Rendering helpers
    # ------------------------------------------------------------------

    def _render_status(self, snap: SessionSnapshot) -> Any:
        if snap.sampling:
            text, color = "🟢 Sampling", "green"
        elif snap.scanning:
            text, color = "🔍 Scanning...", "orange"
        elif snap.connected:
            text, color = "🔵 Connected", "blue"
        elif self._busy:
            text, color = f"⏳ {self._busy.capitalize()}...", "orange"
        else:
            text, color = "⚪ Idle", "gray"

        status = html.Span(
            text, style={"color": color, "fontWeight": "bold", "fontSize": "16px"}
        )
        paired = self.session.paired_sensor or "none (press Pair)"
        details = html.Div(
            [
                html.P(f"🔗 Paired sensor: {paired}", style={"margin": "5px 0"}),
                html.P(
                    f"📶 Device: {snap.device_name or '-'}",
                    style={"margin": "5px 0"},
                ),
            ]
        )
        return status, details

    def _render_session(self, snap: SessionSnapshot) -> Any:
        if snap.last_temperature is None or snap.last_temperature != snap.last_temperature:
            temperature = "--"
        else:
            temperature = f"{snap.last_temperature:.2f} °C"
        accuracy = "--" if snap.last_accuracy is None else f"{snap.last_accuracy} m"
        return html.Div(
            [
                html.P(f"🌡️ Temperature: {temperature}", style={"margin": "5px 0"}),
                html.P(f"📍 Accuracy: {accuracy}", style={"margin": "5px 0"}),
            ]
        )

    def _render_notifications(self) -> Any:
        with self._messages_lock:
            messages = list(self._messages)
        colors = {Severity.INFO: "#155724", Severity.ERROR: "#721c24", Severity.HIGH: "#721c24"}
        return [
            html.P(
                m.message,
                style={
                    "margin": "2px 0",
                    "color": colors[m.severity],
                    "fontWeight": "bold" if m.severity is Severity.HIGH else "normal",
                },
            )
            for m in reversed(messages)
        ]

    def _recent_records(self) -> List[Any]:
        store = self.session.store.handle
        if store is None:
            return []
        try:
            return store.select_recent(self.max_points)
        except StoreUnavailable as e:
            logger.debug(f"🔍 Plot refresh skipped: {e}")
            return []

    def _on_notification(self, notification: Notification) -> None:
        with self._messages_lock:
            self._messages.append(notification)

    # ------------------------------------------------------------------
    # Event loop thread
    # ------------------------------------------------------------------

    def submit(self, label: str, coro: Awaitable[Any]) -> "Future[Any]":
        """Run ``coro`` on the session loop; errors become notifications."""
        if self._loop is None:
            raise RuntimeError("Event loop is not running")

        async def run() -> Any:
            self._busy = label
            try:
                return await coro
            except SensorLoggerError as e:
                logger.error(f"❌ {label.capitalize()} failed: {e}")
                self.session.notifier.error(f"{label.capitalize()} failed: {e}")
                return None
            finally:
                self._busy = None

        logger.info(f"▶️ {label.capitalize()} requested")
        return asyncio.run_coroutine_threadsafe(run(), self._loop)

    def _event_loop_worker(self) -> None:
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._loop_ready.set()
        try:
            self._loop.run_forever()
        except Exception as e:
            logger.error(f"💥 Event loop fatal error: {e}")
        finally:
            self._loop.close()
            logger.info("🏁 Event loop finished")

    def start_event_loop(self) -> None:
        if self._loop_thread is None or not self._loop_thread.is_alive():
            self._loop_ready.clear()
            self._loop_thread = threading.Thread(
                target=self._event_loop_worker, daemon=True
            )
            self._loop_thread.start()
            self._loop_ready.wait(timeout=5.0)

    def stop_event_loop(self) -> None:
        logger.info("🛑 Stopping sensor session...")
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            asyncio.run_coroutine_threadsafe(self.session.close(), loop).result(timeout=10.0)
        except Exception as e:
            logger.warning(f"⚠️ Error closing session: {e}")
        loop.call_soon_threadsafe(loop.stop)
        if self._loop_thread is not None:
            self._loop_thread.join(timeout=5.0)
            if self._loop_thread.is_alive():
                logger.warning("⚠️ Event loop thread did not stop gracefully")
            else:
                logger.info("✅ Event loop thread stopped")

    def run(self, host: str = "127.0.0.1", port: int = 8050, debug: bool = False) -> None:
        """Start the session loop and serve the dashboard until interrupted."""
        self.start_event_loop()
        try:
            self.app.run(host=host, port=port, debug=debug)
        finally:
            self.stop_event_loop()


def create_app(session: SensorLogger, **kwargs: int) -> DashboardApp:
    """Factory function to create a dashboard app.

    Args:
        session: Sensor logger to control
        **kwargs: Additional arguments for DashboardApp

    Returns:
        DashboardApp instance
    """
    return DashboardApp(session=session, **kwargs)
