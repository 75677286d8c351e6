"""
Dash application showing a live Movesense session.

The session runs on its own asyncio loop in a background thread; Dash
callbacks read the thread-safe :class:`ReadingHistory` and hop onto the
session loop for anything that mutates session state.
"""

import asyncio
import concurrent.futures
import logging
import threading
from typing import Callable, Optional, TypeVar

import dash  # type: ignore
from dash import Input, Output, dcc, html

from ..errors import TransportError
from ..models import ConnectionState, SensorKind, SensorStatus
from ..session import MovesenseSession
from .history import ReadingHistory
from .plots import create_ecg_plot, create_multi_plot_layout

logger = logging.getLogger(__name__)

T = TypeVar("T")

PANEL_STYLE = {
    "flex": "1",
    "verticalAlign": "top",
    "padding": "10px",
    "border": "1px solid #ddd",
    "borderRadius": "5px",
    "margin": "5px",
}
LINE_STYLE = {"margin": "5px 0", "fontSize": "14px"}

STATE_LABELS = {
    ConnectionState.CONNECTED: ("🟢 Connected", "green"),
    ConnectionState.CONNECTING: ("🟡 Connecting...", "orange"),
    ConnectionState.RECONNECTING: ("🟡 Reconnecting...", "orange"),
    ConnectionState.DISCONNECTED: ("🔴 Disconnected", "red"),
}
STATUS_ICONS = {
    SensorStatus.ACTIVE: "🟢",
    SensorStatus.INACTIVE: "⚪",
    SensorStatus.ERROR: "🔴",
}


class DashboardApp:
    """Live dashboard for one :class:`MovesenseSession`.

    Args:
        session: The session to drive. Its listeners get a history buffer.
        buffer_size: Readings kept per sensor kind.
        update_rate: Screen refreshes per second.
        ecg_sample_rate_hz: Sample rate used for the ECG time axis.
        max_connect_attempts: Initial connect attempts before giving up.
        connect_retry_delay: Seconds between initial connect attempts.
    """

    def __init__(
        self,
        session: MovesenseSession,
        buffer_size: int = 500,
        update_rate: int = 5,
        ecg_sample_rate_hz: float = 128.0,
        max_connect_attempts: int = 3,
        connect_retry_delay: float = 5.0,
    ):
        self.session = session
        self.history = ReadingHistory(max_size=buffer_size)
        self.session.add_listener(self.history)
        self.update_interval = 1000 // update_rate
        self._ecg_sample_rate_hz = ecg_sample_rate_hz
        self._max_connect_attempts = max_connect_attempts
        self._connect_retry_delay = connect_retry_delay

        self._session_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self.app = dash.Dash(__name__)
        self._setup_layout()
        self._setup_callbacks()

    def _setup_layout(self) -> None:
        self.app.layout = html.Div(
            [
                html.H1("Movesense - Live Session", style={"textAlign": "center"}),
                html.Div(
                    [
                        html.Div(
                            [
                                html.H3("Connection"),
                                html.Div(id="connection-status", children="Initializing..."),
                                html.Div(id="connection-details", children=""),
                            ],
                            style=PANEL_STYLE,
                        ),
                        html.Div(
                            [html.H3("Sensors"), html.Div(id="sensor-status", children="")],
                            style=PANEL_STYLE,
                        ),
                        html.Div(
                            [html.H3("Activity"), html.Div(id="activity-metrics", children="")],
                            style=PANEL_STYLE,
                        ),
                        html.Div(
                            [
                                html.H3("ECG Recording"),
                                html.Button("Start", id="start-ecg-btn", n_clicks=0),
                                html.Button(
                                    "Stop",
                                    id="stop-ecg-btn",
                                    n_clicks=0,
                                    style={"marginLeft": "10px"},
                                ),
                                html.Div(id="ecg-recording-status", children=""),
                                html.Div(id="ecg-state-store", style={"display": "none"}),
                            ],
                            style=PANEL_STYLE,
                        ),
                    ],
                    style={"margin": "20px", "display": "flex", "gap": "10px"},
                ),
                dcc.Graph(
                    id="multi-plot",
                    config={"displayModeBar": True},
                    style={"height": "650px"},
                ),
                dcc.Graph(id="ecg-plot", style={"height": "320px"}),
                dcc.Interval(
                    id="interval-component",
                    interval=self.update_interval,
                    n_intervals=0,
                ),
            ]
        )

    def _setup_callbacks(self) -> None:
        @self.app.callback(  # type: ignore
            [
                Output("multi-plot", "figure"),
                Output("ecg-plot", "figure"),
                Output("connection-status", "children"),
                Output("connection-details", "children"),
                Output("sensor-status", "children"),
                Output("activity-metrics", "children"),
                Output("ecg-recording-status", "children"),
            ],
            [Input("interval-component", "n_intervals")],
        )
        def update_dashboard(n_intervals: int):  # type: ignore
            multi_fig = create_multi_plot_layout(
                self.history.recent(SensorKind.ACCELEROMETER),  # type: ignore[arg-type]
                self.history.recent(SensorKind.HEART_RATE),  # type: ignore[arg-type]
                self.history.recent(SensorKind.GYROSCOPE),  # type: ignore[arg-type]
                self.history.recent(SensorKind.TEMPERATURE),  # type: ignore[arg-type]
            )
            ecg_fig = create_ecg_plot(
                self.history.ecg_samples(), sample_rate_hz=self._ecg_sample_rate_hz
            )

            state = self.session.connection_state
            label, color = STATE_LABELS[state]
            status = html.Span(
                label, style={"color": color, "fontWeight": "bold", "fontSize": "16px"}
            )

            stats = self.history.stats
            details = [
                html.P(f"🔵 Device: {self.session.device_name or '-'}", style=LINE_STYLE),
                html.P(
                    f"📈 Readings: {stats.total_readings} "
                    f"({stats.synthetic_readings} synthetic)",
                    style=LINE_STYLE,
                ),
                html.P(
                    f"📨 Commands: {self.session.command_queue.stats['sent']} sent, "
                    f"{self.session.command_queue.stats['pending']} pending",
                    style=LINE_STYLE,
                ),
            ]
            if self.session.last_error:
                details.append(
                    html.P(f"❌ {self.session.last_error}", style={**LINE_STYLE, "color": "red"})
                )

            sensors = [
                html.P(f"{STATUS_ICONS[s]} {kind.value}", style=LINE_STYLE)
                for kind, s in self.session.statuses().items()
            ]

            activity = self.session.activity_state()
            metrics = [
                html.P(f"👣 Steps: {activity.steps}", style=LINE_STYLE),
                html.P(f"📏 Distance: {activity.distance_meters:.1f} m", style=LINE_STYLE),
                html.P(f"🧍 Posture: {activity.posture.value}", style=LINE_STYLE),
                html.P(f"🏀 Dribbles: {activity.dribble_count}", style=LINE_STYLE),
                html.P(f"🔥 Calories: {activity.calories_burned:.1f} kcal", style=LINE_STYLE),
            ]
            if activity.fall_detected:
                metrics.append(
                    html.P("⚠️ Fall detected", style={**LINE_STYLE, "color": "red"})
                )

            recording = "⏺️ Recording..." if self.session.is_recording else "Idle"

            return (
                multi_fig,
                ecg_fig,
                status,
                html.Div(details),
                html.Div(sensors),
                html.Div(metrics),
                recording,
            )

        @self.app.callback(  # type: ignore
            Output("ecg-state-store", "children"),
            [Input("start-ecg-btn", "n_clicks")],
            prevent_initial_call=True,
        )
        def start_ecg_recording(n_clicks: int):  # type: ignore
            if not n_clicks:
                return "idle"
            try:
                self._call_in_loop(self.session.start_ecg_recording)
            except (RuntimeError, concurrent.futures.TimeoutError) as e:
                logger.error(f"❌ Failed to start ECG recording: {e}")
                return "error"
            logger.info("🎬 ECG recording started")
            return "recording"

        @self.app.callback(  # type: ignore
            Output("ecg-state-store", "children", allow_duplicate=True),
            [Input("stop-ecg-btn", "n_clicks")],
            prevent_initial_call=True,
        )
        def stop_ecg_recording(n_clicks: int):  # type: ignore
            if not n_clicks:
                return "idle"
            try:
                capture = self._call_in_loop(self.session.stop_ecg_recording)
            except (RuntimeError, concurrent.futures.TimeoutError) as e:
                logger.error(f"❌ Failed to stop ECG recording: {e}")
                return "error"
            if capture is None:
                return "idle"
            logger.info(
                f"🏁 ECG recording stopped: {len(capture.samples)} samples, "
                f"{capture.duration_seconds:.1f}s"
            )
            return "stopped"

    def _call_in_loop(self, func: Callable[[], T], timeout: float = 2.0) -> T:
        """Run ``func`` on the session loop and wait for its result."""
        loop = self._loop
        if loop is None or loop.is_closed() or not loop.is_running():
            raise RuntimeError("Session loop is not running")

        async def call() -> T:
            return func()

        return asyncio.run_coroutine_threadsafe(call(), loop).result(timeout)

    def _session_worker(self) -> None:
        """Connect the session and keep it alive until stopped."""

        async def run_session() -> None:
            attempt = 0
            while not self._stop_event.is_set() and attempt < self._max_connect_attempts:
                attempt += 1
                logger.info(
                    f"🔄 Connecting (attempt {attempt}/{self._max_connect_attempts})..."
                )
                try:
                    await self.session.connect()
                except TransportError as e:
                    logger.error(f"❌ Connection failed: {e}")
                    if attempt < self._max_connect_attempts:
                        logger.info(f"⏳ Retrying in {self._connect_retry_delay} seconds...")
                        await asyncio.sleep(self._connect_retry_delay)
                    else:
                        logger.error("💥 Could not connect. Giving up.")
                        logger.info("💡 Use --mock to run without a device")
                    continue

                # Reconnection is the session's job; we only stop when asked or
                # when it gave up.
                while not self._stop_event.is_set():
                    if self.session.connection_state is ConnectionState.DISCONNECTED:
                        logger.warning("⚠️ Session disconnected")
                        break
                    await asyncio.sleep(0.2)
                break

            await self.session.disconnect()
            logger.info("🏁 Session worker finished")

        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(run_session())
        except Exception as e:
            logger.error(f"💥 Session worker fatal error: {e}")
        finally:
            self._loop.close()

    def start_session(self) -> None:
        """Start the background session thread (no-op if already running)."""
        if self._session_thread is None or not self._session_thread.is_alive():
            self._stop_event.clear()
            self._session_thread = threading.Thread(
                target=self._session_worker, daemon=True, name="MovesenseSession"
            )
            self._session_thread.start()

    def stop_session(self) -> None:
        logger.info("🛑 Stopping session...")
        self._stop_event.set()
        if self._session_thread and self._session_thread.is_alive():
            self._session_thread.join(timeout=5.0)
            if self._session_thread.is_alive():
                logger.warning("⚠️ Session thread did not stop gracefully")
            else:
                logger.info("✅ Session thread stopped")

    def run(self, host: str = "127.0.0.1", port: int = 8050, debug: bool = False) -> None:
        """Start the session and serve the dashboard until interrupted."""
        self.start_session()
        try:
            self.app.run(host=host, port=port, debug=debug)
        finally:
            self.stop_session()


def create_app(session: MovesenseSession, **kwargs: float) -> DashboardApp:
    """Factory function to create a dashboard app."""
    return DashboardApp(session=session, **kwargs)  # type: ignore[arg-type]
