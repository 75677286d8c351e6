"""Public entry point: one Movesense device session.

:class:`MovesenseSession` composes the command queue, connection manager,
frame decoder and activity engine. Readings flow from the connection manager
to the session, which feeds the activity engine, fills an armed ECG
recording and then calls the external listeners (recorder, dashboard).
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

from .activity import ActivityEngine, CallLater
from .command_queue import CommandQueue
from .config import ActivityConfig, SessionConfig
from .connection import ConnectionManager, ReadingListener
from .decoder import FrameDecoder
from .ecg_store import EcgStore
from .link import LinkFactory
from .models import (
    AccelerometerReading,
    ActivityState,
    Command,
    ConnectionState,
    EcgCapture,
    EcgReading,
    EcgRecording,
    HeartRateReading,
    Origin,
    SensorKind,
    SensorReading,
    SensorStatus,
)
from .protocol import stop_sequence, subscription_sequence

logger = logging.getLogger(__name__)


def synthetic_heart_rate(samples: tuple[int, ...]) -> int:
    """Rough beats-per-minute stand-in derived from ECG amplitude."""
    mean_abs = sum(abs(s) for s in samples) / len(samples)
    return 60 + round(mean_abs) % 40


class MovesenseSession:
    """Session with one device.

    Args:
        link_factory: Opens the transport (``BleakLinkFactory`` or
            ``MockLinkFactory``).
        config: Timing and policy settings.
        activity_config: Thresholds of the activity engine.
        clock: Session clock in milliseconds. Defaults to milliseconds since
            the session was created.
        call_later: Scheduler for the activity engine's fall-flag clear.
        ecg_store: When given, non-empty ECG captures are saved on stop.
    """

    def __init__(
        self,
        link_factory: LinkFactory,
        config: SessionConfig = SessionConfig(),
        *,
        activity_config: ActivityConfig = ActivityConfig(),
        clock: Optional[Callable[[], float]] = None,
        call_later: Optional[CallLater] = None,
        ecg_store: Optional[EcgStore] = None,
    ) -> None:
        self._config = config
        self._started = time.monotonic()
        self._clock = clock or self._elapsed_ms
        self._ecg_store = ecg_store

        self._queue = CommandQueue(config.command_spacing, config.command_queue_limit)
        self._activity = ActivityEngine(
            activity_config, clock=self._clock, call_later=call_later
        )
        self._connection = ConnectionManager(
            link_factory,
            self._queue,
            config=config,
            decoder=FrameDecoder(clock=self._clock),
            on_connected=self._handle_connected,
            on_reset=self._handle_reset,
        )
        self._connection.add_listener(self._handle_reading)

        self._listeners: list[ReadingListener] = []
        self._recording: Optional[EcgRecording] = None
        self._monitor_task: Optional[asyncio.Task[None]] = None
        self._disconnected: Optional[asyncio.Event] = None

    def _elapsed_ms(self) -> float:
        return (time.monotonic() - self._started) * 1000.0

    # -- read-only views ----------------------------------------------------

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection.state

    @property
    def last_error(self) -> Optional[str]:
        return self._connection.last_error

    @property
    def device_name(self) -> str:
        return self._connection.device_name

    @property
    def command_queue(self) -> CommandQueue:
        return self._queue

    @property
    def is_recording(self) -> bool:
        return self._recording is not None and self._recording.is_active

    def status(self, kind: SensorKind) -> SensorStatus:
        return self._connection.cache.status(kind)

    def reading(self, kind: SensorKind) -> Optional[SensorReading]:
        return self._connection.cache.reading(kind)

    def statuses(self) -> dict[SensorKind, SensorStatus]:
        return self._connection.cache.statuses()

    def active_sensor_count(self) -> int:
        return self._connection.cache.active_count()

    def activity_state(self) -> ActivityState:
        return self._activity.snapshot()

    def add_listener(self, listener: ReadingListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ReadingListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # -- lifecycle ----------------------------------------------------------

    async def connect(self) -> None:
        """Connect and subscribe to all sensors.

        Raises:
            TransportError: The link could not be opened.
        """
        if self.connection_state is not ConnectionState.DISCONNECTED:
            logger.warning("connect() ignored in state %s", self.connection_state.value)
            return
        self._disconnected = asyncio.Event()
        self._activity.start_activity()
        await self._connection.connect()

    async def disconnect(self) -> None:
        await self._connection.disconnect()

    async def wait_disconnected(self) -> None:
        """Block until the session is back in DISCONNECTED."""
        if self._disconnected is None or self.connection_state is ConnectionState.DISCONNECTED:
            return
        await self._disconnected.wait()

    # -- commands -----------------------------------------------------------

    def send_command(self, command: Command) -> None:
        self._connection.send(command)

    def subscribe_sensors(self) -> None:
        logger.info("Subscribing to all sensors")
        for command in subscription_sequence():
            self.send_command(command)

    def unsubscribe_sensors(self) -> None:
        logger.info("Unsubscribing from all sensors")
        for command in stop_sequence():
            self.send_command(command)

    # -- ECG recording ------------------------------------------------------

    def start_ecg_recording(self) -> None:
        """Clear and arm the ECG recording."""
        if self._recording is not None:
            logger.warning("ECG recording already active; restarting it")
        self._recording = EcgRecording(started_at=self._clock())
        logger.info("ECG recording started")

    def stop_ecg_recording(self) -> Optional[EcgCapture]:
        """Disarm and return everything recorded since the start.

        Returns None when no recording was armed.
        """
        recording = self._recording
        if recording is None:
            logger.warning("stop_ecg_recording() called with no active recording")
            return None
        recording.is_active = False
        self._recording = None

        samples = tuple(recording.samples)
        capture = EcgCapture(
            samples=samples,
            started_at=recording.started_at,
            duration_seconds=len(samples) / self._config.ecg_sample_rate_hz,
        )
        logger.info(
            "ECG recording stopped: %d samples (%.1fs)",
            len(samples),
            capture.duration_seconds,
        )
        if self._ecg_store is not None and samples:
            self._ecg_store.save(samples)
        return capture

    # -- callbacks ----------------------------------------------------------

    def _feeds_metrics(self, reading: SensorReading) -> bool:
        return reading.origin is Origin.MEASURED or self._config.synthetic_in_metrics

    def _handle_reading(self, reading: SensorReading) -> None:
        if isinstance(reading, AccelerometerReading):
            if self._feeds_metrics(reading):
                self._activity.process_accel_sample(reading.x, reading.y, reading.z)
        elif isinstance(reading, HeartRateReading):
            if self._feeds_metrics(reading):
                self._activity.update_calories(reading.bpm)
        elif isinstance(reading, EcgReading):
            self._handle_ecg(reading)

        for listener in list(self._listeners):
            try:
                listener(reading)
            except Exception:
                logger.exception("Session listener failed for %s", reading.kind.value)

    def _handle_ecg(self, reading: EcgReading) -> None:
        if self._recording is not None and self._feeds_metrics(reading):
            self._recording.samples.extend(reading.samples)

        if (
            reading.samples
            and self._connection.cache.status(SensorKind.HEART_RATE) is not SensorStatus.ACTIVE
        ):
            bpm = synthetic_heart_rate(reading.samples)
            logger.debug("Heart rate derived from ECG: %d bpm", bpm)
            self._connection.publish(
                HeartRateReading(reading.timestamp, float(bpm), Origin.SYNTHETIC)
            )

    def _handle_connected(self) -> None:
        self.subscribe_sensors()
        if self._config.monitor_interval > 0 and (
            self._monitor_task is None or self._monitor_task.done()
        ):
            self._monitor_task = asyncio.get_running_loop().create_task(
                self._monitor_sensors()
            )

    def _handle_reset(self) -> None:
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            self._monitor_task = None
        self._activity.cancel_timers()
        if self._recording is not None:
            logger.info(
                "Discarding armed ECG recording (%d samples)", len(self._recording.samples)
            )
            self._recording = None
        if self._disconnected is not None:
            self._disconnected.set()

    async def _monitor_sensors(self) -> None:
        interval = self._config.monitor_interval
        minimum = self._config.monitor_min_active
        while True:
            await asyncio.sleep(interval)
            if self.connection_state is not ConnectionState.CONNECTED:
                continue
            active = self.active_sensor_count()
            logger.debug("Sensor monitor: %d active", active)
            if active < minimum:
                logger.info(
                    "Only %d sensor(s) active (< %d), re-sending subscriptions",
                    active,
                    minimum,
                )
                self.subscribe_sensors()
