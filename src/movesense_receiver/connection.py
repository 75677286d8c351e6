"""Connection lifecycle for one Movesense device.

State machine::

    DISCONNECTED -> CONNECTING -> CONNECTED -> RECONNECTING -> CONNECTED
                                                            \\-> DISCONNECTED

The transport reports every drop the same way, whether the user asked for it
or the radio lost the device. ``disconnect()`` therefore raises an
intentional-disconnect flag, kept for a grace period, and drops reported
while it is set do not trigger reconnection. Each opened link also gets its
own token so a late callback from an earlier link is ignored.

Inbound frames are decoded here and the per-sensor status and last reading
are kept in a :class:`SensorCache`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from .command_queue import CommandQueue
from .config import SessionConfig
from .decoder import FrameDecoder, frame_hex
from .errors import FrameDecodeError, TransportError
from .link import Link, LinkFactory
from .models import (
    Command,
    ConnectionState,
    SensorKind,
    SensorReading,
    SensorStatus,
)

logger = logging.getLogger(__name__)

ReadingListener = Callable[[SensorReading], None]


class SensorCache:
    """Last reading and status per sensor kind (last value wins)."""

    def __init__(self) -> None:
        self._readings: dict[SensorKind, SensorReading] = {}
        self._statuses: dict[SensorKind, SensorStatus] = {}
        self.reset()

    def reset(self) -> None:
        self._readings.clear()
        self._statuses = {kind: SensorStatus.INACTIVE for kind in SensorKind}

    def record(self, reading: SensorReading) -> None:
        self._readings[reading.kind] = reading
        self._statuses[reading.kind] = SensorStatus.ACTIVE

    def mark_error(self, kind: SensorKind) -> None:
        self._statuses[kind] = SensorStatus.ERROR

    def reading(self, kind: SensorKind) -> Optional[SensorReading]:
        return self._readings.get(kind)

    def status(self, kind: SensorKind) -> SensorStatus:
        return self._statuses[kind]

    def statuses(self) -> dict[SensorKind, SensorStatus]:
        return dict(self._statuses)

    def active_count(self) -> int:
        return sum(1 for s in self._statuses.values() if s is SensorStatus.ACTIVE)


class ConnectionManager:
    """Own the link to the device, reconnect on unexpected drops.

    Args:
        link_factory: Opens links (BLE or mock).
        command_queue: Queue whose writer is attached while connected.
        config: Reconnect delays, attempt limit and grace period.
        decoder: Frame decoder for inbound notifications.
        on_connected: Called after every successful connect or reconnect.
        on_reset: Called after per-session state was cleared.
    """

    def __init__(
        self,
        link_factory: LinkFactory,
        command_queue: CommandQueue,
        *,
        config: SessionConfig = SessionConfig(),
        decoder: Optional[FrameDecoder] = None,
        on_connected: Optional[Callable[[], None]] = None,
        on_reset: Optional[Callable[[], None]] = None,
    ) -> None:
        self._factory = link_factory
        self._queue = command_queue
        self._config = config
        self._decoder = decoder or FrameDecoder()
        self._on_connected = on_connected
        self._on_reset = on_reset
        self._cache = SensorCache()
        self._listeners: list[ReadingListener] = []

        self._state = ConnectionState.DISCONNECTED
        self._link: Optional[Link] = None
        self._link_token: Optional[object] = None
        self._last_error: Optional[str] = None
        self._device_name = ""
        self._generation = 0

        self._intentional_disconnect = False
        self._intentional_handle: Optional[asyncio.TimerHandle] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._reconnect_attempts = 0
        self._closing: set[asyncio.Task[None]] = set()

    # -- read-only views ----------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def device_name(self) -> str:
        return self._device_name

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def intentional_disconnect(self) -> bool:
        return self._intentional_disconnect

    @property
    def cache(self) -> SensorCache:
        return self._cache

    def add_listener(self, listener: ReadingListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ReadingListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # -- lifecycle ----------------------------------------------------------

    async def connect(self) -> None:
        """Open the link, subscribe to notifications and go CONNECTED.

        Raises:
            TransportError: Any step failed; the manager is DISCONNECTED and
                ``last_error`` holds the message.
        """
        if self._state is not ConnectionState.DISCONNECTED:
            logger.warning("connect() ignored in state %s", self._state.value)
            return

        self._last_error = None
        self._reconnect_attempts = 0
        self._clear_intentional_flag()
        self._set_state(ConnectionState.CONNECTING)
        generation = self._generation

        try:
            link = await self._open_link()
        except TransportError as e:
            if generation == self._generation:
                self._last_error = str(e)
                logger.error("❌ Connection error: %s", e)
                self._reset()
            raise

        if generation != self._generation:
            # disconnect() ran while we were opening
            await link.close()
            return
        self._activate(link)

    async def disconnect(self) -> None:
        if self._state is ConnectionState.DISCONNECTED and self._link is None:
            logger.info("⚠️ Not connected, no need to disconnect.")
            return

        logger.info("Disconnecting from %s...", self._device_name or "device")
        self._intentional_disconnect = True
        self._schedule_intentional_clear()
        link = self._reset()
        if link is not None:
            await link.close()

    def send(self, command: Command) -> None:
        self._queue.enqueue(command)

    def publish(self, reading: SensorReading) -> None:
        """Cache ``reading`` and hand it to every listener."""
        self._cache.record(reading)
        for listener in list(self._listeners):
            try:
                listener(reading)
            except Exception:
                logger.exception("Reading listener failed for %s", reading.kind.value)

    # -- internals ----------------------------------------------------------

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            logger.info("Connection state: %s -> %s", self._state.value, state.value)
            self._state = state

    async def _open_link(self) -> Link:
        token = object()
        self._link_token = token
        try:
            link = await self._factory.open(lambda: self._handle_link_lost(token))
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(f"{type(e).__name__}: {e}") from e

        try:
            await link.subscribe(lambda frame: self._handle_frame(token, frame))
        except Exception as e:
            await link.close()
            if isinstance(e, TransportError):
                raise
            raise TransportError(f"{type(e).__name__}: {e}") from e
        return link

    def _activate(self, link: Link) -> None:
        self._link = link
        self._device_name = link.name
        self._reconnect_attempts = 0
        self._queue.notify_link_ready(link.write)
        self._set_state(ConnectionState.CONNECTED)
        logger.info("✅ %s connected successfully.", link.name)
        if self._on_connected is not None:
            self._on_connected()

    def _reset(self) -> Optional[Link]:
        """Clear all per-session state and go DISCONNECTED.

        Returns the link that was open, for the caller to close.
        """
        self._generation += 1
        self._cancel_reconnect()
        link = self._link
        self._link = None
        self._link_token = None
        self._queue.notify_link_down()
        self._queue.clear()
        self._cache.reset()
        self._device_name = ""
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Connection state reset")
        if self._on_reset is not None:
            self._on_reset()
        return link

    def _handle_link_lost(self, token: object) -> None:
        if token is not self._link_token:
            logger.debug("Ignoring drop report from a previous link")
            return
        if self._intentional_disconnect:
            logger.info("Device disconnected (requested)")
            return
        if self._state is not ConnectionState.CONNECTED:
            return

        logger.warning("Device disconnected unexpectedly")
        if self._link is not None:
            self._close_in_background(self._link)
        self._link = None
        self._queue.notify_link_down()
        self._reconnect_attempts = 0
        self._set_state(ConnectionState.RECONNECTING)
        self._schedule_reconnect(self._config.reconnect_delay)

    def _close_in_background(self, link: Link) -> None:
        task = asyncio.get_running_loop().create_task(link.close())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    def _schedule_reconnect(self, delay: float) -> None:
        self._cancel_reconnect()
        generation = self._generation
        logger.info(
            "Scheduling reconnect attempt %d/%d in %.1fs",
            self._reconnect_attempts + 1,
            self._config.max_reconnect_attempts,
            delay,
        )
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(
            delay, self._start_reconnect, generation
        )

    def _start_reconnect(self, generation: int) -> None:
        self._reconnect_handle = None
        if generation != self._generation or self._state is not ConnectionState.RECONNECTING:
            return
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._attempt_reconnect(generation)
        )

    async def _attempt_reconnect(self, generation: int) -> None:
        self._reconnect_attempts += 1
        attempt = self._reconnect_attempts
        limit = self._config.max_reconnect_attempts
        logger.info("🔄 Reconnect attempt %d/%d...", attempt, limit)

        try:
            link = await self._open_link()
        except TransportError as e:
            if generation != self._generation:
                return
            self._last_error = str(e)
            logger.error("Reconnection failed (%d/%d): %s", attempt, limit, e)
            if attempt < limit:
                self._schedule_reconnect(self._config.reconnect_backoff_delay)
            else:
                logger.error("💥 Max reconnection attempts reached. Giving up.")
                self._reset()
            return

        if generation != self._generation:
            await link.close()
            return
        logger.info("✅ Reconnected successfully")
        self._activate(link)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()

    def _schedule_intentional_clear(self) -> None:
        if self._intentional_handle is not None:
            self._intentional_handle.cancel()
        self._intentional_handle = asyncio.get_running_loop().call_later(
            self._config.intentional_disconnect_grace, self._clear_intentional_flag
        )

    def _clear_intentional_flag(self) -> None:
        if self._intentional_handle is not None:
            self._intentional_handle.cancel()
            self._intentional_handle = None
        self._intentional_disconnect = False

    def _handle_frame(self, token: object, frame: bytes) -> None:
        if token is not self._link_token or self._state is not ConnectionState.CONNECTED:
            return
        logger.debug("Notification received: %d bytes", len(frame))

        has_temperature = self._cache.reading(SensorKind.TEMPERATURE) is not None
        try:
            result = self._decoder.decode_frame(frame, has_temperature=has_temperature)
        except FrameDecodeError as e:
            if e.kind is not None:
                self._cache.mark_error(e.kind)
            logger.warning("Decode failed for %s: %s", frame_hex(frame), e)
            return

        if result.failed_kind is not None:
            self._cache.mark_error(result.failed_kind)
        for reading in result.readings:
            self.publish(reading)


def _current_task() -> Optional[Any]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
