import asyncio
import time

import pytest

from movesense_receiver.command_queue import CommandQueue
from movesense_receiver.connection import ConnectionManager, SensorCache
from movesense_receiver.decoder import DEFAULT_RULES, MULTI_AXIS_RULE, DecodeRule, FrameDecoder
from movesense_receiver.errors import TransportError
from movesense_receiver.models import (
    Command,
    ConnectionState,
    SensorKind,
    SensorStatus,
    TemperatureReading,
)

TEMPERATURE_FRAME = bytes([0x01, 0x62, 0x01, 0x0A])  # 30 C
HEART_RATE_FRAME = bytes([0x01, 0x63, 0x01, 72])


class Hooks:
    def __init__(self):
        self.connected = 0
        self.resets = 0

    def on_connected(self):
        self.connected += 1

    def on_reset(self):
        self.resets += 1


def make_manager(factory, config, clock=None, decoder=None):
    hooks = Hooks()
    manager = ConnectionManager(
        factory,
        CommandQueue(spacing=config.command_spacing),
        config=config,
        decoder=decoder or FrameDecoder(clock=clock),
        on_connected=hooks.on_connected,
        on_reset=hooks.on_reset,
    )
    return manager, hooks


def test_sensor_cache_reset_clears_everything():
    cache = SensorCache()
    cache.record(TemperatureReading(1.0, 30.0))
    cache.mark_error(SensorKind.ECG)
    assert cache.active_count() == 1

    cache.reset()

    assert cache.reading(SensorKind.TEMPERATURE) is None
    assert set(cache.statuses().values()) == {SensorStatus.INACTIVE}


def test_connect_reaches_connected_and_runs_hook(factory, fast_config):
    async def scenario():
        manager, hooks = make_manager(factory, fast_config)
        await manager.connect()
        return manager, hooks

    manager, hooks = asyncio.run(scenario())
    assert manager.state is ConnectionState.CONNECTED
    assert manager.device_name == "Movesense 000001"
    assert hooks.connected == 1
    assert manager.last_error is None


def test_connect_failure_surfaces_transport_error(factory, fast_config):
    factory.always_fail = True

    async def scenario():
        manager, hooks = make_manager(factory, fast_config)
        with pytest.raises(TransportError):
            await manager.connect()
        return manager, hooks

    manager, hooks = asyncio.run(scenario())
    assert manager.state is ConnectionState.DISCONNECTED
    assert manager.last_error == "device not found"
    assert hooks.connected == 0


def test_commands_written_once_connected(factory, fast_config):
    async def scenario():
        manager, _ = make_manager(factory, fast_config)
        manager.send(Command(b"\x01\x62", "early"))
        await manager.connect()
        manager.send(Command(b"\x01\x63", "late"))
        await asyncio.sleep(0.1)
        return [payload for _, payload in factory.last_link.writes]

    assert asyncio.run(scenario()) == [b"\x01\x62", b"\x01\x63"]


def test_decoded_frame_marks_only_its_sensor_active(factory, fast_config, clock):
    async def scenario():
        manager, _ = make_manager(factory, fast_config, clock=clock)
        received = []
        manager.add_listener(received.append)
        await manager.connect()
        factory.last_link.emit(TEMPERATURE_FRAME)
        return manager, received

    manager, received = asyncio.run(scenario())
    assert manager.cache.status(SensorKind.TEMPERATURE) is SensorStatus.ACTIVE
    assert manager.cache.reading(SensorKind.TEMPERATURE).celsius == 30.0
    assert manager.cache.status(SensorKind.HEART_RATE) is SensorStatus.INACTIVE
    assert [r.kind for r in received] == [SensorKind.TEMPERATURE]


def test_decode_failure_marks_only_that_sensor_error(factory, fast_config, clock):
    truncated = DecodeRule("truncated", lambda f, h: len(f) == 3, MULTI_AXIS_RULE.decode)
    decoder = FrameDecoder(clock=clock, rules=[truncated, *DEFAULT_RULES])

    async def scenario():
        manager, _ = make_manager(factory, fast_config, decoder=decoder)
        await manager.connect()
        factory.last_link.emit(TEMPERATURE_FRAME)
        factory.last_link.emit(bytes([0x02, 0x62, 0x00]))
        return manager

    manager = asyncio.run(scenario())
    assert manager.cache.status(SensorKind.GYROSCOPE) is SensorStatus.ERROR
    assert manager.cache.reading(SensorKind.GYROSCOPE) is None
    assert manager.cache.status(SensorKind.TEMPERATURE) is SensorStatus.ACTIVE


def test_fallback_temperature_only_until_temperature_seen(factory, fast_config, clock):
    guess = bytes([0x00, 0x62, 0x01, 55])

    async def scenario():
        manager, _ = make_manager(factory, fast_config, clock=clock)
        received = []
        manager.add_listener(received.append)
        await manager.connect()
        factory.last_link.emit(guess)
        factory.last_link.emit(guess)
        return received

    received = asyncio.run(scenario())
    assert len(received) == 1
    assert received[0].celsius == 26.0


def test_hello_frame_activates_heart_rate(factory, fast_config, clock):
    async def scenario():
        manager, _ = make_manager(factory, fast_config, clock=clock)
        await manager.connect()
        factory.last_link.emit(bytes([0x01, 0x63, 0x48, 0x65, 0x6C, 0x6C, 0x6F]))
        return manager

    manager = asyncio.run(scenario())
    reading = manager.cache.reading(SensorKind.HEART_RATE)
    assert reading.bpm == 72
    assert reading.is_synthetic
    assert manager.cache.status(SensorKind.HEART_RATE) is SensorStatus.ACTIVE


def test_unexpected_drop_reconnects(factory, fast_config):
    async def scenario():
        manager, hooks = make_manager(factory, fast_config)
        await manager.connect()
        first = factory.last_link
        dropped_at = time.monotonic()
        first.drop()
        state_after_drop = manager.state
        await asyncio.sleep(0.2)
        return manager, hooks, first, dropped_at, state_after_drop

    manager, hooks, first, dropped_at, state_after_drop = asyncio.run(scenario())
    assert state_after_drop is ConnectionState.RECONNECTING
    assert manager.state is ConnectionState.CONNECTED
    assert factory.open_attempts == 2
    assert factory.open_times[1] - dropped_at >= fast_config.reconnect_delay * 0.9
    assert factory.last_link is not first
    assert hooks.connected == 2


def test_reconnect_gives_up_after_max_attempts(factory, fast_config):
    async def scenario():
        manager, hooks = make_manager(factory, fast_config)
        await manager.connect()
        factory.last_link.emit(HEART_RATE_FRAME)
        manager.send(Command(b"\x01\x11", "queued"))
        factory.always_fail = True
        dropped_at = time.monotonic()
        factory.last_link.drop()
        await asyncio.sleep(0.4)
        return manager, hooks, dropped_at

    manager, hooks, dropped_at = asyncio.run(scenario())
    assert manager.state is ConnectionState.DISCONNECTED
    assert factory.open_attempts == 1 + fast_config.max_reconnect_attempts
    assert manager.reconnect_attempts == fast_config.max_reconnect_attempts

    times = factory.open_times[1:]
    assert times[0] - dropped_at >= fast_config.reconnect_delay * 0.9
    for earlier, later in zip(times, times[1:]):
        assert later - earlier >= fast_config.reconnect_backoff_delay * 0.9

    assert manager.cache.reading(SensorKind.HEART_RATE) is None
    assert manager.cache.active_count() == 0
    assert hooks.resets == 1
    assert manager.last_error == "device not found"


def test_reconnect_succeeds_on_later_attempt(factory, fast_config):
    async def scenario():
        manager, hooks = make_manager(factory, fast_config)
        await manager.connect()
        factory.fail_opens = 2
        factory.last_link.drop()
        await asyncio.sleep(0.4)
        return manager, hooks

    manager, hooks = asyncio.run(scenario())
    assert manager.state is ConnectionState.CONNECTED
    assert factory.open_attempts == 4
    assert hooks.connected == 2


def test_intentional_disconnect_does_not_reconnect(factory, fast_config):
    async def scenario():
        manager, hooks = make_manager(factory, fast_config)
        await manager.connect()
        link = factory.last_link
        await manager.disconnect()
        flag_during_grace = manager.intentional_disconnect
        link.drop()  # transport reports the drop we asked for
        await asyncio.sleep(0.15)
        return manager, hooks, link, flag_during_grace

    manager, hooks, link, flag_during_grace = asyncio.run(scenario())
    assert link.closed
    assert manager.state is ConnectionState.DISCONNECTED
    assert factory.open_attempts == 1
    assert flag_during_grace
    assert not manager.intentional_disconnect
    assert hooks.resets == 1


def test_disconnect_while_reconnecting_cancels_attempt(factory, fast_config):
    async def scenario():
        manager, _ = make_manager(factory, fast_config)
        await manager.connect()
        factory.last_link.drop()
        await manager.disconnect()
        await asyncio.sleep(0.15)
        return manager

    manager = asyncio.run(scenario())
    assert manager.state is ConnectionState.DISCONNECTED
    assert factory.open_attempts == 1


def test_drop_report_from_previous_link_is_ignored(factory, fast_config):
    async def scenario():
        manager, hooks = make_manager(factory, fast_config)
        await manager.connect()
        first = factory.last_link
        first.drop()
        await asyncio.sleep(0.15)
        first.drop()
        await asyncio.sleep(0.15)
        return manager, hooks

    manager, hooks = asyncio.run(scenario())
    assert manager.state is ConnectionState.CONNECTED
    assert factory.open_attempts == 2
    assert hooks.connected == 2


def test_frames_from_previous_link_are_ignored(factory, fast_config, clock):
    async def scenario():
        manager, _ = make_manager(factory, fast_config, clock=clock)
        await manager.connect()
        first = factory.last_link
        first.drop()
        await asyncio.sleep(0.15)
        first.emit(TEMPERATURE_FRAME)
        return manager

    manager = asyncio.run(scenario())
    assert manager.cache.reading(SensorKind.TEMPERATURE) is None


def test_dropped_link_is_closed(factory, fast_config):
    async def scenario():
        manager, _ = make_manager(factory, fast_config)
        await manager.connect()
        first = factory.last_link
        first.drop()
        await asyncio.sleep(0)
        closed_right_after_drop = first.closed
        await asyncio.sleep(0.15)
        return first, closed_right_after_drop

    first, closed_right_after_drop = asyncio.run(scenario())
    assert closed_right_after_drop
    assert first.closed
    assert not factory.last_link.closed
