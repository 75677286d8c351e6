import asyncio
import random
from types import SimpleNamespace

import pytest

from movesense_receiver import link as link_module
from movesense_receiver.config import SessionConfig
from movesense_receiver.decoder import FrameDecoder
from movesense_receiver.errors import TransportError
from movesense_receiver.link import BleakLinkFactory, MockLinkFactory, _match_device, mock_frames
from movesense_receiver.models import Origin, SensorKind, SensorStatus
from movesense_receiver.protocol import MOVESENSE_SERVICE, subscription_sequence
from movesense_receiver.session import MovesenseSession


def decoded_kinds(frames, clock):
    decoder = FrameDecoder(clock=clock)
    kinds = []
    for frame in frames:
        for reading in decoder.decode_frame(frame, has_temperature=True).readings:
            kinds.append((reading.kind, reading.origin))
    return kinds


def test_mock_frames_decode_like_device_frames(clock):
    frames = mock_frames(0.0, random.Random(1))
    assert decoded_kinds(frames, clock) == [
        (SensorKind.ACCELEROMETER, Origin.MEASURED),
        (SensorKind.GYROSCOPE, Origin.MEASURED),
        (SensorKind.ECG, Origin.MEASURED),
        (SensorKind.TEMPERATURE, Origin.MEASURED),
        (SensorKind.HEART_RATE, Origin.MEASURED),
        (SensorKind.MAGNETOMETER, Origin.SYNTHETIC),
    ]


def test_mock_frames_stay_classified_over_time(clock):
    rng = random.Random(3)
    for step in range(200):
        elapsed = step * 0.137
        kinds = [kind for kind, _ in decoded_kinds(mock_frames(elapsed, rng), clock)]
        assert kinds[:3] == [SensorKind.ACCELEROMETER, SensorKind.GYROSCOPE, SensorKind.ECG]


def test_mock_frames_between_slow_sensor_ticks(clock):
    frames = mock_frames(1.5, random.Random(1))
    assert len(frames) == 3


def test_session_over_mock_link_activates_sensors():
    async def scenario():
        config = SessionConfig(command_spacing=0.0, monitor_interval=0)
        session = MovesenseSession(MockLinkFactory(update_interval=0.02, seed=1), config)
        await session.connect()
        await asyncio.sleep(0.2)
        statuses = session.statuses()
        name = session.device_name
        await session.disconnect()
        return statuses, name

    statuses, name = asyncio.run(scenario())
    assert name == "Movesense Mock"
    assert all(status is SensorStatus.ACTIVE for status in statuses.values())


def test_mock_link_records_written_commands():
    async def scenario():
        link = await MockLinkFactory(update_interval=1.0).open(lambda: None)
        for command in subscription_sequence():
            await link.write(command.payload)
        await link.close()
        return link

    link = asyncio.run(scenario())
    assert link.written == [c.payload for c in subscription_sequence()]


def device(name, address="AA:BB:CC:DD:EE:FF"):
    return SimpleNamespace(name=name, address=address)


def advertisement(uuids=None):
    return SimpleNamespace(rssi=-60, service_uuids=uuids)


def test_match_device_by_name_prefix():
    assert _match_device(device("Movesense 175130000123"), advertisement(), "Movesense", MOVESENSE_SERVICE)
    assert not _match_device(device("Polar H10"), advertisement(), "Movesense", MOVESENSE_SERVICE)


def test_match_device_by_service_uuid():
    adv = advertisement([MOVESENSE_SERVICE.upper()])
    assert _match_device(device(None), adv, "Movesense", MOVESENSE_SERVICE)


class EmptyScanner:
    @staticmethod
    async def discover(timeout, return_adv):
        return {}


def test_bleak_factory_reports_missing_device(monkeypatch):
    monkeypatch.setattr(link_module, "BleakScanner", EmptyScanner)
    factory = BleakLinkFactory(scan_timeout=0.1)

    with pytest.raises(TransportError, match="not found"):
        asyncio.run(factory.open(lambda: None))
