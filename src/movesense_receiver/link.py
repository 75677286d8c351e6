"""Transport capability used by the connection manager.

A :class:`LinkFactory` opens a :class:`Link` to the device; the link writes
command payloads to the command characteristic and delivers notification
frames from the notify characteristic. Two implementations ship:

- :class:`BleakLinkFactory`: real BLE through bleak.
- :class:`MockLinkFactory`: synthetic frames for running without hardware.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import struct
import time
from abc import ABC, abstractmethod
from typing import Callable, Iterable, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from .errors import TransportError
from .protocol import (
    DEVICE_NAME_PREFIX,
    MOVESENSE_COMMAND_CHAR,
    MOVESENSE_NOTIFY_CHAR,
    MOVESENSE_SERVICE,
    RESOURCE_HR_ECG,
    RESOURCE_MAGNETOMETER,
    RESOURCE_TEMPERATURE,
)

logger = logging.getLogger(__name__)

FrameCallback = Callable[[bytes], None]
DisconnectCallback = Callable[[], None]


class Link(ABC):
    """An open connection to one device."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable device name."""

    @abstractmethod
    async def write(self, payload: bytes) -> None:
        """Write one command payload to the command characteristic."""

    @abstractmethod
    async def subscribe(self, on_frame: FrameCallback) -> None:
        """Start delivering notification frames to ``on_frame``."""

    @abstractmethod
    async def close(self) -> None:
        """Release the connection. Safe to call more than once."""


class LinkFactory(ABC):
    @abstractmethod
    async def open(self, on_disconnect: DisconnectCallback) -> Link:
        """Discover/pair as needed and open the device service.

        ``on_disconnect`` is invoked when the transport reports the link
        dropped, whatever the cause.

        Raises:
            TransportError: When any step fails.
        """


# -- bleak ----------------------------------------------------------------


def _match_device(
    dev: BLEDevice, adv: AdvertisementData, name_prefix: str, service_uuid: str
) -> bool:
    logger.debug(
        "Device discovered: addr=%s name=%s rssi=%s uuids=%s",
        getattr(dev, "address", "?"),
        getattr(dev, "name", None),
        getattr(adv, "rssi", None),
        getattr(adv, "service_uuids", None),
    )

    if dev.name and dev.name.startswith(name_prefix):
        logger.info("Device selected by name match: %s (%s)", dev.name, dev.address)
        return True

    uuids: Iterable[str] = adv.service_uuids or []
    if any(u.lower() == service_uuid.lower() for u in uuids):
        logger.info(
            "Device selected by service UUID match: %s (%s)", dev.name, dev.address
        )
        return True

    return False


async def find_device(
    *,
    name_prefix: str = DEVICE_NAME_PREFIX,
    service_uuid: str = MOVESENSE_SERVICE,
    timeout: float = 10.0,
) -> Optional[BLEDevice]:
    """Scan and return the first device advertising as a Movesense sensor."""
    logger.info(
        "BLE device discovery started: prefix='%s' service='%s' timeout=%.1fs",
        name_prefix,
        service_uuid,
        timeout,
    )
    try:
        devices_adv = await BleakScanner.discover(timeout=timeout, return_adv=True)
    except BleakError as e:
        raise TransportError(
            "BLE scanner initialization failed. Check that Bluetooth is enabled "
            "and the adapter is available to this process."
        ) from e

    logger.debug("Scan completed: %d devices found", len(devices_adv))
    for dev, adv in devices_adv.values():
        if _match_device(dev, adv, name_prefix, service_uuid):
            return dev
    return None


class BleakLink(Link):
    def __init__(self, client: BleakClient, name: str) -> None:
        self._client = client
        self._name = name
        self._subscribed = False

    @property
    def name(self) -> str:
        return self._name

    async def write(self, payload: bytes) -> None:
        try:
            await self._client.write_gatt_char(
                MOVESENSE_COMMAND_CHAR, payload, response=True
            )
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"Write failed: {e}") from e

    async def subscribe(self, on_frame: FrameCallback) -> None:
        try:
            await self._client.start_notify(
                MOVESENSE_NOTIFY_CHAR, lambda _, data: on_frame(bytes(data))
            )
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"Notification subscribe failed: {e}") from e
        self._subscribed = True
        logger.info("✅ Notifications started on %s", MOVESENSE_NOTIFY_CHAR)

    async def close(self) -> None:
        if not self._client.is_connected:
            return
        try:
            if self._subscribed:
                await self._client.stop_notify(MOVESENSE_NOTIFY_CHAR)
            await self._client.disconnect()
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            logger.warning("Error while closing BLE link: %s", e)
        finally:
            self._subscribed = False


class BleakLinkFactory(LinkFactory):
    """Open Movesense links over BLE.

    The first ``open`` resolves the device address (given, or by scanning);
    later opens, used for reconnection, reuse it without scanning again.
    """

    def __init__(
        self,
        address: Optional[str] = None,
        *,
        name_prefix: str = DEVICE_NAME_PREFIX,
        scan_timeout: float = 10.0,
        connect_timeout: float = 20.0,
    ) -> None:
        self._address = address
        self._name: Optional[str] = None
        self._name_prefix = name_prefix
        self._scan_timeout = scan_timeout
        self._connect_timeout = connect_timeout

    async def _resolve_address(self) -> str:
        if self._address is not None:
            return self._address
        dev = await find_device(name_prefix=self._name_prefix, timeout=self._scan_timeout)
        if dev is None:
            raise TransportError(
                "Target device not found. Check that the sensor is awake and nearby."
            )
        self._address = dev.address
        self._name = dev.name
        logger.info("Connection target address: %s (name=%s)", dev.address, dev.name)
        return dev.address

    async def open(self, on_disconnect: DisconnectCallback) -> Link:
        address = await self._resolve_address()

        def handle_disconnect(_: BleakClient) -> None:
            logger.warning("BLE connection lost (callback)")
            on_disconnect()

        client = BleakClient(
            address,
            disconnected_callback=handle_disconnect,
            timeout=self._connect_timeout,
        )
        logger.info("Connecting to GATT server on %s...", address)
        try:
            await client.connect()
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"Connection to {address} failed: {e}") from e

        if client.services.get_service(MOVESENSE_SERVICE) is None:
            await client.disconnect()
            raise TransportError(f"Service {MOVESENSE_SERVICE} not found on {address}")
        for char in (MOVESENSE_COMMAND_CHAR, MOVESENSE_NOTIFY_CHAR):
            if client.services.get_characteristic(char) is None:
                await client.disconnect()
                raise TransportError(f"Characteristic {char} not found on {address}")

        logger.info("✅ Connected to GATT server on %s", address)
        return BleakLink(client, self._name or address)


# -- mock -----------------------------------------------------------------


MOCK_ECG_SAMPLES = 16
MOCK_ECG_PERIOD_MS = 8.0  # 125 Hz
MOCK_BEAT_INTERVAL_MS = 833.0  # 72 bpm


def _int16(value: float) -> int:
    return max(-32768, min(32767, int(value)))


def _ecg_wave(t_ms: float) -> float:
    """R-peak-like Gaussian pulse once per beat."""
    phase = t_ms % MOCK_BEAT_INTERVAL_MS - 100.0
    return 800.0 * math.exp(-(phase * phase) / 200.0)


def mock_frames(elapsed: float, rng: Optional[random.Random] = None) -> list[bytes]:
    """Frames one mock tick emits, shaped like the real firmware's.

    A walking-like accelerometer vector (fallback 3 x int16 layout, 0.01 g
    counts), a gyroscope vector in the 20..2000 band, an extended ECG frame,
    and every few seconds temperature, heart rate and magnetometer status.
    """
    rng = rng or random.Random()
    frames: list[bytes] = []

    ax = 0.2 * math.sin(2 * math.pi * 0.5 * elapsed) + rng.gauss(0, 0.02)
    ay = 0.1 * math.cos(2 * math.pi * 0.3 * elapsed) + rng.gauss(0, 0.02)
    az = 1.0 + 0.9 * max(0.0, math.sin(2 * math.pi * 1.8 * elapsed)) + rng.gauss(0, 0.02)
    frames.append(struct.pack("<hhh", _int16(ax * 100), _int16(ay * 100), _int16(az * 100)))

    gx = 40.0 * math.sin(2 * math.pi * 0.8 * elapsed) + 60.0
    gy = 25.0 * math.cos(2 * math.pi * 0.6 * elapsed)
    gz = 15.0 * math.sin(2 * math.pi * 0.4 * elapsed)
    frames.append(struct.pack("<hhh", _int16(gx * 100), _int16(gy * 100), _int16(gz * 100)))

    ecg = [
        _int16(_ecg_wave(elapsed * 1000 + i * MOCK_ECG_PERIOD_MS) + rng.gauss(0, 20))
        for i in range(MOCK_ECG_SAMPLES)
    ]
    frames.append(bytes([0x01, RESOURCE_HR_ECG]) + struct.pack("<16h", *ecg))

    second = int(elapsed)
    if second % 2 == 0:
        temp = 33 + round(math.sin(elapsed / 60.0))
        frames.append(bytes([0x01, RESOURCE_TEMPERATURE, 0x01, (temp - 20) & 0xFF]))
    if second % 3 == 0:
        bpm = 72 + int(8 * math.sin(elapsed / 10.0))
        frames.append(bytes([0x01, RESOURCE_HR_ECG, 0x01, bpm & 0xFF]))
    if second % 5 == 0:
        frames.append(bytes([0x01, RESOURCE_MAGNETOMETER, 0x01, 0xFB]))
    return frames


class MockLink(Link):
    def __init__(self, update_interval: float, seed: Optional[int] = None) -> None:
        self._update_interval = update_interval
        self._rng = random.Random(seed)
        self._task: Optional[asyncio.Task[None]] = None
        self._start_time = time.monotonic()
        self.written: list[bytes] = []

    @property
    def name(self) -> str:
        return "Movesense Mock"

    async def write(self, payload: bytes) -> None:
        self.written.append(bytes(payload))

    async def subscribe(self, on_frame: FrameCallback) -> None:
        self._task = asyncio.get_running_loop().create_task(self._generate(on_frame))

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _generate(self, on_frame: FrameCallback) -> None:
        while True:
            elapsed = time.monotonic() - self._start_time
            for frame in mock_frames(elapsed, self._rng):
                on_frame(frame)
            await asyncio.sleep(self._update_interval)


class MockLinkFactory(LinkFactory):
    """Links that need no hardware; every tick emits :func:`mock_frames`."""

    def __init__(self, update_interval: float = 0.1, seed: Optional[int] = None) -> None:
        self._update_interval = update_interval
        self._seed = seed

    async def open(self, on_disconnect: DisconnectCallback) -> Link:
        logger.info("🔧 Using mock link (no BLE device required)")
        return MockLink(self._update_interval, self._seed)
