"""Notification frame decoder for Movesense devices.

The firmware does not describe its payloads reliably: the same resource id
carries different layouts depending on the revision, and some answers are
status or handshake frames rather than data. Frames are therefore classified
by an ordered cascade of rules, most specific first:

1. Status frame ``01 <id> 01 FB`` ("sensor idle") -> synthetic placeholder.
2. "Hello" frame (7 bytes, ``He`` at offset 2) sent after a stop command
   -> synthetic placeholder that re-arms the sensor.
3. ``02 62`` accelerometer frame, one int16 at offset 6.
4. Simple 4-byte ``01 <id> 01 <int8>`` value frame.
5. ``02 62`` three-axis frame, classified by magnitude into gyroscope and
   accelerometer.
6. Extended ECG frame ``01 63 ...``, int16 samples from offset 2.
7. Fallback heuristics: a lone temperature guess, then a magnitude based
   split of three int16 values into accelerometer / gyroscope / magnetometer.

The first rule whose shape matches wins; later rules never see the frame.
Every numeric read goes through a :class:`Field` descriptor that checks the
frame length first, so a short frame turns into a decode failure for the
routed sensor instead of an out-of-bounds read.

The resource ids, the 0xFB status byte and the magnitude bands are empirical
values taken from one firmware family, not protocol constants.
"""

from __future__ import annotations

import logging
import math
import struct
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

from .errors import FrameDecodeError
from .models import (
    AccelerometerReading,
    EcgReading,
    GyroscopeReading,
    HeartRateReading,
    MagnetometerReading,
    Origin,
    SensorKind,
    SensorReading,
    TemperatureReading,
    Vector3,
)
from .protocol import (
    RESOURCE_GYROSCOPE,
    RESOURCE_HR_ECG,
    RESOURCE_MAGNETOMETER,
    RESOURCE_TEMPERATURE,
)

logger = logging.getLogger(__name__)

STATUS_IDLE = 0xFB
IDLE_SENTINEL = -5  # STATUS_IDLE read as int8
HELLO_MARKER = b"He"

# Synthetic placeholder values
PLACEHOLDER_TEMPERATURE_C = 15.0
PLACEHOLDER_HEART_RATE_BPM = 72.0
PLACEHOLDER_ACCELERATION_G = Vector3(1.0, 2.0, 3.0)
PLACEHOLDER_MAGNETIC_FIELD_UT = Vector3(50.0, 30.0, 10.0)

TEMPERATURE_BIAS_C = 20
HEART_RATE_BAND = (40, 200)
TEMPERATURE_BAND = (0.0, 50.0)
ACCEL_MAX_G = 20.0
GYRO_MAX_DPS = 2000.0

ACCEL_FRAME_Y_G = 0.01
RAW_DIVISOR = 100  # int16 counts -> g, deg/s or uT in 02 62 and fallback frames


@dataclass(frozen=True)
class Field:
    """Fixed-offset little-endian field inside a frame."""

    offset: int
    fmt: str

    @property
    def size(self) -> int:
        return struct.calcsize(self.fmt)

    def fits(self, frame: bytes) -> bool:
        return len(frame) >= self.offset + self.size

    def read(self, frame: bytes, kind: Optional[SensorKind]) -> int:
        if not self.fits(frame):
            raise FrameDecodeError(
                kind,
                f"{len(frame)}-byte frame too short for {self.fmt} at offset {self.offset}",
            )
        value: int = struct.unpack_from(self.fmt, frame, self.offset)[0]
        return value


VALUE_INT8 = Field(3, "<b")
ACCEL_X = Field(6, "<h")
AXIS_X = Field(6, "<h")
AXIS_Y = Field(8, "<h")
AXIS_Z = Field(10, "<h")
FALLBACK_AXES = (Field(0, "<h"), Field(2, "<h"), Field(4, "<h"))
ECG_FIRST_SAMPLE_OFFSET = 2


@dataclass(frozen=True)
class DecodeResult:
    """Outcome of classifying one frame.

    Attributes:
        readings: Readings the frame produced, possibly several (a three-axis
            frame may be both gyroscope and accelerometer data).
        rule: Name of the rule that matched, or None when nothing matched.
        failed_kind: Sensor whose values could not be extracted, if any.
    """

    readings: tuple[SensorReading, ...] = ()
    rule: Optional[str] = None
    failed_kind: Optional[SensorKind] = None

    @property
    def matched(self) -> bool:
        return self.rule is not None


@dataclass(frozen=True)
class DecodeRule:
    name: str
    matches: Callable[[bytes, bool], bool]
    decode: Callable[[bytes, float], Iterable[SensorReading]]


def _to_int16(value: float) -> int:
    """Truncate toward zero and wrap into the int16 range."""
    n = math.trunc(value) & 0xFFFF
    return n - 0x10000 if n >= 0x8000 else n


def oscillator_sample(now_ms: float) -> Vector3:
    """Time-based placeholder magnetometer vector in uT.

    Not measured data: a slowly rotating vector so consumers see a live sensor
    while the firmware only reports its idle status.
    """
    raw = (
        _to_int16(math.sin(now_ms / 1000.0) * 500),
        _to_int16(math.cos(now_ms / 1000.0) * 300),
        _to_int16(math.sin(now_ms / 2000.0) * 200),
    )
    return Vector3(raw[0] / 10, raw[1] / 10, raw[2] / 10)


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


# -- rule 1: status frame ---------------------------------------------------


def _is_status_frame(frame: bytes, _has_temperature: bool) -> bool:
    return (
        len(frame) == 4
        and frame[0] == 0x01
        and frame[2] == 0x01
        and frame[3] == STATUS_IDLE
    )


def _decode_status_frame(frame: bytes, now: float) -> Iterable[SensorReading]:
    resource_id = frame[1]
    synthetic = Origin.SYNTHETIC
    if resource_id == RESOURCE_TEMPERATURE:
        return [TemperatureReading(now, PLACEHOLDER_TEMPERATURE_C, synthetic)]
    if resource_id == RESOURCE_HR_ECG:
        return [EcgReading(now, (frame[3] - 256,), synthetic)]
    if resource_id == RESOURCE_GYROSCOPE:
        return [GyroscopeReading(now, (Vector3(0.0, 0.0, 0.0),), synthetic)]
    if resource_id == RESOURCE_MAGNETOMETER:
        return [MagnetometerReading(now, (oscillator_sample(now),), synthetic)]
    return []


# -- rule 2: "Hello" acknowledgement ------------------------------------------


def _is_hello_frame(frame: bytes, _has_temperature: bool) -> bool:
    return len(frame) == 7 and frame[2:4] == HELLO_MARKER


def _decode_hello_frame(frame: bytes, now: float) -> Iterable[SensorReading]:
    resource_id = frame[1]
    synthetic = Origin.SYNTHETIC
    if resource_id == RESOURCE_TEMPERATURE:
        return [
            AccelerometerReading.from_samples(
                now, (PLACEHOLDER_ACCELERATION_G,), synthetic
            )
        ]
    if resource_id == RESOURCE_HR_ECG:
        return [HeartRateReading(now, PLACEHOLDER_HEART_RATE_BPM, synthetic)]
    if resource_id == RESOURCE_GYROSCOPE:
        averaged = (
            _to_int16((frame[2] + frame[3]) / 2),
            _to_int16((frame[4] + frame[5]) / 2),
            _to_int16((frame[6] + frame[1]) / 2),
        )
        sample = Vector3(*(v / RAW_DIVISOR for v in averaged))
        return [GyroscopeReading(now, (sample,), synthetic)]
    if resource_id == RESOURCE_MAGNETOMETER:
        return [
            MagnetometerReading(now, (PLACEHOLDER_MAGNETIC_FIELD_UT,), synthetic)
        ]
    return []


# -- rule 3: 02 62 accelerometer ----------------------------------------------


def _is_accel_frame(frame: bytes, _has_temperature: bool) -> bool:
    return len(frame) >= 8 and frame[0] == 0x02 and frame[1] == RESOURCE_TEMPERATURE


def _decode_accel_frame(frame: bytes, now: float) -> Iterable[SensorReading]:
    x = ACCEL_X.read(frame, SensorKind.ACCELEROMETER) / RAW_DIVISOR
    sample = Vector3(x, ACCEL_FRAME_Y_G, 0.0)
    return [AccelerometerReading.from_samples(now, (sample,))]


# -- rule 4: simple 4-byte value ----------------------------------------------


def _is_simple_value_frame(frame: bytes, _has_temperature: bool) -> bool:
    return len(frame) == 4 and frame[0] == 0x01 and frame[2] == 0x01


def _decode_simple_value_frame(frame: bytes, now: float) -> Iterable[SensorReading]:
    resource_id = frame[1]
    if resource_id == RESOURCE_TEMPERATURE:
        value = VALUE_INT8.read(frame, SensorKind.TEMPERATURE)
        return [TemperatureReading(now, float(value + TEMPERATURE_BIAS_C))]
    if resource_id == RESOURCE_HR_ECG:
        value = VALUE_INT8.read(frame, SensorKind.HEART_RATE)
        low, high = HEART_RATE_BAND
        if low <= abs(value) <= high:
            return [HeartRateReading(now, float(abs(value)))]
        return [EcgReading(now, (value,))]
    if resource_id == RESOURCE_MAGNETOMETER:
        value = VALUE_INT8.read(frame, SensorKind.MAGNETOMETER)
        if value == IDLE_SENTINEL:
            return [
                MagnetometerReading(now, (oscillator_sample(now),), Origin.SYNTHETIC)
            ]
    return []


# -- rule 5: 02 62 three-axis -------------------------------------------------


def _is_multi_axis_frame(frame: bytes, _has_temperature: bool) -> bool:
    return len(frame) >= 10 and frame[0] == 0x02 and frame[1] == RESOURCE_TEMPERATURE


def _decode_multi_axis_frame(frame: bytes, now: float) -> Iterable[SensorReading]:
    kind = SensorKind.GYROSCOPE
    x = AXIS_X.read(frame, kind) / RAW_DIVISOR
    y = AXIS_Y.read(frame, kind) / RAW_DIVISOR
    z = AXIS_Z.read(frame, kind) / RAW_DIVISOR if AXIS_Z.fits(frame) else 0.0
    sample = Vector3(x, y, z)
    readings: list[SensorReading] = [GyroscopeReading(now, (sample,))]
    # Firmware aliases the two sensors on this id; small vectors are also g.
    if sample.magnitude < ACCEL_MAX_G:
        readings.append(AccelerometerReading.from_samples(now, (sample,)))
    return readings


# -- rule 6: extended ECG -----------------------------------------------------


def _is_extended_ecg_frame(frame: bytes, _has_temperature: bool) -> bool:
    return len(frame) > 4 and frame[0] == 0x01 and frame[1] == RESOURCE_HR_ECG


def _decode_extended_ecg_frame(frame: bytes, now: float) -> Iterable[SensorReading]:
    samples = tuple(
        Field(offset, "<h").read(frame, SensorKind.ECG)
        for offset in range(ECG_FIRST_SAMPLE_OFFSET, len(frame) - 1, 2)
    )
    if not samples:
        return []
    return [EcgReading(now, samples)]


# -- rule 7: fallback heuristics ----------------------------------------------


def _fallback_temperature(frame: bytes) -> Optional[float]:
    value = VALUE_INT8.read(frame, SensorKind.TEMPERATURE)
    celsius = value / 10 + TEMPERATURE_BIAS_C
    low, high = TEMPERATURE_BAND
    if low <= celsius <= high:
        return float(_round_half_up(celsius))
    return None


def _is_fallback_temperature(frame: bytes, has_temperature: bool) -> bool:
    return (
        not has_temperature
        and len(frame) == 4
        and frame[2] == 0x01
        and frame[1] == RESOURCE_TEMPERATURE
        and _fallback_temperature(frame) is not None
    )


def _decode_fallback_temperature(frame: bytes, now: float) -> Iterable[SensorReading]:
    celsius = _fallback_temperature(frame)
    if celsius is None:
        return []
    return [TemperatureReading(now, celsius)]


def _is_fallback_vector(frame: bytes, _has_temperature: bool) -> bool:
    return len(frame) >= 6


def _decode_fallback_vector(frame: bytes, now: float) -> Iterable[SensorReading]:
    raw = [axis.read(frame, None) for axis in FALLBACK_AXES]
    vector = Vector3(*(v / RAW_DIVISOR for v in raw))
    magnitude = vector.magnitude
    if magnitude < ACCEL_MAX_G:
        return [AccelerometerReading.from_samples(now, (vector,))]
    if magnitude < GYRO_MAX_DPS:
        return [GyroscopeReading(now, (vector,))]
    # Magnetometer frames carry 0.1 uT resolution
    quantized = Vector3(
        *(math.trunc(v / 10) / 10 for v in raw)
    )
    return [MagnetometerReading(now, (quantized,))]


STATUS_RULE = DecodeRule("status", _is_status_frame, _decode_status_frame)
HELLO_RULE = DecodeRule("hello", _is_hello_frame, _decode_hello_frame)
ACCEL_RULE = DecodeRule("accelerometer", _is_accel_frame, _decode_accel_frame)
SIMPLE_VALUE_RULE = DecodeRule(
    "simple_value", _is_simple_value_frame, _decode_simple_value_frame
)
MULTI_AXIS_RULE = DecodeRule(
    "multi_axis", _is_multi_axis_frame, _decode_multi_axis_frame
)
EXTENDED_ECG_RULE = DecodeRule(
    "extended_ecg", _is_extended_ecg_frame, _decode_extended_ecg_frame
)
FALLBACK_TEMPERATURE_RULE = DecodeRule(
    "fallback_temperature", _is_fallback_temperature, _decode_fallback_temperature
)
FALLBACK_VECTOR_RULE = DecodeRule(
    "fallback_vector", _is_fallback_vector, _decode_fallback_vector
)

DEFAULT_RULES: tuple[DecodeRule, ...] = (
    STATUS_RULE,
    HELLO_RULE,
    ACCEL_RULE,
    SIMPLE_VALUE_RULE,
    MULTI_AXIS_RULE,
    EXTENDED_ECG_RULE,
    FALLBACK_TEMPERATURE_RULE,
    FALLBACK_VECTOR_RULE,
)


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


def frame_hex(frame: bytes) -> str:
    return " ".join(f"{b:02X}" for b in frame)


class FrameDecoder:
    """Classify raw notification frames into typed sensor readings.

    The decoder holds no per-frame state. Callers pass ``has_temperature`` so
    the fallback temperature guess only fires while no temperature has been
    seen yet.

    Args:
        clock: Session clock in milliseconds, used for reading timestamps and
            the placeholder magnetometer oscillator.
        rules: Cascade to apply, in priority order. Defaults to
            :data:`DEFAULT_RULES`.
    """

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        rules: Optional[Sequence[DecodeRule]] = None,
    ) -> None:
        self._clock = clock or _monotonic_ms
        self._rules: tuple[DecodeRule, ...] = (
            tuple(rules) if rules is not None else DEFAULT_RULES
        )

    @property
    def rules(self) -> tuple[DecodeRule, ...]:
        return self._rules

    def decode(
        self, frame: bytes, *, has_temperature: bool = False
    ) -> Optional[SensorReading]:
        """Return the first reading ``frame`` decodes to, or None."""
        result = self.decode_frame(frame, has_temperature=has_temperature)
        return result.readings[0] if result.readings else None

    def decode_frame(
        self, frame: bytes, *, has_temperature: bool = False
    ) -> DecodeResult:
        """Run the cascade over ``frame``. Never raises."""
        data = bytes(frame)
        if not data:
            return DecodeResult()

        now = self._clock()
        for rule in self._rules:
            if not rule.matches(data, has_temperature):
                continue
            try:
                readings = tuple(rule.decode(data, now))
            except FrameDecodeError as e:
                logger.warning(
                    "Decode failure in rule %s (%s): %s", rule.name, frame_hex(data), e
                )
                return DecodeResult(rule=rule.name, failed_kind=e.kind)
            except (struct.error, ValueError, ArithmeticError) as e:
                logger.warning(
                    "Unexpected decode error in rule %s (%s): %s",
                    rule.name,
                    frame_hex(data),
                    e,
                )
                return DecodeResult(rule=rule.name)
            logger.debug(
                "Frame %s -> rule=%s readings=%d", frame_hex(data), rule.name, len(readings)
            )
            return DecodeResult(readings=readings, rule=rule.name)

        logger.debug("Unrecognized frame: %s", frame_hex(data))
        return DecodeResult()
