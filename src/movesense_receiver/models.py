"""Typed data model for Movesense sensor sessions.

Every reading produced by the frame decoder is one of the frozen dataclasses
below. All of them share a session-relative ``timestamp`` in milliseconds and
an ``origin`` tag that separates values measured by the device from
placeholder values the decoder fabricates when the firmware answers with a
status or handshake frame instead of data.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union


class SensorKind(Enum):
    TEMPERATURE = "temperature"
    ACCELEROMETER = "accelerometer"
    HEART_RATE = "heart_rate"
    ECG = "ecg"
    GYROSCOPE = "gyroscope"
    MAGNETOMETER = "magnetometer"


class SensorStatus(Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    ERROR = "error"


class Origin(Enum):
    """Where the value of a reading came from.

    MEASURED values were extracted from a data frame. SYNTHETIC values are
    placeholders emitted for status ("sensor idle") and "Hello" frames; they
    say the sensor is alive but carry no physical information.
    """

    MEASURED = "measured"
    SYNTHETIC = "synthetic"


class Posture(Enum):
    UNKNOWN = "unknown"
    STANDING = "standing"
    STOOPED = "stooped"
    LYING = "lying"


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class Vector3:
    x: float
    y: float
    z: float

    @property
    def magnitude(self) -> float:
        return math.sqrt(self.x * self.x + self.y * self.y + self.z * self.z)


@dataclass(frozen=True)
class TemperatureReading:
    timestamp: float
    celsius: float
    origin: Origin = Origin.MEASURED
    kind = SensorKind.TEMPERATURE

    @property
    def is_synthetic(self) -> bool:
        return self.origin is Origin.SYNTHETIC


@dataclass(frozen=True)
class AccelerometerReading:
    """One accelerometer notification, in g.

    ``x``/``y``/``z`` mirror the first entry of ``samples`` and ``magnitude``
    is their Euclidean norm. Build instances with :meth:`from_samples` so the
    two never disagree.
    """

    timestamp: float
    x: float
    y: float
    z: float
    magnitude: float
    samples: tuple[Vector3, ...]
    origin: Origin = Origin.MEASURED
    kind = SensorKind.ACCELEROMETER

    @classmethod
    def from_samples(
        cls,
        timestamp: float,
        samples: tuple[Vector3, ...],
        origin: Origin = Origin.MEASURED,
    ) -> "AccelerometerReading":
        if not samples:
            raise ValueError("accelerometer reading needs at least one sample")
        first = samples[0]
        return cls(
            timestamp=timestamp,
            x=first.x,
            y=first.y,
            z=first.z,
            magnitude=first.magnitude,
            samples=samples,
            origin=origin,
        )

    @property
    def is_synthetic(self) -> bool:
        return self.origin is Origin.SYNTHETIC


@dataclass(frozen=True)
class HeartRateReading:
    timestamp: float
    bpm: float
    origin: Origin = Origin.MEASURED
    kind = SensorKind.HEART_RATE

    @property
    def is_synthetic(self) -> bool:
        return self.origin is Origin.SYNTHETIC


@dataclass(frozen=True)
class EcgReading:
    timestamp: float
    samples: tuple[int, ...]
    origin: Origin = Origin.MEASURED
    kind = SensorKind.ECG

    @property
    def is_synthetic(self) -> bool:
        return self.origin is Origin.SYNTHETIC


@dataclass(frozen=True)
class GyroscopeReading:
    timestamp: float
    samples: tuple[Vector3, ...]
    origin: Origin = Origin.MEASURED
    kind = SensorKind.GYROSCOPE

    @property
    def is_synthetic(self) -> bool:
        return self.origin is Origin.SYNTHETIC


@dataclass(frozen=True)
class MagnetometerReading:
    timestamp: float
    samples: tuple[Vector3, ...]
    origin: Origin = Origin.MEASURED
    kind = SensorKind.MAGNETOMETER

    @property
    def is_synthetic(self) -> bool:
        return self.origin is Origin.SYNTHETIC


SensorReading = Union[
    TemperatureReading,
    AccelerometerReading,
    HeartRateReading,
    EcgReading,
    GyroscopeReading,
    MagnetometerReading,
]


@dataclass(frozen=True)
class ActivityState:
    """Snapshot of the derived activity metrics."""

    steps: int = 0
    distance_meters: float = 0.0
    posture: Posture = Posture.UNKNOWN
    dribble_count: int = 0
    calories_burned: float = 0.0
    fall_detected: bool = False
    last_fall_timestamp: Optional[float] = None


@dataclass(frozen=True)
class Command:
    """Outbound request: raw payload plus a label for logs."""

    payload: bytes
    label: str

    def hex(self) -> str:
        return " ".join(f"{b:02X}" for b in self.payload)


@dataclass
class EcgRecording:
    started_at: float
    samples: list[int] = field(default_factory=list)
    is_active: bool = True


@dataclass(frozen=True)
class EcgCapture:
    """Samples handed back when an ECG recording stops."""

    samples: tuple[int, ...]
    started_at: float
    duration_seconds: float


@dataclass(frozen=True)
class StoredEcg:
    id: str
    timestamp: float
    samples: tuple[int, ...]
    duration_seconds: float
    name: Optional[str] = None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "samples": list(self.samples),
            "duration_seconds": self.duration_seconds,
            "name": self.name,
        }

    @staticmethod
    def from_dict(data: dict[str, object]) -> "StoredEcg":
        name = data.get("name")
        return StoredEcg(
            id=str(data["id"]),
            timestamp=float(data["timestamp"]),  # type: ignore[arg-type]
            samples=tuple(int(s) for s in data["samples"]),  # type: ignore[union-attr]
            duration_seconds=float(data["duration_seconds"]),  # type: ignore[arg-type]
            name=str(name) if name is not None else None,
        )
