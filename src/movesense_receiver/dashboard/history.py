"""Thread-safe rolling history of published readings for the dashboard."""

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional

from ..models import EcgReading, SensorKind, SensorReading


@dataclass
class HistoryStats:
    """Counters kept alongside the history buffers."""

    total_readings: int = 0
    synthetic_readings: int = 0
    per_kind: Dict[SensorKind, int] = field(default_factory=dict)
    last_timestamp: Optional[float] = None

    def update(self, reading: SensorReading) -> None:
        self.total_readings += 1
        if reading.is_synthetic:
            self.synthetic_readings += 1
        self.per_kind[reading.kind] = self.per_kind.get(reading.kind, 0) + 1
        self.last_timestamp = reading.timestamp


class ReadingHistory:
    """Last ``max_size`` readings per sensor kind plus a flat ECG trace.

    Written from the session's event loop thread, read from Dash callbacks.
    """

    def __init__(self, max_size: int = 500, ecg_max_samples: int = 1280):
        self._max_size = max_size
        self._readings: Dict[SensorKind, Deque[SensorReading]] = {
            kind: deque(maxlen=max_size) for kind in SensorKind
        }
        self._ecg: Deque[int] = deque(maxlen=ecg_max_samples)
        self._lock = threading.RLock()
        self._stats = HistoryStats()

    def __call__(self, reading: SensorReading) -> None:
        self.append(reading)

    def append(self, reading: SensorReading) -> None:
        with self._lock:
            self._readings[reading.kind].append(reading)
            if isinstance(reading, EcgReading) and not reading.is_synthetic:
                self._ecg.extend(reading.samples)
            self._stats.update(reading)

    def recent(self, kind: SensorKind, count: Optional[int] = None) -> List[SensorReading]:
        with self._lock:
            items = list(self._readings[kind])
        return items if count is None else items[-count:]

    def ecg_samples(self) -> List[int]:
        with self._lock:
            return list(self._ecg)

    def clear(self) -> None:
        with self._lock:
            for buffer in self._readings.values():
                buffer.clear()
            self._ecg.clear()
            self._stats = HistoryStats()

    @property
    def stats(self) -> HistoryStats:
        with self._lock:
            return HistoryStats(
                total_readings=self._stats.total_readings,
                synthetic_readings=self._stats.synthetic_readings,
                per_kind=dict(self._stats.per_kind),
                last_timestamp=self._stats.last_timestamp,
            )

    @property
    def max_size(self) -> int:
        return self._max_size
