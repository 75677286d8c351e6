"""CSV recording of published sensor readings.

Every reading becomes one CSV row tagged with its sensor kind and origin, so
placeholder values can be filtered out afterwards. Closing a file recording
writes a ``.meta.json`` sidecar next to it.
"""

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, TextIO

from .models import (
    AccelerometerReading,
    EcgReading,
    GyroscopeReading,
    HeartRateReading,
    MagnetometerReading,
    SensorReading,
    TemperatureReading,
)

logger = logging.getLogger(__name__)

CSV_HEADER = "timestamp_ms,kind,origin,x,y,z,value,samples\n"


def format_csv_row(reading: SensorReading) -> str:
    """One CSV line for ``reading``.

    Vector readings fill x/y/z from their first sample and put the sample
    count in ``samples``; ECG puts its raw samples there, space separated.
    """
    x = y = z = value = samples = ""
    if isinstance(reading, TemperatureReading):
        value = f"{reading.celsius:.2f}"
    elif isinstance(reading, HeartRateReading):
        value = f"{reading.bpm:.1f}"
    elif isinstance(reading, EcgReading):
        samples = " ".join(str(s) for s in reading.samples)
    elif isinstance(reading, AccelerometerReading):
        x, y, z = f"{reading.x:.6f}", f"{reading.y:.6f}", f"{reading.z:.6f}"
        value = f"{reading.magnitude:.6f}"
        samples = str(len(reading.samples))
    elif isinstance(reading, (GyroscopeReading, MagnetometerReading)):
        first = reading.samples[0]
        x, y, z = f"{first.x:.6f}", f"{first.y:.6f}", f"{first.z:.6f}"
        value = f"{first.magnitude:.6f}"
        samples = str(len(reading.samples))
    return (
        f"{reading.timestamp:.1f},{reading.kind.value},{reading.origin.value},"
        f"{x},{y},{z},{value},{samples}\n"
    )


def recording_path(output_dir: Path, prefix: Optional[str] = None) -> Path:
    """``<output_dir>/<YYYY-MM-DD>/<prefix>_<YYYYmmdd_HHMMSS>.csv``"""
    now = datetime.now()
    filename = f"{prefix or 'movesense'}_{now.strftime('%Y%m%d_%H%M%S')}.csv"
    return output_dir / now.strftime("%Y-%m-%d") / filename


@dataclass
class RecordingSummary:
    """Information about a finished recording."""

    session_id: str
    start_time: datetime
    end_time: datetime
    duration_seconds: float
    total_rows: int
    file_path: Path
    file_size_bytes: int


class ReadingRecorder:
    """Buffered CSV writer; call the instance with each reading.

    Rows are flushed every ``buffer_size`` readings and on close.
    """

    def __init__(self, filepath: Path, buffer_size: int = 100, device_name: str = ""):
        self._filepath = Path(filepath)
        self._buffer_size = buffer_size
        self._device_name = device_name
        self._write_buffer: List[str] = []
        self._file_handle: Optional[TextIO] = None
        self._row_count = 0
        self._start_time = datetime.now(timezone.utc)
        self._lock = threading.Lock()

    @property
    def filepath(self) -> Path:
        return self._filepath

    @property
    def rows_written(self) -> int:
        with self._lock:
            return self._row_count

    def open(self) -> None:
        """Create the file and write the CSV header."""
        self._filepath.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._file_handle = open(self._filepath, "w", newline="", encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to open recording file {self._filepath}: {e}")
            raise
        self._file_handle.write(CSV_HEADER)
        self._file_handle.flush()
        self._start_time = datetime.now(timezone.utc)
        logger.info(f"Opened recording file: {self._filepath}")

    def __call__(self, reading: SensorReading) -> None:
        self.record(reading)

    def record(self, reading: SensorReading) -> None:
        if self._file_handle is None:
            raise RuntimeError("File not open for writing")
        with self._lock:
            self._write_buffer.append(format_csv_row(reading))
            self._row_count += 1
            if len(self._write_buffer) >= self._buffer_size:
                self._flush_internal()

    def flush(self) -> None:
        with self._lock:
            self._flush_internal()

    def _flush_internal(self) -> None:
        if not self._write_buffer or self._file_handle is None:
            return
        self._file_handle.writelines(self._write_buffer)
        self._write_buffer.clear()
        self._file_handle.flush()

    def close(self) -> RecordingSummary:
        """Flush, close and write the metadata sidecar."""
        with self._lock:
            if self._file_handle is None:
                raise RuntimeError("File not open")
            try:
                self._flush_internal()
            finally:
                self._file_handle.close()
                self._file_handle = None

            end_time = datetime.now(timezone.utc)
            duration = (end_time - self._start_time).total_seconds()
            file_size = self._filepath.stat().st_size
            self._write_metadata_file(end_time, duration, file_size)

            summary = RecordingSummary(
                session_id=self._filepath.stem,
                start_time=self._start_time,
                end_time=end_time,
                duration_seconds=duration,
                total_rows=self._row_count,
                file_path=self._filepath,
                file_size_bytes=file_size,
            )
        logger.info(
            f"Closed recording: {summary.total_rows} rows, "
            f"{duration:.1f}s, {file_size} bytes"
        )
        return summary

    def _write_metadata_file(
        self, end_time: datetime, duration: float, file_size: int
    ) -> None:
        metadata_path = self._filepath.with_suffix(".meta.json")
        metadata = {
            "session_id": self._filepath.stem,
            "start_time": self._start_time.isoformat(),
            "end_time": end_time.isoformat(),
            "duration_seconds": duration,
            "total_rows": self._row_count,
            "file_path": str(self._filepath),
            "file_size_bytes": file_size,
            "device_info": {
                "name": self._device_name or "Movesense",
                "connection_type": "BLE",
            },
            "recording_settings": {"buffer_size": self._buffer_size},
        }
        try:
            with open(metadata_path, "w", encoding="utf-8") as f:
                json.dump(metadata, f, indent=2)
        except OSError as e:
            logger.warning(f"Failed to write metadata file: {e}")
