"""Persistent store for finished ECG captures.

All captures live in one JSON file, newest first. The whole list is loaded
on construction and rewritten on every change.
"""

import json
import logging
import threading
import time
import uuid
from pathlib import Path
from typing import List, Optional, Sequence

from .models import StoredEcg

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_RATE_HZ = 128.0


class EcgStore:
    """JSON-file backed list of :class:`StoredEcg` records."""

    def __init__(self, path: Path, sample_rate_hz: float = DEFAULT_SAMPLE_RATE_HZ):
        self._path = Path(path)
        self._sample_rate_hz = sample_rate_hz
        self._records: List[StoredEcg] = []
        self._lock = threading.Lock()
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def save(
        self,
        samples: Sequence[int],
        timestamp: Optional[float] = None,
        name: Optional[str] = None,
    ) -> str:
        """Store a capture and return its id.

        ``timestamp`` is wall-clock milliseconds since the epoch; it defaults
        to now.
        """
        record = StoredEcg(
            id=str(uuid.uuid4()),
            timestamp=time.time() * 1000.0 if timestamp is None else timestamp,
            samples=tuple(int(s) for s in samples),
            duration_seconds=len(samples) / self._sample_rate_hz,
            name=name,
        )
        with self._lock:
            self._records.insert(0, record)
            self._write()
        logger.info(
            f"Stored ECG {record.id}: {len(record.samples)} samples, "
            f"{record.duration_seconds:.1f}s"
        )
        return record.id

    def list(self) -> List[StoredEcg]:
        with self._lock:
            return list(self._records)

    def get(self, ecg_id: str) -> Optional[StoredEcg]:
        with self._lock:
            for record in self._records:
                if record.id == ecg_id:
                    return record
        return None

    def rename(self, ecg_id: str, name: str) -> bool:
        with self._lock:
            for i, record in enumerate(self._records):
                if record.id == ecg_id:
                    self._records[i] = StoredEcg(
                        id=record.id,
                        timestamp=record.timestamp,
                        samples=record.samples,
                        duration_seconds=record.duration_seconds,
                        name=name,
                    )
                    self._write()
                    return True
        return False

    def delete(self, ecg_id: str) -> bool:
        with self._lock:
            remaining = [r for r in self._records if r.id != ecg_id]
            if len(remaining) == len(self._records):
                return False
            self._records = remaining
            self._write()
        logger.info(f"Deleted ECG {ecg_id}")
        return True

    def clear(self) -> None:
        with self._lock:
            self._records = []
            if self._path.exists():
                self._path.unlink()
        logger.info("Cleared all stored ECG records")

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
            self._records = [StoredEcg.from_dict(item) for item in data]
            logger.info(f"Loaded {len(self._records)} ECG records from {self._path}")
        except (OSError, ValueError, KeyError, TypeError) as e:
            # Unreadable store: start empty, the file is replaced on next save.
            logger.error(f"Error loading ECG records from {self._path}: {e}")
            self._records = []

    def _write(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump([r.to_dict() for r in self._records], f, indent=2)
        tmp_path.replace(self._path)
