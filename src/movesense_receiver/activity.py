"""Activity metrics derived from accelerometer and heart rate samples.

The engine keeps a low-pass gravity estimate and subtracts it from every
accelerometer sample. Three detectors run on the magnitude of the remaining
linear acceleration (step, dribble, fall) and posture is read from the
gravity vector's tilt. Calories come from the Keytel heart-rate formula.

Time and scheduling are injected: ``clock`` returns milliseconds and
``call_later(seconds, callback)`` schedules the fall-flag clear. The default
scheduler uses the running asyncio loop.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Any, Callable, Optional

from .config import ActivityConfig
from .models import ActivityState, Posture, Vector3

logger = logging.getLogger(__name__)

CallLater = Callable[[float, Callable[[], None]], Any]


def loop_call_later(delay: float, callback: Callable[[], None]) -> Optional[asyncio.TimerHandle]:
    """Schedule ``callback`` on the running loop, or return None without one."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.debug("No running event loop, timer of %.3fs not scheduled", delay)
        return None
    return loop.call_later(delay, callback)


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


def vertical_angle(gravity: Vector3) -> float:
    """Tilt of the gravity vector away from the device z axis, in degrees."""
    horizontal = math.sqrt(gravity.x * gravity.x + gravity.y * gravity.y)
    return math.atan2(horizontal, gravity.z) * 180.0 / math.pi


def classify_posture(angle: float, config: ActivityConfig = ActivityConfig()) -> Posture:
    if angle < config.standing_max_angle:
        return Posture.STANDING
    if angle < config.stooped_max_angle:
        return Posture.STOOPED
    return Posture.LYING


def keytel_kcal_per_minute(heart_rate: float, config: ActivityConfig = ActivityConfig()) -> float:
    """Energy expenditure estimate (Keytel et al.) for the configured subject."""
    kcal = (
        -55.0969
        + 0.6309 * heart_rate
        + 0.1988 * config.weight_kg
        + 0.2017 * config.age_years
    ) / 4.184
    return kcal if config.male else kcal * 0.85


class ActivityEngine:
    """Rolling activity state for one session.

    Only this class mutates its counters and filter state; other components
    read :meth:`snapshot`.
    """

    def __init__(
        self,
        config: ActivityConfig = ActivityConfig(),
        clock: Optional[Callable[[], float]] = None,
        call_later: Optional[CallLater] = None,
    ) -> None:
        self._config = config
        self._clock = clock or _monotonic_ms
        self._call_later = call_later or loop_call_later
        self._fall_clear_handle: Any = None
        self.reset()

    def reset(self) -> None:
        """Zero all counters, reseed gravity and cancel the pending fall clear."""
        self._cancel_fall_clear()
        self._steps = 0
        self._distance = 0.0
        self._posture = Posture.UNKNOWN
        self._dribbles = 0
        self._calories = 0.0
        self._fall_detected = False
        self._last_fall_timestamp: Optional[float] = None
        self._gravity: Optional[Vector3] = None
        self._last_step_timestamp: Optional[float] = None
        self._last_dribble_timestamp: Optional[float] = None
        self._activity_start: Optional[float] = None

    def start_activity(self) -> None:
        """Reset and start the calorie clock now."""
        self.reset()
        self._activity_start = self._clock()
        logger.info("Activity tracking started")

    def cancel_timers(self) -> None:
        """Cancel the pending fall-flag clear; counters are left as they are."""
        self._cancel_fall_clear()

    @property
    def gravity(self) -> Optional[Vector3]:
        return self._gravity

    def snapshot(self) -> ActivityState:
        return ActivityState(
            steps=self._steps,
            distance_meters=self._distance,
            posture=self._posture,
            dribble_count=self._dribbles,
            calories_burned=self._calories,
            fall_detected=self._fall_detected,
            last_fall_timestamp=self._last_fall_timestamp,
        )

    def process_accel_sample(self, x: float, y: float, z: float) -> float:
        """Feed one accelerometer sample in g.

        Returns:
            Magnitude of the linear (gravity-free) acceleration, in g.
        """
        cfg = self._config
        now = self._clock()

        if self._gravity is None:
            self._gravity = Vector3(x, y, z)
        else:
            a = cfg.gravity_alpha
            g = self._gravity
            self._gravity = Vector3(
                g.x * (1 - a) + x * a,
                g.y * (1 - a) + y * a,
                g.z * (1 - a) + z * a,
            )
        g = self._gravity
        magnitude = Vector3(x - g.x, y - g.y, z - g.z).magnitude

        if self._fall_detected and self._fall_expired(now):
            self._fall_detected = False

        if magnitude > cfg.step_threshold and self._cooled_down(
            self._last_step_timestamp, now, cfg.step_cooldown_ms
        ):
            self._last_step_timestamp = now
            self._steps += 1
            self._distance += cfg.stride_length_m
            logger.debug("Step %d (|a|=%.3fg)", self._steps, magnitude)

        if magnitude > cfg.dribble_threshold and self._cooled_down(
            self._last_dribble_timestamp, now, cfg.dribble_cooldown_ms
        ):
            self._last_dribble_timestamp = now
            self._dribbles += 1

        # No hysteresis: every sample overwrites the posture.
        self._posture = classify_posture(vertical_angle(g), cfg)

        if magnitude > cfg.fall_threshold:
            self._record_fall(now, magnitude)

        return magnitude

    def update_calories(self, heart_rate: float) -> float:
        """Recompute total calories from the latest heart rate.

        The total is ``kcal/min(heart_rate) * minutes since the first call``,
        so repeated calls with the same heart rate at the same elapsed time
        give the same value. It never decreases within a session.
        """
        cfg = self._config
        if not heart_rate or heart_rate < cfg.hr_min or heart_rate > cfg.hr_max:
            return self._calories

        now = self._clock()
        if self._activity_start is None:
            self._activity_start = now

        elapsed_minutes = (now - self._activity_start) / 60000.0
        total = keytel_kcal_per_minute(heart_rate, cfg) * elapsed_minutes
        self._calories = max(self._calories, total)
        return self._calories

    @staticmethod
    def _cooled_down(last: Optional[float], now: float, cooldown_ms: float) -> bool:
        return last is None or now - last >= cooldown_ms

    def _fall_expired(self, now: float) -> bool:
        return (
            self._last_fall_timestamp is not None
            and now - self._last_fall_timestamp >= self._config.fall_window_ms
        )

    def _record_fall(self, now: float, magnitude: float) -> None:
        self._fall_detected = True
        self._last_fall_timestamp = now
        logger.info("⚠️ Fall detected (|a|=%.2fg)", magnitude)

        self._cancel_fall_clear()
        self._fall_clear_handle = self._call_later(
            self._config.fall_window_ms / 1000.0, lambda: self._clear_fall(now)
        )

    def _clear_fall(self, fall_timestamp: float) -> None:
        # A newer fall owns the flag now; this clear is stale.
        if self._last_fall_timestamp != fall_timestamp:
            return
        self._fall_detected = False
        self._fall_clear_handle = None

    def _cancel_fall_clear(self) -> None:
        if self._fall_clear_handle is not None:
            self._fall_clear_handle.cancel()
        self._fall_clear_handle = None
