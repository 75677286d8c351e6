"""Tunable timing constants and thresholds.

Defaults reproduce the behavior of the Movesense web client this receiver
replaces. Tests shrink the delays; the CLI maps its arguments onto these.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SessionConfig:
    """Timing and policy knobs for one device session.

    Attributes:
        command_spacing: Minimum seconds between two consecutive writes.
        command_queue_limit: Pending commands kept before the oldest is dropped.
        reconnect_delay: Seconds before the first reconnect attempt.
        reconnect_backoff_delay: Seconds before every later attempt.
        max_reconnect_attempts: Attempts before giving up and disconnecting.
        intentional_disconnect_grace: Seconds the intentional-disconnect flag
            stays set after ``disconnect()``, covering the transport's late
            drop notification.
        monitor_interval: Seconds between sensor health checks while connected.
            ``0`` disables the monitor.
        monitor_min_active: Active sensors below which the subscription
            sequence is re-sent.
        ecg_sample_rate_hz: Rate used to turn a sample count into a duration.
        synthetic_in_metrics: Feed placeholder readings to the activity engine
            and ECG recordings too.
    """

    command_spacing: float = 0.2
    command_queue_limit: int = 64
    reconnect_delay: float = 2.0
    reconnect_backoff_delay: float = 3.0
    max_reconnect_attempts: int = 3
    intentional_disconnect_grace: float = 1.0
    monitor_interval: float = 10.0
    monitor_min_active: int = 3
    ecg_sample_rate_hz: float = 128.0
    synthetic_in_metrics: bool = False


@dataclass(frozen=True)
class ActivityConfig:
    """Thresholds for the activity engine. Accelerations in g, times in ms."""

    gravity_alpha: float = 0.1
    step_threshold: float = 0.5
    step_cooldown_ms: float = 350.0
    stride_length_m: float = 0.7
    dribble_threshold: float = 1.8
    dribble_cooldown_ms: float = 150.0
    fall_threshold: float = 2.5
    fall_window_ms: float = 1000.0
    standing_max_angle: float = 30.0
    stooped_max_angle: float = 75.0
    hr_min: float = 40.0
    hr_max: float = 240.0
    weight_kg: float = 70.0
    age_years: float = 30.0
    male: bool = True
