import math
import random

import pytest

from movesense_receiver.activity import (
    ActivityEngine,
    classify_posture,
    keytel_kcal_per_minute,
    vertical_angle,
)
from movesense_receiver.config import ActivityConfig
from movesense_receiver.models import Posture, Vector3

# Gravity frozen at the first sample so linear acceleration is exact.
FROZEN_GRAVITY = ActivityConfig(gravity_alpha=0.0)


@pytest.fixture
def engine(clock, scheduler):
    clock.now = -1000.0
    engine = ActivityEngine(FROZEN_GRAVITY, clock=clock, call_later=scheduler.call_later)
    engine.process_accel_sample(0.0, 0.0, 1.0)  # seeds gravity
    return engine


def at(clock, engine, t, x, y=0.0, z=1.0):
    clock.now = t
    return engine.process_accel_sample(x, y, z)


def test_first_sample_seeds_gravity(clock):
    engine = ActivityEngine(clock=clock)
    assert engine.process_accel_sample(0.3, 0.2, 0.9) == 0.0
    assert engine.gravity == Vector3(0.3, 0.2, 0.9)


def test_gravity_low_pass_filter(clock):
    engine = ActivityEngine(clock=clock)
    engine.process_accel_sample(0.0, 0.0, 1.0)
    magnitude = engine.process_accel_sample(1.0, 0.0, 0.0)
    assert engine.gravity.x == pytest.approx(0.1)
    assert engine.gravity.z == pytest.approx(0.9)
    assert magnitude == pytest.approx(0.9 * math.sqrt(2))


def test_steps_within_cooldown_count_once(clock, engine):
    at(clock, engine, 0, 0.6)
    at(clock, engine, 100, 0.6)
    state = engine.snapshot()
    assert state.steps == 1
    assert state.distance_meters == pytest.approx(0.7)


def test_steps_past_cooldown_count_twice(clock, engine):
    at(clock, engine, 0, 0.6)
    at(clock, engine, 400, 0.6)
    state = engine.snapshot()
    assert state.steps == 2
    assert state.distance_meters == pytest.approx(1.4)


def test_step_cooldown_boundary_is_inclusive(clock, engine):
    at(clock, engine, 0, 0.6)
    at(clock, engine, 350, 0.6)
    assert engine.snapshot().steps == 2


def test_below_threshold_is_not_a_step(clock, engine):
    at(clock, engine, 0, 0.5)
    assert engine.snapshot().steps == 0


def test_step_count_never_decreases(clock, engine):
    rng = random.Random(7)
    previous = 0
    for i in range(500):
        at(clock, engine, i * 37.0, rng.uniform(-2, 2), rng.uniform(-2, 2), rng.uniform(-1, 3))
        steps = engine.snapshot().steps
        assert steps >= previous
        previous = steps


def test_dribble_cooldown(clock, engine):
    at(clock, engine, 0, 2.0)
    at(clock, engine, 100, 2.0)
    at(clock, engine, 160, 2.0)
    state = engine.snapshot()
    assert state.dribble_count == 2
    assert state.steps == 1


@pytest.mark.parametrize(
    "angle, posture",
    [(10, Posture.STANDING), (50, Posture.STOOPED), (90, Posture.LYING)],
)
def test_posture_from_gravity_angle(angle, posture):
    rad = math.radians(angle)
    gravity = Vector3(math.sin(rad), 0.0, math.cos(rad))
    assert vertical_angle(gravity) == pytest.approx(angle)
    assert classify_posture(vertical_angle(gravity)) is posture


def test_engine_posture_follows_gravity(clock):
    engine = ActivityEngine(FROZEN_GRAVITY, clock=clock)
    assert engine.snapshot().posture is Posture.UNKNOWN
    rad = math.radians(50)
    engine.process_accel_sample(math.sin(rad), 0.0, math.cos(rad))
    assert engine.snapshot().posture is Posture.STOOPED


def test_fall_flag_clears_after_window(clock, scheduler, engine):
    at(clock, engine, 0, 3.0)
    state = engine.snapshot()
    assert state.fall_detected
    assert state.last_fall_timestamp == 0

    scheduler.advance_to(999)
    assert engine.snapshot().fall_detected
    scheduler.advance_to(1000)
    assert not engine.snapshot().fall_detected


def test_newer_fall_keeps_flag_until_its_own_clear(clock, scheduler, engine):
    at(clock, engine, 0, 3.0)
    first_clear = scheduler.handles[-1]
    at(clock, engine, 500, 3.0)

    assert first_clear.cancelled
    # Even if the stale clear ran it must not touch the newer fall.
    first_clear.callback()
    assert engine.snapshot().fall_detected

    scheduler.advance_to(1000)
    assert engine.snapshot().fall_detected
    scheduler.advance_to(1500)
    assert not engine.snapshot().fall_detected
    assert engine.snapshot().last_fall_timestamp == 500


def test_expired_fall_cleared_by_next_sample_without_timer(clock):
    engine = ActivityEngine(FROZEN_GRAVITY, clock=clock, call_later=lambda d, cb: None)
    engine.process_accel_sample(0.0, 0.0, 1.0)
    at(clock, engine, 10, 3.0)
    assert engine.snapshot().fall_detected
    at(clock, engine, 1010, 0.0)
    assert not engine.snapshot().fall_detected


def test_reset_cancels_pending_fall_clear(clock, scheduler, engine):
    at(clock, engine, 0, 3.0)
    engine.reset()
    assert scheduler.pending == []
    state = engine.snapshot()
    assert state.steps == 0
    assert not state.fall_detected
    assert engine.gravity is None


def test_calories_follow_keytel_formula(clock):
    engine = ActivityEngine(clock=clock)
    assert engine.update_calories(100) == 0.0  # anchors the clock
    clock.advance(60_000)
    assert engine.update_calories(100) == pytest.approx(keytel_kcal_per_minute(100))
    assert keytel_kcal_per_minute(100) == pytest.approx(
        (-55.0969 + 63.09 + 0.1988 * 70 + 0.2017 * 30) / 4.184
    )


def test_calories_idempotent_for_same_heart_rate_and_time(clock):
    engine = ActivityEngine(clock=clock)
    engine.update_calories(120)
    clock.advance(30_000)
    first = engine.update_calories(120)
    assert engine.update_calories(120) == first


def test_calories_ignore_out_of_range_heart_rate(clock):
    engine = ActivityEngine(clock=clock)
    engine.update_calories(100)
    clock.advance(60_000)
    total = engine.update_calories(100)
    clock.advance(60_000)
    assert engine.update_calories(30) == total
    assert engine.update_calories(250) == total


def test_calories_never_decrease(clock):
    engine = ActivityEngine(clock=clock)
    engine.update_calories(150)
    clock.advance(60_000)
    total = engine.update_calories(150)
    clock.advance(10_000)
    assert engine.update_calories(45) == total


def test_start_activity_anchors_calorie_clock(clock):
    engine = ActivityEngine(clock=clock)
    engine.start_activity()
    clock.advance(120_000)
    assert engine.update_calories(100) == pytest.approx(2 * keytel_kcal_per_minute(100))


def test_female_calorie_factor():
    female = ActivityConfig(male=False)
    assert keytel_kcal_per_minute(100, female) == pytest.approx(
        0.85 * keytel_kcal_per_minute(100)
    )


def test_cancel_timers_keeps_counters(clock, scheduler, engine):
    at(clock, engine, 0, 3.0)
    engine.cancel_timers()
    assert scheduler.pending == []
    state = engine.snapshot()
    assert state.steps == 1
    assert state.fall_detected
