import datetime as dt

import pytest

from conftest import T0, buffer_samples, sample, set_last_position
from motion import (
    PathPoint, extract_motion_window, parse_samples, resolve_movement, summarize_window,
    track_halt, weighted_average_speed,
)
from variables import MovementStatus, TripStage


def _points(*specs):
    return [
        PathPoint(dt_tracker=T0 + dt.timedelta(minutes=i), lat=28.0 + i * 0.001, lng=77.0, speed=speed, acc=acc)
        for i, (speed, acc) in enumerate(specs)
    ]


def test_all_halted_samples_are_halted():
    window = summarize_window(_points((0, 0), (1.5, 0), (0, 0)))
    assert window.drive_status == MovementStatus.HALTED
    assert window.total_distance == 0
    assert window.average_speed == 0
    assert window.run_duration == 0


def test_all_moving_samples_are_driving():
    window = summarize_window(_points((40, 1), (60, 1), (50, 1)))
    assert window.drive_status == MovementStatus.DRIVING
    assert window.top_speed == 60
    # pair midpoints 50 and 55
    assert window.average_speed == pytest.approx(52.5)
    assert window.run_duration == 120
    assert window.total_distance == pytest.approx(222.4, rel=0.01)


def test_mixed_samples_are_unknown_and_only_moving_pairs_count():
    window = summarize_window(_points((40, 1), (0, 0), (30, 1), (50, 1)))
    assert window.drive_status == MovementStatus.UNKNOWN
    assert window.top_speed == 50
    assert window.average_speed == pytest.approx(40)
    assert window.run_duration == 60


def test_window_without_moving_pairs_has_zero_aggregates():
    window = summarize_window(_points((40, 1), (0, 0), (40, 1)))
    assert window.average_speed == 0
    assert window.total_distance == 0
    assert window.top_speed == 0
    assert window.truck_point.speed == 40


def test_parse_samples_drops_invalid_and_sorts():
    raw = [
        sample(T0 + dt.timedelta(minutes=2), 28.002, 77.0),
        "not json",
        sample(T0, 0, 0),
        sample(T0, 95.0, 77.0),
        '{"lat": 28.0, "lng": 77.0}',
        sample(T0 + dt.timedelta(minutes=1), 28.001, 77.0, fuelLevel=120.5),
    ]
    points = parse_samples(raw)
    assert [p.lat for p in points] == [28.001, 28.002]
    assert points[0].fuel_level == 120.5


async def test_active_trip_drains_buffer(redis_mock):
    await buffer_samples(
        redis_mock, "dev-1",
        sample(T0 + dt.timedelta(minutes=1), 28.001, 77.0),
        sample(T0, 28.0, 77.0),
    )
    window = await extract_motion_window(redis_mock, "dev-1", TripStage.ACTIVE)

    assert window.truck_point.dt_tracker == T0 + dt.timedelta(minutes=1)
    assert [p.dt_tracker for p in window.points] == [T0, T0 + dt.timedelta(minutes=1)]
    assert "dev-1:rawTripPath" not in redis_mock.lists

    # destructive read: the next tick sees nothing
    assert await extract_motion_window(redis_mock, "dev-1", TripStage.ACTIVE) is None


async def test_pending_trip_uses_last_position(redis_mock):
    await set_last_position(redis_mock, "dev-1", T0, 28.0, 77.0)
    window = await extract_motion_window(redis_mock, "dev-1", TripStage.PLANNED)

    assert len(window.points) == 1
    assert window.truck_point.lat == 28.0
    assert window.drive_status == MovementStatus.UNKNOWN


async def test_pending_trip_without_cache_is_skipped(redis_mock):
    assert await extract_motion_window(redis_mock, "dev-1", TripStage.START_DELAYED) is None


async def test_buffer_error_returns_none(redis_mock):
    redis_mock.fail_reads = True
    await buffer_samples(redis_mock, "dev-1", sample(T0, 28.0, 77.0))
    assert await extract_motion_window(redis_mock, "dev-1", TripStage.ACTIVE) is None


def test_unknown_drive_status_keeps_previous_movement():
    assert resolve_movement(MovementStatus.HALTED, MovementStatus.UNKNOWN) == MovementStatus.HALTED
    assert resolve_movement(MovementStatus.HALTED, MovementStatus.DRIVING) == MovementStatus.DRIVING


def test_halt_tracking_accumulates_into_parked_duration():
    start = track_halt(MovementStatus.HALTED, None, 0, 10, T0)
    assert start.halt_start_time == T0
    assert start.current_halt_duration == 0

    later = track_halt(MovementStatus.HALTED, T0, 0, 10, T0 + dt.timedelta(minutes=25, seconds=30))
    assert later.current_halt_duration == 25

    resumed = track_halt(MovementStatus.DRIVING, T0, 25, 10, T0 + dt.timedelta(minutes=26))
    assert resumed.parked_duration == 35
    assert resumed.halt_start_time is None
    assert resumed.current_halt_duration == 0


def test_weighted_average_speed():
    assert weighted_average_speed(40, 600, 60, 200) == pytest.approx(45)
    assert weighted_average_speed(None, None, 30, 0) == 30
