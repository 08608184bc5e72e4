import datetime as dt
from types import SimpleNamespace

import pytest

from conftest import END, START, T0, VIA
from geofence import Presence, RouteGeofences, SignificantLocation
from lifecycle import (
    ACTIVE_STATUS_CHANGE, INACTIVE, TRIP_COMPLETED, TRIP_STAGE_CHANGE, ActiveStatus, StatusKind,
    advance_lifecycle,
)
from variables import MovementStatus, TripStage

FENCES = RouteGeofences.from_route(SimpleNamespace(start_location=START, end_location=END, via_locations=[VIA]))
RUNNING = ActiveStatus(StatusKind.RUNNING_ON_ROUTE)


def _at(name, role, minutes_ago, at=T0):
    return SignificantLocation(name, role, entry_time=at - dt.timedelta(minutes=minutes_ago))


def _advance(stage, status, presence, movement=MovementStatus.DRIVING, now=None, planned=T0):
    return advance_lifecycle(stage, status, planned, presence, FENCES, movement, T0, now=now or T0)


def test_planned_trip_at_start_becomes_active_immediately():
    outcome = _advance(TripStage.PLANNED, INACTIVE, Presence(_at("Plant", "start", 0), opened=True),
                       planned=T0 + dt.timedelta(hours=5))
    assert outcome.trip_stage == TripStage.ACTIVE
    assert outcome.active_status.render() == "Reached Start Location"
    assert outcome.sets == {"actual_start_time": T0}
    assert [e["event_type"] for e in outcome.events] == [TRIP_STAGE_CHANGE, ACTIVE_STATUS_CHANGE]
    assert outcome.changes == [(TRIP_STAGE_CHANGE, "Active"), (ACTIVE_STATUS_CHANGE, "Reached Start Location")]


def test_planned_trip_past_start_time_is_delayed():
    outcome = _advance(TripStage.PLANNED, INACTIVE, Presence(None), now=T0 + dt.timedelta(minutes=1))
    assert outcome.trip_stage == TripStage.START_DELAYED
    assert outcome.active_status == INACTIVE
    assert outcome.changes == [(TRIP_STAGE_CHANGE, "Start Delayed")]


def test_planned_trip_before_start_time_is_unchanged():
    outcome = _advance(TripStage.PLANNED, INACTIVE, Presence(None), now=T0 - dt.timedelta(minutes=1))
    assert outcome.trip_stage == TripStage.PLANNED
    assert outcome.events == []


def test_delayed_trip_reaching_start_becomes_active():
    outcome = _advance(TripStage.START_DELAYED, INACTIVE, Presence(_at("Plant", "start", 0), opened=True))
    assert outcome.trip_stage == TripStage.ACTIVE


@pytest.mark.parametrize("dwell,expected", [
    (29, "Reached Via Location (Depot 4)"),
    (30, "Reached Via Location (Depot 4)"),
    (31, "Detained At Via Location (Depot 4)"),
])
def test_via_detention_uses_geofence_limit(dwell, expected):
    outcome = _advance(TripStage.ACTIVE, RUNNING, Presence(_at("Depot 4", "via", dwell)))
    assert outcome.active_status.render() == expected


@pytest.mark.parametrize("dwell,kind", [(120, StatusKind.REACHED_END), (121, StatusKind.DETAINED_END)])
def test_default_detention_limit_applies_without_geofence_value(dwell, kind):
    outcome = _advance(TripStage.ACTIVE, RUNNING, Presence(_at("Warehouse", "end", dwell)))
    assert outcome.active_status.kind == kind


def test_leaving_end_completes_trip():
    closed = _at("Warehouse", "end", 15).close(T0)
    outcome = _advance(TripStage.ACTIVE, ActiveStatus(StatusKind.REACHED_END), Presence(None, closed=closed))
    assert outcome.trip_stage == TripStage.COMPLETED
    assert outcome.active_status.render() == "Completed"
    assert outcome.sets == {"actual_end_time": T0, "end_reason": TRIP_COMPLETED}
    assert len(outcome.events) == 2


def test_leaving_via_falls_back_to_movement():
    closed = _at("Depot 4", "via", 15).close(T0)
    status = ActiveStatus(StatusKind.REACHED_VIA, "Depot 4")
    outcome = _advance(TripStage.ACTIVE, status, Presence(None, closed=closed), movement=MovementStatus.HALTED)
    assert outcome.trip_stage == TripStage.ACTIVE
    assert outcome.active_status.render() == "Halted"


def test_unchanged_status_emits_nothing():
    outcome = _advance(TripStage.ACTIVE, RUNNING, Presence(None), movement=MovementStatus.UNKNOWN)
    assert outcome.active_status == RUNNING
    assert outcome.events == []
    assert outcome.changes == []


@pytest.mark.parametrize("stage", [TripStage.COMPLETED, TripStage.ABORTED, TripStage.CANCELLED])
def test_terminal_stages_never_transition(stage):
    outcome = _advance(stage, INACTIVE, Presence(_at("Plant", "start", 0), opened=True))
    assert outcome.trip_stage == stage
    assert outcome.events == []


def test_active_status_document_roundtrip():
    status = ActiveStatus(StatusKind.DETAINED_VIA, "Depot 4")
    assert ActiveStatus.from_document(status.to_document()) == status
    assert ActiveStatus.from_document({"kind": "Bogus"}) == INACTIVE
    assert ActiveStatus.from_document(None) == INACTIVE
