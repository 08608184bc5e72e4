# app/lifecycle.py
import datetime as dt
import enum
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from config import DEFAULT_MAX_DETENTION_MINUTES
from geofence import END, START, VIA, Presence, RouteGeofences, SignificantLocation
from logging_config import get_logger
from variables import PENDING_STAGES, MovementStatus, TripStage

logger = get_logger("lifecycle", "lifecycle.log")

TRIP_COMPLETED = "TRIP_COMPLETED"
TRIP_STAGE_CHANGE = "trip_stage_change"
ACTIVE_STATUS_CHANGE = "active_status_change"


class StatusKind(str, enum.Enum):
    INACTIVE = "Inactive"
    REACHED_START = "ReachedStart"
    DETAINED_START = "DetainedStart"
    RUNNING_ON_ROUTE = "RunningOnRoute"
    HALTED = "Halted"
    REACHED_VIA = "ReachedVia"
    DETAINED_VIA = "DetainedVia"
    REACHED_END = "ReachedEnd"
    DETAINED_END = "DetainedEnd"
    COMPLETED = "Completed"


_LABELS = {
    StatusKind.INACTIVE: "Inactive",
    StatusKind.REACHED_START: "Reached Start Location",
    StatusKind.DETAINED_START: "Detained At Start Location",
    StatusKind.RUNNING_ON_ROUTE: "Running On Route",
    StatusKind.HALTED: "Halted",
    StatusKind.REACHED_VIA: "Reached Via Location",
    StatusKind.DETAINED_VIA: "Detained At Via Location",
    StatusKind.REACHED_END: "Reached End Location",
    StatusKind.DETAINED_END: "Detained At End Location",
    StatusKind.COMPLETED: "Completed",
}

# (reached, detained) per geofence role
_PRESENCE_KINDS = {
    START: (StatusKind.REACHED_START, StatusKind.DETAINED_START),
    VIA: (StatusKind.REACHED_VIA, StatusKind.DETAINED_VIA),
    END: (StatusKind.REACHED_END, StatusKind.DETAINED_END),
}


@dataclass(frozen=True)
class ActiveStatus:
    kind: StatusKind
    name: Optional[str] = None    # only set for via locations

    @classmethod
    def from_document(cls, doc) -> "ActiveStatus":
        if not isinstance(doc, dict):
            return cls(StatusKind.INACTIVE)
        try:
            return cls(StatusKind(doc.get("kind")), doc.get("name"))
        except ValueError:
            logger.warning(f"[lifecycle] Unknown active status {doc!r}, treating as Inactive")
            return cls(StatusKind.INACTIVE)

    def to_document(self) -> dict:
        return {"kind": self.kind.value, "name": self.name}

    def render(self) -> str:
        label = _LABELS[self.kind]
        if self.name and self.kind in (StatusKind.REACHED_VIA, StatusKind.DETAINED_VIA):
            return f"{label} ({self.name})"
        return label


INACTIVE = ActiveStatus(StatusKind.INACTIVE)


@dataclass
class LifecycleOutcome:
    trip_stage: TripStage
    active_status: ActiveStatus
    sets: dict = field(default_factory=dict)
    events: List[dict] = field(default_factory=list)
    # (event_type, rendered new status) per change, for alert dispatch
    changes: List[Tuple[str, str]] = field(default_factory=list)


def presence_status(current: SignificantLocation, fences: RouteGeofences, at: dt.datetime) -> ActiveStatus:
    reached, detained = _PRESENCE_KINDS[current.location_type]
    fence = fences.find(current)
    limit = DEFAULT_MAX_DETENTION_MINUTES
    if fence is not None and fence.max_detention_time is not None:
        limit = fence.max_detention_time
    kind = detained if current.dwell_minutes(at) > limit else reached
    name = current.location_name if current.location_type == VIA else None
    return ActiveStatus(kind, name)


def movement_status_fallback(movement_status: MovementStatus) -> ActiveStatus:
    if movement_status == MovementStatus.HALTED:
        return ActiveStatus(StatusKind.HALTED)
    return ActiveStatus(StatusKind.RUNNING_ON_ROUTE)


def _change_event(event_type: str, event_name: str, at: dt.datetime, location) -> dict:
    return {
        "event_type": event_type,
        "event_name": event_name,
        "event_time": at.isoformat(),
        "event_start_time": at.isoformat(),
        "event_end_time": at.isoformat(),
        "event_duration": 0,
        "event_distance": 0,
        "event_location": list(location) if location else None,
    }


def advance_lifecycle(
    trip_stage: TripStage,
    active_status: ActiveStatus,
    planned_start_time: Optional[dt.datetime],
    presence: Presence,
    fences: RouteGeofences,
    movement_status: MovementStatus,
    at: dt.datetime,
    now: Optional[dt.datetime] = None,
    location=None,
) -> LifecycleOutcome:
    """
    One step of the trip_stage x active_status machine.

    `at` is the truck point time (entry, exit and detention are measured against it),
    `now` the wall clock used for the start-delay check.
    """
    now = now or dt.datetime.now(dt.timezone.utc)
    new_stage, new_status = trip_stage, active_status
    sets = {}
    current = presence.current

    if trip_stage in PENDING_STAGES:
        if current is not None and current.location_type == START:
            new_stage = TripStage.ACTIVE
            new_status = presence_status(current, fences, at)
            sets["actual_start_time"] = at
        elif trip_stage == TripStage.PLANNED and planned_start_time is not None and now > planned_start_time:
            new_stage = TripStage.START_DELAYED
            new_status = INACTIVE

    elif trip_stage == TripStage.ACTIVE:
        if presence.closed is not None and presence.closed.location_type == END:
            new_stage = TripStage.COMPLETED
            new_status = ActiveStatus(StatusKind.COMPLETED)
            sets["actual_end_time"] = at
            sets["end_reason"] = TRIP_COMPLETED
        elif current is not None and current.location_type in _PRESENCE_KINDS:
            new_status = presence_status(current, fences, at)
        else:
            new_status = movement_status_fallback(movement_status)

    # terminal stages fall through unchanged

    outcome = LifecycleOutcome(new_stage, new_status, sets)
    if new_stage != trip_stage:
        name = f"Trip Stage Changed to {new_stage.value}"
        outcome.events.append(_change_event(TRIP_STAGE_CHANGE, name, at, location))
        outcome.changes.append((TRIP_STAGE_CHANGE, new_stage.value))
        logger.info(f"[lifecycle] stage {trip_stage.value} -> {new_stage.value}")
    if new_status != active_status:
        rendered = new_status.render()
        outcome.events.append(_change_event(ACTIVE_STATUS_CHANGE, f"Active Status Changed to {rendered}", at, location))
        outcome.changes.append((ACTIVE_STATUS_CHANGE, rendered))
        logger.info(f"[lifecycle] status {active_status.render()} -> {rendered}")
    return outcome
