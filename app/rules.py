# app/rules.py
import datetime as dt
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pytz

from config import TRIP_TIMEZONE
from crud import to_dt
from geo import path_length_m
from logging_config import get_logger
from route_matcher import REVERSE
from variables import MovementStatus, RuleState

logger = get_logger("rules", "rules.log")

DRIVING_TIME = "driving_time_status"
SPEED = "speed_status"
HALT_TIME = "halt_time_status"
ROUTE = "route_violation_status"

EVENT_NAMES = {
    DRIVING_TIME: "Driving Time Violation",
    SPEED: "Speed Violation",
    HALT_TIME: "Halt Time Violation",
    ROUTE: "Route Violation",
}
REVERSE_TRAVEL_EVENT = "Reverse Travel"
RULE_VIOLATION = "rule_violation"
RULE_RESOLUTION = "rule_resolution"

# rule_status accumulators owned by the route rule
REVERSE_FIELDS = ("reverse_travel_distance", "reverse_travel_path", "reverse_travel_start_time")


# =====================================================================
# Configured rule set
# =====================================================================
def _parse_clock(value) -> dt.time:
    parts = [int(p) for p in str(value).strip().split(":")]
    if not 2 <= len(parts) <= 3:
        raise ValueError(f"bad clock value {value!r}")
    return dt.time(*parts)


def _positive_number(value) -> float:
    number = float(value)
    if number < 0:
        raise ValueError(f"negative threshold {value!r}")
    return number


@dataclass(frozen=True)
class DrivingWindow:
    start: dt.time
    end: dt.time

    def allows(self, t: dt.time) -> bool:
        if self.start <= self.end:
            return self.start <= t <= self.end
        # window wraps midnight
        return t >= self.start or t <= self.end


@dataclass(frozen=True)
class ConfiguredRules:
    driving_window: Optional[DrivingWindow] = None
    speed_limit: Optional[float] = None             # km/h
    max_halt_time: Optional[float] = None           # hours
    route_violation_threshold: Optional[float] = None   # metres

    @classmethod
    def from_config(cls, rules: Optional[dict], trip_ref=None) -> "ConfiguredRules":
        """
        Build the rule set once per trip. A rule whose threshold is absent is not
        tracked; a rule whose threshold cannot be parsed is dropped with a warning.
        """
        rules = rules or {}
        values = {}

        start, end = rules.get("driving_start_time"), rules.get("driving_end_time")
        if start is not None and end is not None:
            try:
                values["driving_window"] = DrivingWindow(_parse_clock(start), _parse_clock(end))
            except (TypeError, ValueError) as e:
                logger.warning(f"[rules] trip={trip_ref} driving window ignored: {e}")

        for name in ("speed_limit", "max_halt_time", "route_violation_threshold"):
            raw = rules.get(name)
            if raw is None:
                continue
            try:
                values[name] = _positive_number(raw)
            except (TypeError, ValueError) as e:
                logger.warning(f"[rules] trip={trip_ref} {name} ignored: {e}")

        return cls(**values)

    @property
    def tracks_route(self) -> bool:
        return self.route_violation_threshold is not None

    def keys(self) -> List[str]:
        configured = []
        if self.driving_window is not None:
            configured.append(DRIVING_TIME)
        if self.speed_limit is not None:
            configured.append(SPEED)
        if self.max_halt_time is not None:
            configured.append(HALT_TIME)
        if self.route_violation_threshold is not None:
            configured.append(ROUTE)
        return configured


@dataclass
class RuleSignals:
    at: dt.datetime
    movement_status: MovementStatus = MovementStatus.UNKNOWN
    current_speed: float = 0.0
    halt_duration: float = 0.0          # minutes
    distance_from_route: float = 0.0    # metres
    reverse_distance: float = 0.0       # metres


def _violations(rules: ConfiguredRules, signals: RuleSignals, tz_name: str) -> Dict[str, bool]:
    checks = {}
    if rules.driving_window is not None:
        local = signals.at.astimezone(pytz.timezone(tz_name)).time()
        checks[DRIVING_TIME] = (
            not rules.driving_window.allows(local)
            and signals.movement_status == MovementStatus.DRIVING
        )
    if rules.speed_limit is not None:
        checks[SPEED] = signals.current_speed > rules.speed_limit
    if rules.max_halt_time is not None:
        checks[HALT_TIME] = signals.halt_duration / 60 > rules.max_halt_time
    if rules.route_violation_threshold is not None:
        checks[ROUTE] = (
            signals.distance_from_route > rules.route_violation_threshold
            or signals.reverse_distance > rules.route_violation_threshold
        )
    return checks


def _prior(status: dict, key: str) -> RuleState:
    try:
        return RuleState(status.get(key, RuleState.GOOD.value))
    except ValueError:
        return RuleState.GOOD


def evaluate_rules(
    rules: ConfiguredRules,
    prior_status: Optional[dict],
    signals: RuleSignals,
    tz_name: str = TRIP_TIMEZONE,
) -> Dict[str, RuleState]:
    """Return only the rules whose flag changed since the previous tick."""
    prior_status = prior_status or {}
    delta = {}
    for key, violated in _violations(rules, signals, tz_name).items():
        new_state = RuleState.VIOLATED if violated else RuleState.GOOD
        if new_state != _prior(prior_status, key):
            delta[key] = new_state
    return delta


def running_violations(rules: ConfiguredRules, prior_status: Optional[dict], delta: Dict[str, RuleState]) -> List[str]:
    """Configured rules that were Violated and stay Violated this tick."""
    prior_status = prior_status or {}
    return [
        key for key in rules.keys()
        if key not in delta and _prior(prior_status, key) == RuleState.VIOLATED
    ]


# =====================================================================
# Violation events
# =====================================================================
def open_violation_event(rule_key: str, at: dt.datetime, location, window_path) -> dict:
    return {
        "event_type": RULE_VIOLATION,
        "event_name": EVENT_NAMES[rule_key],
        "event_time": at.isoformat(),
        "event_start_time": at.isoformat(),
        "event_end_time": None,
        "event_duration": 0,
        "event_distance": 0,
        "event_location": list(location),
        "event_path": [list(c) for c in window_path],
    }


def find_open_event(events: Optional[list], event_name: str) -> Optional[dict]:
    """Most recent rule_violation event with this name and no end time."""
    for event in reversed(events or []):
        if (
            event.get("event_type") == RULE_VIOLATION
            and event.get("event_name") == event_name
            and not event.get("event_end_time")
        ):
            return event
    return None


def close_violation_fields(open_event: dict, at: dt.datetime, window_path) -> dict:
    start = to_dt(open_event.get("event_start_time")) or at
    path = list(open_event.get("event_path") or []) + [list(c) for c in window_path]
    return {
        "event_end_time": at.isoformat(),
        "event_duration": max(int((at - start).total_seconds() // 60), 0),
        "event_distance": path_length_m(path),
        "event_path": path,
    }


def extend_violation_fields(open_event: dict, window_path) -> dict:
    return {"event_path": list(open_event.get("event_path") or []) + [list(c) for c in window_path]}


# =====================================================================
# Reverse travel accumulation
# =====================================================================
@dataclass
class ReverseTravel:
    fields: dict = field(default_factory=dict)     # rule_status keys to merge
    event: Optional[dict] = None
    distance: float = 0.0                          # accumulated after this tick


def accumulate_reverse_travel(rule_status: Optional[dict], situation, points, min_distance: float) -> ReverseTravel:
    rule_status = rule_status or {}
    path = list(rule_status.get("reverse_travel_path") or [])
    distance = float(rule_status.get("reverse_travel_distance") or 0)
    running = len(path) > 0

    if situation.travel_direction == REVERSE:
        if not running and situation.reverse_travel_distance <= min_distance:
            return ReverseTravel(distance=distance)
        start = rule_status.get("reverse_travel_start_time") or points[0].dt_tracker.isoformat()
        distance += situation.reverse_travel_distance
        return ReverseTravel(
            fields={
                "reverse_travel_path": path + [p.coordinates for p in points],
                "reverse_travel_distance": distance,
                "reverse_travel_start_time": start,
            },
            distance=distance,
        )

    if not running:
        return ReverseTravel()

    end = points[-1].dt_tracker
    start = to_dt(rule_status.get("reverse_travel_start_time")) or points[0].dt_tracker
    event = {
        "event_type": RULE_VIOLATION,
        "event_name": REVERSE_TRAVEL_EVENT,
        "event_time": start.isoformat(),
        "event_start_time": start.isoformat(),
        "event_end_time": end.isoformat(),
        "event_duration": max(int((end - start).total_seconds() // 60), 0),
        "event_distance": distance,
        "event_location": list(path[0]),
        "event_path": path,
    }
    return ReverseTravel(
        fields={
            "reverse_travel_path": [],
            "reverse_travel_distance": 0.0,
            "reverse_travel_start_time": None,
        },
        event=event,
    )
