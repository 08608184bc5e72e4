# app/monitor.py
import datetime as dt
from typing import Optional

from config import REVERSE_TRAVEL_MIN_METERS, TRIP_TIMEZONE
from coordinator import TripUpdate, UpdateCoordinator
from crud import PersistenceError, log_tick_debug, to_dt
from fuel import FuelServiceError, fuel_check_due, new_fuel_events
from geofence import RouteGeofences, SignificantLocation, track_presence
from lifecycle import ActiveStatus, advance_lifecycle
from logging_config import get_logger
from motion import extract_motion_window, resolve_movement, track_halt, weighted_average_speed
from route_matcher import match_route
from rules import (
    EVENT_NAMES, RULE_RESOLUTION, RULE_VIOLATION, ConfiguredRules, RuleSignals, accumulate_reverse_travel,
    close_violation_fields, evaluate_rules, extend_violation_fields, find_open_event,
    open_violation_event, running_violations,
)
from variables import MovementStatus, RuleState, TripStage

logger = get_logger("monitor", "monitor.log")

FUEL_EVENT = "fuel_event"


def _movement(value) -> MovementStatus:
    try:
        return MovementStatus(value)
    except ValueError:
        return MovementStatus.UNKNOWN


class TripEvaluator:
    """
    Runs one tick for one trip: motion -> geofence -> route -> rules -> lifecycle,
    then hands the accumulated deltas to the update coordinator.
    Nothing is written unless the whole tick reaches the coordinator.
    """

    def __init__(self, r, coordinator: UpdateCoordinator = None, alerts=None, fuel=None,
                 tz_name: str = TRIP_TIMEZONE):
        self.r = r
        self.coordinator = coordinator or UpdateCoordinator()
        self.alerts = alerts
        self.fuel = fuel
        self.tz_name = tz_name

    async def evaluate(self, trip, now: Optional[dt.datetime] = None) -> bool:
        now = now or dt.datetime.now(dt.timezone.utc)
        logger.info(f"[evaluator] Starting evaluation for trip {trip.id} / device {trip.device_id}")

        try:
            stage = TripStage(trip.trip_stage)
        except ValueError:
            logger.warning(f"[evaluator] trip {trip.id} has unknown stage {trip.trip_stage!r} -> skipping")
            return False
        if stage.is_terminal:
            logger.info(f"[evaluator] trip {trip.id} is {stage.value} -> nothing to do")
            return False

        route = trip.route
        if route is None:
            logger.warning(f"[evaluator] trip {trip.id} has no route -> skipping")
            return False

        # ---------------------- Motion ----------------------
        window = await extract_motion_window(self.r, trip.device_id, stage)
        if window is None:
            return False

        point = window.truck_point
        at = point.dt_tracker
        window_path = [p.coordinates for p in window.points]
        update = TripUpdate()
        configured = ConfiguredRules.from_config(route.rules, trip.id)
        movement = _movement(trip.movement_status)
        halt_minutes = trip.current_halt_duration or 0
        alerts = []

        if stage == TripStage.ACTIVE:
            movement = resolve_movement(movement, window.drive_status)
            halt = track_halt(movement, to_dt(trip.halt_start_time), halt_minutes, trip.parked_duration or 0, at)
            halt_minutes = halt.current_halt_duration
            run_duration = (trip.run_duration or 0) + window.run_duration
            (update
                .set("movement_status", movement.value)
                .set("halt_start_time", halt.halt_start_time)
                .set("current_halt_duration", halt.current_halt_duration)
                .set("parked_duration", halt.parked_duration)
                .set("truck_run_distance", (trip.truck_run_distance or 0) + window.total_distance)
                .set("run_duration", run_duration)
                .set("average_speed", weighted_average_speed(
                    trip.average_speed, trip.run_duration, window.average_speed, window.run_duration))
                .set("top_speed", max(trip.top_speed or 0, window.top_speed))
                .append("trip_path", *[p.to_document() for p in window.points]))

        # ---------------------- Geofence ----------------------
        fences = RouteGeofences.from_route(route)
        current = SignificantLocation.from_document(trip.current_significant_location)
        presence = track_presence(current, fences, point.lat, point.lng, at, history=trip.significant_locations)
        if presence.closed is not None:
            update.append("significant_locations", presence.closed.to_document())
        if presence.closed is not None or presence.opened:
            update.set("current_significant_location", presence.current.to_document() if presence.current else None)

        # ---------------------- Route + Rules ----------------------
        rule_delta = {}
        if stage == TripStage.ACTIVE:
            situation = match_route(point, window.points, route.route_path, route.route_length)
            if situation is not None:
                (update
                    .set("distance_covered", situation.cumulative_distance)
                    .set("distance_remaining", situation.distance_remaining)
                    .set("completion_percentage", situation.completion_percentage))

            rule_status = trip.rule_status or {}
            reverse_distance = 0.0
            if configured.tracks_route and situation is not None:
                reverse = accumulate_reverse_travel(rule_status, situation, window.points, REVERSE_TRAVEL_MIN_METERS)
                update.merge_rule_status(reverse.fields)
                reverse_distance = reverse.distance
                if reverse.event is not None:
                    update.append("significant_events", reverse.event)

            signals = RuleSignals(
                at=at,
                movement_status=movement,
                current_speed=point.speed,
                halt_duration=halt_minutes,
                distance_from_route=situation.distance_from_truck if situation else 0.0,
                reverse_distance=reverse_distance,
            )
            rule_delta = evaluate_rules(configured, rule_status, signals, self.tz_name)
            self._apply_rule_delta(trip, update, rule_delta, at, point, window_path, alerts)

            for key in running_violations(configured, rule_status, rule_delta):
                open_event = find_open_event(trip.significant_events, EVENT_NAMES[key])
                if open_event is not None:
                    update.patch_event(EVENT_NAMES[key], extend_violation_fields(open_event, window_path))

        # ---------------------- Lifecycle ----------------------
        outcome = advance_lifecycle(
            stage,
            ActiveStatus.from_document(trip.active_status),
            to_dt(trip.planned_start_time),
            presence,
            fences,
            movement,
            at,
            now=now,
            location=point.coordinates,
        )
        if outcome.trip_stage != stage:
            update.set("trip_stage", outcome.trip_stage.value)
        if outcome.active_status != ActiveStatus.from_document(trip.active_status):
            update.set("active_status", outcome.active_status.to_document())
        for name, value in outcome.sets.items():
            update.set(name, value)
        if outcome.events:
            update.append("significant_events", *outcome.events)
        alerts.extend((event_type, status, {"at": at.isoformat()}) for event_type, status in outcome.changes)

        # ---------------------- Fuel ----------------------
        if stage == TripStage.ACTIVE:
            await self._check_fuel(trip, update, window, at, outcome.trip_stage == TripStage.COMPLETED)

        update.set("last_check_time", now)

        log_tick_debug(
            trip.id, trip.device_id,
            points=[(p.dt_tracker.isoformat(), p.speed, p.acc) for p in window.points],
            presence=presence.current.location_name if presence.current else None,
            rule_delta={k: v.value for k, v in rule_delta.items()},
            status_change=", ".join(s for _, s in outcome.changes) or None,
        )

        # ---------------------- Persist ----------------------
        try:
            await self.coordinator.persist(trip.id, update, configured.tracks_route)
        except PersistenceError as e:
            logger.error(f"[evaluator] trip {trip.id} tick not persisted: {e}")
            return False

        if self.alerts is not None:
            for event_type, status, metadata in alerts:
                self.alerts.notify(trip, event_type, status, metadata)

        logger.info(
            f"[evaluator] Completed trip {trip.id}: stage={outcome.trip_stage.value} "
            f"status={outcome.active_status.render()} movement={movement.value}"
        )
        return True

    def _apply_rule_delta(self, trip, update, rule_delta, at, point, window_path, alerts):
        for key, state in rule_delta.items():
            update.merge_rule_status({key: state.value})
            name = EVENT_NAMES[key]
            if state == RuleState.VIOLATED:
                update.append("significant_events", open_violation_event(key, at, point.coordinates, window_path))
                alerts.append((RULE_VIOLATION, name, {"at": at.isoformat(), "speed": point.speed}))
                logger.info(f"[evaluator] trip {trip.id} {name} opened")
                continue

            open_event = find_open_event(trip.significant_events, name)
            if open_event is None:
                logger.warning(f"[evaluator] trip {trip.id} {name} cleared but no open event found")
                continue
            update.patch_event(name, close_violation_fields(open_event, at, window_path))
            alerts.append((RULE_RESOLUTION, f"{name} Resolved", {"at": at.isoformat(), "speed": point.speed}))
            logger.info(f"[evaluator] trip {trip.id} {name} closed")

    def _has_fuel_sensor(self, trip, window) -> bool:
        if any(p.fuel_level is not None for p in window.points):
            return True
        return any(p.get("fuel_level") is not None for p in (trip.trip_path or [])[-20:])

    async def _check_fuel(self, trip, update, window, at, completing: bool):
        if self.fuel is None or not self.fuel.enabled or not self._has_fuel_sensor(trip, window):
            return

        last_update = to_dt(trip.fuel_status_update_time)
        if not fuel_check_due(last_update, at, completing):
            return

        try:
            report = await self.fuel.query(trip.device_id, to_dt(trip.actual_start_time) or at, at)
        except FuelServiceError as e:
            logger.warning(f"[evaluator] trip {trip.id} fuel check failed: {e}")
            return
        if report is None:
            logger.info(f"[evaluator] trip {trip.id} no fuel data for window")
            return

        (update
            .set("fuel_consumption", report.consumption)
            .set("fuel_efficiency", report.mileage)
            .set("current_fuel_level", report.end_volume)
            .set("fuel_status_update_time", at))

        fresh = new_fuel_events(report, last_update)
        if fresh:
            update.append("fuel_events", *fresh)
            update.append("significant_events", *[
                {
                    "event_type": FUEL_EVENT,
                    "event_name": f"Fuel {e['fuel_event_type'].title() if e.get('fuel_event_type') else 'Event'}",
                    "event_time": e["event_time"],
                    "event_start_time": e["event_time"],
                    "event_end_time": e["event_time"],
                    "event_duration": 0,
                    "event_distance": 0,
                    "event_location": window.truck_point.coordinates,
                    "volume": e["volume"],
                }
                for e in fresh
            ])
        logger.info(
            f"[evaluator] trip {trip.id} fuel level={report.end_volume} consumption={report.consumption} "
            f"efficiency={report.mileage} new_events={len(fresh)}"
        )
