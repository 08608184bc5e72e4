# app/coordinator.py
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

import asyncpg
from sqlalchemy.exc import DBAPIError, OperationalError
from tenacity import (
    AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter,
)

from config import UPDATE_MAX_ATTEMPTS, UPDATE_RETRY_INITIAL_SECONDS, UPDATE_RETRY_MAX_SECONDS
from crud import PersistenceError, TripStore
from logging_config import get_logger
from rules import REVERSE_FIELDS

logger = get_logger("coordinator", "coordinator.log")

OVERWRITE = "overwrite"
APPEND = "append"
MERGE = "merge"

# Persisted trip fields and how an update may touch them
FIELD_SEMANTICS = {
    "trip_stage": OVERWRITE,
    "active_status": OVERWRITE,
    "movement_status": OVERWRITE,
    "current_significant_location": OVERWRITE,
    "actual_start_time": OVERWRITE,
    "actual_end_time": OVERWRITE,
    "end_reason": OVERWRITE,
    "last_check_time": OVERWRITE,
    "distance_covered": OVERWRITE,
    "distance_remaining": OVERWRITE,
    "completion_percentage": OVERWRITE,
    "truck_run_distance": OVERWRITE,
    "run_duration": OVERWRITE,
    "average_speed": OVERWRITE,
    "top_speed": OVERWRITE,
    "current_halt_duration": OVERWRITE,
    "halt_start_time": OVERWRITE,
    "parked_duration": OVERWRITE,
    "fuel_consumption": OVERWRITE,
    "fuel_efficiency": OVERWRITE,
    "current_fuel_level": OVERWRITE,
    "fuel_status_update_time": OVERWRITE,
    "significant_locations": APPEND,
    "significant_events": APPEND,
    "trip_path": APPEND,
    "fuel_events": APPEND,
    "rule_status": MERGE,
}

TRANSIENT_ERRORS = (DBAPIError, OperationalError, OSError, asyncpg.CannotConnectNowError)


def _semantics(name: str) -> str:
    try:
        return FIELD_SEMANTICS[name]
    except KeyError:
        raise ValueError(f"unknown trip field {name!r}") from None


@dataclass
class TripUpdate:
    """
    Field deltas accumulated over one tick.

    sets          scalar overwrites (last write wins)
    appends       items added to the append-only arrays
    rule_status   keys merged into the rule_status document
    event_patches (event_name, fields) applied to the latest open event of that name
    """
    sets: Dict[str, object] = field(default_factory=dict)
    appends: Dict[str, list] = field(default_factory=dict)
    rule_status: Dict[str, object] = field(default_factory=dict)
    event_patches: List[Tuple[str, dict]] = field(default_factory=list)

    def set(self, name: str, value) -> "TripUpdate":
        if _semantics(name) != OVERWRITE:
            raise ValueError(f"{name} is {FIELD_SEMANTICS[name]}-only and cannot be overwritten")
        self.sets[name] = value
        return self

    def append(self, name: str, *items) -> "TripUpdate":
        if _semantics(name) != APPEND:
            raise ValueError(f"{name} is not an append-only field")
        self.appends.setdefault(name, []).extend(items)
        return self

    def merge_rule_status(self, values: dict) -> "TripUpdate":
        self.rule_status.update(values)
        return self

    def patch_event(self, event_name: str, fields: dict) -> "TripUpdate":
        self.event_patches.append((event_name, dict(fields)))
        return self

    def is_empty(self) -> bool:
        return not (self.sets or self.appends or self.rule_status or self.event_patches)

    def scoped_to(self, route_rule_configured: bool) -> "TripUpdate":
        """Drop reverse-travel accumulators when the trip has no route rule."""
        if route_rule_configured:
            return self
        rule_status = {k: v for k, v in self.rule_status.items() if k not in REVERSE_FIELDS}
        return TripUpdate(dict(self.sets), dict(self.appends), rule_status, list(self.event_patches))


class UpdateCoordinator:
    def __init__(
        self,
        store: TripStore = None,
        max_attempts: int = UPDATE_MAX_ATTEMPTS,
        initial_wait: float = UPDATE_RETRY_INITIAL_SECONDS,
        max_wait: float = UPDATE_RETRY_MAX_SECONDS,
    ):
        self.store = store or TripStore()
        self.max_attempts = max_attempts
        self.initial_wait = initial_wait
        self.max_wait = max_wait

    async def persist(self, trip_id: int, update: TripUpdate, route_rule_configured: bool = True):
        update = update.scoped_to(route_rule_configured)
        if update.is_empty():
            logger.info(f"[coordinator] trip={trip_id} nothing to persist")
            return None

        try:
            async for attempt in AsyncRetrying(
                wait=wait_exponential_jitter(initial=self.initial_wait, max=self.max_wait),
                stop=stop_after_attempt(self.max_attempts),
                retry=retry_if_exception_type(TRANSIENT_ERRORS),
                reraise=True,
            ):
                with attempt:
                    n = attempt.retry_state.attempt_number
                    if n > 1:
                        logger.warning(f"[coordinator] trip={trip_id} retry attempt {n}/{self.max_attempts}")
                    return await self.store.apply(trip_id, update)
        except TRANSIENT_ERRORS as e:
            logger.error(f"[coordinator] trip={trip_id} update failed after {self.max_attempts} attempts: {e}")
            raise PersistenceError(f"trip {trip_id}: {e}") from e
