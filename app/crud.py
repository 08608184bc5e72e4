import datetime as dt
import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import lazyload

from database import AsyncSessionLocal
from logging_config import get_logger
from models import Trip

logger = get_logger("crud", "crud.log")


class PersistenceError(Exception):
    """A trip update could not be written after all retry attempts."""


class TripNotFoundError(Exception):
    pass


def to_dt(v):
    if isinstance(v, dt.datetime):
        # ensure tz-aware
        return v if v.tzinfo else v.replace(tzinfo=dt.timezone.utc)

    if isinstance(v, str):
        dt_obj = dt.datetime.fromisoformat(v)
        return dt_obj if dt_obj.tzinfo else dt_obj.replace(tzinfo=dt.timezone.utc)

    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return dt.datetime.fromtimestamp(v, tz=dt.timezone.utc)

    return None


class TripStore:
    """
    Reads schedulable trips and applies coordinator updates.
    Every apply() runs in its own transaction on a row locked FOR UPDATE.
    """

    def __init__(self, session_factory=AsyncSessionLocal):
        self.session_factory = session_factory

    async def list_schedulable_trips(self, stages, devices=None) -> List[Trip]:
        async with self.session_factory() as db:
            stmt = select(Trip).where(Trip.trip_stage.in_([s.value for s in stages])).order_by(Trip.id)
            if devices:
                stmt = stmt.where(Trip.device_id.in_(list(devices)))
            result = await db.execute(stmt)
            return list(result.scalars().unique().all())

    async def load_trip(self, trip_id: int) -> Optional[Trip]:
        async with self.session_factory() as db:
            result = await db.execute(select(Trip).where(Trip.id == trip_id))
            return result.scalars().unique().one_or_none()

    async def apply(self, trip_id: int, update) -> Trip:
        async with self.session_factory() as db:
            async with db.begin():
                stmt = (
                    select(Trip)
                    .options(lazyload(Trip.route))
                    .where(Trip.id == trip_id)
                    .with_for_update(of=Trip)
                )
                trip = (await db.execute(stmt)).scalars().one_or_none()
                if trip is None:
                    raise TripNotFoundError(f"trip {trip_id} not found")

                for name, value in update.sets.items():
                    setattr(trip, name, value)

                # new list objects so the JSON columns are flagged dirty
                for name, items in update.appends.items():
                    setattr(trip, name, list(getattr(trip, name) or []) + list(items))

                if update.rule_status:
                    trip.rule_status = {**(trip.rule_status or {}), **update.rule_status}

                if update.event_patches:
                    trip.significant_events = patch_open_events(trip.significant_events, update.event_patches)

            logger.info(
                f"[crud] trip={trip_id} sets={sorted(update.sets)} "
                f"appends={ {k: len(v) for k, v in update.appends.items()} } "
                f"rule_status={sorted(update.rule_status)} patches={len(update.event_patches)}"
            )
            return trip


def patch_open_events(events: Optional[list], patches: list) -> list:
    """
    Apply (event_name, fields) patches to the latest event with that name
    that has no event_end_time. Patches with no open target are dropped.
    """
    events = [dict(e) for e in (events or [])]
    for event_name, fields in patches:
        for event in reversed(events):
            if event.get("event_name") == event_name and not event.get("event_end_time"):
                event.update(fields)
                break
        else:
            logger.warning(f"[crud] No open event named {event_name!r} to patch")
    return events


trip_debug_logger = get_logger("debug", "debug.log", level=logging.DEBUG)
def log_tick_debug(trip_id: int, device_id: str, points: list = None, presence: str = None,
                   rule_delta: dict = None, status_change: str = None):
    """
    Log structured debugging information for one trip tick.
    """
    trip_debug_logger.debug(f"[Trip {trip_id} / {device_id}] Debug Report:")

    if points:
        # points: list[(timestamp, speed, acc)]
        pos_dump = ", ".join(f"({ts}, {spd} km/h, acc={acc})" for ts, spd, acc in points)
        trip_debug_logger.debug(f"[Trip {trip_id}] Window samples: {pos_dump}")

    if presence:
        trip_debug_logger.debug(f"[Trip {trip_id}] Presence: {presence}")

    if rule_delta:
        trip_debug_logger.debug(f"[Trip {trip_id}] Rule delta: {rule_delta}")

    if status_change:
        trip_debug_logger.debug(f"[Trip {trip_id}] Status change: {status_change}")
