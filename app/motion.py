# app/motion.py
import datetime as dt
import json
from dataclasses import dataclass, field
from typing import List, Optional

from crud import to_dt
from geo import haversine_m
from logging_config import get_logger
from variables import (
    LAST_POSITION_KEYS, MIN_HALT_MINUTES, MOTION_SPEED_CUTOFF, PENDING_STAGES, RAW_PATH_KEY,
    MovementStatus, TripStage,
)

logger = get_logger("motion", "motion.log")


@dataclass
class PathPoint:
    dt_tracker: dt.datetime
    lat: float
    lng: float
    speed: float = 0.0
    acc: int = 0
    fuel_level: Optional[float] = None

    @classmethod
    def from_raw(cls, raw: dict) -> Optional["PathPoint"]:
        """
        Validate one buffered sample. Returns None for anything unusable:
        missing fields, out-of-range coordinates, the 0,0 default fix or a bad timestamp.
        """
        if not isinstance(raw, dict):
            return None
        try:
            lat = float(raw["lat"])
            lng = float(raw["lng"])
            ts = to_dt(raw["dt_tracker"])
        except (KeyError, TypeError, ValueError):
            return None

        if ts is None or not (-90 <= lat <= 90) or not (-180 <= lng <= 180):
            return None
        if lat == 0 and lng == 0:
            return None

        try:
            speed = float(raw.get("speed") or 0)
        except (TypeError, ValueError):
            speed = 0.0
        try:
            acc = int(raw.get("acc") or 0)
        except (TypeError, ValueError):
            acc = 0
        try:
            fuel = raw.get("fuelLevel", raw.get("fuel_level"))
            fuel_level = float(fuel) if fuel is not None else None
        except (TypeError, ValueError):
            fuel_level = None

        return cls(dt_tracker=ts, lat=lat, lng=lng, speed=speed, acc=acc, fuel_level=fuel_level)

    @property
    def coordinates(self) -> List[float]:
        return [self.lng, self.lat]

    @property
    def is_moving(self) -> bool:
        return self.acc == 1 and self.speed > MOTION_SPEED_CUTOFF

    @property
    def is_halted(self) -> bool:
        return self.acc == 0 and self.speed < MOTION_SPEED_CUTOFF

    def to_document(self) -> dict:
        return {
            "dt_tracker": self.dt_tracker.isoformat(),
            "lat": self.lat,
            "lng": self.lng,
            "speed": self.speed,
            "acc": self.acc,
            "fuel_level": self.fuel_level,
        }


@dataclass
class MotionWindow:
    truck_point: PathPoint
    points: List[PathPoint] = field(default_factory=list)
    drive_status: MovementStatus = MovementStatus.UNKNOWN
    top_speed: float = 0.0
    average_speed: float = 0.0
    total_distance: float = 0.0    # metres
    run_duration: float = 0.0      # seconds


@dataclass
class HaltState:
    movement_status: MovementStatus
    halt_start_time: Optional[dt.datetime]
    current_halt_duration: int
    parked_duration: int


# =====================================================================
# Window summary
# =====================================================================
def summarize_window(points: List[PathPoint]) -> MotionWindow:
    """
    points must be sorted oldest -> newest.
    Aggregates only count consecutive pairs where both samples are in motion.
    """
    if all(p.is_halted for p in points):
        drive_status = MovementStatus.HALTED
    elif all(p.is_moving for p in points):
        drive_status = MovementStatus.DRIVING
    else:
        drive_status = MovementStatus.UNKNOWN

    top_speed = 0.0
    speed_sum = 0.0
    pairs = 0
    distance = 0.0
    run_seconds = 0.0

    for prev, cur in zip(points, points[1:]):
        if not (prev.is_moving and cur.is_moving):
            continue
        top_speed = max(top_speed, prev.speed, cur.speed)
        speed_sum += (prev.speed + cur.speed) / 2
        pairs += 1
        distance += haversine_m(prev.lat, prev.lng, cur.lat, cur.lng)
        run_seconds += (cur.dt_tracker - prev.dt_tracker).total_seconds()

    return MotionWindow(
        truck_point=points[-1],
        points=points,
        drive_status=drive_status,
        top_speed=top_speed,
        average_speed=speed_sum / pairs if pairs else 0.0,
        total_distance=distance,
        run_duration=run_seconds,
    )


def parse_samples(raw_samples) -> List[PathPoint]:
    points = []
    for raw in raw_samples:
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            continue
        point = PathPoint.from_raw(payload)
        if point is not None:
            points.append(point)
    points.sort(key=lambda p: p.dt_tracker)
    return points


# =====================================================================
# Buffer access
# =====================================================================
async def drain_buffer(r, device_id: str) -> list:
    """Read and clear the device buffer in one MULTI so no sample is read twice."""
    key = RAW_PATH_KEY.format(device_id=device_id)
    async with r.pipeline(transaction=True) as pipe:
        pipe.lrange(key, 0, -1)
        pipe.delete(key)
        raw, _ = await pipe.execute()
    return raw or []


async def read_last_position(r, device_id: str) -> Optional[PathPoint]:
    keys = [k.format(device_id=device_id) for k in LAST_POSITION_KEYS]
    lat, lng, ts = await r.mget(keys)
    if lat is None or lng is None or ts is None:
        return None
    return PathPoint.from_raw({"lat": lat, "lng": lng, "dt_tracker": ts})


async def extract_motion_window(r, device_id: str, trip_stage: TripStage) -> Optional[MotionWindow]:
    """
    Active trips drain the raw buffer and get a full summary.
    Planned / Start Delayed trips only get the last known position.
    None means nothing to do for this trip on this tick.
    """
    try:
        if trip_stage == TripStage.ACTIVE:
            raw = await drain_buffer(r, device_id)
            if not raw:
                logger.info(f"[motion] No buffered samples for device {device_id}")
                return None

            points = parse_samples(raw)
            if len(points) != len(raw):
                logger.warning(
                    f"[motion] Dropped {len(raw) - len(points)} invalid samples for device {device_id}"
                )
            if not points:
                return None

            window = summarize_window(points)
            logger.info(
                f"[motion] device={device_id} points={len(points)} status={window.drive_status.value} "
                f"dist={window.total_distance:.0f}m run={window.run_duration:.0f}s top={window.top_speed}"
            )
            return window

        if trip_stage in PENDING_STAGES:
            point = await read_last_position(r, device_id)
            if point is None:
                logger.info(f"[motion] No last position cached for device {device_id}")
                return None
            return MotionWindow(truck_point=point, points=[point])

        return None

    except Exception as e:
        logger.exception(f"[motion] Buffer read failed for device {device_id}: {e}")
        return None


# =====================================================================
# Movement / halt bookkeeping
# =====================================================================
def resolve_movement(previous: MovementStatus, drive_status: MovementStatus) -> MovementStatus:
    if drive_status == MovementStatus.UNKNOWN:
        return previous
    return drive_status


def track_halt(
    movement_status: MovementStatus,
    halt_start_time: Optional[dt.datetime],
    current_halt_duration: int,
    parked_duration: int,
    at: dt.datetime,
) -> HaltState:
    if movement_status == MovementStatus.HALTED:
        start = halt_start_time or at
        minutes = max(int((at - start).total_seconds() // 60), 0)
        return HaltState(movement_status, start, minutes, parked_duration)

    # halt (if any) ends here
    parked = parked_duration or 0
    if halt_start_time is not None and (current_halt_duration or 0) >= MIN_HALT_MINUTES:
        parked += current_halt_duration
    return HaltState(movement_status, None, 0, parked)


def weighted_average_speed(prev_avg: float, prev_run: float, batch_avg: float, batch_run: float) -> float:
    total = (prev_run or 0) + batch_run
    if total <= 0:
        return batch_avg
    return ((prev_run or 0) * (prev_avg or 0) + batch_run * batch_avg) / total
