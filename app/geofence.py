# app/geofence.py
import datetime as dt
from dataclasses import dataclass, field, replace
from typing import List, Optional, Sequence

from shapely.geometry import Point, Polygon

from config import ZONE_VERTEX_FALLBACK_METERS
from crud import to_dt
from geo import haversine_m
from logging_config import get_logger

logger = get_logger("geofence", "geofence.log")

START, END, VIA = "start", "end", "via"


@dataclass(frozen=True)
class Geofence:
    location_name: str
    location_type: str                 # start / end / via (role on the route)
    shape: str                         # point / zone
    center: Optional[Sequence[float]] = None       # [lng, lat]
    trigger_radius: float = 0.0                    # metres
    zone_coordinates: Optional[Sequence[Sequence[float]]] = None
    max_detention_time: Optional[float] = None     # minutes
    polygon: Optional[Polygon] = field(default=None, compare=False, repr=False)

    @classmethod
    def from_document(cls, doc: Optional[dict], location_type: str) -> Optional["Geofence"]:
        if not doc or not doc.get("location_name"):
            return None
        shape = doc.get("location_type", "point")
        try:
            if shape == "zone":
                ring = tuple((float(c[0]), float(c[1])) for c in doc["zone_coordinates"])
                if len(ring) < 3:
                    raise ValueError("zone needs at least 3 vertices")
                polygon = Polygon(ring)
                fence = cls(doc["location_name"], location_type, "zone", zone_coordinates=ring, polygon=polygon)
            else:
                lng, lat = doc["location"]
                fence = cls(
                    doc["location_name"], location_type, "point",
                    center=(float(lng), float(lat)),
                    trigger_radius=float(doc.get("trigger_radius") or 0),
                )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"[geofence] Ignoring malformed geofence {doc.get('location_name')}: {e}")
            return None

        detention = doc.get("max_detention_time")
        try:
            detention = float(detention) if detention is not None else None
        except (TypeError, ValueError):
            detention = None
        return replace(fence, max_detention_time=detention)

    def contains(self, lat: float, lng: float) -> bool:
        if self.shape == "zone":
            if self.polygon.covers(Point(lng, lat)):
                return True
            # GPS jitter near a corner still counts as inside
            return any(
                haversine_m(lat, lng, v_lat, v_lng) <= ZONE_VERTEX_FALLBACK_METERS
                for v_lng, v_lat in self.zone_coordinates
            )
        return haversine_m(lat, lng, self.center[1], self.center[0]) <= self.trigger_radius


@dataclass
class SignificantLocation:
    location_name: str
    location_type: str
    entry_time: dt.datetime
    exit_time: Optional[dt.datetime] = None
    dwell_time: Optional[int] = None   # minutes

    @classmethod
    def from_document(cls, doc: Optional[dict]) -> Optional["SignificantLocation"]:
        if not doc or not doc.get("location_name") or not doc.get("entry_time"):
            return None
        return cls(
            location_name=doc["location_name"],
            location_type=doc.get("location_type"),
            entry_time=to_dt(doc["entry_time"]),
            exit_time=to_dt(doc.get("exit_time")),
            dwell_time=doc.get("dwell_time"),
        )

    def to_document(self) -> dict:
        return {
            "location_name": self.location_name,
            "location_type": self.location_type,
            "entry_time": self.entry_time.isoformat(),
            "exit_time": self.exit_time.isoformat() if self.exit_time else None,
            "dwell_time": self.dwell_time,
        }

    def same_place(self, fence: Geofence) -> bool:
        return self.location_type == fence.location_type and self.location_name == fence.location_name

    def dwell_minutes(self, at: dt.datetime) -> int:
        return int((at - self.entry_time).total_seconds() // 60)

    def close(self, at: dt.datetime) -> "SignificantLocation":
        return replace(self, exit_time=at, dwell_time=self.dwell_minutes(at))


@dataclass
class RouteGeofences:
    start: Optional[Geofence]
    end: Optional[Geofence]
    via: List[Geofence]

    @classmethod
    def from_route(cls, route) -> "RouteGeofences":
        via = [Geofence.from_document(doc, VIA) for doc in (route.via_locations or [])]
        return cls(
            start=Geofence.from_document(route.start_location, START),
            end=Geofence.from_document(route.end_location, END),
            via=[v for v in via if v is not None],
        )

    def ordered(self) -> List[Geofence]:
        """Matching precedence: start, end, then via in route order."""
        fences = [f for f in (self.start, self.end) if f is not None]
        return fences + self.via

    def find(self, location: SignificantLocation) -> Optional[Geofence]:
        for fence in self.ordered():
            if location.same_place(fence):
                return fence
        return None


@dataclass
class Presence:
    current: Optional[SignificantLocation]
    closed: Optional[SignificantLocation] = None
    opened: bool = False


def _left_start(history) -> bool:
    for doc in history or ():
        record = doc if isinstance(doc, SignificantLocation) else SignificantLocation.from_document(doc)
        if record is not None and record.location_type == START and record.exit_time is not None:
            return True
    return False


def match_geofence(
    fences: RouteGeofences, lat: float, lng: float, history: Optional[Sequence] = None,
) -> Optional[Geofence]:
    """
    First geofence containing the point, in start, end, via precedence.

    Once the trip has left its start geofence (a closed start record in `history`),
    an overlapping end or via geofence wins over start, so a route that returns to
    its origin can still reach its end.
    """
    matches = [fence for fence in fences.ordered() if fence.contains(lat, lng)]
    if len(matches) > 1 and _left_start(history):
        for fence in matches:
            if fence.location_type != START:
                return fence
    return matches[0] if matches else None


def track_presence(
    current: Optional[SignificantLocation],
    fences: RouteGeofences,
    lat: float,
    lng: float,
    at: dt.datetime,
    history: Optional[Sequence] = None,
) -> Presence:
    match = match_geofence(fences, lat, lng, history)

    if match is None:
        if current is None:
            return Presence(None)
        closed = current.close(at)
        logger.info(f"[geofence] EXIT {closed.location_name} ({closed.location_type}) dwell={closed.dwell_time}m")
        return Presence(None, closed=closed)

    if current is not None and current.same_place(match):
        return Presence(current)

    opened = SignificantLocation(match.location_name, match.location_type, entry_time=at)
    closed = current.close(at) if current is not None else None
    if closed:
        logger.info(f"[geofence] EXIT {closed.location_name} ({closed.location_type}) dwell={closed.dwell_time}m")
    logger.info(f"[geofence] ENTRY {opened.location_name} ({opened.location_type})")
    return Presence(opened, closed=closed, opened=True)
