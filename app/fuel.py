# app/fuel.py
import datetime as dt
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from config import FUEL_CHECK_INTERVAL_MINUTES, FUEL_SERVICE_URL, FUEL_TIMEOUT_SECONDS
from crud import to_dt
from logging_config import get_logger

logger = get_logger("fuel", "fuel.log")

TANK = "tank_1"


class FuelServiceError(Exception):
    pass


@dataclass
class FuelReport:
    fuel_events: List[dict] = field(default_factory=list)
    consumption: Optional[float] = None   # litres, None when not measurable
    mileage: Optional[float] = None       # km / litre
    end_volume: Optional[float] = None    # litres
    distance: float = 0.0                 # km


def build_report(levels: dict, events: list, distance) -> Optional[FuelReport]:
    """
    Combine tank levels, fill/theft events and distance into one report.
    Only events inside the tank's reporting window count.
    """
    tank = (levels or {}).get(TANK)
    if not tank:
        return None

    start = to_dt(tank.get("startTime"))
    end = to_dt(tank.get("endTime"))
    fills = theft = 0.0
    fuel_events = []
    for event in events or []:
        at = to_dt(event.get("eventTime"))
        if at is None or start is None or end is None or not (start < at < end):
            continue
        kind = event.get("fuel_event_type")
        volume = float(event.get("fuel_event_volume") or 0)
        if kind == "filling":
            fills += volume
        elif kind == "theft":
            theft += volume
        fuel_events.append({"event_time": at.isoformat(), "fuel_event_type": kind, "volume": volume})
    fuel_events.sort(key=lambda e: e["event_time"])

    consumption = float(tank["startLevel"]) - float(tank["endLevel"]) + fills - theft
    distance = float(distance or 0)
    return FuelReport(
        fuel_events=fuel_events,
        consumption=round(consumption, 3) if consumption > 0 else None,
        mileage=round(distance / consumption, 1) if consumption > 0 and distance else None,
        end_volume=float(tank["endLevel"]),
        distance=round(distance, 2),
    )


class FuelClient:
    def __init__(self, base_url: Optional[str] = FUEL_SERVICE_URL, timeout: float = FUEL_TIMEOUT_SECONDS,
                 transport: httpx.AsyncBaseTransport = None):
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def query(self, device_id: str, time_from: dt.datetime, time_to: dt.datetime) -> Optional[FuelReport]:
        body = {"imei": device_id, "timeFrom": time_from.isoformat(), "timeTo": time_to.isoformat()}
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
                levels = await client.post("/fuelLevels", json=body)
                levels.raise_for_status()
                km = await client.post("/accurateKm", json=body)
                km.raise_for_status()
                events = await client.post("/crawlFuel", json=body)
                events.raise_for_status()
            return build_report(levels.json().get("data"), events.json().get("data"), km.json().get("dist"))
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            raise FuelServiceError(f"fuel query failed for device {device_id}: {e}") from e


def fuel_check_due(last_update: Optional[dt.datetime], at: dt.datetime, completing: bool = False,
                   interval_minutes: int = FUEL_CHECK_INTERVAL_MINUTES) -> bool:
    if completing or last_update is None:
        return True
    return (at - last_update) >= dt.timedelta(minutes=interval_minutes)


def new_fuel_events(report: FuelReport, last_update: Optional[dt.datetime]) -> List[dict]:
    if last_update is None:
        return list(report.fuel_events)
    return [e for e in report.fuel_events if to_dt(e["event_time"]) > last_update]
