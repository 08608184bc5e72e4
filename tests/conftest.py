"""
Shared test configuration: in-memory SQLite store, mock Redis and trip builders.
"""

import datetime as dt
import json
import os
import tempfile

# must be set before any app module is imported
os.environ["LOG_DIR"] = tempfile.mkdtemp(prefix="trip-engine-logs-")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["TRIP_TIMEZONE"] = "UTC"

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from crud import TripStore
from database import init_models
from geo import path_length_m
from models import Route, Trip

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

UTC = dt.timezone.utc
T0 = dt.datetime(2025, 3, 10, 8, 0, tzinfo=UTC)

# straight route heading north, ~1.1 km between vertices
ROUTE_PATH = [[77.0, 28.0], [77.0, 28.01], [77.0, 28.02], [77.0, 28.03]]
START = {"location_name": "Plant", "location_type": "point", "location": [77.0, 28.0], "trigger_radius": 300}
VIA = {"location_name": "Depot 4", "location_type": "point", "location": [77.0, 28.015], "trigger_radius": 200,
       "max_detention_time": 30}
END = {"location_name": "Warehouse", "location_type": "zone",
       "zone_coordinates": [[76.998, 28.028], [77.002, 28.028], [77.002, 28.032], [76.998, 28.032]]}


# ---------- Database ----------
@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_models(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return TripStore(session_factory)


# ---------- Redis ----------
class MockPipeline:
    def __init__(self, redis):
        self.redis = redis
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.commands = []
        return False

    def lrange(self, key, start, end):
        self.commands.append(("lrange", key, start, end))
        return self

    def delete(self, key):
        self.commands.append(("delete", key))
        return self

    async def execute(self):
        results = []
        for name, *args in self.commands:
            results.append(await getattr(self.redis, name)(*args))
        self.commands = []
        return results


class MockRedis:
    def __init__(self):
        self.store = {}
        self.lists = {}
        self.streams = {}
        self.fail_reads = False
        self.fail_xadd = False

    async def set(self, key, value, ex=None):
        self.store[key] = str(value)
        return True

    async def mget(self, keys):
        return [self.store.get(k) for k in keys]

    async def rpush(self, key, *values):
        self.lists.setdefault(key, []).extend(values)
        return len(self.lists[key])

    async def lrange(self, key, start, end):
        if self.fail_reads:
            raise ConnectionError("redis down")
        items = self.lists.get(key, [])
        return list(items[start:] if end == -1 else items[start:end + 1])

    async def delete(self, key):
        removed = int(key in self.lists or key in self.store)
        self.lists.pop(key, None)
        self.store.pop(key, None)
        return removed

    async def xadd(self, stream, fields):
        if self.fail_xadd:
            raise ConnectionError("redis down")
        entries = self.streams.setdefault(stream, [])
        entries.append(fields)
        return f"{len(entries)}-0"

    def pipeline(self, transaction=True):
        return MockPipeline(self)


@pytest.fixture
def redis_mock():
    return MockRedis()


# ---------- Builders ----------
def sample(ts, lat, lng, speed=40.0, acc=1, **extra):
    payload = {"dt_tracker": ts.isoformat(), "lat": lat, "lng": lng, "speed": speed, "acc": acc}
    payload.update(extra)
    return json.dumps(payload)


async def buffer_samples(r, device_id, *samples):
    await r.rpush(f"{device_id}:rawTripPath", *samples)


async def set_last_position(r, device_id, ts, lat, lng):
    await r.set(f"{device_id}:lat", lat)
    await r.set(f"{device_id}:lng", lng)
    await r.set(f"{device_id}:dt_tracker", ts.isoformat())


@pytest.fixture
def make_trip(session_factory):
    async def _make(rules=None, via=None, end=None, **fields):
        async with session_factory() as db:
            route = Route(
                route_name="Plant to Warehouse",
                route_path=ROUTE_PATH,
                route_length=path_length_m(ROUTE_PATH),
                start_location=START,
                end_location=end or END,
                via_locations=via if via is not None else [VIA],
                rules=rules or {},
            )
            db.add(route)
            await db.flush()
            values = {
                "trip_name": "TRIP-001",
                "device_id": "dev-1",
                "route_id": route.id,
                "planned_start_time": T0,
                "trip_stage": "Active",
                "active_status": {"kind": "RunningOnRoute", "name": None},
                "movement_status": "Driving",
                "rule_status": {},
                "significant_locations": [],
                "significant_events": [],
                "trip_path": [],
                "fuel_events": [],
            }
            values.update(fields)
            trip = Trip(**values)
            db.add(trip)
            await db.commit()
            trip_id = trip.id
        return await TripStore(session_factory).load_trip(trip_id)

    return _make
