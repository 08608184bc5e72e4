# worker.py
import asyncio
from collections import deque

import redis.asyncio as redis

from alerts import AlertDispatcher
from config import ALLOWED_DEVICES, REDIS_URL, RUN_INTERVAL_SECONDS
from coordinator import UpdateCoordinator
from crud import TripStore
from database import init_models
from fuel import FuelClient
from monitor import TripEvaluator
from variables import SCHEDULABLE_STAGES

from logging_config import get_logger

# ------------ Variable Declaration -----------
logger = get_logger("worker", "worker.log")


# ---------- One scheduling cycle ----------
async def run_cycle(evaluator: TripEvaluator, store: TripStore, devices=ALLOWED_DEVICES) -> dict:
    """
    Load every schedulable trip into a work-list and drain it one trip at a time.
    A failing trip is logged and skipped; it is picked up again next cycle.
    """
    trips = await store.list_schedulable_trips(SCHEDULABLE_STAGES, devices)
    work = deque(trips)
    logger.info(f"Cycle starting with {len(work)} trips")

    stats = {"processed": 0, "skipped": 0, "failed": 0}
    while work:
        trip = work.popleft()
        try:
            if await evaluator.evaluate(trip):
                stats["processed"] += 1
            else:
                stats["skipped"] += 1
        except Exception as e:
            stats["failed"] += 1
            logger.exception(f"Error evaluating trip {trip.id} / device {trip.device_id}: {e}")

    logger.info(f"Cycle finished: {stats}")
    return stats


# ---------- Main Worker Loop ----------
async def worker():
    logger.info("Worker starting, ensuring tables...")
    await init_models()

    r = redis.from_url(REDIS_URL, decode_responses=True)
    store = TripStore()
    alerts = AlertDispatcher(r)
    evaluator = TripEvaluator(r, UpdateCoordinator(store), alerts=alerts, fuel=FuelClient())

    try:
        while True:
            try:
                await run_cycle(evaluator, store)
            except Exception as e:
                logger.exception(f"Worker cycle encountered an error: {e}")

            await asyncio.sleep(RUN_INTERVAL_SECONDS)
    finally:
        await alerts.drain()
        await r.aclose()


if __name__ == "__main__":
    logger.info("Worker starting up...")
    asyncio.run(worker())
