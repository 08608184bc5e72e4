import asyncio
import json
import time

from config import ALERT_STREAM
from logging_config import get_logger

logger = get_logger("alerts", "alerts.log")


class AlertDispatcher:
    """
    Fire-and-forget alert publication.
    Payloads go onto a Redis stream; delivery (SMS / email / push) is downstream.
    A failed publish is logged and never reaches the tick that raised the alert.
    """

    def __init__(self, r, stream: str = ALERT_STREAM):
        self.r = r
        self.stream = stream
        self._pending = set()

    def notify(self, trip, event_type: str, new_status: str, metadata: dict = None) -> asyncio.Task:
        payload = {
            "trip_id": trip.id,
            "trip_name": trip.trip_name,
            "device_id": trip.device_id,
            "event_type": event_type,
            "new_status": new_status,
            "metadata": metadata or {},
        }
        task = asyncio.create_task(self._publish(payload))
        self._pending.add(task)
        task.add_done_callback(self._finished)
        return task

    async def _publish(self, payload: dict):
        json_str = json.dumps(payload, ensure_ascii=False, default=str)
        await self.r.xadd(self.stream, {"ts": time.time(), "data": json_str})
        logger.info(f"Alert queued for trip {payload['trip_id']}: {payload['event_type']} -> {payload['new_status']}")

    def _finished(self, task: asyncio.Task):
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Alert publish failed: {exc!r}")

    async def drain(self):
        """Wait for alerts still in flight (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
