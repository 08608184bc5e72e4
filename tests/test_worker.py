from conftest import T0
from worker import run_cycle


class RecordingEvaluator:
    def __init__(self, fail_for=(), skip_for=()):
        self.fail_for = set(fail_for)
        self.skip_for = set(skip_for)
        self.seen = []

    async def evaluate(self, trip):
        self.seen.append(trip.device_id)
        if trip.device_id in self.fail_for:
            raise RuntimeError("evaluation blew up")
        return trip.device_id not in self.skip_for


async def test_cycle_continues_after_a_failing_trip(make_trip, store):
    for device in ("dev-1", "dev-2", "dev-3"):
        await make_trip(device_id=device)
    evaluator = RecordingEvaluator(fail_for={"dev-1"}, skip_for={"dev-3"})

    stats = await run_cycle(evaluator, store, devices=set())

    assert evaluator.seen == ["dev-1", "dev-2", "dev-3"]
    assert stats == {"processed": 1, "skipped": 1, "failed": 1}


async def test_cycle_only_loads_schedulable_trips(make_trip, store):
    await make_trip(device_id="planned", trip_stage="Planned")
    await make_trip(device_id="delayed", trip_stage="Start Delayed")
    await make_trip(device_id="done", trip_stage="Completed", actual_end_time=T0)
    await make_trip(device_id="cancelled", trip_stage="Cancelled")
    evaluator = RecordingEvaluator()

    await run_cycle(evaluator, store, devices=set())

    assert sorted(evaluator.seen) == ["delayed", "planned"]


async def test_cycle_respects_device_allow_list(make_trip, store):
    await make_trip(device_id="dev-1")
    await make_trip(device_id="dev-2")
    evaluator = RecordingEvaluator()

    await run_cycle(evaluator, store, devices={"dev-2"})

    assert evaluator.seen == ["dev-2"]
