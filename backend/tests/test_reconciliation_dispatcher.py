"""
Unit tests: bounded worker pool that runs the pipeline off the request path.
"""
import pytest

from services.reconciliation_dispatcher import ReconciliationDispatcher
from factories import hotmart_payload, add_mapping, add_event

pytestmark = pytest.mark.asyncio


class FlakyPipeline:
    """Records event ids; raises for the ones listed in `broken`."""

    def __init__(self, broken=()):
        self.broken = set(broken)
        self.seen = []

    async def run(self, event_id):
        self.seen.append(event_id)
        if event_id in self.broken:
            raise RuntimeError("could not record outcome")
        return {"event_id": event_id, "status": "processed"}


async def test_submitted_events_are_processed(store, pipeline):
    add_mapping(store)
    first = add_event(store, "hotmart", hotmart_payload(transaction="T-1", email="a@x.com"))
    second = add_event(store, "hotmart", hotmart_payload(transaction="T-2", email="c@x.com"))
    dispatcher = ReconciliationDispatcher(pipeline, workers=2, queue_size=10)
    dispatcher.start()
    try:
        assert dispatcher.running
        assert dispatcher.submit(first) is True
        assert dispatcher.submit(second) is True
        await dispatcher.drain()
    finally:
        await dispatcher.stop()

    assert store.events[first]["status"] == "processed"
    assert store.events[second]["status"] == "processed"
    assert not dispatcher.running


async def test_full_queue_refuses_without_blocking(caplog):
    dispatcher = ReconciliationDispatcher(FlakyPipeline(), workers=1, queue_size=1)
    assert dispatcher.submit("evt-1") is True
    assert dispatcher.submit("evt-2") is False
    assert "RECONCILE_QUEUE_FULL" in caplog.text
    assert dispatcher.queue.qsize() == 1


async def test_worker_survives_a_failing_event():
    pipeline = FlakyPipeline(broken={"evt-1"})
    dispatcher = ReconciliationDispatcher(pipeline, workers=1, queue_size=10)
    dispatcher.start()
    try:
        dispatcher.submit("evt-1")
        dispatcher.submit("evt-2")
        await dispatcher.drain()
    finally:
        await dispatcher.stop()
    assert pipeline.seen == ["evt-1", "evt-2"]


async def test_start_is_idempotent():
    dispatcher = ReconciliationDispatcher(FlakyPipeline(), workers=3, queue_size=10)
    dispatcher.start()
    dispatcher.start()
    try:
        assert len(dispatcher._tasks) == 3
    finally:
        await dispatcher.stop()
