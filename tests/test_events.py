import asyncio

import pytest

from leadscout import obs
from leadscout.events import CompositeEventSink, Event, EventKind, QueueEventSink, RunEvents, Severity
from leadscout.state import CancelToken, DedupIndex


@pytest.mark.asyncio
async def test_queue_sink_drops_oldest_when_full():
    q = QueueEventSink(maxsize=3)
    for i in range(5):
        q.emit(Event(kind=EventKind.LOG, message=f"m{i}"))
    q.close()
    got = [ev.message async for ev in q]
    assert got == ["m2", "m3", "m4"]
    assert q.dropped == 2


@pytest.mark.asyncio
async def test_queue_sink_never_drops_lead_or_stop_events():
    q = QueueEventSink(maxsize=2)
    events = RunEvents(q)
    for i in range(150):
        events.info(f"log {i}")
        q.emit(Event(kind=EventKind.LEAD_FOUND, message=f"lead {i}"))
    q.emit(Event(kind=EventKind.STOPPED))
    q.close()
    got = [ev async for ev in q]
    leads = [ev.message for ev in got if ev.kind is EventKind.LEAD_FOUND]
    assert leads == [f"lead {i}" for i in range(150)]
    assert [ev.message for ev in got if ev.kind is EventKind.LOG] == ["log 148", "log 149"]
    assert got[-1].kind is EventKind.STOPPED


@pytest.mark.asyncio
async def test_queue_sink_ignores_events_after_close():
    q = QueueEventSink()
    q.emit(Event(kind=EventKind.LOG, message="a"))
    q.close()
    q.emit(Event(kind=EventKind.LOG, message="late"))
    assert [ev.message async for ev in q] == ["a"]


@pytest.mark.asyncio
async def test_queue_consumer_waits_for_producer():
    q = QueueEventSink()

    async def produce():
        await asyncio.sleep(0.01)
        RunEvents(q).success("done")
        q.close()

    producer = asyncio.create_task(produce())
    got = [ev async for ev in q]
    await producer
    assert len(got) == 1 and got[0].severity is Severity.SUCCESS


def test_composite_isolates_broken_sink():
    class Boom:
        def emit(self, event):
            raise RuntimeError("sink down")

    class Keep:
        def __init__(self):
            self.events = []

        def emit(self, event):
            self.events.append(event)

    keep = Keep()
    RunEvents(CompositeEventSink([Boom(), keep])).warning("careful", city="Lyon")
    assert len(keep.events) == 1
    assert keep.events[0].payload == {"city": "Lyon"}
    assert keep.events[0].severity is Severity.WARNING


def test_cancel_token_fires_callbacks_once():
    token = CancelToken()
    fired = []
    token.add_callback(lambda: fired.append("a"))
    token.cancel("first")
    token.cancel("second")
    assert fired == ["a"]
    assert token.reason == "first"
    # late callbacks run immediately
    token.add_callback(lambda: fired.append("late"))
    assert fired == ["a", "late"]


@pytest.mark.asyncio
async def test_guard_returns_result_when_not_cancelled():
    async def work():
        return 42

    assert await CancelToken().guard(work()) == 42


def test_dedup_index_is_insert_only():
    idx = DedupIndex()
    assert idx.add("phone:1") is True
    assert idx.add("phone:1") is False
    assert "phone:1" in idx and len(idx) == 1


def test_vendor_usage_accumulates():
    obs.reset_vendor_usage()
    obs.bump_vendor("serper", calls=1)
    obs.bump_vendor("serper", calls=1, rate_limit_hits=1)
    obs.bump_vendor("serper", quota_exhausted=True)
    usage = obs.vendor_usage()["serper"]
    assert usage == {"calls": 2, "errors": 0, "rate_limit_hits": 1, "quota_exhausted": True}
