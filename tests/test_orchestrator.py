import asyncio
import itertools

import pytest

from leadscout.enrichment import LeadEnricher
from leadscout.events import EventKind, Severity
from leadscout.keys import KeyRotationManager
from leadscout.models import Lead, LeadSource, RunOutcome
from leadscout.orchestrator import Orchestrator
from leadscout.retry import BackoffPolicy
from leadscout.sources.base import SourceRegistry

_phones = itertools.count(1000)


class ListSink:
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)

    def kinds(self, kind):
        return [e for e in self.events if e.kind is kind]


class FakeSource:
    available = True

    def __init__(self, source=LeadSource.MAPS, per_call=3, slow_locations=(), delay=10.0):
        self.source = source
        self.per_call = per_call
        self.slow_locations = set(slow_locations)
        self.delay = delay
        self.locations = []

    async def search(self, query, location, limit):
        self.locations.append(location)
        if location in self.slow_locations:
            await asyncio.sleep(self.delay)
        out = []
        for _ in range(min(self.per_call, limit)):
            n = next(_phones)
            out.append(Lead(name=f"{query} {location} {n}", phone=f"+33 1 {n:08d}", source=self.source.value))
        return out


class ScriptedGenerator:
    available = True

    def __init__(self, research="", classify="city", nearby=None):
        self.research = research
        self.classify = classify
        self.nearby = nearby
        self.nearby_calls = 0

    async def complete(self, prompt, on_token=None, on_complete=None, on_error=None, cancel_token=None):
        if prompt.startswith("Classify"):
            return self.classify
        if "cities near" in prompt:
            self.nearby_calls += 1
            return self.nearby(self.nearby_calls) if self.nearby else ""
        if "alternative search terms" in prompt:
            return ""
        return self.research


def _orch(sources, gen, sink, **kw):
    registry = SourceRegistry(sources, timeout_s=30, policy=BackoffPolicy(max_attempts=1))
    kw.setdefault("heartbeat_interval_s", 60)
    kw.setdefault("teardown_timeout_s", 0.5)
    return Orchestrator(
        keys=KeyRotationManager(),
        registry=registry,
        generator=gen,
        enricher=LeadEnricher(),
        sink=sink,
        **kw,
    )


@pytest.mark.asyncio
async def test_country_run_reaches_goal():
    sink = ListSink()
    maps = FakeSource(LeadSource.MAPS)
    social = FakeSource(LeadSource.SOCIAL)
    gen = ScriptedGenerator(research="Paris\nLyon\nMarseille")
    orch = _orch([maps, social], gen, sink)
    summary = await orch.run({
        "niche": "dentist",
        "locations": ["France"],
        "leadLimit": 5,
        "filters": {"hasWebsite": False},
    })
    assert summary.outcome is RunOutcome.GOAL_REACHED
    assert summary.current_lead_count == 5
    assert len(summary.leads) == 5
    assert summary.processed_countries == ["France"]
    assert set(summary.searched_cities) == {"Paris", "Lyon", "Marseille"}
    assert len(sink.kinds(EventKind.LEAD_FOUND)) == 5
    assert sink.events[-1].kind is EventKind.STOPPED
    assert sink.events[-1].payload["summary"].outcome is RunOutcome.GOAL_REACHED
    plan = sink.kinds(EventKind.PLAN_UPDATED)[0].payload["plan"]
    assert len(plan) == 6
    assert orch.is_running is False


@pytest.mark.asyncio
async def test_round_cap_stops_loop():
    sink = ListSink()
    maps = FakeSource(per_call=1)
    gen = ScriptedGenerator(nearby=lambda n: f"Town {n}")
    orch = _orch([maps], gen, sink, max_rounds=2)
    summary = await orch.run({"niche": "baker", "locations": ["Springfield"], "leadLimit": 100})
    assert summary.outcome is RunOutcome.ROUND_LIMIT_REACHED
    assert summary.rounds == 2
    assert maps.locations == ["Springfield", "Town 1", "Town 2"]
    assert summary.current_lead_count == 3
    assert any("Maximum expansion rounds" in e.message for e in sink.kinds(EventKind.LOG))


@pytest.mark.asyncio
async def test_exhausted_when_no_expansion_left():
    sink = ListSink()
    orch = _orch([FakeSource(per_call=1)], ScriptedGenerator(), sink)
    summary = await orch.run({"niche": "baker", "locations": ["Springfield"], "leadLimit": 100})
    assert summary.outcome is RunOutcome.EXHAUSTED
    assert summary.rounds == 1
    assert summary.current_lead_count == 1
    assert any("No more expansion options" in e.message for e in sink.kinds(EventKind.LOG))


@pytest.mark.asyncio
async def test_no_configured_source_fails_fast():
    sink = ListSink()
    orch = _orch([], ScriptedGenerator(), sink)
    summary = await orch.run({"niche": "baker", "locations": ["Springfield"], "leadLimit": 5})
    assert summary.outcome is RunOutcome.FAILED
    assert summary.error
    assert any(e.severity is Severity.ERROR for e in sink.kinds(EventKind.LOG))
    assert sink.events[-1].kind is EventKind.STOPPED


@pytest.mark.asyncio
async def test_stop_cancels_promptly():
    sink = ListSink()
    maps = FakeSource(slow_locations={"Springfield"})
    orch = _orch([maps], ScriptedGenerator(), sink)
    run = asyncio.create_task(orch.run({"niche": "baker", "locations": ["Springfield"], "leadLimit": 5}))
    await asyncio.sleep(0.05)
    assert orch.is_running
    orch.stop()
    summary = await asyncio.wait_for(run, 3)
    assert summary.outcome is RunOutcome.CANCELLED
    assert summary.current_lead_count == 0
    assert any("Stopped by request" in e.message for e in sink.kinds(EventKind.LOG))


@pytest.mark.asyncio
async def test_stop_without_run_is_noop():
    orch = _orch([FakeSource()], ScriptedGenerator(), ListSink())
    orch.stop()
    assert orch.state is None


@pytest.mark.asyncio
async def test_new_run_supersedes_live_run():
    sink = ListSink()
    maps = FakeSource(slow_locations={"Slowville"})
    orch = _orch([maps], ScriptedGenerator(), sink)
    first = asyncio.create_task(orch.run({"niche": "baker", "locations": ["Slowville"], "leadLimit": 5}))
    await asyncio.sleep(0.05)
    second = await asyncio.wait_for(
        orch.run({"niche": "baker", "locations": ["Springfield"], "leadLimit": 2}), 3
    )
    assert (await first).outcome is RunOutcome.CANCELLED
    assert second.outcome is RunOutcome.GOAL_REACHED
    assert second.current_lead_count == 2


@pytest.mark.asyncio
async def test_stream_yields_events_and_ends_with_stopped():
    orch = _orch([FakeSource()], ScriptedGenerator(), ListSink())
    seen = []
    async for ev in orch.stream({"niche": "baker", "locations": ["Springfield"], "leadLimit": 2}):
        seen.append(ev)
    assert seen[0].kind is EventKind.LOG
    assert seen[-1].kind is EventKind.STOPPED
    assert len([e for e in seen if e.kind is EventKind.LEAD_FOUND]) == 2


@pytest.mark.asyncio
async def test_stream_delivers_every_lead_of_a_large_batch():
    orch = _orch([FakeSource(per_call=150)], ScriptedGenerator(), ListSink())
    seen = []
    async for ev in orch.stream({"niche": "baker", "locations": ["Springfield"], "leadLimit": 150}, maxsize=100):
        seen.append(ev)
    leads = [e for e in seen if e.kind is EventKind.LEAD_FOUND]
    assert len(leads) == 150
    assert seen[-1].kind is EventKind.STOPPED
    assert seen[-1].payload["summary"].current_lead_count == 150
