import pytest

from leadscout.expansion import ExpansionEngine
from leadscout.locations import LocationClassifier, LocationResearcher
from leadscout.models import LeadSource, Preferences
from leadscout.planner import Planner, tasks_for_cities
from leadscout.state import RunState


class ScriptedGenerator:
    """Answers by prompt type so each strategy can be scripted independently."""

    available = True

    def __init__(self, research="", nearby="", variations="", classify="city"):
        self.answers = {"research": research, "nearby": nearby, "variations": variations, "classify": classify}
        self.asked = []

    async def complete(self, prompt, on_token=None, on_complete=None, on_error=None, cancel_token=None):
        if prompt.startswith("Classify"):
            kind = "classify"
        elif "cities near" in prompt:
            kind = "nearby"
        elif "alternative search terms" in prompt:
            kind = "variations"
        else:
            kind = "research"
        self.asked.append(kind)
        return self.answers[kind]


ALL = [LeadSource.MAPS, LeadSource.SOCIAL]


def _engine(gen):
    planner = Planner(LocationClassifier(gen), LocationResearcher(gen, None))
    return ExpansionEngine(planner, gen)


def _state(locations=("France",), searched=(), countries=("France",)):
    state = RunState.for_preferences(Preferences(niche="dentist", locations=list(locations), lead_limit=50))
    for c in searched:
        state.mark_searched(c)
    for c in countries:
        state.add_country(c)
    return state


def test_tasks_for_cities_is_city_major():
    tasks = tasks_for_cities("dentist", ["Paris", "Lyon"], ALL, country="France")
    assert [(t.location, t.source) for t in tasks] == [
        ("Paris", LeadSource.MAPS), ("Paris", LeadSource.SOCIAL),
        ("Lyon", LeadSource.MAPS), ("Lyon", LeadSource.SOCIAL),
    ]
    assert all(t.discovered_from_country == "France" for t in tasks)


@pytest.mark.asyncio
async def test_planner_researches_countries_and_passes_cities_through():
    gen = ScriptedGenerator(research="Lyon\nNice", classify="city")
    state = _state(locations=("France", "Springfield"), countries=())
    tasks = await _engine(gen).planner.initial_plan(state, [LeadSource.MAPS])
    assert [t.location for t in tasks] == ["Lyon", "Nice", "Springfield"]
    assert state.processed_countries == ["France"]
    assert tasks[0].discovered_from_country == "France"
    assert tasks[2].discovered_from_country is None


@pytest.mark.asyncio
async def test_country_research_wins_and_uses_all_sources():
    gen = ScriptedGenerator(research="Paris\nBordeaux\nLille", nearby="Villeurbanne")
    state = _state(searched=["Paris", "Lyon"])
    tasks = await _engine(gen).next_tasks(state, ALL)
    assert {t.location for t in tasks} == {"Bordeaux", "Lille"}
    assert {t.source for t in tasks} == set(ALL)
    assert "nearby" not in gen.asked


@pytest.mark.asyncio
async def test_nearby_cities_used_when_research_finds_nothing_new():
    gen = ScriptedGenerator(research="Paris\nLyon", nearby="Villeurbanne\nLyon\nVienne")
    state = _state(searched=["Paris", "Lyon"])
    tasks = await _engine(gen).next_tasks(state, ALL)
    assert [t.location for t in tasks] == ["Villeurbanne", "Vienne"]
    # only the primary source past strategy 1
    assert {t.source for t in tasks} == {LeadSource.MAPS}
    assert "variations" not in gen.asked


@pytest.mark.asyncio
async def test_nearby_works_without_a_processed_country():
    gen = ScriptedGenerator(nearby="Cambridge")
    state = _state(locations=("Boston",), searched=["Boston"], countries=())
    tasks = await _engine(gen).next_tasks(state, ALL)
    assert [t.location for t in tasks] == ["Cambridge"]
    assert tasks[0].discovered_from_country is None


@pytest.mark.asyncio
async def test_query_variations_retry_first_three_cities():
    gen = ScriptedGenerator(research="Paris", nearby="", variations="dental clinic\northodontist")
    state = _state(searched=["Paris", "Lyon", "Nice", "Lille"])
    tasks = await _engine(gen).next_tasks(state, ALL)
    assert {t.query for t in tasks} == {"dental clinic", "orthodontist"}
    assert sorted({t.location for t in tasks}) == ["Lyon", "Nice", "Paris"]
    assert len(tasks) == 6
    assert state.used_queries == ["dentist", "dental clinic", "orthodontist"]


@pytest.mark.asyncio
async def test_used_queries_are_not_repeated():
    gen = ScriptedGenerator(variations="dental clinic")
    state = _state(searched=["Paris"], countries=())
    state.used_queries.append("dental clinic")
    tasks = await _engine(gen).next_tasks(state, ALL)
    assert tasks == []


@pytest.mark.asyncio
async def test_fallback_table_caps_five_per_country():
    gen = ScriptedGenerator(research="Paris")
    state = _state(searched=["Paris"])
    tasks = await _engine(gen).next_tasks(state, ALL)
    assert [t.location for t in tasks] == ["Lyon", "Marseille", "Toulouse", "Bordeaux", "Lille"]
    assert all(t.source is LeadSource.MAPS for t in tasks)


@pytest.mark.asyncio
async def test_all_strategies_empty_returns_no_tasks():
    gen = ScriptedGenerator()
    state = _state(locations=("Atlantis",), searched=["Atlantis"], countries=("Atlantis",))
    assert await _engine(gen).next_tasks(state, ALL) == []


@pytest.mark.asyncio
async def test_stopped_run_expands_nothing():
    gen = ScriptedGenerator(research="Bordeaux")
    state = _state()
    state.cancel_token.cancel()
    assert await _engine(gen).next_tasks(state, ALL) == []
    assert gen.asked == []
