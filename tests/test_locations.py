import pytest

from leadscout.locations import (
    CITY,
    COUNTRY,
    LocationClassifier,
    LocationResearcher,
    default_cities,
    discover_nearby_cities,
    fallback_cities,
    generate_query_variations,
)
from leadscout.services.llm import parse_lines


class FakeGenerator:
    available = True

    def __init__(self, answer="", exc=None):
        self.answer = answer
        self.exc = exc
        self.prompts = []

    async def complete(self, prompt, on_token=None, on_complete=None, on_error=None, cancel_token=None):
        self.prompts.append(prompt)
        if self.exc is not None:
            raise self.exc
        return self.answer


class FakeSearch:
    available = True

    def __init__(self, texts):
        self.texts = list(texts)
        self.queries = []

    async def snippets(self, query, num=10):
        self.queries.append(query)
        return self.texts.pop(0) if self.texts else ""


@pytest.mark.parametrize(
    "location,expected",
    [("France", COUNTRY), ("  USA ", COUNTRY), ("Quebec City", CITY), ("Jamestown", CITY), ("Lyon", None)],
)
def test_quick_classification(location, expected):
    assert LocationClassifier.quick(location) == expected


@pytest.mark.asyncio
async def test_known_country_never_reaches_generator():
    gen = FakeGenerator("city")
    assert await LocationClassifier(gen).classify("Germany") == COUNTRY
    assert gen.prompts == []


@pytest.mark.asyncio
async def test_ambiguous_location_uses_generator_answer():
    assert await LocationClassifier(FakeGenerator("Country.")).classify("Bhutan") == COUNTRY
    assert await LocationClassifier(FakeGenerator("city")).classify("Lyon") == CITY


@pytest.mark.asyncio
async def test_generator_failure_defaults_to_city():
    gen = FakeGenerator(exc=RuntimeError("model down"))
    assert await LocationClassifier(gen).classify("Bhutan") == CITY
    assert await LocationClassifier(None).classify("Bhutan") == CITY


def test_parse_lines_strips_bullets_and_numbering():
    text = '1. Lyon\n- Marseille\n* "Nice"\n\n2) Toulouse\n' + "x" * 60 + "\nHere are some cities you could try in France today ok"
    assert parse_lines(text) == ["Lyon", "Marseille", "Nice", "Toulouse"]


def test_city_tables():
    assert default_cities("France")[:2] == ["Paris", "Lyon"]
    assert default_cities("Atlantis") == ["Atlantis"]
    assert fallback_cities(" FRANCE ")[0] == "Lyon"
    assert fallback_cities("Atlantis") == []


@pytest.mark.asyncio
async def test_best_cities_uses_snippets_and_excludes_searched():
    gen = FakeGenerator("Paris\nLyon\nBordeaux")
    search = FakeSearch(["", "Bordeaux clinics are scarce"])
    researcher = LocationResearcher(gen, search)
    cities = await researcher.best_cities("France", "dentist", exclude=["paris"])
    assert cities == ["Lyon", "Bordeaux"]
    # empty first search falls back to the competition query
    assert len(search.queries) == 2
    assert "Bordeaux clinics are scarce" in gen.prompts[0]
    assert "Do not include: paris" in gen.prompts[0]


@pytest.mark.asyncio
async def test_best_cities_falls_back_to_defaults_without_generator():
    cities = await LocationResearcher(None, None).best_cities("Germany", "bakery")
    assert cities == ["Berlin", "Munich", "Hamburg", "Frankfurt", "Cologne"]


@pytest.mark.asyncio
async def test_best_cities_mentions_low_online_presence_when_excluding_websites():
    gen = FakeGenerator("Leeds")
    search = FakeSearch(["snippet"])
    await LocationResearcher(gen, search).best_cities("UK", "plumber", exclude_no_website=True)
    assert "low online presence" in search.queries[0]
    assert "lack online presence" in gen.prompts[0]


@pytest.mark.asyncio
async def test_nearby_cities_drop_excluded_and_cap_at_seven():
    gen = FakeGenerator("\n".join(["Lyon", "Villeurbanne"] + [f"Town {i}" for i in range(10)]))
    cities = await discover_nearby_cities(gen, "Lyon", "France", ["Lyon"])
    assert "Lyon" not in cities
    assert cities[0] == "Villeurbanne"
    assert len(cities) == 7


@pytest.mark.asyncio
async def test_nearby_cities_empty_when_generator_missing():
    assert await discover_nearby_cities(None, "Lyon", None, []) == []


@pytest.mark.asyncio
async def test_query_variations_skip_used_terms():
    gen = FakeGenerator("Dentist\ndental clinic\northodontist\ndental clinic")
    terms = await generate_query_variations(gen, "dentist", ["dentist"])
    assert terms == ["dental clinic", "orthodontist"]
