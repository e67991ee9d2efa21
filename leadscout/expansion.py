"""Search-space expansion when a round leaves the goal unmet.

Strategies run in a fixed order and the first one that yields any task
wins:

1. re-research every processed country for cities not searched yet
2. ask the generator for cities near the most recently searched one
3. ask the generator for alternate query terms, retried on the first
   three searched cities
4. a static table of major cities per processed country (5 per country)

Strategies 2-4 only target the primary (maps) source.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from leadscout.events import RunEvents
from leadscout.locations import discover_nearby_cities, fallback_cities, generate_query_variations
from leadscout.models import PRIMARY_SOURCE, LeadSource, SearchTask
from leadscout.planner import Planner, tasks_for_cities
from leadscout.services.llm import TextGenerator
from leadscout.state import RunState

logger = logging.getLogger(__name__)

QUERY_RETRY_CITIES = 3
FALLBACK_PER_COUNTRY = 5


class ExpansionEngine:
    def __init__(self, planner: Planner, generator: Optional[TextGenerator] = None,
                 events: Optional[RunEvents] = None):
        self.planner = planner
        self.generator = generator
        self.events = events or RunEvents()

    async def next_tasks(self, state: RunState, sources: Sequence[LeadSource]) -> List[SearchTask]:
        primary = [PRIMARY_SOURCE] if PRIMARY_SOURCE in sources else list(sources[:1])
        for name, strategy in (
            ("country_research", lambda: self._countries(state, sources)),
            ("nearby_cities", lambda: self._nearby(state, primary)),
            ("query_variations", lambda: self._variations(state, primary)),
            ("fallback_cities", lambda: self._fallback(state, primary)),
        ):
            if state.should_stop:
                return []
            tasks = await strategy()
            if tasks:
                logger.info("[expansion] %s produced %d tasks", name, len(tasks))
                return tasks
        return []

    async def _countries(self, state: RunState, sources: Sequence[LeadSource]) -> List[SearchTask]:
        if not state.processed_countries:
            return []
        self.events.info("Strategy 1: Researching more cities from countries...", strategy=1)
        tasks: List[SearchTask] = []
        for country in list(state.processed_countries):
            if state.should_stop:
                break
            found = await self.planner.expand_country(country, state, sources)
            # Same city proposed for two countries counts once
            found = [t for t in found if not any(t.location.lower() == x.location.lower() and t.source == x.source for x in tasks)]
            if found:
                cities = {t.location for t in found}
                self.events.info(f"Found {len(cities)} new cities in {country}", country=country)
                tasks.extend(found)
        return tasks

    async def _nearby(self, state: RunState, sources: Sequence[LeadSource]) -> List[SearchTask]:
        if not state.searched_cities or not sources:
            return []
        last_city = state.searched_cities[-1]
        country = state.processed_countries[0] if state.processed_countries else None
        self.events.info(f"Strategy 2: Discovering cities near {last_city}...", strategy=2)
        cities = await discover_nearby_cities(
            self.generator, last_city, country, list(state.searched_cities), cancel_token=state.cancel_token
        )
        cities = [c for c in cities if not state.has_searched(c)]
        return tasks_for_cities(state.preferences.niche, cities, sources, country=country)

    async def _variations(self, state: RunState, sources: Sequence[LeadSource]) -> List[SearchTask]:
        if not sources:
            return []
        niche = state.preferences.niche
        self.events.info(f'Strategy 3: Trying query variations for "{niche}"...', strategy=3)
        cities = state.searched_cities[:QUERY_RETRY_CITIES]
        if not cities:
            return []
        queries = await generate_query_variations(
            self.generator, niche, list(state.used_queries), cancel_token=state.cancel_token
        )
        tasks: List[SearchTask] = []
        for query in queries:
            if state.has_used_query(query):
                continue
            state.used_queries.append(query)
            tasks.extend(tasks_for_cities(query, cities, sources))
        return tasks

    async def _fallback(self, state: RunState, sources: Sequence[LeadSource]) -> List[SearchTask]:
        if not state.processed_countries:
            return []
        self.events.info("Strategy 4: Trying fallback major cities...", strategy=4)
        tasks: List[SearchTask] = []
        for country in state.processed_countries:
            cities = [c for c in fallback_cities(country) if not state.has_searched(c)]
            tasks.extend(tasks_for_cities(state.preferences.niche, cities[:FALLBACK_PER_COUNTRY], sources, country=country))
        return tasks
