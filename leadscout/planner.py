from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence

from leadscout.events import RunEvents
from leadscout.locations import COUNTRY, LocationClassifier, LocationResearcher
from leadscout.models import LeadSource, SearchTask
from leadscout.state import RunState

logger = logging.getLogger(__name__)


def tasks_for_cities(
    query: str,
    cities: Iterable[str],
    sources: Sequence[LeadSource],
    *,
    country: Optional[str] = None,
) -> List[SearchTask]:
    """One task per (city, source), cities in order."""
    tasks: List[SearchTask] = []
    for city in cities:
        for source in sources:
            tasks.append(SearchTask(query=query, location=city, source=source, discovered_from_country=country))
    return tasks


class Planner:
    """Turns the requested locations into the first batch of search tasks.

    Countries are researched into their most promising cities and recorded
    as processed so expansion can come back for more.
    """

    def __init__(self, classifier: LocationClassifier, researcher: LocationResearcher,
                 events: Optional[RunEvents] = None):
        self.classifier = classifier
        self.researcher = researcher
        self.events = events or RunEvents()

    async def initial_plan(self, state: RunState, sources: Sequence[LeadSource]) -> List[SearchTask]:
        prefs = state.preferences
        token = state.cancel_token
        self.events.info(f'Analyzing niche "{prefs.niche}" and locations...')
        tasks: List[SearchTask] = []
        for location in prefs.locations:
            location = location.strip()
            if not location or token.cancelled:
                continue
            kind = await self.classifier.classify(location, cancel_token=token)
            self.events.info(f"{location} -> {kind}", location=location, kind=kind)
            if kind == COUNTRY:
                self.events.info(f"Researching best cities in {location}...", country=location)
                state.add_country(location)
                cities = await self.researcher.best_cities(
                    location,
                    prefs.niche,
                    exclude_no_website=prefs.filters.wants_no_website,
                    cancel_token=token,
                    services=prefs.services,
                )
                self.events.success(f"Found {len(cities)} cities in {location}", country=location, cities=cities)
                tasks.extend(tasks_for_cities(prefs.niche, cities, sources, country=location))
            else:
                tasks.extend(tasks_for_cities(prefs.niche, [location], sources))
        logger.info("[planner] initial plan: %d tasks", len(tasks))
        return tasks

    async def expand_country(self, country: str, state: RunState, sources: Sequence[LeadSource]) -> List[SearchTask]:
        prefs = state.preferences
        cities = await self.researcher.best_cities(
            country,
            prefs.niche,
            exclude_no_website=prefs.filters.wants_no_website,
            exclude=list(state.searched_cities),
            cancel_token=state.cancel_token,
            services=prefs.services,
        )
        fresh = [c for c in cities if not state.has_searched(c)]
        return tasks_for_cities(prefs.niche, fresh, sources, country=country)
