"""Location knowledge used to plan and expand searches.

Heuristics come first (known country names, city-ish suffixes); the text
generator only decides ambiguous cases and proposes new cities or query
terms. Every model-backed helper degrades to a static answer or an empty
list instead of raising.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence

from leadscout.errors import RunCancelled
from leadscout.services.llm import TextGenerator, parse_lines
from leadscout.services.web_search import SerperWebSearch
from leadscout.state import CancelToken

logger = logging.getLogger(__name__)

CITY = "city"
COUNTRY = "country"

KNOWN_COUNTRIES = frozenset({
    "united states", "usa", "united kingdom", "uk", "canada", "australia",
    "germany", "france", "italy", "spain", "netherlands", "belgium", "sweden",
    "norway", "denmark", "finland", "poland", "austria", "switzerland",
    "portugal", "ireland", "japan", "china", "india", "brazil", "mexico",
    "argentina", "south africa", "nigeria", "egypt", "saudi arabia", "uae",
    "united arab emirates", "singapore", "malaysia", "indonesia",
    "philippines", "thailand", "vietnam", "south korea", "korea",
    "new zealand", "russia", "ukraine", "turkey", "greece", "czech republic",
    "hungary", "romania", "bangladesh", "pakistan", "sri lanka",
})

CITY_INDICATORS = ("city", "town", "ville", "burg", "borough")

# Major cities tried first when a country has no usable research
DEFAULT_CITIES = {
    "united kingdom": ["London", "Manchester", "Birmingham", "Leeds", "Glasgow"],
    "uk": ["London", "Manchester", "Birmingham", "Leeds", "Glasgow"],
    "united states": ["New York", "Los Angeles", "Chicago", "Houston", "Phoenix"],
    "usa": ["New York", "Los Angeles", "Chicago", "Houston", "Phoenix"],
    "germany": ["Berlin", "Munich", "Hamburg", "Frankfurt", "Cologne"],
    "france": ["Paris", "Lyon", "Marseille", "Toulouse", "Nice"],
    "canada": ["Toronto", "Vancouver", "Montreal", "Calgary", "Ottawa"],
    "australia": ["Sydney", "Melbourne", "Brisbane", "Perth", "Adelaide"],
    "india": ["Mumbai", "Delhi", "Bangalore", "Hyderabad", "Chennai"],
    "bangladesh": ["Dhaka", "Chittagong", "Khulna", "Rajshahi", "Sylhet"],
}

# Last-resort expansion table
FALLBACK_CITIES = {
    "united states": ["Los Angeles", "Chicago", "Houston", "Miami", "Seattle", "Denver", "Boston"],
    "usa": ["Los Angeles", "Chicago", "Houston", "Miami", "Seattle", "Denver", "Boston"],
    "united kingdom": ["Birmingham", "Liverpool", "Bristol", "Newcastle", "Sheffield", "Edinburgh"],
    "uk": ["Birmingham", "Liverpool", "Bristol", "Newcastle", "Sheffield", "Edinburgh"],
    "germany": ["Hamburg", "Munich", "Cologne", "Frankfurt", "Stuttgart", "Dresden"],
    "france": ["Lyon", "Marseille", "Toulouse", "Bordeaux", "Lille", "Strasbourg"],
    "canada": ["Calgary", "Edmonton", "Winnipeg", "Halifax", "Victoria", "Hamilton"],
    "australia": ["Perth", "Adelaide", "Gold Coast", "Canberra", "Newcastle", "Hobart"],
    "india": ["Pune", "Ahmedabad", "Jaipur", "Lucknow", "Kochi", "Chandigarh"],
    "bangladesh": ["Comilla", "Gazipur", "Narayanganj", "Bogra", "Mymensingh", "Cox's Bazar"],
}

MAX_RESEARCH_CITIES = 7
MAX_NEARBY_CITIES = 7
MAX_QUERY_VARIATIONS = 5


def default_cities(country: str) -> List[str]:
    return list(DEFAULT_CITIES.get(country.strip().lower(), [country.strip()]))


def fallback_cities(country: str) -> List[str]:
    return list(FALLBACK_CITIES.get(country.strip().lower(), []))


def _exclude(items: Iterable[str], exclude: Iterable[str]) -> List[str]:
    seen = {e.strip().lower() for e in exclude}
    out: List[str] = []
    for item in items:
        k = item.strip().lower()
        if k and k not in seen:
            seen.add(k)
            out.append(item.strip())
    return out


async def _generate(generator: Optional[TextGenerator], prompt: str,
                    cancel_token: Optional[CancelToken]) -> Optional[str]:
    """Model answer, or None when no generator is configured or it failed."""
    if generator is None or not generator.available:
        return None
    try:
        return await generator.complete(prompt, cancel_token=cancel_token)
    except RunCancelled:
        raise
    except Exception as exc:
        logger.warning("[locations] generation failed: %s", exc)
        return None


class LocationClassifier:
    def __init__(self, generator: Optional[TextGenerator] = None):
        self.generator = generator

    @staticmethod
    def quick(location: str) -> Optional[str]:
        normalized = (location or "").strip().lower()
        if normalized in KNOWN_COUNTRIES:
            return COUNTRY
        if any(ind in normalized for ind in CITY_INDICATORS):
            return CITY
        return None

    async def classify(self, location: str, cancel_token: Optional[CancelToken] = None) -> str:
        kind = self.quick(location)
        if kind:
            return kind
        prompt = (
            'Classify this location as either "city" or "country". '
            "Only respond with one word: city or country.\n\n"
            f'Location: "{location}"\n\nAnswer:'
        )
        answer = await _generate(self.generator, prompt, cancel_token)
        if answer and "country" in answer.lower():
            return COUNTRY
        return CITY


class LocationResearcher:
    """Suggests the most promising cities of a country for a niche."""

    def __init__(self, generator: Optional[TextGenerator] = None, search: Optional[SerperWebSearch] = None):
        self.generator = generator
        self.search = search

    async def _snippets(self, country: str, niche: str, services: Optional[str],
                        exclude_no_website: bool, cancel_token: Optional[CancelToken]) -> str:
        if self.search is None or not self.search.available:
            return ""
        query = f"best cities in {country} for {niche} businesses"
        if services:
            query += f" that need {services}"
        if exclude_no_website:
            query += " with low online presence no website"
        fallback = f"{niche} market competition {country} underserved areas low competition cities"

        async def _run() -> str:
            text = await self.search.snippets(query)
            if not text:
                text = await self.search.snippets(fallback)
            return text

        try:
            if cancel_token is not None:
                return await cancel_token.guard(_run())
            return await _run()
        except RunCancelled:
            raise
        except Exception as exc:
            logger.warning("[locations] city research search failed for %s: %s", country, exc)
            return ""

    async def best_cities(
        self,
        country: str,
        niche: str,
        exclude_no_website: bool = False,
        exclude: Sequence[str] = (),
        cancel_token: Optional[CancelToken] = None,
        services: Optional[str] = None,
    ) -> List[str]:
        snippets = await self._snippets(country, niche, services, exclude_no_website, cancel_token)
        focus = "Focus on cities where many businesses lack online presence or websites.\n" if exclude_no_website else ""
        avoid = f"Do not include: {', '.join(exclude)}\n" if exclude else ""
        prompt = (
            f"Based on the following research about {niche} businesses in {country}, extract 5-7 "
            "specific city names that would be the best targets for lead generation.\n\n"
            + (f"Our services: {services}\n" if services else "")
            + focus
            + avoid
            + (f"\nSearch snippets:\n{snippets[:4000]}\n" if snippets else "")
            + "\nInstructions:\n- Return ONLY city names, one per line\n- No explanations or numbering\n"
            "- Focus on cities with good business opportunities\n- Prioritize underserved markets if possible\n\nCities:"
        )
        answer = await _generate(self.generator, prompt, cancel_token)
        cities = parse_lines(answer or "")[:MAX_RESEARCH_CITIES]
        if not cities:
            cities = default_cities(country)
        cities = _exclude(cities, exclude)
        logger.info("[locations] %s -> %s", country, ", ".join(cities) or "(none)")
        return cities


async def discover_nearby_cities(
    generator: Optional[TextGenerator],
    current_city: str,
    country: Optional[str],
    exclude: Sequence[str],
    cancel_token: Optional[CancelToken] = None,
) -> List[str]:
    where = f' in {country}' if country else ""
    prompt = (
        f'I need to find businesses in cities near "{current_city}"{where}.\n\n'
        "Please list 5-7 nearby cities or towns that:\n"
        f"1. Are within reasonable proximity to {current_city}\n"
        "2. Have significant business activity\n"
        f"3. Are NOT in this list: {', '.join(exclude)}\n\n"
        "Output ONLY city names, one per line. No explanations or numbering."
    )
    answer = await _generate(generator, prompt, cancel_token)
    return _exclude(parse_lines(answer or ""), exclude)[:MAX_NEARBY_CITIES]


async def generate_query_variations(
    generator: Optional[TextGenerator],
    niche: str,
    used_queries: Sequence[str],
    cancel_token: Optional[CancelToken] = None,
) -> List[str]:
    prompt = (
        f'For the business category "{niche}", generate 5 alternative search terms '
        "that could find similar businesses.\n\n"
        "Include:\n- Synonyms\n- Related niches\n- More specific terms\n- Industry variations\n\n"
        f"Already used: {', '.join(used_queries)}\n\n"
        "Output ONLY search terms, one per line. No explanations."
    )
    answer = await _generate(generator, prompt, cancel_token)
    return _exclude(parse_lines(answer or ""), used_queries)[:MAX_QUERY_VARIATIONS]
