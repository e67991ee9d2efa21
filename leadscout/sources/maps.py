from __future__ import annotations

import logging
from typing import Any, Dict, List

import httpx

from leadscout import settings
from leadscout.keys import ApiKey, KeyRotationManager, raise_for_rate_limit
from leadscout.models import Lead, LeadSource
from leadscout.sources.base import to_float, to_int

logger = logging.getLogger(__name__)


def place_to_lead(place: Dict[str, Any]) -> Lead:
    meta: Dict[str, Any] = {}
    if place.get("latitude") is not None:
        meta["latitude"] = place.get("latitude")
        meta["longitude"] = place.get("longitude")
    kwargs: Dict[str, Any] = {}
    if place.get("cid"):
        kwargs["id"] = str(place["cid"])
    return Lead(
        name=str(place.get("title") or "Unknown Business"),
        category=str(place.get("category") or ""),
        address=str(place.get("address") or ""),
        phone=str(place.get("phoneNumber") or place.get("phone") or "") or None,
        website=str(place.get("website") or "") or None,
        rating=to_float(place.get("rating")),
        review_count=to_int(place.get("ratingCount") or place.get("reviews")),
        source=LeadSource.MAPS.value,
        metadata=meta,
        **kwargs,
    )


class SerperMapsSource:
    """Google Maps places through Serper's ``/maps`` endpoint.

    Fetches up to ``max_pages`` pages and stops early on a short page or
    once ``limit`` places are collected.
    """

    source = LeadSource.MAPS
    service = "serper"

    def __init__(self, keys: KeyRotationManager, *, base_url: str = settings.SERPER_BASE,
                 max_pages: int = settings.MAPS_MAX_PAGES,
                 per_page: int = settings.MAPS_RESULTS_PER_PAGE):
        self.keys = keys
        self.base_url = base_url.rstrip("/")
        self.max_pages = max_pages
        self.per_page = per_page

    @property
    def available(self) -> bool:
        return self.keys.has(self.service)

    async def _page(self, q: str, page: int) -> List[Dict[str, Any]]:
        async def _call(key: ApiKey) -> List[Dict[str, Any]]:
            async with httpx.AsyncClient(timeout=settings.SERPER_TIMEOUT_S) as client:
                r = await client.post(
                    f"{self.base_url}/maps",
                    json={"q": q, "page": page},
                    headers={"X-API-KEY": key.value, "Content-Type": "application/json"},
                )
                raise_for_rate_limit(self.service, r)
                data = r.json() or {}
            places = data.get("places") if isinstance(data, dict) else None
            return [p for p in (places or []) if isinstance(p, dict)]

        return await self.keys.execute(self.service, _call)

    async def search(self, query: str, location: str, limit: int) -> List[Lead]:
        q = f"{query} in {location}" if location else query
        places: List[Dict[str, Any]] = []
        for page in range(1, max(1, self.max_pages) + 1):
            rows = await self._page(q, page)
            places.extend(rows)
            if len(rows) < self.per_page or len(places) >= limit:
                break
        logger.info("[maps] q=%r places=%d", q, len(places))
        return [place_to_lead(p) for p in places[:limit] if p.get("title")]
