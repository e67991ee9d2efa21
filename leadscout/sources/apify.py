from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from leadscout import settings
from leadscout.errors import SourceError
from leadscout.keys import ApiKey, KeyRotationManager, raise_for_rate_limit
from leadscout.models import Lead, LeadSource
from leadscout.sources.base import to_float, to_int

logger = logging.getLogger(__name__)


def _first(item: Dict[str, Any], *names: str) -> Any:
    for n in names:
        v = item.get(n)
        if isinstance(v, list):
            v = next((x for x in v if isinstance(x, str) and x), None)
        if v not in (None, "", []):
            return v
    return None


def _text(v: Any) -> Optional[str]:
    if v is None:
        return None
    return str(v).strip() or None


def _address(item: Dict[str, Any]) -> str:
    addr = item.get("address")
    if isinstance(addr, dict):
        return str(addr.get("formatted") or addr.get("full") or addr.get("street") or "")
    return str(addr or item.get("location") or item.get("facebookUrl") or "")


def _category(item: Dict[str, Any], fallback: str) -> str:
    cats = item.get("categories") or item.get("category")
    if isinstance(cats, list):
        cats = next((c for c in cats if isinstance(c, str)), None)
    return str(cats or fallback)


def item_to_lead(item: Dict[str, Any], source: LeadSource) -> Optional[Lead]:
    """Tolerant mapping: each actor names the same facts differently."""
    name = _first(item, "title", "name", "businessName", "pageName")
    if not name:
        return None
    meta: Dict[str, Any] = {}
    url = _first(item, "facebookUrl", "pageUrl", "url", "webUrl")
    if url:
        meta["profile_url"] = url
    for k in ("likes", "followers"):
        if item.get(k) is not None:
            meta[k] = to_int(item.get(k))
    kwargs: Dict[str, Any] = {}
    ext_id = _first(item, "facebookId", "pageId", "businessId", "id")
    if ext_id:
        kwargs["id"] = f"{source.value}-{ext_id}"
    return Lead(
        name=str(name),
        category=_category(item, source.value.replace("_", " ")),
        address=_address(item),
        phone=_text(_first(item, "phone", "phoneNumber", "phones", "phoneUnformatted")),
        email=_text(_first(item, "email", "emails")),
        website=_text(_first(item, "website", "websites", "websiteUrl")),
        rating=to_float(_first(item, "rating", "ratingOverall", "averageRating", "stars")),
        review_count=to_int(_first(item, "reviewCount", "ratingCount", "reviewsCount", "numberOfReviews")),
        source=source.value,
        metadata=meta,
        **kwargs,
    )


class ApifyActorSource:
    """Runs one Apify actor per source with run-sync-get-dataset-items."""

    service = "apify"

    def __init__(self, source: LeadSource, keys: KeyRotationManager, *,
                 actor_id: Optional[str] = None, base_url: str = settings.APIFY_BASE,
                 timeout_s: float = settings.APIFY_SYNC_TIMEOUT_S):
        self.source = LeadSource(source)
        self.keys = keys
        self.actor_id = actor_id if actor_id is not None else settings.APIFY_ACTORS.get(self.source.value)
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s

    @property
    def available(self) -> bool:
        return bool(self.actor_id) and self.keys.has(self.service)

    def build_input(self, query: str, location: str, limit: int) -> Dict[str, Any]:
        # Actor input schemas vary; send the common spellings together
        full = f"{query} in {location}" if location else query
        return {
            "searchQuery": full,
            "searchTerms": [query],
            "search": query,
            "location": location,
            "maxResults": limit,
            "maxItems": limit,
        }

    async def search(self, query: str, location: str, limit: int) -> List[Lead]:
        actor = (self.actor_id or "").replace("/", "~")
        url = f"{self.base_url}/acts/{actor}/run-sync-get-dataset-items"
        payload = self.build_input(query, location, limit)

        async def _call(key: ApiKey) -> List[Dict[str, Any]]:
            async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                r = await client.post(
                    url,
                    params={"token": key.value, "format": "json"},
                    json=payload,
                    headers={"Content-Type": "application/json"},
                )
                raise_for_rate_limit(self.service, r)
                try:
                    data = r.json()
                except ValueError as exc:
                    raise SourceError(self.source.value, "actor returned a non-JSON body") from exc
            if isinstance(data, dict) and "items" in data:
                data = data.get("items")
            elif isinstance(data, dict) and data.get("error"):
                err = data["error"]
                msg = err.get("message") if isinstance(err, dict) else err
                raise SourceError(self.source.value, str(msg or "actor run failed"))
            return [it for it in (data or []) if isinstance(it, dict)] if isinstance(data, list) else []

        items = await self.keys.execute(self.service, _call)
        if settings.APIFY_DEBUG_LOG_ITEMS:
            logger.info("Apify items sample source=%s sample=%s", self.source.value, items[:3])
        leads = [lead for lead in (item_to_lead(it, self.source) for it in items) if lead is not None]
        logger.info("[apify] source=%s q=%r location=%r items=%d leads=%d",
                    self.source.value, query, location, len(items), len(leads))
        return leads[:limit]
