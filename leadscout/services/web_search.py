from __future__ import annotations

import logging
from typing import Any, Dict, List

import httpx

from leadscout import settings
from leadscout.keys import ApiKey, KeyRotationManager, raise_for_rate_limit

logger = logging.getLogger(__name__)


class SerperWebSearch:
    """Google web search through Serper; returns organic results."""

    service = "serper"

    def __init__(self, keys: KeyRotationManager, *, base_url: str = settings.SERPER_BASE):
        self.keys = keys
        self.base_url = base_url.rstrip("/")

    @property
    def available(self) -> bool:
        return self.keys.has(self.service)

    async def search(self, query: str, num: int = 10) -> List[Dict[str, Any]]:
        async def _call(key: ApiKey) -> List[Dict[str, Any]]:
            async with httpx.AsyncClient(timeout=settings.SERPER_TIMEOUT_S) as client:
                r = await client.post(
                    f"{self.base_url}/search",
                    json={"q": query, "num": num},
                    headers={"X-API-KEY": key.value, "Content-Type": "application/json"},
                )
                raise_for_rate_limit(self.service, r)
                data = r.json() or {}
            organic = data.get("organic") if isinstance(data, dict) else None
            return [o for o in (organic or []) if isinstance(o, dict)]

        results = await self.keys.execute(self.service, _call)
        logger.info("[web_search] q=%r results=%d", query, len(results))
        return results

    async def snippets(self, query: str, num: int = 10) -> str:
        """Concatenated title + snippet text, handy as model context."""
        rows = await self.search(query, num=num)
        lines = []
        for r in rows:
            title = (r.get("title") or "").strip()
            snippet = (r.get("snippet") or "").strip()
            if title or snippet:
                lines.append(f"{title}: {snippet}")
        return "\n".join(lines)
