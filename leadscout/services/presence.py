from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Optional, Protocol

import httpx

from leadscout import obs, settings

logger = logging.getLogger(__name__)


class PresenceChecker(Protocol):
    @property
    def available(self) -> bool: ...

    async def has_presence(self, phone: str) -> bool: ...


def _digits(phone: str) -> str:
    return re.sub(r"\D+", "", phone or "")


class WhatsAppGatewayChecker:
    """Asks an HTTP gateway in front of a logged-in WhatsApp session whether
    a number is registered.

    Checks are spaced by ``min_interval_s`` so the session is not flagged
    for bulk lookups.
    """

    def __init__(self, url: Optional[str] = settings.WHATSAPP_GATEWAY_URL,
                 *, min_interval_s: float = settings.WHATSAPP_CHECK_DELAY_S):
        self.url = (url or "").rstrip("/") or None
        self.min_interval_s = min_interval_s
        self._last = 0.0
        self._lock = asyncio.Lock()

    @property
    def available(self) -> bool:
        return self.url is not None

    async def has_presence(self, phone: str) -> bool:
        if not self.url:
            raise RuntimeError("WhatsApp gateway not configured")
        number = _digits(phone)
        if not number:
            return False
        async with self._lock:
            wait = self.min_interval_s - (time.monotonic() - self._last)
            if wait > 0:
                await asyncio.sleep(wait)
            self._last = time.monotonic()
        obs.bump_vendor("whatsapp", calls=1)
        async with httpx.AsyncClient(timeout=settings.ENRICH_TIMEOUT_S) as client:
            r = await client.post(f"{self.url}/check", json={"phone": number})
            r.raise_for_status()
            data = r.json() or {}
        registered = bool(data.get("registered") or data.get("exists")) if isinstance(data, dict) else False
        logger.info("[presence] ***%s registered=%s", number[-4:], registered)
        return registered
