from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from leadscout import settings
from leadscout.keys import ApiKey, FallbackStep, KeyRotationManager, raise_for_rate_limit

logger = logging.getLogger(__name__)

CAPABILITY = "email_verification"
DEFAULT_CHAIN = (FallbackStep("reoon", probe_on_exhaustion=True), FallbackStep("rapid"))

# Reoon returns valid/invalid/unknown/...; only these count as deliverable
REOON_OK = ("valid", "safe")
RAPID_OK = ("valid",)


class ReoonClient:
    service = "reoon"

    def __init__(self, base_url: str = settings.REOON_BASE):
        self.base_url = base_url.rstrip("/")

    async def verify(self, email: str, key: ApiKey) -> bool:
        async with httpx.AsyncClient(timeout=settings.ENRICH_TIMEOUT_S) as client:
            r = await client.get(
                f"{self.base_url}/verify",
                params={"email": email, "key": key.value, "mode": "power"},
            )
            raise_for_rate_limit(self.service, r)
            data = r.json() or {}
        status = str(data.get("status") or "").lower() if isinstance(data, dict) else ""
        return status in REOON_OK


class RapidVerifierClient:
    """Free verifier; the pool holds a single keyless entry."""

    service = "rapid"

    def __init__(self, url: str = settings.RAPID_VERIFIER_URL):
        self.url = url

    async def verify(self, email: str, key: ApiKey) -> bool:
        async with httpx.AsyncClient(timeout=settings.ENRICH_TIMEOUT_S) as client:
            r = await client.get(self.url, params={"email": email})
            raise_for_rate_limit(self.service, r)
            data = r.json() or {}
        status = str(data.get("status") or "").lower() if isinstance(data, dict) else ""
        return status in RAPID_OK


class EmailVerification:
    def __init__(self, keys: KeyRotationManager, chain=DEFAULT_CHAIN, clients: Optional[Dict[str, Any]] = None):
        self.keys = keys
        self.chain = tuple(chain)
        self.clients = clients or {"reoon": ReoonClient(), "rapid": RapidVerifierClient()}

    @property
    def available(self) -> bool:
        return any(self.keys.has(s.service) for s in self.chain)

    async def verify(self, email: str) -> bool:
        async def _op(service: str, key: ApiKey) -> bool:
            return await self.clients[service].verify(email, key)

        ok = await self.keys.execute_chain(self.chain, _op, capability=CAPABILITY)
        logger.info("[email_verifier] %s valid=%s", _mask_email(email), ok)
        return bool(ok)


def _mask_email(e: str) -> str:
    try:
        local, domain = e.split("@", 1)
        return (local[:2] + "***@" + domain) if len(local) > 2 else ("***@" + domain)
    except ValueError:
        return "***"
