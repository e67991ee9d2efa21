from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from leadscout import settings
from leadscout.keys import ApiKey, FallbackStep, KeyRotationManager, raise_for_rate_limit

logger = logging.getLogger(__name__)

CAPABILITY = "email_discovery"
DEFAULT_CHAIN = (FallbackStep("hunter", probe_on_exhaustion=True), FallbackStep("snov"))


def _first_email(items: Any) -> Optional[str]:
    for it in items or []:
        if isinstance(it, dict):
            v = it.get("value") or it.get("email")
            if v:
                return str(v).strip()
        elif isinstance(it, str) and "@" in it:
            return it.strip()
    return None


class HunterClient:
    service = "hunter"

    def __init__(self, base_url: str = settings.HUNTER_BASE):
        self.base_url = base_url.rstrip("/")

    async def _get(self, path: str, params: Dict[str, Any], key: ApiKey) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=settings.ENRICH_TIMEOUT_S) as client:
            r = await client.get(f"{self.base_url}/{path}", params={**params, "api_key": key.value})
            raise_for_rate_limit(self.service, r)
            data = r.json() or {}
        if not isinstance(data, dict):
            return {}
        return data.get("data") or {}

    async def find_by_domain(self, domain: str, key: ApiKey) -> Optional[str]:
        data = await self._get("domain-search", {"domain": domain}, key)
        return _first_email(data.get("emails"))

    async def find_by_name(self, first: str, last: str, domain: str, key: ApiKey) -> Optional[str]:
        data = await self._get(
            "email-finder", {"domain": domain, "first_name": first, "last_name": last}, key
        )
        email = data.get("email")
        return str(email).strip() if email else None


class SnovClient:
    """Snov.io; keys carry ``user_id`` (client id) and ``value`` (client secret)."""

    service = "snov"

    def __init__(self, base_url: str = settings.SNOV_BASE):
        self.base_url = base_url.rstrip("/")

    async def _token(self, client: httpx.AsyncClient, key: ApiKey) -> str:
        r = await client.post(
            f"{self.base_url}/v1/oauth/access_token",
            data={
                "grant_type": "client_credentials",
                "client_id": key.user_id or "",
                "client_secret": key.value,
            },
        )
        raise_for_rate_limit(self.service, r)
        return str((r.json() or {}).get("access_token") or "")

    async def find_by_domain(self, domain: str, key: ApiKey) -> Optional[str]:
        async with httpx.AsyncClient(timeout=settings.ENRICH_TIMEOUT_S) as client:
            token = await self._token(client, key)
            r = await client.post(
                f"{self.base_url}/v2/domain-emails-with-info",
                data={"access_token": token, "domain": domain, "type": "all", "limit": 10},
            )
            raise_for_rate_limit(self.service, r)
            data = r.json() or {}
        return _first_email(data.get("emails") if isinstance(data, dict) else None)

    async def find_by_name(self, first: str, last: str, domain: str, key: ApiKey) -> Optional[str]:
        async with httpx.AsyncClient(timeout=settings.ENRICH_TIMEOUT_S) as client:
            token = await self._token(client, key)
            r = await client.post(
                f"{self.base_url}/v1/get-emails-from-names",
                data={"access_token": token, "firstName": first, "lastName": last, "domain": domain},
            )
            raise_for_rate_limit(self.service, r)
            data = r.json() or {}
        inner = data.get("data") if isinstance(data, dict) else None
        return _first_email((inner or {}).get("emails") if isinstance(inner, dict) else None)


class EmailDiscovery:
    """Email lookup over the ``[hunter(probe), snov]`` fallback chain.

    Raises ResourceExhausted once every service in the chain is spent.
    """

    def __init__(self, keys: KeyRotationManager, chain=DEFAULT_CHAIN, clients: Optional[Dict[str, Any]] = None):
        self.keys = keys
        self.chain = tuple(chain)
        self.clients = clients or {"hunter": HunterClient(), "snov": SnovClient()}

    @property
    def available(self) -> bool:
        return any(self.keys.has(s.service) for s in self.chain)

    async def find_by_domain(self, domain: str) -> Optional[str]:
        async def _op(service: str, key: ApiKey) -> Optional[str]:
            return await self.clients[service].find_by_domain(domain, key)

        email = await self.keys.execute_chain(self.chain, _op, capability=CAPABILITY)
        logger.info("[email_finder] domain=%s found=%s", domain, bool(email))
        return email

    async def find_by_name(self, first: str, last: str, domain: str) -> Optional[str]:
        async def _op(service: str, key: ApiKey) -> Optional[str]:
            return await self.clients[service].find_by_name(first, last, domain, key)

        return await self.keys.execute_chain(self.chain, _op, capability=CAPABILITY)
