"""API key rotation and multi-service fallback.

Each outbound service owns a ``KeyPool``. Calls go through
``KeyRotationManager.execute`` which rotates on rate-limit/quota/auth
responses, probes the most recently exhausted key once when the whole pool
is exhausted (keys often reset on a daily/monthly window), and raises
``PoolExhausted`` when the probe fails too. ``execute_chain`` walks an
ordered list of equivalent services the same way.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

import httpx

from leadscout import obs, settings
from leadscout.errors import PoolExhausted, RateLimitError, ResourceExhausted

logger = logging.getLogger(__name__)

RATE_LIMIT_STATUSES = (401, 402, 429)
_RATE_LIMIT_CODES = ("rate_limit", "quota_exceeded")


@dataclass
class ApiKey:
    value: str
    user_id: Optional[str] = None
    exhausted: bool = False
    last_error: Optional[str] = None


@dataclass
class KeySelection:
    key: Optional[ApiKey]
    index: int = -1
    all_exhausted: bool = False
    probe: bool = False


@dataclass
class KeyPool:
    service: str
    keys: List[ApiKey] = field(default_factory=list)
    cursor: int = 0
    last_exhausted: int = -1
    probed: bool = False

    @property
    def all_exhausted(self) -> bool:
        return bool(self.keys) and all(k.exhausted for k in self.keys)


@dataclass(frozen=True)
class FallbackStep:
    service: str
    probe_on_exhaustion: bool = False


def is_rate_limit_response(status: Optional[int], body: Any = None) -> bool:
    """True when an HTTP status/body pair means "this key is spent"."""
    if status in RATE_LIMIT_STATUSES:
        return True
    if isinstance(body, dict):
        err = body.get("error")
        code = ""
        if isinstance(err, dict):
            code = str(err.get("code") or err.get("type") or "")
        elif err is not None:
            code = str(err)
        if code.lower() in _RATE_LIMIT_CODES:
            return True
        message = str(body.get("message") or "")
        if "rate limit" in message.lower():
            return True
    return False


def is_rate_limit_error(exc: BaseException) -> bool:
    if isinstance(exc, RateLimitError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        body: Any = None
        try:
            body = exc.response.json()
        except Exception:
            body = None
        return is_rate_limit_response(exc.response.status_code, body)
    # SDK errors (openai, langchain) carry status_code
    status = getattr(exc, "status_code", None)
    if status in RATE_LIMIT_STATUSES:
        return True
    text = str(exc).lower()
    return "rate limit" in text or "quota" in text


def raise_for_rate_limit(service: str, resp: httpx.Response) -> None:
    """Raise RateLimitError for a spent key, else defer to raise_for_status."""
    body: Any = None
    try:
        body = resp.json()
    except Exception:
        body = None
    if is_rate_limit_response(resp.status_code, body):
        raise RateLimitError(service, resp.status_code)
    resp.raise_for_status()


class KeyRotationManager:
    def __init__(self) -> None:
        self._pools: Dict[str, KeyPool] = {}

    # --- pool administration ------------------------------------------------
    def register(self, service: str, keys: Iterable[ApiKey | str]) -> KeyPool:
        pool = KeyPool(service=service, keys=[_as_key(k) for k in keys])
        self._pools[service] = pool
        return pool

    def update_keys(self, service: str, keys: Iterable[ApiKey | str]) -> KeyPool:
        """Replace the key list, keeping exhaustion state for keys that stay."""
        old = {k.value: k for k in self._pools.get(service, KeyPool(service)).keys}
        fresh: List[ApiKey] = []
        for k in keys:
            key = _as_key(k)
            prev = old.get(key.value)
            if prev is not None:
                key.exhausted, key.last_error = prev.exhausted, prev.last_error
            fresh.append(key)
        pool = self._pools.setdefault(service, KeyPool(service=service))
        pool.keys = fresh
        pool.cursor = 0
        pool.last_exhausted = -1
        pool.probed = False
        return pool

    def has(self, service: str) -> bool:
        return self.key_count(service) > 0

    def key_count(self, service: str) -> int:
        pool = self._pools.get(service)
        return len(pool.keys) if pool else 0

    def pool(self, service: str) -> Optional[KeyPool]:
        return self._pools.get(service)

    def reset(self, service: str) -> None:
        pool = self._pools.get(service)
        if not pool:
            return
        for k in pool.keys:
            k.exhausted = False
            k.last_error = None
        pool.cursor = 0
        pool.last_exhausted = -1
        pool.probed = False

    def reset_all(self) -> None:
        for service in list(self._pools):
            self.reset(service)

    # --- rotation -------------------------------------------------------------
    def next_key(self, service: str) -> KeySelection:
        pool = self._pools.get(service)
        if not pool or not pool.keys:
            return KeySelection(key=None, all_exhausted=True)
        n = len(pool.keys)
        for step in range(n):
            i = (pool.cursor + step) % n
            if not pool.keys[i].exhausted:
                pool.cursor = (i + 1) % n
                return KeySelection(key=pool.keys[i], index=i)
        if not pool.probed:
            pool.probed = True
            i = pool.last_exhausted if pool.last_exhausted >= 0 else 0
            return KeySelection(key=pool.keys[i], index=i, all_exhausted=True, probe=True)
        return KeySelection(key=None, all_exhausted=True)

    def mark_exhausted(self, service: str, index: int, reason: str = "") -> None:
        pool = self._pools.get(service)
        if not pool or not (0 <= index < len(pool.keys)):
            return
        key = pool.keys[index]
        key.exhausted = True
        key.last_error = reason or None
        pool.last_exhausted = index
        pool.cursor = (index + 1) % len(pool.keys)
        logger.warning("[keys] %s key #%d exhausted: %s", service, index + 1, reason)
        if pool.all_exhausted:
            logger.warning("[keys] all %d %s keys exhausted", len(pool.keys), service)

    def mark_reset(self, service: str) -> None:
        pool = self._pools.get(service)
        if not pool:
            return
        for k in pool.keys:
            k.exhausted = False
            k.last_error = None
        pool.probed = False
        logger.info("[keys] %s keys reset after successful probe", service)

    # --- execution --------------------------------------------------------------
    async def execute(self, service: str, operation: Callable[[ApiKey], Awaitable[Any]]) -> Any:
        """Run ``operation(key)`` rotating through the pool on rate limits.

        Non rate-limit errors propagate unchanged.
        """
        last_error = ""
        while True:
            sel = self.next_key(service)
            if sel.key is None:
                obs.bump_vendor(service, quota_exhausted=True)
                raise PoolExhausted(service, last_error)
            obs.bump_vendor(service, calls=1)
            try:
                result = await operation(sel.key)
            except Exception as exc:
                if not is_rate_limit_error(exc):
                    obs.bump_vendor(service, errors=1)
                    if sel.probe:
                        # Inconclusive probe; allow another one later
                        self._pools[service].probed = False
                    raise
                last_error = str(exc)
                obs.bump_vendor(service, rate_limit_hits=1)
                if sel.probe:
                    sel.key.last_error = last_error
                    obs.bump_vendor(service, quota_exhausted=True)
                    logger.warning("[keys] %s reset probe failed: %s", service, last_error)
                    raise PoolExhausted(service, last_error) from exc
                self.mark_exhausted(service, sel.index, last_error)
                continue
            if sel.probe:
                self.mark_reset(service)
            return result

    async def probe(self, service: str, operation: Callable[[ApiKey], Awaitable[Any]]) -> Any:
        """Try the first key once; a success resets the whole pool."""
        pool = self._pools.get(service)
        if not pool or not pool.keys:
            raise PoolExhausted(service)
        key = pool.keys[0]
        obs.bump_vendor(service, calls=1)
        try:
            result = await operation(key)
        except Exception as exc:
            if not is_rate_limit_error(exc):
                obs.bump_vendor(service, errors=1)
                raise
            obs.bump_vendor(service, rate_limit_hits=1, quota_exhausted=True)
            raise PoolExhausted(service, str(exc)) from exc
        self.mark_reset(service)
        return result

    async def execute_chain(
        self,
        chain: Sequence[FallbackStep],
        operation: Callable[[str, ApiKey], Awaitable[Any]],
        *,
        capability: str = "",
    ) -> Any:
        """Walk equivalent services in order; raise ResourceExhausted at the end."""
        services = [s.service for s in chain]
        for step in chain:
            if not self.has(step.service):
                continue
            try:
                return await self.execute(step.service, _bind(operation, step.service))
            except PoolExhausted:
                logger.info("[keys] %s exhausted; falling back", step.service)
        for step in chain:
            if not step.probe_on_exhaustion or not self.has(step.service):
                continue
            try:
                return await self.probe(step.service, _bind(operation, step.service))
            except PoolExhausted:
                continue
        raise ResourceExhausted(capability or "/".join(services), services)


def _bind(operation: Callable[[str, ApiKey], Awaitable[Any]], service: str) -> Callable[[ApiKey], Awaitable[Any]]:
    async def _op(key: ApiKey) -> Any:
        return await operation(service, key)
    return _op


def _as_key(k: ApiKey | str) -> ApiKey:
    return k if isinstance(k, ApiKey) else ApiKey(value=str(k))


def _snov_key(raw: str) -> ApiKey:
    client_id, _, secret = raw.partition(":")
    return ApiKey(value=secret.strip(), user_id=client_id.strip())


def build_key_manager() -> KeyRotationManager:
    """Register every pool configured in settings."""
    mgr = KeyRotationManager()
    mgr.register("serper", settings.SERPER_API_KEYS)
    mgr.register("apify", settings.APIFY_TOKENS)
    mgr.register("hunter", settings.HUNTER_API_KEYS)
    mgr.register("snov", [_snov_key(k) for k in settings.SNOV_API_KEYS if ":" in k])
    mgr.register("reoon", settings.REOON_API_KEYS)
    # Free verifier: one keyless entry so it rotates like any other pool
    mgr.register("rapid", [ApiKey("")])
    # One pool per model: a key spent on one model may still serve another
    for model in settings.LLM_MODELS:
        mgr.register(model_service("openai", model), settings.OPENAI_API_KEYS)
    return mgr


def model_service(provider: str, model: str) -> str:
    return f"{provider}:{model}"
