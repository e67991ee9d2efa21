from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol

import httpx

from leadscout import obs, settings
from leadscout.errors import PoolExhausted, ResourceExhausted, RunCancelled
from leadscout.models import Lead, LeadSource, SearchTask
from leadscout.retry import BackoffPolicy, CircuitBreaker, with_retry
from leadscout.state import CancelToken

logger = logging.getLogger(__name__)


class SourceAdapter(Protocol):
    source: LeadSource

    @property
    def available(self) -> bool: ...

    async def search(self, query: str, location: str, limit: int) -> List[Lead]: ...


@dataclass
class SourceResult:
    leads: List[Lead] = field(default_factory=list)
    error: Optional[str] = None
    exhausted: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


def capability_for(source: LeadSource) -> str:
    return f"source:{source.value}"


def to_float(value, default: float = 0.0) -> float:
    try:
        return float(value) if value is not None else default
    except (TypeError, ValueError):
        return default


def to_int(value, default: int = 0) -> int:
    if isinstance(value, str):
        value = value.replace(",", "").strip()
    try:
        return int(float(value)) if value is not None and value != "" else default
    except (TypeError, ValueError):
        return default


class SourceRegistry:
    """Holds one adapter per source and runs tasks against them.

    ``run`` never raises except RunCancelled: timeouts, transport errors and
    open circuits become a SourceResult with ``error`` set, and an exhausted
    key pool comes back with ``exhausted=True``.
    """

    def __init__(
        self,
        adapters: Iterable[SourceAdapter] = (),
        *,
        breaker: Optional[CircuitBreaker] = None,
        policy: Optional[BackoffPolicy] = None,
        timeout_s: float = settings.SOURCE_TIMEOUT_S,
    ):
        self._adapters: Dict[LeadSource, SourceAdapter] = {}
        for a in adapters:
            self.add(a)
        self.breaker = breaker or CircuitBreaker()
        self.policy = policy or BackoffPolicy()
        self.timeout_s = timeout_s

    def add(self, adapter: SourceAdapter) -> None:
        self._adapters[LeadSource(adapter.source)] = adapter

    def get(self, source: LeadSource) -> Optional[SourceAdapter]:
        return self._adapters.get(LeadSource(source))

    def available(self, sources: Iterable[LeadSource]) -> List[LeadSource]:
        out = []
        for s in sources:
            a = self.get(s)
            if a is not None and a.available:
                out.append(LeadSource(s))
        return out

    async def run(self, task: SearchTask, limit: int, cancel_token: CancelToken) -> SourceResult:
        adapter = self.get(task.source)
        name = LeadSource(task.source).value
        if adapter is None or not adapter.available:
            return SourceResult(error=f"{name} source is not configured")
        if not self.breaker.allow(name):
            return SourceResult(error=f"{name} circuit open; skipping")

        async def _once() -> List[Lead]:
            return await asyncio.wait_for(adapter.search(task.query, task.location, limit), self.timeout_s)

        try:
            leads = await cancel_token.guard(
                with_retry(_once, retry_on=(httpx.TransportError,), policy=self.policy)
            )
        except RunCancelled:
            raise
        except (PoolExhausted, ResourceExhausted) as exc:
            return SourceResult(error=str(exc), exhausted=True)
        except asyncio.TimeoutError:
            self.breaker.on_error(name)
            obs.bump_vendor(name, errors=1)
            return SourceResult(error=f"{name} timed out after {self.timeout_s:.0f}s")
        except Exception as exc:
            self.breaker.on_error(name)
            logger.warning("[sources] %s failed for %r in %s: %s", name, task.query, task.location, exc)
            return SourceResult(error=f"{name} failed: {exc}")
        self.breaker.on_success(name)
        leads = list(leads or [])[: max(1, limit)]
        return SourceResult(leads=leads)
