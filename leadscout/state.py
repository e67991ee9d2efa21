from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Set, TypeVar

from leadscout.errors import RunCancelled
from leadscout.models import Lead, Preferences, SearchTask

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """One-shot, broadcast cancellation signal for a run.

    Waiters block on an ``asyncio.Event``; callbacks fire once, in
    registration order, the first time ``cancel()`` is called.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], Any]] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "stop requested") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for cb in list(self._callbacks):
            try:
                cb()
            except Exception:
                logger.exception("cancel callback failed")
        self._callbacks.clear()

    def add_callback(self, cb: Callable[[], Any]) -> None:
        if self._event.is_set():
            cb()
            return
        self._callbacks.append(cb)

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled(self.reason or "cancelled")

    async def guard(self, aw: Awaitable[T]) -> T:
        """Await ``aw`` but give up with RunCancelled as soon as the token fires."""
        if self._event.is_set():
            if asyncio.iscoroutine(aw):
                aw.close()
            raise RunCancelled(self.reason or "cancelled")
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if not waiter.done():
                waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        raise RunCancelled(self.reason or "cancelled")


class DedupIndex:
    """Fingerprints seen during one run. Insert-only."""

    def __init__(self) -> None:
        self._seen: Set[str] = set()

    def __contains__(self, fingerprint: str) -> bool:
        return fingerprint in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def add(self, fingerprint: str) -> bool:
        """Insert; returns False when the fingerprint was already present."""
        if fingerprint in self._seen:
            return False
        self._seen.add(fingerprint)
        return True


@dataclass
class RunState:
    preferences: Preferences
    target_lead_count: int
    plan: List[SearchTask] = field(default_factory=list)
    results: List[Lead] = field(default_factory=list)
    is_running: bool = False
    current_lead_count: int = 0
    processed_countries: List[str] = field(default_factory=list)
    searched_cities: List[str] = field(default_factory=list)
    used_queries: List[str] = field(default_factory=list)
    dedup: DedupIndex = field(default_factory=DedupIndex)
    cancel_token: CancelToken = field(default_factory=CancelToken)
    exhausted_capabilities: Set[str] = field(default_factory=set)
    round: int = 0

    @classmethod
    def for_preferences(cls, preferences: Preferences) -> "RunState":
        return cls(
            preferences=preferences,
            target_lead_count=preferences.lead_limit,
            used_queries=[preferences.niche],
        )

    @property
    def goal_reached(self) -> bool:
        return self.current_lead_count >= self.target_lead_count

    @property
    def needed(self) -> int:
        return max(0, self.target_lead_count - self.current_lead_count)

    @property
    def should_stop(self) -> bool:
        return self.cancel_token.cancelled or self.goal_reached

    def has_searched(self, city: str) -> bool:
        c = (city or "").strip().lower()
        return any(s.lower() == c for s in self.searched_cities)

    def mark_searched(self, city: str) -> bool:
        city = (city or "").strip()
        if not city or self.has_searched(city):
            return False
        self.searched_cities.append(city)
        return True

    def add_country(self, country: str) -> None:
        c = (country or "").strip()
        if c and c.lower() not in (p.lower() for p in self.processed_countries):
            self.processed_countries.append(c)

    def has_used_query(self, query: str) -> bool:
        q = (query or "").strip().lower()
        return any(u.lower() == q for u in self.used_queries)

    def halt(self, capability: str) -> bool:
        """Halt a capability for the rest of the run; True on first halt."""
        if capability in self.exhausted_capabilities:
            return False
        self.exhausted_capabilities.add(capability)
        return True

    def is_halted(self, capability: str) -> bool:
        return capability in self.exhausted_capabilities

    def commit(self, lead: Lead) -> None:
        # No awaits here: goal check and append happen atomically on the loop
        self.results.append(lead)
        self.current_lead_count += 1
