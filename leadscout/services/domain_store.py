from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Protocol
from urllib.parse import urlparse

from leadscout import settings
from leadscout.database import get_conn

logger = logging.getLogger(__name__)

FOUND = "found"
NOT_FOUND = "not_found"


def domain_of(website: Optional[str]) -> Optional[str]:
    """Bare host of a website URL, without ``www.``; None when unparsable."""
    raw = (website or "").strip()
    if not raw:
        return None
    if "://" not in raw:
        raw = "https://" + raw
    try:
        host = (urlparse(raw).hostname or "").lower()
    except ValueError:
        return None
    if host.startswith("www."):
        host = host[4:]
    return host or None


@dataclass(frozen=True)
class ProcessedDomain:
    domain: str
    outcome: str
    email: Optional[str] = None


class DomainStore(Protocol):
    async def lookup(self, domain: str) -> Optional[ProcessedDomain]: ...

    async def mark_processed(self, domain: str, outcome: str, email: Optional[str] = None) -> None: ...


class InMemoryDomainStore:
    def __init__(self) -> None:
        self._seen: Dict[str, ProcessedDomain] = {}

    async def lookup(self, domain: str) -> Optional[ProcessedDomain]:
        return self._seen.get(domain.lower())

    async def mark_processed(self, domain: str, outcome: str, email: Optional[str] = None) -> None:
        key = domain.lower()
        self._seen[key] = ProcessedDomain(key, outcome, email)

    def outcome(self, domain: str) -> Optional[str]:
        rec = self._seen.get(domain.lower())
        return rec.outcome if rec else None


_DDL = """
CREATE TABLE IF NOT EXISTS processed_domains (
    domain TEXT PRIMARY KEY,
    outcome TEXT NOT NULL,
    email TEXT,
    processed_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
ALTER TABLE processed_domains ADD COLUMN IF NOT EXISTS email TEXT
"""


class PostgresDomainStore:
    """Processed domains persisted across runs (pooled psycopg2).

    Blocking driver calls run in a worker thread.
    """

    def __init__(self) -> None:
        self._ready = False

    def _ensure_table(self) -> None:
        if self._ready:
            return
        with get_conn() as conn, conn.cursor() as cur:
            cur.execute(_DDL)
        self._ready = True

    def _lookup_sync(self, domain: str) -> Optional[ProcessedDomain]:
        self._ensure_table()
        with get_conn() as conn, conn.cursor() as cur:
            cur.execute(
                "SELECT domain, outcome, email FROM processed_domains WHERE domain = %s",
                (domain.lower(),),
            )
            row = cur.fetchone()
        return ProcessedDomain(row[0], row[1], row[2]) if row else None

    def _mark_sync(self, domain: str, outcome: str, email: Optional[str]) -> None:
        self._ensure_table()
        with get_conn() as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO processed_domains(domain, outcome, email)
                VALUES (%s, %s, %s)
                ON CONFLICT (domain) DO UPDATE
                SET outcome = EXCLUDED.outcome, email = EXCLUDED.email, processed_at = NOW()
                """,
                (domain.lower(), outcome, email),
            )
        logger.info("[db] UPSERT processed_domains domain=%s outcome=%s", domain, outcome)

    async def lookup(self, domain: str) -> Optional[ProcessedDomain]:
        return await asyncio.to_thread(self._lookup_sync, domain)

    async def mark_processed(self, domain: str, outcome: str, email: Optional[str] = None) -> None:
        await asyncio.to_thread(self._mark_sync, domain, outcome, email)


def build_domain_store() -> DomainStore:
    if settings.DOMAIN_STORE_BACKEND == "postgres" and settings.POSTGRES_DSN:
        return PostgresDomainStore()
    return InMemoryDomainStore()
