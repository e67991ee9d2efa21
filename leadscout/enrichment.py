"""Optional per-lead enrichment steps gated by preference flags.

Order is fixed: messaging presence, email discovery, email verification.
Any step may drop the lead. A capability that is exhausted for the run is
halted once and then skipped, keeping leads that would otherwise have been
verified.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from leadscout import obs
from leadscout.errors import ResourceExhausted, RunCancelled
from leadscout.events import RunEvents
from leadscout.models import FilterFlags, Lead
from leadscout.services.domain_store import FOUND, NOT_FOUND, DomainStore, InMemoryDomainStore, domain_of
from leadscout.services.email_finder import CAPABILITY as DISCOVERY, EmailDiscovery
from leadscout.services.email_verifier import CAPABILITY as VERIFICATION, EmailVerification
from leadscout.services.presence import PresenceChecker
from leadscout.state import RunState

logger = logging.getLogger(__name__)

PRESENCE = "presence_check"


@dataclass
class EnrichResult:
    keep: bool
    changed: bool = False
    reason: str = ""


def needs_enrichment(filters: FilterFlags) -> bool:
    return filters.auto_verify_whatsapp or filters.auto_find_email or filters.auto_verify_email


class LeadEnricher:
    def __init__(
        self,
        presence: Optional[PresenceChecker] = None,
        discovery: Optional[EmailDiscovery] = None,
        verification: Optional[EmailVerification] = None,
        domain_store: Optional[DomainStore] = None,
    ):
        self.presence = presence
        self.discovery = discovery
        self.verification = verification
        self.domain_store = domain_store or InMemoryDomainStore()

    def _halt(self, state: RunState, events: RunEvents, capability: str, exc: BaseException) -> None:
        if state.halt(capability):
            events.exhausted(f"{capability} exhausted for this run: {exc}", capability=capability)
            obs.log_event("enrich", "capability_halted", "exhausted", capability=capability)

    async def enrich(self, lead: Lead, filters: FilterFlags, state: RunState, events: RunEvents) -> EnrichResult:
        changed = False
        token = state.cancel_token

        if filters.auto_verify_whatsapp:
            if not lead.phone:
                return EnrichResult(keep=False, reason="no phone for presence check")
            if self.presence is not None and self.presence.available and not state.is_halted(PRESENCE):
                try:
                    registered = await token.guard(self.presence.has_presence(lead.phone))
                except RunCancelled:
                    raise
                except Exception as exc:
                    # Unavailable checker: keep the lead without the flag
                    events.warning(f"Presence check failed for {lead.name}: {exc}")
                else:
                    lead.has_whatsapp = registered
                    changed = True
                    if not registered:
                        return EnrichResult(keep=False, changed=True, reason="not registered on WhatsApp")

        if filters.auto_find_email and not lead.email and lead.website and not state.is_halted(DISCOVERY):
            domain = domain_of(lead.website)
            if domain and self.discovery is not None and self.discovery.available:
                seen = await token.guard(self.domain_store.lookup(domain))
                if seen is not None:
                    logger.info("[enrich] domain already processed: %s outcome=%s", domain, seen.outcome)
                    if seen.email:
                        lead.email = seen.email
                        lead.email_verified = False
                        changed = True
                else:
                    try:
                        email = await token.guard(self.discovery.find_by_domain(domain))
                    except RunCancelled:
                        raise
                    except ResourceExhausted as exc:
                        self._halt(state, events, DISCOVERY, exc)
                    except Exception as exc:
                        events.warning(f"Email discovery failed for {domain}: {exc}")
                    else:
                        if email:
                            lead.email = email
                            lead.email_verified = False
                            changed = True
                        await token.guard(
                            self.domain_store.mark_processed(domain, FOUND if email else NOT_FOUND, email or None)
                        )

        if filters.auto_verify_email:
            if not lead.email:
                return EnrichResult(keep=False, changed=changed, reason="no email to verify")
            if self.verification is not None and self.verification.available and not state.is_halted(VERIFICATION):
                try:
                    ok = await token.guard(self.verification.verify(lead.email))
                except RunCancelled:
                    raise
                except ResourceExhausted as exc:
                    self._halt(state, events, VERIFICATION, exc)
                except Exception as exc:
                    events.warning(f"Email verification failed for {lead.name}: {exc}")
                else:
                    lead.email_verified = ok
                    changed = True
                    if not ok:
                        return EnrichResult(keep=False, changed=True, reason="email failed verification")

        return EnrichResult(keep=True, changed=changed)
