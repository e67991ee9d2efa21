from __future__ import annotations

import logging
from typing import Iterable, Optional

from leadscout import obs
from leadscout.enrichment import LeadEnricher, needs_enrichment
from leadscout.events import RunEvents
from leadscout.models import BatchReport, Lead, LeadStatus
from leadscout.scoring import apply_score, fingerprint, passes_filters
from leadscout.state import RunState

logger = logging.getLogger(__name__)


class LeadPipeline:
    """filter -> dedupe -> score -> enrich -> commit, with early exit on goal."""

    def __init__(self, enricher: Optional[LeadEnricher] = None, events: Optional[RunEvents] = None):
        self.enricher = enricher or LeadEnricher()
        self.events = events or RunEvents()

    async def process_batch(self, leads: Iterable[Lead], state: RunState, *,
                            location: str = "", source: str = "") -> BatchReport:
        batch = list(leads or [])
        report = BatchReport(received=len(batch))
        if state.should_stop or not batch:
            return report
        filters = state.preferences.filters

        kept = [lead for lead in batch if passes_filters(lead, filters)]
        report.filtered = len(batch) - len(kept)
        if report.filtered:
            self.events.info(f"Filtered {report.filtered} leads (criteria)", location=location, source=source)

        unique = []
        for lead in kept:
            if state.dedup.add(fingerprint(lead)):
                unique.append(lead)
            else:
                report.duplicates += 1
        if report.duplicates:
            self.events.info(f"Removed {report.duplicates} duplicate leads", location=location, source=source)

        enrich = needs_enrichment(filters)
        for lead in unique:
            if state.should_stop:
                break
            apply_score(lead)
            if enrich:
                res = await self.enricher.enrich(lead, filters, state, self.events)
                if not res.keep:
                    report.dropped += 1
                    logger.debug("[pipeline] dropped %s: %s", lead.name, res.reason)
                    continue
                if res.changed:
                    apply_score(lead)
            # Re-check right before commit; nothing below awaits
            if state.should_stop:
                break
            lead.status = LeadStatus.QUALIFIED
            state.commit(lead)
            report.committed += 1
            self.events.lead_found(lead)

        if report.committed:
            pct = round(state.current_lead_count / max(1, state.target_lead_count) * 100)
            self.events.success(
                f"+{report.committed} leads from {location or source}. "
                f"Progress: {state.current_lead_count}/{state.target_lead_count} ({pct}%)",
                location=location,
                source=source,
            )
        obs.log_event("pipeline", "batch", "ok", location=location, source=source, **report.model_dump())
        return report
