from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from leadscout import obs, settings
from leadscout.errors import RunCancelled
from leadscout.events import RunEvents
from leadscout.models import BatchReport, SearchTask, TaskStatus
from leadscout.pipeline import LeadPipeline
from leadscout.sources.base import SourceRegistry, capability_for
from leadscout.state import RunState

logger = logging.getLogger(__name__)

MIN_TASK_LIMIT = 5
LIMIT_HEADROOM = 5


def effective_limit(task: SearchTask, state: RunState) -> int:
    if task.limit:
        return task.limit
    return max(MIN_TASK_LIMIT, state.needed + LIMIT_HEADROOM)


@dataclass
class RaceReport:
    dispatched: int = 0
    skipped: int = 0
    settled: int = 0
    abandoned: int = 0
    goal_reached: bool = False
    cancelled: bool = False
    totals: BatchReport = field(default_factory=BatchReport)


class TaskRacer:
    """Runs one batch of search tasks concurrently.

    Resolves on whichever comes first: every task settled, the lead goal
    reached, or the run's cancel token fired. Whatever is still in flight
    is then cancelled and given ``teardown_timeout_s`` to unwind.
    """

    def __init__(
        self,
        registry: SourceRegistry,
        pipeline: LeadPipeline,
        events: Optional[RunEvents] = None,
        *,
        heartbeat_interval_s: float = settings.HEARTBEAT_INTERVAL_S,
        teardown_timeout_s: float = settings.TEARDOWN_TIMEOUT_S,
    ):
        self.registry = registry
        self.pipeline = pipeline
        self.events = events or RunEvents()
        self.heartbeat_interval_s = heartbeat_interval_s
        self.teardown_timeout_s = teardown_timeout_s

    def _log_batch(self, tasks: List[SearchTask]) -> None:
        by_location: Dict[str, List[str]] = OrderedDict()
        for t in tasks:
            by_location.setdefault(t.location, []).append(t.source.value)
        self.events.info(f"Dispatching {len(tasks)} tasks across {len(by_location)} locations")
        for location, sources in by_location.items():
            self.events.info(f"{location}: {', '.join(sources)}", location=location, sources=sources)

    async def _run_one(self, task: SearchTask, limit: int, state: RunState) -> BatchReport:
        source = task.source.value
        result = await self.registry.run(task, limit, state.cancel_token)
        if result.exhausted:
            task.status = TaskStatus.FAILED
            capability = capability_for(task.source)
            if state.halt(capability):
                self.events.exhausted(f"{source} exhausted for this run: {result.error}", capability=capability)
            return BatchReport()
        if result.error:
            task.status = TaskStatus.FAILED
            self.events.warning(f"Source failed: {source} - {result.error}", source=source, location=task.location)
            return BatchReport()
        self.events.info(f"{source}: {len(result.leads)} leads", source=source, location=task.location)
        report = await self.pipeline.process_batch(result.leads, state, location=task.location, source=source)
        task.status = TaskStatus.COMPLETED
        return report

    async def _heartbeat(self, state: RunState, in_flight: Set[asyncio.Task]) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval_s)
            active = sum(1 for j in in_flight if not j.done())
            self.events.info(
                f"Still working... {state.current_lead_count}/{state.target_lead_count} leads, {active} tasks in flight"
            )

    async def execute_batch(self, tasks: List[SearchTask], state: RunState) -> RaceReport:
        report = RaceReport()
        if not tasks or state.should_stop:
            report.cancelled = state.cancel_token.cancelled
            report.goal_reached = state.goal_reached
            return report

        self._log_batch(tasks)
        t0 = time.perf_counter()
        jobs: Dict[asyncio.Task, SearchTask] = {}
        for task in tasks:
            state.mark_searched(task.location)
            if state.is_halted(capability_for(task.source)):
                task.status = TaskStatus.FAILED
                report.skipped += 1
                continue
            limit = effective_limit(task, state)
            job = asyncio.create_task(self._run_one(task, limit, state))
            jobs[job] = task
        report.dispatched = len(jobs)
        if not jobs:
            return report

        pending: Set[asyncio.Task] = set(jobs)
        cancel_waiter = asyncio.create_task(state.cancel_token.wait())
        heartbeat = asyncio.create_task(self._heartbeat(state, pending))
        try:
            while pending:
                done, _ = await asyncio.wait(pending | {cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
                for job in done:
                    if job is cancel_waiter:
                        continue
                    pending.discard(job)
                    report.settled += 1
                    self._collect(job, jobs[job], report)
                if cancel_waiter in done or state.cancel_token.cancelled:
                    report.cancelled = True
                    break
                if state.goal_reached:
                    break
        finally:
            heartbeat.cancel()
            cancel_waiter.cancel()
            report.abandoned = len(pending)
            await self._teardown(pending | {heartbeat, cancel_waiter})

        report.goal_reached = state.goal_reached
        obs.log_event(
            "racer", "batch_resolved", "cancelled" if report.cancelled else "ok",
            duration_ms=int((time.perf_counter() - t0) * 1000),
            dispatched=report.dispatched, settled=report.settled, abandoned=report.abandoned,
            committed=report.totals.committed,
        )
        return report

    def _collect(self, job: asyncio.Task, task: SearchTask, report: RaceReport) -> None:
        if job.cancelled():
            return
        exc = job.exception()
        if exc is None:
            report.totals = report.totals.merge(job.result())
            return
        task.status = TaskStatus.FAILED
        if isinstance(exc, RunCancelled):
            return
        logger.warning("[racer] task %s/%s crashed: %r", task.source.value, task.location, exc)
        self.events.warning(f"Task failed: {task.source.value} in {task.location} - {exc}")

    async def _teardown(self, leftovers: Set[asyncio.Task]) -> None:
        for t in leftovers:
            if not t.done():
                t.cancel()
        if not leftovers:
            return
        done, still = await asyncio.wait(leftovers, timeout=self.teardown_timeout_s)
        for t in done:
            if not t.cancelled():
                # Mark exceptions as retrieved
                t.exception()
        if still:
            logger.warning("[racer] %d tasks still unwinding after %.1fs", len(still), self.teardown_timeout_s)
