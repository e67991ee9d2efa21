"""
Never-stop lead discovery loop.

The loop is a small LangGraph state machine::

    plan -> execute -> (goal / cancelled / round cap ?) -> expand -> execute ...

``plan`` classifies the requested locations and builds the first batch,
``execute`` races that batch through every enabled source, and ``expand``
asks the expansion engine for more tasks. The graph only carries the loop
bookkeeping (pending tasks, round, outcome); the mutable run context lives
in a ``RunState`` owned by the orchestrator.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, TypedDict

from langgraph.graph import END, StateGraph

from leadscout import obs, settings
from leadscout.enrichment import LeadEnricher
from leadscout.errors import ConfigurationError, RunCancelled
from leadscout.events import CompositeEventSink, Event, EventSink, LoggingEventSink, QueueEventSink, RunEvents
from leadscout.expansion import ExpansionEngine
from leadscout.keys import KeyRotationManager, build_key_manager
from leadscout.locations import LocationClassifier, LocationResearcher
from leadscout.models import LeadSource, Preferences, RunOutcome, RunSummary, SearchTask
from leadscout.pipeline import LeadPipeline
from leadscout.planner import Planner
from leadscout.racer import TaskRacer
from leadscout.services.domain_store import build_domain_store
from leadscout.services.email_finder import EmailDiscovery
from leadscout.services.email_verifier import EmailVerification
from leadscout.services.llm import TextGenerator
from leadscout.services.presence import WhatsAppGatewayChecker
from leadscout.services.web_search import SerperWebSearch
from leadscout.sources import SourceRegistry, build_registry
from leadscout.state import RunState

logger = logging.getLogger(__name__)


class LoopState(TypedDict, total=False):
    pending: List[SearchTask]
    round: int
    outcome: Optional[str]


class Orchestrator:
    """Owns one run at a time.

    Starting a run while another is live cancels the previous one and waits
    for it to wind down before the new one starts.
    """

    def __init__(
        self,
        *,
        keys: Optional[KeyRotationManager] = None,
        registry: Optional[SourceRegistry] = None,
        generator: Optional[TextGenerator] = None,
        web_search: Optional[SerperWebSearch] = None,
        enricher: Optional[LeadEnricher] = None,
        sink: Optional[EventSink] = None,
        max_rounds: int = settings.MAX_EXPANSION_ROUNDS,
        heartbeat_interval_s: float = settings.HEARTBEAT_INTERVAL_S,
        teardown_timeout_s: float = settings.TEARDOWN_TIMEOUT_S,
    ):
        self.keys = keys or build_key_manager()
        self.registry = registry or build_registry(self.keys)
        self.generator = generator if generator is not None else TextGenerator(self.keys)
        self.web_search = web_search if web_search is not None else SerperWebSearch(self.keys)
        self.enricher = enricher or LeadEnricher(
            presence=WhatsAppGatewayChecker(),
            discovery=EmailDiscovery(self.keys),
            verification=EmailVerification(self.keys),
            domain_store=build_domain_store(),
        )
        self.sink: EventSink = sink or LoggingEventSink()
        self.max_rounds = max_rounds
        self.heartbeat_interval_s = heartbeat_interval_s
        self.teardown_timeout_s = teardown_timeout_s
        self._lock = asyncio.Lock()
        self._state: Optional[RunState] = None

    @property
    def state(self) -> Optional[RunState]:
        return self._state

    @property
    def is_running(self) -> bool:
        return bool(self._state and self._state.is_running)

    def stop(self) -> None:
        """Request cancellation of the live run; a no-op when nothing runs."""
        if self._state is not None and self._state.is_running:
            self._state.cancel_token.cancel("stop requested")

    # --- graph ------------------------------------------------------------------
    def _build_graph(self, state: RunState, events: RunEvents, sources: Sequence[LeadSource]):
        classifier = LocationClassifier(self.generator)
        researcher = LocationResearcher(self.generator, self.web_search)
        planner = Planner(classifier, researcher, events)
        engine = ExpansionEngine(planner, self.generator, events)
        pipeline = LeadPipeline(self.enricher, events)
        racer = TaskRacer(
            self.registry,
            pipeline,
            events,
            heartbeat_interval_s=self.heartbeat_interval_s,
            teardown_timeout_s=self.teardown_timeout_s,
        )

        async def plan_node(loop: LoopState) -> Dict[str, Any]:
            tasks = await planner.initial_plan(state, sources)
            state.plan = list(tasks)
            events.plan_updated(state.plan)
            events.success(f"Plan ready: {len(tasks)} search tasks", tasks=len(tasks))
            return {"pending": tasks, "round": 0}

        async def execute_node(loop: LoopState) -> Dict[str, Any]:
            pending = list(loop.get("pending") or [])
            if pending:
                events.info(f"Round {loop.get('round', 0) + 1}: {len(pending)} tasks pending", round=loop.get("round", 0))
                await racer.execute_batch(pending, state)
            return {"pending": []}

        async def expand_node(loop: LoopState) -> Dict[str, Any]:
            rnd = int(loop.get("round", 0)) + 1
            state.round = rnd
            events.warning(
                f"Goal not met ({state.current_lead_count}/{state.target_lead_count}). "
                f"Expanding search - Round {rnd}...",
                round=rnd,
            )
            tasks = await engine.next_tasks(state, sources)
            if not tasks:
                events.warning("No more expansion options available")
                return {"round": rnd, "pending": [], "outcome": RunOutcome.EXHAUSTED.value}
            state.plan.extend(tasks)
            events.plan_updated(state.plan)
            events.success(f"Generated {len(tasks)} new search tasks", round=rnd)
            return {"round": rnd, "pending": tasks}

        def after_plan(loop: LoopState) -> str:
            return "stop" if state.cancel_token.cancelled else "execute"

        def after_execute(loop: LoopState) -> str:
            if state.should_stop:
                return "stop"
            if int(loop.get("round", 0)) >= self.max_rounds:
                return "stop"
            return "expand"

        def after_expand(loop: LoopState) -> str:
            if loop.get("outcome") or state.should_stop:
                return "stop"
            return "execute"

        graph = StateGraph(LoopState)
        graph.add_node("plan", plan_node)
        graph.add_node("execute", execute_node)
        graph.add_node("expand", expand_node)
        graph.set_entry_point("plan")
        graph.add_conditional_edges("plan", after_plan, {"execute": "execute", "stop": END})
        graph.add_conditional_edges("execute", after_execute, {"expand": "expand", "stop": END})
        graph.add_conditional_edges("expand", after_expand, {"execute": "execute", "stop": END})
        return graph.compile()

    def _outcome(self, state: RunState, loop: Dict[str, Any]) -> RunOutcome:
        if state.cancel_token.cancelled:
            return RunOutcome.CANCELLED
        if state.goal_reached:
            return RunOutcome.GOAL_REACHED
        if loop.get("outcome") == RunOutcome.EXHAUSTED.value:
            return RunOutcome.EXHAUSTED
        return RunOutcome.ROUND_LIMIT_REACHED

    # --- runs -------------------------------------------------------------------
    async def run(self, preferences: Preferences | Dict[str, Any], *, sink: Optional[EventSink] = None) -> RunSummary:
        prefs = preferences if isinstance(preferences, Preferences) else Preferences.model_validate(preferences)
        previous = self._state
        if previous is not None and previous.is_running:
            previous.cancel_token.cancel("superseded by a new run")
        async with self._lock:
            return await self._run_locked(prefs, RunEvents(sink or self.sink))

    async def _run_locked(self, prefs: Preferences, events: RunEvents) -> RunSummary:
        state = RunState.for_preferences(prefs)
        state.is_running = True
        self._state = state
        obs.set_run_context(uuid.uuid4().hex[:12])
        self.keys.reset_all()
        self.registry.breaker.reset()

        events.info("Agent started with NEVER-STOP mode enabled")
        events.info(f"Target: {prefs.lead_limit} leads. Will keep searching until goal met.")
        outcome = RunOutcome.FAILED
        error: Optional[str] = None
        try:
            sources = self.registry.available(prefs.sources)
            if not sources:
                raise ConfigurationError("No enabled lead source has credentials configured")
            graph = self._build_graph(state, events, sources)
            loop = await graph.ainvoke(
                {"pending": [], "round": 0, "outcome": None},
                config={"recursion_limit": 4 * self.max_rounds + 10},
            )
            outcome = self._outcome(state, loop or {})
        except ConfigurationError as exc:
            error = str(exc)
            events.error(f"Cannot start: {exc}")
        except RunCancelled:
            outcome = RunOutcome.CANCELLED
        except Exception as exc:
            if state.cancel_token.cancelled:
                outcome = RunOutcome.CANCELLED
            else:
                logger.exception("run failed")
                error = str(exc)
                events.error(f"Critical Error: {exc}")
        finally:
            state.is_running = False

        self._final_log(state, outcome, events)
        summary = RunSummary(
            outcome=outcome,
            current_lead_count=state.current_lead_count,
            target_lead_count=state.target_lead_count,
            rounds=state.round,
            searched_cities=list(state.searched_cities),
            processed_countries=list(state.processed_countries),
            exhausted_capabilities=sorted(state.exhausted_capabilities),
            error=error,
            leads=list(state.results),
        )
        obs.log_event("run", "stopped", outcome.value, leads=state.current_lead_count, rounds=state.round)
        events.stopped(summary)
        return summary

    def _final_log(self, state: RunState, outcome: RunOutcome, events: RunEvents) -> None:
        found = f"{state.current_lead_count}/{state.target_lead_count}"
        if outcome is RunOutcome.GOAL_REACHED:
            events.success(f"Mission Complete! Found {state.current_lead_count} leads.")
        elif outcome is RunOutcome.CANCELLED:
            events.warning(f"Stopped by request. Found {found} leads.")
        elif outcome is RunOutcome.ROUND_LIMIT_REACHED:
            events.warning(f"Maximum expansion rounds ({self.max_rounds}) reached. Found {found} leads.")
        elif outcome is RunOutcome.EXHAUSTED:
            events.warning(f"Search exhausted. Found {found} leads.")

    async def stream(self, preferences: Preferences | Dict[str, Any], *, maxsize: int = 100) -> AsyncIterator[Event]:
        """Run and yield events as they happen; the last event is STOPPED."""
        queue = QueueEventSink(maxsize=maxsize)
        task = asyncio.create_task(self.run(preferences, sink=CompositeEventSink([queue, self.sink])))
        task.add_done_callback(lambda _t: queue.close())
        try:
            async for ev in queue:
                yield ev
            await task
        finally:
            if not task.done():
                self.stop()
                try:
                    await asyncio.wait_for(asyncio.shield(task), self.teardown_timeout_s + 5)
                except asyncio.TimeoutError:
                    task.cancel()
