import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Protocol

logger = logging.getLogger("leadscout.events")


class EventKind(str, Enum):
    PLAN_UPDATED = "plan_updated"
    LOG = "log"
    LEAD_FOUND = "lead_found"
    STOPPED = "stopped"


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    EXHAUSTED = "exhausted"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Event:
    kind: EventKind
    message: str = ""
    severity: Severity = Severity.INFO
    timestamp: str = field(default_factory=_now)
    payload: Dict[str, Any] = field(default_factory=dict)


class EventSink(Protocol):
    def emit(self, event: Event) -> None: ...


class NullEventSink:
    def emit(self, event: Event) -> None:
        return None


_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.SUCCESS: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.EXHAUSTED: logging.WARNING,
}


class LoggingEventSink:
    """Mirror events to a stdlib logger."""

    def __init__(self, name: str = "leadscout.run"):
        self._log = logging.getLogger(name)

    def emit(self, event: Event) -> None:
        if event.kind is EventKind.LOG:
            self._log.log(_LEVELS.get(event.severity, logging.INFO), "[%s] %s", event.severity.value, event.message)
        elif event.kind is EventKind.LEAD_FOUND:
            lead = event.payload.get("lead")
            self._log.info("[lead] %s", getattr(lead, "name", lead))
        else:
            self._log.info("[%s] %s", event.kind.value, event.message)


_CLOSE = object()


class QueueEventSink:
    """Event queue consumed with ``async for``.

    Only LOG events count against ``maxsize``: when that many are pending
    the oldest pending LOG event is dropped. PLAN_UPDATED, LEAD_FOUND and
    STOPPED are always delivered. Iteration ends after ``close()``.
    """

    def __init__(self, maxsize: int = 100):
        self.maxsize = maxsize
        self._items: Deque[Any] = deque()
        self._ready = asyncio.Event()
        self._logs = 0
        self._closed = False
        self.dropped = 0

    def emit(self, event: Event) -> None:
        if self._closed:
            return
        if event.kind is EventKind.LOG:
            if self._logs >= self.maxsize:
                self._drop_oldest_log()
            self._logs += 1
        self._push(event)

    def _drop_oldest_log(self) -> None:
        idx = next(
            (i for i, item in enumerate(self._items) if isinstance(item, Event) and item.kind is EventKind.LOG),
            None,
        )
        if idx is None:
            return
        item = self._items[idx]
        del self._items[idx]
        self._logs -= 1
        self.dropped += 1
        logger.debug("[events] queue full; dropped log event %r", item.message)

    def _push(self, item: Any) -> None:
        self._items.append(item)
        self._ready.set()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._push(_CLOSE)

    async def __aiter__(self) -> AsyncIterator[Event]:
        while True:
            while not self._items:
                self._ready.clear()
                await self._ready.wait()
            item = self._items.popleft()
            if item is _CLOSE:
                return
            if item.kind is EventKind.LOG:
                self._logs -= 1
            yield item


class CompositeEventSink:
    def __init__(self, sinks: Optional[List[EventSink]] = None):
        self.sinks: List[EventSink] = list(sinks or [])

    def emit(self, event: Event) -> None:
        for sink in list(self.sinks):
            try:
                sink.emit(event)
            except Exception:
                # Fire-and-forget: one broken sink never blocks the others
                logger.exception("[events] sink %r failed", sink)


class RunEvents:
    """Helpers that build typed events and hand them to a sink."""

    def __init__(self, sink: Optional[EventSink] = None):
        self.sink: EventSink = sink or NullEventSink()

    def _emit(self, event: Event) -> None:
        try:
            self.sink.emit(event)
        except Exception:
            logger.exception("[events] emit failed")

    def log(self, message: str, severity: Severity = Severity.INFO, **payload: Any) -> None:
        self._emit(Event(kind=EventKind.LOG, message=message, severity=severity, payload=payload))

    def info(self, message: str, **payload: Any) -> None:
        self.log(message, Severity.INFO, **payload)

    def success(self, message: str, **payload: Any) -> None:
        self.log(message, Severity.SUCCESS, **payload)

    def warning(self, message: str, **payload: Any) -> None:
        self.log(message, Severity.WARNING, **payload)

    def error(self, message: str, **payload: Any) -> None:
        self.log(message, Severity.ERROR, **payload)

    def exhausted(self, message: str, **payload: Any) -> None:
        self.log(message, Severity.EXHAUSTED, **payload)

    def plan_updated(self, tasks: list) -> None:
        self._emit(Event(kind=EventKind.PLAN_UPDATED, message=f"{len(tasks)} tasks", payload={"plan": list(tasks)}))

    def lead_found(self, lead: Any) -> None:
        self._emit(Event(kind=EventKind.LEAD_FOUND, message=getattr(lead, "name", ""), payload={"lead": lead}))

    def stopped(self, summary: Any) -> None:
        outcome = getattr(summary, "outcome", None)
        self._emit(Event(
            kind=EventKind.STOPPED,
            message=str(getattr(outcome, "value", outcome) or ""),
            payload={"summary": summary},
        ))
