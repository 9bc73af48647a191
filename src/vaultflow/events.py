"""Lifecycle events.

Events are one tagged union delivered over a single ``EventBus``. Consumers
match on the concrete class (or ``event.type`` once serialized) instead of
subscribing to string names.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar

import vaultflow.constants as C
from vaultflow.constants import Step
from vaultflow.models import ChainResult

log = logging.getLogger("vaultflow.events")


@dataclass(frozen=True, slots=True)
class BatchStarted:
    type: ClassVar[str] = "batch_started"
    chain_count: int
    total_steps: int
    run_id: str | None = None


@dataclass(frozen=True, slots=True)
class StepStarted:
    type: ClassVar[str] = "step_started"
    chain_id: int
    step: Step
    step_number: int
    total_steps: int
    chain_step: int
    chain_total: int = C.STEPS_PER_CHAIN
    run_id: str | None = None


@dataclass(frozen=True, slots=True)
class StepCompleted:
    type: ClassVar[str] = "step_completed"
    chain_id: int
    step: Step
    step_number: int
    total_steps: int
    chain_step: int
    chain_total: int = C.STEPS_PER_CHAIN
    skipped: bool = False
    handle: str | None = None
    run_id: str | None = None


@dataclass(frozen=True, slots=True)
class ChainCompleted:
    type: ClassVar[str] = "chain_completed"
    chain_id: int
    result: ChainResult
    run_id: str | None = None


@dataclass(frozen=True, slots=True)
class ChainFailed:
    type: ClassVar[str] = "chain_failed"
    chain_id: int
    error: str
    result: ChainResult
    run_id: str | None = None


@dataclass(frozen=True, slots=True)
class ProgressUpdated:
    type: ClassVar[str] = "progress_updated"
    completed: int
    total: int
    percentage: float
    run_id: str | None = None


@dataclass(frozen=True, slots=True)
class BatchFailed:
    type: ClassVar[str] = "batch_failed"
    error: str
    run_id: str | None = None


@dataclass(frozen=True, slots=True)
class BatchCompleted:
    type: ClassVar[str] = "batch_completed"
    results: list[ChainResult] = field(default_factory=list)
    run_id: str | None = None


Event = (
    BatchStarted
    | StepStarted
    | StepCompleted
    | ChainCompleted
    | ChainFailed
    | ProgressUpdated
    | BatchFailed
    | BatchCompleted
)


def event_to_dict(event: Event) -> dict[str, Any]:
    d = asdict(event)
    d["type"] = event.type
    return d


def progress_percentage(completed: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(completed / total * 100, 2)


Listener = Callable[[Event], None]


class EventBus:
    def __init__(self, queue_size: int = C.EVENT_QUEUE_SIZE) -> None:
        self._listeners: list[tuple[Listener, tuple[type, ...]]] = []
        self._queues: set[asyncio.Queue] = set()
        self._queue_size = queue_size

    def add_listener(self, fn: Listener, *types: type) -> Listener:
        """Register fn for the given event classes (all events when none given)."""
        self._listeners.append((fn, types))
        return fn

    def remove_listener(self, fn: Listener) -> None:
        self._listeners = [(f, t) for f, t in self._listeners if f is not fn]

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._queues.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._queues.discard(q)

    def emit(self, event: Event) -> None:
        log.debug("event %s", event.type)
        for fn, types in list(self._listeners):
            if types and not isinstance(event, types):
                continue
            try:
                fn(event)
            except Exception:
                log.exception("Event listener %r failed on %s", fn, event.type)

        for q in list(self._queues):
            if q.full():
                # slow consumer, drop its oldest event
                q.get_nowait()
                log.warning("Event subscriber queue full, dropped oldest event")
            q.put_nowait(event)
