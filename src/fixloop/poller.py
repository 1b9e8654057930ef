"""Work poller — turns failure signals into queued, prioritized work.

Signals arrive as ``validation-failure`` events on any registered source
(an EventBus or anything with subscribe/unsubscribe). Each one gets a
Diagnosis (attached, from the analyzer, or minimal fallback), a fixed
priority and tier, and a slot in the bounded WorkQueue.

Work lifecycle:  pending → in-progress → completed | escalated
Terminal items leave the queue and move to a bounded history.

A periodic tick polls any extra sources added with ``add_tick_source``;
with none it does nothing. Ticks never overlap.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import Counter, OrderedDict
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Protocol

from pydantic import ValidationError

from fixloop.config import PollerConfig
from fixloop.discovery import (
    create_work_from_diagnosis,
    meets_priority_threshold,
    minimal_diagnosis,
    result_resource_sid,
)
from fixloop.events import EventBus, FixloopEvent
from fixloop.schemas import (
    PRIORITY_ORDER,
    Diagnosis,
    DiscoveredWork,
    ValidationFailureEvent,
    WorkSource,
)
from fixloop.work_queue import WorkQueue

logger = logging.getLogger(__name__)

TickSource = Callable[[], Awaitable["Iterable[Any] | None"]]


class UnknownWorkError(KeyError):
    """Raised when a work id matches nothing in the queue or history."""


class WorkStateError(Exception):
    """Raised for an illegal work lifecycle transition."""


class DiagnosisAnalyzer(Protocol):
    async def analyze(self, result: dict[str, Any]) -> Diagnosis:
        ...


class EventSource(Protocol):
    def subscribe(self, kind: str, handler: Callable[[FixloopEvent], Any]) -> None:
        ...

    def unsubscribe(self, kind: str, handler: Callable[[FixloopEvent], Any]) -> bool:
        ...


class WorkPoller:
    """Owns the work queue and the work lifecycle."""

    def __init__(
        self,
        config: PollerConfig | None = None,
        event_bus: EventBus | None = None,
        analyzer: DiagnosisAnalyzer | None = None,
        history_size: int = 200,
    ) -> None:
        self.config = config or PollerConfig()
        self.event_bus = event_bus or EventBus()
        self.analyzer = analyzer
        self._queue = WorkQueue(self.config.max_queue_size)
        self._history: OrderedDict[str, DiscoveredWork] = OrderedDict()
        self._history_size = history_size
        self._sources: list[EventSource] = []
        self._tick_sources: list[TickSource] = []
        self._ticking = False
        self._running = False
        self._loop_task: asyncio.Task | None = None
        self._tick_task: asyncio.Task | None = None

    # ── Sources ────────────────────────────────────────────────────

    def register_source(self, source: EventSource) -> None:
        if source in self._sources:
            return
        source.subscribe("validation-failure", self._on_validation_failure)
        self._sources.append(source)

    def unregister_source(self, source: EventSource) -> None:
        if source in self._sources:
            source.unsubscribe("validation-failure", self._on_validation_failure)
            self._sources.remove(source)

    def set_analyzer(self, analyzer: DiagnosisAnalyzer | None) -> None:
        self.analyzer = analyzer

    def add_tick_source(self, source: TickSource) -> None:
        self._tick_sources.append(source)

    async def _on_validation_failure(self, event: FixloopEvent) -> None:
        await self.handle_validation_failure(event.payload)

    # ── Discovery ──────────────────────────────────────────────────

    async def handle_validation_failure(self, event: Any) -> DiscoveredWork | None:
        """Diagnose, rank and enqueue one failure signal.

        Returns a snapshot of the queued work, or None when the signal was
        ignored, filtered, malformed or dropped at capacity.
        """
        if not self.config.enabled or WorkSource.VALIDATION_FAILURE not in self.config.enabled_sources:
            return None

        try:
            signal = (
                event if isinstance(event, ValidationFailureEvent)
                else ValidationFailureEvent.model_validate(event)
            )
        except ValidationError as e:
            self._error(f"Malformed validation-failure event: {e.error_count()} error(s)", e)
            return None

        diagnosis = signal.diagnosis
        if diagnosis is None and self.analyzer is not None and result_resource_sid(signal.result):
            diagnosis = await self._analyze(signal)
        if diagnosis is None:
            diagnosis = minimal_diagnosis(signal)

        work = create_work_from_diagnosis(diagnosis, WorkSource.VALIDATION_FAILURE)
        if not meets_priority_threshold(work.priority, self.config.min_priority):
            logger.debug(
                "Dropping %s work %s below min priority %s",
                work.priority, work.id, self.config.min_priority,
            )
            return None

        evicted = self.enqueue(work)
        if evicted is work:
            return None
        return self.get_work(work.id)

    async def _analyze(self, signal: ValidationFailureEvent) -> Diagnosis | None:
        try:
            raw = await self.analyzer.analyze(signal.result)
            return raw if isinstance(raw, Diagnosis) else Diagnosis.model_validate(raw)
        except Exception as e:
            self._error(f"Analyzer failed, using minimal diagnosis: {e}", e)
            return None

    def enqueue(self, work: DiscoveredWork) -> DiscoveredWork | None:
        """Queue pending work. Returns the evicted item, if any (may be ``work``)."""
        if work.status != "pending":
            raise WorkStateError(f"Only pending work can be queued, got {work.status}")
        if work.id in self._history:
            raise ValueError(f"Work {work.id} already finished")

        evicted = self._queue.push(work)
        if evicted is not None:
            self._emit("work-evicted", evicted, detail=f"queue full ({self.config.max_queue_size})")
        if evicted is work:
            return evicted

        logger.info("Discovered %s tier-%d work %s: %s", work.priority, work.tier, work.id, work.summary)
        self._emit("work-discovered", work)

        if self.config.auto_handle_low_tier and work.tier in (1, 2):
            self.start_work(work.id)
        return evicted

    add_work = enqueue

    # ── Lifecycle ──────────────────────────────────────────────────

    def _live(self, work_id: str) -> DiscoveredWork:
        work = self._queue.get(work_id)
        if work is not None:
            return work
        if work_id in self._history:
            finished = self._history[work_id]
            raise WorkStateError(f"Work {work_id} is already {finished.status}")
        raise UnknownWorkError(work_id)

    def start_work(self, work_id: str) -> DiscoveredWork:
        work = self._live(work_id)
        if work.status != "pending":
            raise WorkStateError(f"Work {work_id} is {work.status}, expected pending")
        work.status = "in-progress"
        work.started_at = datetime.now()
        logger.info("Started work %s", work_id)
        self._emit("work-started", work)
        return work.model_copy(deep=True)

    def complete_work(self, work_id: str, resolution: str) -> DiscoveredWork:
        work = self._live(work_id)
        if work.status != "in-progress":
            raise WorkStateError(f"Work {work_id} is {work.status}, expected in-progress")
        work.status = "completed"
        work.resolution = resolution
        self._retire(work)
        logger.info("Completed work %s: %s", work_id, resolution)
        self._emit("work-completed", work)
        return work.model_copy(deep=True)

    def escalate_work(self, work_id: str, reason: str) -> DiscoveredWork:
        work = self._live(work_id)
        work.status = "escalated"
        work.resolution = f"Escalated: {reason}"
        self._retire(work)
        logger.info("Escalated work %s: %s", work_id, reason)
        self._emit("work-escalated", work, detail=reason)
        return work.model_copy(deep=True)

    def _retire(self, work: DiscoveredWork) -> None:
        work.completed_at = datetime.now()
        self._queue.remove(work.id)
        self._history[work.id] = work
        while len(self._history) > self._history_size:
            self._history.popitem(last=False)

    # ── Queries ────────────────────────────────────────────────────

    def get_next_work(self) -> DiscoveredWork | None:
        work = self._queue.next_pending()
        return work.model_copy(deep=True) if work else None

    def get_work(self, work_id: str) -> DiscoveredWork | None:
        work = self._queue.get(work_id) or self._history.get(work_id)
        return work.model_copy(deep=True) if work else None

    def get_queue(self) -> list[DiscoveredWork]:
        return [w.model_copy(deep=True) for w in self._queue.items()]

    def get_pending_by_tier(self, tier: int) -> list[DiscoveredWork]:
        return [w.model_copy(deep=True) for w in self._queue.pending_by_tier(tier)]

    def get_history(self) -> list[DiscoveredWork]:
        return [w.model_copy(deep=True) for w in self._history.values()]

    def get_stats(self) -> dict[str, Any]:
        items = self._queue.items()
        statuses = Counter(w.status for w in items)
        finished = Counter(w.status for w in self._history.values())
        by_priority = {str(p): 0 for p in PRIORITY_ORDER}
        by_tier = {1: 0, 2: 0, 3: 0, 4: 0}
        for work in items:
            by_priority[str(work.priority)] += 1
            by_tier[work.tier] += 1
        return {
            "queue_size": len(items),
            "pending_count": statuses.get("pending", 0),
            "in_progress_count": statuses.get("in-progress", 0),
            "completed_count": finished.get("completed", 0),
            "escalated_count": finished.get("escalated", 0),
            "by_priority": by_priority,
            "by_tier": by_tier,
        }

    def clear(self) -> None:
        self._queue.clear()
        self._history.clear()

    # ── Tick loop ──────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._running

    async def tick(self) -> int:
        """Poll every tick source once. Returns the number of items handled."""
        if self._ticking:
            logger.debug("Previous tick still running; skipping")
            return 0
        if not self.config.enabled or not self._tick_sources:
            return 0
        self._ticking = True
        handled = 0
        try:
            for source in list(self._tick_sources):
                try:
                    items = await source()
                except Exception as e:
                    self._error(f"Tick source failed: {e}", e)
                    continue
                for item in items or []:
                    if await self._ingest(item):
                        handled += 1
        finally:
            self._ticking = False
        return handled

    async def _ingest(self, item: Any) -> bool:
        if isinstance(item, DiscoveredWork):
            try:
                return self.enqueue(item) is not item
            except (ValueError, WorkStateError) as e:
                self._error(f"Rejected polled work {item.id}: {e}", e)
                return False
        return await self.handle_validation_failure(item) is not None

    def start(self) -> None:
        """Start the tick timer. Must be called from a running event loop."""
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.get_running_loop().create_task(self._tick_loop())
        logger.info("Poller started (interval %ss)", self.config.poll_interval)

    async def _tick_loop(self) -> None:
        while self._running:
            if self._tick_task is None or self._tick_task.done():
                self._tick_task = asyncio.create_task(self.tick())
            else:
                logger.debug("Tick overran interval; skipping")
            await asyncio.sleep(self.config.poll_interval)

    async def stop(self) -> None:
        """Stop the timer and let an in-flight tick finish."""
        self._running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None
        if self._tick_task is not None and not self._tick_task.done():
            await self._tick_task
        self._tick_task = None
        logger.info("Poller stopped")

    # ── Events ─────────────────────────────────────────────────────

    def _emit(self, kind: str, work: DiscoveredWork, detail: str = "") -> None:
        self.event_bus.emit_nowait(FixloopEvent(
            kind=kind,
            detail=detail or work.summary,
            work_id=work.id,
            payload=work.model_copy(deep=True),
        ))

    def _error(self, message: str, error: Exception) -> None:
        logger.warning(message)
        self.event_bus.emit_nowait(FixloopEvent(kind="error", detail=message, payload=error))
