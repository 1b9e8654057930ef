"""In-process event bus — fixed vocabulary, explicit subscribe/unsubscribe.

Components never call each other's observers directly; they emit events.
Handlers may be plain functions or coroutine functions. A handler that
raises is logged and skipped so one bad observer cannot stall the others.

Vocabulary:
  poller   validation-failure, work-discovered, work-started,
           work-completed, work-escalated, work-evicted, error
  engine   workflow-started, phase-started, hook-failed,
           phase-attempt-failed, phase-completed, approval-requested,
           approval-received, workflow-completed, workflow-failed,
           workflow-escalated, workflow-cancelled
  metrics  cycle-started, fix-attempted, learning-captured,
           cycle-completed, cycle-cancelled
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

logger = logging.getLogger(__name__)

WILDCARD = "*"


@dataclass
class FixloopEvent:
    """One emitted event."""
    kind: str
    detail: str = ""
    work_id: str = ""
    run_id: str = ""
    payload: Any = None
    timestamp: datetime = field(default_factory=datetime.now)


Handler = Callable[[FixloopEvent], Any]


class EventBus:
    """Routes events by kind. ``*`` subscribers see everything."""

    def __init__(self, history_size: int = 500) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._tasks: set[asyncio.Task] = set()
        self.recent: deque[FixloopEvent] = deque(maxlen=history_size)

    def subscribe(self, kind: str, handler: Handler) -> None:
        handlers = self._handlers.setdefault(kind, [])
        if handler not in handlers:
            handlers.append(handler)

    def unsubscribe(self, kind: str, handler: Handler) -> bool:
        """Remove a handler. Returns False if it was not subscribed."""
        handlers = self._handlers.get(kind, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def subscriber_count(self, kind: str) -> int:
        return len(self._handlers.get(kind, []))

    def _targets(self, kind: str) -> list[Handler]:
        return list(self._handlers.get(kind, [])) + list(self._handlers.get(WILDCARD, []))

    async def emit(self, event: FixloopEvent) -> None:
        """Deliver to every handler, awaiting coroutine handlers in order."""
        self.recent.append(event)
        for handler in self._targets(event.kind):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Handler for %s failed", event.kind)

    def emit_nowait(self, event: FixloopEvent) -> None:
        """Deliver from synchronous code; coroutine handlers become tasks."""
        self.recent.append(event)
        for handler in self._targets(event.kind):
            try:
                result = handler(event)
            except Exception:
                logger.exception("Handler for %s failed", event.kind)
                continue
            if inspect.isawaitable(result):
                self._schedule(result, event.kind)

    def _schedule(self, awaitable: Any, kind: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running loop; dropping async handler for %s", kind)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = loop.create_task(self._guard(awaitable, kind))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(self, awaitable: Any, kind: str) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception("Handler for %s failed", kind)

    async def drain(self) -> None:
        """Wait for every scheduled handler task, including ones they spawn."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def clear(self) -> None:
        self._handlers.clear()
        self.recent.clear()
