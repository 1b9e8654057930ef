"""Bounded priority queue of DiscoveredWork.

Retrieval order over pending items is (priority, tier, discovered_at,
insertion sequence), critical first and lower tier first.

At capacity a push evicts the least urgent candidate among the pending
items and the newcomer: lowest priority, then highest tier. On equal
urgency an existing item goes before the newcomer, oldest first, so the
newcomer is dropped only when it is strictly less urgent than every
pending item. In-progress items are never evicted.
"""

from __future__ import annotations

import logging
from itertools import count

from fixloop.schemas import DiscoveredWork, priority_rank

logger = logging.getLogger(__name__)


class WorkQueue:
    """Owns live work items. Never holds more than ``max_size``."""

    def __init__(self, max_size: int = 100) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._items: dict[str, DiscoveredWork] = {}
        self._seq: dict[str, int] = {}
        self._counter = count()

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, work_id: object) -> bool:
        return work_id in self._items

    def _eviction_key(self, work: DiscoveredWork, newcomer: bool) -> tuple:
        return (
            priority_rank(work.priority),
            work.tier,
            not newcomer,
            -work.discovered_at.timestamp(),
        )

    def push(self, work: DiscoveredWork) -> DiscoveredWork | None:
        """Insert ``work``. Returns the evicted item (possibly ``work``) or None."""
        if work.id in self._items:
            raise ValueError(f"Work {work.id} is already queued")

        if len(self._items) >= self.max_size:
            candidates = [(w, False) for w in self.pending()] + [(work, True)]
            victim, is_newcomer = max(
                candidates, key=lambda c: self._eviction_key(c[0], c[1]),
            )
            if is_newcomer:
                logger.info(
                    "Queue full (%d); dropping new %s work %s",
                    self.max_size, work.priority, work.id,
                )
                return work
            self.remove(victim.id)
            logger.info(
                "Queue full (%d); evicted %s work %s", self.max_size, victim.priority, victim.id,
            )
            self._insert(work)
            return victim

        self._insert(work)
        return None

    def _insert(self, work: DiscoveredWork) -> None:
        self._items[work.id] = work
        self._seq[work.id] = next(self._counter)

    def _order_key(self, work: DiscoveredWork) -> tuple:
        return (
            priority_rank(work.priority),
            work.tier,
            work.discovered_at,
            self._seq[work.id],
        )

    def pending(self) -> list[DiscoveredWork]:
        return [w for w in self._items.values() if w.status == "pending"]

    def next_pending(self) -> DiscoveredWork | None:
        """Most urgent pending item, or None."""
        pending = self.pending()
        if not pending:
            return None
        return min(pending, key=self._order_key)

    def ordered(self) -> list[DiscoveredWork]:
        """Pending items in retrieval order."""
        return sorted(self.pending(), key=self._order_key)

    def get(self, work_id: str) -> DiscoveredWork | None:
        return self._items.get(work_id)

    def remove(self, work_id: str) -> DiscoveredWork | None:
        self._seq.pop(work_id, None)
        return self._items.pop(work_id, None)

    def items(self) -> list[DiscoveredWork]:
        return list(self._items.values())

    def pending_by_tier(self, tier: int) -> list[DiscoveredWork]:
        return [w for w in self.pending() if w.tier == tier]

    def clear(self) -> None:
        self._items.clear()
        self._seq.clear()
