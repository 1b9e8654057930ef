"""Tests for the bounded work queue."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from fixloop.schemas import DiscoveredWork
from fixloop.work_queue import WorkQueue

T0 = datetime(2026, 3, 1, 12, 0, 0)


def _work(id: str, priority="medium", tier=3, age=0) -> DiscoveredWork:
    return DiscoveredWork(
        id=id, priority=priority, tier=tier, discovered_at=T0 + timedelta(seconds=age),
    )


class TestOrdering:
    def test_priority_then_tier_then_time(self):
        q = WorkQueue()
        for w in (
            _work("low", "low", 1, age=0),
            _work("high-t3", "high", 3, age=1),
            _work("high-t2-late", "high", 2, age=5),
            _work("high-t2-early", "high", 2, age=2),
            _work("critical", "critical", 4, age=9),
        ):
            q.push(w)
        assert [w.id for w in q.ordered()] == [
            "critical", "high-t2-early", "high-t2-late", "high-t3", "low",
        ]
        assert q.next_pending().id == "critical"

    def test_insertion_breaks_ties(self):
        q = WorkQueue()
        q.push(_work("first"))
        q.push(_work("second"))
        assert q.next_pending().id == "first"

    def test_in_progress_skipped(self):
        q = WorkQueue()
        q.push(_work("a", "critical"))
        q.push(_work("b", "low"))
        q.get("a").status = "in-progress"
        assert q.next_pending().id == "b"
        assert len(q) == 2

    def test_empty(self):
        assert WorkQueue().next_pending() is None


class TestCapacity:
    def test_evicts_least_urgent(self):
        q = WorkQueue(max_size=5)
        for i, (priority, tier) in enumerate([
            ("critical", 1), ("high", 2), ("medium", 3), ("low", 4), ("low", 3),
        ]):
            q.push(_work(f"w{i}", priority, tier, age=i))
        evicted = q.push(_work("new", "high", 2, age=10))
        assert evicted.id == "w3"
        assert len(q) == 5
        assert "new" in q
        assert "w3" not in q

    def test_evicted_never_outranks_retained(self):
        q = WorkQueue(max_size=3)
        q.push(_work("a", "low", 4, age=0))
        q.push(_work("b", "low", 4, age=1))
        q.push(_work("c", "high", 1, age=2))
        evicted = q.push(_work("d", "medium", 3, age=3))
        assert evicted.id == "a"
        assert {w.id for w in q.items()} == {"b", "c", "d"}

    def test_newcomer_dropped_when_least_urgent(self):
        q = WorkQueue(max_size=2)
        q.push(_work("a", "critical"))
        q.push(_work("b", "high"))
        newcomer = _work("c", "low")
        assert q.push(newcomer) is newcomer
        assert "c" not in q

    def test_full_tie_evicts_existing(self):
        q = WorkQueue(max_size=1)
        q.push(_work("a", age=0))
        evicted = q.push(_work("b", age=0))
        assert evicted.id == "a"
        assert "b" in q

    def test_sixth_low_item_replaces_existing_low(self):
        q = WorkQueue(max_size=5)
        for i, priority in enumerate(["low", "high", "critical", "medium", "high"]):
            q.push(_work(f"w{i}", priority, 4))
        evicted = q.push(_work("new", "low", 4))
        assert evicted.id == "w0"
        assert len(q) == 5
        assert "new" in q
        assert [w.priority for w in q.ordered()] == ["critical", "high", "high", "medium", "low"]

    def test_same_urgency_evicts_oldest_existing(self):
        q = WorkQueue(max_size=2)
        q.push(_work("old", "low", 4, age=0))
        q.push(_work("young", "low", 4, age=5))
        evicted = q.push(_work("new", "low", 4, age=9))
        assert evicted.id == "old"

    def test_in_progress_never_evicted(self):
        q = WorkQueue(max_size=2)
        q.push(_work("busy", "low", 4))
        q.get("busy").status = "in-progress"
        q.push(_work("pending", "medium"))
        evicted = q.push(_work("new", "high"))
        assert evicted.id == "pending"
        assert "busy" in q

    def test_all_in_progress_drops_newcomer(self):
        q = WorkQueue(max_size=1)
        q.push(_work("busy", "low", 4))
        q.get("busy").status = "in-progress"
        newcomer = _work("urgent", "critical", 1)
        assert q.push(newcomer) is newcomer

    def test_duplicate_id(self):
        q = WorkQueue()
        q.push(_work("a"))
        with pytest.raises(ValueError):
            q.push(_work("a"))

    def test_bad_size(self):
        with pytest.raises(ValueError):
            WorkQueue(max_size=0)


class TestAccessors:
    def test_remove_and_clear(self):
        q = WorkQueue()
        q.push(_work("a"))
        q.push(_work("b", tier=1))
        assert q.remove("a").id == "a"
        assert q.remove("a") is None
        assert [w.id for w in q.pending_by_tier(1)] == ["b"]
        q.clear()
        assert len(q) == 0
