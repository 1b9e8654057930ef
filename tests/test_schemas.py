"""Tests for Pydantic schemas."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from fixloop.schemas import (
    AgentResult,
    Diagnosis,
    DiscoveredWork,
    PhaseRecord,
    RootCause,
    TestResults,
    WorkflowRun,
    WorkPriority,
    priority_rank,
)


class TestRootCause:
    def test_confidence_bounds(self):
        with pytest.raises(ValidationError):
            RootCause(confidence=1.5)
        with pytest.raises(ValidationError):
            RootCause(confidence=-0.1)

    def test_defaults_unknown(self):
        rc = RootCause()
        assert rc.category == "unknown"
        assert rc.confidence == 0.0


class TestDiagnosis:
    def test_negative_occurrences_rejected(self):
        with pytest.raises(ValidationError):
            Diagnosis(pattern_id="p", summary="s", previous_occurrences=-1)

    def test_json_round_trip(self):
        d = Diagnosis(
            pattern_id="PAT-1",
            summary="Webhook 500",
            root_cause=RootCause(category="code", description="bad handler", confidence=0.9),
        )
        restored = Diagnosis.model_validate_json(d.model_dump_json())
        assert restored == d

    def test_aware_timestamp_becomes_local_naive(self):
        d = Diagnosis.model_validate({
            "pattern_id": "p", "summary": "s", "timestamp": "2026-10-19T10:00:00Z",
        })
        expected = datetime(2026, 10, 19, 10, tzinfo=timezone.utc).astimezone().replace(tzinfo=None)
        assert d.timestamp.tzinfo is None
        assert d.timestamp == expected


class TestAgentResult:
    def test_frozen(self):
        result = AgentResult(agent="dev", output={"x": 1})
        with pytest.raises(ValidationError):
            result.success = False

    def test_negative_cost_rejected(self):
        with pytest.raises(ValidationError):
            AgentResult(cost_usd=-1)


class TestDiscoveredWork:
    def test_priority_and_tier_frozen(self):
        work = DiscoveredWork(id="w1", priority="high", tier=2)
        with pytest.raises(ValidationError):
            work.priority = WorkPriority.LOW
        with pytest.raises(ValidationError):
            work.tier = 4

    def test_status_mutable(self):
        work = DiscoveredWork(id="w1", priority="high", tier=2)
        work.status = "in-progress"
        assert work.status == "in-progress"

    def test_tier_range(self):
        with pytest.raises(ValidationError):
            DiscoveredWork(id="w1", priority="high", tier=5)

    def test_bad_workflow(self):
        with pytest.raises(ValidationError):
            DiscoveredWork(id="w1", priority="low", tier=4, suggested_workflow="yolo")


class TestPriorityRank:
    def test_order(self):
        ranks = [priority_rank(p) for p in ("critical", "high", "medium", "low")]
        assert ranks == [0, 1, 2, 3]

    def test_unknown_raises(self):
        with pytest.raises(ValueError):
            priority_rank("urgent")


class TestWorkflowRun:
    def test_terminal_statuses(self):
        run = WorkflowRun(id="r", workflow="bug-fix")
        assert not run.is_terminal
        run.complete()
        assert run.is_terminal
        assert run.completed_at is not None

    def test_fail_sets_reason(self):
        run = WorkflowRun(id="r", workflow="bug-fix")
        run.fail("boom")
        assert run.status == "failed"
        assert run.reason == "boom"

    def test_cancel_and_escalate_terminal(self):
        a = WorkflowRun(id="a", workflow="bug-fix")
        a.cancel()
        b = WorkflowRun(id="b", workflow="bug-fix")
        b.escalate("rejected")
        assert a.is_terminal and a.status == "cancelled"
        assert b.is_terminal and b.reason == "rejected"

    def test_last_result_skips_hook_failures(self):
        run = WorkflowRun(id="r", workflow="bug-fix")
        first = AgentResult(agent="architect", output={"root_cause": "x"})
        run.history.append(PhaseRecord(
            phase_index=0, phase_name="a", agent="architect", result=first, passed=True,
        ))
        run.history.append(PhaseRecord(
            phase_index=1, phase_name="b", agent="dev", result=None, hook_failures=["tdd-enforcement"],
        ))
        assert run.last_result == first

    def test_attempts_for(self):
        run = WorkflowRun(id="r", workflow="bug-fix")
        for attempt in (1, 2):
            run.history.append(PhaseRecord(
                phase_index=2, phase_name="dev", agent="dev", attempt=attempt,
            ))
        assert run.attempts_for(2) == 2
        assert run.attempts_for(0) == 0

    def test_record_cost(self):
        run = WorkflowRun(id="r", workflow="bug-fix")
        run.record_cost(AgentResult(cost_usd=0.25, turns_used=3))
        run.record_cost(AgentResult(cost_usd=0.5, turns_used=1))
        assert run.total_cost_usd == pytest.approx(0.75)
        assert run.total_turns == 4

    def test_json_round_trip_keeps_int_retry_keys(self):
        run = WorkflowRun(id="r", workflow="bug-fix", retry_counts={2: 1})
        restored = WorkflowRun.model_validate_json(run.model_dump_json())
        assert restored.retry_counts == {2: 1}


class TestTestResults:
    def test_all_passed(self):
        assert TestResults(total=3, passed=3).all_passed
        assert not TestResults(total=0).all_passed
        assert not TestResults(total=3, passed=2, failed=1).all_passed
        assert not TestResults(total=3, passed=2, errors=1).all_passed
