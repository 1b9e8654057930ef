"""Tests for run creation, status guards and error classification."""

from __future__ import annotations

import asyncio

import pytest

from fixloop.lifecycle import (
    ErrorClassification,
    RunStateError,
    UnknownRunError,
    classify_error,
    create_run,
    format_run_summary,
    require_status,
)
from fixloop.schemas import PhaseRecord


class TestCreateRun:
    def test_creates_pending_run(self):
        run = create_run("bug-fix", work_id="w1", description="fix it")
        assert run.status == "pending"
        assert run.phase_index == 0
        assert run.workflow == "bug-fix"
        assert run.work_id == "w1"
        assert run.id != ""

    def test_unique_ids(self):
        assert create_run("bug-fix").id != create_run("bug-fix").id


class TestRequireStatus:
    def test_allowed(self):
        run = create_run("bug-fix")
        require_status(run, "pending", "running")

    def test_disallowed(self):
        run = create_run("bug-fix")
        with pytest.raises(RunStateError, match="pending"):
            require_status(run, "awaiting-approval")

    def test_unknown_run_is_key_error(self):
        assert issubclass(UnknownRunError, KeyError)


class TestFormatRunSummary:
    def test_basic(self):
        run = create_run("bug-fix", work_id="w1")
        summary = format_run_summary(run, ["Diagnosis", "Tests"])
        assert "bug-fix" in summary
        assert "w1" in summary
        assert "1/2 (Diagnosis)" in summary

    def test_done_and_reason(self):
        run = create_run("bug-fix")
        run.phase_index = 2
        run.history.append(PhaseRecord(phase_index=0, phase_name="A", agent="a", passed=True))
        run.history.append(PhaseRecord(phase_index=1, phase_name="B", agent="b", passed=False))
        run.fail("boom")
        summary = format_run_summary(run, ["A", "B"])
        assert "(done)" in summary
        assert "2 across 2 phases, 1 failed" in summary
        assert "Reason: boom" in summary

    def test_without_phase_names(self):
        summary = format_run_summary(create_run("refactor"))
        assert "Phase index: 0" in summary


class TestClassifyError:
    def test_timeout_is_transient(self):
        assert classify_error(asyncio.TimeoutError()) == ErrorClassification.TRANSIENT

    def test_connection_error_is_transient(self):
        assert classify_error(ConnectionResetError()) == ErrorClassification.TRANSIENT

    def test_file_not_found_is_permanent(self):
        assert classify_error(FileNotFoundError("x")) == ErrorClassification.PERMANENT

    def test_value_error_is_permanent(self):
        assert classify_error(ValueError("bad")) == ErrorClassification.PERMANENT
