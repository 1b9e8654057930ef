"""Run state machine helpers + error classification.

Run status transitions:
  pending           → running            (concurrency slot acquired)
  running           → awaiting-approval  (phase with approval gate passed)
  awaiting-approval → running            (approve)
  awaiting-approval → escalated          (reject)
  running           → failed             (retries exhausted, budget hit)
  running           → completed          (final phase passed)
  any non-terminal  → cancelled          (cancel, at a phase boundary)

The phase index only increases.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from enum import StrEnum
from uuid import uuid4

from fixloop.schemas import WorkflowRun

logger = logging.getLogger(__name__)


class RunStateError(Exception):
    """Raised for an illegal run status transition (e.g. approving a running run)."""


class UnknownRunError(KeyError):
    """Raised when a run id has no matching state."""


class RunConflictError(Exception):
    """Raised when a second active run is requested for the same work id."""


def create_run(workflow: str, work_id: str = "", description: str = "") -> WorkflowRun:
    """Create a new pending WorkflowRun."""
    return WorkflowRun(
        id=uuid4().hex[:12],
        workflow=workflow,
        work_id=work_id,
        description=description,
    )


def require_status(run: WorkflowRun, *allowed: str) -> None:
    """Raise RunStateError unless the run is in one of the allowed statuses."""
    if run.status not in allowed:
        raise RunStateError(
            f"Run {run.id} is {run.status}, expected {' or '.join(allowed)}"
        )


def format_run_summary(run: WorkflowRun, phase_names: list[str] | None = None) -> str:
    """Format a run as a human-readable summary."""
    lines = [
        f"[{run.id}] {run.status:18s} ${run.total_cost_usd:.4f}",
        f"  Workflow: {run.workflow}",
    ]
    if run.work_id:
        lines.append(f"  Work: {run.work_id}")
    if phase_names:
        current = phase_names[run.phase_index] if run.phase_index < len(phase_names) else "done"
        lines.append(f"  Phase: {run.phase_index + 1}/{len(phase_names)} ({current})")
    else:
        lines.append(f"  Phase index: {run.phase_index}")
    if run.history:
        attempts = Counter(r.phase_name for r in run.history)
        failed = sum(1 for r in run.history if not r.passed)
        lines.append(
            f"  Attempts: {len(run.history)} across {len(attempts)} phases, {failed} failed"
        )
    if run.reason:
        lines.append(f"  Reason: {run.reason}")
    return "\n".join(lines)


class ErrorClassification(StrEnum):
    TRANSIENT = "transient"   # timeout, connection drop -> retry is worthwhile
    PERMANENT = "permanent"   # bad input, bad config -> retry will not help


def classify_error(error: Exception) -> ErrorClassification:
    """Classify an agent/transport error for the attempt's failure reason."""
    if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
        return ErrorClassification.TRANSIENT

    # Network-ish OSErrors, but not filesystem ones
    if isinstance(error, OSError) and not isinstance(error, (FileNotFoundError, PermissionError)):
        return ErrorClassification.TRANSIENT

    return ErrorClassification.PERMANENT
