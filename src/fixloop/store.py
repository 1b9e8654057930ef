"""Run store — persisted run state, approval decisions, audit trail.

Layout under one state directory:
  state/
  ├── runs/<run_id>.json        active (non-terminal) runs
  ├── archive/<run_id>.json     terminal runs
  ├── decisions/<run_id>.json   pending approve/reject decisions
  └── audit.jsonl

Awaiting-approval is a persisted status, so another process (the CLI) can
record a decision that the engine process picks up later.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Literal

from fixloop.lifecycle import RunStateError, UnknownRunError
from fixloop.schemas import WorkflowRun

logger = logging.getLogger(__name__)

AUDIT_FILE = "audit.jsonl"

Decision = Literal["approve", "reject"]


class RunStore:
    """Manages the state directory."""

    def __init__(self, state_dir: str | Path) -> None:
        self.state_dir = Path(state_dir).resolve()
        self._runs_dir = self.state_dir / "runs"
        self._archive_dir = self.state_dir / "archive"
        self._decisions_dir = self.state_dir / "decisions"

    # ── Paths ──────────────────────────────────────────────────────

    @property
    def audit_path(self) -> Path:
        return self.state_dir / AUDIT_FILE

    def run_path(self, run_id: str) -> Path:
        return self._runs_dir / f"{run_id}.json"

    def archive_path(self, run_id: str) -> Path:
        return self._archive_dir / f"{run_id}.json"

    def decision_path(self, run_id: str) -> Path:
        return self._decisions_dir / f"{run_id}.json"

    def init(self) -> None:
        self._runs_dir.mkdir(parents=True, exist_ok=True)
        self._archive_dir.mkdir(exist_ok=True)
        self._decisions_dir.mkdir(exist_ok=True)

    # ── Runs ───────────────────────────────────────────────────────

    def save_run(self, run: WorkflowRun) -> None:
        self._runs_dir.mkdir(parents=True, exist_ok=True)
        self.run_path(run.id).write_text(run.model_dump_json(indent=2))

    def load_run(self, run_id: str) -> WorkflowRun:
        """Load an active or archived run. Raises UnknownRunError."""
        for path in (self.run_path(run_id), self.archive_path(run_id)):
            if path.exists():
                return WorkflowRun.model_validate_json(path.read_text())
        raise UnknownRunError(run_id)

    def has_run(self, run_id: str) -> bool:
        return self.run_path(run_id).exists() or self.archive_path(run_id).exists()

    def list_runs(self, include_archived: bool = False) -> list[WorkflowRun]:
        dirs = [self._runs_dir]
        if include_archived:
            dirs.append(self._archive_dir)
        runs = []
        for d in dirs:
            if not d.exists():
                continue
            for path in sorted(d.glob("*.json")):
                runs.append(WorkflowRun.model_validate_json(path.read_text()))
        return sorted(runs, key=lambda r: r.created_at)

    def archive_run(self, run: WorkflowRun) -> Path:
        """Move a terminal run out of the active set."""
        self._archive_dir.mkdir(parents=True, exist_ok=True)
        dest = self.archive_path(run.id)
        dest.write_text(run.model_dump_json(indent=2))
        self.run_path(run.id).unlink(missing_ok=True)
        self.decision_path(run.id).unlink(missing_ok=True)
        logger.debug("Archived run %s (%s)", run.id, run.status)
        return dest

    # ── Decisions ──────────────────────────────────────────────────

    def record_decision(self, run_id: str, decision: Decision, note: str = "") -> None:
        """Queue an approve/reject decision for an awaiting-approval run."""
        run = self.load_run(run_id)
        if run.status != "awaiting-approval":
            raise RunStateError(f"Run {run_id} is {run.status}, not awaiting approval")
        self._decisions_dir.mkdir(parents=True, exist_ok=True)
        self.decision_path(run_id).write_text(json.dumps({
            "run_id": run_id,
            "decision": decision,
            "note": note,
            "timestamp": datetime.now().isoformat(),
        }, indent=2))
        self.append_audit("decision", f"{decision} {run_id}", note=note)

    def pop_decision(self, run_id: str) -> dict | None:
        path = self.decision_path(run_id)
        if not path.exists():
            return None
        entry = json.loads(path.read_text())
        path.unlink()
        return entry

    def pending_decisions(self) -> list[dict]:
        if not self._decisions_dir.exists():
            return []
        entries = [json.loads(p.read_text()) for p in sorted(self._decisions_dir.glob("*.json"))]
        return sorted(entries, key=lambda e: e.get("timestamp", ""))

    # ── Audit ──────────────────────────────────────────────────────

    def append_audit(self, action: str, detail: str = "", **kwargs: str) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        entry = {
            "timestamp": datetime.now().isoformat(),
            "action": action,
            "detail": detail,
            **kwargs,
        }
        with open(self.audit_path, "a") as f:
            f.write(json.dumps(entry) + "\n")

    def load_audit(self) -> list[dict]:
        if not self.audit_path.exists():
            return []
        entries = []
        with open(self.audit_path) as f:
            for line in f:
                line = line.strip()
                if line:
                    entries.append(json.loads(line))
        return entries
