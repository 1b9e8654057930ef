"""Coordinator — wires poller, engine and metrics into one loop.

  validation-failure → poller (diagnose, rank, queue)
  work-started       → metrics.start_cycle + engine.run(suggested workflow)
  phase-started      → metrics.record_fix_attempt (fix agents only)
  phase-completed    → metrics.record_learning_capture (output["learnings"])
  workflow-completed → poller.complete_work + metrics.complete_cycle
  workflow-failed / -escalated / -cancelled
                     → poller.escalate_work + metrics.cancel_cycle

Work suggested for ``investigation`` or ``manual-review`` has no automated
workflow and is escalated as soon as it starts.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from fixloop.agents import AgentRegistry
from fixloop.budget import BudgetTracker
from fixloop.config import FixloopConfig
from fixloop.engine import PhaseEngine
from fixloop.events import EventBus, FixloopEvent
from fixloop.hooks import default_hooks
from fixloop.lifecycle import RunConflictError
from fixloop.metrics import ProcessMetricsCollector
from fixloop.poller import DiagnosisAnalyzer, WorkPoller
from fixloop.schemas import DiscoveredWork, WorkflowRun
from fixloop.store import RunStore
from fixloop.workflows import ConfigurationError

logger = logging.getLogger(__name__)

MANUAL_WORKFLOWS = ("investigation", "manual-review")

TERMINAL_EVENTS = ("workflow-failed", "workflow-escalated", "workflow-cancelled")


class Coordinator:
    """Glue between the three components. Owns no state of its own beyond counters."""

    def __init__(
        self,
        poller: WorkPoller,
        engine: PhaseEngine,
        metrics: ProcessMetricsCollector,
        fix_agents: Iterable[str] = ("dev",),
    ) -> None:
        self.poller = poller
        self.engine = engine
        self.metrics = metrics
        self.fix_agents = set(fix_agents)
        self._promoted: dict[str, int] = {}
        self._attached = False

    def attach(self) -> None:
        """Subscribe to engine and poller events."""
        if self._attached:
            return
        buses = {id(self.engine.event_bus): self.engine.event_bus,
                 id(self.poller.event_bus): self.poller.event_bus}
        for bus in buses.values():
            bus.subscribe("work-started", self._on_work_started)
            bus.subscribe("phase-started", self._on_phase_started)
            bus.subscribe("phase-completed", self._on_phase_completed)
            bus.subscribe("workflow-completed", self._on_workflow_completed)
            for kind in TERMINAL_EVENTS:
                bus.subscribe(kind, self._on_workflow_ended)
        self.poller.add_tick_source(self._apply_decisions)
        self._attached = True

    # ── Dispatch ───────────────────────────────────────────────────

    def dispatch_next(self) -> DiscoveredWork | None:
        """Start the most urgent pending work item, if any."""
        work = self.poller.get_next_work()
        if work is None:
            return None
        return self.poller.start_work(work.id)

    async def _on_work_started(self, event: FixloopEvent) -> None:
        work: DiscoveredWork = event.payload
        await self.launch(work)

    async def launch(self, work: DiscoveredWork) -> WorkflowRun | None:
        """Run the suggested workflow for in-progress work."""
        if work.suggested_workflow in MANUAL_WORKFLOWS:
            logger.info("Work %s needs %s; escalating", work.id, work.suggested_workflow)
            self.poller.escalate_work(work.id, f"Requires {work.suggested_workflow}")
            return None

        if work.diagnosis is not None:
            self.metrics.start_cycle(work)
        initial_input = {
            "work_id": work.id,
            "summary": work.summary,
            "description": work.description,
            "diagnosis": work.diagnosis.model_dump(mode="json") if work.diagnosis else None,
        }
        try:
            return await self.engine.run(
                work.suggested_workflow,
                initial_input=initial_input,
                work_id=work.id,
                description=work.summary,
            )
        except (ConfigurationError, RunConflictError) as e:
            logger.error("Could not start run for %s: %s", work.id, e)
            if self.metrics.has_cycle(work.id):
                self.metrics.cancel_cycle(work.id)
            self.poller.escalate_work(work.id, str(e))
            return None

    # ── Metrics feed ───────────────────────────────────────────────

    def _on_phase_started(self, event: FixloopEvent) -> None:
        payload = event.payload or {}
        if payload.get("agent") in self.fix_agents and self.metrics.has_cycle(event.work_id):
            self.metrics.record_fix_attempt(event.work_id)

    def _on_phase_completed(self, event: FixloopEvent) -> None:
        if not self.metrics.has_cycle(event.work_id):
            return
        result = (event.payload or {}).get("result")
        learnings = result.output.get("learnings") if result is not None else None
        if not isinstance(learnings, list):
            return
        for learning in learnings:
            if not isinstance(learning, dict):
                continue
            self.metrics.record_learning_capture(event.work_id, bool(learning.get("is_novel")))
            if learning.get("promoted"):
                self._promoted[event.work_id] = self._promoted.get(event.work_id, 0) + 1

    # ── Terminal runs ──────────────────────────────────────────────

    def _tracked(self, work_id: str) -> bool:
        work = self.poller.get_work(work_id) if work_id else None
        return work is not None and work.status == "in-progress"

    def _on_workflow_completed(self, event: FixloopEvent) -> None:
        run: WorkflowRun = event.payload
        work_id = run.work_id
        promoted = self._promoted.pop(work_id, 0)
        if not self._tracked(work_id):
            return
        output: dict[str, Any] = run.last_result.output if run.last_result else {}
        resolution = f"{run.workflow} run {run.id} completed"
        self.poller.complete_work(work_id, resolution)
        if self.metrics.has_cycle(work_id):
            self.metrics.complete_cycle(
                work_id,
                resolution=resolution,
                diagnosis_accurate=bool(output.get("diagnosis_accurate", True)),
                root_cause_matched=bool(output.get("root_cause_matched", True)),
                workflow_used=run.workflow,
                learnings_promoted=promoted,
            )

    def _on_workflow_ended(self, event: FixloopEvent) -> None:
        run: WorkflowRun = event.payload
        work_id = run.work_id
        self._promoted.pop(work_id, None)
        if not self._tracked(work_id):
            return
        self.poller.escalate_work(work_id, f"Run {run.id} {run.status}: {run.reason}")
        if self.metrics.has_cycle(work_id):
            self.metrics.cancel_cycle(work_id)

    # ── Decisions ──────────────────────────────────────────────────

    async def approve(self, run_id: str, feedback: str = "") -> WorkflowRun:
        return await self.engine.approve(run_id, feedback)

    async def reject(self, run_id: str, reason: str = "Rejected") -> WorkflowRun:
        return await self.engine.reject(run_id, reason)

    async def _apply_decisions(self) -> None:
        # Tick source: decisions recorded by the CLI in the shared store
        for run in await self.engine.apply_pending_decisions():
            logger.info("Applied decision to run %s (%s)", run.id, run.status)

    async def drain(self) -> None:
        """Wait for every in-flight run started through the event bus."""
        await self.engine.event_bus.drain()
        if self.poller.event_bus is not self.engine.event_bus:
            await self.poller.event_bus.drain()


def build_from_config(
    config: FixloopConfig,
    agents: AgentRegistry,
    analyzer: DiagnosisAnalyzer | None = None,
    event_bus: EventBus | None = None,
) -> Coordinator:
    """Assemble a fully wired Coordinator sharing one EventBus."""
    bus = event_bus or EventBus()
    store = RunStore(config.state_dir)
    store.init()
    ec = config.engine
    engine = PhaseEngine(
        agents,
        hooks=default_hooks(
            test_command=ec.test_command,
            coverage_command=ec.coverage_command,
            coverage_threshold=ec.coverage_threshold,
            timeout=ec.hook_timeout,
        ),
        event_bus=bus,
        store=store,
        budget=BudgetTracker(per_run_cap=ec.max_budget_usd, daily_cap=ec.daily_budget_usd),
        approval_mode=ec.approval_mode,
        max_concurrent_runs=ec.max_concurrent_runs,
        working_directory=ec.working_directory,
    )
    poller = WorkPoller(config.poller, event_bus=bus, analyzer=analyzer)
    metrics = ProcessMetricsCollector(config.metrics.max_stored_cycles, event_bus=bus)
    coordinator = Coordinator(poller, engine, metrics, fix_agents=ec.fix_agents)
    coordinator.attach()
    return coordinator
