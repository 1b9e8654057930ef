"""Phase engine — drives WorkflowRuns through their phases.

Per phase attempt:
  1. pre-phase hooks (first failure aborts the attempt, agent not invoked)
  2. agent invocation (awaited; concurrent across runs, serial within one)
  3. validation (false, agent error or hook failure consumes a retry)
  4. approval gate (run suspends as awaiting-approval until approve/reject)
  5. next_phase_input transform
After the final phase the run completes.

Runs execute concurrently up to ``max_concurrent_runs``; the rest wait as
pending. At most one non-terminal run exists per work id. Cancellation is
honoured at phase boundaries and never interrupts an agent call.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Literal

from fixloop.agents import AgentRegistry
from fixloop.budget import BudgetExceeded, BudgetTracker
from fixloop.events import EventBus, FixloopEvent
from fixloop.hooks import HookContext, HookRegistry
from fixloop.lifecycle import (
    RunConflictError,
    RunStateError,
    UnknownRunError,
    classify_error,
    create_run,
    require_status,
)
from fixloop.schemas import AgentResult, PhaseRecord, WorkflowRun
from fixloop.store import RunStore
from fixloop.workflows import WORKFLOWS, ConfigurationError, Phase, Workflow

logger = logging.getLogger(__name__)

ApprovalMode = Literal["after-each-phase", "at-end", "none"]
APPROVAL_MODES = ("after-each-phase", "at-end", "none")


class PhaseEngine:
    """Executes workflows against work items."""

    def __init__(
        self,
        agents: AgentRegistry,
        hooks: HookRegistry | None = None,
        event_bus: EventBus | None = None,
        store: RunStore | None = None,
        budget: BudgetTracker | None = None,
        approval_mode: ApprovalMode = "after-each-phase",
        max_concurrent_runs: int = 4,
        working_directory: str = ".",
        workflows: dict[str, Workflow] | None = None,
    ) -> None:
        if approval_mode not in APPROVAL_MODES:
            raise ConfigurationError(f"Unknown approval mode: {approval_mode}")
        if max_concurrent_runs < 1:
            raise ConfigurationError("max_concurrent_runs must be at least 1")
        self.agents = agents
        self.hooks = hooks or HookRegistry()
        self.event_bus = event_bus or EventBus()
        self.store = store
        self.budget = budget or BudgetTracker(per_run_cap=0, daily_cap=0)
        self.approval_mode = approval_mode
        self.max_concurrent_runs = max_concurrent_runs
        self.working_directory = working_directory
        self.workflows = dict(workflows if workflows is not None else WORKFLOWS)

        self._runs: dict[str, WorkflowRun] = {}
        self._active_by_work: dict[str, str] = {}
        self._run_workflows: dict[str, Workflow] = {}
        self._slots = asyncio.Semaphore(max_concurrent_runs)
        self._executing = 0

    # ── Workflows ──────────────────────────────────────────────────

    def get_workflow(self, name: str) -> Workflow:
        workflow = self.workflows.get(name)
        if workflow is None:
            raise ConfigurationError(
                f"Unknown workflow: {name}. Available: {', '.join(sorted(self.workflows))}"
            )
        return workflow

    def register_workflow(self, workflow: Workflow) -> None:
        self.validate_workflow(workflow)
        self.workflows[workflow.name] = workflow

    def validate_workflow(self, workflow: Workflow) -> None:
        """Fail fast on anything that would break mid-run."""
        if not workflow.phases:
            raise ConfigurationError(f"Workflow {workflow.name} has no phases")
        for phase in workflow.phases:
            if not self.agents.has(phase.agent):
                raise ConfigurationError(
                    f"Workflow {workflow.name} phase '{phase.name}' "
                    f"references unregistered agent: {phase.agent}"
                )
            if phase.max_retries < 0:
                raise ConfigurationError(
                    f"Workflow {workflow.name} phase '{phase.name}' has negative max_retries"
                )
            for hook in phase.pre_phase_hooks:
                if not self.hooks.has(hook):
                    raise ConfigurationError(
                        f"Workflow {workflow.name} phase '{phase.name}' "
                        f"references unregistered hook: {hook}"
                    )

    # ── Queries ────────────────────────────────────────────────────

    def get_run(self, run_id: str) -> WorkflowRun:
        run = self._runs.get(run_id)
        if run is not None:
            return run
        if self.store is not None:
            return self.store.load_run(run_id)
        raise UnknownRunError(run_id)

    def list_runs(self) -> list[WorkflowRun]:
        return list(self._runs.values())

    def active_run_for(self, work_id: str) -> WorkflowRun | None:
        run_id = self._active_by_work.get(work_id)
        return self._runs.get(run_id) if run_id else None

    @property
    def executing_count(self) -> int:
        """Runs currently holding a concurrency slot."""
        return self._executing

    # ── Run ────────────────────────────────────────────────────────

    async def run(
        self,
        workflow: Workflow | str,
        initial_input: Any = None,
        work_id: str = "",
        description: str = "",
    ) -> WorkflowRun:
        """Run a workflow until it completes, fails, or suspends for approval.

        Raises ConfigurationError before anything is created if the
        workflow is invalid, and RunConflictError if the work id already
        has an active run.
        """
        if isinstance(workflow, str):
            workflow = self.get_workflow(workflow)
        self.validate_workflow(workflow)
        if work_id and work_id in self._active_by_work:
            raise RunConflictError(
                f"Work {work_id} already has active run {self._active_by_work[work_id]}"
            )

        run = create_run(workflow.name, work_id=work_id, description=description)
        run.current_input = initial_input
        self._run_workflows[run.id] = workflow
        self._track(run)
        self._save(run)
        logger.info("Run %s created: %s for %s", run.id, workflow.name, work_id or "-")
        await self._emit("workflow-started", run, detail=workflow.name)
        return await self._drive(run, workflow)

    def _track(self, run: WorkflowRun) -> None:
        self._runs[run.id] = run
        if run.work_id:
            self._active_by_work[run.work_id] = run.id
        self.budget.start_run(run.id, run.total_cost_usd)

    async def _drive(self, run: WorkflowRun, workflow: Workflow) -> WorkflowRun:
        async with self._slots:
            if run.is_terminal:
                return run
            self._executing += 1
            try:
                run.start()
                self._save(run)
                await self._execute(run, workflow)
            finally:
                self._executing -= 1
        return run

    async def _execute(self, run: WorkflowRun, workflow: Workflow) -> None:
        phases = workflow.phases
        while run.phase_index < len(phases):
            if run.cancel_requested:
                await self._cancel_now(run, "Cancelled at phase boundary")
                return

            index = run.phase_index
            phase = phases[index]
            result = await self._run_phase(run, phase, index)
            if result is None:
                return

            run.current_input = phase.transform(result)
            run.phase_index = index + 1
            self._save(run)
            await self._emit(
                "phase-completed", run, detail=phase.name,
                payload={"phase": phase.name, "agent": phase.agent, "result": result},
            )

            if self._gate_after(phase, index, len(phases)):
                run.await_approval()
                self._save(run)
                logger.info("Run %s awaiting approval after '%s'", run.id, phase.name)
                await self._emit("approval-requested", run, detail=phase.name)
                return

        run.complete()
        logger.info("Run %s completed (%s)", run.id, workflow.name)
        self._finalize(run)
        await self._emit("workflow-completed", run, payload=run)

    def _gate_after(self, phase: Phase, index: int, count: int) -> bool:
        if self.approval_mode == "none":
            return False
        if self.approval_mode == "at-end":
            return index == count - 1
        return phase.approval_required

    # ── Phase attempts ─────────────────────────────────────────────

    async def _run_phase(self, run: WorkflowRun, phase: Phase, index: int) -> AgentResult | None:
        """Attempt a phase up to max_retries + 1 times. None means the run ended."""
        while True:
            if run.cancel_requested:
                await self._cancel_now(run, "Cancelled before retry")
                return None
            try:
                self.budget.check(run.id)
            except BudgetExceeded as e:
                run.fail(str(e))
                logger.warning("Run %s: %s", run.id, e)
                self._finalize(run)
                await self._emit("workflow-failed", run, detail=str(e), payload=run)
                return None

            attempt = run.retry_counts.get(index, 0) + 1
            await self._emit(
                "phase-started", run, detail=phase.name,
                payload={"phase": phase.name, "agent": phase.agent, "attempt": attempt},
            )
            passed, result, reason, hook_failures = await self._attempt(run, phase)

            run.history.append(PhaseRecord(
                phase_index=index,
                phase_name=phase.name,
                agent=phase.agent,
                attempt=attempt,
                result=result,
                passed=passed,
                reason=reason,
                hook_failures=hook_failures,
            ))
            if result is not None:
                run.record_cost(result)
                self.budget.record_spend(run.id, result.cost_usd)

            if passed:
                return result

            logger.info(
                "Run %s phase '%s' attempt %d failed: %s",
                run.id, phase.name, attempt, reason,
            )
            await self._emit(
                "phase-attempt-failed", run, detail=reason,
                payload={"phase": phase.name, "agent": phase.agent, "attempt": attempt},
            )

            if run.retry_counts.get(index, 0) < phase.max_retries:
                run.retry_counts[index] = run.retry_counts.get(index, 0) + 1
                self._save(run)
                continue

            run.fail(f"Phase '{phase.name}' failed after {attempt} attempt(s): {reason}")
            logger.warning("Run %s failed: %s", run.id, run.reason)
            self._finalize(run)
            await self._emit("workflow-failed", run, detail=run.reason, payload=run)
            return None

    async def _attempt(
        self, run: WorkflowRun, phase: Phase,
    ) -> tuple[bool, AgentResult | None, str, list[str]]:
        """One attempt. Returns (passed, result, reason, failed_hooks)."""
        if phase.pre_phase_hooks:
            context = HookContext(
                run=run,
                phase=phase,
                working_directory=self.working_directory,
                previous_results=self._previous_results(run),
            )
            for hook in phase.pre_phase_hooks:
                outcome = await self.hooks.execute(hook, context)
                if not outcome.passed:
                    await self._emit("hook-failed", run, detail=f"{hook}: {outcome.message}")
                    return False, None, f"Hook {hook} failed: {outcome.message}", [hook]

        try:
            result = await self.agents.invoke(phase.agent, run.current_input)
        except Exception as e:
            kind = classify_error(e)
            return False, None, f"Agent {phase.agent} error ({kind}): {e}", []

        if not result.success:
            return False, result, result.error or f"Agent {phase.agent} reported failure", []

        if phase.validation is not None:
            try:
                ok = phase.validation(result)
                if inspect.isawaitable(ok):
                    ok = await ok
            except Exception as e:
                return False, result, f"Validation raised: {e}", []
            if not ok:
                return False, result, f"Validation failed for phase '{phase.name}'", []

        return True, result, "", []

    @staticmethod
    def _previous_results(run: WorkflowRun) -> dict[str, AgentResult]:
        """Latest passing result per agent."""
        results: dict[str, AgentResult] = {}
        for record in run.history:
            if record.passed and record.result is not None:
                results[record.agent] = record.result
        return results

    # ── Decisions ──────────────────────────────────────────────────

    def _resume_target(self, run_id: str) -> tuple[WorkflowRun, Workflow]:
        run = self.get_run(run_id)
        require_status(run, "awaiting-approval")
        workflow = self._run_workflows.get(run.id) or self.get_workflow(run.workflow)
        if run.id not in self._runs:
            # Suspended by another process
            owner = self._active_by_work.get(run.work_id)
            if run.work_id and owner and owner != run.id:
                raise RunConflictError(f"Work {run.work_id} already has active run {owner}")
            self._track(run)
        return run, workflow

    async def approve(self, run_id: str, feedback: str = "") -> WorkflowRun:
        """Continue an awaiting-approval run past its gate."""
        run, workflow = self._resume_target(run_id)
        if feedback and isinstance(run.current_input, dict):
            run.current_input = {**run.current_input, "approval_feedback": feedback}
        run.status = "pending"
        self._save(run)
        logger.info("Run %s approved", run.id)
        await self._emit(
            "approval-received", run, detail="approve",
            payload={"decision": "approve", "feedback": feedback},
        )
        return await self._drive(run, workflow)

    async def reject(self, run_id: str, reason: str = "Rejected") -> WorkflowRun:
        """Escalate an awaiting-approval run."""
        run, _ = self._resume_target(run_id)
        await self._emit(
            "approval-received", run, detail="reject",
            payload={"decision": "reject", "reason": reason},
        )
        run.escalate(reason)
        logger.info("Run %s rejected: %s", run.id, reason)
        self._finalize(run)
        await self._emit("workflow-escalated", run, detail=reason, payload=run)
        return run

    async def apply_pending_decisions(self) -> list[WorkflowRun]:
        """Consume decisions recorded in the store (e.g. by the CLI)."""
        if self.store is None:
            return []
        applied: list[WorkflowRun] = []
        for entry in self.store.pending_decisions():
            run_id = entry.get("run_id", "")
            self.store.pop_decision(run_id)
            try:
                if entry.get("decision") == "approve":
                    applied.append(await self.approve(run_id, entry.get("note", "")))
                else:
                    applied.append(await self.reject(run_id, entry.get("note") or "Rejected"))
            except (RunStateError, UnknownRunError, RunConflictError) as e:
                logger.warning("Dropping decision for %s: %s", run_id, e)
        return applied

    # ── Cancel ─────────────────────────────────────────────────────

    async def cancel(self, run_id: str, reason: str = "Cancelled") -> WorkflowRun:
        """Cancel a run.

        Pending and awaiting-approval runs stop immediately; a running run
        stops at its next phase boundary.
        """
        run = self.get_run(run_id)
        if run.is_terminal:
            raise RunStateError(f"Run {run_id} is already {run.status}")
        if run.id not in self._runs:
            self._track(run)
        if run.status == "running":
            run.cancel_requested = True
            self._save(run)
            logger.info("Run %s cancel requested", run.id)
            return run
        await self._cancel_now(run, reason)
        return run

    async def _cancel_now(self, run: WorkflowRun, reason: str) -> None:
        run.cancel(reason)
        logger.info("Run %s cancelled: %s", run.id, reason)
        self._finalize(run)
        await self._emit("workflow-cancelled", run, detail=reason, payload=run)

    # ── Persistence + events ───────────────────────────────────────

    def _finalize(self, run: WorkflowRun) -> None:
        if run.work_id and self._active_by_work.get(run.work_id) == run.id:
            del self._active_by_work[run.work_id]
        self.budget.finish_run(run.id)
        self._run_workflows.pop(run.id, None)
        if self.store is not None:
            self.store.archive_run(run)

    def _save(self, run: WorkflowRun) -> None:
        if self.store is not None and not run.is_terminal:
            self.store.save_run(run)

    async def _emit(
        self, kind: str, run: WorkflowRun, detail: str = "", payload: Any = None,
    ) -> None:
        if self.store is not None:
            self.store.append_audit(kind, detail, run_id=run.id, work_id=run.work_id)
        await self.event_bus.emit(FixloopEvent(
            kind=kind, detail=detail, work_id=run.work_id, run_id=run.id, payload=payload,
        ))
