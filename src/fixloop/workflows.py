"""Workflow definitions — ordered, immutable phase pipelines.

A Workflow is built once at import time and never mutated. Each Phase binds
one agent capability to a validation predicate, an optional approval gate,
pre-phase hooks and a retry allowance.

Catalog:
  bug-fix      architect → test-gen → dev → review → qa
  new-feature  architect → spec → test-gen → dev → qa → review → docs
  refactor     qa → architect → dev → review → qa
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from fixloop.schemas import AgentResult

Validation = Callable[[AgentResult], "bool | Awaitable[bool]"]
InputTransform = Callable[[AgentResult], Any]


class ConfigurationError(ValueError):
    """Raised for invalid workflows, agents, hooks or config values."""


def identity_input(result: AgentResult) -> dict[str, Any]:
    """Default phase transform: pass the agent output through unchanged."""
    return dict(result.output)


@dataclass(frozen=True)
class Phase:
    """One step of a Workflow, bound to one agent capability."""
    agent: str
    name: str
    approval_required: bool = False
    validation: Validation | None = None
    next_phase_input: InputTransform | None = None
    pre_phase_hooks: tuple[str, ...] = ()
    max_retries: int = 0

    def transform(self, result: AgentResult) -> Any:
        fn = self.next_phase_input or identity_input
        return fn(result)


@dataclass(frozen=True)
class Workflow:
    """Ordered sequence of phases defining one end-to-end cycle type."""
    name: str
    description: str = ""
    phases: tuple[Phase, ...] = field(default_factory=tuple)

    @property
    def agents(self) -> list[str]:
        return [p.agent for p in self.phases]

    @property
    def hooks(self) -> list[str]:
        names: list[str] = []
        for phase in self.phases:
            for hook in phase.pre_phase_hooks:
                if hook not in names:
                    names.append(hook)
        return names


def _pick(*keys: str) -> InputTransform:
    """Build a transform that copies selected output keys."""
    def transform(result: AgentResult) -> dict[str, Any]:
        return {k: result.output.get(k) for k in keys}
    return transform


def _side_effects(*keys: str) -> InputTransform:
    """Like _pick, plus the agent's file and commit side effects."""
    def transform(result: AgentResult) -> dict[str, Any]:
        out = {k: result.output.get(k) for k in keys}
        out["files_created"] = list(result.files_created)
        out["files_modified"] = list(result.files_modified)
        out["commits"] = list(result.commits)
        return out
    return transform


def _verdict_not_failed(result: AgentResult) -> bool:
    return result.output.get("verdict") != "FAILED"


def _all_tests_passing(result: AgentResult) -> bool:
    return result.output.get("all_tests_passing") is True


def _regression_tests_fail(result: AgentResult) -> bool:
    return (
        (result.output.get("tests_created") or 0) > 0
        and result.output.get("all_tests_failing") is True
    )


# ── Bug Fix ──────────────────────────────────────────────────────────

BUG_FIX = Workflow(
    name="bug-fix",
    description="Diagnosis and fix pipeline for existing bugs",
    phases=(
        Phase(
            agent="architect",
            name="Root Cause Diagnosis",
            approval_required=True,
            validation=lambda r: (
                r.output.get("root_cause") is not None
                and r.output.get("suggested_fix") is not None
            ),
            next_phase_input=_pick(
                "diagnosis", "root_cause", "affected_files",
                "suggested_fix", "risk_assessment", "reproduction_steps",
            ),
        ),
        Phase(
            agent="test-gen",
            name="Regression Tests",
            validation=lambda r: (
                _regression_tests_fail(r) and r.output.get("reproduced_bug") is True
            ),
            next_phase_input=_pick("test_files", "tests_created", "reproduced_bug"),
        ),
        Phase(
            agent="dev",
            name="Bug Fix Implementation",
            pre_phase_hooks=("tdd-enforcement",),
            max_retries=2,
            validation=_all_tests_passing,
            next_phase_input=_side_effects("test_run_output", "fix_description"),
        ),
        Phase(
            agent="review",
            name="Fix Review",
            approval_required=True,
            validation=lambda r: (
                r.output.get("verdict") == "APPROVED"
                and r.output.get("is_minimal_fix") is True
            ),
            next_phase_input=_pick("verdict", "summary", "issues", "is_minimal_fix"),
        ),
        Phase(
            agent="qa",
            name="Regression Check",
            validation=lambda r: (
                _verdict_not_failed(r) and r.output.get("no_regressions") is True
            ),
            next_phase_input=_pick(
                "verdict", "summary", "tests_run", "tests_passed",
                "tests_failed", "no_regressions", "coverage_percent",
            ),
        ),
    ),
)


# ── New Feature ──────────────────────────────────────────────────────

NEW_FEATURE = Workflow(
    name="new-feature",
    description="Full TDD pipeline for new features",
    phases=(
        Phase(
            agent="architect",
            name="Design Review",
            approval_required=True,
            validation=lambda r: r.output.get("approved") is True,
            next_phase_input=_pick(
                "design_notes", "suggested_pattern",
                "files_to_create", "files_to_modify",
            ),
        ),
        Phase(
            agent="spec",
            name="Specification",
            approval_required=True,
            validation=lambda r: (
                bool(r.output.get("function_specs"))
                and r.output.get("test_scenarios") is not None
            ),
            next_phase_input=lambda r: {
                "specification": dict(r.output),
                "function_specs": r.output.get("function_specs"),
                "test_scenarios": r.output.get("test_scenarios"),
            },
        ),
        Phase(
            agent="test-gen",
            name="TDD Red Phase",
            validation=_regression_tests_fail,
            next_phase_input=_pick("test_files", "tests_created"),
        ),
        Phase(
            agent="dev",
            name="TDD Green Phase",
            pre_phase_hooks=("tdd-enforcement",),
            validation=_all_tests_passing,
            next_phase_input=_side_effects("test_run_output"),
        ),
        Phase(
            agent="qa",
            name="Quality Assurance",
            pre_phase_hooks=("coverage-threshold",),
            validation=_verdict_not_failed,
            next_phase_input=_pick(
                "verdict", "summary", "tests_run", "tests_passed", "tests_failed",
                "coverage_percent", "coverage_gaps", "security_issues",
                "recommendations",
            ),
        ),
        Phase(
            agent="review",
            name="Code Review",
            approval_required=True,
            validation=lambda r: r.output.get("verdict") == "APPROVED",
            next_phase_input=_pick("verdict", "summary", "issues"),
        ),
        Phase(
            agent="docs",
            name="Documentation",
            validation=lambda r: r.output.get("docs_verified") is True,
        ),
    ),
)


# ── Refactor ─────────────────────────────────────────────────────────

REFACTOR = Workflow(
    name="refactor",
    description="Safe refactoring pipeline that preserves behavior",
    phases=(
        Phase(
            agent="qa",
            name="Test Baseline",
            pre_phase_hooks=("test-passing-enforcement",),
            validation=lambda r: (
                _verdict_not_failed(r) and r.output.get("tests_failed") == 0
            ),
            next_phase_input=_pick(
                "verdict", "tests_run", "tests_passed", "coverage_percent",
            ),
        ),
        Phase(
            agent="architect",
            name="Refactor Review",
            approval_required=True,
            validation=lambda r: (
                r.output.get("approved") is True
                and r.output.get("refactoring_plan") is not None
            ),
            next_phase_input=_pick(
                "rationale", "scope", "affected_files",
                "expected_improvements", "risks", "refactoring_plan",
            ),
        ),
        Phase(
            agent="dev",
            name="Refactor Implementation",
            pre_phase_hooks=("test-passing-enforcement",),
            validation=_all_tests_passing,
            next_phase_input=_side_effects("test_run_output", "changes_description"),
        ),
        Phase(
            agent="review",
            name="Code Quality Review",
            approval_required=True,
            validation=lambda r: (
                r.output.get("verdict") == "APPROVED"
                and r.output.get("improvements_validated") is True
            ),
            next_phase_input=_pick(
                "verdict", "summary", "improvements_validated", "issues",
            ),
        ),
        Phase(
            agent="qa",
            name="Final Verification",
            pre_phase_hooks=("test-passing-enforcement",),
            validation=lambda r: (
                _verdict_not_failed(r)
                and r.output.get("tests_failed") == 0
                and r.output.get("no_regressions") is True
            ),
        ),
    ),
)


WORKFLOWS: dict[str, Workflow] = {
    w.name: w for w in (BUG_FIX, NEW_FEATURE, REFACTOR)
}


def get_workflow(name: str) -> Workflow:
    """Look up a catalog workflow. Raises ConfigurationError if unknown or empty."""
    workflow = WORKFLOWS.get(name)
    if workflow is None:
        raise ConfigurationError(
            f"Unknown workflow: {name}. Available: {', '.join(sorted(WORKFLOWS))}"
        )
    if not workflow.phases:
        raise ConfigurationError(f"Workflow {name} has no phases")
    return workflow


def list_workflows() -> list[Workflow]:
    return [WORKFLOWS[name] for name in sorted(WORKFLOWS)]
