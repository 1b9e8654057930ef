"""Pre-phase hooks — named precondition checks run before an agent.

A hook failure aborts the phase attempt without invoking the agent and is
treated like a failed validation for retry purposes.

Built-ins:
  tdd-enforcement           regression tests exist and currently FAIL
  test-passing-enforcement  the project's tests all PASS
  coverage-threshold        measured coverage ≥ threshold (default 80%)
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from fixloop.schemas import AgentResult, TestResults, WorkflowRun
from fixloop.test_harness import (
    DEFAULT_COVERAGE_COMMAND,
    DEFAULT_TEST_COMMAND,
    run_coverage_command,
    run_test_command,
)

logger = logging.getLogger(__name__)

DEFAULT_COVERAGE_THRESHOLD = 80.0


@dataclass
class HookContext:
    """What a hook can see: the run, the phase, and earlier agent results."""
    run: WorkflowRun
    phase: Any
    working_directory: str = "."
    previous_results: dict[str, AgentResult] = field(default_factory=dict)


@dataclass
class HookResult:
    passed: bool
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


HookFn = Callable[[HookContext], "HookResult | Awaitable[HookResult]"]
TestRunner = Callable[[str], Awaitable[TestResults]]
CoverageRunner = Callable[[str], Awaitable["float | None"]]


class HookRegistry:
    """Named hooks. ``execute`` never raises."""

    def __init__(self) -> None:
        self._hooks: dict[str, HookFn] = {}

    def register(self, name: str, fn: HookFn) -> None:
        self._hooks[name] = fn

    def has(self, name: str) -> bool:
        return name in self._hooks

    def names(self) -> list[str]:
        return sorted(self._hooks)

    async def execute(self, name: str, context: HookContext) -> HookResult:
        fn = self._hooks.get(name)
        if fn is None:
            return HookResult(passed=False, message=f"Unknown hook: {name}")
        try:
            result = fn(context)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.exception("Hook %s raised", name)
            return HookResult(passed=False, message=f"Hook {name} raised: {e}")
        return result


# ── Built-in hooks ───────────────────────────────────────────────────


def create_tdd_enforcement(runner: TestRunner) -> HookFn:
    """Tests must exist and fail before the dev agent runs (red phase)."""

    async def tdd_enforcement(context: HookContext) -> HookResult:
        test_gen = context.previous_results.get("test-gen")
        if test_gen is None:
            return HookResult(
                passed=False,
                message="TDD violation: test-gen phase has not run",
            )
        if not test_gen.success:
            return HookResult(
                passed=False,
                message="TDD violation: test-gen phase failed",
            )
        if not test_gen.output.get("tests_created"):
            return HookResult(
                passed=False,
                message="TDD violation: no tests were created in test-gen phase",
            )

        results = await runner(context.working_directory)
        data = {"total": results.total, "passed": results.passed, "failed": results.failed}
        if results.total == 0:
            return HookResult(passed=False, message="TDD violation: no tests found", data=data)
        if results.failed + results.errors == 0:
            return HookResult(
                passed=False,
                message=f"TDD violation: all {results.total} tests pass, nothing to fix",
                data=data,
            )
        return HookResult(
            passed=True,
            message=f"Red phase confirmed: {results.failed + results.errors}/{results.total} failing",
            data=data,
        )

    return tdd_enforcement


def create_test_passing_enforcement(runner: TestRunner) -> HookFn:
    """All project tests must pass."""

    async def test_passing_enforcement(context: HookContext) -> HookResult:
        results = await runner(context.working_directory)
        data = {"total": results.total, "passed": results.passed, "failed": results.failed}
        if results.total == 0:
            return HookResult(passed=False, message="No tests found", data=data)
        if not results.all_passed:
            names = ", ".join(f.test_id for f in results.failure_details[:5])
            return HookResult(
                passed=False,
                message=f"{results.failed + results.errors}/{results.total} tests failing: {names}",
                data=data,
            )
        return HookResult(passed=True, message=f"All {results.total} tests pass", data=data)

    return test_passing_enforcement


def create_coverage_threshold(
    runner: CoverageRunner, threshold: float = DEFAULT_COVERAGE_THRESHOLD,
) -> HookFn:
    """Measured coverage must be at least ``threshold`` percent."""

    async def coverage_threshold(context: HookContext) -> HookResult:
        percent = await runner(context.working_directory)
        if percent is None:
            return HookResult(passed=False, message="Could not measure coverage")
        data = {"coverage_percent": percent, "threshold": threshold}
        if percent < threshold:
            return HookResult(
                passed=False,
                message=f"Coverage {percent:.1f}% below threshold {threshold:.1f}%",
                data=data,
            )
        return HookResult(passed=True, message=f"Coverage {percent:.1f}%", data=data)

    return coverage_threshold


def default_hooks(
    test_command: str = DEFAULT_TEST_COMMAND,
    coverage_command: str = DEFAULT_COVERAGE_COMMAND,
    coverage_threshold: float = DEFAULT_COVERAGE_THRESHOLD,
    timeout: int = 120,
) -> HookRegistry:
    """Registry preloaded with the built-in hooks, backed by real subprocesses."""

    async def run_tests(cwd: str) -> TestResults:
        return await run_test_command(test_command, cwd, timeout)

    async def run_coverage(cwd: str) -> float | None:
        return await run_coverage_command(coverage_command, cwd, timeout)

    registry = HookRegistry()
    registry.register("tdd-enforcement", create_tdd_enforcement(run_tests))
    registry.register("test-passing-enforcement", create_test_passing_enforcement(run_tests))
    registry.register(
        "coverage-threshold", create_coverage_threshold(run_coverage, coverage_threshold),
    )
    return registry
