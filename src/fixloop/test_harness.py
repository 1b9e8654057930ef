"""Project test execution for pre-phase hooks.

Runs the configured test command in the working directory and parses
pytest output into TestResults. Coverage runs parse the pytest-cov
``TOTAL`` line.
"""

from __future__ import annotations

import asyncio
import logging
import re

from fixloop.schemas import TestFailure, TestResults

logger = logging.getLogger(__name__)

DEFAULT_TEST_COMMAND = "python -m pytest -v --tb=short --no-header"
DEFAULT_COVERAGE_COMMAND = "python -m pytest -q --cov --cov-report=term"


async def _run_shell(command: str, cwd: str, timeout: int) -> tuple[str, str]:
    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd or None,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return stdout.decode(errors="replace"), stderr.decode(errors="replace")


async def run_test_command(
    command: str = DEFAULT_TEST_COMMAND,
    cwd: str = ".",
    timeout: int = 120,
) -> TestResults:
    """Run a test command and parse its output.

    Timeouts and launch failures come back as a single error, never raise.
    """
    logger.debug("Running tests: %s (cwd=%s)", command, cwd)
    try:
        stdout, stderr = await _run_shell(command, cwd, timeout)
    except asyncio.TimeoutError:
        return TestResults(
            total=0, passed=0, failed=0, errors=1,
            failure_details=[TestFailure(
                test_id="timeout",
                error_message=f"Tests timed out after {timeout}s",
            )],
        )
    except OSError as e:
        return TestResults(
            total=0, passed=0, failed=0, errors=1,
            failure_details=[TestFailure(test_id="execution", error_message=str(e))],
        )
    return parse_pytest_output(stdout, stderr)


def parse_pytest_output(stdout: str, stderr: str = "") -> TestResults:
    """Parse pytest verbose output into TestResults."""
    total = 0
    passed = 0
    failed = 0
    errors = 0
    failures: list[TestFailure] = []

    for line in stdout.splitlines():
        if " PASSED" in line:
            total += 1
            passed += 1
        elif " FAILED" in line:
            total += 1
            failed += 1
            failures.append(TestFailure(
                test_id=line.split(" FAILED")[0].strip(),
                error_message="FAILED",
            ))
        elif " ERROR" in line:
            total += 1
            errors += 1
            failures.append(TestFailure(
                test_id=line.split(" ERROR")[0].strip(),
                error_message="ERROR",
            ))

    # Fallback: summary line "X failed, Y passed, Z error"
    if total == 0:
        counts = {
            kind: int(n)
            for n, kind in re.findall(r"(\d+) (passed|failed|errors?)\b", stdout)
        }
        passed = counts.get("passed", 0)
        failed = counts.get("failed", 0)
        errors = counts.get("error", 0) + counts.get("errors", 0)
        total = passed + failed + errors

    combined = stdout + stderr
    if total == 0 and ("ERROR" in combined or "error" in combined):
        errors = 1
        total = 1
        failures.append(TestFailure(
            test_id="collection",
            error_message="Failed to collect tests",
        ))

    return TestResults(
        total=total,
        passed=passed,
        failed=failed,
        errors=errors,
        failure_details=failures,
        output=combined[-4000:],
    )


async def run_coverage_command(
    command: str = DEFAULT_COVERAGE_COMMAND,
    cwd: str = ".",
    timeout: int = 180,
) -> float | None:
    """Run a coverage command. Returns total percent, or None if unparseable."""
    logger.debug("Running coverage: %s (cwd=%s)", command, cwd)
    try:
        stdout, stderr = await _run_shell(command, cwd, timeout)
    except (asyncio.TimeoutError, OSError) as e:
        logger.warning("Coverage run failed: %s", e)
        return None
    return parse_coverage_percent(stdout + stderr)


def parse_coverage_percent(output: str) -> float | None:
    """Pull the total from a pytest-cov report (``TOTAL  120  12  90%``)."""
    match = re.search(r"^TOTAL\s+.*?(\d+(?:\.\d+)?)%\s*$", output, re.MULTILINE)
    if match:
        return float(match.group(1))
    return None
