"""CLI entry points for fixloop.

Commands:
  fixloop workflows                          List the workflow catalog
  fixloop runs <state-dir> [--all]           List runs (active, or all with --all)
  fixloop show <state-dir> <run-id>          Show one run with its phase history
  fixloop approve <state-dir> <run-id>       Approve a run awaiting approval
  fixloop reject <state-dir> <run-id>        Reject (escalate) a run awaiting approval
  fixloop metrics <metrics.jsonl> [--json]   Aggregate exported process metrics

approve/reject record a decision in the state directory; the running
process applies it on its next poller tick.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from fixloop.lifecycle import RunStateError, UnknownRunError, format_run_summary
from fixloop.metrics import compute_aggregates, format_aggregates, read_metrics_jsonl
from fixloop.store import RunStore
from fixloop.workflows import WORKFLOWS, list_workflows

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="fixloop",
        description="Diagnose, fix and learn from validation failures",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable verbose logging",
    )
    subparsers = parser.add_subparsers(dest="command")

    # workflows
    subparsers.add_parser("workflows", help="List available workflows")

    # runs
    p_runs = subparsers.add_parser("runs", help="List workflow runs")
    p_runs.add_argument("state_dir", help="State directory path")
    p_runs.add_argument("--all", action="store_true", help="Include archived (terminal) runs")

    # show
    p_show = subparsers.add_parser("show", help="Show one run")
    p_show.add_argument("state_dir", help="State directory path")
    p_show.add_argument("run_id", help="Run id")

    # approve
    p_approve = subparsers.add_parser("approve", help="Approve a run awaiting approval")
    p_approve.add_argument("state_dir", help="State directory path")
    p_approve.add_argument("run_id", help="Run id")
    p_approve.add_argument("--feedback", default="", help="Feedback passed to the next phase")

    # reject
    p_reject = subparsers.add_parser("reject", help="Reject a run awaiting approval")
    p_reject.add_argument("state_dir", help="State directory path")
    p_reject.add_argument("run_id", help="Run id")
    p_reject.add_argument("--reason", required=True, help="Why the run is rejected")

    # metrics
    p_metrics = subparsers.add_parser("metrics", help="Aggregate exported process metrics")
    p_metrics.add_argument("path", help="Metrics JSONL file")
    p_metrics.add_argument("--json", action="store_true", help="Print aggregates as JSON")

    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")
    else:
        logging.basicConfig(level=logging.INFO, format="%(message)s")

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "workflows":
        cmd_workflows(args)
    elif args.command == "runs":
        cmd_runs(args)
    elif args.command == "show":
        cmd_show(args)
    elif args.command == "approve":
        cmd_decide(args, "approve", args.feedback)
    elif args.command == "reject":
        cmd_decide(args, "reject", args.reason)
    elif args.command == "metrics":
        cmd_metrics(args)


def cmd_workflows(args: argparse.Namespace) -> None:
    """List the workflow catalog."""
    for workflow in list_workflows():
        print(f"{workflow.name}: {workflow.description}")
        for i, phase in enumerate(workflow.phases, 1):
            flags = []
            if phase.approval_required:
                flags.append("approval")
            if phase.max_retries:
                flags.append(f"retries={phase.max_retries}")
            if phase.pre_phase_hooks:
                flags.append("hooks=" + ",".join(phase.pre_phase_hooks))
            suffix = f"  [{'; '.join(flags)}]" if flags else ""
            print(f"  {i}. {phase.name} ({phase.agent}){suffix}")


def _phase_names(workflow_name: str) -> list[str] | None:
    workflow = WORKFLOWS.get(workflow_name)
    return [p.name for p in workflow.phases] if workflow else None


def cmd_runs(args: argparse.Namespace) -> None:
    """List runs in a state directory."""
    store = RunStore(args.state_dir)
    runs = store.list_runs(include_archived=args.all)
    if not runs:
        print("No runs.")
        return
    for run in runs:
        print(format_run_summary(run, _phase_names(run.workflow)))


def cmd_show(args: argparse.Namespace) -> None:
    """Show a run and its attempt history."""
    store = RunStore(args.state_dir)
    try:
        run = store.load_run(args.run_id)
    except UnknownRunError:
        print(f"Unknown run: {args.run_id}")
        sys.exit(1)

    print(format_run_summary(run, _phase_names(run.workflow)))
    if run.description:
        print(f"  Description: {run.description}")
    for record in run.history:
        mark = "ok" if record.passed else "FAILED"
        line = f"    {record.phase_index + 1}. {record.phase_name} #{record.attempt} {mark}"
        if record.reason:
            line += f": {record.reason}"
        print(line)


def cmd_decide(args: argparse.Namespace, decision: str, note: str) -> None:
    """Record an approve/reject decision for the running process."""
    store = RunStore(args.state_dir)
    try:
        store.record_decision(args.run_id, decision, note)
    except UnknownRunError:
        print(f"Unknown run: {args.run_id}")
        sys.exit(1)
    except RunStateError as e:
        print(str(e))
        sys.exit(1)
    print(f"Recorded {decision} for run {args.run_id}.")


def cmd_metrics(args: argparse.Namespace) -> None:
    """Aggregate a metrics export."""
    records = read_metrics_jsonl(args.path)
    aggregates = compute_aggregates(records)
    if args.json:
        print(json.dumps(aggregates.model_dump(mode="json"), indent=2))
    else:
        print(format_aggregates(aggregates))


if __name__ == "__main__":
    main()
