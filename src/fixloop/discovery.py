"""Work discovery — pure derivations from a Diagnosis.

Priority, automation tier and suggested workflow are functions of the
diagnosis alone, so the same diagnosis always yields the same ranking.

Priority:
  critical  configuration, confidence > 0.8
  high      code
  medium    external or timing
  low       everything else

Tier (1 = most automatable):
  1  configuration + automated fix (conf > 0.7) + confidence > 0.8
  2  code + automated fix (conf > 0.7) + confidence > 0.6
  3  any suggested fix + confidence > 0.5
  4  otherwise
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any
from uuid import uuid4

from fixloop.schemas import (
    Diagnosis,
    DiscoveredWork,
    Evidence,
    RootCause,
    RootCauseCategory,
    ValidationFailureEvent,
    ValidationResult,
    WorkPriority,
    WorkSource,
    priority_rank,
)

SID_KEYS = ("sid", "resource_sid", "resourceSid", "call_sid", "callSid", "message_sid", "messageSid")

MINIMAL_CONFIDENCE = 0.3


def determine_priority(diagnosis: Diagnosis) -> WorkPriority:
    category = diagnosis.root_cause.category
    if category == RootCauseCategory.CONFIGURATION and diagnosis.root_cause.confidence > 0.8:
        return WorkPriority.CRITICAL
    if category == RootCauseCategory.CODE:
        return WorkPriority.HIGH
    if category in (RootCauseCategory.EXTERNAL, RootCauseCategory.TIMING):
        return WorkPriority.MEDIUM
    return WorkPriority.LOW


def determine_tier(diagnosis: Diagnosis) -> int:
    category = diagnosis.root_cause.category
    confidence = diagnosis.root_cause.confidence
    has_automated_fix = any(
        f.automated and f.confidence > 0.7 for f in diagnosis.suggested_fixes
    )
    if category == RootCauseCategory.CONFIGURATION and has_automated_fix and confidence > 0.8:
        return 1
    if category == RootCauseCategory.CODE and has_automated_fix and confidence > 0.6:
        return 2
    if diagnosis.suggested_fixes and confidence > 0.5:
        return 3
    return 4


def suggest_workflow(diagnosis: Diagnosis) -> str:
    category = diagnosis.root_cause.category
    if category == RootCauseCategory.CONFIGURATION:
        return "bug-fix"
    if category == RootCauseCategory.CODE:
        if any("refactor" in f.description.lower() for f in diagnosis.suggested_fixes):
            return "refactor"
        return "bug-fix"
    if category == RootCauseCategory.EXTERNAL:
        return "manual-review"
    return "investigation"


def meets_priority_threshold(priority: WorkPriority | str, min_priority: WorkPriority | str) -> bool:
    """True when ``priority`` is at least as urgent as ``min_priority`` (inclusive)."""
    return priority_rank(priority) <= priority_rank(min_priority)


def format_work_description(diagnosis: Diagnosis) -> str:
    """Markdown summary for humans reviewing the work item."""
    rc = diagnosis.root_cause
    lines = [
        f"**Root Cause**: {rc.description}",
        f"**Category**: {rc.category}",
        f"**Confidence**: {rc.confidence * 100:.0f}%",
        "",
        "**Evidence**:",
        *(f"- {e.source}: {e.relevance}" for e in diagnosis.evidence),
        "",
        "**Suggested Fixes**:",
        *(
            f"- [{f.action_type}] {f.description} "
            f"(confidence: {f.confidence * 100:.0f}%, automated: {str(f.automated).lower()})"
            for f in diagnosis.suggested_fixes
        ),
    ]
    if diagnosis.is_known_pattern:
        lines += [
            "",
            f"**Note**: This is a known pattern (seen {diagnosis.previous_occurrences} times before)",
        ]
    return "\n".join(lines)


def extract_resource_sids(diagnosis: Diagnosis) -> list[str]:
    """Resource ids from the validation result and evidence, deduplicated in order."""
    sids: list[str] = []
    if diagnosis.validation_result.resource_sid:
        sids.append(diagnosis.validation_result.resource_sid)
    for evidence in diagnosis.evidence:
        if isinstance(evidence.data, dict):
            for key in SID_KEYS:
                value = evidence.data.get(key)
                if isinstance(value, str) and value:
                    sids.append(value)
    return list(dict.fromkeys(sids))


def create_work_from_diagnosis(
    diagnosis: Diagnosis,
    source: WorkSource | str = WorkSource.VALIDATION_FAILURE,
) -> DiscoveredWork:
    """Build a pending DiscoveredWork. Priority and tier are fixed here."""
    workflow = suggest_workflow(diagnosis)
    return DiscoveredWork(
        id=f"work-{diagnosis.pattern_id}-{uuid4().hex[:8]}",
        source=WorkSource(source),
        priority=determine_priority(diagnosis),
        tier=determine_tier(diagnosis),
        suggested_workflow=workflow,
        summary=diagnosis.summary,
        description=format_work_description(diagnosis),
        diagnosis=diagnosis,
        resource_sids=extract_resource_sids(diagnosis),
        tags=[str(diagnosis.root_cause.category), workflow],
    )


def _first(result: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in result and result[key] is not None:
            return result[key]
    return default


def result_resource_sid(result: dict[str, Any]) -> str | None:
    """The resource sid a failure payload refers to, if it names one."""
    sid = _first(result, "resource_sid", "resourceSid")
    return str(sid) if sid else None


def minimal_diagnosis(event: ValidationFailureEvent) -> Diagnosis:
    """Low-confidence diagnosis synthesized from a raw failure payload."""
    result = event.result
    resource_sid = result_resource_sid(result) or "unknown"
    raw_errors = _first(result, "errors", default=[]) or []
    if isinstance(raw_errors, str):
        raw_errors = [raw_errors]
    errors = [str(e) for e in raw_errors]

    validation = ValidationResult(
        success=bool(result.get("success", False)),
        resource_sid=resource_sid,
        resource_type=str(_first(result, "resource_type", "resourceType", default="unknown")),
        primary_status=str(_first(result, "primary_status", "primaryStatus", default="unknown")),
        checks=result.get("checks") if isinstance(result.get("checks"), dict) else {},
        errors=errors,
        warnings=[str(w) for w in (result.get("warnings") or [])],
    )

    return Diagnosis(
        pattern_id=f"PAT-{event.type}-{int(time.time() * 1000):x}",
        summary=f"{event.type} validation failure for {resource_sid}",
        root_cause=RootCause(
            category=RootCauseCategory.UNKNOWN,
            description=errors[0] if errors else "Validation failed with no specific error",
            confidence=MINIMAL_CONFIDENCE,
        ),
        evidence=[Evidence(source=event.type, data=dict(result), relevance="primary")],
        suggested_fixes=[],
        is_known_pattern=False,
        previous_occurrences=0,
        validation_result=validation,
        timestamp=event.timestamp or datetime.now(),
    )


def work_sort_key(work: DiscoveredWork) -> tuple[int, int, datetime]:
    """(priority, tier, discovered_at): smaller is more urgent."""
    return (priority_rank(work.priority), work.tier, work.discovered_at)
