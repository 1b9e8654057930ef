"""Tests for work discovery — priority, tier, workflow and minimal diagnosis."""

from __future__ import annotations

from datetime import datetime

import pytest

from fixloop.discovery import (
    MINIMAL_CONFIDENCE,
    create_work_from_diagnosis,
    determine_priority,
    determine_tier,
    extract_resource_sids,
    format_work_description,
    meets_priority_threshold,
    minimal_diagnosis,
    suggest_workflow,
)
from fixloop.schemas import (
    Diagnosis,
    Evidence,
    RootCause,
    SuggestedFix,
    ValidationFailureEvent,
    ValidationResult,
)


def _diagnosis(category="code", confidence=0.9, fixes=(), **kwargs) -> Diagnosis:
    return Diagnosis(
        pattern_id="PAT-1",
        summary="Webhook returned 500",
        root_cause=RootCause(category=category, description="handler crash", confidence=confidence),
        suggested_fixes=list(fixes),
        **kwargs,
    )


AUTO_FIX = SuggestedFix(description="Patch handler", action_type="code", confidence=0.8, automated=True)
MANUAL_FIX = SuggestedFix(description="Ask support", action_type="escalate", confidence=0.9)


class TestDeterminePriority:
    def test_confident_configuration_is_critical(self):
        assert determine_priority(_diagnosis("configuration", 0.81)) == "critical"

    def test_unsure_configuration_is_low(self):
        assert determine_priority(_diagnosis("configuration", 0.8)) == "low"

    def test_code_is_high(self):
        assert determine_priority(_diagnosis("code", 0.1)) == "high"

    @pytest.mark.parametrize("category", ["external", "timing"])
    def test_external_and_timing_medium(self, category):
        assert determine_priority(_diagnosis(category)) == "medium"

    @pytest.mark.parametrize("category", ["environment", "unknown"])
    def test_rest_low(self, category):
        assert determine_priority(_diagnosis(category)) == "low"


class TestDetermineTier:
    def test_tier_1(self):
        assert determine_tier(_diagnosis("configuration", 0.9, [AUTO_FIX])) == 1

    def test_tier_2(self):
        assert determine_tier(_diagnosis("code", 0.7, [AUTO_FIX])) == 2

    def test_configuration_below_tier_1_falls_to_3(self):
        assert determine_tier(_diagnosis("configuration", 0.75, [AUTO_FIX])) == 3

    def test_low_confidence_automated_fix_not_enough(self):
        weak = SuggestedFix(description="maybe", confidence=0.7, automated=True)
        assert determine_tier(_diagnosis("code", 0.9, [weak])) == 3

    def test_tier_3_any_fix(self):
        assert determine_tier(_diagnosis("external", 0.6, [MANUAL_FIX])) == 3

    def test_tier_4(self):
        assert determine_tier(_diagnosis("code", 0.5, [MANUAL_FIX])) == 4
        assert determine_tier(_diagnosis("code", 0.9)) == 4


class TestSuggestWorkflow:
    def test_configuration(self):
        assert suggest_workflow(_diagnosis("configuration")) == "bug-fix"

    def test_code(self):
        assert suggest_workflow(_diagnosis("code", fixes=[AUTO_FIX])) == "bug-fix"

    def test_code_refactor(self):
        fix = SuggestedFix(description="Refactor the retry loop")
        assert suggest_workflow(_diagnosis("code", fixes=[fix])) == "refactor"

    def test_external(self):
        assert suggest_workflow(_diagnosis("external")) == "manual-review"

    def test_other(self):
        assert suggest_workflow(_diagnosis("timing")) == "investigation"


class TestMeetsPriorityThreshold:
    def test_inclusive(self):
        assert meets_priority_threshold("medium", "medium")

    def test_more_urgent_passes(self):
        assert meets_priority_threshold("critical", "high")

    def test_less_urgent_fails(self):
        assert not meets_priority_threshold("low", "medium")


class TestFormatWorkDescription:
    def test_contains_sections(self):
        d = _diagnosis(
            "code", 0.85, [AUTO_FIX],
            evidence=[Evidence(source="logs", data={}, relevance="primary")],
            is_known_pattern=True,
            previous_occurrences=3,
        )
        text = format_work_description(d)
        assert "**Root Cause**: handler crash" in text
        assert "**Confidence**: 85%" in text
        assert "- logs: primary" in text
        assert "- [code] Patch handler (confidence: 80%, automated: true)" in text
        assert "seen 3 times before" in text

    def test_unknown_pattern_has_no_note(self):
        assert "known pattern" not in format_work_description(_diagnosis())


class TestExtractResourceSids:
    def test_dedupes_in_order(self):
        d = _diagnosis(
            validation_result=ValidationResult(resource_sid="CA1"),
            evidence=[
                Evidence(source="a", data={"callSid": "CA1", "message_sid": "SM2"}),
                Evidence(source="b", data={"sid": "PN3"}),
                Evidence(source="c", data="not a dict"),
            ],
        )
        assert extract_resource_sids(d) == ["CA1", "SM2", "PN3"]

    def test_empty(self):
        assert extract_resource_sids(_diagnosis()) == []


class TestCreateWorkFromDiagnosis:
    def test_fields(self):
        d = _diagnosis("code", 0.9, [AUTO_FIX])
        work = create_work_from_diagnosis(d, "validation-failure")
        assert work.id.startswith("work-PAT-1-")
        assert work.priority == "high"
        assert work.tier == 2
        assert work.suggested_workflow == "bug-fix"
        assert work.status == "pending"
        assert work.tags == ["code", "bug-fix"]
        assert work.diagnosis == d

    def test_unique_ids(self):
        d = _diagnosis()
        assert create_work_from_diagnosis(d).id != create_work_from_diagnosis(d).id

    def test_deterministic_ranking(self):
        d = _diagnosis("configuration", 0.95, [AUTO_FIX])
        a, b = create_work_from_diagnosis(d), create_work_from_diagnosis(d)
        assert (a.priority, a.tier, a.suggested_workflow) == (b.priority, b.tier, b.suggested_workflow)


class TestMinimalDiagnosis:
    def test_from_payload(self):
        event = ValidationFailureEvent(
            type="call",
            result={"resourceSid": "CA123", "errors": ["timeout"], "success": False},
            timestamp=datetime(2026, 1, 1),
        )
        d = minimal_diagnosis(event)
        assert d.root_cause.category == "unknown"
        assert d.root_cause.confidence == MINIMAL_CONFIDENCE == 0.3
        assert d.root_cause.description == "timeout"
        assert d.summary == "call validation failure for CA123"
        assert d.pattern_id.startswith("PAT-call-")
        assert not d.is_known_pattern
        assert d.suggested_fixes == []
        assert d.evidence[0].relevance == "primary"
        assert d.validation_result.resource_sid == "CA123"
        assert d.timestamp == datetime(2026, 1, 1)

    def test_no_errors(self):
        d = minimal_diagnosis(ValidationFailureEvent(type="message", result={}))
        assert d.root_cause.description == "Validation failed with no specific error"
        assert d.summary == "message validation failure for unknown"

    def test_string_errors(self):
        d = minimal_diagnosis(ValidationFailureEvent(type="x", result={"errors": "bad config"}))
        assert d.root_cause.description == "bad config"

    def test_minimal_ranks_low_tier_4(self):
        work = create_work_from_diagnosis(minimal_diagnosis(ValidationFailureEvent(type="x")))
        assert (work.priority, work.tier, work.suggested_workflow) == ("low", 4, "investigation")
