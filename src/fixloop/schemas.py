"""All Pydantic models — shared shapes for the diagnose → fix → learn loop.

Every record that crosses a component boundary (poller → engine → metrics)
or lands on disk is a Pydantic model. Workflow *definitions* are not here:
they carry callables and live in ``fixloop.workflows``.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


def to_local_naive(value: datetime) -> datetime:
    """Timestamps are naive local time throughout; aware inputs are converted."""
    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


LocalDateTime = Annotated[datetime, AfterValidator(to_local_naive)]


# ── Diagnosis Models ─────────────────────────────────────────────────


class RootCauseCategory(StrEnum):
    """Where a failure originates."""
    CONFIGURATION = "configuration"
    ENVIRONMENT = "environment"
    TIMING = "timing"
    EXTERNAL = "external"
    CODE = "code"
    UNKNOWN = "unknown"


class FixActionType(StrEnum):
    """Kind of action a suggested fix takes."""
    CONFIG = "config"
    CODE = "code"
    WAIT = "wait"
    ESCALATE = "escalate"


class RootCause(BaseModel):
    """The analyzer's best guess at why a check failed."""
    category: RootCauseCategory = RootCauseCategory.UNKNOWN
    description: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class Evidence(BaseModel):
    """A piece of data supporting a diagnosis."""
    source: str
    data: Any = None
    relevance: Literal["primary", "supporting"] = "supporting"


class SuggestedFix(BaseModel):
    """A candidate remediation."""
    description: str
    action_type: FixActionType = FixActionType.CODE
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    automated: bool = False
    steps: list[str] = []


class ValidationResult(BaseModel):
    """Outcome of the check that produced the failure signal."""
    success: bool = False
    resource_sid: str = ""
    resource_type: str = ""
    primary_status: str = ""
    checks: dict[str, Any] = {}
    errors: list[str] = []
    warnings: list[str] = []
    duration_ms: float = 0.0


class Diagnosis(BaseModel):
    """Structured root-cause analysis attached to a unit of work."""
    pattern_id: str
    summary: str
    root_cause: RootCause = Field(default_factory=RootCause)
    evidence: list[Evidence] = []
    suggested_fixes: list[SuggestedFix] = []
    is_known_pattern: bool = False
    previous_occurrences: int = Field(default=0, ge=0)
    validation_result: ValidationResult = Field(default_factory=ValidationResult)
    timestamp: LocalDateTime = Field(default_factory=datetime.now)


class ValidationFailureEvent(BaseModel):
    """Payload of a ``validation-failure`` signal from an external validator."""
    type: str
    result: dict[str, Any] = {}
    diagnosis: Diagnosis | None = None
    timestamp: LocalDateTime = Field(default_factory=datetime.now)


# ── Agent Output ─────────────────────────────────────────────────────


class AgentResult(BaseModel):
    """Output of one phase attempt. Immutable once returned."""
    model_config = ConfigDict(frozen=True)

    agent: str = ""
    success: bool = True
    output: dict[str, Any] = {}
    files_created: list[str] = []
    files_modified: list[str] = []
    commits: list[str] = []
    cost_usd: float = Field(default=0.0, ge=0.0)
    turns_used: int = 0
    error: str = ""


# ── Discovered Work ──────────────────────────────────────────────────


class WorkSource(StrEnum):
    """Where a unit of work came from."""
    VALIDATION_FAILURE = "validation-failure"
    DEBUGGER_ALERT = "debugger-alert"
    USER_REQUEST = "user-request"
    SCHEDULED = "scheduled"
    WEBHOOK_ERROR = "webhook-error"


class WorkPriority(StrEnum):
    """Urgency, most urgent first."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_ORDER: list[WorkPriority] = [
    WorkPriority.CRITICAL, WorkPriority.HIGH, WorkPriority.MEDIUM, WorkPriority.LOW,
]


def priority_rank(priority: WorkPriority | str) -> int:
    """0 for critical, 3 for low."""
    return PRIORITY_ORDER.index(WorkPriority(priority))


SuggestedWorkflow = Literal[
    "bug-fix", "refactor", "new-feature", "investigation", "manual-review",
]


class DiscoveredWork(BaseModel):
    """A queued, prioritized unit of work.

    ``priority`` and ``tier`` are assigned once at discovery; a new
    diagnosis produces a new DiscoveredWork instead of mutating these.
    """
    id: str
    source: WorkSource = WorkSource.VALIDATION_FAILURE
    priority: WorkPriority = Field(frozen=True)
    tier: Literal[1, 2, 3, 4] = Field(frozen=True)
    suggested_workflow: SuggestedWorkflow = "investigation"
    summary: str = ""
    description: str = ""
    diagnosis: Diagnosis | None = None
    resource_sids: list[str] = []
    tags: list[str] = []
    status: Literal["pending", "in-progress", "completed", "escalated"] = "pending"
    discovered_at: LocalDateTime = Field(default_factory=datetime.now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    resolution: str = ""


# ── Workflow Run State ───────────────────────────────────────────────


RunStatus = Literal[
    "pending", "running", "awaiting-approval",
    "completed", "failed", "escalated", "cancelled",
]

TERMINAL_RUN_STATUSES = ("completed", "failed", "escalated", "cancelled")


class PhaseRecord(BaseModel):
    """One attempt at one phase."""
    phase_index: int
    phase_name: str
    agent: str
    attempt: int = 1
    result: AgentResult | None = None
    passed: bool = False
    reason: str = ""
    hook_failures: list[str] = []
    timestamp: LocalDateTime = Field(default_factory=datetime.now)


class WorkflowRun(BaseModel):
    """Mutable execution state for one workflow against one work item."""
    id: str
    workflow: str
    work_id: str = ""
    description: str = ""
    status: RunStatus = "pending"
    phase_index: int = 0
    current_input: Any = None
    history: list[PhaseRecord] = []
    retry_counts: dict[int, int] = {}
    total_cost_usd: float = 0.0
    total_turns: int = 0
    reason: str = ""
    cancel_requested: bool = False
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    @property
    def last_result(self) -> AgentResult | None:
        for record in reversed(self.history):
            if record.result is not None:
                return record.result
        return None

    def attempts_for(self, phase_index: int) -> int:
        return sum(1 for r in self.history if r.phase_index == phase_index)

    def record_cost(self, result: AgentResult) -> None:
        self.total_cost_usd += result.cost_usd
        self.total_turns += result.turns_used

    def _touch(self) -> None:
        self.updated_at = datetime.now()

    def start(self) -> None:
        self.status = "running"
        self._touch()

    def await_approval(self) -> None:
        self.status = "awaiting-approval"
        self._touch()

    def complete(self) -> None:
        self.status = "completed"
        self.reason = ""
        self.completed_at = datetime.now()
        self._touch()

    def fail(self, reason: str) -> None:
        self.status = "failed"
        self.reason = reason
        self.completed_at = datetime.now()
        self._touch()

    def escalate(self, reason: str) -> None:
        self.status = "escalated"
        self.reason = reason
        self.completed_at = datetime.now()
        self._touch()

    def cancel(self, reason: str = "Cancelled") -> None:
        self.status = "cancelled"
        self.reason = reason
        self.completed_at = datetime.now()
        self._touch()


# ── Test Results (pre-phase hooks) ───────────────────────────────────


class TestFailure(BaseModel):
    """Details of a single test failure."""
    __test__ = False  # Prevent pytest collection
    test_id: str
    error_message: str = ""


class TestResults(BaseModel):
    """Aggregated test run results."""
    __test__ = False  # Prevent pytest collection
    total: int = 0
    passed: int = 0
    failed: int = 0
    errors: int = 0
    failure_details: list[TestFailure] = []
    output: str = ""

    @property
    def all_passed(self) -> bool:
        return self.total > 0 and self.failed == 0 and self.errors == 0


# ── Process Metrics ──────────────────────────────────────────────────


class TimingMetrics(BaseModel):
    """Durations of one cycle, in milliseconds."""
    time_to_diagnosis: float = 0.0
    time_to_fix: float = 0.0
    time_to_validation: float = 0.0
    total_cycle_time: float = 0.0
    fix_attempts: int = 0


class QualityMetrics(BaseModel):
    diagnosis_accurate: bool = False
    first_fix_worked: bool = False
    root_cause_matched: bool = False
    successful_diagnosis_confidence: float = 0.0


class LearningMetrics(BaseModel):
    learnings_captured: int = 0
    novel_patterns_discovered: int = 0
    known_patterns_matched: int = 0
    learnings_promoted: int = 0


class ProcessMetrics(BaseModel):
    """One completed diagnose → fix → learn cycle. Immutable."""
    model_config = ConfigDict(frozen=True)

    id: str
    work_id: str
    resource_sid: str = ""
    resource_type: str = ""
    timing: TimingMetrics
    quality: QualityMetrics
    learning: LearningMetrics
    diagnosis: Diagnosis
    resolution: str = ""
    workflow_used: str = ""
    started_at: datetime
    completed_at: datetime


class CategoryMetrics(BaseModel):
    """Aggregates for one root-cause category."""
    count: int = 0
    avg_cycle_time: float = 0.0
    first_fix_success_rate: float = 0.0
    avg_confidence: float = 0.0


class AverageTiming(BaseModel):
    time_to_diagnosis: float = 0.0
    time_to_fix: float = 0.0
    time_to_validation: float = 0.0
    total_cycle_time: float = 0.0
    avg_fix_attempts: float = 0.0


class QualityRates(BaseModel):
    diagnosis_accuracy_rate: float = 0.0
    first_fix_success_rate: float = 0.0
    root_cause_match_rate: float = 0.0
    avg_successful_confidence: float = 0.0


class LearningTotals(BaseModel):
    total_learnings_captured: int = 0
    total_novel_patterns: int = 0
    total_known_patterns_matched: int = 0
    total_learnings_promoted: int = 0


class TimeRange(BaseModel):
    start: datetime | None = None
    end: datetime | None = None


class AggregateMetrics(BaseModel):
    """Aggregates across many cycles. All zeros for an empty set."""
    total_cycles: int = 0
    average_timing: AverageTiming = Field(default_factory=AverageTiming)
    quality_rates: QualityRates = Field(default_factory=QualityRates)
    learning_totals: LearningTotals = Field(default_factory=LearningTotals)
    by_category: dict[str, CategoryMetrics] = {}
    time_range: TimeRange = Field(default_factory=TimeRange)
