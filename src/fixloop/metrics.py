"""Process metrics — timing, quality and learning per diagnose → fix → learn cycle.

One mutable accumulator per in-progress work id; completing a cycle freezes
it into a ProcessMetrics record (kept up to ``max_stored_cycles``, oldest
dropped first). Cancelling discards the accumulator without a record.

All durations are milliseconds.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable

from fixloop.events import EventBus, FixloopEvent
from fixloop.schemas import (
    AggregateMetrics,
    AverageTiming,
    CategoryMetrics,
    Diagnosis,
    DiscoveredWork,
    LearningMetrics,
    LearningTotals,
    ProcessMetrics,
    QualityMetrics,
    QualityRates,
    TimeRange,
    TimingMetrics,
    to_local_naive,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class UnknownCycleError(KeyError):
    """Raised when a work id has no in-progress cycle."""


class MissingDiagnosisError(ValueError):
    """Raised when a cycle is started for work without a diagnosis."""


@dataclass
class _Cycle:
    work_id: str
    diagnosis: Diagnosis
    started_at: datetime
    diagnosed_at: datetime
    fix_started_at: datetime | None = None
    fix_attempts: int = 0
    learnings_captured: int = 0
    novel_patterns: int = 0
    known_patterns: int = 0


@dataclass
class CycleSnapshot:
    """Read-only view of an in-progress cycle."""
    work_id: str
    started_at: datetime
    fix_attempts: int
    learnings_captured: int = 0


def _ms(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds() * 1000.0


def _average(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _rate(flags: list[bool]) -> float:
    return sum(1 for f in flags if f) / len(flags) if flags else 0.0


class ProcessMetricsCollector:
    """Owns in-progress cycles and completed records."""

    def __init__(
        self,
        max_stored_cycles: int = 1000,
        event_bus: EventBus | None = None,
        clock: Clock = datetime.now,
    ) -> None:
        if max_stored_cycles < 1:
            raise ValueError("max_stored_cycles must be at least 1")
        self.max_stored_cycles = max_stored_cycles
        self.event_bus = event_bus
        self._clock = clock
        self._cycles: dict[str, _Cycle] = {}
        self._completed: list[ProcessMetrics] = []

    def _now(self) -> datetime:
        return to_local_naive(self._clock())

    def _cycle(self, work_id: str) -> _Cycle:
        cycle = self._cycles.get(work_id)
        if cycle is None:
            raise UnknownCycleError(f"No in-progress cycle for {work_id}")
        return cycle

    def _emit(self, kind: str, work_id: str, detail: str = "", payload: object = None) -> None:
        if self.event_bus is not None:
            self.event_bus.emit_nowait(FixloopEvent(
                kind=kind, detail=detail, work_id=work_id, payload=payload,
            ))

    # ── Cycle lifecycle ────────────────────────────────────────────

    def start_cycle(self, work: DiscoveredWork) -> None:
        if work.diagnosis is None:
            raise MissingDiagnosisError(f"Cannot start cycle for {work.id} without a diagnosis")
        if work.id in self._cycles:
            raise ValueError(f"Cycle for {work.id} already in progress")
        diagnosis = work.diagnosis
        self._cycles[work.id] = _Cycle(
            work_id=work.id,
            diagnosis=diagnosis,
            started_at=self._now(),
            diagnosed_at=to_local_naive(diagnosis.timestamp),
            known_patterns=1 if diagnosis.is_known_pattern else 0,
        )
        logger.debug("Started cycle for %s", work.id)
        self._emit("cycle-started", work.id, payload=diagnosis)

    def record_fix_attempt(self, work_id: str) -> int:
        """Count a fix attempt. Returns the attempt number."""
        cycle = self._cycle(work_id)
        if cycle.fix_started_at is None:
            cycle.fix_started_at = self._now()
        cycle.fix_attempts += 1
        logger.debug("Fix attempt %d for %s", cycle.fix_attempts, work_id)
        self._emit("fix-attempted", work_id, payload=cycle.fix_attempts)
        return cycle.fix_attempts

    def record_learning_capture(self, work_id: str, is_novel: bool) -> None:
        cycle = self._cycle(work_id)
        cycle.learnings_captured += 1
        if is_novel:
            cycle.novel_patterns += 1
        self._emit("learning-captured", work_id, payload=is_novel)

    def complete_cycle(
        self,
        work_id: str,
        resolution: str,
        diagnosis_accurate: bool,
        root_cause_matched: bool,
        workflow_used: str,
        learnings_promoted: int = 0,
    ) -> ProcessMetrics:
        cycle = self._cycle(work_id)
        completed_at = self._now()
        fix_or_start = cycle.fix_started_at or cycle.started_at
        validation = cycle.diagnosis.validation_result

        record = ProcessMetrics(
            id=f"metrics-{work_id}-{int(completed_at.timestamp() * 1000)}",
            work_id=work_id,
            resource_sid=validation.resource_sid,
            resource_type=validation.resource_type,
            timing=TimingMetrics(
                time_to_diagnosis=_ms(cycle.diagnosed_at, cycle.started_at),
                time_to_fix=_ms(completed_at, fix_or_start),
                time_to_validation=_ms(completed_at, fix_or_start),
                total_cycle_time=_ms(completed_at, cycle.started_at),
                fix_attempts=cycle.fix_attempts,
            ),
            quality=QualityMetrics(
                diagnosis_accurate=diagnosis_accurate,
                first_fix_worked=cycle.fix_attempts == 1,
                root_cause_matched=root_cause_matched,
                successful_diagnosis_confidence=cycle.diagnosis.root_cause.confidence,
            ),
            learning=LearningMetrics(
                learnings_captured=cycle.learnings_captured,
                novel_patterns_discovered=cycle.novel_patterns,
                known_patterns_matched=cycle.known_patterns,
                learnings_promoted=learnings_promoted,
            ),
            diagnosis=cycle.diagnosis,
            resolution=resolution,
            workflow_used=workflow_used,
            started_at=cycle.started_at,
            completed_at=completed_at,
        )

        self._completed.append(record)
        if len(self._completed) > self.max_stored_cycles:
            self._completed = self._completed[-self.max_stored_cycles:]
        del self._cycles[work_id]

        logger.info(
            "Cycle %s complete in %.0fms (%d fix attempts)",
            work_id, record.timing.total_cycle_time, cycle.fix_attempts,
        )
        self._emit("cycle-completed", work_id, payload=record)
        return record

    def cancel_cycle(self, work_id: str) -> None:
        self._cycle(work_id)
        del self._cycles[work_id]
        logger.debug("Cancelled cycle for %s", work_id)
        self._emit("cycle-cancelled", work_id)

    def has_cycle(self, work_id: str) -> bool:
        return work_id in self._cycles

    # ── Queries ────────────────────────────────────────────────────

    def get_completed_metrics(self) -> list[ProcessMetrics]:
        return list(self._completed)

    def get_metrics_in_range(self, start: datetime, end: datetime) -> list[ProcessMetrics]:
        """Records whose completion falls within [start, end]."""
        return [m for m in self._completed if start <= m.completed_at <= end]

    def get_in_progress_cycles(self) -> list[CycleSnapshot]:
        return [
            CycleSnapshot(
                work_id=c.work_id,
                started_at=c.started_at,
                fix_attempts=c.fix_attempts,
                learnings_captured=c.learnings_captured,
            )
            for c in self._cycles.values()
        ]

    def compute_aggregates(self, records: Iterable[ProcessMetrics] | None = None) -> AggregateMetrics:
        data = list(self._completed if records is None else records)
        return compute_aggregates(data)

    def clear(self) -> None:
        self._cycles.clear()
        self._completed.clear()


def compute_aggregates(data: list[ProcessMetrics]) -> AggregateMetrics:
    """Aggregate a set of records. An empty set gives all zeros.

    ``time_range`` runs from the earliest cycle start to the latest
    completion, so the window covers whole cycles rather than completion
    times alone.
    """
    if not data:
        return AggregateMetrics()

    by_category: dict[str, list[ProcessMetrics]] = defaultdict(list)
    for m in data:
        by_category[str(m.diagnosis.root_cause.category)].append(m)

    return AggregateMetrics(
        total_cycles=len(data),
        average_timing=AverageTiming(
            time_to_diagnosis=_average([m.timing.time_to_diagnosis for m in data]),
            time_to_fix=_average([m.timing.time_to_fix for m in data]),
            time_to_validation=_average([m.timing.time_to_validation for m in data]),
            total_cycle_time=_average([m.timing.total_cycle_time for m in data]),
            avg_fix_attempts=_average([m.timing.fix_attempts for m in data]),
        ),
        quality_rates=QualityRates(
            diagnosis_accuracy_rate=_rate([m.quality.diagnosis_accurate for m in data]),
            first_fix_success_rate=_rate([m.quality.first_fix_worked for m in data]),
            root_cause_match_rate=_rate([m.quality.root_cause_matched for m in data]),
            avg_successful_confidence=_average([
                m.quality.successful_diagnosis_confidence
                for m in data if m.quality.diagnosis_accurate
            ]),
        ),
        learning_totals=LearningTotals(
            total_learnings_captured=sum(m.learning.learnings_captured for m in data),
            total_novel_patterns=sum(m.learning.novel_patterns_discovered for m in data),
            total_known_patterns_matched=sum(m.learning.known_patterns_matched for m in data),
            total_learnings_promoted=sum(m.learning.learnings_promoted for m in data),
        ),
        by_category={
            category: CategoryMetrics(
                count=len(records),
                avg_cycle_time=_average([m.timing.total_cycle_time for m in records]),
                first_fix_success_rate=_rate([m.quality.first_fix_worked for m in records]),
                avg_confidence=_average([
                    m.quality.successful_diagnosis_confidence for m in records
                ]),
            )
            for category, records in by_category.items()
        },
        time_range=TimeRange(
            start=min(m.started_at for m in data),
            end=max(m.completed_at for m in data),
        ),
    )


# ── JSONL export ─────────────────────────────────────────────────────


def write_metrics_jsonl(records: Iterable[ProcessMetrics], path: str | Path, append: bool = True) -> int:
    """Write records one per line. Returns the number written."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    written = 0
    with open(path, "a" if append else "w") as f:
        for record in records:
            f.write(record.model_dump_json() + "\n")
            written += 1
    return written


def read_metrics_jsonl(path: str | Path) -> list[ProcessMetrics]:
    """Read records back. Corrupt lines are skipped with a warning."""
    path = Path(path)
    if not path.exists():
        return []
    records: list[ProcessMetrics] = []
    with open(path) as f:
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(ProcessMetrics.model_validate_json(line))
            except ValueError as e:
                logger.warning("Skipping corrupt metrics line %d in %s: %s", lineno, path, e)
    return records


def format_aggregates(agg: AggregateMetrics) -> str:
    """Human-readable aggregate report."""
    if agg.total_cycles == 0:
        return "No completed cycles."
    t, q, lt = agg.average_timing, agg.quality_rates, agg.learning_totals
    lines = [
        f"Cycles: {agg.total_cycles}",
        f"  Avg cycle time:    {t.total_cycle_time / 1000:.1f}s",
        f"  Avg time to fix:   {t.time_to_fix / 1000:.1f}s",
        f"  Avg fix attempts:  {t.avg_fix_attempts:.2f}",
        f"  Diagnosis accuracy: {q.diagnosis_accuracy_rate:.0%}",
        f"  First-fix success:  {q.first_fix_success_rate:.0%}",
        f"  Root cause match:   {q.root_cause_match_rate:.0%}",
        f"  Learnings: {lt.total_learnings_captured} captured, "
        f"{lt.total_novel_patterns} novel, {lt.total_learnings_promoted} promoted",
    ]
    for category, cm in sorted(agg.by_category.items()):
        lines.append(
            f"  [{category}] {cm.count} cycles, {cm.avg_cycle_time / 1000:.1f}s avg, "
            f"{cm.first_fix_success_rate:.0%} first-fix"
        )
    return "\n".join(lines)
