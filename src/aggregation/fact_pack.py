"""
Report fact pack and data-quality summary.

A fact pack is the numeric input for a written impact report: coverage,
learning outcomes, instruction quality and data quality for one scope and
period. It is derived from the same snapshot as the dashboard aggregate and
must pass the same privacy scan before leaving the service.
"""

import logging
from collections import Counter, defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from pydantic import Field

from models import (
    AssessmentCycle,
    DomainOutcome,
    EgraDomain,
    FluencyLevel,
    GeoScope,
    ImpactAggregate,
    PeriodInfo,
    RawRecord,
    RecordModule,
    RecordStatus,
    ScopeInfo,
)
from models.base import CamelModel
from models.utils import mean, percent, round_half_up
from scoring.egra import resolve_level
from utils.redaction import ensure_public_safe

from .engine import ImpactAggregationEngine
from .metrics import OBSERVATION_SECTION_LABELS, ScopeSnapshot, visit_quality_scores
from .periods import parse_period


logger = logging.getLogger(__name__)

# Items rated below "Good" on average are reported as gaps
GAP_RATING_CEILING = 3.0
MAX_TOP_GAPS = 3

FLUENCY_ORDER = {level: rank for rank, level in enumerate(FluencyLevel)}

DEFINITIONS = {
    "learnersReached": "Distinct learners with at least one active EGRA row in a reportable assessment.",
    "schoolsImpacted": "Schools with at least one submitted or approved record in the period.",
    "schoolsCoachedVisited": "Schools with at least one submitted or approved coaching visit.",
    "improvement": "Latest cycle mean minus baseline mean, per EGRA domain.",
    "reportingCalendar": "Fiscal year from July to June; terms run January-April, May-August and September-December.",
}


class AssessmentsConducted(CamelModel):
    baseline: int = 0
    progress: int = 0
    endline: int = 0


class CoverageDelivery(CamelModel):
    schools_impacted: int = 0
    schools_coached: int = 0
    teachers_trained: int = 0
    school_leaders_trained: int = 0
    learners_reached: int = 0
    coaching_visits: int = 0
    assessments: AssessmentsConducted = Field(default_factory=AssessmentsConducted)


class LearningOutcomes(CamelModel):
    domains: Dict[str, DomainOutcome] = {}
    reduction_in_non_readers_percent: Optional[float] = None
    proficiency_band_movement_percent: Optional[float] = None


class ObservationGap(CamelModel):
    item: str
    mean_rating: float
    observations: int


class InstructionQuality(CamelModel):
    observation_score: Optional[float] = None
    lessons_observed: int = 0
    top_gaps: List[ObservationGap] = []


class DataQualitySummary(CamelModel):
    completeness_score: float = 0.0
    schools_missing_baseline: int = 0
    schools_missing_endline: int = 0
    outlier_count: int = 0
    duplicate_learners_detected: int = 0
    approved_records: int = 0
    total_records: int = 0
    flagged_record_rate: float = 0.0
    verification_note: str = ""


class ReportFactPack(CamelModel):
    generated_at: datetime
    scope: ScopeInfo
    period: PeriodInfo
    coverage_delivery: CoverageDelivery
    learning_outcomes: LearningOutcomes
    instruction_quality: InstructionQuality
    data_quality: DataQualitySummary
    definitions: Dict[str, str] = Field(default_factory=lambda: dict(DEFINITIONS))

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


def _assessments(snapshot: ScopeSnapshot, cycle: AssessmentCycle) -> List[RawRecord]:
    return [
        record for record in snapshot.by_module(RecordModule.ASSESSMENT)
        if record.assessment_cycle == cycle
    ]


def _latest_cycle_records(snapshot: ScopeSnapshot) -> Tuple[Optional[AssessmentCycle], List[RawRecord]]:
    for cycle in (AssessmentCycle.ENDLINE, AssessmentCycle.PROGRESS):
        records = _assessments(snapshot, cycle)
        if records:
            return cycle, records
    return None, []


def _levels(snapshot: ScopeSnapshot, records: Iterable[RawRecord]) -> Dict[Tuple[str, str], FluencyLevel]:
    """Fluency level per identified learner; the last sitting in date order wins."""
    levels = {}
    for record in records:
        for row in record.payload.egra_learners:
            if not row.is_active or not row.learner_id:
                continue
            level = resolve_level(row)
            if level is not None:
                levels[(snapshot.key(record), row.learner_id.casefold())] = level
    return levels


def _non_reader_share(records: Iterable[RawRecord]) -> Optional[float]:
    levels = [
        resolve_level(row)
        for record in records
        for row in record.payload.egra_learners
        if row.is_active
    ]
    levels = [level for level in levels if level is not None]
    if not levels:
        return None
    return percent(sum(1 for level in levels if level == FluencyLevel.NON_READER), len(levels))


def compute_learning_outcomes(snapshot: ScopeSnapshot, outcomes: Mapping[str, DomainOutcome]) -> LearningOutcomes:
    """
    Domain outcomes plus fluency movement between baseline and the latest cycle.

    Reduction in non-readers is the drop in the non-reader share, in
    percentage points. Band movement is the share of learners seen at both
    baseline and the latest cycle whose fluency level went up.
    """
    baseline = _assessments(snapshot, AssessmentCycle.BASELINE)
    _, latest = _latest_cycle_records(snapshot)

    reduction = None
    baseline_share = _non_reader_share(baseline)
    latest_share = _non_reader_share(latest)
    if baseline_share is not None and latest_share is not None:
        reduction = round_half_up(baseline_share - latest_share, 1)

    movement = None
    before = _levels(snapshot, baseline)
    after = _levels(snapshot, latest)
    matched = sorted(set(before) & set(after))
    if matched:
        moved_up = sum(1 for learner in matched if FLUENCY_ORDER[after[learner]] > FLUENCY_ORDER[before[learner]])
        movement = percent(moved_up, len(matched))

    return LearningOutcomes(
        domains=dict(outcomes),
        reduction_in_non_readers_percent=reduction,
        proficiency_band_movement_percent=movement,
    )


def _gap_label(key: str) -> str:
    for prefix, section in OBSERVATION_SECTION_LABELS.items():
        if key.startswith(prefix):
            item = key[len(prefix):].replace("_", " ").strip()
            return f"{section}: {item}" if item else section
    return key.replace("_", " ")


def compute_instruction_quality(records: Sequence[RawRecord]) -> InstructionQuality:
    visits = [record for record in records if record.module == RecordModule.VISIT]
    quality = visit_quality_scores(visits)

    ratings: Dict[str, List[int]] = defaultdict(list)
    for record in visits:
        for key, rating in record.payload.ratings().items():
            ratings[key].append(rating)

    gaps = []
    for key, values in ratings.items():
        average = sum(values) / len(values)
        if average < GAP_RATING_CEILING:
            gaps.append(ObservationGap(
                item=_gap_label(key),
                mean_rating=round_half_up(average, 2),
                observations=len(values),
            ))
    gaps.sort(key=lambda gap: (gap.mean_rating, -gap.observations, gap.item))

    observation_score = mean(quality)
    return InstructionQuality(
        observation_score=round_half_up(observation_score, 1) if observation_score is not None else None,
        lessons_observed=len(quality),
        top_gaps=gaps[:MAX_TOP_GAPS],
    )


def count_outliers(records: Iterable[RawRecord], maxima: Mapping[str, float]) -> int:
    """Active learner scores above the plausible maximum for their domain."""
    count = 0
    for record in records:
        if record.module != RecordModule.ASSESSMENT:
            continue
        for row in record.payload.egra_learners:
            if not row.is_active:
                continue
            for domain in EgraDomain:
                value = row.score(domain)
                ceiling = maxima.get(domain.value)
                if value is not None and ceiling is not None and value > ceiling:
                    count += 1
    return count


def count_duplicate_learners(snapshot: ScopeSnapshot) -> int:
    """Extra occurrences of a learner id within the same school and cycle."""
    seen: Counter = Counter()
    for record in snapshot.by_module(RecordModule.ASSESSMENT):
        for row in record.payload.egra_learners:
            if row.is_active and row.learner_id:
                seen[(snapshot.key(record), record.assessment_cycle, row.learner_id.casefold())] += 1
    return sum(occurrences - 1 for occurrences in seen.values() if occurrences > 1)


def _verification_note(summary: DataQualitySummary) -> str:
    notes = [f"Data completeness: {summary.completeness_score}%."]
    if summary.schools_missing_baseline:
        notes.append(f"{summary.schools_missing_baseline} schools are missing baseline assessments.")
    if summary.schools_missing_endline:
        notes.append(f"{summary.schools_missing_endline} schools are missing endline assessments.")
    if summary.outlier_count:
        notes.append(f"{summary.outlier_count} outlier scores detected and flagged for review.")
    if summary.duplicate_learners_detected:
        notes.append(f"{summary.duplicate_learners_detected} potential duplicate learner records identified.")
    notes.append(f"{summary.approved_records} of {summary.total_records} records approved by a reviewer.")
    return " ".join(notes)


def compute_data_quality(
    snapshot: ScopeSnapshot,
    required_modules: Sequence[str],
    outlier_maxima: Mapping[str, float],
) -> DataQualitySummary:
    expected = snapshot.directory_keys
    filled = sum(
        len(expected & snapshot.schools_with(RecordModule(module_name)))
        for module_name in required_modules
    )
    cells = len(expected) * len(required_modules)

    flagged = sum(1 for record in snapshot.records if record.payload.is_malformed)
    total = len(snapshot.records)

    summary = DataQualitySummary(
        completeness_score=percent(filled, cells),
        schools_missing_baseline=len(expected - snapshot.schools_with(RecordModule.ASSESSMENT, AssessmentCycle.BASELINE)),
        schools_missing_endline=len(expected - snapshot.schools_with(RecordModule.ASSESSMENT, AssessmentCycle.ENDLINE)),
        outlier_count=count_outliers(snapshot.records, outlier_maxima),
        duplicate_learners_detected=count_duplicate_learners(snapshot),
        approved_records=sum(1 for record in snapshot.records if record.status == RecordStatus.APPROVED),
        total_records=total,
        flagged_record_rate=percent(flagged, total),
    )
    summary.verification_note = _verification_note(summary)
    return summary


def build_fact_pack(
    aggregate: ImpactAggregate,
    snapshot: ScopeSnapshot,
    required_modules: Sequence[str],
    outlier_maxima: Mapping[str, float],
    generated_at: Optional[datetime] = None,
) -> ReportFactPack:
    """
    Assemble the fact pack for an aggregate and the snapshot it came from.

    Raises:
        PrivacyViolationError: if any identifying key reaches the output
    """
    leaders = 0
    for record in snapshot.by_module(RecordModule.TRAINING):
        leaders += record.payload.leaders_and_teachers()[0]

    kpis = aggregate.kpis
    fact_pack = ReportFactPack(
        generated_at=generated_at or datetime.now(timezone.utc),
        scope=aggregate.scope,
        period=aggregate.period,
        coverage_delivery=CoverageDelivery(
            schools_impacted=kpis.schools_supported,
            schools_coached=aggregate.funnel.coached,
            teachers_trained=kpis.teachers_supported_male + kpis.teachers_supported_female,
            school_leaders_trained=leaders,
            learners_reached=kpis.learners_assessed_unique,
            coaching_visits=kpis.coaching_visits_completed,
            assessments=AssessmentsConducted(
                baseline=kpis.assessments_baseline_count,
                progress=kpis.assessments_progress_count,
                endline=kpis.assessments_endline_count,
            ),
        ),
        learning_outcomes=compute_learning_outcomes(snapshot, aggregate.outcomes),
        instruction_quality=compute_instruction_quality(snapshot.records),
        data_quality=compute_data_quality(snapshot, required_modules, outlier_maxima),
    )

    ensure_public_safe(fact_pack.to_json_dict())
    logger.info(
        f"Built fact pack for {aggregate.scope.level.value} {aggregate.scope.id or '(all)'}",
        extra={"total_records": fact_pack.data_quality.total_records},
    )
    return fact_pack


async def report_fact_pack(
    engine: ImpactAggregationEngine,
    scope: GeoScope,
    period: Any = None,
    generated_at: Optional[datetime] = None,
) -> ReportFactPack:
    """Fact pack for a scope and period, cached like the aggregates."""
    period = parse_period(period)
    cache = engine.cache
    if cache is not None:
        cached = await cache.get("factpack", scope.level, scope.id, period)
        if cached is not None:
            return cached.model_copy(deep=True)

    snapshot = await engine.snapshot(scope, period)
    settings = engine.settings
    fact_pack = build_fact_pack(
        engine.build_aggregate(snapshot),
        snapshot,
        settings.required_modules,
        settings.outlier_maxima,
        generated_at=generated_at,
    )

    if cache is not None:
        await cache.set("factpack", scope.level, scope.id, period, fact_pack.model_copy(deep=True))
    return fact_pack
