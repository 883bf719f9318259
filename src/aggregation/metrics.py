"""
Pure impact computations over a scope snapshot.

Everything here is a deterministic function of a ScopeSnapshot: the directory
schools in scope plus the reportable records attributed to them. No I/O and no
clock reads, so the same snapshot always yields the same numbers.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from geography import GeographyResolver
from models import (
    AssessmentCycle,
    DataCompleteness,
    DateRange,
    DomainOutcome,
    EgraDomain,
    FidelityBand,
    FidelityDriver,
    GeoScope,
    ImpactFidelity,
    ImpactFunnel,
    ImpactKpis,
    ImpactMeta,
    ImpactNavigator,
    NavigatorSchool,
    RawRecord,
    RecordModule,
    ReportingPeriod,
    School,
    ScopeLevel,
)
from models.utils import clamp_percent, mean, normalize_name, percent, round_half_up


logger = logging.getLogger(__name__)

FIDELITY_BANDS = (
    (75.0, FidelityBand.STRONG),
    (50.0, FidelityBand.DEVELOPING),
    (25.0, FidelityBand.NEEDS_SUPPORT),
)

FIDELITY_LABELS = {
    "coaching_coverage": "Coaching coverage",
    "assessment_compliance": "Assessment compliance",
    "teaching_quality": "Observed teaching quality",
}

MAX_OBSERVATION_RATING = 4

OBSERVATION_SECTION_LABELS = {
    "general_": "General",
    "newSound_": "New sound",
    "readingActivities_": "Reading activities",
    "trickyWords_": "Tricky words",
}


def directory_key(school: School) -> str:
    return f"id:{school.id}"


class SchoolMatcher:
    """
    Attributes records to schools.

    A record matches a directory school by school id, or else by school name
    within the same district. Unmatched records get a name key of their own so
    they still count for the wider scopes their district falls in.
    """

    def __init__(self, schools: Sequence[School], geography: GeographyResolver):
        self.geography = geography
        self._by_id: Dict[int, School] = {school.id: school for school in schools}
        self._by_name: Dict[Tuple[str, str], School] = {}
        for school in schools:
            self._by_name.setdefault((self._district_key(school.district), school.name_key), school)

    def _district_key(self, district: Optional[str]) -> str:
        return normalize_name(self.geography.canonical_district(district) or district)

    def school_for(self, record: RawRecord) -> Optional[School]:
        if record.school_id is not None and record.school_id in self._by_id:
            return self._by_id[record.school_id]
        return self._by_name.get((self._district_key(record.district), record.school_name_key))

    def key_for(self, record: RawRecord) -> str:
        school = self.school_for(record)
        if school is not None:
            return directory_key(school)
        return f"name:{self._district_key(record.district)}|{record.school_name_key}"


@dataclass
class ScopeSnapshot:
    """Directory schools and reportable records for one scope and period."""
    scope: GeoScope
    period: ReportingPeriod
    date_range: DateRange
    known: bool
    schools: List[School]
    records: List[RawRecord]
    school_keys: Dict[int, str] = field(default_factory=dict)

    def key(self, record: RawRecord) -> str:
        return self.school_keys[record.id]

    def by_module(self, module: RecordModule) -> List[RawRecord]:
        return [record for record in self.records if record.module == module]

    def schools_with(self, module: RecordModule, cycle: Optional[AssessmentCycle] = None) -> Set[str]:
        return {
            self.key(record)
            for record in self.by_module(module)
            if cycle is None or record.assessment_cycle == cycle
        }

    @property
    def directory_keys(self) -> Set[str]:
        return {directory_key(school) for school in self.schools}

    @property
    def schools_in_scope(self) -> Set[str]:
        """Directory schools in scope plus any unmatched schools with records."""
        return self.directory_keys | {self.key(record) for record in self.records}


def compute_kpis(snapshot: ScopeSnapshot) -> ImpactKpis:
    supported = {snapshot.key(record) for record in snapshot.records}
    enrolment_by_key = {directory_key(school): school.enrolled_learners for school in snapshot.schools}

    male = female = 0
    for record in snapshot.by_module(RecordModule.TRAINING):
        record_male, record_female = record.payload.teachers_by_gender()
        male += record_male
        female += record_female

    cycles = {cycle: 0 for cycle in AssessmentCycle}
    for record in snapshot.by_module(RecordModule.ASSESSMENT):
        cycles[record.assessment_cycle] += 1

    return ImpactKpis(
        schools_supported=len(supported),
        teachers_supported_male=male,
        teachers_supported_female=female,
        enrollment_estimated_reach=sum(enrolment_by_key.get(key, 0) for key in supported),
        learners_assessed_unique=count_unique_learners(snapshot),
        coaching_visits_completed=len(snapshot.by_module(RecordModule.VISIT)),
        assessments_baseline_count=cycles[AssessmentCycle.BASELINE],
        assessments_progress_count=cycles[AssessmentCycle.PROGRESS],
        assessments_endline_count=cycles[AssessmentCycle.ENDLINE],
    )


def count_unique_learners(snapshot: ScopeSnapshot) -> int:
    """
    Distinct learners across assessments, keyed by (school, learner id).

    Rows without a learner id cannot be matched across sittings and count
    individually.
    """
    identified: Set[Tuple[str, str]] = set()
    anonymous = 0
    for record in snapshot.by_module(RecordModule.ASSESSMENT):
        school_key = snapshot.key(record)
        for row in record.payload.egra_learners:
            if not row.is_active:
                continue
            if row.learner_id:
                identified.add((school_key, row.learner_id.casefold()))
            else:
                anonymous += 1
    return len(identified) + anonymous


def compute_funnel(snapshot: ScopeSnapshot) -> ImpactFunnel:
    """Each stage counts schools independently; no stage requires the previous one."""
    return ImpactFunnel(
        trained=len(snapshot.schools_with(RecordModule.TRAINING)),
        coached=len(snapshot.schools_with(RecordModule.VISIT)),
        baseline_assessed=len(snapshot.schools_with(RecordModule.ASSESSMENT, AssessmentCycle.BASELINE)),
        endline_assessed=len(snapshot.schools_with(RecordModule.ASSESSMENT, AssessmentCycle.ENDLINE)),
        story_active=len(snapshot.schools_with(RecordModule.STORY)),
    )


def collect_domain_scores(records: Iterable[RawRecord]) -> Dict[AssessmentCycle, Dict[EgraDomain, List[float]]]:
    """Active learner scores per cycle and domain."""
    scores = {cycle: {domain: [] for domain in EgraDomain} for cycle in AssessmentCycle}
    for record in records:
        if record.module != RecordModule.ASSESSMENT:
            continue
        cycle = record.assessment_cycle
        for row in record.payload.egra_learners:
            if not row.is_active:
                continue
            for domain in EgraDomain:
                value = row.score(domain)
                if value is not None:
                    scores[cycle][domain].append(value)
    return scores


def _rounded_mean(values: List[float]) -> Optional[float]:
    value = mean(values)
    return round_half_up(value, 1) if value is not None else None


def compute_outcomes(snapshot: ScopeSnapshot, benchmarks: Mapping[str, float]) -> Dict[str, DomainOutcome]:
    """
    Per-domain baseline, progress, endline and latest means.

    A domain with no scores reports None, never 0.
    """
    scores = collect_domain_scores(snapshot.records)
    outcomes = {}

    for domain in EgraDomain:
        baseline = scores[AssessmentCycle.BASELINE][domain]
        progress = scores[AssessmentCycle.PROGRESS][domain]
        endline = scores[AssessmentCycle.ENDLINE][domain]

        latest_cycle, latest = None, []
        for cycle, values in ((AssessmentCycle.ENDLINE, endline), (AssessmentCycle.PROGRESS, progress),
                              (AssessmentCycle.BASELINE, baseline)):
            if values:
                latest_cycle, latest = cycle, values
                break

        baseline_mean = _rounded_mean(baseline)
        latest_mean = _rounded_mean(latest)

        change = None
        if baseline_mean is not None and latest_mean is not None and latest_cycle != AssessmentCycle.BASELINE:
            change = round_half_up(latest_mean - baseline_mean, 1)

        benchmark_pct = None
        threshold = benchmarks.get(domain.value)
        if latest and threshold is not None:
            benchmark_pct = percent(sum(1 for value in latest if value >= threshold), len(latest))

        outcomes[domain.value] = DomainOutcome(
            baseline=baseline_mean,
            progress=_rounded_mean(progress),
            endline=_rounded_mean(endline),
            latest=latest_mean,
            change=change,
            benchmark_pct=benchmark_pct,
            n=len(latest),
            baseline_n=len(baseline),
        )

    return outcomes


def fidelity_band(score: float) -> FidelityBand:
    for floor, band in FIDELITY_BANDS:
        if score >= floor:
            return band
    return FidelityBand.HIGH_PRIORITY


def visit_quality_scores(records: Iterable[RawRecord]) -> List[float]:
    """Mean observation rating of each visit, scaled to 0-100."""
    scores = []
    for record in records:
        if record.module != RecordModule.VISIT:
            continue
        ratings = record.payload.ratings()
        if ratings:
            scores.append(sum(ratings.values()) / len(ratings) / MAX_OBSERVATION_RATING * 100)
    return scores


def compute_fidelity(snapshot: ScopeSnapshot, weights: Mapping[str, float]) -> ImpactFidelity:
    """
    Weighted fidelity composite with each driver exposed.

    Drivers without data are marked unavailable and left out of the weighted
    mean; with no available drivers the composite is 0.
    """
    in_scope = len(snapshot.schools_in_scope)
    coached = len(snapshot.schools_with(RecordModule.VISIT))
    both_cycles = (
        snapshot.schools_with(RecordModule.ASSESSMENT, AssessmentCycle.BASELINE)
        & snapshot.schools_with(RecordModule.ASSESSMENT, AssessmentCycle.ENDLINE)
    )
    quality = visit_quality_scores(snapshot.records)

    raw = {
        "coaching_coverage": (
            coached / in_scope * 100 if in_scope else None,
            f"{coached} of {in_scope} schools coached",
        ),
        "assessment_compliance": (
            len(both_cycles) / in_scope * 100 if in_scope else None,
            f"{len(both_cycles)} of {in_scope} schools with baseline and endline",
        ),
        "teaching_quality": (
            mean(quality),
            f"{len(quality)} observed lessons",
        ),
    }

    drivers = []
    weighted: List[float] = []
    weights_used: List[float] = []
    for name, (score, detail) in raw.items():
        weight = float(weights.get(name, 0.0))
        available = score is not None
        score = round_half_up(clamp_percent(score), 1) if available else 0.0
        if available and weight > 0:
            weighted.append(weight * score)
            weights_used.append(weight)
        drivers.append(FidelityDriver(
            driver=name,
            label=FIDELITY_LABELS[name],
            score=score,
            weight=weight,
            available=available,
            detail=detail,
        ))

    weight_total = math.fsum(weights_used)
    composite = round_half_up(clamp_percent(math.fsum(weighted) / weight_total), 1) if weight_total else 0.0
    return ImpactFidelity(score=composite, band=fidelity_band(composite), drivers=drivers)


def compute_completeness(snapshot: ScopeSnapshot, required_modules: Sequence[str]) -> DataCompleteness:
    """
    Complete iff there is at least one expected school and every expected
    school has a reportable record in every required module.
    """
    expected = snapshot.directory_keys
    if not expected:
        return DataCompleteness.PARTIAL

    for module_name in required_modules:
        reporting = snapshot.schools_with(RecordModule(module_name))
        if not expected <= reporting:
            return DataCompleteness.PARTIAL
    return DataCompleteness.COMPLETE


def compute_meta(snapshot: ScopeSnapshot, required_modules: Sequence[str]) -> ImpactMeta:
    flagged = [record for record in snapshot.records if record.payload.is_malformed]
    for record in flagged:
        logger.warning(
            f"{record.record_code} has malformed payload fields",
            extra={"record_id": record.id, "fields": record.payload.malformed_fields},
        )

    return ImpactMeta(
        sample_size=len(snapshot.records),
        data_completeness=compute_completeness(snapshot, required_modules),
        last_updated=max((record.updated_at for record in snapshot.records), default=None),
        schools_in_scope=len(snapshot.schools_in_scope),
        flagged_records=len(flagged),
    )


def _navigator_schools(schools: Iterable[School]) -> List[NavigatorSchool]:
    ordered = sorted(schools, key=lambda school: (school.name_key, school.school_code))
    return [NavigatorSchool(id=school.school_code, name=school.name) for school in ordered]


def build_navigator(geography: GeographyResolver, snapshot: ScopeSnapshot) -> ImpactNavigator:
    """Drill-down children from the geography table, whether or not they have data."""
    scope = snapshot.scope
    if not snapshot.known or scope.level == ScopeLevel.SCHOOL:
        return ImpactNavigator()

    schools = _navigator_schools(snapshot.schools)
    if scope.level == ScopeLevel.COUNTRY:
        return ImpactNavigator(
            regions=geography.regions(),
            sub_regions=geography.sub_regions(),
            districts=geography.districts(),
            schools=schools,
        )
    if scope.level == ScopeLevel.REGION:
        return ImpactNavigator(
            sub_regions=geography.sub_regions(region=scope.id),
            districts=geography.districts(region=scope.id),
            schools=schools,
        )
    if scope.level == ScopeLevel.SUBREGION:
        return ImpactNavigator(
            districts=geography.districts(sub_region=scope.id),
            schools=schools,
        )
    return ImpactNavigator(schools=schools)
