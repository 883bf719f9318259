"""
Tests for the impact aggregation engine.

Covers scope attribution, KPIs and funnel, learning outcomes, fidelity,
completeness, navigator drill-down, unknown scopes, store failures and the
aggregate cache.
"""

import asyncio
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock

import pytest

from conftest import assessment_payload, learner
from database import AggregateCache, InMemoryCache, InMemoryRecordStore, StoreUnavailableError
from geography import UnknownScopeError
from literacy_impact.config import AggregationSettings
from models import (
    DataCompleteness,
    FidelityBand,
    GeoScope,
    RecordSubmission,
    ReportingPeriod,
    ScopeLevel,
)


GULU = GeoScope(level=ScopeLevel.DISTRICT, id="Gulu")


@pytest.fixture
def gulu_records(make_record):
    """Two trainings and one visit at School A, nothing at School B."""
    return [
        make_record("training", date(2024, 9, 3), payload={"maleCount": 3, "femaleCount": 5}),
        make_record("training", date(2024, 11, 12), payload={"maleCount": 2, "femaleCount": 4}),
        make_record("visit", date(2025, 2, 4), payload={"general_lessonPlan": "Good", "newSound_modelling": "Fair"}),
    ]


@pytest.fixture
def outcome_records(make_record):
    return [
        make_record("assessment", date(2024, 8, 20), payload=assessment_payload("Baseline", [
            learner("L1", "M", 8, letterSounds=0),
            learner("L2", "F", 20),
        ])),
        make_record("assessment", date(2025, 2, 18), payload=assessment_payload("Endline", [
            learner("L1", "M", 30),
            learner("L2", "F", 50),
        ])),
    ]


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_gulu_district(self, build_engine, gulu_schools, gulu_records):
        engine = build_engine(gulu_schools, gulu_records)
        result = await engine.aggregate(GULU, "FY")

        assert result.kpis.schools_supported == 1
        assert result.kpis.teachers_supported_male == 5
        assert result.kpis.teachers_supported_female == 9
        assert result.kpis.enrollment_estimated_reach == 250
        assert result.kpis.coaching_visits_completed == 1
        assert result.funnel.trained == 1
        assert result.funnel.coached == 1
        assert result.funnel.baseline_assessed == 0
        assert result.meta.data_completeness == DataCompleteness.PARTIAL
        assert result.meta.sample_size == 3
        assert result.meta.schools_in_scope == 2
        assert [school.name for school in result.navigator.schools] == ["School A", "School B"]
        assert [school.id for school in result.navigator.schools] == ["SCH-0001", "SCH-0002"]

    @pytest.mark.asyncio
    async def test_scope_and_period_description(self, build_engine, gulu_schools, gulu_records):
        result = await build_engine(gulu_schools, gulu_records).aggregate(GeoScope(level=ScopeLevel.DISTRICT, id="gulu district"))
        assert result.scope.name == "Gulu"
        assert result.scope.parent_region == "Northern"
        assert result.scope.parent_sub_region == "Acholi"
        assert result.period.code == ReportingPeriod.FY
        assert (result.period.start, result.period.end) == (date(2024, 7, 1), date(2025, 6, 30))

    @pytest.mark.asyncio
    async def test_json_shape_is_camel_case(self, build_engine, gulu_schools, gulu_records):
        payload = (await build_engine(gulu_schools, gulu_records).aggregate(GULU)).to_json_dict()
        assert set(payload) == {"scope", "period", "kpis", "funnel", "outcomes", "fidelity", "meta", "navigator"}
        assert payload["kpis"]["schoolsSupported"] == 1
        assert payload["meta"]["dataCompleteness"] == "Partial"
        assert payload["period"]["from"] == "2024-07-01"
        assert payload["outcomes"]["storyReading"]["baseline"] is None

    @pytest.mark.asyncio
    async def test_complete_when_every_school_reports_every_module(self, build_engine, make_record):
        schools = [build_school(1, "School A")]
        records = [
            make_record("training", date(2024, 9, 3)),
            make_record("visit", date(2024, 10, 3)),
            make_record("assessment", date(2024, 10, 9), payload=assessment_payload("baseline", [])),
        ]
        result = await build_engine(schools, records).aggregate(GULU)
        assert result.meta.data_completeness == DataCompleteness.COMPLETE

    @pytest.mark.asyncio
    async def test_no_directory_schools_is_partial(self, build_engine, make_record):
        records = [make_record("training", date(2024, 9, 3))]
        result = await build_engine([], records).aggregate(GULU)
        assert result.kpis.schools_supported == 1
        assert result.meta.data_completeness == DataCompleteness.PARTIAL


def build_school(school_id, name, district="Gulu"):
    from models import School
    return School(id=school_id, name=name, district=district, enrolled_boys=10, enrolled_girls=10)


class TestAttribution:

    @pytest.mark.asyncio
    async def test_unreportable_and_out_of_period_records_ignored(self, build_engine, gulu_schools, make_record):
        records = [
            make_record("training", date(2024, 9, 3), status="Draft"),
            make_record("training", date(2024, 9, 4), status="Returned"),
            make_record("training", date(2024, 5, 30)),
            make_record("visit", date(2024, 9, 5), status="Submitted"),
        ]
        result = await build_engine(gulu_schools, records).aggregate(GULU)
        assert result.meta.sample_size == 1
        assert result.funnel.trained == 0
        assert result.funnel.coached == 1

    @pytest.mark.asyncio
    async def test_match_by_school_id_over_name(self, build_engine, gulu_schools, make_record):
        records = [make_record("visit", date(2024, 9, 5), school_name="Skool B (typo)", school_id=2)]
        engine = build_engine(gulu_schools, records)
        result = await engine.aggregate(GeoScope(level=ScopeLevel.SCHOOL, id="SCH-0002"))
        assert result.funnel.coached == 1
        assert result.scope.name == "School B"
        assert result.scope.parent_district == "Gulu"

    @pytest.mark.asyncio
    async def test_name_match_is_normalized(self, build_engine, gulu_schools, make_record):
        records = [make_record("visit", date(2024, 9, 5), school_name="  school   a ", district="GULU")]
        result = await build_engine(gulu_schools, records).aggregate(GeoScope(level=ScopeLevel.SCHOOL, id="1"))
        assert result.funnel.coached == 1

    @pytest.mark.asyncio
    async def test_unlisted_school_counts_for_its_district_only(self, build_engine, gulu_schools, make_record):
        records = [
            make_record("visit", date(2024, 9, 5)),
            make_record("visit", date(2024, 9, 6), school_name="Unlisted Primary"),
        ]
        engine = build_engine(gulu_schools, records)

        district = await engine.aggregate(GULU)
        assert district.kpis.schools_supported == 2
        assert district.meta.schools_in_scope == 3

        region = await engine.aggregate(GeoScope(level=ScopeLevel.REGION, id="Northern"))
        assert region.kpis.schools_supported == 2

        other_region = await engine.aggregate(GeoScope(level=ScopeLevel.REGION, id="Central"))
        assert other_region.kpis.schools_supported == 0

        school = await engine.aggregate(GeoScope(level=ScopeLevel.SCHOOL, id="SCH-0001"))
        assert school.kpis.schools_supported == 1

    @pytest.mark.asyncio
    async def test_country_includes_unknown_districts(self, build_engine, make_record):
        records = [make_record("visit", date(2024, 9, 5), district="Atlantis", school_name="Lost School")]
        result = await build_engine([], records).aggregate(GeoScope.country())
        assert result.kpis.schools_supported == 1
        assert result.scope.name == "Uganda"


class TestOutcomes:

    @pytest.mark.asyncio
    async def test_baseline_to_endline(self, build_engine, gulu_schools, outcome_records):
        result = await build_engine(gulu_schools, outcome_records).aggregate(GULU)
        story = result.outcomes["storyReading"]

        assert story.baseline == 14.0
        assert story.endline == 30.0 + 10.0
        assert story.latest == 40.0
        assert story.change == 26.0
        assert story.benchmark_pct == 50.0
        assert story.n == 2
        assert story.baseline_n == 2

        assert result.kpis.assessments_baseline_count == 1
        assert result.kpis.assessments_endline_count == 1
        assert result.kpis.learners_assessed_unique == 2
        assert result.funnel.baseline_assessed == 1
        assert result.funnel.endline_assessed == 1

    @pytest.mark.asyncio
    async def test_zero_is_data_and_missing_is_null(self, build_engine, gulu_schools, outcome_records):
        result = await build_engine(gulu_schools, outcome_records).aggregate(GULU)

        sounds = result.outcomes["letterSounds"]
        assert sounds.baseline == 0.0
        assert sounds.endline is None
        # Baseline is the only cycle with data, so there is no change to report
        assert sounds.latest == 0.0
        assert sounds.change is None

        comprehension = result.outcomes["comprehension"]
        assert comprehension.baseline is None
        assert comprehension.latest is None
        assert comprehension.benchmark_pct is None
        assert comprehension.n == 0

    @pytest.mark.asyncio
    async def test_progress_cycle_from_program_type(self, build_engine, gulu_schools, make_record):
        records = [
            make_record("assessment", date(2024, 8, 20), program_type="Baseline", payload={
                "egraLearners": [learner("L1", "M", 10)],
            }),
            make_record("assessment", date(2024, 12, 2), program_type="Year 1 midline", payload={
                "egraLearners": [learner("L1", "M", 25)],
            }),
        ]
        result = await build_engine(gulu_schools, records).aggregate(GULU)
        story = result.outcomes["storyReading"]
        assert story.progress == 25.0
        assert story.change == 15.0
        assert result.kpis.assessments_progress_count == 1
        assert result.kpis.learners_assessed_unique == 1

    @pytest.mark.asyncio
    async def test_malformed_rows_are_skipped_and_flagged(self, build_engine, gulu_schools, make_record):
        records = [
            make_record("assessment", date(2024, 8, 20), payload=assessment_payload("baseline", [
                learner("L1", "M", "fast"),
                learner("L2", "F", 12),
            ])),
        ]
        result = await build_engine(gulu_schools, records).aggregate(GULU)
        assert result.outcomes["storyReading"].baseline == 12.0
        assert result.meta.flagged_records == 1
        assert result.kpis.learners_assessed_unique == 2


class TestFidelity:

    @pytest.mark.asyncio
    async def test_weighted_drivers(self, build_engine, gulu_schools, gulu_records):
        fidelity = (await build_engine(gulu_schools, gulu_records).aggregate(GULU)).fidelity
        drivers = {driver.driver: driver for driver in fidelity.drivers}

        assert drivers["coaching_coverage"].score == 50.0
        assert drivers["assessment_compliance"].score == 0.0
        assert drivers["assessment_compliance"].available
        assert drivers["teaching_quality"].score == 62.5
        # (0.4 * 50 + 0.3 * 0 + 0.3 * 62.5) / 1.0
        assert fidelity.score == 38.8
        assert fidelity.band == FidelityBand.NEEDS_SUPPORT

    @pytest.mark.asyncio
    async def test_unavailable_drivers_are_left_out(self, build_engine, gulu_schools, make_record):
        records = [make_record("visit", date(2024, 9, 5), school_id=1), make_record("visit", date(2024, 9, 6), school_id=2)]
        fidelity = (await build_engine(gulu_schools, records).aggregate(GULU)).fidelity
        drivers = {driver.driver: driver for driver in fidelity.drivers}
        assert not drivers["teaching_quality"].available
        # (0.4 * 100 + 0.3 * 0) / 0.7
        assert fidelity.score == 57.1
        assert fidelity.band == FidelityBand.DEVELOPING

    @pytest.mark.asyncio
    async def test_empty_scope_has_zero_fidelity(self, build_engine):
        fidelity = (await build_engine([], []).aggregate(GULU)).fidelity
        assert fidelity.score == 0.0
        assert fidelity.band == FidelityBand.HIGH_PRIORITY


class TestNavigator:

    @pytest.mark.asyncio
    async def test_country(self, build_engine, gulu_schools):
        navigator = (await build_engine(gulu_schools, []).aggregate(GeoScope.country())).navigator
        assert "Northern" in navigator.regions
        assert "Acholi" in navigator.sub_regions
        assert "Gulu" in navigator.districts
        assert len(navigator.schools) == 2

    @pytest.mark.asyncio
    async def test_sub_region(self, build_engine, gulu_schools):
        navigator = (await build_engine(gulu_schools, []).aggregate(GeoScope(level=ScopeLevel.SUBREGION, id="Lango"))).navigator
        assert navigator.regions == []
        assert navigator.sub_regions == []
        assert "Lira" in navigator.districts
        assert "Gulu" not in navigator.districts
        assert navigator.schools == []

    @pytest.mark.asyncio
    async def test_school_scope_has_no_children(self, build_engine, gulu_schools):
        navigator = (await build_engine(gulu_schools, []).aggregate(GeoScope(level=ScopeLevel.SCHOOL, id="SCH-0001"))).navigator
        assert navigator.model_dump() == {"regions": [], "sub_regions": [], "districts": [], "schools": []}


class TestUnknownScope:

    @pytest.mark.asyncio
    async def test_degrades_to_empty_aggregate(self, build_engine, gulu_schools, gulu_records):
        result = await build_engine(gulu_schools, gulu_records).aggregate(GeoScope(level=ScopeLevel.DISTRICT, id="Atlantis"))
        assert result.scope.known is False
        assert result.kpis.schools_supported == 0
        assert result.meta.sample_size == 0
        assert result.outcomes["storyReading"].baseline is None
        assert result.navigator.schools == []

    @pytest.mark.asyncio
    async def test_strict_mode_raises(self, build_engine, gulu_schools):
        engine = build_engine(gulu_schools, [], strict=True)
        with pytest.raises(UnknownScopeError):
            await engine.aggregate(GeoScope(level=ScopeLevel.SCHOOL, id="SCH-0404"))


class SlowStore(InMemoryRecordStore):

    async def fetch_records(self, query):
        await asyncio.sleep(5)
        return []


class TestStoreFailures:

    @pytest.mark.asyncio
    async def test_timeout_is_store_unavailable(self, geography, period_resolver):
        from aggregation import ImpactAggregationEngine
        engine = ImpactAggregationEngine(
            SlowStore(),
            geography,
            period_resolver=period_resolver,
            settings=AggregationSettings(fetch_timeout_seconds=0.05),
        )
        with pytest.raises(StoreUnavailableError):
            await engine.aggregate(GULU)

    @pytest.mark.asyncio
    async def test_store_errors_propagate(self, build_engine):
        engine = build_engine([], [])
        engine.store.fetch_records = AsyncMock(side_effect=StoreUnavailableError("connection refused"))
        with pytest.raises(StoreUnavailableError):
            await engine.aggregate(GULU)


class TestDeterminismAndCache:

    @pytest.mark.asyncio
    async def test_same_snapshot_same_result(self, build_engine, gulu_schools, gulu_records, outcome_records):
        engine = build_engine(gulu_schools, gulu_records + outcome_records)
        first = await engine.aggregate(GULU, "TERM")
        second = await engine.aggregate(GULU, "TERM")
        assert first.to_json_dict() == second.to_json_dict()

    @pytest.mark.asyncio
    async def test_last_updated_is_latest_contributing_write(self, build_engine, gulu_schools, make_record):
        late = datetime(2025, 3, 10, 17, 30, tzinfo=timezone.utc)
        records = [
            make_record("visit", date(2024, 9, 5)),
            make_record("visit", date(2024, 9, 6), school_name="School B", updated_at=late),
            make_record("visit", date(2024, 9, 7), status="Draft", updated_at=datetime(2025, 3, 14, tzinfo=timezone.utc)),
        ]
        result = await build_engine(gulu_schools, records).aggregate(GULU)
        assert result.meta.last_updated == late

    @pytest.mark.asyncio
    async def test_cached_until_a_write(self, build_engine, gulu_schools, gulu_records, coach):
        cache = AggregateCache(InMemoryCache(), ttl=300)
        engine = build_engine(gulu_schools, gulu_records, cache=cache)
        store = engine.store
        store.fetch_records = AsyncMock(wraps=store.fetch_records)

        first = await engine.aggregate(GULU)
        await engine.aggregate(GULU)
        assert store.fetch_records.await_count == 1

        await store.create_record(RecordSubmission.model_validate({
            "module": "visit",
            "date": "2025-03-01",
            "district": "Gulu",
            "schoolName": "School B",
        }), coach)

        refreshed = await engine.aggregate(GULU)
        assert store.fetch_records.await_count == 2
        assert refreshed.funnel.coached == first.funnel.coached + 1

    @pytest.mark.asyncio
    async def test_cached_aggregate_is_a_copy(self, build_engine, gulu_schools, gulu_records):
        engine = build_engine(gulu_schools, gulu_records, cache=AggregateCache(InMemoryCache()))
        first = await engine.aggregate(GULU)
        first.kpis.schools_supported = 99
        second = await engine.aggregate(GULU)
        assert second.kpis.schools_supported == 1

    @pytest.mark.asyncio
    async def test_cache_never_crosses_scope_ids(self, build_engine, gulu_schools, gulu_records):
        engine = build_engine(gulu_schools, gulu_records, cache=AggregateCache(InMemoryCache()))
        unknown = await engine.aggregate(GeoScope(level=ScopeLevel.SUBREGION, id="West_Nile"))
        known = await engine.aggregate(GeoScope(level=ScopeLevel.SUBREGION, id="West Nile"))

        assert unknown.scope.known is False
        assert known.scope.known is True
        assert known.scope.id == "West Nile"
        assert "Arua" in known.navigator.districts

    @pytest.mark.asyncio
    async def test_cached_result_matches_uncached(self, build_engine, gulu_schools, gulu_records):
        cached_engine = build_engine(gulu_schools, gulu_records, cache=AggregateCache(InMemoryCache()))
        plain_engine = build_engine(gulu_schools, gulu_records)
        for scope_id in ("Gulu", "gulu", "Gulu District"):
            scope = GeoScope(level=ScopeLevel.DISTRICT, id=scope_id)
            assert (await cached_engine.aggregate(scope)).to_json_dict() == (
                await plain_engine.aggregate(scope)
            ).to_json_dict()
