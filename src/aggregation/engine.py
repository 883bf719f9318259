"""
Impact aggregation engine.

Rolls reportable field records up the geographic hierarchy for one scope and
reporting period. The engine resolves the scope to directory schools, fetches
the period's records from the store under a timeout, attributes each record to
a school and hands the resulting snapshot to the pure metric functions.
"""

import asyncio
import logging
from typing import Any, Callable, List, Optional, Tuple

from geography import GeographyResolver, UnknownScopeError
from database import AggregateCache, RecordQuery, RecordStore, StoreUnavailableError
from literacy_impact.config import AggregationSettings
from models import (
    DateRange,
    GeoScope,
    ImpactAggregate,
    PeriodInfo,
    RawRecord,
    REPORTABLE_STATUSES,
    ReportingPeriod,
    School,
    ScopeInfo,
    ScopeLevel,
)

from .metrics import (
    ScopeSnapshot,
    SchoolMatcher,
    build_navigator,
    compute_fidelity,
    compute_funnel,
    compute_kpis,
    compute_meta,
    compute_outcomes,
    directory_key,
)
from .periods import PeriodResolver, parse_period


logger = logging.getLogger(__name__)


class ImpactAggregationEngine:
    """
    Computes ImpactAggregate for any scope level.

    Unknown scopes produce a zeroed aggregate with ``scope.known`` false,
    unless the engine is strict, in which case UnknownScopeError is raised.
    Store failures and timeouts raise StoreUnavailableError; the engine never
    substitutes zeros for data it could not read.
    """

    def __init__(
        self,
        store: RecordStore,
        geography: GeographyResolver,
        period_resolver: Optional[Callable[[ReportingPeriod], DateRange]] = None,
        settings: Optional[AggregationSettings] = None,
        cache: Optional[AggregateCache] = None,
        strict: bool = False,
    ):
        self.store = store
        self.geography = geography
        self.settings = settings or AggregationSettings()
        self.period_resolver = period_resolver or PeriodResolver(self.settings.fiscal_year_start_month)
        self.cache = cache
        self.strict = strict

        if cache is not None:
            store.add_write_listener(cache.on_record_write)

    async def _load(self, date_range: DateRange) -> Tuple[List[School], List[RawRecord]]:
        query = RecordQuery(start=date_range.start, end=date_range.end, statuses=REPORTABLE_STATUSES)
        try:
            schools, records = await asyncio.wait_for(
                asyncio.gather(self.store.list_schools(), self.store.fetch_records(query)),
                timeout=self.settings.fetch_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Record store did not answer within {self.settings.fetch_timeout_seconds}s")
            raise StoreUnavailableError("Record store timed out") from e
        return schools, records

    async def load_period(self, period: Any) -> Tuple[ReportingPeriod, DateRange, List[School], List[RawRecord]]:
        """Resolve a period and load the directory and its reportable records."""
        period = parse_period(period)
        date_range = self.period_resolver(period)
        schools, records = await self._load(date_range)
        return period, date_range, schools, records

    async def snapshot(self, scope: GeoScope, period: Any) -> ScopeSnapshot:
        """Resolve scope and period and load the attributed records."""
        return self.scope_snapshot(scope, *await self.load_period(period))

    def scope_snapshot(
        self,
        scope: GeoScope,
        period: ReportingPeriod,
        date_range: DateRange,
        schools: List[School],
        records: List[RawRecord],
    ) -> ScopeSnapshot:
        """Attribute already loaded records to a scope."""
        known = self.geography.is_known(scope, schools)
        if not known:
            if self.strict:
                raise UnknownScopeError(f"Unknown {scope.level.value} scope {scope.id!r}")
            logger.info(f"Unknown {scope.level.value} scope {scope.id!r}, returning empty aggregate")
            return ScopeSnapshot(
                scope=scope, period=period, date_range=date_range, known=False, schools=[], records=[]
            )

        scope_schools = self.geography.schools_for_scope(scope, schools)
        scope_keys = {directory_key(school) for school in scope_schools}
        matcher = SchoolMatcher(schools, self.geography)

        in_scope: List[RawRecord] = []
        school_keys = {}
        for record in records:
            # Draft and Returned never count, whatever the store returned
            if not record.is_reportable or not date_range.contains(record.date):
                continue
            key = matcher.key_for(record)
            if key not in scope_keys:
                # Schools missing from the directory still count through their district
                unmatched_in_scope = (
                    key.startswith("name:")
                    and scope.level != ScopeLevel.SCHOOL
                    and self.geography.contains(scope, record.district)
                )
                if not unmatched_in_scope:
                    continue
            in_scope.append(record)
            school_keys[record.id] = key

        in_scope.sort(key=lambda record: (record.date, record.id))
        return ScopeSnapshot(
            scope=scope,
            period=period,
            date_range=date_range,
            known=True,
            schools=scope_schools,
            records=in_scope,
            school_keys=school_keys,
        )

    def describe_scope(self, scope: GeoScope, snapshot: ScopeSnapshot) -> ScopeInfo:
        """Display name and ancestors for a scope."""
        geography = self.geography
        if not snapshot.known:
            return ScopeInfo(level=scope.level, id=scope.id, name=scope.id, known=False)

        if scope.level == ScopeLevel.COUNTRY:
            return ScopeInfo(level=scope.level, id=scope.id, name=geography.reference.country)
        if scope.level == ScopeLevel.REGION:
            return ScopeInfo(level=scope.level, id=scope.id, name=geography.find_region(scope.id))
        if scope.level == ScopeLevel.SUBREGION:
            name = geography.find_sub_region(scope.id)
            return ScopeInfo(
                level=scope.level,
                id=scope.id,
                name=name,
                parent_region=geography.region_of_sub_region(name),
            )
        if scope.level == ScopeLevel.DISTRICT:
            entry = geography.resolve(scope.id)
            return ScopeInfo(
                level=scope.level,
                id=scope.id,
                name=entry.district,
                parent_region=entry.region,
                parent_sub_region=entry.sub_region,
            )

        school = snapshot.schools[0]
        entry = geography.resolve(school.district)
        return ScopeInfo(
            level=scope.level,
            id=scope.id,
            name=school.name,
            parent_region=entry.region if entry else geography.default_region,
            parent_sub_region=entry.sub_region if entry else None,
            parent_district=entry.district if entry else school.district,
        )

    def build_aggregate(self, snapshot: ScopeSnapshot) -> ImpactAggregate:
        """Compute the aggregate for an already loaded snapshot."""
        settings = self.settings
        return ImpactAggregate(
            scope=self.describe_scope(snapshot.scope, snapshot),
            period=PeriodInfo(code=snapshot.period, start=snapshot.date_range.start, end=snapshot.date_range.end),
            kpis=compute_kpis(snapshot),
            funnel=compute_funnel(snapshot),
            outcomes=compute_outcomes(snapshot, settings.benchmarks),
            fidelity=compute_fidelity(snapshot, settings.fidelity_weights),
            meta=compute_meta(snapshot, settings.required_modules),
            navigator=build_navigator(self.geography, snapshot),
        )

    async def aggregate(self, scope: GeoScope, period: Any = ReportingPeriod.FY) -> ImpactAggregate:
        """
        Impact aggregate for a scope and period.

        Args:
            scope: Node of the hierarchy (country, region, subregion, district or school)
            period: FY, TERM or QTR; anything else falls back to FY

        Returns:
            A fully shaped ImpactAggregate
        """
        period = parse_period(period)

        if self.cache is not None:
            cached = await self.cache.get("aggregate", scope.level, scope.id, period)
            if cached is not None:
                return cached.model_copy(deep=True)

        snapshot = await self.snapshot(scope, period)
        aggregate = self.build_aggregate(snapshot)

        logger.info(
            f"Aggregated {scope.level.value} {scope.id or '(all)'} for {period.value}",
            extra={"sample_size": aggregate.meta.sample_size, "known": snapshot.known},
        )

        if self.cache is not None:
            await self.cache.set("aggregate", scope.level, scope.id, period, aggregate.model_copy(deep=True))
        return aggregate
