"""
District league table.

Ranks every district with reportable data in a period by learning outcomes,
then by implementation fidelity, and flags districts that need attention.
"""

import copy
import logging
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from models import DomainOutcome, GeoScope, ScopeLevel
from models.base import CamelModel
from models.utils import mean, round_half_up

from .engine import ImpactAggregationEngine
from .metrics import compute_fidelity, compute_kpis, compute_outcomes
from .periods import parse_period


logger = logging.getLogger(__name__)


class PriorityFlag(str, Enum):
    URGENT = "urgent"
    WATCH = "watch"
    ON_TRACK = "on-track"


class DistrictLeagueRow(CamelModel):
    district: str
    region: str
    sub_region: str
    outcomes_score: Optional[float] = None
    fidelity_score: float = 0.0
    rank: int = 0
    priority_flag: PriorityFlag = PriorityFlag.ON_TRACK
    schools_supported: int = 0
    learners_assessed: int = 0


def outcomes_score(outcomes: Mapping[str, DomainOutcome]) -> Optional[float]:
    """Mean share of learners at benchmark across domains with data."""
    value = mean([outcome.benchmark_pct for outcome in outcomes.values() if outcome.benchmark_pct is not None])
    return round_half_up(value, 1) if value is not None else None


def priority_flag(fidelity_score: float) -> PriorityFlag:
    if fidelity_score < 25:
        return PriorityFlag.URGENT
    if fidelity_score < 50:
        return PriorityFlag.WATCH
    return PriorityFlag.ON_TRACK


def rank_rows(rows: List[DistrictLeagueRow]) -> List[DistrictLeagueRow]:
    """Order by outcomes score (missing scores last), then fidelity, then name, and number from 1."""
    ordered = sorted(
        rows,
        key=lambda row: (
            row.outcomes_score is None,
            -(row.outcomes_score or 0.0),
            -row.fidelity_score,
            row.district.casefold(),
        ),
    )
    for position, row in enumerate(ordered, start=1):
        row.rank = position
    return ordered


async def district_league(engine: ImpactAggregationEngine, period: Any = None) -> List[DistrictLeagueRow]:
    """League rows for every known district with reportable records in the period."""
    period = parse_period(period)
    cache = engine.cache
    if cache is not None:
        cached = await cache.get("league", ScopeLevel.COUNTRY, "", period)
        if cached is not None:
            return copy.deepcopy(cached)

    period, date_range, schools, records = await engine.load_period(period)
    geography = engine.geography
    settings = engine.settings

    districts = sorted({
        entry.district
        for entry in (geography.resolve(record.district) for record in records)
        if entry is not None
    })

    rows = []
    for district in districts:
        snapshot = engine.scope_snapshot(
            GeoScope(level=ScopeLevel.DISTRICT, id=district), period, date_range, schools, records
        )
        if not snapshot.records:
            continue
        entry = geography.resolve(district)
        kpis = compute_kpis(snapshot)
        fidelity = compute_fidelity(snapshot, settings.fidelity_weights)
        rows.append(DistrictLeagueRow(
            district=entry.district,
            region=entry.region,
            sub_region=entry.sub_region,
            outcomes_score=outcomes_score(compute_outcomes(snapshot, settings.benchmarks)),
            fidelity_score=fidelity.score,
            priority_flag=priority_flag(fidelity.score),
            schools_supported=kpis.schools_supported,
            learners_assessed=kpis.learners_assessed_unique,
        ))

    ranked = rank_rows(rows)
    logger.info(f"Ranked {len(ranked)} districts for {period.value}")

    if cache is not None:
        await cache.set("league", ScopeLevel.COUNTRY, "", period, copy.deepcopy(ranked))
    return ranked


def league_json(rows: List[DistrictLeagueRow]) -> List[Dict[str, Any]]:
    return [row.model_dump(by_alias=True, mode="json") for row in rows]
