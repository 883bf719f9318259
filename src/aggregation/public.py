"""
Public impact response.

The public dashboard contract is the camelCase aggregate plus a set of
snake_case aliases kept for older consumers. Every response passes the
privacy scan before it is returned.
"""

import copy
import logging
from typing import Any, Dict

from models import EgraDomain, GeoScope, ImpactAggregate
from utils.redaction import ensure_public_safe

from .engine import ImpactAggregationEngine
from .periods import parse_period


logger = logging.getLogger(__name__)

PUBLIC_CACHE_CONTROL = "public, max-age={ttl}, stale-while-revalidate={stale}"

KPI_ALIASES = {
    "schools_supported": "schoolsSupported",
    "teachers_supported_male": "teachersSupportedMale",
    "teachers_supported_female": "teachersSupportedFemale",
    "enrollment_total": "enrollmentEstimatedReach",
    "learners_assessed_unique": "learnersAssessedUnique",
    "visits_total": "coachingVisitsCompleted",
    "assessments_baseline_count": "assessmentsBaselineCount",
    "assessments_progress_count": "assessmentsProgressCount",
    "assessments_endline_count": "assessmentsEndlineCount",
}

OUTCOME_ALIASES = {
    "sounds": EgraDomain.LETTER_SOUNDS.value,
    "decoding": EgraDomain.REAL_WORDS.value,
    "fluency": EgraDomain.STORY_READING.value,
}

FUNNEL_ALIASES = {
    "baseline_assessed": "baselineAssessed",
    "endline_assessed": "endlineAssessed",
    "story_active": "storyActive",
}

META_ALIASES = {
    "last_updated": "lastUpdated",
    "data_completeness": "dataCompleteness",
    "sample_size": "sampleSize",
}


def _with_aliases(section: Dict[str, Any], aliases: Dict[str, str]) -> Dict[str, Any]:
    merged = dict(section)
    for alias, source in aliases.items():
        merged[alias] = section.get(source)
    return merged


def to_public_response(aggregate: ImpactAggregate) -> Dict[str, Any]:
    """
    Serialize an aggregate for public consumption.

    Raises:
        PrivacyViolationError: if any identifying key appears anywhere in the tree
    """
    payload = aggregate.to_json_dict()
    payload["kpis"] = _with_aliases(payload["kpis"], KPI_ALIASES)
    payload["outcomes"] = _with_aliases(payload["outcomes"], OUTCOME_ALIASES)
    payload["funnel"] = _with_aliases(payload["funnel"], FUNNEL_ALIASES)
    payload["meta"] = _with_aliases(payload["meta"], META_ALIASES)
    return ensure_public_safe(payload)


def cache_control_header(ttl_seconds: int) -> str:
    return PUBLIC_CACHE_CONTROL.format(ttl=ttl_seconds, stale=ttl_seconds + ttl_seconds // 2)


async def public_impact(engine: ImpactAggregationEngine, scope: GeoScope, period: Any = None) -> Dict[str, Any]:
    """Public response for a scope and period, cached for the public TTL."""
    period = parse_period(period)
    cache = engine.cache
    ttl = engine.settings.public_cache_ttl_seconds

    if cache is not None:
        cached = await cache.get("public", scope.level, scope.id, period)
        if cached is not None:
            return copy.deepcopy(cached)

    response = to_public_response(await engine.aggregate(scope, period))

    if cache is not None:
        await cache.set("public", scope.level, scope.id, period, copy.deepcopy(response), ttl=ttl)
    return response
