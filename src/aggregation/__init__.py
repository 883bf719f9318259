"""
Impact aggregation over the school → district → sub-region → region → country hierarchy.

This package contains:
- Reporting period resolution (FY, TERM, QTR)
- Pure metric functions over a scope snapshot
- The aggregation engine and its public response
- Report fact packs and the district league table
"""

from .engine import ImpactAggregationEngine
from .fact_pack import (
    DataQualitySummary,
    ReportFactPack,
    build_fact_pack,
    compute_data_quality,
    report_fact_pack,
)
from .league import DistrictLeagueRow, PriorityFlag, district_league, league_json
from .metrics import ScopeSnapshot, SchoolMatcher
from .periods import PeriodResolver, parse_period
from .public import cache_control_header, public_impact, to_public_response

__all__ = [
    # Engine
    "ImpactAggregationEngine",
    "ScopeSnapshot",
    "SchoolMatcher",
    "PeriodResolver",
    "parse_period",

    # Public surface
    "public_impact",
    "to_public_response",
    "cache_control_header",

    # Reports
    "ReportFactPack",
    "DataQualitySummary",
    "build_fact_pack",
    "compute_data_quality",
    "report_fact_pack",
    "DistrictLeagueRow",
    "PriorityFlag",
    "district_league",
    "league_json",
]
