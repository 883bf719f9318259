"""
Impact aggregate output schemas for the geographic hierarchy:
Country → Region → Sub-region → District → School

Every scope level produces the same fully-shaped ImpactAggregate so that
dashboards render one component regardless of where the user has drilled to.
Serialized with ``model_dump(by_alias=True, mode="json")`` as camelCase.
"""

from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import Field, field_validator, model_validator

from .base import CamelModel
from .egra import EgraDomain


class ScopeLevel(str, Enum):
    """Levels of the geographic hierarchy, widest first."""
    COUNTRY = "country"
    REGION = "region"
    SUBREGION = "subregion"
    DISTRICT = "district"
    SCHOOL = "school"


class ReportingPeriod(str, Enum):
    """Rolling reporting windows, each containing today."""
    FY = "FY"
    TERM = "TERM"
    QTR = "QTR"


class GeoScope(CamelModel):
    """A node of the hierarchy to aggregate over."""

    level: ScopeLevel
    id: str = ""

    @field_validator("id", mode="before")
    @classmethod
    def _strip(cls, v):
        return "" if v is None else str(v).strip()

    @model_validator(mode="after")
    def _needs_id(self):
        if self.level != ScopeLevel.COUNTRY and not self.id:
            raise ValueError(f"a {self.level.value} scope needs an id")
        return self

    @classmethod
    def country(cls) -> "GeoScope":
        return cls(level=ScopeLevel.COUNTRY, id="")

    def cache_key(self) -> str:
        return f"{self.level.value}:{self.id.casefold()}"


class DateRange(CamelModel):
    """Inclusive calendar date range."""

    start: date = Field(serialization_alias="from", validation_alias="from")
    end: date = Field(serialization_alias="to", validation_alias="to")

    @model_validator(mode="after")
    def _ordered(self):
        if self.end < self.start:
            raise ValueError("date range ends before it starts")
        return self

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


class DataCompleteness(str, Enum):
    COMPLETE = "Complete"
    PARTIAL = "Partial"


class FidelityBand(str, Enum):
    """Implementation fidelity bands, best first."""
    STRONG = "Strong"
    DEVELOPING = "Developing"
    NEEDS_SUPPORT = "Needs support"
    HIGH_PRIORITY = "High priority"


class ScopeInfo(CamelModel):
    level: ScopeLevel
    id: str
    name: str
    known: bool = True
    parent_region: Optional[str] = None
    parent_sub_region: Optional[str] = None
    parent_district: Optional[str] = None


class PeriodInfo(DateRange):
    code: ReportingPeriod


class ImpactKpis(CamelModel):
    schools_supported: int = 0
    teachers_supported_male: int = 0
    teachers_supported_female: int = 0
    enrollment_estimated_reach: int = 0
    learners_assessed_unique: int = 0
    coaching_visits_completed: int = 0
    assessments_baseline_count: int = 0
    assessments_progress_count: int = 0
    assessments_endline_count: int = 0


class ImpactFunnel(CamelModel):
    """Distinct schools reaching each programme stage, counted independently."""
    trained: int = 0
    coached: int = 0
    baseline_assessed: int = 0
    endline_assessed: int = 0
    story_active: int = 0


class DomainOutcome(CamelModel):
    """
    Learning outcome for one EGRA domain.

    None means there is no data; 0 means there is data and its mean is 0.
    ``latest`` is the most recent cycle with data (endline, then progress,
    then baseline) and ``n`` counts the learner scores behind it.
    """
    baseline: Optional[float] = None
    progress: Optional[float] = None
    endline: Optional[float] = None
    latest: Optional[float] = None
    change: Optional[float] = None
    benchmark_pct: Optional[float] = None
    n: int = 0
    baseline_n: int = 0


class FidelityDriver(CamelModel):
    driver: str
    label: str
    score: float = 0.0
    weight: float = 0.0
    available: bool = False
    detail: str = ""


class ImpactFidelity(CamelModel):
    score: float = 0.0
    band: FidelityBand = FidelityBand.HIGH_PRIORITY
    drivers: List[FidelityDriver] = []


class ImpactMeta(CamelModel):
    sample_size: int = 0
    data_completeness: DataCompleteness = DataCompleteness.PARTIAL
    last_updated: Optional[datetime] = None
    schools_in_scope: int = 0
    flagged_records: int = 0


class NavigatorSchool(CamelModel):
    id: str
    name: str


class ImpactNavigator(CamelModel):
    """Child scopes available for drill-down, straight from the geography table."""
    regions: List[str] = []
    sub_regions: List[str] = []
    districts: List[str] = []
    schools: List[NavigatorSchool] = []


def empty_outcomes() -> Dict[str, DomainOutcome]:
    return {domain.value: DomainOutcome() for domain in EgraDomain}


class ImpactAggregate(CamelModel):
    """Output of the impact aggregation engine for one scope and period."""

    scope: ScopeInfo
    period: PeriodInfo
    kpis: ImpactKpis = Field(default_factory=ImpactKpis)
    funnel: ImpactFunnel = Field(default_factory=ImpactFunnel)
    outcomes: Dict[str, DomainOutcome] = Field(default_factory=empty_outcomes)
    fidelity: ImpactFidelity = Field(default_factory=ImpactFidelity)
    meta: ImpactMeta = Field(default_factory=ImpactMeta)
    navigator: ImpactNavigator = Field(default_factory=ImpactNavigator)

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")
