"""
Core data models for literacy impact monitoring.

This package contains:
- Field record schemas, payload variants and the review workflow
- EGRA learner rows and fluency levels
- School directory models
- Impact aggregate output schemas
- Portal user and role models
"""

from .base import CamelModel, LenientPayload
from .egra import EgraDomain, EgraLearnerRow, FluencyLevel, LearnerSex, parse_sex
from .records import (
    AssessmentCycle,
    AssessmentPayload,
    InvalidStatusTransitionError,
    Participant,
    RawRecord,
    RecordModule,
    RecordPayload,
    RecordStatus,
    RecordSubmission,
    REPORTABLE_STATUSES,
    ReviewPermissionError,
    StoryPayload,
    TrainingPayload,
    VisitPayload,
    check_can_edit,
    check_transition,
    make_record_code,
    parse_payload,
)
from .directory import School, SchoolInput, make_school_code, parse_school_code
from .aggregate import (
    DataCompleteness,
    DateRange,
    DomainOutcome,
    FidelityBand,
    FidelityDriver,
    GeoScope,
    ImpactAggregate,
    ImpactFidelity,
    ImpactFunnel,
    ImpactKpis,
    ImpactMeta,
    ImpactNavigator,
    NavigatorSchool,
    PeriodInfo,
    ReportingPeriod,
    ScopeInfo,
    ScopeLevel,
)
from .permissions import PortalUser, PortalUserRole
from . import utils

__all__ = [
    # Base schemas
    "CamelModel",
    "LenientPayload",

    # EGRA
    "EgraDomain",
    "EgraLearnerRow",
    "FluencyLevel",
    "LearnerSex",
    "parse_sex",

    # Records
    "AssessmentCycle",
    "AssessmentPayload",
    "InvalidStatusTransitionError",
    "Participant",
    "RawRecord",
    "RecordModule",
    "RecordPayload",
    "RecordStatus",
    "RecordSubmission",
    "REPORTABLE_STATUSES",
    "ReviewPermissionError",
    "StoryPayload",
    "TrainingPayload",
    "VisitPayload",
    "check_can_edit",
    "check_transition",
    "make_record_code",
    "parse_payload",

    # Directory
    "School",
    "SchoolInput",
    "make_school_code",
    "parse_school_code",

    # Aggregates
    "DataCompleteness",
    "DateRange",
    "DomainOutcome",
    "FidelityBand",
    "FidelityDriver",
    "GeoScope",
    "ImpactAggregate",
    "ImpactFidelity",
    "ImpactFunnel",
    "ImpactKpis",
    "ImpactMeta",
    "ImpactNavigator",
    "NavigatorSchool",
    "PeriodInfo",
    "ReportingPeriod",
    "ScopeInfo",
    "ScopeLevel",

    # Permissions
    "PortalUser",
    "PortalUserRole",

    # Utilities
    "utils",
]
