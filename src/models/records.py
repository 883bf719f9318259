"""
Field record schemas and the review workflow.

A record is one activity at one school on one day: a teacher training, a
coaching visit, an EGRA assessment or a story-publishing session. The payload
is a tagged union keyed by the record's module.
"""

from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Type, Union

from pydantic import Field, field_validator, model_validator

from .base import CamelModel, LenientPayload
from .egra import EgraLearnerRow, LearnerSex, parse_sex
from .permissions import PortalUser
from .utils import normalize_name


class RecordModule(str, Enum):
    """Kinds of field activity."""
    TRAINING = "training"
    VISIT = "visit"
    ASSESSMENT = "assessment"
    STORY = "story"


class RecordStatus(str, Enum):
    """Review workflow states."""
    DRAFT = "Draft"
    SUBMITTED = "Submitted"
    RETURNED = "Returned"
    APPROVED = "Approved"


class AssessmentCycle(str, Enum):
    """Where an assessment sits in the programme cycle."""
    BASELINE = "baseline"
    PROGRESS = "progress"
    ENDLINE = "endline"


# Statuses that count towards reporting
REPORTABLE_STATUSES = frozenset({RecordStatus.SUBMITTED, RecordStatus.APPROVED})

RECORD_CODE_PREFIXES: Dict[RecordModule, str] = {
    RecordModule.TRAINING: "TRN",
    RecordModule.VISIT: "VIS",
    RecordModule.ASSESSMENT: "ASM",
    RecordModule.STORY: "STY",
}

TRAINING_FOLLOW_UP_MIN_DAYS = 14


def make_record_code(module: RecordModule, record_id: int) -> str:
    """TRN-000042 style code shown to field staff."""
    return f"{RECORD_CODE_PREFIXES[RecordModule(module)]}-{record_id:06d}"


def parse_assessment_cycle(value: Optional[str]) -> Optional[AssessmentCycle]:
    """Read a cycle from an assessmentType or programType value."""
    if not value:
        return None
    text = value.strip().casefold()
    if not text:
        return None
    if "baseline" in text:
        return AssessmentCycle.BASELINE
    if "endline" in text:
        return AssessmentCycle.ENDLINE
    # Year 1, Year 2, midline, progress and any other mid-programme label
    return AssessmentCycle.PROGRESS


# Payload variants

SCHOOL_LEADER_ROLES = frozenset({
    "school leader",
    "head teacher",
    "headteacher",
    "deputy head teacher",
    "director of studies",
})


class Participant(CamelModel):
    """One row of a training attendance sheet."""
    name: Optional[str] = None
    role: Optional[str] = None
    gender: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_school_leader(self) -> bool:
        return normalize_name(self.role) in SCHOOL_LEADER_ROLES


class TrainingPayload(LenientPayload):
    numeric_fields: ClassVar[Tuple[str, ...]] = ("female_count", "male_count", "number_attended")

    participants: List[Participant] = []
    female_count: Optional[float] = None
    male_count: Optional[float] = None
    number_attended: Optional[float] = None

    @field_validator("participants", mode="before")
    @classmethod
    def _participant_rows(cls, v):
        if not isinstance(v, list):
            return []
        return [row for row in v if isinstance(row, Mapping)]

    def teachers_by_gender(self) -> Tuple[int, int]:
        """
        (male, female) teachers reached.

        Gender-tagged participant rows win when present; otherwise the stored
        male/female counts are used.
        """
        tagged = [parse_sex(p.gender) for p in self.participants]
        if any(sex is not None for sex in tagged):
            male = sum(1 for sex in tagged if sex == LearnerSex.MALE)
            female = sum(1 for sex in tagged if sex == LearnerSex.FEMALE)
            return male, female
        return int(self.male_count or 0), int(self.female_count or 0)

    def leaders_and_teachers(self) -> Tuple[int, int]:
        """(school leaders, classroom teachers) from the attendance sheet."""
        if self.participants:
            leaders = sum(1 for p in self.participants if p.is_school_leader)
            return leaders, len(self.participants) - leaders
        male, female = self.teachers_by_gender()
        return 0, male + female


OBSERVATION_SECTIONS = ("general_", "newSound_", "readingActivities_", "trickyWords_")

OBSERVATION_RATINGS: Dict[str, int] = {
    "very good": 4,
    "good": 3,
    "fair": 2,
    "can improve": 1,
}


class VisitPayload(LenientPayload):
    numeric_fields: ClassVar[Tuple[str, ...]] = ("class_size",)

    observations: Dict[str, Any] = {}
    class_size: Optional[float] = None

    @classmethod
    def _preprocess(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        observations = dict(data.pop("observations", None) or {})
        for key in list(data):
            if key.startswith(OBSERVATION_SECTIONS):
                observations[key] = data.pop(key)
        data["observations"] = observations
        return data

    def ratings(self) -> Dict[str, int]:
        """Observation items that carry a recognised rating, scored 1-4."""
        scored = {}
        for key, value in self.observations.items():
            if isinstance(value, str):
                rating = OBSERVATION_RATINGS.get(value.strip().casefold())
                if rating is not None:
                    scored[key] = rating
        return scored


class AssessmentPayload(LenientPayload):
    egra_learners: List[EgraLearnerRow] = []
    assessment_type: Optional[str] = None
    class_level: Optional[str] = None
    term: Optional[str] = None
    emis_code: Optional[str] = None
    egra_summary: Optional[Dict[str, Any]] = None

    @field_validator("egra_learners", mode="before")
    @classmethod
    def _learner_rows(cls, v):
        if not isinstance(v, list):
            return []
        return [row for row in v if isinstance(row, (Mapping, EgraLearnerRow))]

    @property
    def is_malformed(self) -> bool:
        return bool(self.malformed_fields) or any(row.is_malformed for row in self.egra_learners)


class StoryPayload(LenientPayload):
    numeric_fields: ClassVar[Tuple[str, ...]] = (
        "learners_involved",
        "stories_drafted",
        "stories_received",
        "stories_approved",
    )

    learners_involved: Optional[float] = None
    stories_drafted: Optional[float] = None
    stories_received: Optional[float] = None
    stories_approved: Optional[float] = None


RecordPayload = Union[TrainingPayload, VisitPayload, AssessmentPayload, StoryPayload]

PAYLOAD_MODELS: Dict[RecordModule, Type[LenientPayload]] = {
    RecordModule.TRAINING: TrainingPayload,
    RecordModule.VISIT: VisitPayload,
    RecordModule.ASSESSMENT: AssessmentPayload,
    RecordModule.STORY: StoryPayload,
}


def parse_payload(module: RecordModule, payload: Any) -> RecordPayload:
    """Validate a raw payload dict against the schema for its module."""
    model = PAYLOAD_MODELS[RecordModule(module)]
    if isinstance(payload, model):
        return payload
    if isinstance(payload, LenientPayload):
        payload = payload.model_dump(by_alias=True)
    return model.model_validate(payload or {})


class _ModulePayloadMixin(CamelModel):
    """Resolves the payload variant from the sibling ``module`` field."""

    @model_validator(mode="before")
    @classmethod
    def _typed_payload(cls, data: Any) -> Any:
        if isinstance(data, Mapping) and "module" in data:
            data = dict(data)
            data["payload"] = parse_payload(data["module"], data.get("payload"))
        return data


class RecordSubmission(_ModulePayloadMixin):
    """What a field form submits to create or update a record."""

    module: RecordModule
    date: date
    district: str
    school_id: Optional[int] = None
    school_name: str
    program_type: Optional[str] = None
    follow_up_date: Optional[date] = None
    status: RecordStatus = RecordStatus.SUBMITTED
    payload: RecordPayload = Field(default_factory=TrainingPayload)

    @field_validator("school_name", "district")
    @classmethod
    def _required_text(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @model_validator(mode="after")
    def _check_follow_up(self):
        if self.follow_up_date is None:
            return self
        if self.follow_up_date < self.date:
            raise ValueError("follow-up date cannot be before the activity date")
        if self.module == RecordModule.TRAINING:
            earliest = self.date + timedelta(days=TRAINING_FOLLOW_UP_MIN_DAYS)
            if self.follow_up_date < earliest:
                raise ValueError(
                    f"training follow-up must be at least {TRAINING_FOLLOW_UP_MIN_DAYS} days after the training"
                )
        return self


class RawRecord(_ModulePayloadMixin):
    """A stored field record."""

    id: int
    record_code: str
    module: RecordModule
    date: date
    district: str
    school_id: Optional[int] = None
    school_name: str
    program_type: Optional[str] = None
    follow_up_date: Optional[date] = None
    status: RecordStatus
    payload: RecordPayload
    created_by_user_id: Optional[int] = None
    created_by_name: Optional[str] = None
    review_note: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_reportable(self) -> bool:
        return self.status in REPORTABLE_STATUSES

    @property
    def school_name_key(self) -> str:
        return normalize_name(self.school_name)

    @property
    def assessment_cycle(self) -> Optional[AssessmentCycle]:
        if self.module != RecordModule.ASSESSMENT:
            return None
        explicit = parse_assessment_cycle(getattr(self.payload, "assessment_type", None))
        return explicit or parse_assessment_cycle(self.program_type) or AssessmentCycle.PROGRESS


def duplicate_key(module: RecordModule, on: date, school_name: str) -> Tuple[str, str, str]:
    """At most one record may exist per (module, date, school name)."""
    return RecordModule(module).value, on.isoformat(), normalize_name(school_name)


# Review workflow

class InvalidStatusTransitionError(Exception):
    """Raised when a status change is not an edge of the workflow."""
    pass


class ReviewPermissionError(Exception):
    """Raised when a user acts on a record beyond their role."""
    pass


REVIEW_STATUSES = frozenset({RecordStatus.APPROVED, RecordStatus.RETURNED})

_TRANSITIONS: Dict[RecordStatus, frozenset] = {
    RecordStatus.DRAFT: frozenset({RecordStatus.SUBMITTED}),
    RecordStatus.SUBMITTED: frozenset({RecordStatus.APPROVED, RecordStatus.RETURNED}),
    RecordStatus.RETURNED: frozenset({RecordStatus.SUBMITTED}),
    RecordStatus.APPROVED: frozenset(),
}

_CREATE_STATUSES = frozenset({RecordStatus.DRAFT, RecordStatus.SUBMITTED})


def check_transition(current: Optional[RecordStatus], target: RecordStatus, actor: PortalUser) -> None:
    """
    Validate a status change for ``actor``.

    ``current`` is None when the record is being created. Keeping the same
    status (an edit) is always a valid transition. Only reviewers may move a
    record to Approved or Returned; reviewers may also create records that
    are already Approved.
    """
    target = RecordStatus(target)

    if current is None:
        if target in _CREATE_STATUSES:
            return
        if target == RecordStatus.APPROVED and actor.can_review:
            return
        if target in REVIEW_STATUSES and not actor.can_review:
            raise ReviewPermissionError(f"Only reviewers can create a record as {target.value}")
        raise InvalidStatusTransitionError(f"A new record cannot start as {target.value}")

    current = RecordStatus(current)
    if target == current:
        return
    if target in REVIEW_STATUSES and not actor.can_review:
        raise ReviewPermissionError(f"Only reviewers can mark a record {target.value}")
    if target not in _TRANSITIONS[current]:
        raise InvalidStatusTransitionError(f"Cannot move a record from {current.value} to {target.value}")


def check_can_edit(record: RawRecord, actor: PortalUser) -> None:
    """Creators edit their own records until approved; reviewers edit anything."""
    if actor.can_review:
        return
    if record.created_by_user_id != actor.id:
        raise ReviewPermissionError(f"{record.record_code} belongs to another user")
    if record.status == RecordStatus.APPROVED:
        raise ReviewPermissionError(f"{record.record_code} is approved and locked")
