"""
EGRA learner scoring and class summaries.

Turns the per-learner rows captured on the assessment form into normalized
learner records, a fluency level per learner, and a class summary with
per-domain averages for boys, girls and the whole class.
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import Field

from models import CamelModel, EgraDomain, EgraLearnerRow, FluencyLevel, LearnerSex
from models.utils import mean, parse_score, percent, round_half_up


logger = logging.getLogger(__name__)

# Upper-inclusive story-reading WPM bands
FLUENCY_BANDS = (
    (10, FluencyLevel.NON_READER),
    (25, FluencyLevel.EMERGING),
    (45, FluencyLevel.DEVELOPING),
    (60, FluencyLevel.TRANSITIONAL),
)

_LEVELS_BY_TEXT = {level.value.casefold(): level for level in FluencyLevel}


def classify(story_reading_wpm: Any) -> Union[FluencyLevel, str]:
    """
    Fluency level for a story-reading words-per-minute score.

    Returns "" when the score is missing or unreadable; a missing score is
    never treated as 0.
    """
    wpm = parse_score(story_reading_wpm)
    if wpm is None:
        return ""
    for upper, level in FLUENCY_BANDS:
        if wpm <= upper:
            return level
    return FluencyLevel.FLUENT


def parse_level(value: Any) -> Optional[FluencyLevel]:
    """Read a stored fluency level, ignoring anything that is not one of the five."""
    if isinstance(value, FluencyLevel):
        return value
    if not isinstance(value, str):
        return None
    return _LEVELS_BY_TEXT.get(value.strip().casefold())


def resolve_level(row: EgraLearnerRow) -> Optional[FluencyLevel]:
    """Stored level when valid, else computed from story reading."""
    stored = parse_level(row.fluency_level)
    if stored is not None:
        return stored
    computed = classify(row.story_reading)
    return computed or None


class DomainAverages(CamelModel):
    letter_names: float = Field(0.0, serialization_alias="letterNames")
    letter_sounds: float = Field(0.0, serialization_alias="letterSounds")
    real_words: float = Field(0.0, serialization_alias="realWords")
    made_up_words: float = Field(0.0, serialization_alias="madeUpWords")
    story_reading: float = Field(0.0, serialization_alias="storyReading")
    comprehension: float = 0.0

    def get(self, domain: EgraDomain) -> float:
        return self.by_domain()[domain.value]

    def by_domain(self) -> Dict[str, float]:
        return {
            EgraDomain.LETTER_NAMES.value: self.letter_names,
            EgraDomain.LETTER_SOUNDS.value: self.letter_sounds,
            EgraDomain.REAL_WORDS.value: self.real_words,
            EgraDomain.MADE_UP_WORDS.value: self.made_up_words,
            EgraDomain.STORY_READING.value: self.story_reading,
            EgraDomain.COMPREHENSION.value: self.comprehension,
        }


class LevelShare(CamelModel):
    count: int = 0
    percent: float = 0.0


class NormalizedLearner(CamelModel):
    """A learner row with every score as a number or None, never NaN."""
    learner_id: Optional[str] = None
    learner_name: Optional[str] = None
    sex: Optional[LearnerSex] = None
    age: Optional[float] = None
    letter_names: Optional[float] = None
    letter_sounds: Optional[float] = None
    real_words: Optional[float] = None
    made_up_words: Optional[float] = None
    story_reading: Optional[float] = None
    comprehension: Optional[float] = None
    fluency_level: Optional[FluencyLevel] = None


class EgraClassSummary(CamelModel):
    learners_assessed: int = 0
    unclassified: int = 0
    class_averages: DomainAverages = Field(default_factory=DomainAverages)
    boys_averages: DomainAverages = Field(default_factory=DomainAverages)
    girls_averages: DomainAverages = Field(default_factory=DomainAverages)
    level_distribution: Dict[str, LevelShare] = Field(
        default_factory=lambda: {level.value: LevelShare() for level in FluencyLevel}
    )
    learners: List[NormalizedLearner] = []


def coerce_rows(rows: Iterable[Any]) -> List[EgraLearnerRow]:
    """Accept raw dicts or EgraLearnerRow objects; skip anything else."""
    coerced = []
    for row in rows or []:
        if isinstance(row, EgraLearnerRow):
            coerced.append(row)
        elif isinstance(row, Mapping):
            coerced.append(EgraLearnerRow.model_validate(row))
        else:
            logger.warning(f"Skipping EGRA row of unexpected type {type(row).__name__}")
    return coerced


def _averages(rows: List[EgraLearnerRow]) -> DomainAverages:
    values = {}
    for domain in EgraDomain:
        domain_mean = mean(v for v in (row.score(domain) for row in rows) if v is not None)
        values[domain] = round_half_up(domain_mean, 1) if domain_mean is not None else 0.0
    return DomainAverages(
        letter_names=values[EgraDomain.LETTER_NAMES],
        letter_sounds=values[EgraDomain.LETTER_SOUNDS],
        real_words=values[EgraDomain.REAL_WORDS],
        made_up_words=values[EgraDomain.MADE_UP_WORDS],
        story_reading=values[EgraDomain.STORY_READING],
        comprehension=values[EgraDomain.COMPREHENSION],
    )


def normalize_learner(row: EgraLearnerRow) -> NormalizedLearner:
    return NormalizedLearner(
        learner_id=row.learner_id,
        learner_name=row.learner_name,
        sex=row.parsed_sex,
        age=row.age,
        letter_names=row.letter_names,
        letter_sounds=row.letter_sounds,
        real_words=row.real_words,
        made_up_words=row.made_up_words,
        story_reading=row.story_reading,
        comprehension=row.comprehension,
        fluency_level=resolve_level(row),
    )


def summarize(rows: Iterable[Any]) -> EgraClassSummary:
    """
    Summarize one class's EGRA rows.

    Only active rows count. Averages are rounded half up to one decimal and
    are 0 (not None) when a domain has no parseable values. Level percentages
    are over active rows, with a denominator of 1 when there are none.
    """
    active = [row for row in coerce_rows(rows) if row.is_active]

    counts = {level: 0 for level in FluencyLevel}
    unclassified = 0
    for row in active:
        level = resolve_level(row)
        if level is None:
            unclassified += 1
        else:
            counts[level] += 1

    denominator = len(active) or 1
    distribution = {
        level.value: LevelShare(count=count, percent=percent(count, denominator))
        for level, count in counts.items()
    }

    boys = [row for row in active if row.parsed_sex == LearnerSex.MALE]
    girls = [row for row in active if row.parsed_sex == LearnerSex.FEMALE]

    return EgraClassSummary(
        learners_assessed=len(active),
        unclassified=unclassified,
        class_averages=_averages(active),
        boys_averages=_averages(boys),
        girls_averages=_averages(girls),
        level_distribution=distribution,
        learners=[normalize_learner(row) for row in active],
    )


def build_assessment_payload(rows: Iterable[Any]) -> Dict[str, Any]:
    """
    Payload fragment persisted with an assessment record.

    Learners are stored normalized; the stored summary leaves out the learner
    list so that it never carries learner identities twice.
    """
    summary = summarize(rows)
    learners = [
        learner.model_dump(by_alias=True, mode="json")
        for learner in summary.learners
    ]
    return {
        "egraLearners": learners,
        "egraSummary": summary.model_dump(by_alias=True, mode="json", exclude={"learners"}),
    }
