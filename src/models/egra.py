"""
EGRA (Early Grade Reading Assessment) learner schemas.

One EgraLearnerRow per learner per assessment sitting. Scores come straight
from hand-filled forms, so every score is optional and lenient.
"""

from enum import Enum
from typing import ClassVar, Dict, Optional, Tuple

from pydantic import AliasChoices, Field, field_validator

from .base import LenientPayload


class FluencyLevel(str, Enum):
    """Reading fluency levels, lowest first."""
    NON_READER = "Non-Reader"
    EMERGING = "Emerging Reader"
    DEVELOPING = "Developing Reader"
    TRANSITIONAL = "Transitional Reader"
    FLUENT = "Fluent Reader"


class EgraDomain(str, Enum):
    """The six scored EGRA subtasks, keyed as they appear in payloads."""
    LETTER_NAMES = "letterNames"
    LETTER_SOUNDS = "letterSounds"
    REAL_WORDS = "realWords"
    MADE_UP_WORDS = "madeUpWords"
    STORY_READING = "storyReading"
    COMPREHENSION = "comprehension"


# Domain -> attribute on EgraLearnerRow
DOMAIN_FIELDS: Dict[EgraDomain, str] = {
    EgraDomain.LETTER_NAMES: "letter_names",
    EgraDomain.LETTER_SOUNDS: "letter_sounds",
    EgraDomain.REAL_WORDS: "real_words",
    EgraDomain.MADE_UP_WORDS: "made_up_words",
    EgraDomain.STORY_READING: "story_reading",
    EgraDomain.COMPREHENSION: "comprehension",
}


class LearnerSex(str, Enum):
    MALE = "M"
    FEMALE = "F"


_MALE = {"m", "male", "boy", "b"}
_FEMALE = {"f", "female", "girl", "g"}


def parse_sex(value) -> Optional[LearnerSex]:
    """Map the many spellings used on forms onto M/F; anything else is None."""
    if not isinstance(value, str):
        return None
    text = value.strip().casefold()
    if text in _MALE:
        return LearnerSex.MALE
    if text in _FEMALE:
        return LearnerSex.FEMALE
    return None


def _score_field(*names: str):
    return Field(None, validation_alias=AliasChoices(*names), serialization_alias=names[0])


class EgraLearnerRow(LenientPayload):
    """A single learner's EGRA result row."""

    numeric_fields: ClassVar[Tuple[str, ...]] = (
        "age",
        "letter_names",
        "letter_sounds",
        "real_words",
        "made_up_words",
        "story_reading",
        "comprehension",
    )

    learner_id: Optional[str] = None
    learner_name: Optional[str] = None
    sex: Optional[str] = None
    age: Optional[float] = None

    letter_names: Optional[float] = _score_field("letterNames", "letter_names", "letterIdentification")
    letter_sounds: Optional[float] = _score_field("letterSounds", "letter_sounds", "soundIdentification")
    real_words: Optional[float] = _score_field("realWords", "real_words", "decodableWords")
    made_up_words: Optional[float] = _score_field("madeUpWords", "made_up_words", "undecodableWords")
    story_reading: Optional[float] = _score_field("storyReading", "story_reading")
    comprehension: Optional[float] = _score_field("comprehension", "readingComprehension")

    fluency_level: Optional[str] = None

    @field_validator("learner_id", "learner_name", "sex", "fluency_level", mode="before")
    @classmethod
    def _text(cls, v):
        """Forms send ids as numbers sometimes; blanks mean missing."""
        if v is None:
            return None
        text = str(v).strip()
        return text or None

    def score(self, domain: EgraDomain) -> Optional[float]:
        return getattr(self, DOMAIN_FIELDS[domain])

    @property
    def parsed_sex(self) -> Optional[LearnerSex]:
        return parse_sex(self.sex)

    @property
    def has_any_score(self) -> bool:
        return any(self.score(domain) is not None for domain in EgraDomain)

    @property
    def is_active(self) -> bool:
        """
        A row counts once anything beyond the pre-filled sex has been entered.

        Data-entry forms default sex to "M", so sex alone never activates a row.
        """
        return bool(self.learner_id or self.learner_name or self.age is not None or self.has_any_score)
