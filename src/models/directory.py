"""
School directory models.

A school belongs to exactly one district. Region and sub-region are never
stored on the school; they are derived from the district through the
geography reference.
"""

import re
from typing import Optional

from pydantic import field_validator, model_validator

from .base import CamelModel
from .utils import normalize_name


_SCHOOL_CODE = re.compile(r"^SCH-(\d+)$", re.IGNORECASE)


def make_school_code(school_id: int) -> str:
    return f"SCH-{school_id:04d}"


def parse_school_code(code: str) -> Optional[int]:
    """SCH-0012 -> 12; anything else -> None."""
    match = _SCHOOL_CODE.match(code.strip())
    return int(match.group(1)) if match else None


class SchoolInput(CamelModel):
    """A school as entered in the directory form."""

    name: str
    district: str
    sub_county: str = ""
    parish: str = ""
    village: Optional[str] = None
    gps_lat: Optional[float] = None
    gps_lng: Optional[float] = None
    enrolled_boys: int = 0
    enrolled_girls: int = 0

    @field_validator("name", "district")
    @classmethod
    def _required_text(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("enrolled_boys", "enrolled_girls")
    @classmethod
    def _non_negative(cls, v):
        if v < 0:
            raise ValueError("enrolment cannot be negative")
        return v

    @field_validator("gps_lat")
    @classmethod
    def _latitude(cls, v):
        if v is not None and not -90 <= v <= 90:
            raise ValueError("latitude out of range")
        return v

    @field_validator("gps_lng")
    @classmethod
    def _longitude(cls, v):
        if v is not None and not -180 <= v <= 180:
            raise ValueError("longitude out of range")
        return v


class School(SchoolInput):
    """A school in the canonical directory."""

    id: int
    school_code: str = ""
    enrolled_learners: int = 0

    @model_validator(mode="after")
    def _derived_fields(self):
        if not self.school_code:
            self.school_code = make_school_code(self.id)
        self.enrolled_learners = self.enrolled_boys + self.enrolled_girls
        return self

    @property
    def name_key(self) -> str:
        return normalize_name(self.name)

    @property
    def district_key(self) -> str:
        return normalize_name(self.district)
