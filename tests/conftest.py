"""Shared fixtures for the literacy impact test suite."""

import sys
from datetime import date, datetime, timezone
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from aggregation import ImpactAggregationEngine, PeriodResolver
from database import InMemoryRecordStore
from geography import GeographyResolver, load_reference
from literacy_impact.config import AggregationSettings
from models import PortalUser, RawRecord, RecordModule, School, make_record_code


TODAY = date(2025, 3, 15)
STAMP = datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def reference():
    """The bundled Uganda geography table."""
    return load_reference()


@pytest.fixture
def geography(reference):
    return GeographyResolver(reference)


@pytest.fixture
def period_resolver():
    """Resolver pinned to 15 March 2025 (FY 2024/25, term 1, fiscal Q3)."""
    return PeriodResolver(fiscal_year_start_month=7, today=lambda: TODAY)


@pytest.fixture
def gulu_schools():
    return [
        School(id=1, name="School A", district="Gulu", sub_county="Bardege", enrolled_boys=120, enrolled_girls=130),
        School(id=2, name="School B", district="Gulu", sub_county="Laroo", enrolled_boys=80, enrolled_girls=90),
    ]


@pytest.fixture
def coach():
    return PortalUser(id=7, full_name="Field Coach")


@pytest.fixture
def supervisor():
    return PortalUser(id=1, full_name="Programme Supervisor", is_supervisor=True)


class RecordFactory:
    """Builds stored records with sequential ids."""

    def __init__(self):
        self.next_id = 1

    def __call__(self, module, on, school_name="School A", district="Gulu", status="Approved",
                 payload=None, school_id=None, program_type=None, updated_at=None, created_by_user_id=7):
        record_id = self.next_id
        self.next_id += 1
        module = RecordModule(module)
        return RawRecord(
            id=record_id,
            record_code=make_record_code(module, record_id),
            module=module,
            date=on,
            district=district,
            school_id=school_id,
            school_name=school_name,
            program_type=program_type,
            status=status,
            payload=payload or {},
            created_by_user_id=created_by_user_id,
            created_at=STAMP,
            updated_at=updated_at or STAMP,
        )


@pytest.fixture
def make_record():
    return RecordFactory()


def learner(learner_id, sex, story, **scores):
    """EGRA row in the camelCase form a field tablet submits."""
    row = {"learnerId": learner_id, "sex": sex, "storyReading": story}
    row.update(scores)
    return row


def assessment_payload(cycle, learners):
    return {"assessmentType": cycle, "classLevel": "P3", "egraLearners": learners}


@pytest.fixture
def build_engine(geography, period_resolver):
    """Factory for an engine over an in-memory store."""

    def build(schools, records, **kwargs):
        store = InMemoryRecordStore(schools=schools, records=records)
        kwargs.setdefault("settings", AggregationSettings())
        return ImpactAggregationEngine(store, geography, period_resolver=period_resolver, **kwargs)

    return build
