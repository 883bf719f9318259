"""Tests for record schemas, codes and the review workflow."""

from datetime import date

import pytest
from pydantic import ValidationError

from models import (
    AssessmentCycle,
    AssessmentPayload,
    InvalidStatusTransitionError,
    PortalUser,
    PortalUserRole,
    RecordModule,
    RecordStatus,
    RecordSubmission,
    ReviewPermissionError,
    TrainingPayload,
    VisitPayload,
    check_can_edit,
    check_transition,
    make_record_code,
    make_school_code,
    parse_school_code,
)
from models.records import duplicate_key, parse_assessment_cycle


def test_record_codes():
    assert make_record_code(RecordModule.TRAINING, 42) == "TRN-000042"
    assert make_record_code("visit", 7) == "VIS-000007"
    assert make_record_code(RecordModule.ASSESSMENT, 1) == "ASM-000001"
    assert make_record_code(RecordModule.STORY, 123456) == "STY-123456"


def test_school_codes():
    assert make_school_code(12) == "SCH-0012"
    assert parse_school_code("sch-0012") == 12
    assert parse_school_code("School 12") is None


@pytest.mark.parametrize("text,expected", [
    ("Baseline", AssessmentCycle.BASELINE),
    ("EGRA baseline term 1", AssessmentCycle.BASELINE),
    ("ENDLINE", AssessmentCycle.ENDLINE),
    ("Year 2", AssessmentCycle.PROGRESS),
    ("midline", AssessmentCycle.PROGRESS),
    ("", None),
    (None, None),
])
def test_parse_assessment_cycle(text, expected):
    assert parse_assessment_cycle(text) == expected


class TestPayloads:

    def test_submission_types_payload_by_module(self):
        submission = RecordSubmission.model_validate({
            "module": "assessment",
            "date": "2025-02-10",
            "district": "Gulu",
            "schoolName": "School A",
            "payload": {"assessmentType": "baseline", "egraLearners": [{"learnerId": "L1", "storyReading": 9}]},
        })
        assert isinstance(submission.payload, AssessmentPayload)
        assert submission.payload.egra_learners[0].story_reading == 9
        assert submission.status == RecordStatus.SUBMITTED

    def test_training_counts_fall_back_to_totals(self):
        payload = TrainingPayload.model_validate({"maleCount": "4", "femaleCount": 6})
        assert payload.teachers_by_gender() == (4, 6)
        assert payload.leaders_and_teachers() == (0, 10)

    def test_training_participants_win_over_totals(self):
        payload = TrainingPayload.model_validate({
            "maleCount": 50,
            "participants": [
                {"gender": "Male", "role": "Teacher"},
                {"gender": "F", "role": "Head Teacher"},
                {"gender": "female", "role": "Teacher"},
            ],
        })
        assert payload.teachers_by_gender() == (1, 2)
        assert payload.leaders_and_teachers() == (1, 2)

    def test_malformed_count_is_flagged(self):
        payload = TrainingPayload.model_validate({"maleCount": "many", "femaleCount": 3})
        assert payload.male_count is None
        assert payload.is_malformed
        assert payload.teachers_by_gender() == (0, 3)

    def test_visit_observations_are_collected(self):
        payload = VisitPayload.model_validate({
            "general_lessonPlan": "Good",
            "newSound_modelling": "can improve",
            "trickyWords_practice": "Excellent?",
            "classSize": 54,
        })
        assert payload.ratings() == {"general_lessonPlan": 3, "newSound_modelling": 1}
        assert payload.class_size == 54

    def test_assessment_learner_errors_mark_payload(self):
        payload = AssessmentPayload.model_validate({"egraLearners": [{"learnerId": "L1", "storyReading": "x"}]})
        assert payload.malformed_fields == []
        assert payload.is_malformed


class TestSubmissionValidation:

    def base(self, **overrides):
        values = {"module": "training", "date": "2025-02-10", "district": "Gulu", "schoolName": "School A"}
        values.update(overrides)
        return values

    def test_blank_school_name_rejected(self):
        with pytest.raises(ValidationError):
            RecordSubmission.model_validate(self.base(schoolName="   "))

    def test_follow_up_before_date_rejected(self):
        with pytest.raises(ValidationError, match="cannot be before"):
            RecordSubmission.model_validate(self.base(module="visit", followUpDate="2025-02-01"))

    def test_training_follow_up_needs_two_weeks(self):
        with pytest.raises(ValidationError, match="at least 14 days"):
            RecordSubmission.model_validate(self.base(followUpDate="2025-02-20"))
        ok = RecordSubmission.model_validate(self.base(followUpDate="2025-02-24"))
        assert ok.follow_up_date == date(2025, 2, 24)

    def test_visit_follow_up_same_day_allowed(self):
        ok = RecordSubmission.model_validate(self.base(module="visit", followUpDate="2025-02-10"))
        assert ok.follow_up_date == ok.date


def test_duplicate_key_normalizes_school_name():
    assert duplicate_key(RecordModule.TRAINING, date(2025, 2, 10), " School  A ") == \
        duplicate_key("training", date(2025, 2, 10), "school a")


class TestWorkflow:

    @pytest.fixture
    def staff(self):
        return PortalUser(id=7)

    @pytest.fixture
    def reviewer(self):
        return PortalUser(id=1, is_me=True)

    def test_reviewer_flags(self):
        assert PortalUser(id=1, role=PortalUserRole.ADMIN).can_review
        assert PortalUser(id=1, is_superadmin=True).can_review
        assert not PortalUser(id=1, role=PortalUserRole.COACH).can_review

    @pytest.mark.parametrize("target", [RecordStatus.DRAFT, RecordStatus.SUBMITTED])
    def test_anyone_creates_draft_or_submitted(self, staff, target):
        check_transition(None, target, staff)

    def test_only_reviewer_creates_approved(self, staff, reviewer):
        check_transition(None, RecordStatus.APPROVED, reviewer)
        with pytest.raises(ReviewPermissionError):
            check_transition(None, RecordStatus.APPROVED, staff)

    def test_cannot_create_returned(self, reviewer):
        with pytest.raises(InvalidStatusTransitionError):
            check_transition(None, RecordStatus.RETURNED, reviewer)

    @pytest.mark.parametrize("current,target", [
        (RecordStatus.DRAFT, RecordStatus.SUBMITTED),
        (RecordStatus.RETURNED, RecordStatus.SUBMITTED),
        (RecordStatus.SUBMITTED, RecordStatus.SUBMITTED),
    ])
    def test_submitter_edges(self, staff, current, target):
        check_transition(current, target, staff)

    @pytest.mark.parametrize("target", [RecordStatus.APPROVED, RecordStatus.RETURNED])
    def test_review_edges_need_reviewer(self, staff, reviewer, target):
        check_transition(RecordStatus.SUBMITTED, target, reviewer)
        with pytest.raises(ReviewPermissionError):
            check_transition(RecordStatus.SUBMITTED, target, staff)

    @pytest.mark.parametrize("current,target", [
        (RecordStatus.DRAFT, RecordStatus.APPROVED),
        (RecordStatus.APPROVED, RecordStatus.SUBMITTED),
        (RecordStatus.APPROVED, RecordStatus.RETURNED),
        (RecordStatus.RETURNED, RecordStatus.APPROVED),
    ])
    def test_invalid_edges(self, reviewer, current, target):
        with pytest.raises(InvalidStatusTransitionError):
            check_transition(current, target, reviewer)

    def test_edit_rights(self, staff, reviewer, make_record):
        own = make_record("training", date(2025, 2, 10), status="Submitted", created_by_user_id=7)
        other = make_record("training", date(2025, 2, 11), status="Submitted", created_by_user_id=99)
        approved = make_record("training", date(2025, 2, 12), status="Approved", created_by_user_id=7)

        check_can_edit(own, staff)
        check_can_edit(approved, reviewer)
        with pytest.raises(ReviewPermissionError, match="another user"):
            check_can_edit(other, staff)
        with pytest.raises(ReviewPermissionError, match="locked"):
            check_can_edit(approved, staff)
