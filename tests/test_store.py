"""Tests for the in-memory record store."""

import asyncio
from datetime import date
from unittest.mock import AsyncMock

import pytest

from database import (
    DuplicateRecordError,
    InMemoryRecordStore,
    RecordNotFoundError,
    RecordQuery,
)
from models import (
    InvalidStatusTransitionError,
    RecordModule,
    RecordStatus,
    RecordSubmission,
    ReviewPermissionError,
    SchoolInput,
)


def submission(module="training", on="2025-02-10", school="School A", status="Submitted", **extra):
    values = {"module": module, "date": on, "district": "Gulu", "schoolName": school, "status": status}
    values.update(extra)
    return RecordSubmission.model_validate(values)


@pytest.fixture
def store():
    return InMemoryRecordStore()


class TestCreate:

    @pytest.mark.asyncio
    async def test_create_assigns_id_and_code(self, store, coach):
        record = await store.create_record(submission(), coach)
        assert record.id == 1
        assert record.record_code == "TRN-000001"
        assert record.created_by_user_id == coach.id
        assert record.status == RecordStatus.SUBMITTED

    @pytest.mark.asyncio
    async def test_duplicate_same_school_and_date_rejected(self, store, coach):
        first = await store.create_record(submission(), coach)
        with pytest.raises(DuplicateRecordError) as excinfo:
            await store.create_record(submission(school="  school a "), coach)
        assert excinfo.value.existing_id == first.id

    @pytest.mark.asyncio
    async def test_name_key_matches_postgres(self, store, coach):
        first = await store.create_record(submission(school="Straße Primary"), coach)
        # lower() keeps ß, so PostgreSQL treats these as two schools
        await store.create_record(submission(school="STRASSE Primary"), coach)
        with pytest.raises(DuplicateRecordError) as excinfo:
            await store.create_record(submission(school="\tstraße\n primary"), coach)
        assert excinfo.value.existing_id == first.id

    @pytest.mark.asyncio
    async def test_same_school_other_module_or_date_allowed(self, store, coach):
        await store.create_record(submission(), coach)
        await store.create_record(submission(module="visit"), coach)
        await store.create_record(submission(on="2025-02-11"), coach)
        records = await store.fetch_records(RecordQuery(start=date(2025, 1, 1), end=date(2025, 12, 31)))
        assert len(records) == 3

    @pytest.mark.asyncio
    async def test_non_reviewer_cannot_create_approved(self, store, coach):
        with pytest.raises(ReviewPermissionError):
            await store.create_record(submission(status="Approved"), coach)

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_only_one_wins(self, store, coach):
        results = await asyncio.gather(
            *(store.create_record(submission(), coach) for _ in range(5)),
            return_exceptions=True,
        )
        created = [r for r in results if not isinstance(r, Exception)]
        assert len(created) == 1
        assert all(isinstance(r, DuplicateRecordError) for r in results if isinstance(r, Exception))


class TestUpdate:

    @pytest.mark.asyncio
    async def test_update_with_new_date_does_not_collide_with_itself(self, store, coach):
        record = await store.create_record(submission(), coach)
        updated = await store.update_record(record.id, submission(on="2025-02-12"), coach)
        assert updated.id == record.id
        assert updated.date == date(2025, 2, 12)

        # The old slot is free again
        await store.create_record(submission(), coach)

    @pytest.mark.asyncio
    async def test_update_into_taken_slot_rejected(self, store, coach):
        await store.create_record(submission(), coach)
        other = await store.create_record(submission(on="2025-02-11"), coach)
        with pytest.raises(DuplicateRecordError):
            await store.update_record(other.id, submission(), coach)

    @pytest.mark.asyncio
    async def test_update_missing_record(self, store, coach):
        with pytest.raises(RecordNotFoundError):
            await store.update_record(404, submission(), coach)

    @pytest.mark.asyncio
    async def test_readers_keep_their_copy(self, store, coach):
        record = await store.create_record(submission(), coach)
        before = await store.get_record(record.id)
        await store.update_record(record.id, submission(on="2025-03-01"), coach)
        assert before.date == date(2025, 2, 10)


class TestReview:

    @pytest.mark.asyncio
    async def test_approve_and_lock(self, store, coach, supervisor):
        record = await store.create_record(submission(), coach)
        approved = await store.set_status(record.id, RecordStatus.APPROVED, supervisor, review_note="Checked")
        assert approved.status == RecordStatus.APPROVED
        assert approved.review_note == "Checked"

        with pytest.raises(ReviewPermissionError):
            await store.update_record(record.id, submission(on="2025-02-13"), coach)

    @pytest.mark.asyncio
    async def test_return_and_resubmit(self, store, coach, supervisor):
        record = await store.create_record(submission(), coach)
        await store.set_status(record.id, RecordStatus.RETURNED, supervisor)
        resubmitted = await store.set_status(record.id, RecordStatus.SUBMITTED, coach)
        assert resubmitted.status == RecordStatus.SUBMITTED

    @pytest.mark.asyncio
    async def test_draft_cannot_jump_to_approved(self, store, coach, supervisor):
        record = await store.create_record(submission(status="Draft"), coach)
        with pytest.raises(InvalidStatusTransitionError):
            await store.set_status(record.id, RecordStatus.APPROVED, supervisor)


class TestQueriesAndListeners:

    @pytest.mark.asyncio
    async def test_default_query_excludes_drafts_and_returned(self, store, coach, supervisor):
        await store.create_record(submission(status="Draft"), coach)
        kept = await store.create_record(submission(on="2025-02-11"), coach)
        returned = await store.create_record(submission(on="2025-02-12"), coach)
        await store.set_status(returned.id, RecordStatus.RETURNED, supervisor)

        records = await store.fetch_records(RecordQuery(start=date(2025, 1, 1), end=date(2025, 12, 31)))
        assert [r.id for r in records] == [kept.id]

    @pytest.mark.asyncio
    async def test_query_filters(self, store, coach):
        await store.create_record(submission(), coach)
        await store.create_record(submission(module="visit", on="2025-04-01"), coach)
        query = RecordQuery(
            start=date(2025, 1, 1),
            end=date(2025, 3, 31),
            modules=frozenset({RecordModule.TRAINING}),
            created_by_user_id=coach.id,
        )
        records = await store.fetch_records(query)
        assert [r.module for r in records] == [RecordModule.TRAINING]

    @pytest.mark.asyncio
    async def test_listeners_run_after_writes_and_failures_are_ignored(self, store, coach):
        listener = AsyncMock()
        broken = AsyncMock(side_effect=RuntimeError("cache down"))
        store.add_write_listener(broken)
        store.add_write_listener(listener)

        record = await store.create_record(submission(), coach)
        listener.assert_awaited_once_with(record)

    @pytest.mark.asyncio
    async def test_add_school_generates_code(self, store):
        school = await store.add_school(SchoolInput(name="Layibi P7", district="Gulu", enrolled_boys=3, enrolled_girls=4))
        assert school.school_code == "SCH-0001"
        assert school.enrolled_learners == 7
        assert await store.list_schools() == [school]


def test_from_snapshot_fills_defaults():
    store = InMemoryRecordStore.from_snapshot({
        "schools": [{"id": 4, "name": "School A", "district": "Gulu"}],
        "records": [{"module": "visit", "date": "2025-02-10", "district": "Gulu", "schoolName": "School A"}],
    })
    record = asyncio.run(store.get_record(1))
    assert record.record_code == "VIS-000001"
    assert record.status == RecordStatus.SUBMITTED
    assert record.updated_at == record.created_at
