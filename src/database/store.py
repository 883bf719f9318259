"""
Record store: persistence of field records and the school directory.

Two implementations share one abstract interface:
- InMemoryRecordStore for tests, fixtures and the CLI
- PostgresRecordStore backed by the asyncpg pool

Both enforce one record per (module, date, school name) and route every
status change through the review workflow in models.records.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Mapping, Optional

import asyncpg

from models import (
    RawRecord,
    RecordModule,
    RecordStatus,
    RecordSubmission,
    REPORTABLE_STATUSES,
    PortalUser,
    School,
    SchoolInput,
    check_can_edit,
    check_transition,
    make_record_code,
)
from models.records import duplicate_key

from .connection import DatabaseConnectionError, DatabasePool
from .queries import RecordQueries


logger = logging.getLogger(__name__)


class DuplicateRecordError(Exception):
    """Raised when a record already exists for the module, date and school."""

    def __init__(self, module: RecordModule, on: date, school_name: str, existing_id: Optional[int] = None):
        self.module = module
        self.date = on
        self.school_name = school_name
        self.existing_id = existing_id
        super().__init__(
            f"A {RecordModule(module).value} record for {school_name!r} on {on.isoformat()} already exists"
        )


class RecordNotFoundError(Exception):
    """Raised when a record id does not exist."""
    pass


class StoreUnavailableError(Exception):
    """Raised when the store cannot be read or written. Retryable."""
    pass


@dataclass(frozen=True)
class RecordQuery:
    """Filter for bulk record reads."""
    start: date
    end: date
    statuses: FrozenSet[RecordStatus] = field(default_factory=lambda: REPORTABLE_STATUSES)
    modules: Optional[FrozenSet[RecordModule]] = None
    created_by_user_id: Optional[int] = None

    def matches(self, record: RawRecord) -> bool:
        if not self.start <= record.date <= self.end:
            return False
        if self.statuses and record.status not in self.statuses:
            return False
        if self.modules and record.module not in self.modules:
            return False
        if self.created_by_user_id is not None and record.created_by_user_id != self.created_by_user_id:
            return False
        return True


WriteListener = Callable[[RawRecord], Awaitable[None]]


def _record_values(submission: RecordSubmission, actor: PortalUser) -> Dict[str, Any]:
    return {
        'module': submission.module,
        'date': submission.date,
        'district': submission.district,
        'school_id': submission.school_id,
        'school_name': submission.school_name,
        'program_type': submission.program_type,
        'follow_up_date': submission.follow_up_date,
        'status': submission.status,
        'payload': submission.payload,
        'created_by_user_id': actor.id,
        'created_by_name': actor.full_name,
    }


class RecordStore(ABC):
    """Abstract record store."""

    def __init__(self):
        self._listeners: List[WriteListener] = []

    def add_write_listener(self, listener: WriteListener) -> None:
        """Register a coroutine called after every successful write."""
        self._listeners.append(listener)

    async def _notify(self, record: RawRecord) -> None:
        for listener in self._listeners:
            try:
                await listener(record)
            except Exception as e:
                # Listeners (cache invalidation) are best effort; the write already happened
                logger.warning(f"Write listener failed for {record.record_code}: {e}")

    @abstractmethod
    async def list_schools(self) -> List[School]:
        """All schools in the directory."""
        pass

    @abstractmethod
    async def add_school(self, school: SchoolInput) -> School:
        pass

    @abstractmethod
    async def get_record(self, record_id: int) -> RawRecord:
        """Get a record by id, raising RecordNotFoundError if missing."""
        pass

    @abstractmethod
    async def fetch_records(self, query: RecordQuery) -> List[RawRecord]:
        """Records matching the query, ordered by date then id."""
        pass

    @abstractmethod
    async def create_record(self, submission: RecordSubmission, actor: PortalUser) -> RawRecord:
        pass

    @abstractmethod
    async def update_record(self, record_id: int, submission: RecordSubmission, actor: PortalUser) -> RawRecord:
        pass

    @abstractmethod
    async def set_status(
        self,
        record_id: int,
        status: RecordStatus,
        actor: PortalUser,
        review_note: Optional[str] = None,
    ) -> RawRecord:
        pass


class InMemoryRecordStore(RecordStore):
    """
    Record store held in process memory.

    Writers are serialized by a single asyncio.Lock. Records are replaced
    copy-on-write, so a reader holding a list from fetch_records always sees
    whole records even while writes continue.
    """

    def __init__(self, schools: Optional[List[School]] = None, records: Optional[List[RawRecord]] = None):
        super().__init__()
        self._lock = asyncio.Lock()
        self._schools: Dict[int, School] = {school.id: school for school in schools or []}
        self._records: Dict[int, RawRecord] = {record.id: record for record in records or []}
        self._keys: Dict[tuple, int] = {
            duplicate_key(r.module, r.date, r.school_name): r.id for r in self._records.values()
        }
        self._next_record_id = max(self._records, default=0) + 1
        self._next_school_id = max(self._schools, default=0) + 1

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, Any]) -> "InMemoryRecordStore":
        """
        Build a store from a JSON snapshot.

        Expected shape: {"schools": [School...], "records": [RawRecord...]}.
        Records missing id, code or timestamps get them assigned.
        """
        schools = [School.model_validate(item) for item in snapshot.get("schools") or []]

        records = []
        loaded_at = datetime.now(timezone.utc)
        for index, item in enumerate(snapshot.get("records") or [], start=1):
            item = dict(item)
            item.setdefault("id", index)
            item.setdefault("recordCode", make_record_code(RecordModule(item["module"]), item["id"]))
            item.setdefault("status", RecordStatus.SUBMITTED.value)
            item.setdefault("createdAt", item.get("updatedAt") or loaded_at)
            item.setdefault("updatedAt", item["createdAt"])
            records.append(RawRecord.model_validate(item))

        logger.info(f"Loaded snapshot with {len(schools)} schools and {len(records)} records")
        return cls(schools=schools, records=records)

    async def list_schools(self) -> List[School]:
        return sorted(self._schools.values(), key=lambda school: school.id)

    async def add_school(self, school: SchoolInput) -> School:
        async with self._lock:
            school_id = self._next_school_id
            self._next_school_id += 1
            stored = School(id=school_id, **school.model_dump())
            self._schools[school_id] = stored
        return stored

    async def get_record(self, record_id: int) -> RawRecord:
        record = self._records.get(record_id)
        if record is None:
            raise RecordNotFoundError(f"Record {record_id} not found")
        return record

    async def fetch_records(self, query: RecordQuery) -> List[RawRecord]:
        snapshot = list(self._records.values())
        matched = [record for record in snapshot if query.matches(record)]
        return sorted(matched, key=lambda record: (record.date, record.id))

    def _check_duplicate(self, submission: RecordSubmission, exclude_id: Optional[int] = None) -> None:
        key = duplicate_key(submission.module, submission.date, submission.school_name)
        existing = self._keys.get(key)
        if existing is not None and existing != exclude_id:
            raise DuplicateRecordError(submission.module, submission.date, submission.school_name, existing)

    async def create_record(self, submission: RecordSubmission, actor: PortalUser) -> RawRecord:
        check_transition(None, submission.status, actor)

        async with self._lock:
            self._check_duplicate(submission)
            record_id = self._next_record_id
            self._next_record_id += 1
            now = datetime.now(timezone.utc)
            record = RawRecord(
                id=record_id,
                record_code=make_record_code(submission.module, record_id),
                created_at=now,
                updated_at=now,
                **_record_values(submission, actor),
            )
            self._records[record_id] = record
            self._keys[duplicate_key(record.module, record.date, record.school_name)] = record_id

        logger.info(f"Created {record.record_code} ({record.status.value})", extra={"record_id": record_id})
        await self._notify(record)
        return record

    async def update_record(self, record_id: int, submission: RecordSubmission, actor: PortalUser) -> RawRecord:
        async with self._lock:
            current = await self.get_record(record_id)
            check_can_edit(current, actor)
            check_transition(current.status, submission.status, actor)
            self._check_duplicate(submission, exclude_id=record_id)

            values = _record_values(submission, actor)
            values.pop('created_by_user_id')
            values.pop('created_by_name')
            updated = current.model_copy(update={**values, 'updated_at': datetime.now(timezone.utc)})

            self._keys.pop(duplicate_key(current.module, current.date, current.school_name), None)
            self._keys[duplicate_key(updated.module, updated.date, updated.school_name)] = record_id
            self._records[record_id] = updated

        logger.info(f"Updated {updated.record_code}", extra={"record_id": record_id})
        await self._notify(updated)
        return updated

    async def set_status(
        self,
        record_id: int,
        status: RecordStatus,
        actor: PortalUser,
        review_note: Optional[str] = None,
    ) -> RawRecord:
        async with self._lock:
            current = await self.get_record(record_id)
            check_can_edit(current, actor)
            check_transition(current.status, status, actor)
            update: Dict[str, Any] = {'status': RecordStatus(status), 'updated_at': datetime.now(timezone.utc)}
            if review_note is not None:
                update['review_note'] = review_note
            updated = current.model_copy(update=update)
            self._records[record_id] = updated

        logger.info(f"{updated.record_code}: {current.status.value} -> {updated.status.value}")
        await self._notify(updated)
        return updated


class PostgresRecordStore(RecordStore):
    """Record store backed by PostgreSQL through the shared asyncpg pool."""

    def __init__(self, pool: DatabasePool):
        super().__init__()
        self.pool = pool

    async def _call(self, operation, *args, **kwargs):
        """Run a query, turning connection-level failures into StoreUnavailableError."""
        try:
            return await operation(self.pool, *args, **kwargs)
        except asyncpg.UniqueViolationError:
            raise
        except (DatabaseConnectionError, OSError, asyncio.TimeoutError, asyncpg.PostgresError,
                asyncpg.InterfaceError) as e:
            logger.error(f"Record store unavailable: {e}")
            raise StoreUnavailableError(str(e)) from e

    async def list_schools(self) -> List[School]:
        return await self._call(RecordQueries.list_schools)

    async def add_school(self, school: SchoolInput) -> School:
        return await self._call(RecordQueries.insert_school, school)

    async def get_record(self, record_id: int) -> RawRecord:
        record = await self._call(RecordQueries.get_record, record_id)
        if record is None:
            raise RecordNotFoundError(f"Record {record_id} not found")
        return record

    async def fetch_records(self, query: RecordQuery) -> List[RawRecord]:
        return await self._call(
            RecordQueries.get_records_in_range,
            query.start,
            query.end,
            statuses=query.statuses,
            modules=query.modules,
            created_by_user_id=query.created_by_user_id,
        )

    async def _ensure_unique(self, submission: RecordSubmission, exclude_id: Optional[int] = None) -> None:
        existing = await self._call(
            RecordQueries.find_duplicate,
            submission.module,
            submission.date,
            submission.school_name,
            exclude_id=exclude_id,
        )
        if existing is not None:
            raise DuplicateRecordError(submission.module, submission.date, submission.school_name, existing)

    async def create_record(self, submission: RecordSubmission, actor: PortalUser) -> RawRecord:
        check_transition(None, submission.status, actor)
        await self._ensure_unique(submission)

        try:
            record = await self._call(RecordQueries.insert_record, _record_values(submission, actor))
        except asyncpg.UniqueViolationError as e:
            # Lost a race with a concurrent insert
            raise DuplicateRecordError(submission.module, submission.date, submission.school_name) from e

        logger.info(f"Created {record.record_code} ({record.status.value})", extra={"record_id": record.id})
        await self._notify(record)
        return record

    async def update_record(self, record_id: int, submission: RecordSubmission, actor: PortalUser) -> RawRecord:
        current = await self.get_record(record_id)
        check_can_edit(current, actor)
        check_transition(current.status, submission.status, actor)
        await self._ensure_unique(submission, exclude_id=record_id)

        try:
            updated = await self._call(RecordQueries.update_record, record_id, _record_values(submission, actor))
        except asyncpg.UniqueViolationError as e:
            raise DuplicateRecordError(submission.module, submission.date, submission.school_name) from e

        if updated is None:
            raise RecordNotFoundError(f"Record {record_id} not found")
        await self._notify(updated)
        return updated

    async def set_status(
        self,
        record_id: int,
        status: RecordStatus,
        actor: PortalUser,
        review_note: Optional[str] = None,
    ) -> RawRecord:
        current = await self.get_record(record_id)
        check_can_edit(current, actor)
        check_transition(current.status, status, actor)

        updated = await self._call(RecordQueries.update_status, record_id, status, review_note)
        if updated is None:
            raise RecordNotFoundError(f"Record {record_id} not found")

        logger.info(f"{updated.record_code}: {current.status.value} -> {updated.status.value}")
        await self._notify(updated)
        return updated
