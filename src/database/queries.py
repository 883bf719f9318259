"""
Data access layer for field records and the school directory.

Provides async queries for the PostgreSQL record store: schema setup, record
inserts and updates with duplicate detection, date-range reads for the
aggregation engine, and school directory reads and writes.
"""

import json
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from models import RawRecord, RecordModule, RecordStatus, School, SchoolInput, make_record_code, make_school_code
from models.utils import normalize_name

from .connection import DatabasePool


logger = logging.getLogger(__name__)

# Same key as models.utils.normalize_name: collapse whitespace, trim, lower()
SCHOOL_NAME_KEY_SQL = "lower(btrim(regexp_replace({column}, '\\s+', ' ', 'g')))"

SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS schools_directory (
    id SERIAL PRIMARY KEY,
    school_code TEXT UNIQUE,
    name TEXT NOT NULL,
    district TEXT NOT NULL,
    sub_county TEXT NOT NULL DEFAULT '',
    parish TEXT NOT NULL DEFAULT '',
    village TEXT,
    gps_lat DOUBLE PRECISION,
    gps_lng DOUBLE PRECISION,
    enrolled_boys INTEGER NOT NULL DEFAULT 0 CHECK (enrolled_boys >= 0),
    enrolled_girls INTEGER NOT NULL DEFAULT 0 CHECK (enrolled_girls >= 0),
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS portal_records (
    id SERIAL PRIMARY KEY,
    record_code TEXT UNIQUE,
    module TEXT NOT NULL CHECK (module IN ('training', 'visit', 'assessment', 'story')),
    date DATE NOT NULL,
    district TEXT NOT NULL,
    school_id INTEGER REFERENCES schools_directory(id),
    school_name TEXT NOT NULL,
    program_type TEXT,
    follow_up_date DATE,
    status TEXT NOT NULL CHECK (status IN ('Draft', 'Submitted', 'Returned', 'Approved')),
    payload JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    created_by_user_id INTEGER,
    created_by_name TEXT,
    review_note TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE UNIQUE INDEX IF NOT EXISTS portal_records_one_per_school_day
    ON portal_records (module, date, ({SCHOOL_NAME_KEY_SQL.format(column="school_name")}));

CREATE INDEX IF NOT EXISTS portal_records_date_status
    ON portal_records (date, status);
"""

RECORD_COLUMNS = """
    r.id,
    r.record_code,
    r.module,
    r.date,
    r.district,
    r.school_id,
    r.school_name,
    r.program_type,
    r.follow_up_date,
    r.status,
    r.payload,
    r.created_by_user_id,
    r.created_by_name,
    r.review_note,
    r.created_at,
    r.updated_at
"""


def _parse_payload(raw: Any, record_id: Any) -> Dict[str, Any]:
    """JSONB arrives as text without a codec; tolerate both."""
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning(f"Could not parse payload for record {record_id}: {raw!r}")
        return {}
    if not isinstance(payload, dict):
        logger.warning(f"Payload for record {record_id} is not an object")
        return {}
    return payload


def row_to_record(row: Any) -> RawRecord:
    return RawRecord(
        id=row['id'],
        record_code=row['record_code'] or make_record_code(RecordModule(row['module']), row['id']),
        module=row['module'],
        date=row['date'],
        district=row['district'],
        school_id=row['school_id'],
        school_name=row['school_name'],
        program_type=row['program_type'],
        follow_up_date=row['follow_up_date'],
        status=row['status'],
        payload=_parse_payload(row['payload'], row['id']),
        created_by_user_id=row['created_by_user_id'],
        created_by_name=row['created_by_name'],
        review_note=row['review_note'],
        created_at=row['created_at'],
        updated_at=row['updated_at'],
    )


def row_to_school(row: Any) -> School:
    return School(
        id=row['id'],
        school_code=row['school_code'] or make_school_code(row['id']),
        name=row['name'],
        district=row['district'],
        sub_county=row['sub_county'] or "",
        parish=row['parish'] or "",
        village=row['village'],
        gps_lat=row['gps_lat'],
        gps_lng=row['gps_lng'],
        enrolled_boys=row['enrolled_boys'] or 0,
        enrolled_girls=row['enrolled_girls'] or 0,
    )


def _payload_json(record_payload: Any) -> str:
    return json.dumps(record_payload.model_dump(by_alias=True, mode="json"))


class RecordQueries:
    """Data access layer for record and directory operations."""

    @staticmethod
    async def create_schema(pool: DatabasePool) -> None:
        """Create tables and indexes if they do not exist."""
        await pool.execute_command(SCHEMA_SQL)
        logger.info("Record store schema ensured")

    # Records

    @staticmethod
    async def find_duplicate(
        pool: DatabasePool,
        module: RecordModule,
        on: date,
        school_name: str,
        exclude_id: Optional[int] = None,
    ) -> Optional[int]:
        """
        Id of an existing record for the same module, date and school name.

        Args:
            exclude_id: Record being updated, which never collides with itself

        Returns:
            The colliding record id or None
        """
        where_conditions = [
            "r.module = $1",
            "r.date = $2",
            f"{SCHOOL_NAME_KEY_SQL.format(column='r.school_name')} = $3",
        ]
        params: List[Any] = [RecordModule(module).value, on, normalize_name(school_name)]

        if exclude_id is not None:
            where_conditions.append("r.id <> $4")
            params.append(exclude_id)

        query = f"""
        SELECT r.id
        FROM portal_records r
        WHERE {' AND '.join(where_conditions)}
        LIMIT 1
        """

        result = await pool.execute_query_one(query, *params)
        return result['id'] if result else None

    @staticmethod
    async def insert_record(pool: DatabasePool, values: Dict[str, Any]) -> RawRecord:
        """Insert a record and assign its record code in one transaction."""
        insert = """
        INSERT INTO portal_records (
            module, date, district, school_id, school_name, program_type,
            follow_up_date, status, payload, created_by_user_id, created_by_name,
            created_at, updated_at
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10, $11, $12, $12)
        RETURNING id
        """
        now = datetime.now(timezone.utc)

        async with pool.transaction() as conn:
            record_id = await conn.fetchval(
                insert,
                RecordModule(values['module']).value,
                values['date'],
                values['district'],
                values.get('school_id'),
                values['school_name'],
                values.get('program_type'),
                values.get('follow_up_date'),
                RecordStatus(values['status']).value,
                _payload_json(values['payload']),
                values.get('created_by_user_id'),
                values.get('created_by_name'),
                now,
            )
            row = await conn.fetchrow(
                f"""
                UPDATE portal_records r SET record_code = $2 WHERE r.id = $1
                RETURNING {RECORD_COLUMNS}
                """,
                record_id,
                make_record_code(RecordModule(values['module']), record_id),
            )

        return row_to_record(row)

    @staticmethod
    async def update_record(pool: DatabasePool, record_id: int, values: Dict[str, Any]) -> Optional[RawRecord]:
        """Replace the editable fields of a record."""
        query = f"""
        UPDATE portal_records r SET
            module = $2,
            date = $3,
            district = $4,
            school_id = $5,
            school_name = $6,
            program_type = $7,
            follow_up_date = $8,
            status = $9,
            payload = $10::jsonb,
            updated_at = $11
        WHERE r.id = $1
        RETURNING {RECORD_COLUMNS}
        """

        row = await pool.execute_query_one(
            query,
            record_id,
            RecordModule(values['module']).value,
            values['date'],
            values['district'],
            values.get('school_id'),
            values['school_name'],
            values.get('program_type'),
            values.get('follow_up_date'),
            RecordStatus(values['status']).value,
            _payload_json(values['payload']),
            datetime.now(timezone.utc),
        )
        return row_to_record(row) if row else None

    @staticmethod
    async def update_status(
        pool: DatabasePool,
        record_id: int,
        status: RecordStatus,
        review_note: Optional[str] = None,
    ) -> Optional[RawRecord]:
        query = f"""
        UPDATE portal_records r SET
            status = $2,
            review_note = COALESCE($3, r.review_note),
            updated_at = $4
        WHERE r.id = $1
        RETURNING {RECORD_COLUMNS}
        """
        row = await pool.execute_query_one(
            query, record_id, RecordStatus(status).value, review_note, datetime.now(timezone.utc)
        )
        return row_to_record(row) if row else None

    @staticmethod
    async def get_record(pool: DatabasePool, record_id: int) -> Optional[RawRecord]:
        query = f"SELECT {RECORD_COLUMNS} FROM portal_records r WHERE r.id = $1"
        row = await pool.execute_query_one(query, record_id)
        return row_to_record(row) if row else None

    @staticmethod
    async def get_records_in_range(
        pool: DatabasePool,
        start_date: date,
        end_date: date,
        statuses: Optional[Iterable[RecordStatus]] = None,
        modules: Optional[Iterable[RecordModule]] = None,
        created_by_user_id: Optional[int] = None,
    ) -> List[RawRecord]:
        """
        Records whose activity date falls in [start_date, end_date].

        Args:
            statuses: Restrict to these workflow states
            modules: Restrict to these modules
            created_by_user_id: Restrict to one creator

        Returns:
            List of RawRecord objects ordered by date then id
        """
        where_conditions = ["r.date >= $1", "r.date <= $2"]
        params: List[Any] = [start_date, end_date]
        param_counter = 3

        if statuses:
            where_conditions.append(f"r.status = ANY(${param_counter}::text[])")
            params.append([RecordStatus(s).value for s in statuses])
            param_counter += 1

        if modules:
            where_conditions.append(f"r.module = ANY(${param_counter}::text[])")
            params.append([RecordModule(m).value for m in modules])
            param_counter += 1

        if created_by_user_id is not None:
            where_conditions.append(f"r.created_by_user_id = ${param_counter}")
            params.append(created_by_user_id)
            param_counter += 1

        query = f"""
        SELECT {RECORD_COLUMNS}
        FROM portal_records r
        WHERE {' AND '.join(where_conditions)}
        ORDER BY r.date, r.id
        """

        results = await pool.execute_query(query, *params)

        records = []
        for row in results:
            try:
                records.append(row_to_record(row))
            except ValueError as e:
                # pydantic ValidationError is a ValueError
                logger.warning(f"Skipping unreadable record {row['id']}: {e}")
        return records

    # School directory

    @staticmethod
    async def list_schools(pool: DatabasePool) -> List[School]:
        query = """
        SELECT id, school_code, name, district, sub_county, parish, village,
               gps_lat, gps_lng, enrolled_boys, enrolled_girls
        FROM schools_directory
        ORDER BY id
        """
        results = await pool.execute_query(query)
        return [row_to_school(row) for row in results]

    @staticmethod
    async def insert_school(pool: DatabasePool, school: SchoolInput) -> School:
        async with pool.transaction() as conn:
            school_id = await conn.fetchval(
                """
                INSERT INTO schools_directory (
                    name, district, sub_county, parish, village,
                    gps_lat, gps_lng, enrolled_boys, enrolled_girls
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                RETURNING id
                """,
                school.name,
                school.district,
                school.sub_county,
                school.parish,
                school.village,
                school.gps_lat,
                school.gps_lng,
                school.enrolled_boys,
                school.enrolled_girls,
            )
            row = await conn.fetchrow(
                """
                UPDATE schools_directory SET school_code = $2 WHERE id = $1
                RETURNING id, school_code, name, district, sub_county, parish, village,
                          gps_lat, gps_lng, enrolled_boys, enrolled_girls
                """,
                school_id,
                make_school_code(school_id),
            )
        return row_to_school(row)
