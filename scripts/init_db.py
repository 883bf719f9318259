#!/usr/bin/env python3
"""
Create the record store schema and optionally seed the school directory.

Usage:
    python scripts/init_db.py
    python scripts/init_db.py --schools fixtures/schools.json

The schools file is a JSON array of directory entries (name, district,
subCounty, parish, enrolledBoys, enrolledGirls, ...).
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from database import (
    DatabaseConnectionError,
    RecordQueries,
    close_database_pool,
    get_database_pool,
)
from models import SchoolInput
from models.utils import normalize_name


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def init_db(schools_file: Path = None) -> int:
    pool = await get_database_pool()
    try:
        await RecordQueries.create_schema(pool)

        if schools_file is None:
            return 0

        with open(schools_file, "r", encoding="utf-8") as handle:
            entries = json.load(handle)

        existing = {(normalize_name(school.district), school.name_key) for school in await RecordQueries.list_schools(pool)}
        added = 0
        for entry in entries:
            school = SchoolInput.model_validate(entry)
            key = (normalize_name(school.district), normalize_name(school.name))
            if key in existing:
                logger.info(f"Skipping {school.name} ({school.district}): already in directory")
                continue
            created = await RecordQueries.insert_school(pool, school)
            existing.add(key)
            added += 1
            logger.info(f"Added {created.school_code} {created.name}")

        logger.info(f"Seeded {added} schools")
        return added
    finally:
        await close_database_pool()


def main():
    parser = argparse.ArgumentParser(description="Create the record store schema")
    parser.add_argument("--schools", type=Path, help="JSON array of schools to add to the directory")
    args = parser.parse_args()

    try:
        asyncio.run(init_db(args.schools))
    except DatabaseConnectionError as e:
        logger.error(f"Database connection failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
