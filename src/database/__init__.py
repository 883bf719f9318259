"""
Database integration layer for literacy impact monitoring.

Provides async PostgreSQL connectivity, record and directory queries, the
record store abstraction with in-memory and PostgreSQL implementations, and
aggregate caching.
"""

from .connection import (
    DatabaseConfig,
    DatabasePool,
    DatabaseConnectionError,
    get_database_pool,
    close_database_pool,
    create_database_config,
)

from .queries import (
    RecordQueries,
    SCHEMA_SQL,
    row_to_record,
    row_to_school,
)

from .store import (
    DuplicateRecordError,
    InMemoryRecordStore,
    PostgresRecordStore,
    RecordNotFoundError,
    RecordQuery,
    RecordStore,
    StoreUnavailableError,
)

from .cache import (
    AggregateCache,
    CacheInterface,
    InMemoryCache,
)

__all__ = [
    # Connection
    'DatabaseConfig',
    'DatabasePool',
    'DatabaseConnectionError',
    'get_database_pool',
    'close_database_pool',
    'create_database_config',

    # Queries
    'RecordQueries',
    'SCHEMA_SQL',
    'row_to_record',
    'row_to_school',

    # Stores
    'DuplicateRecordError',
    'InMemoryRecordStore',
    'PostgresRecordStore',
    'RecordNotFoundError',
    'RecordQuery',
    'RecordStore',
    'StoreUnavailableError',

    # Caching
    'AggregateCache',
    'CacheInterface',
    'InMemoryCache',
]
