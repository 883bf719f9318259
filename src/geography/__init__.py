"""
Geography reference for the reporting hierarchy.

Loads the static district → sub-region → region table and answers lookups
and drill-down queries over it.
"""

from .resolver import (
    DEFAULT_REFERENCE_PATH,
    DistrictEntry,
    GeographyIntegrityError,
    GeographyReference,
    GeographyResolver,
    UnknownScopeError,
    load_reference,
)

__all__ = [
    "DEFAULT_REFERENCE_PATH",
    "DistrictEntry",
    "GeographyIntegrityError",
    "GeographyReference",
    "GeographyResolver",
    "UnknownScopeError",
    "load_reference",
]
