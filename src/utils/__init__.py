"""
Utility modules for literacy impact monitoring.
"""

from .redaction import (
    RESTRICTED_KEYS,
    PrivacyViolationError,
    ensure_public_safe,
    find_restricted_key_paths,
    flatten_key,
    is_restricted,
    normalize_key,
)

__all__ = [
    'RESTRICTED_KEYS',
    'PrivacyViolationError',
    'ensure_public_safe',
    'find_restricted_key_paths',
    'flatten_key',
    'is_restricted',
    'normalize_key',
]
