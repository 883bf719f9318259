"""
Privacy scan for anything leaving the system boundary.

A single recursive walk over the whole output tree checks every key against a
fixed denylist of identifying field names. Keys are normalized first, so
``learnerUid``, ``Learner-UID``, ``LEARNERUID`` and ``learner_uid`` all match.
"""

import functools
import logging
import re
from typing import Any, FrozenSet, List, Optional

from pydantic import BaseModel


logger = logging.getLogger(__name__)

RESTRICTED_KEYS: FrozenSet[str] = frozenset({
    "child_name",
    "child_id",
    "internal_child_id",
    "internal_id",
    "full_name",
    "age",
    "learner_uid",
    "teacher_uid",
    "learner_id",
    "learner_name",
    "teacher_name",
})

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_SEPARATORS = re.compile(r"[\s\-.]+")
_NOT_ALNUM = re.compile(r"[^a-z0-9]")

# An age tied to one person, e.g. learnerAge or child_age
INDIVIDUAL_PREFIXES: FrozenSet[str] = frozenset({"child", "learner", "pupil", "student", "teacher", "participant"})


class PrivacyViolationError(Exception):
    """Raised when an outbound structure carries identifying keys."""

    def __init__(self, paths: List[str]):
        self.paths = paths
        super().__init__(f"Restricted keys in public output: {', '.join(paths)}")


def normalize_key(key: Any) -> str:
    """learnerUID / Learner-Uid / learner uid -> learner_uid"""
    text = _CAMEL_BOUNDARY.sub("_", str(key).strip())
    text = _SEPARATORS.sub("_", text)
    return re.sub(r"_+", "_", text).lower()


def flatten_key(key: Any) -> str:
    """learnerUID / LEARNERUID / learner_uid -> learneruid"""
    return _NOT_ALNUM.sub("", str(key).lower())


@functools.lru_cache(maxsize=16)
def _flat_denylist(denylist: FrozenSet[str]) -> FrozenSet[str]:
    return frozenset(flatten_key(key) for key in denylist)


def is_restricted(key: Any, denylist: FrozenSet[str] = RESTRICTED_KEYS) -> bool:
    """
    Whether ``key`` names a denylisted field under any casing convention.

    Keys are compared both in snake form and with every separator removed, so
    flatcase spellings such as ``childname`` or ``LEARNERUID`` match too. When
    ``age`` is denylisted, per-person ages (``learnerAge``, ``child_age``) are
    restricted as well.
    """
    snake = normalize_key(key)
    flat = flatten_key(key)
    if snake in denylist or flat in _flat_denylist(denylist):
        return True
    if "age" in denylist:
        return snake.endswith("_age") or any(flat == f"{prefix}age" for prefix in INDIVIDUAL_PREFIXES)
    return False


def find_restricted_key_paths(
    tree: Any,
    denylist: FrozenSet[str] = RESTRICTED_KEYS,
    path: str = "$",
) -> List[str]:
    """Every path in ``tree`` whose key is denylisted, at any depth."""
    if isinstance(tree, BaseModel):
        tree = tree.model_dump(by_alias=True)

    found: List[str] = []
    if isinstance(tree, dict):
        for key, value in tree.items():
            child = f"{path}.{key}"
            if is_restricted(key, denylist):
                found.append(child)
            found.extend(find_restricted_key_paths(value, denylist, child))
    elif isinstance(tree, (list, tuple)):
        for index, item in enumerate(tree):
            found.extend(find_restricted_key_paths(item, denylist, f"{path}[{index}]"))
    return found


def ensure_public_safe(tree: Any, denylist: Optional[FrozenSet[str]] = None) -> Any:
    """Return ``tree`` unchanged, or raise PrivacyViolationError if it leaks."""
    paths = find_restricted_key_paths(tree, denylist or RESTRICTED_KEYS)
    if paths:
        logger.error(f"Blocked public response with {len(paths)} restricted keys", extra={"paths": paths})
        raise PrivacyViolationError(paths)
    return tree
