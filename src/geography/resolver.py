"""
Static district → sub-region → region reference and lookups over it.

The reference table is loaded once (from YAML) into an immutable
GeographyReference and injected wherever geography is needed. All lookups are
pure: no I/O after loading and no exceptions for unknown names.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import yaml

from models import GeoScope, School, ScopeLevel, parse_school_code
from models.utils import normalize_name


logger = logging.getLogger(__name__)

DEFAULT_REFERENCE_PATH = Path(__file__).parent / "data" / "uganda.yaml"

_DISTRICT_SUFFIX = re.compile(r"\s+district$")


class GeographyIntegrityError(Exception):
    """Raised when the reference table is not a strict tree."""
    pass


class UnknownScopeError(Exception):
    """Raised in strict mode when a scope id is not in the hierarchy."""
    pass


@dataclass(frozen=True)
class DistrictEntry:
    """One row of the reference table."""
    district: str
    sub_region: str
    region: str


def _key(name: Optional[str]) -> str:
    return _DISTRICT_SUFFIX.sub("", normalize_name(name))


class GeographyReference:
    """
    Immutable district → sub-region → region table.

    Construction asserts the strict-tree invariant: a district appears once,
    and a sub-region belongs to exactly one region.
    """

    def __init__(
        self,
        entries: Iterable[DistrictEntry],
        aliases: Optional[Mapping[str, str]] = None,
        country: str = "Uganda",
    ):
        self.country = country
        self._entries: Tuple[DistrictEntry, ...] = tuple(entries)
        self._by_district: Dict[str, DistrictEntry] = {}
        self._sub_region_parent: Dict[str, str] = {}

        for entry in self._entries:
            key = _key(entry.district)
            if key in self._by_district:
                raise GeographyIntegrityError(f"District {entry.district!r} is listed more than once")
            self._by_district[key] = entry

            sub_key = normalize_name(entry.sub_region)
            parent = self._sub_region_parent.get(sub_key)
            if parent is not None and parent != entry.region:
                raise GeographyIntegrityError(
                    f"Sub-region {entry.sub_region!r} is under both {parent!r} and {entry.region!r}"
                )
            self._sub_region_parent[sub_key] = entry.region

        self._aliases: Dict[str, str] = {}
        for alias, canonical in (aliases or {}).items():
            if _key(canonical) not in self._by_district:
                raise GeographyIntegrityError(f"Alias {alias!r} points at unknown district {canonical!r}")
            self._aliases[_key(alias)] = _key(canonical)

    @property
    def entries(self) -> Tuple[DistrictEntry, ...]:
        return self._entries

    def lookup(self, district: Optional[str]) -> Optional[DistrictEntry]:
        key = _key(district)
        if not key:
            return None
        key = self._aliases.get(key, key)
        return self._by_district.get(key)

    def __len__(self) -> int:
        return len(self._entries)


def load_reference(path: Union[str, Path, None] = None) -> GeographyReference:
    """
    Load the reference table from YAML.

    Expected layout::

        country: Uganda
        regions:
          Northern:
            Acholi: [Gulu, Kitgum]
        aliases:
          Kassanda: Kasanda
    """
    path = Path(path) if path else DEFAULT_REFERENCE_PATH
    with open(path, "r", encoding="utf-8") as handle:
        document = yaml.safe_load(handle) or {}

    entries = []
    for region, sub_regions in (document.get("regions") or {}).items():
        for sub_region, districts in (sub_regions or {}).items():
            for district in districts or []:
                entries.append(DistrictEntry(district=str(district), sub_region=str(sub_region), region=str(region)))

    reference = GeographyReference(
        entries,
        aliases=document.get("aliases") or {},
        country=document.get("country", "Uganda"),
    )
    logger.info(f"Loaded geography reference with {len(reference)} districts from {path.name}")
    return reference


class GeographyResolver:
    """Lookups and hierarchy queries over an injected GeographyReference."""

    def __init__(self, reference: GeographyReference, default_region: str = "Unassigned"):
        self.reference = reference
        self.default_region = default_region

    # District lookups

    def resolve(self, district: Optional[str]) -> Optional[DistrictEntry]:
        return self.reference.lookup(district)

    def resolve_region(self, district: Optional[str]) -> Optional[str]:
        entry = self.resolve(district)
        return entry.region if entry else None

    def resolve_sub_region(self, district: Optional[str]) -> Optional[str]:
        entry = self.resolve(district)
        return entry.sub_region if entry else None

    def canonical_district(self, district: Optional[str]) -> Optional[str]:
        entry = self.resolve(district)
        return entry.district if entry else None

    def region_for(self, district: Optional[str]) -> str:
        """Region for reporting, falling back to the default label."""
        return self.resolve_region(district) or self.default_region

    # Hierarchy queries

    def regions(self) -> List[str]:
        return sorted({entry.region for entry in self.reference.entries})

    def sub_regions(self, region: Optional[str] = None) -> List[str]:
        wanted = normalize_name(region) if region else None
        return sorted({
            entry.sub_region
            for entry in self.reference.entries
            if wanted is None or normalize_name(entry.region) == wanted
        })

    def districts(self, region: Optional[str] = None, sub_region: Optional[str] = None) -> List[str]:
        region_key = normalize_name(region) if region else None
        sub_key = normalize_name(sub_region) if sub_region else None
        return sorted(
            entry.district
            for entry in self.reference.entries
            if (region_key is None or normalize_name(entry.region) == region_key)
            and (sub_key is None or normalize_name(entry.sub_region) == sub_key)
        )

    def find_region(self, name: str) -> Optional[str]:
        key = normalize_name(name)
        return next((r for r in self.regions() if normalize_name(r) == key), None)

    def find_sub_region(self, name: str) -> Optional[str]:
        key = normalize_name(name)
        return next((s for s in self.sub_regions() if normalize_name(s) == key), None)

    def region_of_sub_region(self, sub_region: str) -> Optional[str]:
        key = normalize_name(sub_region)
        return next(
            (entry.region for entry in self.reference.entries if normalize_name(entry.sub_region) == key),
            None,
        )

    def schools_in_district(self, district: str, schools: Sequence[School]) -> List[School]:
        entry = self.resolve(district)
        if entry is None:
            key = _key(district)
            return [school for school in schools if _key(school.district) == key]
        return [school for school in schools if self.resolve(school.district) == entry]

    def find_school(self, school_id: str, schools: Sequence[School]) -> Optional[School]:
        """Match a school scope id: a school code (any case) or the numeric id."""
        text = school_id.strip()
        numeric = parse_school_code(text)
        if numeric is None and text.isdigit():
            numeric = int(text)
        for school in schools:
            if school.school_code.casefold() == text.casefold() or school.id == numeric:
                return school
        return None

    def contains(self, scope: GeoScope, district: Optional[str]) -> bool:
        """Whether a district falls inside a country, region, sub-region or district scope."""
        if scope.level == ScopeLevel.COUNTRY:
            return True

        entry = self.resolve(district)
        if scope.level == ScopeLevel.DISTRICT:
            target = self.resolve(scope.id)
            if target is not None:
                return entry == target
            return _key(district) == _key(scope.id)
        if entry is None:
            return False
        if scope.level == ScopeLevel.SUBREGION:
            return normalize_name(entry.sub_region) == normalize_name(scope.id)
        if scope.level == ScopeLevel.REGION:
            return normalize_name(entry.region) == normalize_name(scope.id)
        return False

    def schools_for_scope(self, scope: GeoScope, schools: Sequence[School]) -> List[School]:
        if scope.level == ScopeLevel.SCHOOL:
            school = self.find_school(scope.id, schools)
            return [school] if school else []
        return [school for school in schools if self.contains(scope, school.district)]

    def is_known(self, scope: GeoScope, schools: Sequence[School]) -> bool:
        if scope.level == ScopeLevel.COUNTRY:
            return True
        if scope.level == ScopeLevel.REGION:
            return self.find_region(scope.id) is not None
        if scope.level == ScopeLevel.SUBREGION:
            return self.find_sub_region(scope.id) is not None
        if scope.level == ScopeLevel.DISTRICT:
            return self.resolve(scope.id) is not None
        return self.find_school(scope.id, schools) is not None
