"""
Base schemas shared by record payloads and EGRA learner rows.

Field-form payloads arrive as camelCase JSON typed by hand in the field, so
the base classes serialize camelCase, accept snake_case too, and degrade
unparseable numbers to None instead of rejecting the whole record.
"""

from typing import Any, ClassVar, Dict, List, Mapping, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, model_validator
from pydantic.alias_generators import to_camel

from .utils import is_blank, parse_score


class CamelModel(BaseModel):
    """Schema that serializes camelCase and validates either convention."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LenientPayload(CamelModel):
    """
    Form payload with explicit fields plus an ``extra`` bag.

    Unknown keys are moved into ``extra``. Fields listed in ``numeric_fields``
    are parsed leniently: a value that is present but cannot be read as a
    non-negative number becomes None and its field name is recorded in
    ``malformed_fields``.
    """

    numeric_fields: ClassVar[Tuple[str, ...]] = ()

    malformed_fields: List[str] = []
    extra: Dict[str, Any] = {}

    @classmethod
    def _field_keys(cls) -> Dict[str, List[str]]:
        """Accepted input keys per field, in alias priority order."""
        keys: Dict[str, List[str]] = {}
        for name, info in cls.model_fields.items():
            names = []
            if isinstance(info.validation_alias, str):
                names.append(info.validation_alias)
            elif isinstance(info.validation_alias, AliasChoices):
                names.extend(c for c in info.validation_alias.choices if isinstance(c, str))
            if info.alias:
                names.append(info.alias)
            names.append(name)
            keys[name] = list(dict.fromkeys(names))
        return keys

    @classmethod
    def _preprocess(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        """Hook for subclasses to reshape raw form data before field handling."""
        return data

    @model_validator(mode="before")
    @classmethod
    def _parse_form_data(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data

        data = cls._preprocess(dict(data))
        field_keys = cls._field_keys()
        known = set().union(*field_keys.values()) if field_keys else set()

        extra = dict(data.pop("extra", None) or {})
        for key in list(data):
            if key not in known:
                extra[key] = data.pop(key)
        data["extra"] = extra

        malformed = list(data.pop("malformedFields", None) or data.pop("malformed_fields", None) or [])
        for name in cls.numeric_fields:
            present = [key for key in field_keys.get(name, ()) if key in data]
            if not present:
                continue
            # Old forms send every alias of a score, usually with all but one blank
            raws = [data.pop(key) for key in present]
            values = [parse_score(raw) for raw in raws]
            chosen = next((index for index, value in enumerate(values) if value is not None), None)
            if chosen is None:
                if any(not is_blank(raw) for raw in raws) and name not in malformed:
                    malformed.append(name)
                data[present[0]] = None
            else:
                data[present[chosen]] = values[chosen]
        data["malformed_fields"] = malformed

        return data

    @property
    def is_malformed(self) -> bool:
        return bool(self.malformed_fields)
