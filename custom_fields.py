"""
Per-category custom field schemas.

A category declares an ordered list of fields; each field is one of five
types. Expense values are coerced to the declared type when written, and keys
the category does not declare are dropped.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, Mapping, Optional, Union

from models import FieldType

FieldValue = Union[str, float, bool]

_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off"}


class FieldValueError(ValueError):
    def __init__(self, key: str, message: str) -> None:
        super().__init__(message)
        self.key = key


@dataclass(frozen=True)
class FieldSpec:
    key: str
    label: str
    type: FieldType = FieldType.text
    options: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "label": self.label,
            "type": self.type.value,
            "options": list(self.options),
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "FieldSpec":
        return cls(
            key=str(raw["key"]),
            label=str(raw.get("label") or raw["key"]),
            type=FieldType(raw.get("type") or FieldType.text.value),
            options=tuple(raw.get("options") or ()),
        )


def normalize_schema(specs: Iterable[FieldSpec]) -> list[FieldSpec]:
    """Validate a field list as submitted for a category.

    Keys are trimmed and must be unique; options only survive on select
    fields, which need at least one.
    """
    result: list[FieldSpec] = []
    seen: set[str] = set()
    for spec in specs:
        key = spec.key.strip()
        if not key:
            raise FieldValueError("fields", "Field key cannot be empty")
        if key in seen:
            raise FieldValueError("fields", f"Duplicate field key '{key}'")
        seen.add(key)
        label = spec.label.strip() or key
        options: tuple[str, ...] = ()
        if spec.type == FieldType.select:
            options = tuple(
                dict.fromkeys(o.strip() for o in spec.options if o and o.strip())
            )
            if not options:
                raise FieldValueError(
                    "fields", f"Select field '{key}' needs at least one option"
                )
        result.append(FieldSpec(key=key, label=label, type=spec.type, options=options))
    return result


def load_schema(raw_fields: Optional[Iterable[Mapping[str, Any]]]) -> list[FieldSpec]:
    return [FieldSpec.from_dict(raw) for raw in raw_fields or ()]


def _coerce_number(spec: FieldSpec, raw: Any) -> float:
    if isinstance(raw, bool):
        raise FieldValueError(spec.key, f"{spec.label} must be a number")
    try:
        value = float(raw) if isinstance(raw, (int, float)) else float(str(raw).strip())
    except ValueError as exc:
        raise FieldValueError(spec.key, f"{spec.label} must be a number") from exc
    if not math.isfinite(value):
        raise FieldValueError(spec.key, f"{spec.label} must be a number")
    return value


def _coerce_date(spec: FieldSpec, raw: Any) -> str:
    if isinstance(raw, datetime):
        return raw.date().isoformat()
    if isinstance(raw, date):
        return raw.isoformat()
    text = str(raw).strip()
    try:
        return date.fromisoformat(text[:10]).isoformat()
    except ValueError as exc:
        raise FieldValueError(spec.key, f"{spec.label} must be a date") from exc


def _coerce_boolean(spec: FieldSpec, raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    raise FieldValueError(spec.key, f"{spec.label} must be true or false")


def coerce_value(spec: FieldSpec, raw: Any) -> FieldValue:
    if spec.type == FieldType.number:
        return _coerce_number(spec, raw)
    if spec.type == FieldType.date:
        return _coerce_date(spec, raw)
    if spec.type == FieldType.boolean:
        return _coerce_boolean(spec, raw)
    if isinstance(raw, (dict, list)):
        raise FieldValueError(spec.key, f"{spec.label} must be a single value")
    value = str(raw).strip()
    if spec.type == FieldType.select and value not in spec.options:
        raise FieldValueError(
            spec.key, f"{spec.label} must be one of: {', '.join(spec.options)}"
        )
    return value


def sanitize_custom_fields(
    specs: Iterable[FieldSpec], values: Optional[Mapping[str, Any]]
) -> dict[str, FieldValue]:
    if not values:
        return {}
    clean: dict[str, FieldValue] = {}
    for spec in specs:
        if spec.key not in values:
            continue
        raw = values[spec.key]
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            continue
        clean[spec.key] = coerce_value(spec, raw)
    return clean
