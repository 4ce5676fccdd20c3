"""
Typed attribute values.

Attribute and condition values arrive as untyped JSON (strings, numbers,
lists, ISO dates). Before comparing them the engine converts both sides into
a TypedValue whose kind is chosen by the AttributeDefinition's data type, so
that "5" and 5 compare as numbers for a number attribute and dates compare
by instant instead of by string.

Kinds:
  - STRING: str (also used for 'reference' attributes, which hold ids)
  - NUMBER: int or float (never bool)
  - BOOLEAN: bool
  - DATE: timezone-aware datetime
  - ARRAY: tuple of TypedValue (compared as a set)
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Optional

from abac.exceptions import ValueCoercionError


class ValueKind(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    ARRAY = "array"


@dataclass(frozen=True)
class TypedValue:
    kind: ValueKind
    value: Any

    def to_python(self) -> Any:
        if self.kind == ValueKind.ARRAY:
            return [item.to_python() for item in self.value]
        return self.value


_TRUE_STRINGS = {"true", "yes", "1"}
_FALSE_STRINGS = {"false", "no", "0"}


def as_aware(value: datetime) -> datetime:
    """Attach a zone to a naive datetime (naive means server-local time)."""
    if value.tzinfo is None:
        return value.astimezone()
    return value


def parse_datetime(raw: Any) -> datetime:
    """Parse a datetime, date or ISO-8601 string into an aware datetime."""
    if isinstance(raw, datetime):
        return as_aware(raw)
    if isinstance(raw, date):
        return as_aware(datetime.combine(raw, time.min))
    if isinstance(raw, str):
        text = raw.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return as_aware(datetime.fromisoformat(text))
        except ValueError:
            raise ValueCoercionError(f"Invalid date: {raw!r}")
    raise ValueCoercionError(f"Cannot interpret {type(raw).__name__} as date")


def _to_number(raw: Any):
    if isinstance(raw, bool):
        raise ValueCoercionError(f"Boolean {raw!r} is not a number")
    if isinstance(raw, (int, float)):
        return raw
    if isinstance(raw, str):
        text = raw.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            raise ValueCoercionError(f"Invalid number: {raw!r}")
    raise ValueCoercionError(f"Cannot interpret {type(raw).__name__} as number")


def _to_boolean(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, int) and raw in (0, 1):
        return bool(raw)
    if isinstance(raw, str):
        lowered = raw.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ValueCoercionError(f"Invalid boolean: {raw!r}")


def _to_string(raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    # ids are sometimes stored as integers
    if isinstance(raw, int) and not isinstance(raw, bool):
        return str(raw)
    raise ValueCoercionError(f"Cannot interpret {type(raw).__name__} as string")


def infer(raw: Any) -> TypedValue:
    """Pick a kind from the Python type of an untyped value."""
    if isinstance(raw, TypedValue):
        return raw
    if isinstance(raw, bool):
        return TypedValue(ValueKind.BOOLEAN, raw)
    if isinstance(raw, (int, float)):
        return TypedValue(ValueKind.NUMBER, raw)
    if isinstance(raw, (datetime, date)):
        return TypedValue(ValueKind.DATE, parse_datetime(raw))
    if isinstance(raw, str):
        return TypedValue(ValueKind.STRING, raw)
    if isinstance(raw, (list, tuple, set, frozenset)):
        return TypedValue(ValueKind.ARRAY, tuple(infer(item) for item in raw))
    raise ValueCoercionError(f"Unsupported value type: {type(raw).__name__}")


def coerce(raw: Any, data_type: Optional[str] = None) -> TypedValue:
    """
    Convert a raw value into the kind declared by an attribute data type.

    Args:
        raw: JSON-ish value (must not be None; absence is handled by callers)
        data_type: AttributeDefinition.data_type, or None to infer

    Returns:
        TypedValue

    Raises:
        ValueCoercionError: value does not fit the declared type
    """
    if raw is None:
        raise ValueCoercionError("Cannot coerce a missing value")
    if isinstance(raw, TypedValue):
        return raw
    if data_type is None:
        return infer(raw)

    data_type = data_type.lower()
    if data_type in ("string", "reference"):
        return TypedValue(ValueKind.STRING, _to_string(raw))
    if data_type == "number":
        return TypedValue(ValueKind.NUMBER, _to_number(raw))
    if data_type == "boolean":
        return TypedValue(ValueKind.BOOLEAN, _to_boolean(raw))
    if data_type == "date":
        return TypedValue(ValueKind.DATE, parse_datetime(raw))
    if data_type == "array":
        if not isinstance(raw, (list, tuple, set, frozenset)):
            raise ValueCoercionError(f"Expected a list, got {type(raw).__name__}")
        return TypedValue(ValueKind.ARRAY, tuple(infer(item) for item in raw))

    raise ValueCoercionError(f"Unknown data type: {data_type!r}")


def element_type(data_type: Optional[str]) -> Optional[str]:
    """Data type used for members of a collection-valued comparison."""
    if data_type and data_type.lower() == "array":
        return None
    return data_type


# ============ Comparisons ============

def values_equal(left: TypedValue, right: TypedValue) -> bool:
    """Type-aware equality: arrays as sets, dates by instant, no bool/number mixing."""
    if left.kind != right.kind:
        return False
    if left.kind == ValueKind.ARRAY:
        try:
            return set(left.value) == set(right.value)
        except TypeError:
            return sorted(map(repr, left.value)) == sorted(map(repr, right.value))
    return left.value == right.value


def compare(left: TypedValue, right: TypedValue) -> Optional[int]:
    """
    Order two values.

    Returns:
        -1, 0 or 1; None when the values are not both numbers or both dates
    """
    if left.kind != right.kind or left.kind not in (ValueKind.NUMBER, ValueKind.DATE):
        return None
    if left.value < right.value:
        return -1
    if left.value > right.value:
        return 1
    return 0


def to_utc(value: datetime) -> datetime:
    return as_aware(value).astimezone(timezone.utc)
