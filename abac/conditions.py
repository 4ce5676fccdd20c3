"""
Condition evaluation for ABAC policies.

A condition compares one attribute value (the "actual" value taken from the
subject, the resource or the environment) against the value configured on
the policy (the "expected" value). Evaluation is pure and total: bad input
never raises, it makes the condition false and produces a warning that ends
up in the evaluation trace.

Missing values: when the actual value is absent every operator is false
except not_equals, not_in and different_from_user, which treat absence as
"different" and return true.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from abac.exceptions import ValueCoercionError
from abac.values import (
    ValueKind, coerce, compare, element_type, values_equal
)

ABSENCE_MATCHES = {"not_equals", "not_in", "different_from_user"}


@dataclass(frozen=True)
class ConditionOutcome:
    result: bool
    warning: Optional[str] = None


def _expect_list(expected: Any, operator: str) -> list:
    if not isinstance(expected, (list, tuple)):
        raise ValueCoercionError(f"{operator} expects a list value, got {type(expected).__name__}")
    return list(expected)


def _equals(expected, actual, data_type) -> bool:
    return values_equal(coerce(actual, data_type), coerce(expected, data_type))


def _not_equals(expected, actual, data_type) -> bool:
    return not _equals(expected, actual, data_type)


def _in(expected, actual, data_type) -> bool:
    members = _expect_list(expected, "in")
    typed = coerce(actual, data_type)
    return any(
        member is not None and values_equal(typed, coerce(member, data_type))
        for member in members
    )


def _not_in(expected, actual, data_type) -> bool:
    _expect_list(expected, "not_in")
    return not _in(expected, actual, data_type)


def _contains(expected, actual, data_type) -> bool:
    if expected is None:
        raise ValueCoercionError("contains needs a value to look for")
    typed = coerce(actual, data_type)
    if typed.kind == ValueKind.ARRAY:
        needle = coerce(expected, element_type(data_type))
        return any(values_equal(member, needle) for member in typed.value)
    if typed.kind == ValueKind.STRING:
        return coerce(expected, "string").value in typed.value
    raise ValueCoercionError(f"contains needs a string or array, got {typed.kind.value}")


def _string_test(test: Callable[[str, str], bool]):
    def _check(expected, actual, data_type) -> bool:
        typed = coerce(actual, data_type)
        if typed.kind != ValueKind.STRING:
            return False
        return test(typed.value, coerce(expected, "string").value)
    return _check


def _ordering(wanted: int):
    def _check(expected, actual, data_type) -> bool:
        result = compare(coerce(actual, data_type), coerce(expected, data_type))
        return result == wanted
    return _check


def _between(expected, actual, data_type) -> bool:
    bounds = _expect_list(expected, "between")
    if len(bounds) != 2:
        raise ValueCoercionError("between expects [low, high]")
    typed = coerce(actual, data_type)
    low = compare(typed, coerce(bounds[0], data_type))
    high = compare(typed, coerce(bounds[1], data_type))
    if low is None or high is None:
        return False
    return low >= 0 and high <= 0


def _same_as_user(subject_value, actual, data_type) -> bool:
    if subject_value is None:
        return False
    return values_equal(coerce(actual, data_type), coerce(subject_value, data_type))


def _different_from_user(subject_value, actual, data_type) -> bool:
    if subject_value is None:
        return True
    return not _same_as_user(subject_value, actual, data_type)


_OPERATORS: Dict[str, Callable[[Any, Any, Optional[str]], bool]] = {
    "equals": _equals,
    "not_equals": _not_equals,
    "in": _in,
    "not_in": _not_in,
    "contains": _contains,
    "starts_with": _string_test(lambda value, prefix: value.startswith(prefix)),
    "ends_with": _string_test(lambda value, suffix: value.endswith(suffix)),
    "greater_than": _ordering(1),
    "less_than": _ordering(-1),
    "between": _between,
    "same_as_user": _same_as_user,
    "different_from_user": _different_from_user,
}

SUPPORTED_OPERATORS = frozenset(_OPERATORS)


def check(operator: str, expected: Any, actual: Any, data_type: Optional[str] = None) -> ConditionOutcome:
    """
    Evaluate one comparison and explain configuration problems.

    Args:
        operator: one of SUPPORTED_OPERATORS
        expected: configured value; for same_as_user/different_from_user the
            subject's value of the referenced attribute
        actual: attribute value being tested (None when absent)
        data_type: AttributeDefinition.data_type of the tested attribute

    Returns:
        ConditionOutcome with the boolean result and an optional warning
    """
    handler = _OPERATORS.get(operator)
    if handler is None:
        return ConditionOutcome(False, f"Unknown operator {operator!r}")

    if actual is None:
        return ConditionOutcome(operator in ABSENCE_MATCHES)

    try:
        return ConditionOutcome(bool(handler(expected, actual, data_type)))
    except ValueCoercionError as e:
        return ConditionOutcome(False, str(e))
    except (TypeError, ValueError) as e:
        return ConditionOutcome(False, f"{operator} failed: {e}")


def evaluate(operator: str, expected: Any, actual: Any, data_type: Optional[str] = None) -> bool:
    """Boolean form of check(); never raises."""
    return check(operator, expected, actual, data_type).result


def fold(results: Iterable[Tuple[bool, str]]) -> bool:
    """
    Combine condition results left to right.

    Each pair is (result, logical_operator). The first result seeds the
    accumulator; every later result is AND-ed or OR-ed into it according to
    its own operator. An empty sequence means "no constraint" and is true.
    """
    accumulator = None
    for result, logical_operator in results:
        if accumulator is None:
            accumulator = result
        elif str(getattr(logical_operator, "value", logical_operator)).upper() == "OR":
            accumulator = accumulator or result
        else:
            accumulator = accumulator and result
    return True if accumulator is None else accumulator
