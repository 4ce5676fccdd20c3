"""Tests for condition operators and the left-to-right fold."""

import pytest

from abac import conditions
from abac.conditions import check, evaluate, fold


class TestOperators:

    @pytest.mark.parametrize("operator, expected, actual, data_type, result", [
        ("equals", "CSE", "CSE", "string", True),
        ("equals", "5", 5, "number", True),
        ("not_equals", "CSE", "EEE", "string", True),
        ("in", ["CSE", "EEE"], "EEE", "string", True),
        ("in", ["CSE", "EEE"], "MECH", "string", False),
        ("not_in", ["CSE"], "EEE", "string", True),
        ("contains", "math", ["math", "physics"], "array", True),
        ("contains", "Comp", "Computer Science", "string", True),
        ("starts_with", "CS", "CSE101", "string", True),
        ("ends_with", "101", "CSE101", "string", True),
        ("greater_than", 3, 4, "number", True),
        ("less_than", 3, 4, "number", False),
        ("between", [2020, 2025], 2023, "number", True),
        ("between", [2020, 2025], 2026, "number", False),
        ("between", [2020, 2025], 2025, "number", True),
    ])
    def test_operator(self, operator, expected, actual, data_type, result):
        assert evaluate(operator, expected, actual, data_type) is result

    def test_between_dates_inclusive(self):
        bounds = ["2023-01-01", "2026-12-31"]
        assert evaluate("between", bounds, "2023-01-01", "date")
        assert evaluate("between", bounds, "2025-06-15T12:00:00Z", "date")
        assert not evaluate("between", bounds, "2027-01-01", "date")

    def test_same_as_user(self):
        assert evaluate("same_as_user", "CSE", "CSE", "reference")
        assert not evaluate("same_as_user", None, "CSE", "reference")
        assert evaluate("different_from_user", None, "CSE", "reference")


class TestMissingValues:

    @pytest.mark.parametrize("operator", sorted(conditions.SUPPORTED_OPERATORS))
    def test_absent_actual_value(self, operator):
        result = evaluate(operator, ["x", "y"], None, "string")
        assert result is (operator in ("not_equals", "not_in", "different_from_user"))


class TestConfigurationWarnings:

    def test_unknown_operator(self):
        outcome = check("matches_regex", "x", "x", "string")
        assert outcome.result is False
        assert "Unknown operator" in outcome.warning

    def test_uncoercible_value(self):
        outcome = check("greater_than", 3, "lots", "number")
        assert outcome.result is False
        assert outcome.warning

    def test_in_requires_list(self):
        outcome = check("in", "CSE", "CSE", "string")
        assert outcome.result is False
        assert "list" in outcome.warning


class TestFold:

    def test_empty_set_is_true(self):
        assert fold([]) is True

    def test_left_to_right(self):
        # (false OR true) AND false
        assert fold([(False, "AND"), (True, "OR"), (False, "AND")]) is False
        # (true AND false) OR true
        assert fold([(True, "AND"), (False, "AND"), (True, "OR")]) is True

    def test_first_operator_is_ignored(self):
        assert fold([(True, "OR")]) is True
        assert fold([(False, "OR")]) is False
