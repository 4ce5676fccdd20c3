"""
Apply a DataScope to list queries.

scope_clause() turns the filters computed by PolicyEngine.data_scope into a
SQLAlchemy boolean expression for a mapped model; row_visible() applies the
same rules to an attribute dict for data that is not in SQL.

Filters keep first-match semantics: the expression is built from the last
filter back to the first, starting from default_allow.

    E = default_allow
    allow filter:  E = c OR E
    deny filter:   E = NOT c AND E
"""

import re
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy import and_, false, not_, or_, true
from sqlalchemy.sql.elements import ColumnElement

from abac import conditions
from abac.schemas import Condition, DataScope, Effect

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _snake_case(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def _column(model_cls, attribute: str):
    for candidate in (attribute, _snake_case(attribute)):
        column = getattr(model_cls, candidate, None)
        if column is not None and hasattr(column, "property"):
            return column
    return None


def _condition_clause(model_cls, condition: Condition) -> ColumnElement:
    """
    One condition as SQL. Positive operators are false on NULL and
    not_equals/not_in are true on NULL, like absent attributes in evaluate().
    """
    column = _column(model_cls, condition.attribute)
    if column is None:
        logger.warning(
            f"{model_cls.__name__} has no column for attribute '{condition.attribute}', "
            f"condition treated as false"
        )
        return false()

    operator = condition.operator
    value = condition.value
    present = column.isnot(None)

    if operator == "equals":
        return false() if value is None else and_(present, column == value)
    if operator == "not_equals":
        return true() if value is None else or_(column.is_(None), column != value)
    if operator == "in":
        members = [v for v in (value or []) if v is not None]
        return and_(present, column.in_(members)) if members else false()
    if operator == "not_in":
        members = [v for v in (value or []) if v is not None]
        return or_(column.is_(None), column.notin_(members)) if members else true()
    if operator == "contains" and value is not None:
        return and_(present, column.contains(str(value), autoescape=True))
    if operator == "starts_with" and value is not None:
        return and_(present, column.startswith(str(value), autoescape=True))
    if operator == "ends_with" and value is not None:
        return and_(present, column.endswith(str(value), autoescape=True))
    if operator == "greater_than" and value is not None:
        return and_(present, column > value)
    if operator == "less_than" and value is not None:
        return and_(present, column < value)
    if operator == "between" and isinstance(value, list) and len(value) == 2:
        return and_(present, column.between(value[0], value[1]))

    logger.warning(f"Cannot express {operator!r} on '{condition.attribute}' in SQL")
    return false()


def _filter_clause(model_cls, condition_set) -> ColumnElement:
    clause = None
    for condition in condition_set:
        current = _condition_clause(model_cls, condition)
        if clause is None:
            clause = current
        elif condition.logical_operator.value == "OR":
            clause = or_(clause, current)
        else:
            clause = and_(clause, current)
    return true() if clause is None else clause


def scope_clause(model_cls, scope: DataScope) -> ColumnElement:
    """
    Boolean clause selecting the rows of `model_cls` the scope allows.

    Usage:
        scope = engine.data_scope(user_id, "Student")
        rows = session.query(Student).filter(scope_clause(Student, scope)).all()

    Condition attributes are matched to columns by name, then by their
    snake_case form (departmentId -> department_id).
    """
    if not scope.has_access:
        return false()
    if scope.unrestricted:
        return true()

    clause: ColumnElement = true() if scope.default_allow else false()
    for scope_filter in reversed(scope.filters):
        current = _filter_clause(model_cls, scope_filter.conditions)
        if scope_filter.effect == Effect.ALLOW:
            clause = or_(current, clause)
        else:
            clause = and_(not_(current), clause)
    return clause


def row_visible(scope: DataScope, attributes: Dict[str, Any], data_types: Optional[Dict[str, str]] = None) -> bool:
    """Apply a DataScope to one in-memory row."""
    if not scope.has_access:
        return False
    data_types = data_types or {}
    for scope_filter in scope.filters:
        matched = conditions.fold(
            (
                conditions.evaluate(
                    c.operator, c.value, attributes.get(c.attribute), data_types.get(c.attribute)
                ),
                c.logical_operator,
            )
            for c in scope_filter.conditions
        )
        if matched:
            return scope_filter.effect == Effect.ALLOW
    return scope.default_allow
