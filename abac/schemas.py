"""
Pydantic schemas for the ABAC subsystem.

These schemas handle:
1. Domain types consumed by the policy engine (rules, conditions, definitions)
2. Request validation (what the admin UI sends)
3. Response serialization (decisions, traces, audit records)

Attributes are snake_case in Python and camelCase on the wire
(modelName, resourceId, finalDecision, ...). Either form is accepted on input.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from abac.exceptions import ValueCoercionError
from abac.values import ValueKind, as_aware, coerce


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
        protected_namespaces=(),
    )


# ============ Enumerations ============

class DataType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    REFERENCE = "reference"
    ARRAY = "array"


class AttributeCategory(str, Enum):
    USER = "user"
    RESOURCE = "resource"
    ENVIRONMENT = "environment"
    CONTEXT = "context"


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    BETWEEN = "between"
    SAME_AS_USER = "same_as_user"
    DIFFERENT_FROM_USER = "different_from_user"


SUBJECT_REFERENCE_OPERATORS = {Operator.SAME_AS_USER.value, Operator.DIFFERENT_FROM_USER.value}


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class Action(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    APPROVE = "approve"
    REJECT = "reject"
    EXPORT = "export"
    IMPORT = "import"


class Effect(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    INDETERMINATE = "indeterminate"


class SubjectType(str, Enum):
    USER = "user"
    ROLE = "role"
    GROUP = "group"
    ANY = "any"


WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


# ============ Attribute definitions ============

class PossibleValue(CamelModel):
    value: str
    label: Optional[str] = None


class ValidationRules(CamelModel):
    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None

    @field_validator("pattern")
    @classmethod
    def validate_pattern(cls, v):
        if v:
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"Invalid pattern: {e}")
        return v


class AttributeDefinition(CamelModel):
    """
    Catalog entry for an attribute that conditions may reference.

    Example:
        {
            "name": "department",
            "displayName": "Department",
            "dataType": "reference",
            "referenceModel": "Department",
            "category": "user"
        }
    """
    name: str = Field(..., min_length=1, max_length=100)
    display_name: str = Field(..., min_length=1, max_length=255)
    data_type: DataType
    reference_model: Optional[str] = None
    possible_values: List[PossibleValue] = Field(default_factory=list)
    category: AttributeCategory
    is_required: bool = False
    is_active: bool = True
    description: Optional[str] = None
    validation_rules: Optional[ValidationRules] = None

    def validate_value(self, raw: Any) -> Any:
        """
        Check a user-supplied value against this definition.

        Returns:
            The value converted to plain Python for storage

        Raises:
            ValueCoercionError: wrong type, outside min/max, pattern mismatch
                or not one of possible_values
        """
        typed = coerce(raw, self.data_type.value)
        rules = self.validation_rules

        if rules is not None:
            if typed.kind == ValueKind.NUMBER:
                if rules.min is not None and typed.value < rules.min:
                    raise ValueCoercionError(f"{self.name}: {typed.value} is below minimum {rules.min}")
                if rules.max is not None and typed.value > rules.max:
                    raise ValueCoercionError(f"{self.name}: {typed.value} is above maximum {rules.max}")
            if typed.kind == ValueKind.STRING and rules.pattern:
                if not re.fullmatch(rules.pattern, typed.value):
                    raise ValueCoercionError(f"{self.name}: {typed.value!r} does not match pattern")

        if self.possible_values:
            allowed = {pv.value for pv in self.possible_values}
            members = typed.value if typed.kind == ValueKind.ARRAY else (typed,)
            for member in members:
                if str(member.to_python()) not in allowed:
                    raise ValueCoercionError(
                        f"{self.name}: {member.to_python()!r} is not one of {sorted(allowed)}"
                    )

        if typed.kind == ValueKind.DATE:
            return typed.value.isoformat()
        return typed.to_python()


class AttributeDefinitionUpdate(CamelModel):
    display_name: Optional[str] = None
    data_type: Optional[DataType] = None
    reference_model: Optional[str] = None
    possible_values: Optional[List[PossibleValue]] = None
    category: Optional[AttributeCategory] = None
    is_required: Optional[bool] = None
    is_active: Optional[bool] = None
    description: Optional[str] = None
    validation_rules: Optional[ValidationRules] = None


# ============ User attributes ============

class UserAttribute(CamelModel):
    user_id: str
    attribute_name: str
    attribute_value: Any = None
    set_by: Optional[str] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True
    updated_at: Optional[datetime] = None


class SetUserAttributeRequest(CamelModel):
    """
    Request to grant (or replace) one attribute value for a user.

    Example:
        {
            "attributeName": "department",
            "attributeValue": "CSE",
            "validUntil": "2026-06-30T23:59:59Z"
        }
    """
    attribute_name: str = Field(..., min_length=1, max_length=100)
    attribute_value: Any
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None

    @model_validator(mode="after")
    def check_window(self):
        if self.attribute_value is None:
            raise ValueError("attributeValue is required")
        if self.valid_from and self.valid_until and as_aware(self.valid_until) < as_aware(self.valid_from):
            raise ValueError("validUntil must not precede validFrom")
        return self


# ============ Policy rules ============

class Condition(CamelModel):
    attribute: str
    operator: str
    value: Any = None
    logical_operator: LogicalOperator = LogicalOperator.AND
    reference_user_attribute: Optional[str] = None


class TimeSlot(CamelModel):
    start: str
    end: str


class TimeBasedAccess(CamelModel):
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    allowed_hours: List[TimeSlot] = Field(default_factory=list)
    allowed_days: List[str] = Field(default_factory=list)


class ResourceSpec(CamelModel):
    model_name: str = Field(..., min_length=1)
    resource_conditions: List[Condition] = Field(default_factory=list)


class PolicyRule(CamelModel):
    """
    A single prioritized rule. Lower priority numbers are evaluated first.

    The engine reads rules leniently: an unknown operator or a missing
    reference attribute only makes that condition false.
    """
    id: Optional[int] = None
    name: str
    description: Optional[str] = None
    is_active: bool = True
    priority: int = 100
    subject: SubjectType = SubjectType.USER
    subject_conditions: List[Condition] = Field(default_factory=list)
    resource: ResourceSpec
    actions: List[str] = Field(default_factory=list)
    environment_conditions: List[Condition] = Field(default_factory=list)
    effect: Effect = Effect.ALLOW
    time_based_access: Optional[TimeBasedAccess] = None
    policy_group: str = "default"
    created_by: Optional[str] = None
    last_modified_by: Optional[str] = None
    created_at: Optional[datetime] = None


def _check_conditions(conditions: List[Condition], section: str, allow_subject_reference: bool):
    known = {op.value for op in Operator}
    for condition in conditions:
        if condition.operator not in known:
            raise ValueError(f"{section}: unknown operator {condition.operator!r}")
        if condition.operator in SUBJECT_REFERENCE_OPERATORS:
            if not allow_subject_reference:
                raise ValueError(f"{section}: {condition.operator} is only valid in resource conditions")
            if not condition.reference_user_attribute:
                raise ValueError(f"{section}: {condition.operator} requires referenceUserAttribute")
        if condition.operator in ("in", "not_in") and not isinstance(condition.value, list):
            raise ValueError(f"{section}: {condition.operator} requires a list value")
        if condition.operator == "between" and (
            not isinstance(condition.value, list) or len(condition.value) != 2
        ):
            raise ValueError(f"{section}: between requires [low, high]")


class PolicyRuleRequest(CamelModel):
    """
    Create/update payload for a policy rule (strict validation).

    Example:
        {
            "name": "Faculty read own department students",
            "priority": 10,
            "resource": {
                "modelName": "Student",
                "resourceConditions": [
                    {"attribute": "departmentId", "operator": "same_as_user",
                     "referenceUserAttribute": "department"}
                ]
            },
            "actions": ["read"],
            "effect": "allow"
        }
    """
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    is_active: bool = True
    priority: int = 100
    subject: SubjectType = SubjectType.USER
    subject_conditions: List[Condition] = Field(default_factory=list)
    resource: ResourceSpec
    actions: List[Action] = Field(..., min_length=1)
    environment_conditions: List[Condition] = Field(default_factory=list)
    effect: Effect = Effect.ALLOW
    time_based_access: Optional[TimeBasedAccess] = None
    policy_group: str = "default"

    @model_validator(mode="after")
    def check_rule(self):
        _check_conditions(self.subject_conditions, "subjectConditions", False)
        _check_conditions(self.resource.resource_conditions, "resourceConditions", True)
        _check_conditions(self.environment_conditions, "environmentConditions", False)

        window = self.time_based_access
        if window is not None:
            for slot in window.allowed_hours:
                if not _HHMM.match(slot.start) or not _HHMM.match(slot.end):
                    raise ValueError(f"allowedHours entries must be HH:MM, got {slot.start}-{slot.end}")
            for day in window.allowed_days:
                if day.lower() not in WEEKDAYS:
                    raise ValueError(f"Unknown weekday: {day}")
            window.allowed_days = [day.lower() for day in window.allowed_days]
            if window.valid_from and window.valid_until and as_aware(window.valid_until) < as_aware(window.valid_from):
                raise ValueError("timeBasedAccess.validUntil must not precede validFrom")
        return self

    def to_rule(self, **extra) -> PolicyRule:
        data = self.model_dump()
        data["actions"] = [action.value for action in self.actions]
        data.update(extra)
        return PolicyRule.model_validate(data)


# ============ Evaluation ============

class ResourceRef(CamelModel):
    """Target of an access request; attributes is a resolved snapshot."""
    model_name: str = Field(..., min_length=1)
    resource_id: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)


class EvaluationRequest(CamelModel):
    """
    Body of POST /abac/policies/test.

    Example:
        {
            "userId": "u-1",
            "resource": {"modelName": "Student", "resourceId": "s-9",
                         "attributes": {"departmentId": "CSE"}},
            "action": "read",
            "context": {"ipAddress": "10.0.0.4"}
        }
    """
    user_id: str = Field(..., min_length=1)
    resource: ResourceRef
    action: Action
    context: Dict[str, Any] = Field(default_factory=dict)


class ConditionTrace(CamelModel):
    type: str
    attribute: Optional[str] = None
    operator: Optional[str] = None
    expected_value: Any = None
    actual_value: Any = None
    reference_user_attribute: Optional[str] = None
    logical_operator: Optional[str] = None
    result: bool
    warning: Optional[str] = None
    reason: Optional[str] = None


class PolicyTrace(CamelModel):
    policy_id: Optional[int] = None
    policy_name: Optional[str] = None
    matched: bool = False
    effect: Optional[str] = None
    action_matched: Optional[bool] = None
    time_window_satisfied: Optional[bool] = None
    conditions: List[ConditionTrace] = Field(default_factory=list)
    error: Optional[str] = None
    detail: Optional[str] = None


class EvaluationResult(CamelModel):
    final_decision: Decision
    evaluated_policies: List[PolicyTrace] = Field(default_factory=list)
    evaluation_time_ms: float = 0.0
    store_error: bool = False

    @property
    def allowed(self) -> bool:
        """Only an explicit allow grants access; indeterminate fails closed."""
        return self.final_decision == Decision.ALLOW


class ResourceKey(CamelModel):
    model_name: Optional[str] = None
    resource_id: Optional[str] = None


class PolicyEvaluationRecord(CamelModel):
    """Immutable audit record of one evaluate() call."""
    id: Optional[str] = None
    user_id: str
    resource: ResourceKey
    action: str
    request_context: Dict[str, Any] = Field(default_factory=dict)
    evaluated_policies: List[PolicyTrace] = Field(default_factory=list)
    final_decision: Decision
    evaluation_time_ms: float = 0.0
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime
    expires_at: Optional[datetime] = None


class EvaluationPage(CamelModel):
    evaluations: List[PolicyEvaluationRecord]
    total_count: int
    current_page: int
    total_pages: int


class ScopeFilter(CamelModel):
    """Resource conditions of one matching rule, resolved against the subject."""
    policy_id: Optional[int] = None
    policy_name: Optional[str] = None
    effect: Effect = Effect.ALLOW
    conditions: List[Condition] = Field(default_factory=list)


class DataScope(CamelModel):
    """
    List-level access for one model.

    filters are in priority order; a row is visible when the first filter
    whose conditions it satisfies is an allow filter, or, when it satisfies
    none of them, when default_allow is set.
    """
    has_access: bool
    unrestricted: bool = False
    default_allow: bool = False
    filters: List[ScopeFilter] = Field(default_factory=list)


class MessageResponse(CamelModel):
    message: str
