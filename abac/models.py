"""
Database models for the ABAC subsystem.

This module defines SQLAlchemy ORM models for the attribute catalog, per-user
attribute values, policy rules and the evaluation audit trail.

Models:
- AttributeDefinitionRow: Catalog of attributes that conditions may reference
- UserAttributeRow: One attribute value granted to one user
- PolicyRuleRow: A prioritized allow/deny rule
- PolicyEvaluationRow: Audit record of one access decision (expires via TTL)

All datetimes are written in UTC. Some backends (SQLite) hand them back
naive, so readers attach UTC before converting to schemas.
"""

from datetime import datetime, timezone
import uuid

from sqlalchemy import (
    CheckConstraint, Column, String, DateTime, Text, Integer, Index, Boolean,
    Float, UniqueConstraint, desc
)
from sqlalchemy import JSON
from sqlalchemy.orm import declarative_base

from abac.schemas import (
    AttributeDefinition, PolicyEvaluationRecord, PolicyRule, UserAttribute
)

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value):
    """Attach UTC to naive datetimes read back from the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AttributeDefinitionRow(Base):
    """
    Attribute catalog entry.

    Attributes:
        name: Unique attribute key used in conditions (e.g. "department")
        data_type: string, number, boolean, date, reference or array
        category: user, resource, environment or context
        possible_values: Optional list of {value, label} choices
        validation_rules: Optional {min, max, pattern}
        is_active: Soft delete flag
    """

    __tablename__ = "abac_attribute_definitions"

    id = Column(Integer, primary_key=True, autoincrement=True)

    name = Column(
        String(100),
        nullable=False,
        unique=True,
        doc="Attribute key referenced by policy conditions"
    )
    display_name = Column(String(255), nullable=False)
    data_type = Column(String(20), nullable=False)
    reference_model = Column(String(100), nullable=True)
    possible_values = Column(JSON, nullable=False, default=lambda: [])
    category = Column(String(20), nullable=False, index=True)
    is_required = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    description = Column(Text, nullable=True)
    validation_rules = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "data_type IN ('string', 'number', 'boolean', 'date', 'reference', 'array')",
            name="ck_abac_attribute_data_type"
        ),
        CheckConstraint(
            "category IN ('user', 'resource', 'environment', 'context')",
            name="ck_abac_attribute_category"
        ),
    )

    def __repr__(self):
        return f"<AttributeDefinitionRow(name='{self.name}', data_type='{self.data_type}')>"

    def to_schema(self) -> AttributeDefinition:
        return AttributeDefinition(
            name=self.name,
            display_name=self.display_name,
            data_type=self.data_type,
            reference_model=self.reference_model,
            possible_values=self.possible_values or [],
            category=self.category,
            is_required=self.is_required,
            is_active=self.is_active,
            description=self.description,
            validation_rules=self.validation_rules,
        )


class UserAttributeRow(Base):
    """
    Attribute value held by a user, optionally limited to a validity window.

    (user_id, attribute_name) is unique; granting a value again replaces it.
    """

    __tablename__ = "abac_user_attributes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    attribute_name = Column(String(100), nullable=False)
    attribute_value = Column(
        JSON,
        nullable=True,
        doc="Any JSON value; typed by the attribute definition at evaluation time"
    )
    set_by = Column(String(64), nullable=True)
    valid_from = Column(DateTime(timezone=True), nullable=True)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "attribute_name", name="uq_abac_user_attribute"),
        Index("idx_abac_user_active", user_id, is_active),
    )

    def __repr__(self):
        return f"<UserAttributeRow(user_id='{self.user_id}', attribute='{self.attribute_name}')>"

    def to_schema(self) -> UserAttribute:
        return UserAttribute(
            user_id=self.user_id,
            attribute_name=self.attribute_name,
            attribute_value=self.attribute_value,
            set_by=self.set_by,
            valid_from=as_utc(self.valid_from),
            valid_until=as_utc(self.valid_until),
            is_active=self.is_active,
            updated_at=as_utc(self.updated_at),
        )


class PolicyRuleRow(Base):
    """
    Policy rule. Condition lists and the time window are stored as JSON in
    their camelCase wire form.

    The integer primary key doubles as insertion order, which breaks ties
    between rules of equal priority.
    """

    __tablename__ = "abac_policy_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=100)
    subject = Column(String(20), nullable=False, default="user")
    subject_conditions = Column(JSON, nullable=False, default=lambda: [])
    model_name = Column(String(100), nullable=False)
    resource_conditions = Column(JSON, nullable=False, default=lambda: [])
    actions = Column(JSON, nullable=False, default=lambda: [])
    environment_conditions = Column(JSON, nullable=False, default=lambda: [])
    effect = Column(String(10), nullable=False, default="allow")
    time_based_access = Column(JSON, nullable=True)
    policy_group = Column(String(100), nullable=False, default="default")
    created_by = Column(String(64), nullable=True)
    last_modified_by = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        # Index for: candidate rules of a model in evaluation order
        Index("idx_abac_policy_candidates", model_name, is_active, priority),
        CheckConstraint("effect IN ('allow', 'deny')", name="ck_abac_policy_effect"),
    )

    def __repr__(self):
        return f"<PolicyRuleRow(id={self.id}, name='{self.name}', priority={self.priority})>"

    def apply(self, rule: PolicyRule) -> None:
        """Copy a rule's content onto this row (id and audit fields excluded)."""
        data = rule.model_dump(mode="json", by_alias=True)
        self.name = rule.name
        self.description = rule.description
        self.is_active = rule.is_active
        self.priority = rule.priority
        self.subject = rule.subject.value
        self.subject_conditions = data["subjectConditions"]
        self.model_name = rule.resource.model_name
        self.resource_conditions = data["resource"]["resourceConditions"]
        self.actions = list(rule.actions)
        self.environment_conditions = data["environmentConditions"]
        self.effect = rule.effect.value
        self.time_based_access = data["timeBasedAccess"]
        self.policy_group = rule.policy_group

    def to_schema(self) -> PolicyRule:
        return PolicyRule.model_validate({
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "isActive": self.is_active,
            "priority": self.priority,
            "subject": self.subject,
            "subjectConditions": self.subject_conditions or [],
            "resource": {
                "modelName": self.model_name,
                "resourceConditions": self.resource_conditions or [],
            },
            "actions": self.actions or [],
            "environmentConditions": self.environment_conditions or [],
            "effect": self.effect,
            "timeBasedAccess": self.time_based_access,
            "policyGroup": self.policy_group,
            "createdBy": self.created_by,
            "lastModifiedBy": self.last_modified_by,
            "createdAt": as_utc(self.created_at),
        })


class PolicyEvaluationRow(Base):
    """
    Audit record of one access decision.

    Rows past expires_at are invisible to queries and removed by
    PolicyEvaluationRepository.purge_expired.
    """

    __tablename__ = "abac_policy_evaluations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(64), nullable=False)
    model_name = Column(String(100), nullable=True)
    resource_id = Column(String(100), nullable=True)
    action = Column(String(20), nullable=False)
    request_context = Column(JSON, nullable=False, default=lambda: {})
    evaluated_policies = Column(JSON, nullable=False, default=lambda: [])
    final_decision = Column(String(20), nullable=False)
    evaluation_time_ms = Column(Float, nullable=False, default=0.0)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_abac_eval_timestamp", desc(timestamp)),
        Index("idx_abac_eval_user", user_id, desc(timestamp)),
        Index("idx_abac_eval_expires", expires_at),
        CheckConstraint(
            "final_decision IN ('allow', 'deny', 'indeterminate')",
            name="ck_abac_eval_decision"
        ),
    )

    def __repr__(self):
        return f"<PolicyEvaluationRow(id={self.id}, user_id='{self.user_id}', decision='{self.final_decision}')>"

    def to_schema(self) -> PolicyEvaluationRecord:
        return PolicyEvaluationRecord.model_validate({
            "id": self.id,
            "userId": self.user_id,
            "resource": {"modelName": self.model_name, "resourceId": self.resource_id},
            "action": self.action,
            "requestContext": self.request_context or {},
            "evaluatedPolicies": self.evaluated_policies or [],
            "finalDecision": self.final_decision,
            "evaluationTimeMs": self.evaluation_time_ms,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "timestamp": as_utc(self.timestamp),
            "expiresAt": as_utc(self.expires_at),
        })
