"""
Business logic for ABAC administration.

The service layer sits between the API routes and the stores.
It handles:
- Validating user attribute values against the attribute catalog
- Stamping createdBy / lastModifiedBy / setBy on writes
- Paginating the audit log
- Wiring the stores, recorder and engine together (build_services)
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import logging

from abac.config import ABACConfig
from abac.database import Database
from abac.engine import PolicyEngine
from abac.exceptions import NotFoundError, ValueCoercionError
from abac.interfaces import AttributeRegistry, EvaluationSink, PolicyStore, UserAttributeStore
from abac.loader import load_policy_file, seed_stores
from abac.recorder import EvaluationRecorder
from abac.schemas import (
    AttributeDefinition, AttributeDefinitionUpdate, DataScope, EvaluationPage,
    EvaluationRequest, EvaluationResult, PolicyRule, PolicyRuleRequest,
    SetUserAttributeRequest, UserAttribute
)
from abac.sql_stores import (
    SqlAttributeRegistry, SqlEvaluationSink, SqlPolicyStore, SqlUserAttributeStore
)

logger = logging.getLogger(__name__)


class ABACService:
    """
    Admin operations behind the /abac routes.

    Args:
        registry, policies, user_attributes, sink: injected stores
        engine: PolicyEngine used for policy tests and data scopes
    """

    def __init__(
        self,
        registry: AttributeRegistry,
        policies: PolicyStore,
        user_attributes: UserAttributeStore,
        sink: EvaluationSink,
        engine: PolicyEngine
    ):
        self.registry = registry
        self.policies = policies
        self.user_attributes = user_attributes
        self.sink = sink
        self.engine = engine

    # ============ Attribute definitions ============

    def list_attributes(self, category: Optional[str] = None) -> List[AttributeDefinition]:
        return self.registry.list(category)

    def create_attribute(self, definition: AttributeDefinition) -> AttributeDefinition:
        created = self.registry.create(definition)
        logger.info(f"Attribute {created.name} created ({created.data_type.value}, {created.category.value})")
        return created

    def update_attribute(self, name: str, update: AttributeDefinitionUpdate) -> AttributeDefinition:
        changes = update.model_dump(exclude_unset=True)
        return self.registry.update(name, changes)

    def delete_attribute(self, name: str) -> None:
        if not self.registry.deactivate(name):
            raise NotFoundError(f"Attribute '{name}' not found")
        logger.info(f"Attribute {name} deactivated")

    # ============ Policies ============

    def list_policies(self, model_name: Optional[str] = None, is_active: Optional[bool] = None) -> List[PolicyRule]:
        return self.policies.list(model_name=model_name, is_active=is_active)

    def create_policy(self, request: PolicyRuleRequest, created_by: Optional[str]) -> PolicyRule:
        rule = self.policies.add(request.to_rule(created_by=created_by, last_modified_by=created_by))
        logger.info(f"Policy {rule.id} ({rule.name}) created by {created_by}")
        return rule

    def update_policy(self, policy_id: int, request: PolicyRuleRequest, modified_by: Optional[str]) -> PolicyRule:
        if self.policies.get(policy_id) is None:
            raise NotFoundError(f"Policy {policy_id} not found")
        rule = self.policies.update(policy_id, request.to_rule(last_modified_by=modified_by))
        logger.info(f"Policy {policy_id} updated by {modified_by}")
        return rule

    def delete_policy(self, policy_id: int, modified_by: Optional[str]) -> None:
        if not self.policies.deactivate(policy_id, modified_by):
            raise NotFoundError(f"Policy {policy_id} not found")
        logger.info(f"Policy {policy_id} deactivated by {modified_by}")

    def test_policy(self, request: EvaluationRequest) -> EvaluationResult:
        return self.engine.evaluate(request.user_id, request.resource, request.action, request.context)

    # ============ User attributes ============

    def list_user_attributes(self, user_id: str) -> List[UserAttribute]:
        return self.user_attributes.list(user_id)

    def set_user_attribute(
        self,
        user_id: str,
        request: SetUserAttributeRequest,
        set_by: Optional[str]
    ) -> UserAttribute:
        """
        Validate and store one attribute value.

        Raises:
            NotFoundError: attribute is not defined (or inactive)
            ValueCoercionError: value does not satisfy the definition
        """
        definition = self.registry.get(request.attribute_name)
        if definition is None:
            raise NotFoundError(f"Attribute '{request.attribute_name}' is not defined")

        try:
            value = definition.validate_value(request.attribute_value)
        except ValueCoercionError:
            logger.warning(f"Rejected value for {request.attribute_name} on user {user_id}")
            raise

        return self.user_attributes.set(
            user_id, request.attribute_name, value,
            set_by=set_by, valid_from=request.valid_from, valid_until=request.valid_until
        )

    def remove_user_attribute(self, user_id: str, attribute_name: str) -> None:
        if not self.user_attributes.remove(user_id, attribute_name):
            raise NotFoundError(f"User {user_id} has no attribute '{attribute_name}'")

    # ============ Audit ============

    def evaluations(
        self,
        user_id: Optional[str] = None,
        model_name: Optional[str] = None,
        action: Optional[str] = None,
        decision: Optional[str] = None,
        limit: int = 50,
        page: int = 1
    ) -> EvaluationPage:
        records, total = self.sink.query(
            user_id=user_id,
            model_name=model_name,
            action=action,
            decision=decision,
            skip=(page - 1) * limit,
            limit=limit,
        )
        return EvaluationPage(
            evaluations=records,
            total_count=total,
            current_page=page,
            total_pages=math.ceil(total / limit) if limit else 0,
        )

    def data_scope(self, user_id: str, model_name: str, action: str = "read",
                   context: Optional[Dict[str, Any]] = None) -> DataScope:
        return self.engine.data_scope(user_id, model_name, action, context)


@dataclass
class ABACServices:
    """Everything the application needs, built once at start-up."""
    config: ABACConfig
    registry: AttributeRegistry
    policies: PolicyStore
    user_attributes: UserAttributeStore
    sink: EvaluationSink
    recorder: EvaluationRecorder
    engine: PolicyEngine
    service: ABACService
    database: Optional[Database] = None

    def start(self) -> None:
        """Seed from the policy file (if configured) and purge expired audit rows."""
        if self.config.policy_file:
            seed_stores(
                load_policy_file(self.config.policy_file),
                self.registry, self.policies, self.user_attributes
            )
        purge = getattr(self.sink, "purge_expired", None)
        if purge is not None:
            purged = purge()
            if purged:
                logger.info(f"Removed {purged} expired policy evaluations")

    def stop(self) -> None:
        self.recorder.shutdown()
        if self.database is not None:
            self.database.dispose()


def assemble(
    config: ABACConfig,
    registry: AttributeRegistry,
    policies: PolicyStore,
    user_attributes: UserAttributeStore,
    sink: EvaluationSink,
    database: Optional[Database] = None,
    clock=None
) -> ABACServices:
    """Wire a recorder, engine and admin service around a set of stores."""
    recorder = EvaluationRecorder(
        sink,
        max_workers=config.recorder_workers,
        timeout_seconds=config.recorder_timeout_seconds
    )
    engine = PolicyEngine(policies, user_attributes, registry, recorder=recorder, clock=clock)
    service = ABACService(registry, policies, user_attributes, sink, engine)
    return ABACServices(
        config=config,
        registry=registry,
        policies=policies,
        user_attributes=user_attributes,
        sink=sink,
        recorder=recorder,
        engine=engine,
        service=service,
        database=database,
    )


def build_services(config: Optional[ABACConfig] = None) -> ABACServices:
    """SQL-backed services for the configured database."""
    config = config or ABACConfig()
    database = Database(config)
    database.create_tables()
    return assemble(
        config,
        registry=SqlAttributeRegistry(database),
        policies=SqlPolicyStore(database),
        user_attributes=SqlUserAttributeStore(database),
        sink=SqlEvaluationSink(database, ttl_seconds=config.audit_ttl_seconds),
        database=database,
    )
