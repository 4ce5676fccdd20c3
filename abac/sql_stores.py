"""
SQLAlchemy-backed store adapters.

Each adapter opens a short transaction per call through Database.session_scope
and converts ORM rows into schemas before the session closes. Any
SQLAlchemyError is re-raised as StoreUnavailableError so the engine can fail
closed without knowing about the database.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import logging

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from abac.config import DEFAULT_AUDIT_TTL_SECONDS
from abac.database import Database
from abac.exceptions import NotFoundError, StoreUnavailableError, ValueCoercionError
from abac.interfaces import (
    AttributeRegistry, EvaluationSink, PolicyStore, UserAttributeStore, select_current
)
from abac.repository import (
    AttributeDefinitionRepository, PolicyEvaluationRepository, PolicyRuleRepository,
    UserAttributeRepository
)
from abac.schemas import (
    AttributeDefinition, PolicyEvaluationRecord, PolicyRule, UserAttribute
)
from abac.models import utcnow

logger = logging.getLogger(__name__)


class _SqlStore:

    def __init__(self, database: Database):
        self.database = database

    @contextmanager
    def _session(self, operation: str):
        try:
            with self.database.session_scope() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"{type(self).__name__}.{operation} failed: {e}")
            raise StoreUnavailableError(f"{operation}: {e}") from e


class SqlAttributeRegistry(_SqlStore, AttributeRegistry):

    def get(self, name: str) -> Optional[AttributeDefinition]:
        with self._session("get_attribute") as session:
            row = AttributeDefinitionRepository.get(session, name)
            return row.to_schema() if row else None

    def list(self, category: Optional[str] = None) -> List[AttributeDefinition]:
        with self._session("list_attributes") as session:
            return [row.to_schema() for row in AttributeDefinitionRepository.list(session, category)]

    def create(self, definition: AttributeDefinition) -> AttributeDefinition:
        with self._session("create_attribute") as session:
            return AttributeDefinitionRepository.create(session, definition).to_schema()

    def update(self, name: str, changes: Dict[str, Any]) -> AttributeDefinition:
        with self._session("update_attribute") as session:
            existing = AttributeDefinitionRepository.get(session, name, active_only=False)
            if existing is None:
                raise NotFoundError(f"Attribute '{name}' not found")
            # validate the merged result before touching the row
            try:
                merged = AttributeDefinition.model_validate(
                    {**existing.to_schema().model_dump(), **changes, "name": name}
                )
            except ValidationError as e:
                raise ValueCoercionError(f"Invalid update for attribute '{name}': {e}") from e
            data = merged.model_dump(mode="json")
            data.pop("name")
            return AttributeDefinitionRepository.update(session, name, **data).to_schema()

    def deactivate(self, name: str) -> bool:
        with self._session("deactivate_attribute") as session:
            return AttributeDefinitionRepository.deactivate(session, name)


class SqlUserAttributeStore(_SqlStore, UserAttributeStore):

    def active_attributes(self, user_id: str, as_of: Optional[datetime] = None) -> Dict[str, Any]:
        with self._session("active_attributes") as session:
            rows = [row.to_schema() for row in UserAttributeRepository.list_for_user(session, user_id)]
        return select_current(rows, as_of or utcnow())

    def has_subject(self, user_id: str) -> bool:
        with self._session("has_subject") as session:
            return UserAttributeRepository.exists_for_user(session, user_id)

    def list(self, user_id: str) -> List[UserAttribute]:
        with self._session("list_user_attributes") as session:
            return [row.to_schema() for row in UserAttributeRepository.list_for_user(session, user_id)]

    def set(
        self,
        user_id: str,
        attribute_name: str,
        value: Any,
        set_by: Optional[str] = None,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None
    ) -> UserAttribute:
        with self._session("set_user_attribute") as session:
            return UserAttributeRepository.upsert(
                session, user_id, attribute_name, value,
                set_by=set_by, valid_from=valid_from, valid_until=valid_until
            ).to_schema()

    def remove(self, user_id: str, attribute_name: str) -> bool:
        with self._session("remove_user_attribute") as session:
            return UserAttributeRepository.deactivate(session, user_id, attribute_name)


class SqlPolicyStore(_SqlStore, PolicyStore):

    def candidates(self, model_name: str) -> List[PolicyRule]:
        with self._session("candidates") as session:
            return [row.to_schema() for row in PolicyRuleRepository.candidates(session, model_name)]

    def list(self, model_name: Optional[str] = None, is_active: Optional[bool] = None) -> List[PolicyRule]:
        with self._session("list_policies") as session:
            return [row.to_schema() for row in PolicyRuleRepository.list(session, model_name, is_active)]

    def get(self, policy_id: int) -> Optional[PolicyRule]:
        with self._session("get_policy") as session:
            row = PolicyRuleRepository.get(session, policy_id)
            return row.to_schema() if row else None

    def add(self, rule: PolicyRule) -> PolicyRule:
        with self._session("add_policy") as session:
            return PolicyRuleRepository.create(session, rule).to_schema()

    def update(self, policy_id: int, rule: PolicyRule) -> PolicyRule:
        with self._session("update_policy") as session:
            row = PolicyRuleRepository.update(session, policy_id, rule)
            if row is None:
                raise NotFoundError(f"Policy {policy_id} not found")
            return row.to_schema()

    def deactivate(self, policy_id: int, modified_by: Optional[str] = None) -> bool:
        with self._session("deactivate_policy") as session:
            return PolicyRuleRepository.deactivate(session, policy_id, modified_by)


class SqlEvaluationSink(_SqlStore, EvaluationSink):

    def __init__(self, database: Database, ttl_seconds: int = DEFAULT_AUDIT_TTL_SECONDS):
        super().__init__(database)
        self.ttl_seconds = ttl_seconds

    def save(self, record: PolicyEvaluationRecord) -> None:
        with self._session("save_evaluation") as session:
            PolicyEvaluationRepository.create(session, record, self.ttl_seconds)

    def query(
        self,
        user_id: Optional[str] = None,
        model_name: Optional[str] = None,
        action: Optional[str] = None,
        decision: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> Tuple[List[PolicyEvaluationRecord], int]:
        with self._session("query_evaluations") as session:
            rows, total = PolicyEvaluationRepository.query(
                session, user_id=user_id, model_name=model_name,
                action=action, decision=decision, skip=skip, limit=limit
            )
            return [row.to_schema() for row in rows], total

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        with self._session("purge_evaluations") as session:
            return PolicyEvaluationRepository.purge_expired(session, now)
