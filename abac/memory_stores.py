"""
In-memory store implementations.

Used by tests and by deployments that load attributes and policies from a
YAML file instead of the database. All stores are safe to share between
threads; every write takes the store's lock.
"""

import itertools
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger
from pydantic import ValidationError

from abac.config import DEFAULT_AUDIT_TTL_SECONDS
from abac.exceptions import DuplicateError, NotFoundError, ValueCoercionError
from abac.interfaces import (
    AttributeRegistry, EvaluationSink, PolicyStore, UserAttributeStore, select_current
)
from abac.schemas import (
    AttributeDefinition, PolicyEvaluationRecord, PolicyRule, UserAttribute
)
from abac.values import as_aware


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryAttributeRegistry(AttributeRegistry):

    def __init__(self, definitions: Optional[List[AttributeDefinition]] = None):
        self._definitions: Dict[str, AttributeDefinition] = {}
        self._lock = threading.Lock()
        for definition in definitions or []:
            self.create(definition)

    def get(self, name: str) -> Optional[AttributeDefinition]:
        definition = self._definitions.get(name)
        if definition is None or not definition.is_active:
            return None
        return definition

    def list(self, category: Optional[str] = None) -> List[AttributeDefinition]:
        definitions = [
            d for d in self._definitions.values()
            if d.is_active and (category is None or d.category.value == category)
        ]
        return sorted(definitions, key=lambda d: (d.category.value, d.name))

    def create(self, definition: AttributeDefinition) -> AttributeDefinition:
        with self._lock:
            existing = self._definitions.get(definition.name)
            if existing is not None and existing.is_active:
                raise DuplicateError(f"Attribute '{definition.name}' already exists")
            self._definitions[definition.name] = definition.model_copy(deep=True)
        logger.debug(f"Registered attribute definition {definition.name}")
        return self._definitions[definition.name]

    def update(self, name: str, changes: Dict[str, Any]) -> AttributeDefinition:
        with self._lock:
            existing = self._definitions.get(name)
            if existing is None:
                raise NotFoundError(f"Attribute '{name}' not found")
            try:
                updated = AttributeDefinition.model_validate({**existing.model_dump(), **changes, "name": name})
            except ValidationError as e:
                raise ValueCoercionError(f"Invalid update for attribute '{name}': {e}") from e
            self._definitions[name] = updated
        return updated

    def deactivate(self, name: str) -> bool:
        with self._lock:
            existing = self._definitions.get(name)
            if existing is None:
                return False
            self._definitions[name] = existing.model_copy(update={"is_active": False})
        return True


class InMemoryUserAttributeStore(UserAttributeStore):

    def __init__(self):
        self._rows: Dict[Tuple[str, str], UserAttribute] = {}
        self._lock = threading.Lock()

    def active_attributes(self, user_id: str, as_of: Optional[datetime] = None) -> Dict[str, Any]:
        as_of = as_of or _utcnow()
        with self._lock:
            rows = [row for (owner, _), row in self._rows.items() if owner == user_id]
        return select_current(rows, as_of)

    def has_subject(self, user_id: str) -> bool:
        with self._lock:
            return any(owner == user_id for owner, _ in self._rows)

    def list(self, user_id: str) -> List[UserAttribute]:
        with self._lock:
            rows = [row for (owner, _), row in self._rows.items() if owner == user_id and row.is_active]
        return sorted(rows, key=lambda row: row.attribute_name)

    def set(
        self,
        user_id: str,
        attribute_name: str,
        value: Any,
        set_by: Optional[str] = None,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None
    ) -> UserAttribute:
        now = _utcnow()
        row = UserAttribute(
            user_id=user_id,
            attribute_name=attribute_name,
            attribute_value=value,
            set_by=set_by,
            valid_from=as_aware(valid_from) if valid_from else now,
            valid_until=as_aware(valid_until) if valid_until else None,
            is_active=True,
            updated_at=now,
        )
        with self._lock:
            self._rows[(user_id, attribute_name)] = row
        return row

    def remove(self, user_id: str, attribute_name: str) -> bool:
        with self._lock:
            existing = self._rows.get((user_id, attribute_name))
            if existing is None or not existing.is_active:
                return False
            self._rows[(user_id, attribute_name)] = existing.model_copy(
                update={"is_active": False, "updated_at": _utcnow()}
            )
        return True


class InMemoryPolicyStore(PolicyStore):
    """Rules keep their insertion order; ids are assigned sequentially."""

    def __init__(self, rules: Optional[List[PolicyRule]] = None):
        self._rules: Dict[int, PolicyRule] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        for rule in rules or []:
            self.add(rule)

    def candidates(self, model_name: str) -> List[PolicyRule]:
        with self._lock:
            rules = [
                rule for rule in self._rules.values()
                if rule.is_active and rule.resource.model_name == model_name
            ]
        # dict preserves insertion order and sorted() is stable
        return sorted(rules, key=lambda rule: rule.priority)

    def list(self, model_name: Optional[str] = None, is_active: Optional[bool] = None) -> List[PolicyRule]:
        with self._lock:
            rules = [
                rule for rule in self._rules.values()
                if (model_name is None or rule.resource.model_name == model_name)
                and (is_active is None or rule.is_active == is_active)
            ]
        return sorted(rules, key=lambda rule: rule.priority)

    def get(self, policy_id: int) -> Optional[PolicyRule]:
        return self._rules.get(policy_id)

    def add(self, rule: PolicyRule) -> PolicyRule:
        with self._lock:
            policy_id = next(self._ids)
            stored = rule.model_copy(
                update={"id": policy_id, "created_at": rule.created_at or _utcnow()},
                deep=True,
            )
            self._rules[policy_id] = stored
        logger.debug(f"Added policy {policy_id} ({stored.name}) for {stored.resource.model_name}")
        return stored

    def update(self, policy_id: int, rule: PolicyRule) -> PolicyRule:
        with self._lock:
            existing = self._rules.get(policy_id)
            if existing is None:
                raise NotFoundError(f"Policy {policy_id} not found")
            stored = rule.model_copy(
                update={
                    "id": policy_id,
                    "created_at": existing.created_at,
                    "created_by": existing.created_by,
                },
                deep=True,
            )
            self._rules[policy_id] = stored
        return stored

    def deactivate(self, policy_id: int, modified_by: Optional[str] = None) -> bool:
        with self._lock:
            existing = self._rules.get(policy_id)
            if existing is None:
                return False
            self._rules[policy_id] = existing.model_copy(
                update={"is_active": False, "last_modified_by": modified_by}
            )
        return True


class InMemoryEvaluationSink(EvaluationSink):
    """Audit records kept in a list; expired records are hidden on read and dropped on write."""

    def __init__(self, ttl_seconds: int = DEFAULT_AUDIT_TTL_SECONDS, clock=None):
        self.ttl_seconds = ttl_seconds
        self._clock = clock or _utcnow
        self._records: List[PolicyEvaluationRecord] = []
        self._lock = threading.Lock()

    def save(self, record: PolicyEvaluationRecord) -> None:
        stored = record.model_copy(
            update={
                "id": record.id or str(uuid.uuid4()),
                "expires_at": record.timestamp + timedelta(seconds=self.ttl_seconds),
            }
        )
        now = self._clock()
        with self._lock:
            self._records = [r for r in self._records if as_aware(r.expires_at) > now]
            self._records.append(stored)

    def query(
        self,
        user_id: Optional[str] = None,
        model_name: Optional[str] = None,
        action: Optional[str] = None,
        decision: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> Tuple[List[PolicyEvaluationRecord], int]:
        now = self._clock()
        with self._lock:
            records = [
                r for r in self._records
                if as_aware(r.expires_at) > now
                and (user_id is None or r.user_id == user_id)
                and (model_name is None or r.resource.model_name == model_name)
                and (action is None or r.action == action)
                and (decision is None or r.final_decision.value == decision)
            ]
        records.sort(key=lambda r: as_aware(r.timestamp), reverse=True)
        return records[skip:skip + limit], len(records)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        with self._lock:
            before = len(self._records)
            self._records = [r for r in self._records if as_aware(r.expires_at) > now]
            return before - len(self._records)
