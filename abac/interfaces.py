"""
Store contracts consumed by the policy engine.

Each store has an in-memory implementation (abac.memory_stores) and a
SQLAlchemy implementation (abac.sql_stores). Adapters must raise
StoreUnavailableError when the backing store cannot be reached; the engine
turns that into a fail-closed deny.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from abac.schemas import (
    AttributeDefinition, PolicyEvaluationRecord, PolicyRule, UserAttribute
)
from abac.values import as_aware


class AttributeRegistry(ABC):
    """Catalog of recognized attributes."""

    @abstractmethod
    def get(self, name: str) -> Optional[AttributeDefinition]:
        """Active definition for `name`, or None."""
        pass

    @abstractmethod
    def list(self, category: Optional[str] = None) -> List[AttributeDefinition]:
        """Active definitions ordered by category, then name."""
        pass

    @abstractmethod
    def create(self, definition: AttributeDefinition) -> AttributeDefinition:
        """Add a definition; DuplicateError if the name is taken."""
        pass

    @abstractmethod
    def update(self, name: str, changes: Dict[str, Any]) -> AttributeDefinition:
        """Apply field changes; NotFoundError if missing."""
        pass

    @abstractmethod
    def deactivate(self, name: str) -> bool:
        """Soft delete. Returns False if the name is unknown."""
        pass


class UserAttributeStore(ABC):
    """Per-user attribute values with validity windows."""

    @abstractmethod
    def active_attributes(self, user_id: str, as_of: Optional[datetime] = None) -> Dict[str, Any]:
        """Current value of every attribute of `user_id` at `as_of`."""
        pass

    @abstractmethod
    def has_subject(self, user_id: str) -> bool:
        """True if `user_id` has any attribute row, active or not."""
        pass

    @abstractmethod
    def list(self, user_id: str) -> List[UserAttribute]:
        """Active rows for a user (regardless of validity window)."""
        pass

    @abstractmethod
    def set(
        self,
        user_id: str,
        attribute_name: str,
        value: Any,
        set_by: Optional[str] = None,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None
    ) -> UserAttribute:
        """Atomic upsert keyed on (user_id, attribute_name)."""
        pass

    @abstractmethod
    def remove(self, user_id: str, attribute_name: str) -> bool:
        """Deactivate a value. Returns False if none existed."""
        pass


class PolicyStore(ABC):
    """Ordered collection of policy rules."""

    @abstractmethod
    def candidates(self, model_name: str) -> List[PolicyRule]:
        """Active rules for `model_name`, ascending priority, stable on insertion order."""
        pass

    @abstractmethod
    def list(self, model_name: Optional[str] = None, is_active: Optional[bool] = None) -> List[PolicyRule]:
        pass

    @abstractmethod
    def get(self, policy_id: int) -> Optional[PolicyRule]:
        pass

    @abstractmethod
    def add(self, rule: PolicyRule) -> PolicyRule:
        """Store a new rule and return it with its id assigned."""
        pass

    @abstractmethod
    def update(self, policy_id: int, rule: PolicyRule) -> PolicyRule:
        """Replace a rule's content; NotFoundError if missing."""
        pass

    @abstractmethod
    def deactivate(self, policy_id: int, modified_by: Optional[str] = None) -> bool:
        pass


class EvaluationSink(ABC):
    """Append-only audit storage with time-based expiry."""

    @abstractmethod
    def save(self, record: PolicyEvaluationRecord) -> None:
        pass

    @abstractmethod
    def query(
        self,
        user_id: Optional[str] = None,
        model_name: Optional[str] = None,
        action: Optional[str] = None,
        decision: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> Tuple[List[PolicyEvaluationRecord], int]:
        """Newest first. Returns (page, total matching count)."""
        pass


# ============ Shared selection logic ============

_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


def _window_start(row: UserAttribute) -> datetime:
    return as_aware(row.valid_from) if row.valid_from else _EARLIEST


def _updated(row: UserAttribute) -> datetime:
    return as_aware(row.updated_at) if row.updated_at else _EARLIEST


def is_current(row: UserAttribute, as_of: datetime) -> bool:
    """Active and as_of inside [valid_from, valid_until]."""
    if not row.is_active:
        return False
    as_of = as_aware(as_of)
    if row.valid_from is not None and as_aware(row.valid_from) > as_of:
        return False
    if row.valid_until is not None and as_aware(row.valid_until) < as_of:
        return False
    return True


def select_current(rows: Iterable[UserAttribute], as_of: datetime) -> Dict[str, Any]:
    """
    Reduce attribute rows to one value per name.

    Overlapping rows for the same name should not exist, but when they do the
    one with the latest valid_from wins (ties: latest updated_at).
    """
    chosen: Dict[str, UserAttribute] = {}
    for row in rows:
        if not is_current(row, as_of):
            continue
        previous = chosen.get(row.attribute_name)
        if previous is None or (_window_start(row), _updated(row)) >= (_window_start(previous), _updated(previous)):
            chosen[row.attribute_name] = row
    return {name: row.attribute_value for name, row in chosen.items()}
