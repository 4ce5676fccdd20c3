"""
Data access layer for the ABAC subsystem.

The repository pattern isolates database operations from the store adapters
and the admin service. Every method takes an open Session; callers own the
transaction scope (see Database.session_scope).

Repository methods:
- AttributeDefinition: get, list, create, update, deactivate
- UserAttribute: list_for_user, exists_for_user, upsert, deactivate
- PolicyRule: candidates, list, get, create, update, deactivate
- PolicyEvaluation: create, query, purge_expired
"""

from datetime import datetime, timedelta
from typing import Any, List, Optional, Tuple
import logging

from sqlalchemy import and_, desc, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from abac.exceptions import DuplicateError
from abac.models import (
    AttributeDefinitionRow, PolicyEvaluationRow, PolicyRuleRow, UserAttributeRow, utcnow
)
from abac.schemas import AttributeDefinition, PolicyEvaluationRecord, PolicyRule
from abac.values import to_utc

logger = logging.getLogger(__name__)


class AttributeDefinitionRepository:
    """
    Repository for the attribute catalog.
    """

    @staticmethod
    def get(db: Session, name: str, active_only: bool = True) -> Optional[AttributeDefinitionRow]:
        query = db.query(AttributeDefinitionRow).filter(AttributeDefinitionRow.name == name)
        if active_only:
            query = query.filter(AttributeDefinitionRow.is_active == True)  # noqa: E712
        return query.first()

    @staticmethod
    def list(db: Session, category: Optional[str] = None) -> List[AttributeDefinitionRow]:
        query = db.query(AttributeDefinitionRow).filter(AttributeDefinitionRow.is_active == True)  # noqa: E712
        if category:
            query = query.filter(AttributeDefinitionRow.category == category)
        return query.order_by(AttributeDefinitionRow.category, AttributeDefinitionRow.name).all()

    @staticmethod
    def create(db: Session, definition: AttributeDefinition) -> AttributeDefinitionRow:
        """
        Insert a definition, or revive a soft-deleted one with the same name.

        Raises:
            DuplicateError: an active definition with this name exists
        """
        data = definition.model_dump(mode="json")
        row = AttributeDefinitionRepository.get(db, definition.name, active_only=False)
        if row is not None:
            if row.is_active:
                raise DuplicateError(f"Attribute '{definition.name}' already exists")
            for key, value in data.items():
                setattr(row, key, value)
        else:
            row = AttributeDefinitionRow(**data)
            db.add(row)
        db.commit()
        db.refresh(row)

        logger.info(f"Created attribute definition {row.name} ({row.data_type})")
        return row

    @staticmethod
    def update(db: Session, name: str, **updates) -> Optional[AttributeDefinitionRow]:
        row = AttributeDefinitionRepository.get(db, name, active_only=False)
        if row is None:
            return None
        for key, value in updates.items():
            if hasattr(row, key):
                setattr(row, key, value)
        db.commit()
        db.refresh(row)

        logger.info(f"Updated attribute definition {name}")
        return row

    @staticmethod
    def deactivate(db: Session, name: str) -> bool:
        row = AttributeDefinitionRepository.get(db, name, active_only=False)
        if row is None:
            return False
        row.is_active = False
        db.commit()

        logger.warning(f"Deactivated attribute definition {name}")
        return True


class UserAttributeRepository:
    """
    Repository for per-user attribute values.
    """

    @staticmethod
    def list_for_user(db: Session, user_id: str, active_only: bool = True) -> List[UserAttributeRow]:
        query = db.query(UserAttributeRow).filter(UserAttributeRow.user_id == user_id)
        if active_only:
            query = query.filter(UserAttributeRow.is_active == True)  # noqa: E712
        return query.order_by(UserAttributeRow.attribute_name).all()

    @staticmethod
    def exists_for_user(db: Session, user_id: str) -> bool:
        """Any row for the user, including removed and expired ones."""
        query = db.query(UserAttributeRow.id).filter(UserAttributeRow.user_id == user_id)
        return db.query(query.exists()).scalar()

    @staticmethod
    def _apply(
        row: UserAttributeRow,
        value: Any,
        set_by: Optional[str],
        valid_from: datetime,
        valid_until: Optional[datetime]
    ) -> None:
        row.attribute_value = value
        row.set_by = set_by
        row.valid_from = valid_from
        row.valid_until = valid_until
        row.is_active = True
        row.updated_at = utcnow()

    @staticmethod
    def upsert(
        db: Session,
        user_id: str,
        attribute_name: str,
        value: Any,
        set_by: Optional[str] = None,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None
    ) -> UserAttributeRow:
        """
        Create or replace the (user_id, attribute_name) row.

        Two concurrent grants of the same attribute race on the unique
        constraint; the loser retries as an update.

        Args:
            db: Database session
            user_id: Owner of the attribute
            attribute_name: Attribute key
            value: Already validated JSON value
            set_by: Principal granting the value
            valid_from: Start of validity (defaults to now)
            valid_until: Optional end of validity

        Returns:
            The stored row
        """
        valid_from = to_utc(valid_from) if valid_from else utcnow()
        valid_until = to_utc(valid_until) if valid_until else None

        for attempt in range(2):
            row = db.query(UserAttributeRow).filter(and_(
                UserAttributeRow.user_id == user_id,
                UserAttributeRow.attribute_name == attribute_name
            )).first()

            if row is None:
                row = UserAttributeRow(user_id=user_id, attribute_name=attribute_name)
                db.add(row)
            UserAttributeRepository._apply(row, value, set_by, valid_from, valid_until)

            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                if attempt:
                    raise
                logger.info(f"Concurrent grant of {attribute_name} to {user_id}, retrying as update")
                continue

            db.refresh(row)
            logger.info(f"Set attribute {attribute_name} for user {user_id}")
            return row

    @staticmethod
    def deactivate(db: Session, user_id: str, attribute_name: str) -> bool:
        row = db.query(UserAttributeRow).filter(and_(
            UserAttributeRow.user_id == user_id,
            UserAttributeRow.attribute_name == attribute_name,
            UserAttributeRow.is_active == True  # noqa: E712
        )).first()
        if row is None:
            return False
        row.is_active = False
        row.updated_at = utcnow()
        db.commit()

        logger.info(f"Removed attribute {attribute_name} from user {user_id}")
        return True


class PolicyRuleRepository:
    """
    Repository for policy rules.
    """

    @staticmethod
    def candidates(db: Session, model_name: str) -> List[PolicyRuleRow]:
        """Active rules for a model in evaluation order (priority, then insertion)."""
        return db.query(PolicyRuleRow).filter(and_(
            PolicyRuleRow.model_name == model_name,
            PolicyRuleRow.is_active == True  # noqa: E712
        )).order_by(PolicyRuleRow.priority, PolicyRuleRow.id).all()

    @staticmethod
    def list(
        db: Session,
        model_name: Optional[str] = None,
        is_active: Optional[bool] = None
    ) -> List[PolicyRuleRow]:
        query = db.query(PolicyRuleRow)
        if model_name:
            query = query.filter(PolicyRuleRow.model_name == model_name)
        if is_active is not None:
            query = query.filter(PolicyRuleRow.is_active == is_active)
        return query.order_by(PolicyRuleRow.priority, PolicyRuleRow.id).all()

    @staticmethod
    def get(db: Session, policy_id: int) -> Optional[PolicyRuleRow]:
        return db.query(PolicyRuleRow).filter(PolicyRuleRow.id == policy_id).first()

    @staticmethod
    def create(db: Session, rule: PolicyRule) -> PolicyRuleRow:
        row = PolicyRuleRow(created_by=rule.created_by, last_modified_by=rule.created_by)
        row.apply(rule)
        db.add(row)
        db.commit()
        db.refresh(row)

        logger.info(f"Created policy {row.id} ({row.name}) for {row.model_name}")
        return row

    @staticmethod
    def update(db: Session, policy_id: int, rule: PolicyRule) -> Optional[PolicyRuleRow]:
        row = PolicyRuleRepository.get(db, policy_id)
        if row is None:
            return None
        row.apply(rule)
        row.last_modified_by = rule.last_modified_by
        db.commit()
        db.refresh(row)

        logger.info(f"Updated policy {policy_id}")
        return row

    @staticmethod
    def deactivate(db: Session, policy_id: int, modified_by: Optional[str] = None) -> bool:
        row = PolicyRuleRepository.get(db, policy_id)
        if row is None:
            return False
        row.is_active = False
        row.last_modified_by = modified_by
        db.commit()

        logger.warning(f"Deactivated policy {policy_id}")
        return True


class PolicyEvaluationRepository:
    """
    Repository for the evaluation audit trail.
    """

    @staticmethod
    def create(db: Session, record: PolicyEvaluationRecord, ttl_seconds: int) -> PolicyEvaluationRow:
        data = record.model_dump(mode="json", by_alias=True)
        timestamp = to_utc(record.timestamp)
        row = PolicyEvaluationRow(
            user_id=record.user_id,
            model_name=record.resource.model_name,
            resource_id=record.resource.resource_id,
            action=record.action,
            request_context=data["requestContext"],
            evaluated_policies=data["evaluatedPolicies"],
            final_decision=record.final_decision.value,
            evaluation_time_ms=record.evaluation_time_ms,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            timestamp=timestamp,
            expires_at=timestamp + timedelta(seconds=ttl_seconds),
        )
        if record.id:
            row.id = record.id
        db.add(row)
        db.commit()
        return row

    @staticmethod
    def query(
        db: Session,
        user_id: Optional[str] = None,
        model_name: Optional[str] = None,
        action: Optional[str] = None,
        decision: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> Tuple[List[PolicyEvaluationRow], int]:
        """
        Unexpired evaluations, newest first.

        Returns:
            (rows for the requested page, total matching count)
        """
        filters = [PolicyEvaluationRow.expires_at > utcnow()]
        if user_id:
            filters.append(PolicyEvaluationRow.user_id == user_id)
        if model_name:
            filters.append(PolicyEvaluationRow.model_name == model_name)
        if action:
            filters.append(PolicyEvaluationRow.action == action)
        if decision:
            filters.append(PolicyEvaluationRow.final_decision == decision)

        total = db.query(func.count(PolicyEvaluationRow.id)).filter(and_(*filters)).scalar() or 0
        rows = db.query(PolicyEvaluationRow).filter(and_(*filters)).order_by(
            desc(PolicyEvaluationRow.timestamp)
        ).offset(skip).limit(limit).all()
        return rows, total

    @staticmethod
    def purge_expired(db: Session, now: Optional[datetime] = None) -> int:
        """Delete rows past their expiry. Returns the number removed."""
        cutoff = to_utc(now) if now else utcnow()
        deleted = db.query(PolicyEvaluationRow).filter(
            PolicyEvaluationRow.expires_at <= cutoff
        ).delete(synchronize_session=False)
        db.commit()

        if deleted:
            logger.info(f"Purged {deleted} expired policy evaluations")
        return deleted

