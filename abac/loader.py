"""
YAML policy files.

A policy file seeds the attribute catalog, the policy rules and optionally
some user attributes. It uses the same camelCase shape as the REST API:

    attributes:
      - name: department
        displayName: Department
        dataType: reference
        category: user
    policies:
      - name: Faculty read own department students
        priority: 10
        resource:
          modelName: Student
          resourceConditions:
            - {attribute: departmentId, operator: same_as_user, referenceUserAttribute: department}
        actions: [read]
        effect: allow
    userAttributes:
      - {userId: u-1, attributeName: department, attributeValue: CSE}
"""

from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import yaml
from loguru import logger
from pydantic import Field, ValidationError

from abac.exceptions import PolicyFileError, ValueCoercionError
from abac.interfaces import AttributeRegistry, PolicyStore, UserAttributeStore
from abac.memory_stores import (
    InMemoryAttributeRegistry, InMemoryPolicyStore, InMemoryUserAttributeStore
)
from abac.schemas import (
    AttributeDefinition, CamelModel, PolicyRuleRequest, SetUserAttributeRequest
)


class SeedUserAttribute(SetUserAttributeRequest):
    user_id: str = Field(..., min_length=1)


class PolicyFile(CamelModel):
    attributes: List[AttributeDefinition] = Field(default_factory=list)
    policies: List[PolicyRuleRequest] = Field(default_factory=list)
    user_attributes: List[SeedUserAttribute] = Field(default_factory=list)


def load_policy_file(path: Union[str, Path]) -> PolicyFile:
    """
    Read and validate a policy file.

    Raises:
        PolicyFileError: file missing, not YAML, or fails schema validation
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(f"Policy file not found: {path}")
        raise PolicyFileError(f"Policy file not found: {path}")
    except yaml.YAMLError as e:
        raise PolicyFileError(f"Invalid YAML in {path}: {e}")

    if not isinstance(raw, dict):
        raise PolicyFileError(f"{path}: top level must be a mapping")

    try:
        policy_file = PolicyFile.model_validate(raw)
    except ValidationError as e:
        raise PolicyFileError(f"{path}: {e}")

    logger.info(
        f"Loaded {path}: {len(policy_file.attributes)} attributes, "
        f"{len(policy_file.policies)} policies, {len(policy_file.user_attributes)} user attributes"
    )
    return policy_file


def seed_stores(
    policy_file: PolicyFile,
    registry: AttributeRegistry,
    policies: PolicyStore,
    user_attributes: UserAttributeStore,
    seeded_by: Optional[str] = "system"
) -> Dict[str, int]:
    """
    Load a policy file into stores.

    Attributes that already exist are left alone, and policies are only
    added when the store holds none, so seeding a database twice is harmless.

    Returns:
        Counts of what was added, by kind
    """
    counts = {"attributes": 0, "policies": 0, "userAttributes": 0}

    for definition in policy_file.attributes:
        if registry.get(definition.name) is None:
            registry.create(definition)
            counts["attributes"] += 1

    if not policies.list():
        for request in policy_file.policies:
            policies.add(request.to_rule(created_by=seeded_by, last_modified_by=seeded_by))
            counts["policies"] += 1
    elif policy_file.policies:
        logger.info("Policy store already populated, skipping seed policies")

    for grant in policy_file.user_attributes:
        definition = registry.get(grant.attribute_name)
        if definition is None:
            raise PolicyFileError(
                f"userAttributes: '{grant.attribute_name}' is not a defined attribute"
            )
        try:
            value = definition.validate_value(grant.attribute_value)
        except ValueCoercionError as e:
            raise PolicyFileError(f"userAttributes: {grant.user_id}: {e}")
        user_attributes.set(
            grant.user_id, grant.attribute_name, value,
            set_by=seeded_by, valid_from=grant.valid_from, valid_until=grant.valid_until
        )
        counts["userAttributes"] += 1

    logger.info(f"Seeded ABAC stores: {counts}")
    return counts


def build_memory_stores(
    path: Union[str, Path]
) -> Tuple[InMemoryAttributeRegistry, InMemoryPolicyStore, InMemoryUserAttributeStore]:
    """In-memory registry, policy store and user attribute store filled from a file."""
    registry = InMemoryAttributeRegistry()
    policies = InMemoryPolicyStore()
    user_attributes = InMemoryUserAttributeStore()
    seed_stores(load_policy_file(path), registry, policies, user_attributes)
    return registry, policies, user_attributes
