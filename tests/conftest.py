"""Shared fixtures for ABAC tests."""

from datetime import datetime, timezone

import jwt
import pytest

from abac.config import ABACConfig
from abac.engine import PolicyEngine
from abac.memory_stores import (
    InMemoryAttributeRegistry, InMemoryEvaluationSink, InMemoryPolicyStore,
    InMemoryUserAttributeStore
)
from abac.recorder import EvaluationRecorder
from abac.schemas import AttributeDefinition, PolicyRule

# Wednesday
FIXED_NOW = datetime(2025, 3, 12, 10, 30, tzinfo=timezone.utc)

JWT_SECRET = "test-secret"

UTC_CONTEXT = {"timezone": "UTC"}


def make_rule(**fields) -> PolicyRule:
    """PolicyRule from camelCase fields with test defaults."""
    data = {
        "name": fields.pop("name", "rule"),
        "resource": fields.pop("resource", {"modelName": "Student"}),
        "actions": fields.pop("actions", ["read"]),
    }
    data.update(fields)
    return PolicyRule.model_validate(data)


def attribute(name, data_type, category="user", **extra) -> AttributeDefinition:
    return AttributeDefinition.model_validate({
        "name": name,
        "displayName": name,
        "dataType": data_type,
        "category": category,
        **extra,
    })


@pytest.fixture
def definitions():
    return [
        attribute("department", "reference", referenceModel="Department"),
        attribute("role", "string", possibleValues=[
            {"value": "faculty"}, {"value": "hod"}, {"value": "staff"}
        ]),
        attribute("clearance", "number", validationRules={"min": 0, "max": 5}),
        attribute("isAdvisor", "boolean"),
        attribute("subjects", "array"),
        attribute("departmentId", "reference", "resource"),
        attribute("status", "string", "resource"),
        attribute("academicYear", "date", "resource"),
        attribute("semester", "number", "resource"),
        attribute("code", "string", "resource", validationRules={"pattern": "^[A-Z]{3}[0-9]{3}$"}),
        attribute("channel", "string", "environment"),
    ]


@pytest.fixture
def registry(definitions):
    return InMemoryAttributeRegistry(definitions)


@pytest.fixture
def user_store():
    return InMemoryUserAttributeStore()


@pytest.fixture
def policy_store():
    return InMemoryPolicyStore()


@pytest.fixture
def sink():
    return InMemoryEvaluationSink(clock=lambda: FIXED_NOW)


@pytest.fixture
def recorder(sink):
    recorder = EvaluationRecorder(sink, max_workers=1, timeout_seconds=5)
    yield recorder
    recorder.shutdown()


@pytest.fixture
def engine(policy_store, user_store, registry, recorder):
    return PolicyEngine(policy_store, user_store, registry, recorder=recorder, clock=lambda: FIXED_NOW)


@pytest.fixture
def cse_faculty(user_store):
    user_store.set("u-cse", "department", "CSE", valid_from=datetime(2020, 1, 1, tzinfo=timezone.utc))
    user_store.set("u-cse", "role", "faculty", valid_from=datetime(2020, 1, 1, tzinfo=timezone.utc))
    return "u-cse"


@pytest.fixture
def known_users(user_store):
    """u-1 and u-2 as plain staff, so rules that ignore the subject can match."""
    for user_id in ("u-1", "u-2"):
        user_store.set(user_id, "role", "staff", valid_from=datetime(2020, 1, 1, tzinfo=timezone.utc))
    return ["u-1", "u-2"]


@pytest.fixture
def config(monkeypatch):
    monkeypatch.setenv("ABAC_DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("JWT_SECRET_KEY", JWT_SECRET)
    monkeypatch.delenv("ABAC_POLICY_FILE", raising=False)
    return ABACConfig()


def make_token(sub="admin-1", permissions=("abac.read", "abac.manage"), **claims) -> str:
    payload = {"sub": sub, "permissions": list(permissions), **claims}
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def auth_header(**kwargs) -> dict:
    return {"Authorization": f"Bearer {make_token(**kwargs)}"}
