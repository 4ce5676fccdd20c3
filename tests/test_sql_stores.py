"""Tests for the SQLAlchemy store adapters against in-memory SQLite."""

from datetime import datetime, timedelta, timezone

import pytest

from abac.database import Database
from abac.engine import PolicyEngine
from abac.exceptions import DuplicateError, NotFoundError, StoreUnavailableError, ValueCoercionError
from abac.models import UserAttributeRow
from abac.schemas import Decision, PolicyEvaluationRecord, ResourceKey, ResourceRef
from abac.sql_stores import (
    SqlAttributeRegistry, SqlEvaluationSink, SqlPolicyStore, SqlUserAttributeStore
)

from conftest import UTC_CONTEXT, attribute, make_rule


@pytest.fixture
def database(config):
    db = Database(config)
    db.create_tables()
    yield db
    db.dispose()


@pytest.fixture
def sql_registry(database, definitions):
    registry = SqlAttributeRegistry(database)
    for definition in definitions:
        registry.create(definition)
    return registry


def audit_record(user_id, timestamp, decision=Decision.ALLOW):
    return PolicyEvaluationRecord(
        user_id=user_id,
        resource=ResourceKey(model_name="Student", resource_id="s-1"),
        action="read",
        final_decision=decision,
        timestamp=timestamp,
    )


class TestDatabase:

    def test_health_check(self, database):
        assert database.health_check()

    def test_create_tables_is_idempotent(self, database):
        database.create_tables()
        assert database.health_check()


class TestSqlAttributeRegistry:

    def test_round_trip(self, sql_registry):
        role = sql_registry.get("role")
        assert role.data_type.value == "string"
        assert [v.value for v in role.possible_values] == ["faculty", "hod", "staff"]
        assert sql_registry.get("clearance").validation_rules.max == 5

    def test_duplicate(self, sql_registry):
        with pytest.raises(DuplicateError):
            sql_registry.create(attribute("role", "string"))

    def test_update_merges_fields(self, sql_registry):
        updated = sql_registry.update("role", {"description": "Teaching role"})
        assert updated.description == "Teaching role"
        assert updated.data_type.value == "string"

    def test_update_missing(self, sql_registry):
        with pytest.raises(NotFoundError):
            sql_registry.update("nope", {"description": "x"})

    def test_update_rejects_invalid_pattern(self, sql_registry):
        with pytest.raises(ValueCoercionError):
            sql_registry.update("code", {"validation_rules": {"pattern": "[a-"}})
        assert sql_registry.get("code").validation_rules.pattern == "^[A-Z]{3}[0-9]{3}$"

    def test_deactivate_and_revive(self, sql_registry):
        assert sql_registry.deactivate("role")
        assert sql_registry.get("role") is None
        assert "role" not in [d.name for d in sql_registry.list()]

        sql_registry.create(attribute("role", "number"))
        assert sql_registry.get("role").data_type.value == "number"

    def test_list_by_category(self, sql_registry):
        names = [d.name for d in sql_registry.list("environment")]
        assert names == ["channel"]


class TestSqlUserAttributeStore:

    def test_upsert_keeps_one_row(self, database):
        store = SqlUserAttributeStore(database)
        store.set("u-1", "department", "CSE")
        store.set("u-1", "department", "EEE", set_by="admin")

        with database.session_scope() as session:
            assert session.query(UserAttributeRow).filter_by(user_id="u-1").count() == 1
        assert store.active_attributes("u-1") == {"department": "EEE"}

    def test_json_values(self, database):
        store = SqlUserAttributeStore(database)
        store.set("u-1", "subjects", ["math", "physics"])
        store.set("u-1", "clearance", 3)

        assert store.active_attributes("u-1") == {"subjects": ["math", "physics"], "clearance": 3}

    def test_validity_window(self, database):
        store = SqlUserAttributeStore(database)
        now = datetime.now(timezone.utc)
        store.set("u-1", "department", "CSE", valid_until=now - timedelta(days=1))
        store.set("u-1", "role", "hod", valid_from=now + timedelta(days=1))

        assert store.active_attributes("u-1") == {}
        assert store.active_attributes("u-1", as_of=now + timedelta(days=2)) == {"role": "hod"}
        assert len(store.list("u-1")) == 2

    def test_remove(self, database):
        store = SqlUserAttributeStore(database)
        store.set("u-1", "department", "CSE")

        assert store.remove("u-1", "department")
        assert not store.remove("u-1", "department")
        assert store.list("u-1") == []
        assert store.has_subject("u-1")
        assert not store.has_subject("u-2")

    def test_set_after_remove_reactivates(self, database):
        store = SqlUserAttributeStore(database)
        store.set("u-1", "department", "CSE")
        store.remove("u-1", "department")
        store.set("u-1", "department", "MECH")

        assert store.active_attributes("u-1") == {"department": "MECH"}


class TestSqlPolicyStore:

    def test_candidates_order(self, database):
        store = SqlPolicyStore(database)
        store.add(make_rule(name="late", priority=50))
        store.add(make_rule(name="first-10", priority=10))
        store.add(make_rule(name="second-10", priority=10))
        store.add(make_rule(name="other", resource={"modelName": "Course"}))
        store.add(make_rule(name="inactive", priority=1, isActive=False))

        assert [r.name for r in store.candidates("Student")] == ["first-10", "second-10", "late"]

    def test_conditions_survive_storage(self, database):
        store = SqlPolicyStore(database)
        rule = store.add(make_rule(
            subjectConditions=[{"attribute": "role", "operator": "in", "value": ["hod"]}],
            resource={
                "modelName": "Student",
                "resourceConditions": [{
                    "attribute": "departmentId",
                    "operator": "same_as_user",
                    "referenceUserAttribute": "department",
                }],
            },
            timeBasedAccess={"allowedHours": [{"start": "09:00", "end": "17:00"}], "allowedDays": ["monday"]},
            effect="deny",
            createdBy="admin",
        ))

        stored = store.get(rule.id)
        assert stored.subject_conditions[0].value == ["hod"]
        assert stored.resource.resource_conditions[0].reference_user_attribute == "department"
        assert stored.time_based_access.allowed_hours[0].start == "09:00"
        assert stored.effect.value == "deny"
        assert stored.created_by == "admin"

    def test_update_and_deactivate(self, database):
        store = SqlPolicyStore(database)
        rule = store.add(make_rule(name="a", createdBy="admin"))

        updated = store.update(rule.id, make_rule(name="b", lastModifiedBy="editor"))
        assert (updated.name, updated.created_by, updated.last_modified_by) == ("b", "admin", "editor")

        assert store.deactivate(rule.id, modified_by="editor")
        assert store.candidates("Student") == []
        assert not store.deactivate(999)

    def test_update_missing(self, database):
        with pytest.raises(NotFoundError):
            SqlPolicyStore(database).update(42, make_rule())


class TestSqlEvaluationSink:

    def test_query_newest_first(self, database):
        sink = SqlEvaluationSink(database)
        now = datetime.now(timezone.utc)
        for minutes in range(3):
            sink.save(audit_record("u-1", now - timedelta(minutes=minutes)))
        sink.save(audit_record("u-2", now, Decision.DENY))

        page, total = sink.query(user_id="u-1", limit=2)
        assert total == 3
        assert len(page) == 2
        assert page[0].timestamp > page[1].timestamp
        assert page[0].expires_at - page[0].timestamp == timedelta(seconds=2_592_000)

        denied, _ = sink.query(decision="deny")
        assert [r.user_id for r in denied] == ["u-2"]

    def test_expired_records_are_hidden_and_purged(self, database):
        sink = SqlEvaluationSink(database, ttl_seconds=60)
        now = datetime.now(timezone.utc)
        sink.save(audit_record("old", now - timedelta(minutes=10)))
        sink.save(audit_record("new", now))

        assert [r.user_id for r in sink.query()[0]] == ["new"]
        assert sink.purge_expired() == 1
        assert sink.purge_expired() == 0


class TestStoreFailures:

    def test_missing_tables_raise_store_unavailable(self, database):
        store = SqlPolicyStore(database)
        database.drop_tables()

        with pytest.raises(StoreUnavailableError):
            store.candidates("Student")

    def test_engine_fails_closed(self, database, definitions):
        registry = SqlAttributeRegistry(database)
        policies = SqlPolicyStore(database)
        for definition in definitions:
            registry.create(definition)
        policies.add(make_rule())
        users = SqlUserAttributeStore(database)
        users.set("u-1", "role", "staff")
        engine = PolicyEngine(policies, users, registry)

        assert engine.evaluate("u-1", ResourceRef(model_name="Student"), "read", UTC_CONTEXT).final_decision == Decision.ALLOW

        database.drop_tables()
        result = engine.evaluate("u-1", ResourceRef(model_name="Student"), "read", UTC_CONTEXT)

        assert result.final_decision == Decision.DENY
        assert result.store_error
