"""Tests for the in-memory stores and the shared attribute selection rules."""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from abac.exceptions import DuplicateError, NotFoundError, ValueCoercionError
from abac.interfaces import select_current
from abac.memory_stores import InMemoryEvaluationSink, InMemoryPolicyStore
from abac.schemas import Decision, PolicyEvaluationRecord, ResourceKey, UserAttribute

from conftest import FIXED_NOW, attribute, make_rule

UTC = timezone.utc


class TestSelectCurrent:

    def row(self, value, valid_from=None, valid_until=None, updated_at=None, is_active=True):
        return UserAttribute(
            user_id="u-1", attribute_name="department", attribute_value=value,
            valid_from=valid_from, valid_until=valid_until, updated_at=updated_at, is_active=is_active,
        )

    def test_latest_valid_from_wins(self):
        rows = [
            self.row("CSE", valid_from=datetime(2024, 1, 1, tzinfo=UTC)),
            self.row("EEE", valid_from=datetime(2025, 1, 1, tzinfo=UTC)),
        ]
        assert select_current(rows, FIXED_NOW) == {"department": "EEE"}

    def test_tie_goes_to_latest_update(self):
        start = datetime(2024, 1, 1, tzinfo=UTC)
        rows = [
            self.row("CSE", valid_from=start, updated_at=datetime(2024, 6, 1, tzinfo=UTC)),
            self.row("EEE", valid_from=start, updated_at=datetime(2024, 2, 1, tzinfo=UTC)),
        ]
        assert select_current(rows, FIXED_NOW) == {"department": "CSE"}

    def test_window_bounds_are_inclusive(self):
        rows = [self.row("CSE", valid_from=FIXED_NOW, valid_until=FIXED_NOW)]
        assert select_current(rows, FIXED_NOW) == {"department": "CSE"}
        assert select_current(rows, FIXED_NOW + timedelta(seconds=1)) == {}

    def test_inactive_and_future_rows_are_skipped(self):
        rows = [
            self.row("CSE", is_active=False),
            self.row("EEE", valid_from=FIXED_NOW + timedelta(days=1)),
        ]
        assert select_current(rows, FIXED_NOW) == {}


class TestUserAttributeStore:

    def test_set_replaces_value(self, user_store):
        user_store.set("u-1", "department", "CSE")
        user_store.set("u-1", "department", "EEE", set_by="admin")

        rows = user_store.list("u-1")
        assert len(rows) == 1
        assert rows[0].attribute_value == "EEE"
        assert rows[0].set_by == "admin"

    def test_remove_deactivates(self, user_store):
        user_store.set("u-1", "department", "CSE")

        assert user_store.remove("u-1", "department")
        assert not user_store.remove("u-1", "department")
        assert user_store.active_attributes("u-1") == {}

    def test_concurrent_writers_leave_one_row(self, user_store):
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda i: user_store.set("u-1", "department", f"D{i}"), range(50)))

        assert len(user_store.list("u-1")) == 1

    def test_has_subject_counts_removed_rows(self, user_store):
        assert not user_store.has_subject("u-1")

        user_store.set("u-1", "department", "CSE")
        user_store.remove("u-1", "department")

        assert user_store.has_subject("u-1")
        assert not user_store.has_subject("u-2")


class TestAttributeRegistry:

    def test_duplicate_name(self, registry):
        with pytest.raises(DuplicateError):
            registry.create(attribute("department", "string"))

    def test_deactivated_definition_is_hidden(self, registry):
        assert registry.deactivate("department")
        assert registry.get("department") is None
        registry.create(attribute("department", "string"))
        assert registry.get("department").data_type.value == "string"

    def test_update_missing(self, registry):
        with pytest.raises(NotFoundError):
            registry.update("nope", {"description": "x"})

    def test_update_rejects_invalid_pattern(self, registry):
        with pytest.raises(ValueCoercionError):
            registry.update("code", {"validation_rules": {"pattern": "("}})
        assert registry.get("code").validation_rules.pattern == "^[A-Z]{3}[0-9]{3}$"

    def test_list_orders_by_category_then_name(self, registry):
        names = [(d.category.value, d.name) for d in registry.list()]
        assert names == sorted(names)
        assert all(d.category.value == "resource" for d in registry.list("resource"))


class TestPolicyStore:

    def test_ids_are_sequential(self):
        store = InMemoryPolicyStore([make_rule(name="a"), make_rule(name="b")])
        assert [r.id for r in store.list()] == [1, 2]

    def test_update_keeps_creator(self, policy_store):
        rule = policy_store.add(make_rule(name="a", createdBy="admin"))
        updated = policy_store.update(rule.id, make_rule(name="b", lastModifiedBy="editor"))

        assert updated.name == "b"
        assert updated.created_by == "admin"
        assert updated.last_modified_by == "editor"

    def test_update_missing(self, policy_store):
        with pytest.raises(NotFoundError):
            policy_store.update(99, make_rule())


class TestEvaluationSink:

    def record(self, user_id, timestamp, decision=Decision.ALLOW):
        return PolicyEvaluationRecord(
            user_id=user_id,
            resource=ResourceKey(model_name="Student"),
            action="read",
            final_decision=decision,
            timestamp=timestamp,
        )

    def test_newest_first_with_paging(self, sink):
        for minutes in range(5):
            sink.save(self.record("u-1", FIXED_NOW - timedelta(minutes=minutes)))

        page, total = sink.query(skip=1, limit=2)
        assert total == 5
        assert [r.timestamp for r in page] == [
            FIXED_NOW - timedelta(minutes=1), FIXED_NOW - timedelta(minutes=2)
        ]

    def test_filters(self, sink):
        sink.save(self.record("u-1", FIXED_NOW))
        sink.save(self.record("u-2", FIXED_NOW, Decision.DENY))

        assert sink.query(user_id="u-2")[1] == 1
        assert sink.query(decision="deny")[0][0].user_id == "u-2"

    def test_expired_records_are_hidden_and_purged(self):
        sink = InMemoryEvaluationSink(ttl_seconds=60, clock=lambda: FIXED_NOW)
        sink.save(self.record("old", FIXED_NOW - timedelta(minutes=5)))

        assert sink.query() == ([], 0)
        assert sink.purge_expired() == 1

    def test_expired_records_are_dropped_on_save(self):
        now = [FIXED_NOW]
        sink = InMemoryEvaluationSink(ttl_seconds=60, clock=lambda: now[0])
        for seconds in range(3):
            sink.save(self.record("early", FIXED_NOW + timedelta(seconds=seconds)))

        now[0] = FIXED_NOW + timedelta(minutes=10)
        sink.save(self.record("late", now[0]))

        assert sink.purge_expired() == 0
        assert [r.user_id for r in sink.query()[0]] == ["late"]
