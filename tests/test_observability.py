"""Tests for decision telemetry."""

from abac.observability import ObservabilityManager, observability
from abac.schemas import Decision, ResourceRef

from conftest import UTC_CONTEXT, make_rule


def test_spans_feed_latency_summary():
    manager = ObservabilityManager(slow_span_ms=10_000)

    for request_id in ("a", "b"):
        span = manager.start_span(request_id, "abac.evaluate", {"model": "Student"})
        manager.end_span(span.span_id)

    summary = manager.latency("abac.evaluate")
    assert summary.count == 2
    assert summary.max_ms >= summary.mean_ms >= 0
    assert manager.active_spans == {}
    assert manager.end_span("a_abac.evaluate") is None


def test_counters_and_gauges():
    manager = ObservabilityManager()
    manager.increment("abac.decisions.allow")
    manager.increment("abac.decisions.allow")
    manager.set_gauge("abac.evaluation_time_ms", 1.5)
    manager.set_gauge("abac.evaluation_time_ms", 0.5)

    assert manager.get_metrics() == {"abac.decisions.allow": 2.0, "abac.evaluation_time_ms": 0.5}


def test_engine_reports_decisions(engine, policy_store, known_users):
    policy_store.add(make_rule(effect="deny"))
    denied_before = observability.get_metrics().get("abac.decisions.deny", 0)
    evaluations_before = observability.latency("abac.evaluate").count

    result = engine.evaluate("u-1", ResourceRef(model_name="Student"), "read", UTC_CONTEXT)

    assert result.final_decision == Decision.DENY
    assert observability.get_metrics()["abac.decisions.deny"] == denied_before + 1
    assert observability.latency("abac.evaluate").count == evaluations_before + 1
