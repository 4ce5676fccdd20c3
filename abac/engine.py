"""
Dynamic ABAC policy engine.

Decides whether a subject may perform an action on a resource by walking the
active policy rules for the resource's model in priority order (lower number
first). The first rule whose subject, resource and environment conditions,
action list and time window all match decides the outcome; if none matches
the decision is "indeterminate", which callers must treat as deny.

Every call produces a trace of the rules it looked at and the result of each
condition, which is returned to the caller and written to the audit store in
the background.

Classes:
  - PolicyEngine: evaluate() for single resources, data_scope() for lists
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from abac import conditions
from abac.conditions import ConditionOutcome
from abac.exceptions import StoreUnavailableError, ValueCoercionError
from abac.interfaces import AttributeRegistry, PolicyStore, UserAttributeStore
from abac.observability import increment, log_metrics, trace_request
from abac.recorder import EvaluationRecorder
from abac.schemas import (
    SUBJECT_REFERENCE_OPERATORS, Condition, ConditionTrace, DataScope, Decision,
    Effect, EvaluationResult, PolicyEvaluationRecord, PolicyRule, PolicyTrace,
    ResourceKey, ResourceRef, ScopeFilter
)
from abac.time_window import check_time_window, local_time, resolve_timezone, weekday_name
from abac.values import coerce, parse_datetime

# Computed by the engine; known even without a registry entry
BUILTIN_ATTRIBUTES: Dict[str, str] = {
    "userId": "string",
    "resourceId": "string",
    "modelName": "string",
    "currentTime": "date",
    "currentHour": "number",
    "currentDay": "string",
    "ipAddress": "string",
    "userAgent": "string",
    "timezone": "string",
}

SUBJECT = "subject"
RESOURCE = "resource"
ENVIRONMENT = "environment"


@dataclass
class _Snapshot:
    """Attributes and attribute types read once at the start of an evaluation."""
    now: datetime
    tz: Optional[tzinfo]
    subject: Dict[str, Any]
    resource: Dict[str, Any]
    environment: Dict[str, Any]
    attribute_types: Dict[str, str] = field(default_factory=dict)

    def lookup(self, name: str) -> Tuple[bool, Optional[str]]:
        """(known, data_type) for an attribute; registry first, then built-ins."""
        if name in self.attribute_types:
            return True, self.attribute_types[name]
        if name in BUILTIN_ATTRIBUTES:
            return True, BUILTIN_ATTRIBUTES[name]
        return False, None


def _action_value(action: Any) -> str:
    return str(getattr(action, "value", action))


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000.0, 3)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PolicyEngine:
    """
    Evaluates access requests against injected stores.

    The engine keeps no mutable state of its own, so one instance can serve
    any number of concurrent callers.

    Args:
        policies: PolicyStore supplying candidate rules
        user_attributes: UserAttributeStore for subject attributes
        registry: AttributeRegistry used to type and validate attributes
        recorder: optional EvaluationRecorder for the audit trail
        clock: returns the current aware datetime (tests inject a fixed one)
    """

    def __init__(
        self,
        policies: PolicyStore,
        user_attributes: UserAttributeStore,
        registry: AttributeRegistry,
        recorder: Optional[EvaluationRecorder] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.policies = policies
        self.user_attributes = user_attributes
        self.registry = registry
        self.recorder = recorder
        self._clock = clock or _utcnow

    # ============ Public API ============

    def evaluate(
        self,
        subject_id: str,
        resource: ResourceRef,
        action: Any,
        context: Optional[Dict[str, Any]] = None
    ) -> EvaluationResult:
        """
        Decide one access request.

        Args:
            subject_id: principal key
            resource: model name, id and a resolved snapshot of its attributes
            action: one of create/read/update/delete/approve/reject/export/import
            context: request data (ipAddress, userAgent, now, timezone, custom keys)

        Returns:
            EvaluationResult with finalDecision allow, deny or indeterminate.
            If a store is unreachable the decision is deny and storeError is set.
            A subject with no stored attributes at all is denied with an
            "unknown_subject" trace entry.
        """
        started = time.perf_counter()
        context = dict(context or {})
        action_name = _action_value(action)

        with trace_request(uuid.uuid4().hex, "abac.evaluate", {"model": resource.model_name}):
            try:
                candidates = self.policies.candidates(resource.model_name)
                if self.user_attributes.has_subject(subject_id):
                    snapshot = self._snapshot(subject_id, resource, context)
                    decision, trace = self._walk(candidates, resource.model_name, action_name, snapshot)
                else:
                    logger.warning(
                        f"ABAC unknown subject {subject_id}, denying {action_name} on {resource.model_name}"
                    )
                    decision = Decision.DENY
                    trace = [PolicyTrace(
                        error="unknown_subject",
                        detail=f"No attributes have ever been stored for '{subject_id}'",
                    )]
            except StoreUnavailableError as e:
                elapsed = _elapsed_ms(started)
                increment("abac.decisions.store_error")
                logger.error(
                    f"ABAC store unavailable, denying {action_name} on {resource.model_name} "
                    f"for {subject_id}: {e}"
                )
                return EvaluationResult(
                    final_decision=Decision.DENY,
                    evaluated_policies=[PolicyTrace(error="store_unavailable", detail=str(e))],
                    evaluation_time_ms=elapsed,
                    store_error=True,
                )

        result = EvaluationResult(
            final_decision=decision,
            evaluated_policies=trace,
            evaluation_time_ms=_elapsed_ms(started),
        )

        increment(f"abac.decisions.{decision.value}")
        log_metrics({"abac.evaluation_time_ms": result.evaluation_time_ms})
        logger.info(
            f"ABAC {decision.value}: user={subject_id} model={resource.model_name} "
            f"id={resource.resource_id} action={action_name} "
            f"policies={len(trace)} ({result.evaluation_time_ms:.2f}ms)"
        )

        self._record(subject_id, resource, action_name, context, result)
        return result

    def data_scope(
        self,
        subject_id: str,
        model_name: str,
        action: Any = "read",
        context: Optional[Dict[str, Any]] = None
    ) -> DataScope:
        """
        Work out which rows of `model_name` the subject may list.

        Rules are walked in priority order using only their subject and
        environment conditions, time window and actions. Resource conditions
        of a matching rule become a filter; a matching rule without resource
        conditions is decisive and ends the walk.

        Unknown subjects get no access.

        Raises:
            StoreUnavailableError: policies or attributes could not be read
        """
        context = dict(context or {})
        action_name = _action_value(action)

        candidates = self.policies.candidates(model_name)
        if not self.user_attributes.has_subject(subject_id):
            logger.warning(f"ABAC scope: unknown subject {subject_id} has no access to {model_name}")
            return DataScope(has_access=False)
        snapshot = self._snapshot(subject_id, ResourceRef(model_name=model_name), context)

        filters: List[ScopeFilter] = []
        default_allow = False
        for rule in candidates:
            if action_name not in rule.actions:
                continue
            subject_ok, _ = self._evaluate_conditions(rule.subject_conditions, snapshot.subject, SUBJECT, snapshot)
            environment_ok, _ = self._evaluate_conditions(
                rule.environment_conditions, snapshot.environment, ENVIRONMENT, snapshot
            )
            window = check_time_window(rule.time_based_access, snapshot.now, snapshot.tz)
            if not (subject_ok and environment_ok and window.satisfied):
                continue

            if rule.resource.resource_conditions:
                filters.append(ScopeFilter(
                    policy_id=rule.id,
                    policy_name=rule.name,
                    effect=rule.effect,
                    conditions=[
                        self._resolve_for_scope(condition, snapshot)
                        for condition in rule.resource.resource_conditions
                    ],
                ))
                continue

            default_allow = rule.effect == Effect.ALLOW
            break

        has_access = default_allow or any(f.effect == Effect.ALLOW for f in filters)
        scope = DataScope(
            has_access=has_access,
            unrestricted=default_allow and not filters,
            default_allow=default_allow,
            filters=filters if has_access else [],
        )
        logger.info(
            f"ABAC scope: user={subject_id} model={model_name} action={action_name} "
            f"access={scope.has_access} filters={len(scope.filters)}"
        )
        return scope

    # ============ Attribute resolution ============

    def _resolve_now(self, context: Dict[str, Any]) -> datetime:
        override = context.get("now")
        if override is not None:
            try:
                return parse_datetime(override)
            except ValueCoercionError as e:
                logger.warning(f"Ignoring invalid time override in context: {e}")
        return self._clock()

    def _snapshot(self, subject_id: str, resource: ResourceRef, context: Dict[str, Any]) -> _Snapshot:
        now = self._resolve_now(context)
        tz, tz_warning = resolve_timezone(context.get("timezone"))
        if tz_warning:
            logger.warning(tz_warning)

        subject = dict(self.user_attributes.active_attributes(subject_id, as_of=now))
        subject["userId"] = subject_id

        resource_attributes = dict(resource.attributes)
        resource_attributes.setdefault("modelName", resource.model_name)
        if resource.resource_id is not None:
            resource_attributes.setdefault("resourceId", resource.resource_id)

        wall = local_time(now, tz)
        environment = dict(context)
        environment.update(
            currentTime=wall.isoformat(),
            currentHour=wall.hour,
            currentDay=weekday_name(wall),
        )

        return _Snapshot(
            now=now,
            tz=tz,
            subject=subject,
            resource=resource_attributes,
            environment=environment,
            attribute_types={d.name: d.data_type.value for d in self.registry.list()},
        )

    # ============ Rule evaluation ============

    def _walk(
        self,
        candidates: List[PolicyRule],
        model_name: str,
        action_name: str,
        snapshot: _Snapshot
    ) -> Tuple[Decision, List[PolicyTrace]]:
        trace: List[PolicyTrace] = []
        for rule in candidates:
            # a rule only governs its own model, whatever the store returned
            if not rule.is_active or rule.resource.model_name != model_name:
                continue
            entry = self._evaluate_rule(rule, action_name, snapshot)
            trace.append(entry)
            if entry.matched:
                return Decision(rule.effect.value), trace
        return Decision.INDETERMINATE, trace

    def _evaluate_rule(self, rule: PolicyRule, action_name: str, snapshot: _Snapshot) -> PolicyTrace:
        entry = PolicyTrace(policy_id=rule.id, policy_name=rule.name, effect=rule.effect.value)
        try:
            subject_ok, subject_traces = self._evaluate_conditions(
                rule.subject_conditions, snapshot.subject, SUBJECT, snapshot
            )
            resource_ok, resource_traces = self._evaluate_conditions(
                rule.resource.resource_conditions, snapshot.resource, RESOURCE, snapshot
            )
            environment_ok, environment_traces = self._evaluate_conditions(
                rule.environment_conditions, snapshot.environment, ENVIRONMENT, snapshot
            )
            window = check_time_window(rule.time_based_access, snapshot.now, snapshot.tz)
        except StoreUnavailableError:
            raise
        except Exception as e:
            logger.exception(f"Policy {rule.id} ({rule.name}) could not be evaluated")
            entry.error = "evaluation_error"
            entry.detail = str(e)
            return entry

        entry.conditions = subject_traces + resource_traces + environment_traces
        if rule.time_based_access is not None:
            entry.conditions.append(ConditionTrace(
                type="time",
                result=window.satisfied,
                reason=window.reason,
                warning=window.warning,
            ))
            if window.warning:
                logger.warning(f"Policy {rule.id} ({rule.name}): {window.warning}")

        entry.action_matched = action_name in rule.actions
        entry.time_window_satisfied = window.satisfied
        entry.matched = all((
            subject_ok, resource_ok, environment_ok, entry.action_matched, window.satisfied
        ))
        return entry

    def _evaluate_conditions(
        self,
        condition_set: List[Condition],
        attributes: Dict[str, Any],
        section: str,
        snapshot: _Snapshot
    ) -> Tuple[bool, List[ConditionTrace]]:
        traces = [self._evaluate_condition(c, attributes, section, snapshot) for c in condition_set]
        passed = conditions.fold(
            (trace.result, condition.logical_operator)
            for trace, condition in zip(traces, condition_set)
        )
        return passed, traces

    def _evaluate_condition(
        self,
        condition: Condition,
        attributes: Dict[str, Any],
        section: str,
        snapshot: _Snapshot
    ) -> ConditionTrace:
        known, data_type = snapshot.lookup(condition.attribute)
        actual = attributes.get(condition.attribute)
        expected = condition.value

        if not known:
            outcome = ConditionOutcome(False, f"Unknown attribute '{condition.attribute}'")
        elif condition.operator in SUBJECT_REFERENCE_OPERATORS:
            outcome, expected = self._compare_with_subject(condition, actual, data_type, section, snapshot)
        else:
            outcome = conditions.check(condition.operator, expected, actual, data_type)

        if outcome.warning:
            logger.warning(
                f"Condition {section}.{condition.attribute} {condition.operator}: {outcome.warning}"
            )

        return ConditionTrace(
            type=section,
            attribute=condition.attribute,
            operator=condition.operator,
            expected_value=expected,
            actual_value=actual,
            reference_user_attribute=condition.reference_user_attribute,
            logical_operator=_action_value(condition.logical_operator),
            result=outcome.result,
            warning=outcome.warning,
        )

    def _compare_with_subject(
        self,
        condition: Condition,
        actual: Any,
        data_type: Optional[str],
        section: str,
        snapshot: _Snapshot
    ) -> Tuple[ConditionOutcome, Any]:
        operator = condition.operator
        if section != RESOURCE:
            return ConditionOutcome(False, f"{operator} is only valid in resource conditions"), None

        reference = condition.reference_user_attribute
        if not reference:
            return ConditionOutcome(False, f"{operator} requires referenceUserAttribute"), None

        reference_known, _ = snapshot.lookup(reference)
        if not reference_known:
            return ConditionOutcome(False, f"Unknown attribute '{reference}'"), None

        subject_value = snapshot.subject.get(reference)
        return conditions.check(operator, subject_value, actual, data_type), subject_value

    # ============ Data scope helpers ============

    def _resolve_for_scope(self, condition: Condition, snapshot: _Snapshot) -> Condition:
        """Turn a resource condition into one a query builder can apply."""
        known, data_type = snapshot.lookup(condition.attribute)
        operator = condition.operator
        value = condition.value

        if not known:
            # unknown attributes never match; an empty IN list says the same in SQL
            operator, value = "in", []
        elif operator in SUBJECT_REFERENCE_OPERATORS:
            reference = condition.reference_user_attribute
            value = snapshot.subject.get(reference) if reference else None
            if value is None:
                # subject lacks the value: same_as_user never holds, different_from_user always does
                operator = "in" if operator == "same_as_user" else "not_in"
                value = []
            else:
                operator = "equals" if operator == "same_as_user" else "not_equals"

        return Condition(
            attribute=condition.attribute,
            operator=operator,
            value=self._typed_python(value, operator, data_type),
            logical_operator=condition.logical_operator,
        )

    @staticmethod
    def _typed_python(value: Any, operator: str, data_type: Optional[str]) -> Any:
        def _one(raw):
            if raw is None or data_type is None:
                return raw
            try:
                return coerce(raw, data_type).to_python()
            except ValueCoercionError:
                return raw

        if isinstance(value, list) and operator in ("in", "not_in", "between"):
            return [_one(item) for item in value]
        return _one(value)

    # ============ Audit ============

    def _record(
        self,
        subject_id: str,
        resource: ResourceRef,
        action_name: str,
        context: Dict[str, Any],
        result: EvaluationResult
    ) -> None:
        if self.recorder is None:
            return
        try:
            ip_address = context.get("ipAddress")
            user_agent = context.get("userAgent")
            record = PolicyEvaluationRecord(
                user_id=subject_id,
                resource=ResourceKey(model_name=resource.model_name, resource_id=resource.resource_id),
                action=action_name,
                request_context=context,
                evaluated_policies=result.evaluated_policies,
                final_decision=result.final_decision,
                evaluation_time_ms=result.evaluation_time_ms,
                ip_address=str(ip_address) if ip_address is not None else None,
                user_agent=str(user_agent) if user_agent is not None else None,
                timestamp=self._clock(),
            )
            self.recorder.persist(record)
        except Exception as e:
            logger.error(f"Could not queue policy evaluation for audit: {e}")
