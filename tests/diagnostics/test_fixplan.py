"""
Tests for fix plan generation, execution, cooldowns and rejection.
"""

import threading
import time
from dataclasses import replace
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from src.diagnostics.errors import (
    ChangeExecutionFailed,
    CooldownActive,
    DiagnosticsError,
    InvalidState,
    KnowledgeStoreUnavailable,
    PlanExpired,
    PlanNotFound,
)
from src.diagnostics.fixplan import FixPlanOrchestrator
from src.diagnostics.models import (
    KnowledgeEntry,
    KnowledgeType,
    PlanStatus,
    RunStatus,
    RunSummary,
    Severity,
)
from tests.conftest import (
    RUN_DATE,
    SITE_ID,
    FakeExecutor,
    FakeKnowledgeStore,
    make_anomaly,
)


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def knowledge():
    return FakeKnowledgeStore()


@pytest.fixture
def plans(config, store, knowledge, executor, clock):
    return FixPlanOrchestrator(config, store, knowledge=knowledge, executor=executor, clock=clock)


def fix_result(outcome, action, topic="tracking"):
    return KnowledgeEntry(
        site_id=SITE_ID,
        type=KnowledgeType.FIX_RESULT,
        topic=topic,
        title=f"{action} -> {outcome}",
        evidence={"items": [{"action": action, "target": "x"}]},
        outcome=outcome,
    )


class TestGeneratePlan:
    """Tests for FixPlanOrchestrator.generate_plan."""

    def test_generates_bounded_plan(self, plans, clock, config):
        plan = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])

        assert plan.status == PlanStatus.PENDING
        assert plan.generated_at == clock.now
        assert plan.expires_at == clock.now + timedelta(hours=24)
        assert plan.cooldown_allowed
        assert 0 < len(plan.items) <= config.max_plan_items
        assert not plan.knowledge_degraded

    def test_generate_is_idempotent(self, plans, store):
        first = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])
        second = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])

        assert second.plan_id == first.plan_id
        assert len(store.plans) == 1

    def test_topics_have_independent_plans(self, plans):
        tracking = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])
        ctr = plans.generate_plan(SITE_ID, "ctr", current_metrics=[])

        assert tracking.plan_id != ctr.plan_id

    def test_expired_pending_plan_is_replaced(self, plans, store, clock):
        first = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])
        clock.advance(hours=25)

        second = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])

        assert second.plan_id != first.plan_id
        assert store.get_plan(first.plan_id).status == PlanStatus.EXPIRED

    def test_items_from_topic_anomalies(self, plans):
        anomalies = [
            make_anomaly("ga4.organic_sessions", Severity.SEVERE, -6.0),
            make_anomaly("gsc.clicks", Severity.SEVERE, -6.0),  # other topic
        ]

        plan = plans.generate_plan(SITE_ID, "tracking", current_metrics=anomalies)

        anomaly_items = [i for i in plan.items if i.origin == "anomaly"]
        assert [i.target for i in anomaly_items] == ["ga4.organic_sessions"]
        assert plan.evidence["anomalies"][0]["metric"] == "ga4.organic_sessions"

    def test_defaults_to_latest_run_anomalies(self, plans, store):
        store.create_run(RunSummary("run-7", SITE_ID, RUN_DATE, status=RunStatus.COMPLETED))
        store.anomalies["run-7"] = [make_anomaly("ga4.organic_sessions", run_id="run-7")]

        plan = plans.generate_plan(SITE_ID, "tracking")

        assert any(i.origin == "anomaly" for i in plan.items)

    def test_unknown_topic_uses_anomaly_items_only(self, plans):
        plan = plans.generate_plan(
            SITE_ID, "email", current_metrics=[make_anomaly("ads.conversions", Severity.SEVERE)]
        )

        assert [i.origin for i in plan.items] == ["anomaly"]

    def test_knowledge_reorders_and_filters_items(self, config, store, clock):
        knowledge = FakeKnowledgeStore(
            entries=[
                fix_result("regressed", "Review recent tag manager publishes"),
                fix_result("improved", "Check consent mode is not blocking analytics events"),
                fix_result("no_effect", "Something we tried once"),
            ]
        )
        plans = FixPlanOrchestrator(config, store, knowledge=knowledge, clock=clock)

        plan = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])

        actions = [i.action for i in plan.items]
        assert actions[0] == "Check consent mode is not blocking analytics events"
        assert plan.items[0].origin == "knowledge"
        assert "Review recent tag manager publishes" not in actions
        assert actions.count("Check consent mode is not blocking analytics events") == 1
        assert len(plan.knowledge_context) == 3

    def test_knowledge_outage_degrades_but_does_not_fail(self, config, store, clock):
        plans = FixPlanOrchestrator(
            config, store, knowledge=FakeKnowledgeStore(fail_query=True), clock=clock
        )

        plan = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])

        assert plan.knowledge_degraded
        assert plan.items

    def test_knowledge_store_unavailable_degrades(self, config, store, clock):
        knowledge = MagicMock()
        knowledge.query.side_effect = KnowledgeStoreUnavailable("Knowledge query failed", stage="knowledge")
        plans = FixPlanOrchestrator(config, store, knowledge=knowledge, clock=clock)

        plan = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])

        assert plan.knowledge_degraded
        assert plan.knowledge_context == []

    def test_max_items_bound(self, config, store, clock):
        plans = FixPlanOrchestrator(replace(config, max_plan_items=2), store, clock=clock)

        plan = plans.generate_plan(
            SITE_ID, "tracking", current_metrics=[make_anomaly("ga4.organic_sessions")]
        )

        assert len(plan.items) == 2

    def test_concurrent_generation_yields_one_plan(self, plans, store):
        results = []

        def generate():
            results.append(plans.generate_plan(SITE_ID, "tracking", current_metrics=[]))

        threads = [threading.Thread(target=generate) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len({p.plan_id for p in results}) == 1
        assert len(store.plans) == 1


class TestExecutePlan:
    """Tests for FixPlanOrchestrator.execute_plan."""

    def test_execute_applies_first_items(self, plans, executor, knowledge, store, clock):
        plan = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])

        result = plans.execute_plan(plan.plan_id, max_items=2)

        assert result.applied
        assert result.items_executed == plan.items[:2]
        assert result.reference_id == "chg-1"
        assert executor.calls == [(plan.plan_id, plan.items[:2])]
        stored = store.get_plan(plan.plan_id)
        assert stored.status == PlanStatus.EXECUTED
        assert stored.executed_at == clock.now
        assert stored.execution_reference == "chg-1"
        assert result.knowledge_recorded
        assert knowledge.written[0].type == KnowledgeType.FIX_RESULT
        assert knowledge.written[0].outcome == "pending_verification"

    def test_max_items_larger_than_plan(self, plans):
        plan = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])

        result = plans.execute_plan(plan.plan_id, max_items=100)

        assert len(result.items_executed) == len(plan.items)

    def test_max_items_must_be_positive(self, plans):
        plan = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])

        with pytest.raises(ValueError):
            plans.execute_plan(plan.plan_id, max_items=0)

    def test_unknown_plan(self, plans):
        with pytest.raises(PlanNotFound):
            plans.execute_plan("missing", max_items=1)

    def test_re_execution_is_rejected(self, plans, executor):
        plan = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])
        plans.execute_plan(plan.plan_id, max_items=1)

        with pytest.raises(InvalidState):
            plans.execute_plan(plan.plan_id, max_items=1)
        assert len(executor.calls) == 1

    def test_expired_plan(self, plans, store, clock, executor):
        plan = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])
        clock.advance(hours=24)

        with pytest.raises(PlanExpired) as exc_info:
            plans.execute_plan(plan.plan_id, max_items=1)

        assert exc_info.value.expires_at == plan.expires_at
        assert store.get_plan(plan.plan_id).status == PlanStatus.EXPIRED
        assert executor.calls == []

    def test_cooldown_after_execution(self, plans, clock):
        """A new plan for the same topic is generated but cannot run during cooldown."""
        first = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])
        plans.execute_plan(first.plan_id, max_items=1)
        executed_at = clock.now

        clock.advance(hours=1)
        second = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])

        assert second.plan_id != first.plan_id
        assert not second.cooldown_allowed
        assert second.cooldown_next_allowed_at == executed_at + timedelta(days=3)
        with pytest.raises(CooldownActive) as exc_info:
            plans.execute_plan(second.plan_id, max_items=1)
        assert exc_info.value.next_allowed_at == executed_at + timedelta(days=3)
        assert "tracking" in exc_info.value.reason

    def test_cooldown_ends(self, plans, clock):
        first = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])
        plans.execute_plan(first.plan_id, max_items=1)

        clock.advance(days=3)
        second = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])

        assert second.cooldown_allowed
        assert plans.execute_plan(second.plan_id, max_items=1).applied

    def test_cooldown_is_per_topic(self, plans):
        first = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])
        plans.execute_plan(first.plan_id, max_items=1)

        other = plans.generate_plan(SITE_ID, "ctr", current_metrics=[])

        assert other.cooldown_allowed
        assert plans.execute_plan(other.plan_id, max_items=1).applied

    def test_override_reason_bypasses_cooldown(self, plans, clock, store):
        first = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])
        plans.execute_plan(first.plan_id, max_items=1)
        clock.advance(hours=1)
        second = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])

        result = plans.execute_plan(second.plan_id, max_items=1, override_reason="site is down")

        assert result.cooldown_overridden
        assert result.override_reason == "site is down"
        assert store.get_plan(second.plan_id).override_reason == "site is down"

    def test_blank_override_reason_does_not_bypass(self, plans, clock):
        first = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])
        plans.execute_plan(first.plan_id, max_items=1)
        second = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])

        with pytest.raises(CooldownActive):
            plans.execute_plan(second.plan_id, max_items=1, override_reason="   ")

    def test_executor_failure_reverts_to_pending(self, config, store, clock):
        executor = FakeExecutor(error=ConnectionError("CMS down"))
        plans = FixPlanOrchestrator(config, store, executor=executor, clock=clock)
        plan = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])

        with pytest.raises(ChangeExecutionFailed, match="CMS down"):
            plans.execute_plan(plan.plan_id, max_items=1)

        stored = store.get_plan(plan.plan_id)
        assert stored.status == PlanStatus.PENDING
        assert stored.executed_at is None
        assert plans.compute_cooldown(SITE_ID, "tracking").allowed

    def test_executor_refusal_reverts_to_pending(self, config, store, clock):
        plans = FixPlanOrchestrator(config, store, executor=FakeExecutor(applied=False), clock=clock)
        plan = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])

        with pytest.raises(ChangeExecutionFailed, match="refused"):
            plans.execute_plan(plan.plan_id, max_items=1)

        assert store.get_plan(plan.plan_id).status == PlanStatus.PENDING

    def test_executor_timeout_reverts_to_pending(self, config, store, clock):
        class SlowExecutor(FakeExecutor):
            def apply(self, plan_id, items):
                time.sleep(0.5)
                return super().apply(plan_id, items)

        plans = FixPlanOrchestrator(
            replace(config, executor_timeout_seconds=0.05), store, executor=SlowExecutor(), clock=clock
        )
        plan = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])

        with pytest.raises(ChangeExecutionFailed):
            plans.execute_plan(plan.plan_id, max_items=1)

        assert store.get_plan(plan.plan_id).status == PlanStatus.PENDING

    def test_failed_execution_keeps_one_pending_plan(self, config, store, clock):
        """A plan generated while the claim was held keeps the pending slot."""

        class RegeneratingExecutor(FakeExecutor):
            def apply(self, plan_id, items):
                self.calls.append((plan_id, list(items)))
                regenerated.append(plans.generate_plan(SITE_ID, "tracking", current_metrics=[]))
                raise ConnectionError("CMS down")

        regenerated = []
        plans = FixPlanOrchestrator(config, store, executor=RegeneratingExecutor(), clock=clock)
        plan = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])

        with pytest.raises(ChangeExecutionFailed, match="CMS down"):
            plans.execute_plan(plan.plan_id, max_items=1)

        pending = [p for p in store.plans.values() if p.status == PlanStatus.PENDING]
        assert [p.plan_id for p in pending] == [regenerated[0].plan_id]
        claimed = store.get_plan(plan.plan_id)
        assert claimed.status == PlanStatus.EXPIRED
        assert claimed.executed_at is None
        assert plans.compute_cooldown(SITE_ID, "tracking").allowed

    def test_knowledge_write_failure_is_not_fatal(self, config, store, clock):
        plans = FixPlanOrchestrator(
            config,
            store,
            knowledge=FakeKnowledgeStore(fail_write=True),
            executor=FakeExecutor(),
            clock=clock,
        )
        plan = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])

        result = plans.execute_plan(plan.plan_id, max_items=1)

        assert result.applied
        assert not result.knowledge_recorded

    def test_concurrent_execution_applies_once(self, plans, executor):
        plan = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])
        outcomes = []

        def execute():
            try:
                outcomes.append(plans.execute_plan(plan.plan_id, max_items=1))
            except DiagnosticsError as e:
                outcomes.append(e)

        threads = [threading.Thread(target=execute) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(executor.calls) == 1
        assert sum(1 for o in outcomes if not isinstance(o, DiagnosticsError)) == 1


class TestRejectPlan:
    def test_reject_pending_plan(self, plans, store, knowledge):
        plan = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])

        rejected = plans.reject_plan(plan.plan_id, "not now")

        assert rejected.status == PlanStatus.REJECTED
        assert rejected.rejection_reason == "not now"
        assert knowledge.written[0].decision == "rejected"

    def test_rejected_plan_cannot_run(self, plans):
        plan = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])
        plans.reject_plan(plan.plan_id, "not now")

        with pytest.raises(InvalidState):
            plans.execute_plan(plan.plan_id, max_items=1)

    def test_new_plan_after_rejection(self, plans):
        plan = plans.generate_plan(SITE_ID, "tracking", current_metrics=[])
        plans.reject_plan(plan.plan_id, "not now")

        assert plans.generate_plan(SITE_ID, "tracking", current_metrics=[]).plan_id != plan.plan_id

    def test_reject_unknown_plan(self, plans):
        with pytest.raises(PlanNotFound):
            plans.reject_plan("missing", "why")
