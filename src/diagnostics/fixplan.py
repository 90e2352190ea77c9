"""
Fix plan and cooldown orchestrator.

Plan lifecycle per (site, topic): pending -> executed | expired | rejected.
At most one pending plan exists per topic; executing a plan starts a cooldown
for its topic during which further plans may be generated but not executed
unless an override reason is given.
"""

import uuid
from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from src.core.concurrency import run_with_timeout

from .config import DiagnosticsConfig
from .errors import (
    ChangeExecutionFailed,
    CooldownActive,
    InvalidState,
    KnowledgeStoreUnavailable,
    PendingPlanExists,
    PlanExpired,
    PlanNotFound,
)
from .interfaces import ChangeExecutor, KnowledgeStore
from .models import (
    AnomalyRecord,
    CooldownStatus,
    ExecutionResult,
    FixPlan,
    FixPlanItem,
    KnowledgeEntry,
    KnowledgeType,
    PlanStatus,
)
from .tickets import normalize

logger = structlog.get_logger(__name__)

# Outcomes recorded on fix_result knowledge entries
OUTCOME_IMPROVED = "improved"
OUTCOME_REGRESSED = "regressed"
OUTCOME_NO_EFFECT = "no_effect"
OUTCOME_PENDING = "pending_verification"

DISCARDED_OUTCOMES = (OUTCOME_REGRESSED, OUTCOME_NO_EFFECT)


class FixPlanOrchestrator:
    """Generates, executes and rejects fix plans while enforcing cooldowns"""

    def __init__(
        self,
        config: DiagnosticsConfig,
        store,
        knowledge: KnowledgeStore | None = None,
        executor: ChangeExecutor | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config
        self.store = store
        self.knowledge = knowledge
        self.executor = executor
        self.clock = clock or (lambda: datetime.now(UTC))

    # ========================================
    # Cooldown
    # ========================================

    def compute_cooldown(
        self, site_id: str, topic: str, now: datetime | None = None
    ) -> CooldownStatus:
        """Cooldown of a topic, derived from its last executed plan"""
        now = now or self.clock()
        last = self.store.get_last_executed_plan(site_id, topic)
        if last is None or last.executed_at is None:
            return CooldownStatus(allowed=True)

        next_allowed_at = last.executed_at + self.config.cooldown
        if now >= next_allowed_at:
            return CooldownStatus(
                allowed=True,
                next_allowed_at=next_allowed_at,
                last_executed_at=last.executed_at,
            )

        return CooldownStatus(
            allowed=False,
            next_allowed_at=next_allowed_at,
            last_executed_at=last.executed_at,
            reason=(
                f"Topic '{topic}' was changed at {last.executed_at.isoformat()}; "
                f"next change allowed at {next_allowed_at.isoformat()}"
            ),
        )

    # ========================================
    # Generation
    # ========================================

    def generate_plan(
        self,
        site_id: str,
        topic: str,
        current_metrics: list[AnomalyRecord] | None = None,
    ) -> FixPlan:
        """Return the pending plan of a topic, creating one if needed

        Args:
            site_id: Site identifier
            topic: Remediation topic (tracking, visibility, ctr, paid, availability)
            current_metrics: Anomalies to derive items from; defaults to the
                anomalies of the site's latest run

        Returns:
            The pending, unexpired plan for (site_id, topic)
        """
        now = self.clock()
        pending = self.store.get_pending_plan(site_id, topic)
        if pending is not None:
            if not pending.is_expired(now):
                logger.debug("Returning existing pending plan", plan_id=pending.plan_id, topic=topic)
                return pending
            self.store.transition_plan(pending.plan_id, PlanStatus.PENDING, PlanStatus.EXPIRED)
            logger.info("Pending plan expired", plan_id=pending.plan_id, topic=topic)

        entries, knowledge_degraded = self._query_knowledge(site_id, topic)
        anomalies = current_metrics if current_metrics is not None else self._latest_anomalies(site_id)
        topic_anomalies = self._topic_anomalies(topic, anomalies)
        items = self.build_items(topic, topic_anomalies, entries)
        cooldown = self.compute_cooldown(site_id, topic, now)

        plan = FixPlan(
            plan_id=str(uuid.uuid4()),
            site_id=site_id,
            topic=topic,
            generated_at=now,
            expires_at=now + self.config.plan_ttl,
            cooldown_allowed=cooldown.allowed,
            cooldown_next_allowed_at=cooldown.next_allowed_at,
            cooldown_reason=cooldown.reason,
            items=items,
            evidence={
                "anomalies": [
                    {
                        "metric": a.qualified_key,
                        "severity": a.severity.value,
                        "z_score": round(a.z_score, 3),
                        "run_id": a.run_id,
                    }
                    for a in topic_anomalies
                ],
            },
            knowledge_context=[entry.title for entry in entries],
            knowledge_degraded=knowledge_degraded,
        )

        stored = self.store.insert_pending_plan(plan)
        if stored.plan_id != plan.plan_id:
            logger.info("Concurrent plan generation, returning winner", plan_id=stored.plan_id)
        else:
            logger.info(
                "Fix plan generated",
                plan_id=plan.plan_id,
                site_id=site_id,
                topic=topic,
                items=len(items),
                cooldown_allowed=cooldown.allowed,
                knowledge_degraded=knowledge_degraded,
            )
        return stored

    def build_items(
        self,
        topic: str,
        anomalies: list[AnomalyRecord],
        entries: list[KnowledgeEntry],
    ) -> list[FixPlanItem]:
        """Bounded, ordered item list: learned improvements first, known failures dropped"""
        improved: list[FixPlanItem] = []
        discarded: set[str] = set()
        for entry in entries:
            if entry.type != KnowledgeType.FIX_RESULT:
                continue
            for raw in entry.evidence.get("items", []):
                action = raw.get("action", "")
                if entry.outcome in DISCARDED_OUTCOMES:
                    discarded.add(normalize(action))
                elif entry.outcome == OUTCOME_IMPROVED:
                    improved.append(
                        FixPlanItem(
                            action=action,
                            target=raw.get("target", ""),
                            rationale=f"Improved {topic} previously ({entry.title})",
                            origin="knowledge",
                        )
                    )

        candidates = list(improved)
        spec = self.config.topic_spec(topic)
        if spec is not None:
            candidates.extend(
                FixPlanItem(action=action, target=target, rationale=rationale)
                for action, target, rationale in spec.templates
            )
        for anomaly in anomalies:
            change = f"{anomaly.delta_pct:+.1f}%" if anomaly.delta_pct is not None else "from zero baseline"
            candidates.append(
                FixPlanItem(
                    action=f"Investigate {anomaly.severity.value} {anomaly.direction.value} of {anomaly.qualified_key}",
                    target=anomaly.qualified_key,
                    rationale=f"z={anomaly.z_score:.2f} ({change})",
                    origin="anomaly",
                )
            )

        items: list[FixPlanItem] = []
        seen: set[str] = set()
        for item in candidates:
            key = normalize(item.action)
            if key in discarded or key in seen:
                continue
            seen.add(key)
            items.append(item)
        return items[: self.config.max_plan_items]

    def _topic_anomalies(self, topic: str, anomalies: list[AnomalyRecord]) -> list[AnomalyRecord]:
        spec = self.config.topic_spec(topic)
        degradations = [a for a in anomalies if a.is_degradation]
        if spec is None:
            return degradations
        return [a for a in degradations if a.qualified_key in spec.metrics]

    def _latest_anomalies(self, site_id: str) -> list[AnomalyRecord]:
        run = self.store.get_latest_run(site_id)
        if run is None:
            return []
        return self.store.list_anomalies(run.run_id)

    def _query_knowledge(self, site_id: str, topic: str) -> tuple[list[KnowledgeEntry], bool]:
        """Best-effort knowledge lookup; returns (entries, degraded)"""
        if self.knowledge is None:
            return [], False
        try:
            entries = run_with_timeout(
                self.knowledge.query,
                self.config.knowledge_timeout_seconds,
                site_id,
                topic,
                None,
                self.config.knowledge_query_limit,
            )
            return list(entries), False
        except KnowledgeStoreUnavailable as e:
            error = e.message
        except Exception as e:
            error = str(e) or type(e).__name__

        logger.warning(
            "Knowledge store unavailable, planning without it",
            site_id=site_id,
            topic=topic,
            error=error,
        )
        return [], True

    def _record_knowledge(self, entry: KnowledgeEntry) -> bool:
        if self.knowledge is None:
            return False
        try:
            return bool(
                run_with_timeout(self.knowledge.write, self.config.knowledge_timeout_seconds, entry)
            )
        except Exception as e:
            logger.warning(
                "Failed to record knowledge entry",
                type=entry.type.value,
                topic=entry.topic,
                error=str(e) or type(e).__name__,
            )
            return False

    # ========================================
    # Execution
    # ========================================

    def execute_plan(
        self,
        plan_id: str,
        max_items: int,
        override_reason: str | None = None,
    ) -> ExecutionResult:
        """Apply the first ``max_items`` items of a pending plan

        Raises:
            ValueError: max_items < 1
            PlanNotFound: unknown plan
            InvalidState: plan is not pending
            PlanExpired: plan passed its expiry (it is marked expired)
            CooldownActive: topic is cooling down and no override reason was given
            ChangeExecutionFailed: executor failed or refused; plan is pending again
                (or expired when a newer plan is pending for the topic)
        """
        if max_items < 1:
            raise ValueError("max_items must be at least 1")

        plan = self.store.get_plan(plan_id)
        if plan is None:
            raise PlanNotFound(f"Fix plan {plan_id} not found", plan_id=plan_id, stage="execute")
        if plan.status != PlanStatus.PENDING:
            raise InvalidState(
                f"Fix plan {plan_id} is {plan.status.value}, not pending",
                plan_id=plan_id,
                stage="execute",
            )

        now = self.clock()
        if plan.is_expired(now):
            self.store.transition_plan(plan_id, PlanStatus.PENDING, PlanStatus.EXPIRED)
            logger.info("Fix plan expired before execution", plan_id=plan_id)
            raise PlanExpired(plan_id, plan.expires_at)

        override = bool(override_reason and override_reason.strip())
        cooldown = self.compute_cooldown(plan.site_id, plan.topic, now)
        if not cooldown.allowed and not override:
            raise CooldownActive(plan_id, cooldown.next_allowed_at, cooldown.reason)

        if self.executor is None:
            raise ChangeExecutionFailed(
                "No change executor configured", plan_id=plan_id, stage="execute"
            )

        claimed = self.store.transition_plan(
            plan_id,
            PlanStatus.PENDING,
            PlanStatus.EXECUTED,
            executed_at=now,
            override_reason=override_reason if override else None,
        )
        if claimed is None:
            raise InvalidState(
                f"Fix plan {plan_id} changed concurrently", plan_id=plan_id, stage="execute"
            )

        items = plan.items[:max_items]
        try:
            result = run_with_timeout(
                self.executor.apply, self.config.executor_timeout_seconds, plan_id, items
            )
        except Exception as e:
            self._release(plan_id)
            raise ChangeExecutionFailed(
                f"Change executor failed: {str(e) or type(e).__name__}",
                plan_id=plan_id,
                stage="execute",
            ) from e

        if not result.applied:
            self._release(plan_id)
            raise ChangeExecutionFailed(
                f"Change executor did not apply the plan: {result.details}",
                plan_id=plan_id,
                stage="execute",
            )

        self.store.transition_plan(
            plan_id,
            PlanStatus.EXECUTED,
            PlanStatus.EXECUTED,
            execution_reference=result.reference_id,
        )

        recorded = self._record_knowledge(
            KnowledgeEntry(
                site_id=plan.site_id,
                type=KnowledgeType.FIX_RESULT,
                topic=plan.topic,
                title=f"Executed {len(items)} {plan.topic} fix item(s)",
                evidence={
                    "plan_id": plan_id,
                    "items": [{"action": i.action, "target": i.target} for i in items],
                    "reference_id": result.reference_id,
                    "details": result.details,
                },
                decision=f"override: {override_reason}" if not cooldown.allowed else "executed",
                outcome=OUTCOME_PENDING,
                tags=[plan.topic, "fix_result"],
                created_at=now,
            )
        )

        logger.info(
            "Fix plan executed",
            plan_id=plan_id,
            topic=plan.topic,
            items=len(items),
            reference_id=result.reference_id,
            cooldown_overridden=not cooldown.allowed,
        )

        return ExecutionResult(
            plan_id=plan_id,
            site_id=plan.site_id,
            topic=plan.topic,
            items_executed=items,
            applied=True,
            reference_id=result.reference_id,
            details=result.details,
            executed_at=now,
            cooldown_overridden=not cooldown.allowed,
            override_reason=override_reason if override else None,
            knowledge_recorded=recorded,
        )

    def _release(self, plan_id: str):
        """Undo the claim of a plan whose change was not applied

        The plan goes back to pending so it can be retried. If a newer plan took
        the pending slot of the topic meanwhile, the claimed plan is expired
        instead. Either way ``executed_at`` is cleared, so no cooldown starts.
        """
        try:
            released = self.store.transition_plan(
                plan_id,
                PlanStatus.EXECUTED,
                PlanStatus.PENDING,
                executed_at=None,
                override_reason=None,
            )
        except PendingPlanExists:
            released = self.store.transition_plan(
                plan_id,
                PlanStatus.EXECUTED,
                PlanStatus.EXPIRED,
                executed_at=None,
                override_reason=None,
            )
            logger.warning(
                "Fix plan execution failed, newer pending plan exists, plan expired",
                plan_id=plan_id,
                released=released is not None,
            )
            return
        logger.warning("Fix plan execution failed, plan released", plan_id=plan_id, released=released is not None)

    # ========================================
    # Rejection
    # ========================================

    def reject_plan(self, plan_id: str, reason: str) -> FixPlan:
        """Operator rejects a pending plan"""
        plan = self.store.get_plan(plan_id)
        if plan is None:
            raise PlanNotFound(f"Fix plan {plan_id} not found", plan_id=plan_id, stage="reject")
        if plan.status != PlanStatus.PENDING:
            raise InvalidState(
                f"Fix plan {plan_id} is {plan.status.value}, not pending",
                plan_id=plan_id,
                stage="reject",
            )

        rejected = self.store.transition_plan(
            plan_id, PlanStatus.PENDING, PlanStatus.REJECTED, rejection_reason=reason
        )
        if rejected is None:
            raise InvalidState(
                f"Fix plan {plan_id} changed concurrently", plan_id=plan_id, stage="reject"
            )

        self._record_knowledge(
            KnowledgeEntry(
                site_id=plan.site_id,
                type=KnowledgeType.RECOMMENDATION,
                topic=plan.topic,
                title=f"Rejected {plan.topic} fix plan",
                evidence={"plan_id": plan_id, "items": [i.action for i in plan.items]},
                decision="rejected",
                outcome=reason,
                tags=[plan.topic, "rejected"],
                created_at=self.clock(),
            )
        )
        logger.info("Fix plan rejected", plan_id=plan_id, topic=plan.topic, reason=reason)
        return rejected
