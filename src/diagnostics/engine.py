"""
Diagnostics engine facade.

Wires the run orchestrator, ticket generator and fix plan orchestrator to
their collaborators and exposes the operations used by the CLI, the queue
consumer and any outer API.
"""

from collections.abc import Callable
from datetime import date, datetime

import structlog

from .cache import RunSummaryCache
from .classifier import HypothesisClassifier
from .config import DiagnosticsConfig
from .connectors import DatabaseMetricSource, HttpChangeExecutor, HttpCorroborationCheck
from .database import DiagnosticsDatabase
from .errors import RunNotFound
from .fixplan import FixPlanOrchestrator
from .interfaces import ChangeExecutor, CorroborationCheck, KnowledgeStore, MetricSource
from .knowledge import PostgresKnowledgeStore
from .models import AnomalyRecord, ExecutionResult, FixPlan, RunSummary, Ticket, TicketStatus
from .orchestrator import RunOrchestrator
from .report import render_report
from .rules import DEFAULT_RULES

logger = structlog.get_logger(__name__)


class DiagnosticsEngine:
    """Entry point for runs, tickets and fix plans"""

    def __init__(
        self,
        config: DiagnosticsConfig,
        store,
        sources: dict[str, MetricSource],
        checks: dict[str, CorroborationCheck] | None = None,
        knowledge: KnowledgeStore | None = None,
        executor: ChangeExecutor | None = None,
        cache: RunSummaryCache | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config
        self.store = store
        self.cache = cache
        classifier = HypothesisClassifier(config, rules=DEFAULT_RULES, checks=checks)
        self.runs = RunOrchestrator(
            config, store, sources, classifier=classifier, knowledge=knowledge, clock=clock
        )
        self.tickets = self.runs.tickets
        self.plans = FixPlanOrchestrator(
            config, store, knowledge=knowledge, executor=executor, clock=clock
        )

    @classmethod
    def from_config(cls, config: DiagnosticsConfig, use_cache: bool = True) -> "DiagnosticsEngine":
        """Build an engine backed by PostgreSQL, Redis and the HTTP worker services"""
        db = DiagnosticsDatabase(config)
        if not db.check_health():
            raise RuntimeError("Database health check failed")

        sources = {source: DatabaseMetricSource(db, source) for source in config.sources}

        checks = None
        if config.corroboration_url:
            client = HttpCorroborationCheck(
                config.corroboration_url,
                api_key=config.worker_api_key,
                timeout=config.corroboration_timeout_seconds,
            )
            checks = {rule.corroboration: client for rule in DEFAULT_RULES if rule.corroboration}

        executor = None
        if config.change_executor_url:
            executor = HttpChangeExecutor(
                config.change_executor_url,
                api_key=config.worker_api_key,
                timeout=config.executor_timeout_seconds,
            )

        cache = None
        if use_cache:
            try:
                cache = RunSummaryCache(config)
            except Exception as e:
                logger.warning("Run summary cache disabled", error=str(e))

        return cls(
            config,
            db,
            sources,
            checks=checks,
            knowledge=PostgresKnowledgeStore(db),
            executor=executor,
            cache=cache,
        )

    # ========================================
    # Runs
    # ========================================

    def start_run(self, site_id: str, force: bool = False, run_date: date | None = None) -> RunSummary:
        summary = self.runs.start_run(site_id, force=force, run_date=run_date)
        if self.cache is not None:
            self.cache.save_summary(summary)
        return summary

    def get_run_status(self, run_id: str, refresh: bool = False) -> RunSummary:
        """Run summary, read through the Redis cache

        Args:
            run_id: Run identifier
            refresh: Drop the cached summary and reload it from the database

        Raises:
            RunNotFound: unknown run
        """
        if self.cache is not None:
            if refresh:
                self.cache.invalidate(run_id)
            else:
                cached = self.cache.load_summary(run_id)
                if cached is not None:
                    return cached

        summary = self.store.get_run(run_id)
        if summary is None:
            raise RunNotFound(f"Run {run_id} not found", run_id=run_id, stage="status")

        if self.cache is not None:
            self.cache.save_summary(summary)
        return summary

    def render_report(self, run_id: str) -> str:
        summary = self.get_run_status(run_id)
        return render_report(
            summary,
            self.store.list_anomalies(run_id),
            self.store.list_hypotheses(run_id),
            self.store.list_tickets_for_run(run_id),
        )

    # ========================================
    # Tickets
    # ========================================

    def list_tickets(
        self, site_id: str | None = None, status: TicketStatus | str | None = None
    ) -> list[Ticket]:
        return self.store.list_tickets(site_id, TicketStatus(status) if status else None)

    def update_ticket_status(self, ticket_id: str, status: TicketStatus | str) -> Ticket:
        return self.tickets.update_status(ticket_id, TicketStatus(status))

    # ========================================
    # Fix plans
    # ========================================

    def generate_fix_plan(
        self,
        site_id: str,
        topic: str,
        current_metrics: list[AnomalyRecord] | None = None,
    ) -> FixPlan:
        return self.plans.generate_plan(site_id, topic, current_metrics)

    def execute_fix_plan(
        self, plan_id: str, max_items: int, override_reason: str | None = None
    ) -> ExecutionResult:
        return self.plans.execute_plan(plan_id, max_items, override_reason)

    def reject_fix_plan(self, plan_id: str, reason: str) -> FixPlan:
        return self.plans.reject_plan(plan_id, reason)

    def close(self):
        if hasattr(self.store, "close"):
            self.store.close()
