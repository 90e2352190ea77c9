"""
PostgreSQL operations for the diagnostics engine.

Handles:
- Schema creation (tables and the partial unique indexes that make ticket
  deduplication and "one pending plan per topic" atomic)
- Daily metric samples
- Runs, anomalies and hypotheses
- Tickets (insert-or-refresh by fingerprint)
- Fix plans (conditional status transitions)
"""

from datetime import date, datetime

import psycopg2.extras
import structlog

from src.core.database import PostgresConnection

from .config import DiagnosticsConfig
from .errors import InvalidState, PendingPlanExists
from .models import (
    ACTIVE_TICKET_STATUSES,
    AnomalyRecord,
    FixPlan,
    Hypothesis,
    MetricSample,
    PlanStatus,
    RunStatus,
    RunSummary,
    Ticket,
    TicketStatus,
)

logger = structlog.get_logger(__name__)


SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS metric_samples (
        site_id TEXT NOT NULL,
        source TEXT NOT NULL,
        metric_key TEXT NOT NULL,
        date DATE NOT NULL,
        value DOUBLE PRECISION,
        PRIMARY KEY (site_id, source, metric_key, date)
    );

    CREATE TABLE IF NOT EXISTS diagnostic_runs (
        run_id UUID PRIMARY KEY,
        site_id TEXT NOT NULL,
        run_date DATE NOT NULL,
        status TEXT NOT NULL,
        phase TEXT NOT NULL,
        forced BOOLEAN NOT NULL DEFAULT FALSE,
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        source_statuses JSONB NOT NULL DEFAULT '{}',
        source_errors JSONB NOT NULL DEFAULT '{}',
        anomaly_count INTEGER NOT NULL DEFAULT 0,
        primary_hypothesis TEXT,
        primary_confidence TEXT,
        degraded_message TEXT,
        tickets_created INTEGER NOT NULL DEFAULT 0,
        tickets_refreshed INTEGER NOT NULL DEFAULT 0,
        tickets_failed INTEGER NOT NULL DEFAULT 0,
        error TEXT
    );
    CREATE INDEX IF NOT EXISTS diagnostic_runs_site_day_idx
        ON diagnostic_runs (site_id, run_date);

    CREATE TABLE IF NOT EXISTS anomalies (
        anomaly_id UUID PRIMARY KEY,
        run_id UUID NOT NULL REFERENCES diagnostic_runs (run_id),
        site_id TEXT NOT NULL,
        source TEXT NOT NULL,
        metric_key TEXT NOT NULL,
        current_value DOUBLE PRECISION NOT NULL,
        baseline_mean DOUBLE PRECISION NOT NULL,
        baseline_stddev DOUBLE PRECISION NOT NULL,
        z_score DOUBLE PRECISION NOT NULL,
        delta_pct DOUBLE PRECISION,
        severity TEXT NOT NULL,
        direction TEXT NOT NULL,
        start_date DATE NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    );
    CREATE INDEX IF NOT EXISTS anomalies_run_idx ON anomalies (run_id);

    CREATE TABLE IF NOT EXISTS hypotheses (
        run_id UUID NOT NULL REFERENCES diagnostic_runs (run_id),
        rank INTEGER NOT NULL,
        hypothesis_key TEXT NOT NULL,
        confidence TEXT NOT NULL,
        summary TEXT,
        supporting_anomaly_ids JSONB NOT NULL DEFAULT '[]',
        missing_data JSONB NOT NULL DEFAULT '[]',
        evidence JSONB NOT NULL DEFAULT '[]',
        degraded BOOLEAN NOT NULL DEFAULT FALSE,
        PRIMARY KEY (run_id, rank)
    );

    CREATE TABLE IF NOT EXISTS tickets (
        ticket_id UUID PRIMARY KEY,
        run_id UUID NOT NULL,
        site_id TEXT NOT NULL,
        hypothesis_key TEXT,
        issue_type TEXT NOT NULL,
        target TEXT NOT NULL,
        fingerprint TEXT NOT NULL,
        title TEXT NOT NULL,
        owner TEXT NOT NULL,
        priority TEXT NOT NULL,
        status TEXT NOT NULL,
        steps JSONB NOT NULL DEFAULT '[]',
        evidence JSONB NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        last_seen_at TIMESTAMPTZ NOT NULL,
        last_seen_run_id UUID,
        occurrences INTEGER NOT NULL DEFAULT 1
    );
    CREATE UNIQUE INDEX IF NOT EXISTS tickets_active_fingerprint_idx
        ON tickets (site_id, fingerprint) WHERE status IN ('open', 'in_progress');

    CREATE TABLE IF NOT EXISTS fix_plans (
        plan_id UUID PRIMARY KEY,
        site_id TEXT NOT NULL,
        topic TEXT NOT NULL,
        generated_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        cooldown_allowed BOOLEAN NOT NULL,
        cooldown_next_allowed_at TIMESTAMPTZ,
        cooldown_reason TEXT,
        items JSONB NOT NULL DEFAULT '[]',
        status TEXT NOT NULL,
        evidence JSONB NOT NULL DEFAULT '{}',
        knowledge_context JSONB NOT NULL DEFAULT '[]',
        knowledge_degraded BOOLEAN NOT NULL DEFAULT FALSE,
        executed_at TIMESTAMPTZ,
        execution_reference TEXT,
        override_reason TEXT,
        rejection_reason TEXT
    );
    CREATE UNIQUE INDEX IF NOT EXISTS fix_plans_pending_topic_idx
        ON fix_plans (site_id, topic) WHERE status = 'pending';
    CREATE INDEX IF NOT EXISTS fix_plans_executed_idx
        ON fix_plans (site_id, topic, executed_at) WHERE status = 'executed';

    CREATE TABLE IF NOT EXISTS knowledge_entries (
        entry_id UUID PRIMARY KEY,
        site_id TEXT NOT NULL,
        type TEXT NOT NULL,
        topic TEXT NOT NULL,
        title TEXT NOT NULL,
        evidence JSONB NOT NULL DEFAULT '{}',
        decision TEXT,
        outcome TEXT,
        tags JSONB NOT NULL DEFAULT '[]',
        created_at TIMESTAMPTZ NOT NULL
    );
    CREATE INDEX IF NOT EXISTS knowledge_entries_topic_idx
        ON knowledge_entries (site_id, topic, created_at DESC);
"""

# Columns a plan transition may set besides status
PLAN_TRANSITION_FIELDS = ("executed_at", "override_reason", "execution_reference", "rejection_reason")


class DiagnosticsDatabase(PostgresConnection):
    """Database operations for the diagnostics engine"""

    def __init__(self, config: DiagnosticsConfig):
        super().__init__(
            host=config.postgres_host,
            port=config.postgres_port,
            database=config.postgres_database,
            user=config.postgres_user,
            password=config.postgres_password,
        )
        self.config = config

    def ensure_schema(self):
        """Create tables and indexes if they do not exist"""
        with self.get_cursor() as cursor:
            cursor.execute(SCHEMA_SQL)
        logger.info("Diagnostics schema ensured", database=self.database)

    # ========================================
    # Metric samples
    # ========================================

    def insert_samples(self, samples: list[MetricSample]) -> int:
        """Upsert daily samples, returning how many were written"""
        if not samples:
            return 0

        query = """
            INSERT INTO metric_samples (site_id, source, metric_key, date, value)
            VALUES (%(site_id)s, %(source)s, %(metric_key)s, %(date)s, %(value)s)
            ON CONFLICT (site_id, source, metric_key, date)
            DO UPDATE SET value = EXCLUDED.value
        """
        rows = [
            {
                "site_id": s.site_id,
                "source": s.source,
                "metric_key": s.metric_key,
                "date": s.date,
                "value": s.value,
            }
            for s in samples
        ]
        try:
            with self.get_cursor() as cursor:
                psycopg2.extras.execute_batch(cursor, query, rows, page_size=100)
            return len(rows)
        except Exception as e:
            logger.error("Failed to insert metric samples", count=len(rows), error=str(e))
            return 0

    def query_samples(
        self,
        site_id: str,
        source: str,
        metric_key: str,
        start_date: date,
        end_date: date,
    ) -> list[MetricSample]:
        """Daily samples of one metric in [start_date, end_date]"""
        rows = self.fetch_all(
            """
            SELECT site_id, source, metric_key, date, value
            FROM metric_samples
            WHERE site_id = %(site_id)s
              AND source = %(source)s
              AND metric_key = %(metric_key)s
              AND date BETWEEN %(start_date)s AND %(end_date)s
              AND value IS NOT NULL
            ORDER BY date
            """,
            {
                "site_id": site_id,
                "source": source,
                "metric_key": metric_key,
                "start_date": start_date,
                "end_date": end_date,
            },
        )
        logger.debug(
            "Queried metric samples",
            site_id=site_id,
            source=source,
            metric=metric_key,
            rows=len(rows),
        )
        return [
            MetricSample(
                site_id=row["site_id"],
                source=row["source"],
                metric_key=row["metric_key"],
                date=row["date"],
                value=float(row["value"]),
            )
            for row in rows
        ]

    # ========================================
    # Runs
    # ========================================

    def create_run(self, run: RunSummary) -> RunSummary:
        with self.get_cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO diagnostic_runs (
                    run_id, site_id, run_date, status, phase, forced, started_at,
                    completed_at, source_statuses, source_errors, anomaly_count,
                    primary_hypothesis, primary_confidence, degraded_message,
                    tickets_created, tickets_refreshed, tickets_failed, error
                ) VALUES (
                    %(run_id)s, %(site_id)s, %(run_date)s, %(status)s, %(phase)s, %(forced)s,
                    %(started_at)s, %(completed_at)s, %(source_statuses)s, %(source_errors)s,
                    %(anomaly_count)s, %(primary_hypothesis)s, %(primary_confidence)s,
                    %(degraded_message)s, %(tickets_created)s, %(tickets_refreshed)s,
                    %(tickets_failed)s, %(error)s
                )
                """,
                run.to_db_dict(),
            )
        logger.debug("Run created", run_id=run.run_id, site_id=run.site_id)
        return run

    def update_run(self, run: RunSummary) -> bool:
        """Persist the mutable state of a run"""
        with self.get_cursor() as cursor:
            cursor.execute(
                """
                UPDATE diagnostic_runs SET
                    status = %(status)s,
                    phase = %(phase)s,
                    completed_at = %(completed_at)s,
                    source_statuses = %(source_statuses)s,
                    source_errors = %(source_errors)s,
                    anomaly_count = %(anomaly_count)s,
                    primary_hypothesis = %(primary_hypothesis)s,
                    primary_confidence = %(primary_confidence)s,
                    degraded_message = %(degraded_message)s,
                    tickets_created = %(tickets_created)s,
                    tickets_refreshed = %(tickets_refreshed)s,
                    tickets_failed = %(tickets_failed)s,
                    error = %(error)s
                WHERE run_id = %(run_id)s
                """,
                run.to_db_dict(),
            )
            return cursor.rowcount == 1

    def get_run(self, run_id: str) -> RunSummary | None:
        row = self.fetch_one("SELECT * FROM diagnostic_runs WHERE run_id = %(run_id)s", {"run_id": run_id})
        return RunSummary.from_row(row) if row else None

    def find_run_for_day(
        self, site_id: str, run_date: date, statuses: tuple[RunStatus, ...]
    ) -> RunSummary | None:
        """Most recent run of a site for a day in one of ``statuses``"""
        row = self.fetch_one(
            """
            SELECT * FROM diagnostic_runs
            WHERE site_id = %(site_id)s
              AND run_date = %(run_date)s
              AND status = ANY(%(statuses)s)
            ORDER BY started_at DESC
            LIMIT 1
            """,
            {"site_id": site_id, "run_date": run_date, "statuses": [s.value for s in statuses]},
        )
        return RunSummary.from_row(row) if row else None

    def get_latest_run(self, site_id: str) -> RunSummary | None:
        """Latest completed or partial run of a site"""
        row = self.fetch_one(
            """
            SELECT * FROM diagnostic_runs
            WHERE site_id = %(site_id)s AND status IN ('completed', 'partial')
            ORDER BY started_at DESC
            LIMIT 1
            """,
            {"site_id": site_id},
        )
        return RunSummary.from_row(row) if row else None

    # ========================================
    # Anomalies and hypotheses
    # ========================================

    def insert_anomaly(self, anomaly: AnomalyRecord) -> bool:
        """Insert a detected anomaly

        Returns:
            True if successful, False otherwise
        """
        query = """
            INSERT INTO anomalies (
                anomaly_id, run_id, site_id, source, metric_key, current_value,
                baseline_mean, baseline_stddev, z_score, delta_pct, severity,
                direction, start_date, created_at
            ) VALUES (
                %(anomaly_id)s, %(run_id)s, %(site_id)s, %(source)s, %(metric_key)s,
                %(current_value)s, %(baseline_mean)s, %(baseline_stddev)s, %(z_score)s,
                %(delta_pct)s, %(severity)s, %(direction)s, %(start_date)s, %(created_at)s
            )
        """
        try:
            with self.get_cursor() as cursor:
                cursor.execute(query, anomaly.to_db_dict())
            return True
        except Exception as e:
            logger.error(
                "Failed to insert anomaly",
                run_id=anomaly.run_id,
                metric=anomaly.qualified_key,
                error=str(e),
            )
            return False

    def list_anomalies(self, run_id: str) -> list[AnomalyRecord]:
        rows = self.fetch_all(
            "SELECT * FROM anomalies WHERE run_id = %(run_id)s ORDER BY source, metric_key",
            {"run_id": run_id},
        )
        return [AnomalyRecord.from_row(row) for row in rows]

    def insert_hypotheses(self, hypotheses: list[Hypothesis]) -> int:
        if not hypotheses:
            return 0

        query = """
            INSERT INTO hypotheses (
                run_id, rank, hypothesis_key, confidence, summary,
                supporting_anomaly_ids, missing_data, evidence, degraded
            ) VALUES (
                %(run_id)s, %(rank)s, %(hypothesis_key)s, %(confidence)s, %(summary)s,
                %(supporting_anomaly_ids)s, %(missing_data)s, %(evidence)s, %(degraded)s
            )
        """
        with self.get_cursor() as cursor:
            psycopg2.extras.execute_batch(cursor, query, [h.to_db_dict() for h in hypotheses])
        return len(hypotheses)

    def list_hypotheses(self, run_id: str) -> list[Hypothesis]:
        rows = self.fetch_all(
            "SELECT * FROM hypotheses WHERE run_id = %(run_id)s ORDER BY rank",
            {"run_id": run_id},
        )
        return [Hypothesis.from_row(row) for row in rows]

    # ========================================
    # Tickets
    # ========================================

    def upsert_ticket(self, ticket: Ticket) -> tuple[Ticket, bool]:
        """Insert a ticket or refresh the active one with the same fingerprint

        Returns:
            (stored ticket, True if it was created)
        """
        row = self.fetch_one(
            """
            INSERT INTO tickets (
                ticket_id, run_id, site_id, hypothesis_key, issue_type, target,
                fingerprint, title, owner, priority, status, steps, evidence,
                created_at, updated_at, last_seen_at, last_seen_run_id, occurrences
            ) VALUES (
                %(ticket_id)s, %(run_id)s, %(site_id)s, %(hypothesis_key)s, %(issue_type)s,
                %(target)s, %(fingerprint)s, %(title)s, %(owner)s, %(priority)s, %(status)s,
                %(steps)s, %(evidence)s, %(created_at)s, %(updated_at)s, %(last_seen_at)s,
                %(last_seen_run_id)s, %(occurrences)s
            )
            ON CONFLICT (site_id, fingerprint) WHERE status IN ('open', 'in_progress')
            DO UPDATE SET
                last_seen_at = EXCLUDED.last_seen_at,
                last_seen_run_id = EXCLUDED.last_seen_run_id,
                evidence = EXCLUDED.evidence,
                updated_at = EXCLUDED.updated_at,
                occurrences = tickets.occurrences + 1
            RETURNING *, (xmax = 0) AS inserted
            """,
            ticket.to_db_dict(),
        )
        return Ticket.from_row(row), bool(row["inserted"])

    def get_ticket(self, ticket_id: str) -> Ticket | None:
        row = self.fetch_one("SELECT * FROM tickets WHERE ticket_id = %(ticket_id)s", {"ticket_id": ticket_id})
        return Ticket.from_row(row) if row else None

    def list_tickets(
        self,
        site_id: str | None = None,
        status: TicketStatus | None = None,
        limit: int = 100,
    ) -> list[Ticket]:
        """Tickets filtered by site and status; active tickets when status is None"""
        statuses = [status.value] if status else [s.value for s in ACTIVE_TICKET_STATUSES]
        rows = self.fetch_all(
            """
            SELECT * FROM tickets
            WHERE (%(site_id)s IS NULL OR site_id = %(site_id)s)
              AND status = ANY(%(statuses)s)
            ORDER BY priority, last_seen_at DESC
            LIMIT %(limit)s
            """,
            {"site_id": site_id, "statuses": statuses, "limit": limit},
        )
        return [Ticket.from_row(row) for row in rows]

    def list_tickets_for_run(self, run_id: str) -> list[Ticket]:
        """Tickets created or refreshed by a run"""
        rows = self.fetch_all(
            "SELECT * FROM tickets WHERE last_seen_run_id = %(run_id)s ORDER BY priority, title",
            {"run_id": run_id},
        )
        return [Ticket.from_row(row) for row in rows]

    def update_ticket_status(
        self,
        ticket_id: str,
        from_status: TicketStatus,
        to_status: TicketStatus,
        updated_at: datetime,
    ) -> Ticket | None:
        """Conditional status change; None if the ticket is no longer in ``from_status``"""
        row = self.fetch_one(
            """
            UPDATE tickets SET status = %(to_status)s, updated_at = %(updated_at)s
            WHERE ticket_id = %(ticket_id)s AND status = %(from_status)s
            RETURNING *
            """,
            {
                "ticket_id": ticket_id,
                "from_status": from_status.value,
                "to_status": to_status.value,
                "updated_at": updated_at,
            },
        )
        return Ticket.from_row(row) if row else None

    # ========================================
    # Fix plans
    # ========================================

    def insert_pending_plan(self, plan: FixPlan) -> FixPlan:
        """Insert a pending plan; a concurrent pending plan for the topic wins"""
        row = self.fetch_one(
            """
            INSERT INTO fix_plans (
                plan_id, site_id, topic, generated_at, expires_at, cooldown_allowed,
                cooldown_next_allowed_at, cooldown_reason, items, status, evidence,
                knowledge_context, knowledge_degraded, executed_at, execution_reference,
                override_reason, rejection_reason
            ) VALUES (
                %(plan_id)s, %(site_id)s, %(topic)s, %(generated_at)s, %(expires_at)s,
                %(cooldown_allowed)s, %(cooldown_next_allowed_at)s, %(cooldown_reason)s,
                %(items)s, %(status)s, %(evidence)s, %(knowledge_context)s,
                %(knowledge_degraded)s, %(executed_at)s, %(execution_reference)s,
                %(override_reason)s, %(rejection_reason)s
            )
            ON CONFLICT (site_id, topic) WHERE status = 'pending' DO NOTHING
            RETURNING *
            """,
            plan.to_db_dict(),
        )
        if row is not None:
            return FixPlan.from_row(row)

        winner = self.get_pending_plan(plan.site_id, plan.topic)
        if winner is None:
            raise InvalidState(
                f"Pending plan for {plan.topic} changed concurrently",
                plan_id=plan.plan_id,
                stage="generate",
            )
        return winner

    def get_plan(self, plan_id: str) -> FixPlan | None:
        row = self.fetch_one("SELECT * FROM fix_plans WHERE plan_id = %(plan_id)s", {"plan_id": plan_id})
        return FixPlan.from_row(row) if row else None

    def get_pending_plan(self, site_id: str, topic: str) -> FixPlan | None:
        row = self.fetch_one(
            """
            SELECT * FROM fix_plans
            WHERE site_id = %(site_id)s AND topic = %(topic)s AND status = 'pending'
            """,
            {"site_id": site_id, "topic": topic},
        )
        return FixPlan.from_row(row) if row else None

    def get_last_executed_plan(self, site_id: str, topic: str) -> FixPlan | None:
        row = self.fetch_one(
            """
            SELECT * FROM fix_plans
            WHERE site_id = %(site_id)s AND topic = %(topic)s AND status = 'executed'
            ORDER BY executed_at DESC
            LIMIT 1
            """,
            {"site_id": site_id, "topic": topic},
        )
        return FixPlan.from_row(row) if row else None

    def transition_plan(
        self,
        plan_id: str,
        from_status: PlanStatus,
        to_status: PlanStatus,
        **fields,
    ) -> FixPlan | None:
        """Conditional status change; None if the plan is no longer in ``from_status``

        Args:
            plan_id: Plan identifier
            from_status: Status the plan must currently have
            to_status: New status
            **fields: Extra columns to set (see PLAN_TRANSITION_FIELDS)

        Raises:
            PendingPlanExists: moving to pending would give the topic a second pending plan
        """
        unknown = set(fields) - set(PLAN_TRANSITION_FIELDS)
        if unknown:
            raise ValueError(f"Cannot set plan fields: {sorted(unknown)}")

        assignments = ["status = %(to_status)s"]
        assignments.extend(f"{name} = %({name})s" for name in fields)
        params = {
            "plan_id": plan_id,
            "from_status": from_status.value,
            "to_status": to_status.value,
            **fields,
        }
        try:
            row = self.fetch_one(
                f"""
                UPDATE fix_plans SET {", ".join(assignments)}
                WHERE plan_id = %(plan_id)s AND status = %(from_status)s
                RETURNING *
                """,
                params,
            )
        except psycopg2.IntegrityError as e:
            raise PendingPlanExists(
                f"Another pending plan exists for the topic of {plan_id}",
                plan_id=plan_id,
                stage="transition",
            ) from e
        if row is None:
            logger.debug(
                "Plan transition skipped",
                plan_id=plan_id,
                from_status=from_status.value,
                to_status=to_status.value,
            )
            return None
        return FixPlan.from_row(row)
