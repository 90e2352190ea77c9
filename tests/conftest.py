"""
Pytest configuration and shared fixtures.

The in-memory store mirrors the atomic guarantees of DiagnosticsDatabase
(insert-or-refresh tickets, one pending plan per topic, conditional plan
transitions) under a lock, so engine behavior can be tested without
PostgreSQL.
"""

import threading
import time
from dataclasses import replace
from datetime import UTC, date, datetime, timedelta

import pytest

from src.diagnostics.config import DiagnosticsConfig
from src.diagnostics.errors import PendingPlanExists
from src.diagnostics.models import (
    ACTIVE_TICKET_STATUSES,
    AnomalyRecord,
    ChangeResult,
    CorroborationResult,
    Direction,
    MetricSample,
    PlanStatus,
    RunStatus,
    Severity,
)

SITE_ID = "acme.com"
RUN_DATE = date(2026, 3, 16)
END_DATE = date(2026, 3, 15)  # run date minus one day of data lag

# 14 baseline days: mean 100.0, population stddev ~1.647
BASELINE = [100, 102, 98, 101, 99, 100, 103, 97, 100, 101, 99, 100, 102, 98]
STABLE = [100, 101, 99]  # z = 0
SEVERE_DROP = [40, 42, 41]  # z ~ -35.8
MODERATE_DROP = [96.0, 95.8, 95.8]  # z ~ -2.51
SEVERE_RISE = [160, 162, 161]  # z ~ +37


def make_samples(site_id, source, metric_key, values, end_date=END_DATE):
    """Consecutive daily samples whose last value falls on ``end_date``"""
    start = end_date - timedelta(days=len(values) - 1)
    return [
        MetricSample(
            site_id, source, metric_key, start + timedelta(days=i), float(v) if v is not None else None
        )
        for i, v in enumerate(values)
    ]


class FixedClock:
    """Controllable clock injected wherever the engine reads the time"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeMetricSource:
    """MetricSource serving canned series; fails or stalls on demand"""

    def __init__(self, source, series=None, error=None, delay=0.0, failing_metrics=()):
        self.source = source
        self.series = series or {}
        self.error = error
        self.delay = delay
        self.failing_metrics = set(failing_metrics)
        self.calls = []

    def fetch_daily(self, site_id, metric_key, start_date, end_date):
        self.calls.append((site_id, metric_key, start_date, end_date))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None or metric_key in self.failing_metrics:
            raise ConnectionError(self.error or f"{self.source} unavailable")
        values = self.series.get(metric_key, BASELINE + STABLE)
        return [
            s
            for s in make_samples(site_id, self.source, metric_key, values)
            if start_date <= s.date <= end_date
        ]


class FakeCheck:
    def __init__(self, degraded=False, details="", error=None):
        self.degraded = degraded
        self.details = details
        self.error = error
        self.calls = []

    def run(self, site_id, topic, window):
        self.calls.append((site_id, topic, window))
        if self.error is not None:
            raise self.error
        return CorroborationResult(degraded=self.degraded, details=self.details)


class FakeKnowledgeStore:
    def __init__(self, entries=None, fail_query=False, fail_write=False):
        self.entries = list(entries or [])
        self.fail_query = fail_query
        self.fail_write = fail_write
        self.written = []

    def query(self, site_id, topic, filters=None, limit=20):
        if self.fail_query:
            raise ConnectionError("knowledge store down")
        matching = [e for e in self.entries if e.site_id == site_id and e.topic == topic]
        return matching[:limit]

    def write(self, entry):
        if self.fail_write:
            raise ConnectionError("knowledge store down")
        self.written.append(entry)
        return True


class FakeExecutor:
    def __init__(self, applied=True, error=None, reference_id="chg-1"):
        self.applied = applied
        self.error = error
        self.reference_id = reference_id
        self.calls = []

    def apply(self, plan_id, items):
        self.calls.append((plan_id, list(items)))
        if self.error is not None:
            raise self.error
        return ChangeResult(
            applied=self.applied,
            reference_id=self.reference_id if self.applied else None,
            details="ok" if self.applied else "refused",
        )


class FakeStore:
    """In-memory replacement for DiagnosticsDatabase"""

    def __init__(self):
        self._lock = threading.Lock()
        self.runs = {}
        self.anomalies = {}
        self.hypotheses = {}
        self.tickets = {}
        self.plans = {}
        self.fail_ticket_writes = 0

    # Runs
    def create_run(self, run):
        with self._lock:
            self.runs[run.run_id] = replace(run)
        return run

    def update_run(self, run):
        with self._lock:
            self.runs[run.run_id] = replace(run)
        return True

    def get_run(self, run_id):
        run = self.runs.get(run_id)
        return replace(run) if run else None

    def find_run_for_day(self, site_id, run_date, statuses):
        matching = [
            r
            for r in self.runs.values()
            if r.site_id == site_id and r.run_date == run_date and r.status in statuses
        ]
        return replace(matching[-1]) if matching else None

    def get_latest_run(self, site_id):
        matching = [
            r
            for r in self.runs.values()
            if r.site_id == site_id and r.status in (RunStatus.COMPLETED, RunStatus.PARTIAL)
        ]
        return replace(matching[-1]) if matching else None

    # Anomalies and hypotheses
    def insert_anomaly(self, anomaly):
        with self._lock:
            self.anomalies.setdefault(anomaly.run_id, []).append(anomaly)
        return True

    def list_anomalies(self, run_id):
        return list(self.anomalies.get(run_id, []))

    def insert_hypotheses(self, hypotheses):
        for h in hypotheses:
            self.hypotheses.setdefault(h.run_id, []).append(h)
        return len(hypotheses)

    def list_hypotheses(self, run_id):
        return sorted(self.hypotheses.get(run_id, []), key=lambda h: h.rank)

    # Tickets
    def upsert_ticket(self, ticket):
        with self._lock:
            if self.fail_ticket_writes:
                self.fail_ticket_writes -= 1
                raise RuntimeError("write failed")
            for existing in self.tickets.values():
                if (
                    existing.site_id == ticket.site_id
                    and existing.fingerprint == ticket.fingerprint
                    and existing.status in ACTIVE_TICKET_STATUSES
                ):
                    refreshed = replace(
                        existing,
                        last_seen_at=ticket.last_seen_at,
                        last_seen_run_id=ticket.last_seen_run_id,
                        evidence=ticket.evidence,
                        updated_at=ticket.updated_at,
                        occurrences=existing.occurrences + 1,
                    )
                    self.tickets[existing.ticket_id] = refreshed
                    return replace(refreshed), False
            self.tickets[ticket.ticket_id] = replace(ticket)
            return replace(ticket), True

    def get_ticket(self, ticket_id):
        ticket = self.tickets.get(ticket_id)
        return replace(ticket) if ticket else None

    def list_tickets(self, site_id=None, status=None, limit=100):
        statuses = (status,) if status else ACTIVE_TICKET_STATUSES
        return [
            replace(t)
            for t in self.tickets.values()
            if (site_id is None or t.site_id == site_id) and t.status in statuses
        ][:limit]

    def list_tickets_for_run(self, run_id):
        return [replace(t) for t in self.tickets.values() if t.last_seen_run_id == run_id]

    def update_ticket_status(self, ticket_id, from_status, to_status, updated_at):
        with self._lock:
            ticket = self.tickets.get(ticket_id)
            if ticket is None or ticket.status != from_status:
                return None
            updated = replace(ticket, status=to_status, updated_at=updated_at)
            self.tickets[ticket_id] = updated
            return replace(updated)

    # Fix plans
    def insert_pending_plan(self, plan):
        with self._lock:
            for existing in self.plans.values():
                if (
                    existing.site_id == plan.site_id
                    and existing.topic == plan.topic
                    and existing.status == PlanStatus.PENDING
                ):
                    return replace(existing)
            self.plans[plan.plan_id] = replace(plan)
            return replace(plan)

    def get_plan(self, plan_id):
        plan = self.plans.get(plan_id)
        return replace(plan) if plan else None

    def get_pending_plan(self, site_id, topic):
        for plan in self.plans.values():
            if plan.site_id == site_id and plan.topic == topic and plan.status == PlanStatus.PENDING:
                return replace(plan)
        return None

    def get_last_executed_plan(self, site_id, topic):
        executed = [
            p
            for p in self.plans.values()
            if p.site_id == site_id and p.topic == topic and p.status == PlanStatus.EXECUTED
        ]
        if not executed:
            return None
        return replace(max(executed, key=lambda p: p.executed_at))

    def transition_plan(self, plan_id, from_status, to_status, **fields):
        with self._lock:
            plan = self.plans.get(plan_id)
            if plan is None or plan.status != from_status:
                return None
            if to_status == PlanStatus.PENDING and any(
                other.plan_id != plan_id
                and other.site_id == plan.site_id
                and other.topic == plan.topic
                and other.status == PlanStatus.PENDING
                for other in self.plans.values()
            ):
                raise PendingPlanExists("pending plan exists", plan_id=plan_id, stage="transition")
            updated = replace(plan, status=to_status, **fields)
            self.plans[plan_id] = updated
            return replace(updated)

    def close(self):
        pass


# ========================================
# Fixtures
# ========================================


@pytest.fixture
def config():
    """Default thresholds with short timeouts for fast tests."""
    return DiagnosticsConfig(
        fetch_timeout_seconds=2.0,
        corroboration_timeout_seconds=1.0,
        knowledge_timeout_seconds=1.0,
        executor_timeout_seconds=1.0,
    )


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 3, 16, 8, 0, tzinfo=UTC))


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def make_sources():
    """Factory: sources for every catalog source, with per-metric overrides.

    ``overrides`` maps "source.metric" to the current-window values appended to
    the shared baseline; ``failing`` lists sources that raise on every fetch.
    """

    def _make(overrides=None, failing=(), delay=None):
        by_source = {}
        for key, current in (overrides or {}).items():
            source, metric_key = key.split(".", 1)
            by_source.setdefault(source, {})[metric_key] = BASELINE + list(current)
        return {
            source: FakeMetricSource(
                source,
                series=by_source.get(source),
                error=f"{source} API error" if source in failing else None,
                delay=(delay or {}).get(source, 0.0),
            )
            for source in ("ads", "ga4", "gsc", "uptime")
        }

    return _make


def make_anomaly(key, severity=Severity.SEVERE, z_score=-5.0, run_id="run-1", site_id=SITE_ID):
    """Anomaly record for ``source.metric``; negative z means degradation"""
    source, metric_key = key.split(".", 1)
    return AnomalyRecord(
        anomaly_id=f"{run_id}:{key}",
        run_id=run_id,
        site_id=site_id,
        source=source,
        metric_key=metric_key,
        current_value=60.0,
        baseline_mean=100.0,
        baseline_stddev=8.0,
        z_score=z_score,
        delta_pct=-40.0 if z_score < 0 else 40.0,
        severity=severity,
        direction=Direction.DEGRADATION if z_score < 0 else Direction.IMPROVEMENT,
        start_date=date(2026, 3, 13),
        created_at=datetime(2026, 3, 16, 8, 0, tzinfo=UTC),
    )
