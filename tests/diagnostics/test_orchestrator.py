"""
End-to-end tests for the run state machine, from fetch to tickets.
"""

import threading
from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from src.diagnostics.errors import AllSourcesFailed
from src.diagnostics.models import (
    Confidence,
    KnowledgeType,
    Owner,
    Priority,
    RunPhase,
    RunStatus,
    RunSummary,
)
from src.diagnostics.orchestrator import RunOrchestrator
from tests.conftest import (
    END_DATE,
    RUN_DATE,
    SEVERE_DROP,
    SITE_ID,
    FakeKnowledgeStore,
)


@pytest.fixture
def orchestrator_for(config, store, clock, make_sources):
    """Factory building an orchestrator over fake sources"""

    def _make(overrides=None, failing=(), delay=None, config_overrides=None, **kwargs):
        cfg = replace(config, **(config_overrides or {}))
        sources = make_sources(overrides, failing=failing, delay=delay)
        return RunOrchestrator(cfg, store, sources, clock=clock, **kwargs), sources

    return _make


class TestRunScenarios:
    """Full runs over canned metric series."""

    def test_tracking_gap(self, orchestrator_for, store):
        """Sessions collapse with search stable: high-confidence tracking gap, P0 DEV ticket."""
        orchestrator, _ = orchestrator_for({"ga4.organic_sessions": SEVERE_DROP})

        run = orchestrator.start_run(SITE_ID)

        assert run.status == RunStatus.COMPLETED
        assert run.phase == RunPhase.DONE
        assert run.run_date == RUN_DATE
        assert run.anomaly_count == 1
        assert run.primary_hypothesis == "tracking_attribution_gap"
        assert run.primary_confidence == Confidence.HIGH.value
        assert run.degraded_message is None
        assert run.tickets_created == 1
        assert set(run.source_statuses.values()) == {"ok"}

        tickets = store.list_tickets_for_run(run.run_id)
        assert len(tickets) == 1
        assert tickets[0].priority == Priority.P0
        assert tickets[0].owner == Owner.DEV
        assert tickets[0].hypothesis_key == "tracking_attribution_gap"

        assert store.get_run(run.run_id).status == RunStatus.COMPLETED
        assert [a.qualified_key for a in store.list_anomalies(run.run_id)] == ["ga4.organic_sessions"]
        assert store.list_hypotheses(run.run_id)[0].rank == 1

    def test_fetch_window_ends_at_data_lag(self, orchestrator_for):
        orchestrator, sources = orchestrator_for()

        orchestrator.start_run(SITE_ID)

        _, _, start_date, end_date = sources["gsc"].calls[0]
        assert end_date == END_DATE
        assert (end_date - start_date).days == 16

    def test_failed_dependency_gives_partial_degraded_run(self, orchestrator_for):
        """With gsc down the tracking gap cannot be confirmed."""
        orchestrator, _ = orchestrator_for({"ga4.organic_sessions": SEVERE_DROP}, failing=("gsc",))

        run = orchestrator.start_run(SITE_ID)

        assert run.status == RunStatus.PARTIAL
        assert run.primary_hypothesis == "tracking_attribution_gap"
        assert run.primary_confidence == Confidence.MEDIUM.value
        assert run.degraded_message == "degraded confidence - missing: [gsc]"
        assert run.failed_sources == ["gsc"]
        assert "gsc API error" in run.source_errors["gsc"]

    def test_no_anomalies(self, orchestrator_for, store):
        orchestrator, _ = orchestrator_for()

        run = orchestrator.start_run(SITE_ID)

        assert run.status == RunStatus.COMPLETED
        assert run.anomaly_count == 0
        assert run.primary_hypothesis == "no_significant_change"
        assert run.ticket_count == 0
        assert store.tickets == {}

    def test_unexplained_anomaly_is_inconclusive(self, orchestrator_for, store):
        orchestrator, _ = orchestrator_for({"ads.conversions": SEVERE_DROP})

        run = orchestrator.start_run(SITE_ID)

        assert run.primary_hypothesis == "inconclusive"
        assert run.primary_confidence == Confidence.LOW.value
        tickets = store.list_tickets_for_run(run.run_id)
        assert [t.target for t in tickets] == ["ads.conversions"]

    def test_all_sources_failed(self, orchestrator_for, store):
        orchestrator, _ = orchestrator_for(failing=("ads", "ga4", "gsc", "uptime"))

        with pytest.raises(AllSourcesFailed) as exc_info:
            orchestrator.start_run(SITE_ID)

        run = store.get_run(exc_info.value.run_id)
        assert run.status == RunStatus.FAILED
        assert run.phase == RunPhase.DONE
        assert set(exc_info.value.failures) == {"ads", "ga4", "gsc", "uptime"}
        assert store.hypotheses == {}

    def test_missing_source_counts_as_failed(self, config, store, clock, make_sources):
        sources = make_sources({"ga4.organic_sessions": SEVERE_DROP})
        del sources["ads"]

        run = RunOrchestrator(config, store, sources, clock=clock).start_run(SITE_ID)

        assert run.status == RunStatus.PARTIAL
        assert run.source_errors["ads"].endswith("no metric source configured")

    def test_slow_source_only_fails_itself(self, orchestrator_for):
        orchestrator, _ = orchestrator_for(
            {"ga4.organic_sessions": SEVERE_DROP},
            delay={"uptime": 1.0},
            config_overrides={"fetch_timeout_seconds": 0.2},
        )

        run = orchestrator.start_run(SITE_ID)

        assert run.status == RunStatus.PARTIAL
        assert run.failed_sources == ["uptime"]
        assert "timed out" in run.source_errors["uptime"]
        assert run.primary_hypothesis == "tracking_attribution_gap"
        assert run.primary_confidence == Confidence.HIGH.value

    def test_unscored_search_metrics_are_not_read_as_stable(self, orchestrator_for, store):
        """gsc answers with no rows: the tracking gap loses confidence instead of passing as high."""
        orchestrator, sources = orchestrator_for({"ga4.organic_sessions": SEVERE_DROP})
        sources["gsc"].series = {m: [] for m in ("clicks", "impressions", "ctr", "avg_position")}

        run = orchestrator.start_run(SITE_ID)

        assert run.status == RunStatus.COMPLETED
        assert set(run.source_statuses.values()) == {"ok"}
        assert run.primary_hypothesis == "tracking_attribution_gap"
        assert run.primary_confidence == Confidence.MEDIUM.value
        assert run.degraded_message == "degraded confidence - missing: [gsc.clicks, gsc.impressions]"

        primary = store.list_hypotheses(run.run_id)[0]
        assert primary.degraded
        assert primary.missing_data == ["metric:gsc.clicks", "metric:gsc.impressions"]
        (ticket,) = store.list_tickets_for_run(run.run_id)
        assert ticket.priority == Priority.P1

    def test_analysis_failure_marks_run_failed(self, config, store, clock, make_sources):
        classifier = MagicMock()
        classifier.classify.side_effect = RuntimeError("rules exploded")
        orchestrator = RunOrchestrator(config, store, make_sources(), classifier=classifier, clock=clock)

        with pytest.raises(RuntimeError):
            orchestrator.start_run(SITE_ID)

        (run,) = store.runs.values()
        assert run.status == RunStatus.FAILED
        assert run.error == "classify: rules exploded"


class TestRunReuse:
    """Tests for one-run-per-day semantics."""

    def test_second_request_reuses_the_run(self, orchestrator_for, store):
        orchestrator, sources = orchestrator_for({"ga4.organic_sessions": SEVERE_DROP})

        first = orchestrator.start_run(SITE_ID)
        calls = len(sources["gsc"].calls)
        second = orchestrator.start_run(SITE_ID)

        assert second.run_id == first.run_id
        assert len(store.runs) == 1
        assert len(sources["gsc"].calls) == calls

    def test_forced_run_refreshes_tickets(self, orchestrator_for, store):
        orchestrator, _ = orchestrator_for({"ga4.organic_sessions": SEVERE_DROP})

        first = orchestrator.start_run(SITE_ID)
        second = orchestrator.start_run(SITE_ID, force=True)

        assert second.run_id != first.run_id
        assert second.forced
        assert second.tickets_created == 0
        assert second.tickets_refreshed == 1
        (ticket,) = store.tickets.values()
        assert ticket.occurrences == 2
        assert ticket.last_seen_run_id == second.run_id

    def test_failed_run_is_not_reused(self, config, store, clock, make_sources):
        failing = RunOrchestrator(
            config, store, make_sources(failing=("ads", "ga4", "gsc", "uptime")), clock=clock
        )
        with pytest.raises(AllSourcesFailed):
            failing.start_run(SITE_ID)

        run = RunOrchestrator(config, store, make_sources(), clock=clock).start_run(SITE_ID)

        assert run.status == RunStatus.COMPLETED
        assert len(store.runs) == 2

    def test_fresh_running_run_is_reused(self, orchestrator_for, store, clock):
        store.create_run(
            RunSummary("run-live", SITE_ID, RUN_DATE, status=RunStatus.RUNNING, started_at=clock.now)
        )
        clock.advance(minutes=5)
        orchestrator, sources = orchestrator_for()

        run = orchestrator.start_run(SITE_ID)

        assert run.run_id == "run-live"
        assert sources["gsc"].calls == []

    def test_stale_running_run_is_not_reused(self, orchestrator_for, store, clock):
        """A run left running by a dead process does not block the day."""
        store.create_run(
            RunSummary("run-dead", SITE_ID, RUN_DATE, status=RunStatus.RUNNING, started_at=clock.now)
        )
        clock.advance(hours=2)
        orchestrator, _ = orchestrator_for()

        run = orchestrator.start_run(SITE_ID)

        assert run.run_id != "run-dead"
        assert run.status == RunStatus.COMPLETED

    def test_concurrent_forced_runs_share_tickets(self, orchestrator_for, store):
        orchestrator, _ = orchestrator_for({"ga4.organic_sessions": SEVERE_DROP})
        runs = []

        def start():
            runs.append(orchestrator.start_run(SITE_ID, force=True))

        threads = [threading.Thread(target=start) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len({r.run_id for r in runs}) == 4
        assert sum(r.tickets_created for r in runs) == 1
        assert sum(r.tickets_refreshed for r in runs) == 3
        (ticket,) = store.list_tickets(SITE_ID)
        assert ticket.occurrences == 4


class TestObservations:
    def test_actionable_run_writes_observation(self, orchestrator_for):
        knowledge = FakeKnowledgeStore()
        orchestrator, _ = orchestrator_for({"ga4.organic_sessions": SEVERE_DROP}, knowledge=knowledge)

        run = orchestrator.start_run(SITE_ID)

        (entry,) = knowledge.written
        assert entry.type == KnowledgeType.OBSERVATION
        assert entry.topic == "tracking"
        assert entry.evidence["run_id"] == run.run_id
        assert entry.evidence["anomalies"][0]["metric"] == "ga4.organic_sessions"

    def test_quiet_run_writes_nothing(self, orchestrator_for):
        knowledge = FakeKnowledgeStore()
        orchestrator, _ = orchestrator_for(knowledge=knowledge)

        orchestrator.start_run(SITE_ID)

        assert knowledge.written == []

    def test_knowledge_outage_does_not_fail_the_run(self, orchestrator_for):
        orchestrator, _ = orchestrator_for(
            {"ga4.organic_sessions": SEVERE_DROP}, knowledge=FakeKnowledgeStore(fail_write=True)
        )

        assert orchestrator.start_run(SITE_ID).status == RunStatus.COMPLETED
