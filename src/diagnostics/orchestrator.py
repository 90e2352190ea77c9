"""
Run state machine.

queued -> running -> completed | partial | failed

While running, a run goes through two phases: ``fetching`` (every
(source, metric) fetch in parallel, each with its own timeout) and
``analyzing`` (detect every metric, classify once, generate tickets).
"""

import uuid
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from functools import partial

import structlog
from structlog.contextvars import bound_contextvars

from src.core.concurrency import fan_out, run_with_timeout

from .classifier import HypothesisClassifier, degraded_message
from .config import DiagnosticsConfig
from .detector import AnomalyDetector, window_bounds
from .errors import AllSourcesFailed
from .interfaces import KnowledgeStore, MetricSource
from .models import (
    AnomalyRecord,
    FetchStatus,
    Hypothesis,
    KnowledgeEntry,
    KnowledgeType,
    OutcomeStatus,
    RunPhase,
    RunStatus,
    RunSummary,
)
from .rules import HYPOTHESIS_TOPICS
from .tickets import TicketGenerator

logger = structlog.get_logger(__name__)

# Finished runs a non-forced request for the same day reuses
REUSABLE_RUN_STATUSES = (RunStatus.COMPLETED, RunStatus.PARTIAL)


class RunOrchestrator:
    """Drives one diagnostic run from fetch to tickets"""

    def __init__(
        self,
        config: DiagnosticsConfig,
        store,
        sources: dict[str, MetricSource],
        classifier: HypothesisClassifier | None = None,
        knowledge: KnowledgeStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config
        self.store = store
        self.sources = sources
        self.knowledge = knowledge
        self.clock = clock or (lambda: datetime.now(UTC))
        self.detector = AnomalyDetector(config, store=store, clock=self.clock)
        self.classifier = classifier or HypothesisClassifier(config)
        self.tickets = TicketGenerator(store, clock=self.clock)

    def start_run(
        self, site_id: str, force: bool = False, run_date: date | None = None
    ) -> RunSummary:
        """Run diagnostics for a site

        Args:
            site_id: Site identifier
            force: Start a new run even if one exists for the day
            run_date: Day of the run, defaults to today

        Returns:
            RunSummary of the completed/partial run (or the reused one)

        Raises:
            AllSourcesFailed: no source could be fetched; the run is persisted as failed
        """
        run_date = run_date or self.clock().date()

        if not force:
            existing = self._reusable_run(site_id, run_date)
            if existing is not None:
                logger.info(
                    "Reusing existing run for the day",
                    run_id=existing.run_id,
                    site_id=site_id,
                    status=existing.status.value,
                )
                return existing

        run = RunSummary(
            run_id=str(uuid.uuid4()),
            site_id=site_id,
            run_date=run_date,
            forced=force,
            started_at=self.clock(),
        )
        self.store.create_run(run)

        with bound_contextvars(run_id=run.run_id, site_id=site_id):
            logger.info("Run started", run_date=run_date.isoformat(), forced=force)
            return self._execute(run)

    def _reusable_run(self, site_id: str, run_date: date) -> RunSummary | None:
        """Today's finished run, else a running one that is still making progress"""
        finished = self.store.find_run_for_day(site_id, run_date, REUSABLE_RUN_STATUSES)
        if finished is not None:
            return finished

        running = self.store.find_run_for_day(site_id, run_date, (RunStatus.RUNNING,))
        if running is None:
            return None
        started_at = running.started_at or self.clock()
        if self.clock() - started_at >= self.config.stale_run_after:
            logger.warning(
                "Ignoring stale running run",
                run_id=running.run_id,
                site_id=site_id,
                started_at=started_at.isoformat(),
            )
            return None
        return running

    def _execute(self, run: RunSummary) -> RunSummary:
        end_date = run.run_date - timedelta(days=self.config.data_lag_days)
        baseline_start, _, current_start, _ = window_bounds(
            end_date, self.config.current_window_days, self.config.baseline_window_days
        )

        # Fetching
        run.status = RunStatus.RUNNING
        run.phase = RunPhase.FETCHING
        self.store.update_run(run)

        samples, errors = self._fetch(run.site_id, baseline_start, end_date)
        run.source_statuses, run.source_errors = self._source_statuses(errors)

        if run.failed_sources and len(run.failed_sources) == len(run.source_statuses):
            run.status = RunStatus.FAILED
            run.phase = RunPhase.DONE
            run.completed_at = self.clock()
            run.error = "All metric sources failed"
            self.store.update_run(run)
            logger.error("Run failed, all sources failed", failures=run.source_errors)
            raise AllSourcesFailed(run.run_id, run.source_errors)

        # Analyzing
        run.phase = RunPhase.ANALYZING
        self.store.update_run(run)

        stage = "detect"
        try:
            anomalies, unscored = self._detect(run, samples, errors, end_date)

            stage = "classify"
            hypotheses = self.classifier.classify(
                run.run_id,
                anomalies,
                run.source_statuses,
                site_id=run.site_id,
                window=(current_start, end_date),
                unscored_metrics=unscored,
            )
            self.store.insert_hypotheses(hypotheses)

            stage = "tickets"
            batch = self.tickets.generate(run.run_id, run.site_id, hypotheses, anomalies)
        except Exception as e:
            run.status = RunStatus.FAILED
            run.phase = RunPhase.DONE
            run.completed_at = self.clock()
            run.error = f"{stage}: {str(e) or type(e).__name__}"
            self.store.update_run(run)
            logger.error("Run failed while analyzing", stage=stage, error=str(e))
            raise

        primary = hypotheses[0] if hypotheses else None
        run.anomaly_count = len(anomalies)
        run.primary_hypothesis = primary.hypothesis_key if primary else None
        run.primary_confidence = primary.confidence.value if primary else None
        run.degraded_message = self._degraded_message(primary)
        run.tickets_created = batch.created
        run.tickets_refreshed = batch.refreshed
        run.tickets_failed = batch.failed
        run.status = RunStatus.PARTIAL if run.failed_sources else RunStatus.COMPLETED
        run.phase = RunPhase.DONE
        run.completed_at = self.clock()
        self.store.update_run(run)

        if primary is not None:
            self._record_observation(run, primary, anomalies)

        logger.info(
            "Run finished",
            status=run.status.value,
            anomalies=run.anomaly_count,
            primary=run.primary_hypothesis,
            confidence=run.primary_confidence,
            tickets=run.ticket_count,
            failed_sources=run.failed_sources,
        )
        return run

    def _fetch(
        self, site_id: str, start_date: date, end_date: date
    ) -> tuple[dict[tuple[str, str], list], dict[tuple[str, str], str]]:
        """Fetch every catalog metric concurrently

        Returns:
            (samples by (source, metric), error by (source, metric))
        """
        calls = {}
        errors: dict[tuple[str, str], str] = {}
        for spec in self.config.metrics:
            key = (spec.source, spec.metric_key)
            source = self.sources.get(spec.source)
            if source is None:
                errors[key] = "no metric source configured"
                continue
            calls[key] = partial(source.fetch_daily, site_id, spec.metric_key, start_date, end_date)

        results = fan_out(
            calls, self.config.fetch_timeout_seconds, max_workers=self.config.fetch_max_workers
        )

        samples: dict[tuple[str, str], list] = {}
        for key, result in results.items():
            if result.ok:
                samples[key] = list(result.value or [])
            else:
                errors[key] = result.error or "unknown error"

        logger.info(
            "Fetch complete",
            metrics=len(self.config.metrics),
            fetched=len(samples),
            failed=len(errors),
        )
        return samples, errors

    def _source_statuses(
        self, errors: dict[tuple[str, str], str]
    ) -> tuple[dict[str, str], dict[str, str]]:
        """A source is failed when any of its metric fetches failed"""
        statuses = {source: FetchStatus.OK.value for source in self.config.sources}
        source_errors: dict[str, str] = {}
        for (source, metric_key), error in sorted(errors.items()):
            statuses[source] = FetchStatus.FAILED.value
            source_errors.setdefault(source, f"{metric_key}: {error}")
        return statuses, source_errors

    def _detect(
        self,
        run: RunSummary,
        samples: dict[tuple[str, str], list],
        errors: dict[tuple[str, str], str],
        end_date: date,
    ) -> tuple[list[AnomalyRecord], set[str]]:
        """Detect every catalog metric

        Returns:
            (anomalies, qualified keys of metrics that could not be scored)
        """
        anomalies: list[AnomalyRecord] = []
        unscored: set[str] = set()
        for spec in self.config.metrics:
            key = (spec.source, spec.metric_key)
            outcome = self.detector.detect(
                run.run_id,
                run.site_id,
                spec.source,
                spec.metric_key,
                samples.get(key, []),
                end_date,
                fetch_error=errors.get(key),
            )
            if outcome.status == OutcomeStatus.ANOMALY:
                anomalies.append(outcome.record)
            elif outcome.status in (OutcomeStatus.INSUFFICIENT_DATA, OutcomeStatus.NO_DATA):
                unscored.add(f"{spec.source}.{spec.metric_key}")

        logger.info("Detection complete", anomalies=len(anomalies), unscored=sorted(unscored))
        return anomalies, unscored

    @staticmethod
    def _degraded_message(primary: Hypothesis | None) -> str | None:
        if primary is None or not primary.degraded:
            return None
        missing = [
            m.split(":", 1)[1] for m in primary.missing_data if m.startswith(("source:", "metric:"))
        ]
        return degraded_message(missing)

    def _record_observation(
        self, run: RunSummary, primary: Hypothesis, anomalies: list[AnomalyRecord]
    ):
        """Best-effort observation entry for an actionable primary hypothesis"""
        topic = HYPOTHESIS_TOPICS.get(primary.hypothesis_key)
        if topic is None or self.knowledge is None:
            return

        supporting = set(primary.supporting_anomaly_ids)
        entry = KnowledgeEntry(
            site_id=run.site_id,
            type=KnowledgeType.OBSERVATION,
            topic=topic,
            title=f"{primary.hypothesis_key} ({primary.confidence.value}) on {run.run_date.isoformat()}",
            evidence={
                "run_id": run.run_id,
                "summary": primary.summary,
                "anomalies": [
                    {"metric": a.qualified_key, "z_score": round(a.z_score, 3)}
                    for a in anomalies
                    if a.anomaly_id in supporting
                ],
                "missing_data": primary.missing_data,
            },
            decision="tickets_generated",
            tags=[topic, primary.hypothesis_key],
            created_at=self.clock(),
        )
        try:
            run_with_timeout(self.knowledge.write, self.config.knowledge_timeout_seconds, entry)
        except Exception as e:
            logger.warning("Failed to record run observation", topic=topic, error=str(e) or type(e).__name__)
