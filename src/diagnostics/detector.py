"""
Anomaly detector.

Splits a metric's daily series into a trailing baseline window and a current
window, scores it with the configured baseline method, thresholds |z| into a
severity and orients the z-score with the metric catalog so that negative
always means degradation.
"""

import uuid
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta

import pandas as pd
import structlog

from .config import DiagnosticsConfig
from .methods import get_method
from .models import (
    AnomalyRecord,
    DetectionOutcome,
    Direction,
    MetricSample,
    OutcomeStatus,
    Polarity,
    Severity,
)

logger = structlog.get_logger(__name__)


def window_bounds(
    end_date: date, current_window_days: int, baseline_window_days: int
) -> tuple[date, date, date, date]:
    """Return (baseline_start, baseline_end, current_start, current_end), inclusive"""
    current_start = end_date - timedelta(days=current_window_days - 1)
    baseline_end = current_start - timedelta(days=1)
    baseline_start = baseline_end - timedelta(days=baseline_window_days - 1)
    return baseline_start, baseline_end, current_start, end_date


class AnomalyDetector:
    """Scores one metric per call and persists the resulting anomaly record"""

    def __init__(
        self,
        config: DiagnosticsConfig,
        store=None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config
        self.store = store
        self.clock = clock or (lambda: datetime.now(UTC))
        self.method = get_method(config.method_name, {"stddev_epsilon": config.stddev_epsilon})

    def classify_severity(self, abs_z: float) -> Severity | None:
        """Map |z| to a severity, None below the mild threshold"""
        if abs_z >= self.config.severe_z:
            return Severity.SEVERE
        if abs_z >= self.config.moderate_z:
            return Severity.MODERATE
        if abs_z >= self.config.mild_z:
            return Severity.MILD
        return None

    def detect(
        self,
        run_id: str,
        site_id: str,
        source: str,
        metric_key: str,
        samples: list[MetricSample],
        end_date: date,
        current_window_days: int | None = None,
        baseline_window_days: int | None = None,
        fetch_error: str | None = None,
    ) -> DetectionOutcome:
        """Score a metric's current window against its baseline

        Args:
            run_id: Run the anomaly belongs to
            site_id: Site identifier
            source: Metric source (ga4, gsc, ...)
            metric_key: Metric name within the source
            samples: Daily samples covering both windows
            end_date: Last day of the current window
            current_window_days: Defaults to config.current_window_days
            baseline_window_days: Defaults to config.baseline_window_days
            fetch_error: Set when the source failed upstream; yields NO_DATA

        Returns:
            DetectionOutcome with status anomaly, no_anomaly, insufficient_data or no_data
        """
        if fetch_error is not None:
            logger.warning(
                "No data for metric, source fetch failed",
                source=source,
                metric=metric_key,
                error=fetch_error,
            )
            return DetectionOutcome(
                status=OutcomeStatus.NO_DATA,
                source=source,
                metric_key=metric_key,
                detail=fetch_error,
            )

        current_days = current_window_days or self.config.current_window_days
        baseline_days = baseline_window_days or self.config.baseline_window_days
        baseline_start, baseline_end, current_start, current_end = window_bounds(
            end_date, current_days, baseline_days
        )

        series = self._to_series(samples, source, metric_key)
        baseline = series[(series.index >= pd.Timestamp(baseline_start)) & (series.index <= pd.Timestamp(baseline_end))]
        current = series[(series.index >= pd.Timestamp(current_start)) & (series.index <= pd.Timestamp(current_end))]

        stats = self.method.score(baseline, current)

        if (
            stats.baseline_count < self.config.min_samples
            or stats.current_count < self.config.min_samples
        ):
            logger.info(
                "Insufficient data for metric",
                source=source,
                metric=metric_key,
                baseline_points=stats.baseline_count,
                current_points=stats.current_count,
                required=self.config.min_samples,
            )
            return DetectionOutcome(
                status=OutcomeStatus.INSUFFICIENT_DATA,
                source=source,
                metric_key=metric_key,
                stats=stats,
                detail=(
                    f"baseline={stats.baseline_count}, current={stats.current_count}, "
                    f"required={self.config.min_samples}"
                ),
            )

        severity = self.classify_severity(abs(stats.z_score))
        if severity is None:
            return DetectionOutcome(
                status=OutcomeStatus.NO_ANOMALY,
                source=source,
                metric_key=metric_key,
                stats=stats,
            )

        spec = self.config.metric_spec(source, metric_key)
        polarity = spec.polarity if spec else Polarity.HIGHER_IS_BETTER
        oriented_z = -stats.z_score if polarity == Polarity.HIGHER_IS_WORSE else stats.z_score

        record = AnomalyRecord(
            anomaly_id=str(uuid.uuid4()),
            run_id=run_id,
            site_id=site_id,
            source=source,
            metric_key=metric_key,
            current_value=stats.current_mean,
            baseline_mean=stats.baseline_mean,
            baseline_stddev=stats.baseline_stddev,
            z_score=oriented_z,
            delta_pct=stats.delta_pct,
            severity=severity,
            direction=Direction.DEGRADATION if oriented_z < 0 else Direction.IMPROVEMENT,
            start_date=current_start,
            created_at=self.clock(),
        )

        if self.store is not None and not self.store.insert_anomaly(record):
            logger.warning("Anomaly detected but not persisted", source=source, metric=metric_key)

        logger.info(
            "Anomaly detected",
            source=source,
            metric=metric_key,
            severity=severity.value,
            direction=record.direction.value,
            z_score=round(oriented_z, 3),
            delta_pct=round(stats.delta_pct, 2) if stats.delta_pct is not None else None,
        )

        return DetectionOutcome(
            status=OutcomeStatus.ANOMALY,
            source=source,
            metric_key=metric_key,
            record=record,
            stats=stats,
        )

    @staticmethod
    def _to_series(samples: list[MetricSample], source: str, metric_key: str) -> pd.Series:
        """Daily values indexed by timestamp; the last sample of a day wins"""
        rows = [
            (sample.date, sample.value)
            for sample in samples
            if sample.source == source and sample.metric_key == metric_key
        ]
        df = pd.DataFrame(rows, columns=["date", "value"])
        df["date"] = pd.to_datetime(df["date"])
        df = df.drop_duplicates(subset="date", keep="last").sort_values("date")
        return df.set_index("date")["value"]
