"""
Configuration for the diagnostics engine.

Every threshold, window, cooldown and timeout is a named field of
``DiagnosticsConfig`` so deployments (and tests) can inject their own values.
"""

import os
from dataclasses import dataclass, replace
from datetime import timedelta

from dotenv import load_dotenv

from .models import MetricSpec, Polarity

load_dotenv()


# Static per-metric direction table. Increases of HIGHER_IS_WORSE metrics are
# degradations, so their z-scores are inverted before orientation.
METRIC_CATALOG: tuple[MetricSpec, ...] = (
    MetricSpec("ga4", "organic_sessions", Polarity.HIGHER_IS_BETTER, "Organic sessions"),
    MetricSpec("gsc", "clicks", Polarity.HIGHER_IS_BETTER, "Search clicks"),
    MetricSpec("gsc", "impressions", Polarity.HIGHER_IS_BETTER, "Search impressions"),
    MetricSpec("gsc", "ctr", Polarity.HIGHER_IS_BETTER, "Search CTR"),
    MetricSpec("gsc", "avg_position", Polarity.HIGHER_IS_WORSE, "Average position"),
    MetricSpec("ads", "spend", Polarity.HIGHER_IS_BETTER, "Ad spend"),
    MetricSpec("ads", "conversions", Polarity.HIGHER_IS_BETTER, "Ad conversions"),
    MetricSpec("uptime", "error_rate", Polarity.HIGHER_IS_WORSE, "Uptime error rate"),
    MetricSpec("uptime", "response_time_ms", Polarity.HIGHER_IS_WORSE, "Response time"),
)


@dataclass(frozen=True)
class TopicSpec:
    """Remediation topic: which metrics it covers and its default actions"""

    topic: str
    metrics: tuple[str, ...]
    templates: tuple[tuple[str, str, str], ...]  # (action, target, rationale)


TOPIC_CATALOG: tuple[TopicSpec, ...] = (
    TopicSpec(
        "tracking",
        ("ga4.organic_sessions",),
        (
            ("Verify the GA4 tag fires on every page template", "ga4 tag", "Sessions fell while search traffic held"),
            ("Review recent tag manager publishes", "tag manager container", "Tracking changes are the usual cause"),
            ("Check consent mode is not blocking analytics events", "consent banner", "Blocked consent drops sessions"),
        ),
    ),
    TopicSpec(
        "visibility",
        ("gsc.impressions", "gsc.avg_position"),
        (
            ("Audit robots.txt and noindex directives on top templates", "robots directives", "Blocked pages lose impressions"),
            ("Validate canonical tags on top landing pages", "canonical tags", "Canonical mismatches drop pages from the index"),
            ("Resubmit the sitemap and request re-indexing", "sitemap", "Speeds up recovery once fixed"),
        ),
    ),
    TopicSpec(
        "ctr",
        ("gsc.ctr", "gsc.clicks"),
        (
            ("Rewrite titles of pages with the largest CTR drop", "page titles", "Snippets lost appeal"),
            ("Refresh meta descriptions with clearer value propositions", "meta descriptions", "Snippets lost appeal"),
            ("Restore structured data for rich results", "structured data", "Rich results lift CTR"),
        ),
    ),
    TopicSpec(
        "paid",
        ("ads.spend", "ads.conversions"),
        (
            ("Check campaign budgets and pacing", "campaign budgets", "Spend moved without other traffic changes"),
            ("Review bid strategy changes in the window", "bid strategy", "Bid changes shift spend"),
            ("Confirm billing and payment status", "ads billing", "Billing holds pause delivery"),
        ),
    ),
    TopicSpec(
        "availability",
        ("uptime.error_rate", "uptime.response_time_ms"),
        (
            ("Inspect error logs for the failing endpoints", "error logs", "Errors rose above baseline"),
            ("Roll back the most recent deploy if errors started with it", "latest deploy", "Deploys are the usual cause"),
            ("Verify CDN and origin health checks", "cdn", "Edge failures surface as errors"),
        ),
    ),
)


@dataclass
class DiagnosticsConfig:
    """Configuration for the diagnostics engine"""

    # Detection windows (days)
    current_window_days: int = 3
    baseline_window_days: int = 14
    data_lag_days: int = 1  # daily data is complete up to yesterday

    # Detection method (see methods registry)
    method_name: str = "baseline_zscore"

    # Detection thresholds
    severe_z: float = 3.0
    moderate_z: float = 2.0
    mild_z: float = 1.0
    stddev_epsilon: float = 1e-9
    min_samples: int = 3

    # Fix plans
    cooldown_days: float = 3.0
    plan_ttl_hours: float = 24.0
    max_plan_items: int = 10
    knowledge_query_limit: int = 20

    # Per-call timeouts (seconds)
    fetch_timeout_seconds: float = 20.0
    corroboration_timeout_seconds: float = 10.0
    knowledge_timeout_seconds: float = 5.0
    executor_timeout_seconds: float = 30.0
    fetch_max_workers: int = 16

    # A running run older than this is treated as abandoned and not reused
    stale_run_minutes: float = 30.0

    # Catalogs
    metrics: tuple[MetricSpec, ...] = METRIC_CATALOG
    topics: tuple[TopicSpec, ...] = TOPIC_CATALOG

    # PostgreSQL settings
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_database: str = "diagnostics_db"
    postgres_user: str = "diagnostics"
    postgres_password: str = "diagnostics_password"

    # Redis settings (run summary cache)
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: str | None = None
    cache_ttl_seconds: int = 900

    # Kafka settings (run request consumer)
    kafka_bootstrap_servers: str = "localhost:9092"
    kafka_topic: str = "diagnostic-run-requests"
    kafka_group_id: str = "diagnostics-run-consumer-group"
    kafka_auto_offset_reset: str = "latest"

    # Worker services
    corroboration_url: str | None = None
    change_executor_url: str | None = None
    worker_api_key: str | None = None

    @property
    def cooldown(self) -> timedelta:
        return timedelta(days=self.cooldown_days)

    @property
    def plan_ttl(self) -> timedelta:
        return timedelta(hours=self.plan_ttl_hours)

    @property
    def stale_run_after(self) -> timedelta:
        return timedelta(minutes=self.stale_run_minutes)

    @property
    def sources(self) -> list[str]:
        return sorted({spec.source for spec in self.metrics})

    def metric_spec(self, source: str, metric_key: str) -> MetricSpec | None:
        for spec in self.metrics:
            if spec.source == source and spec.metric_key == metric_key:
                return spec
        return None

    def topic_spec(self, topic: str) -> TopicSpec | None:
        for spec in self.topics:
            if spec.topic == topic:
                return spec
        return None

    @classmethod
    def from_env(cls, **overrides) -> "DiagnosticsConfig":
        """Build a configuration from environment variables (.env is loaded)"""
        config = cls(
            current_window_days=int(os.getenv("DIAG_CURRENT_WINDOW_DAYS", "3")),
            baseline_window_days=int(os.getenv("DIAG_BASELINE_WINDOW_DAYS", "14")),
            min_samples=int(os.getenv("DIAG_MIN_SAMPLES", "3")),
            cooldown_days=float(os.getenv("DIAG_COOLDOWN_DAYS", "3")),
            plan_ttl_hours=float(os.getenv("DIAG_PLAN_TTL_HOURS", "24")),
            max_plan_items=int(os.getenv("DIAG_MAX_PLAN_ITEMS", "10")),
            stale_run_minutes=float(os.getenv("DIAG_STALE_RUN_MINUTES", "30")),
            postgres_host=os.getenv("POSTGRES_HOST", "localhost"),
            postgres_port=int(os.getenv("POSTGRES_PORT", "5432")),
            postgres_database=os.getenv("POSTGRES_DB", "diagnostics_db"),
            postgres_user=os.getenv("POSTGRES_USER", "diagnostics"),
            postgres_password=os.getenv("POSTGRES_PASSWORD", "diagnostics_password"),
            redis_host=os.getenv("REDIS_HOST", "localhost"),
            redis_port=int(os.getenv("REDIS_PORT", "6379")),
            redis_password=os.getenv("REDIS_PASSWORD") or None,
            kafka_bootstrap_servers=os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092"),
            kafka_topic=os.getenv("KAFKA_TOPIC", "diagnostic-run-requests"),
            corroboration_url=os.getenv("CORROBORATION_URL") or None,
            change_executor_url=os.getenv("CHANGE_EXECUTOR_URL") or None,
            worker_api_key=os.getenv("WORKER_API_KEY") or None,
        )
        return replace(config, **overrides) if overrides else config


DEFAULT_CONFIG = DiagnosticsConfig()

# Development/Testing (short windows, short cooldown)
DEV_CONFIG = DiagnosticsConfig(
    current_window_days=2,
    baseline_window_days=7,
    cooldown_days=0.5,
    plan_ttl_hours=1.0,
    fetch_timeout_seconds=5.0,
)
