"""
Root-cause rules for the hypothesis classifier.

Each rule is a plain value object with the same capability: ``matches`` says
whether the run's anomalies fit the rule and ``build`` turns them into a
Hypothesis. The classifier walks ``DEFAULT_RULES`` in priority order.
Fallback rules only apply when no specific rule matched, so an unexplained
combination of anomalies fails closed to "inconclusive".
"""

from collections.abc import Callable
from dataclasses import dataclass, field

from .models import AnomalyRecord, Confidence, Evidence, FetchStatus, Hypothesis, Severity

# depends_on / assumes_stable value meaning "every source (or metric) of the run"
ALL_SOURCES = "*"


class AnomalyIndex:
    """Anomalies of one run, looked up by qualified metric key (source.metric)"""

    def __init__(self, anomalies: list[AnomalyRecord]):
        self.anomalies = list(anomalies)
        self._by_key = {a.qualified_key: a for a in self.anomalies}

    def __len__(self) -> int:
        return len(self.anomalies)

    def get(self, key: str) -> AnomalyRecord | None:
        return self._by_key.get(key)

    def absent(self, key: str) -> bool:
        return key not in self._by_key

    def degraded(self, key: str, at_least: Severity) -> bool:
        anomaly = self.get(key)
        return (
            anomaly is not None
            and anomaly.is_degradation
            and anomaly.severity.weight >= at_least.weight
        )

    def at_most(self, key: str, severity: Severity) -> bool:
        anomaly = self.get(key)
        return anomaly is None or anomaly.severity.weight <= severity.weight

    def pick(self, *keys: str) -> list[AnomalyRecord]:
        return [self._by_key[k] for k in keys if k in self._by_key]


@dataclass
class RuleContext:
    """Per-run facts a rule may need besides the anomalies"""

    run_id: str
    source_statuses: dict[str, str] = field(default_factory=dict)
    # metrics that produced no score (insufficient_data or no_data)
    unscored: frozenset[str] = frozenset()

    @property
    def failed_sources(self) -> set[str]:
        return {
            source
            for source, status in self.source_statuses.items()
            if status == FetchStatus.FAILED.value
        }


@dataclass(frozen=True)
class Rule:
    """One ordered decision rule"""

    key: str
    priority: int
    base_confidence: Confidence
    depends_on: tuple[str, ...]
    summary: str
    predicate: Callable[[AnomalyIndex, RuleContext], bool]
    supporting: Callable[[AnomalyIndex], list[AnomalyRecord]]
    corroboration: str | None = None
    competing_key: str | None = None
    assumes_stable: tuple[str, ...] = ()
    fallback: bool = False

    def matches(self, anomalies: AnomalyIndex, context: RuleContext) -> bool:
        return self.predicate(anomalies, context)

    def failed_dependencies(self, context: RuleContext) -> list[str]:
        if ALL_SOURCES in self.depends_on:
            return sorted(context.failed_sources)
        return sorted(set(self.depends_on) & context.failed_sources)

    def unverified_metrics(self, context: RuleContext) -> list[str]:
        """Metrics the rule reads as stable that were never scored

        Metrics of failed sources are left out; the failed source already
        accounts for them.
        """
        if ALL_SOURCES in self.assumes_stable:
            keys = set(context.unscored)
        else:
            keys = set(self.assumes_stable) & context.unscored
        return sorted(k for k in keys if k.split(".", 1)[0] not in context.failed_sources)

    def build(self, anomalies: AnomalyIndex, context: RuleContext) -> Hypothesis:
        """Create the hypothesis

        Confidence drops one level per failed dependency and one level per
        source whose assumed-stable metrics could not be scored.
        """
        failed = self.failed_dependencies(context)
        unverified = self.unverified_metrics(context)
        penalty = len(failed) + len({key.split(".", 1)[0] for key in unverified})
        supporting = self.supporting(anomalies)
        return Hypothesis(
            run_id=context.run_id,
            rank=0,
            hypothesis_key=self.key,
            confidence=self.base_confidence.downgrade(penalty),
            summary=self.summary,
            supporting_anomaly_ids=[a.anomaly_id for a in supporting],
            missing_data=[f"source:{source}" for source in failed]
            + [f"metric:{key}" for key in unverified],
            evidence=[metric_evidence(a) for a in supporting],
            degraded=penalty > 0,
        )


def metric_evidence(anomaly: AnomalyRecord) -> Evidence:
    if anomaly.delta_pct is not None:
        change = f"{anomaly.delta_pct:+.1f}%"
    else:
        change = f"{anomaly.current_value:.2f} vs baseline 0"
    return Evidence(
        kind="metric",
        statement=f"{anomaly.qualified_key} {anomaly.severity.value} {anomaly.direction.value} ({change})",
        data={
            "anomaly_id": anomaly.anomaly_id,
            "z_score": round(anomaly.z_score, 3),
            "delta_pct": round(anomaly.delta_pct, 2) if anomaly.delta_pct is not None else None,
            "current_value": anomaly.current_value,
            "baseline_mean": anomaly.baseline_mean,
        },
    )


SESSIONS = "ga4.organic_sessions"
CLICKS = "gsc.clicks"
IMPRESSIONS = "gsc.impressions"
CTR = "gsc.ctr"
SPEND = "ads.spend"
ERROR_RATE = "uptime.error_rate"
RESPONSE_TIME = "uptime.response_time_ms"


DEFAULT_RULES: tuple[Rule, ...] = (
    Rule(
        key="visibility_loss",
        priority=1,
        base_confidence=Confidence.HIGH,
        depends_on=("gsc", "ga4"),
        summary="Search is no longer surfacing the site's pages: impressions fell sharply",
        predicate=lambda idx, ctx: (
            idx.degraded(IMPRESSIONS, Severity.SEVERE) and idx.at_most(SESSIONS, Severity.MILD)
        ),
        supporting=lambda idx: idx.pick(IMPRESSIONS, SESSIONS, CLICKS),
        corroboration="content_change",
        competing_key="content_regression",
        assumes_stable=(SESSIONS,),
    ),
    Rule(
        key="tracking_attribution_gap",
        priority=2,
        base_confidence=Confidence.HIGH,
        depends_on=("ga4", "gsc"),
        summary="Analytics sessions dropped while search traffic is stable: tracking is likely broken",
        predicate=lambda idx, ctx: (
            idx.degraded(SESSIONS, Severity.SEVERE) and idx.absent(CLICKS) and idx.absent(IMPRESSIONS)
        ),
        supporting=lambda idx: idx.pick(SESSIONS),
        corroboration="tag_health",
        competing_key="tag_misconfiguration",
        assumes_stable=(CLICKS, IMPRESSIONS),
    ),
    Rule(
        key="ctr_loss",
        priority=3,
        base_confidence=Confidence.MEDIUM,
        depends_on=("gsc",),
        summary="Clicks and CTR fell while impressions held: snippets lost appeal",
        predicate=lambda idx, ctx: (
            idx.degraded(CLICKS, Severity.MODERATE)
            and idx.degraded(CTR, Severity.MODERATE)
            and idx.absent(IMPRESSIONS)
        ),
        supporting=lambda idx: idx.pick(CLICKS, CTR),
        corroboration="serp_layout",
        competing_key="serp_feature_shift",
        assumes_stable=(IMPRESSIONS,),
    ),
    Rule(
        key="site_availability_issue",
        priority=4,
        base_confidence=Confidence.HIGH,
        depends_on=("uptime",),
        summary="Uptime checks degraded: errors or response times rose above baseline",
        predicate=lambda idx, ctx: (
            idx.degraded(ERROR_RATE, Severity.MODERATE)
            or idx.degraded(RESPONSE_TIME, Severity.MODERATE)
        ),
        supporting=lambda idx: idx.pick(ERROR_RATE, RESPONSE_TIME),
        corroboration="core_web_vitals",
        competing_key="performance_regression",
    ),
    Rule(
        key="paid_campaign_issue",
        priority=5,
        base_confidence=Confidence.MEDIUM,
        depends_on=("ads",),
        summary="Ad spend moved sharply with no other anomaly: a paid campaign changed",
        predicate=lambda idx, ctx: (
            len(idx) == 1
            and idx.get(SPEND) is not None
            and idx.get(SPEND).severity == Severity.SEVERE
        ),
        supporting=lambda idx: idx.pick(SPEND),
        assumes_stable=(ALL_SOURCES,),
    ),
    Rule(
        key="inconclusive",
        priority=90,
        base_confidence=Confidence.LOW,
        depends_on=(ALL_SOURCES,),
        summary="Metrics moved but no known pattern explains them together",
        predicate=lambda idx, ctx: len(idx) > 0,
        supporting=lambda idx: list(idx.anomalies),
        fallback=True,
    ),
    Rule(
        key="no_significant_change",
        priority=99,
        base_confidence=Confidence.HIGH,
        depends_on=(ALL_SOURCES,),
        summary="No metric deviated from its baseline",
        predicate=lambda idx, ctx: len(idx) == 0,
        supporting=lambda idx: [],
        assumes_stable=(ALL_SOURCES,),
        fallback=True,
    ),
)

# Summaries of hypotheses surfaced by corroboration checks
COMPETING_SUMMARIES = {
    "content_regression": "Content changed in the window and may explain the visibility loss",
    "tag_misconfiguration": "Tag health checks failed: the analytics configuration changed",
    "serp_feature_shift": "Search result layout changed for the site's queries",
    "performance_regression": "Core Web Vitals degraded in the window",
}

# Remediation topic of each actionable hypothesis
HYPOTHESIS_TOPICS = {
    "visibility_loss": "visibility",
    "tracking_attribution_gap": "tracking",
    "ctr_loss": "ctr",
    "site_availability_issue": "availability",
    "paid_campaign_issue": "paid",
}
