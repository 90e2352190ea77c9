"""
Hypothesis classifier.

Single pass per run: evaluate the ordered rules, rank the matches, then attach
corroboration evidence. Corroboration never reorders existing ranks; competing
hypotheses it surfaces are appended after them.
"""

from collections.abc import Iterable
from dataclasses import replace
from datetime import date

import structlog

from src.core.concurrency import run_with_timeout

from .config import DiagnosticsConfig
from .interfaces import CorroborationCheck
from .models import AnomalyRecord, Confidence, Evidence, Hypothesis
from .rules import COMPETING_SUMMARIES, DEFAULT_RULES, AnomalyIndex, Rule, RuleContext

logger = structlog.get_logger(__name__)


def degraded_message(missing: list[str]) -> str | None:
    """User-facing note shown next to a classification built on partial data"""
    if not missing:
        return None
    return f"degraded confidence - missing: [{', '.join(sorted(missing))}]"


class HypothesisClassifier:
    """Turns the complete anomaly set of a run into ranked hypotheses"""

    def __init__(
        self,
        config: DiagnosticsConfig,
        rules: tuple[Rule, ...] = DEFAULT_RULES,
        checks: dict[str, CorroborationCheck] | None = None,
    ):
        self.config = config
        self.rules = tuple(sorted(rules, key=lambda r: r.priority))
        self.checks = checks or {}
        self._rules_by_key = {rule.key: rule for rule in self.rules}

    def classify(
        self,
        run_id: str,
        anomalies: list[AnomalyRecord],
        source_fetch_statuses: dict[str, str],
        site_id: str | None = None,
        window: tuple[date, date] | None = None,
        unscored_metrics: Iterable[str] = (),
    ) -> list[Hypothesis]:
        """Classify the anomalies of a run

        Args:
            run_id: Run identifier
            anomalies: Every anomaly detected in the run
            source_fetch_statuses: source -> "ok" | "failed"
            site_id: Needed for corroboration checks
            window: (start, end) of the current window, for corroboration checks
            unscored_metrics: Qualified keys of metrics that could not be scored;
                rules relying on them being stable lose confidence

        Returns:
            Hypotheses with dense ranks starting at 1
        """
        index = AnomalyIndex(anomalies)
        context = RuleContext(
            run_id=run_id,
            source_statuses=dict(source_fetch_statuses),
            unscored=frozenset(unscored_metrics),
        )

        matched = [
            (rule, rule.build(index, context))
            for rule in self.rules
            if not rule.fallback and rule.matches(index, context)
        ]

        if not matched:
            # Fail closed: the first matching fallback, never an invented cause
            for rule in self.rules:
                if rule.fallback and rule.matches(index, context):
                    matched = [(rule, rule.build(index, context))]
                    break

        matched.sort(
            key=lambda pair: (pair[0].priority, -pair[1].confidence.level, pair[1].hypothesis_key)
        )
        hypotheses = [replace(h, rank=rank) for rank, (_, h) in enumerate(matched, start=1)]

        if site_id is not None and window is not None and self.checks:
            hypotheses = self._corroborate(hypotheses, site_id, window)

        logger.info(
            "Classification complete",
            run_id=run_id,
            anomalies=len(anomalies),
            hypotheses=len(hypotheses),
            primary=hypotheses[0].hypothesis_key if hypotheses else None,
            confidence=hypotheses[0].confidence.value if hypotheses else None,
            failed_sources=sorted(context.failed_sources),
            unscored=sorted(context.unscored),
        )
        return hypotheses

    def _corroborate(
        self, hypotheses: list[Hypothesis], site_id: str, window: tuple[date, date]
    ) -> list[Hypothesis]:
        """Attach secondary-check evidence; may promote medium -> high or add competitors"""
        corroborated: list[Hypothesis] = []
        competing: list[Hypothesis] = []
        known_keys = {h.hypothesis_key for h in hypotheses}

        for hypothesis in hypotheses:
            rule = self._rules_by_key.get(hypothesis.hypothesis_key)
            topic = rule.corroboration if rule else None
            check = self.checks.get(topic) if topic else None
            if check is None:
                corroborated.append(hypothesis)
                continue

            try:
                result = run_with_timeout(
                    check.run,
                    self.config.corroboration_timeout_seconds,
                    site_id,
                    topic,
                    window,
                )
            except Exception as e:
                logger.warning(
                    "Corroboration check failed",
                    topic=topic,
                    hypothesis=hypothesis.hypothesis_key,
                    error=str(e) or type(e).__name__,
                )
                corroborated.append(
                    replace(hypothesis, missing_data=[*hypothesis.missing_data, f"check:{topic}"])
                )
                continue

            evidence = Evidence(
                kind="check",
                statement=f"{topic}: {'degraded' if result.degraded else 'no change'}",
                data={"topic": topic, "degraded": result.degraded, "details": result.details},
            )
            confidence = hypothesis.confidence
            if result.degraded and confidence == Confidence.MEDIUM and not hypothesis.degraded:
                confidence = Confidence.HIGH
            corroborated.append(
                replace(hypothesis, confidence=confidence, evidence=[*hypothesis.evidence, evidence])
            )

            if result.degraded and rule.competing_key and rule.competing_key not in known_keys:
                known_keys.add(rule.competing_key)
                competing.append(
                    Hypothesis(
                        run_id=hypothesis.run_id,
                        rank=0,
                        hypothesis_key=rule.competing_key,
                        confidence=Confidence.LOW,
                        summary=COMPETING_SUMMARIES.get(rule.competing_key, ""),
                        evidence=[evidence],
                        missing_data=list(hypothesis.missing_data),
                        degraded=hypothesis.degraded,
                    )
                )

        next_rank = len(corroborated) + 1
        for offset, hypothesis in enumerate(competing):
            corroborated.append(replace(hypothesis, rank=next_rank + offset))
        return corroborated
