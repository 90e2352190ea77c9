"""
Tests for data models and configuration.
"""

import json
from datetime import UTC, datetime, timedelta

import pytest

from src.diagnostics.config import DEV_CONFIG, DiagnosticsConfig
from src.diagnostics.errors import AllSourcesFailed, PlanExpired
from src.diagnostics.models import (
    Confidence,
    Evidence,
    FixPlan,
    FixPlanItem,
    Hypothesis,
    Polarity,
    RunStatus,
)

NOW = datetime(2026, 3, 16, 8, 0, tzinfo=UTC)


class TestConfidence:
    @pytest.mark.parametrize(
        "start,steps,expected",
        [
            (Confidence.HIGH, 1, Confidence.MEDIUM),
            (Confidence.HIGH, 2, Confidence.LOW),
            (Confidence.MEDIUM, 5, Confidence.LOW),
            (Confidence.LOW, 0, Confidence.LOW),
        ],
    )
    def test_downgrade_floors_at_low(self, start, steps, expected):
        assert start.downgrade(steps) == expected


class TestModels:
    def test_run_status_terminal(self):
        assert RunStatus.PARTIAL.is_terminal
        assert not RunStatus.RUNNING.is_terminal

    def test_hypothesis_row_roundtrip(self):
        hypothesis = Hypothesis(
            run_id="run-1",
            rank=1,
            hypothesis_key="ctr_loss",
            confidence=Confidence.MEDIUM,
            supporting_anomaly_ids=["a1"],
            evidence=[Evidence(kind="check", statement="serp_layout: no change")],
        )

        row = hypothesis.to_db_dict()

        assert json.loads(row["evidence"])[0]["kind"] == "check"
        assert Hypothesis.from_row(row) == hypothesis

    def test_plan_expiry_is_inclusive(self):
        plan = FixPlan(
            plan_id="p-1",
            site_id="acme.com",
            topic="ctr",
            generated_at=NOW,
            expires_at=NOW + timedelta(hours=24),
            cooldown_allowed=True,
            items=[FixPlanItem(action="Rewrite titles", target="page titles")],
        )

        assert not plan.is_expired(NOW + timedelta(hours=23))
        assert plan.is_expired(NOW + timedelta(hours=24))
        assert FixPlan.from_row(plan.to_db_dict()) == plan


class TestErrors:
    def test_error_payloads_carry_identifiers(self):
        error = AllSourcesFailed("run-1", {"gsc": "down", "ga4": "down"})

        assert error.to_dict()["run_id"] == "run-1"
        assert error.message == "All metric sources failed: ga4, gsc"

    def test_plan_expired_payload(self):
        assert PlanExpired("p-1", NOW).to_dict()["expires_at"] == NOW.isoformat()


class TestConfig:
    def test_defaults(self):
        config = DiagnosticsConfig()

        assert config.cooldown == timedelta(days=3)
        assert config.plan_ttl == timedelta(hours=24)
        assert config.stale_run_after == timedelta(minutes=30)
        assert config.sources == ["ads", "ga4", "gsc", "uptime"]
        assert config.metric_spec("gsc", "avg_position").polarity == Polarity.HIGHER_IS_WORSE
        assert config.metric_spec("gsc", "bounce_rate") is None
        assert config.topic_spec("tracking").metrics == ("ga4.organic_sessions",)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("DIAG_COOLDOWN_DAYS", "1.5")
        monkeypatch.setenv("POSTGRES_HOST", "db.internal")
        monkeypatch.setenv("DIAG_STALE_RUN_MINUTES", "10")

        config = DiagnosticsConfig.from_env(max_plan_items=4)

        assert config.cooldown == timedelta(days=1.5)
        assert config.postgres_host == "db.internal"
        assert config.max_plan_items == 4
        assert config.stale_run_after == timedelta(minutes=10)

    def test_dev_config_is_shorter(self):
        assert DEV_CONFIG.baseline_window_days < DiagnosticsConfig().baseline_window_days
