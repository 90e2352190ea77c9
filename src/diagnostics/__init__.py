"""
Marketing Diagnostics Engine

Detects metric anomalies across analytics sources, explains them with ranked
root-cause hypotheses, turns those into deduplicated action tickets and
manages cooldown-bounded fix plans.

Architecture:
- Detection: per-metric baseline z-scores over daily windows (pluggable methods)
- Classification: ordered rules, fail-closed to "inconclusive"
- Tickets: fingerprinted insert-or-refresh
- Fix plans: one pending plan per topic, cooldown after execution

Usage:
    # Create tables
    python -m src.diagnostics.cli init-db

    # Run diagnostics for a site
    python -m src.diagnostics.cli run --site-id acme.com

    # Consume run requests from Kafka
    python -m src.diagnostics.cli consume
"""

from .config import DiagnosticsConfig
from .engine import DiagnosticsEngine
from .models import AnomalyRecord, FixPlan, Hypothesis, RunSummary, Ticket

__all__ = [
    "AnomalyRecord",
    "DiagnosticsConfig",
    "DiagnosticsEngine",
    "FixPlan",
    "Hypothesis",
    "RunSummary",
    "Ticket",
]
