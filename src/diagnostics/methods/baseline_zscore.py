"""
Trailing-baseline z-score method.

The baseline window is the stretch of days that ends right before the current
window, so the event being detected never contaminates its own baseline.

    z         = (current_mean - baseline_mean) / max(baseline_stddev, epsilon)
    delta_pct = (current_mean - baseline_mean) / baseline_mean * 100
                (None when baseline_mean == 0)

The baseline spread is the population standard deviation.
"""

from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd
import structlog

from ..models import WindowStats
from .base import BaselineMethod

logger = structlog.get_logger(__name__)


@dataclass
class BaselineZScoreConfig:
    """Configuration for the baseline z-score method"""

    stddev_epsilon: float = 1e-9
    ddof: int = 0  # population standard deviation


class BaselineZScoreMethod(BaselineMethod):
    """Mean/stddev of the trailing baseline, z-score of the current mean"""

    def __init__(self, config: dict | None = None):
        self.config = BaselineZScoreConfig(**(config or {}))
        self._name = "baseline_zscore"

    @property
    def name(self) -> str:
        return self._name

    def get_config(self) -> dict[str, Any]:
        return {"stddev_epsilon": self.config.stddev_epsilon, "ddof": self.config.ddof}

    def score(self, baseline: pd.Series, current: pd.Series) -> WindowStats:
        baseline = self.validate_series(baseline)
        current = self.validate_series(current)

        if baseline.empty or current.empty:
            return WindowStats(
                baseline_mean=float(baseline.mean()) if not baseline.empty else None,
                baseline_stddev=None,
                baseline_count=len(baseline),
                current_mean=float(current.mean()) if not current.empty else None,
                current_count=len(current),
            )

        baseline_mean = float(np.mean(baseline.values))
        baseline_stddev = float(np.std(baseline.values, ddof=self.config.ddof))
        current_mean = float(np.mean(current.values))

        z_score = (current_mean - baseline_mean) / max(baseline_stddev, self.config.stddev_epsilon)
        delta_pct = (
            (current_mean - baseline_mean) / baseline_mean * 100 if baseline_mean != 0 else None
        )

        logger.debug(
            "Scored metric window",
            baseline_mean=round(baseline_mean, 4),
            baseline_stddev=round(baseline_stddev, 4),
            current_mean=round(current_mean, 4),
            z_score=round(z_score, 4),
        )

        return WindowStats(
            baseline_mean=baseline_mean,
            baseline_stddev=baseline_stddev,
            baseline_count=len(baseline),
            current_mean=current_mean,
            current_count=len(current),
            z_score=z_score,
            delta_pct=delta_pct,
        )
