"""
Base abstract interface for baseline scoring methods.

A method receives the daily series of one metric split into a baseline window
and a current window, and returns the window statistics (means, spread,
z-score, delta). Thresholding and orientation are done by the detector.
"""

from abc import ABC, abstractmethod
from typing import Any

import pandas as pd

from ..models import WindowStats


class BaselineMethod(ABC):
    """Abstract base class for all baseline scoring methods"""

    @abstractmethod
    def score(self, baseline: pd.Series, current: pd.Series) -> WindowStats:
        """Score the current window against the baseline window

        Args:
            baseline: Daily values of the baseline window (NaN for missing days)
            current: Daily values of the current window (NaN for missing days)

        Returns:
            WindowStats; z_score is None when either window is empty
        """
        pass

    @abstractmethod
    def get_config(self) -> dict[str, Any]:
        """Get the current configuration of this method"""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Name of the scoring method"""
        pass

    @staticmethod
    def validate_series(series: pd.Series) -> pd.Series:
        """Coerce to float and drop missing days

        Raises:
            ValueError: If the series holds non-numeric values
        """
        try:
            return pd.to_numeric(series, errors="raise").astype(float).dropna()
        except (TypeError, ValueError) as e:
            raise ValueError(f"Series has non-numeric values: {e}") from e

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(config={self.get_config()})"
