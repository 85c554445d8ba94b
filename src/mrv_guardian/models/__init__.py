"""
Models for the MRV Guardian ML core.

Modules:
    - isolation_forest: From-scratch Isolation Forest anomaly detector
    - forecasting: Holt-Winters generation forecaster
"""

from .forecasting import HoltWintersForecaster
from .isolation_forest import (
    IsolationForest,
    LeafNode,
    ScoreResult,
    SplitNode,
    average_path_length,
    path_length,
)

__all__ = [
    "HoltWintersForecaster",
    "IsolationForest",
    "LeafNode",
    "ScoreResult",
    "SplitNode",
    "average_path_length",
    "path_length",
]
