"""
Validation package: distribution drift monitoring for production telemetry.
"""

from .drift_monitor import (
    DriftBaseline,
    DriftDetector,
    DriftReport,
    FeatureDrift,
    FeatureStats,
    ks_two_sample,
)

__all__ = [
    "DriftBaseline",
    "DriftDetector",
    "DriftReport",
    "FeatureDrift",
    "FeatureStats",
    "ks_two_sample",
]
