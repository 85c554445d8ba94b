"""
Feature Drift Monitoring

Detects when production telemetry drifts away from the distribution the
anomaly detector was trained on, using a two-sample Kolmogorov-Smirnov test
per feature.

The p-value is the large-sample approximation exp(-2 * D^2 * n) with
n = n1 * n2 / (n1 + n2), which is conservative enough for the window sizes
seen in production and cheap to compute.

Usage Example:
    >>> from mrv_guardian.validation.drift_monitor import DriftDetector
    >>> detector = DriftDetector()
    >>> detector.initialize(training_readings)
    >>> report = detector.check_drift(last_week_readings)
    >>> if report.has_drift:
    ...     detector.send_alert(report)
"""

import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd
from loguru import logger
from scipy.stats import ks_2samp

from mrv_guardian.features.reading_features import (
    FEATURE_NAMES,
    FeatureExtractor,
    ReadingLike,
)

STATUS_OK = 'ok'
STATUS_NO_BASELINE = 'no_baseline'
STATUS_INSUFFICIENT_DATA = 'insufficient_data'


def ks_two_sample(sample1: Iterable[float], sample2: Iterable[float]) -> Tuple[float, float]:
    """
    Two-sample KS statistic with the asymptotic p-value approximation.

    Returns:
        Tuple of (D, p-value)
    """
    a = np.asarray(list(sample1), dtype=float)
    b = np.asarray(list(sample2), dtype=float)
    if a.size == 0 or b.size == 0:
        return 0.0, 1.0

    statistic = float(ks_2samp(a, b, method='asymp').statistic)
    n = a.size * b.size / (a.size + b.size)
    p_value = math.exp(-2.0 * statistic ** 2 * n)
    return statistic, min(1.0, max(0.0, p_value))


@dataclass(frozen=True)
class FeatureStats:
    """Summary of one feature's distribution; std is the population std."""
    mean: float
    std: float
    min: float
    max: float

    @classmethod
    def from_values(cls, values: np.ndarray) -> 'FeatureStats':
        if values.size == 0:
            return cls(0.0, 0.0, 0.0, 0.0)
        return cls(
            mean=float(values.mean()),
            std=float(values.std()),
            min=float(values.min()),
            max=float(values.max()),
        )

    def to_dict(self) -> Dict[str, float]:
        return {'mean': self.mean, 'std': self.std, 'min': self.min, 'max': self.max}


@dataclass(frozen=True)
class DriftBaseline:
    """Training distribution: per-feature stats plus the raw feature matrix."""
    features: np.ndarray
    stats: Dict[str, FeatureStats]
    created_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def from_features(cls, X: np.ndarray) -> 'DriftBaseline':
        X = np.asarray(X, dtype=float).reshape(-1, len(FEATURE_NAMES))
        stats = {
            name: FeatureStats.from_values(X[:, idx])
            for idx, name in enumerate(FEATURE_NAMES)
        }
        return cls(features=X, stats=stats)

    @property
    def size(self) -> int:
        return int(self.features.shape[0])

    def values(self, name: str) -> np.ndarray:
        return self.features[:, FEATURE_NAMES.index(name)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            name: {**self.stats[name].to_dict(), 'values': self.values(name).tolist()}
            for name in FEATURE_NAMES
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DriftBaseline':
        columns = [np.asarray(data[name]['values'], dtype=float) for name in FEATURE_NAMES]
        return cls.from_features(np.column_stack(columns))


@dataclass
class FeatureDrift:
    """One drifted feature."""
    feature: str
    p_value: float
    ks_statistic: float
    severity: str
    training_mean: float
    new_mean: float

    @property
    def mean_shift(self) -> float:
        return self.new_mean - self.training_mean

    def to_dict(self) -> Dict[str, Any]:
        return {
            'feature': self.feature,
            'pValue': self.p_value,
            'ksStatistic': self.ks_statistic,
            'severity': self.severity,
            'trainingMean': self.training_mean,
            'newMean': self.new_mean,
            'meanShift': self.mean_shift,
        }


@dataclass
class DriftReport:
    """Container for drift check results."""
    status: str
    has_drift: bool = False
    drifted_features: List[FeatureDrift] = field(default_factory=list)
    new_stats: Dict[str, FeatureStats] = field(default_factory=dict)
    samples_checked: int = 0
    recommendation: str = ''
    alerts: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'hasDrift': self.has_drift,
            'driftedFeatures': [d.to_dict() for d in self.drifted_features],
            'newStats': {k: v.to_dict() for k, v in self.new_stats.items()},
            'samplesChecked': self.samples_checked,
            'recommendation': self.recommendation,
            'timestamp': self.timestamp.isoformat(),
        }


class DriftDetector:
    """
    KS-test drift detector over the eight reading features.

    Attributes:
        p_value_threshold: Features with p below this are drifted (default: 0.05)
        min_sample_size: Smallest window that can be checked (default: 30)
        high_severity_p_value: p below this is HIGH (default: 0.001)
        medium_severity_p_value: p below this is MEDIUM (default: 0.01)
        max_history: Reports kept for trend analysis; oldest dropped first (default: 1000)

    Example:
        >>> detector = DriftDetector(p_value_threshold=0.05)
        >>> detector.initialize(training_readings)
        >>> detector.check_drift(recent).recommendation
    """

    def __init__(
        self,
        p_value_threshold: float = 0.05,
        min_sample_size: int = 30,
        high_severity_p_value: float = 0.001,
        medium_severity_p_value: float = 0.01,
        extractor: Optional[FeatureExtractor] = None,
        max_history: int = 1000
    ):
        self.p_value_threshold = p_value_threshold
        self.min_sample_size = min_sample_size
        self.high_severity_p_value = high_severity_p_value
        self.medium_severity_p_value = medium_severity_p_value
        self.extractor = extractor or FeatureExtractor()
        self.baseline: Optional[DriftBaseline] = None
        self.drift_history: Deque[DriftReport] = deque(maxlen=max_history)

    @classmethod
    def from_config(cls, config, extractor: Optional[FeatureExtractor] = None) -> 'DriftDetector':
        return cls(
            p_value_threshold=config.p_value_threshold,
            min_sample_size=config.min_sample_size,
            high_severity_p_value=config.high_severity_p_value,
            medium_severity_p_value=config.medium_severity_p_value,
            extractor=extractor,
            max_history=config.max_history,
        )

    def initialize(self, training_readings: List[ReadingLike]) -> None:
        """Build the baseline from raw training readings."""
        self.initialize_from_features(self.extractor.extract_many(training_readings))

    def initialize_from_features(self, X: np.ndarray) -> None:
        """Build the baseline from already-extracted feature vectors."""
        self.baseline = DriftBaseline.from_features(X)
        logger.info(
            f"Drift baseline set with {self.baseline.size} samples, "
            f"{len(FEATURE_NAMES)} features tracked"
        )

    def update_baseline(self, readings: List[ReadingLike]) -> None:
        """Replace the baseline wholesale, typically after a retrain."""
        self.initialize(readings)
        logger.info(f"Drift baseline updated with {len(readings)} readings")

    def _get_severity(self, p_value: float) -> str:
        """Determine severity level based on p-value."""
        if p_value < self.high_severity_p_value:
            return 'HIGH'
        elif p_value < self.medium_severity_p_value:
            return 'MEDIUM'
        else:
            return 'LOW'

    def check_drift(self, new_readings: List[ReadingLike]) -> DriftReport:
        """
        Compare a window of production readings against the baseline.

        Args:
            new_readings: Recent raw readings

        Returns:
            DriftReport; ``no_baseline`` and ``insufficient_data`` statuses
            are returned rather than raised
        """
        baseline = self.baseline
        if baseline is None or baseline.size == 0:
            return DriftReport(
                status=STATUS_NO_BASELINE,
                recommendation='No training baseline, cannot detect drift.',
            )

        if len(new_readings) < self.min_sample_size:
            logger.warning(
                f"Drift check skipped: {len(new_readings)} readings, "
                f"need {self.min_sample_size}"
            )
            return DriftReport(
                status=STATUS_INSUFFICIENT_DATA,
                samples_checked=len(new_readings),
                recommendation=(
                    f"Need at least {self.min_sample_size} samples for drift "
                    f"detection (got {len(new_readings)})."
                ),
            )

        X_new = self.extractor.extract_many(new_readings)
        report = DriftReport(status=STATUS_OK, samples_checked=len(new_readings))

        for idx, name in enumerate(FEATURE_NAMES):
            new_values = X_new[:, idx]
            report.new_stats[name] = FeatureStats.from_values(new_values)

            statistic, p_value = ks_two_sample(baseline.values(name), new_values)
            if p_value < self.p_value_threshold:
                report.drifted_features.append(FeatureDrift(
                    feature=name,
                    p_value=p_value,
                    ks_statistic=statistic,
                    severity=self._get_severity(p_value),
                    training_mean=baseline.stats[name].mean,
                    new_mean=report.new_stats[name].mean,
                ))

        report.drifted_features.sort(key=lambda d: d.p_value)
        report.has_drift = bool(report.drifted_features)

        if report.has_drift:
            top = report.drifted_features[0]
            report.recommendation = (
                f"Model drift detected: {top.feature} distribution shifted "
                f"significantly (p={top.p_value:.4f}). Recommend retraining "
                f"with the last 30 days of production data."
            )
            for drift in report.drifted_features:
                alert = (
                    f"Drift detected in '{drift.feature}': D={drift.ks_statistic:.4f}, "
                    f"p-value={drift.p_value:.4e}, severity={drift.severity}"
                )
                report.alerts.append(alert)
                logger.warning(alert)
        else:
            report.recommendation = 'No significant drift detected. Model is still valid.'

        self.drift_history.append(report)
        logger.info(
            f"Drift check complete on {len(new_readings)} readings. "
            f"Drifted features: {len(report.drifted_features)}"
        )
        return report

    def track_drift_over_time(self) -> pd.DataFrame:
        """
        Create timeline of drift checks from history.

        Returns:
            DataFrame with one row per completed check
        """
        if not self.drift_history:
            logger.warning("No drift history available")
            return pd.DataFrame()

        timeline = []
        for report in self.drift_history:
            timeline.append({
                'timestamp': report.timestamp,
                'has_drift': report.has_drift,
                'num_drifted_features': len(report.drifted_features),
                'samples_checked': report.samples_checked,
                'min_p_value': min((d.p_value for d in report.drifted_features), default=1.0),
            })
        return pd.DataFrame(timeline)

    def send_alert(
        self,
        report: DriftReport,
        alert_callback: Optional[Callable[[DriftReport], Any]] = None
    ) -> None:
        """
        Log drift alerts and forward the report to an optional callback.

        Args:
            report: DriftReport with alerts
            alert_callback: Optional callback for custom alerting
        """
        if not report.alerts:
            logger.info("No alerts to send")
            return

        logger.warning(f"DRIFT ALERT: {len(report.alerts)} features drifted")
        for alert in report.alerts:
            logger.warning(f"  - {alert}")

        if alert_callback:
            alert_callback(report)
