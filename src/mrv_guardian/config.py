"""
Configuration for the MRV Guardian ML core.

Every component takes a small dataclass config. ``GuardianConfig`` groups them
and can be loaded from a YAML file whose top-level sections match the
attribute names below.

Example:
    >>> from mrv_guardian.config import GuardianConfig
    >>> config = GuardianConfig.from_yaml('config/guardian_config.yaml')
    >>> config.forest.n_trees
    100
"""

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from loguru import logger


@dataclass
class ForestConfig:
    """Isolation Forest hyperparameters."""
    n_trees: int = 100
    subsample_size: int = 256
    contamination: float = 0.10
    random_state: Optional[int] = None


@dataclass
class DetectorConfig:
    """Anomaly detector lifecycle settings."""
    model_path: Optional[str] = "models/isolation_forest.json"
    auto_train: bool = True
    train_samples: int = 2000
    min_retrain_readings: int = 50


@dataclass
class DriftConfig:
    """Drift detector thresholds."""
    p_value_threshold: float = 0.05
    min_sample_size: int = 30
    high_severity_p_value: float = 0.001
    medium_severity_p_value: float = 0.01
    max_history: int = 1000


@dataclass
class ForecastConfig:
    """Holt-Winters smoothing constants."""
    alpha: float = 0.2
    beta: float = 0.1
    gamma: float = 0.1
    season_length: int = 24
    model_path: Optional[str] = "models/forecaster.json"


@dataclass
class ActiveLearningConfig:
    """Feedback-driven retraining triggers."""
    min_feedback_for_retrain: int = 50
    max_false_positive_rate: float = 0.30
    min_feedback_for_fp_trigger: int = 20
    min_retrain_corpus: int = 10
    feedback_path: Optional[str] = "data/feedback.json"


@dataclass
class ScorerConfig:
    """Optional out-of-process scorer with timeout and fallback."""
    command: Optional[List[str]] = None
    timeout_seconds: float = 5.0
    min_confidence: float = 0.0


@dataclass
class SchedulerConfig:
    """Intervals for advisory background jobs."""
    drift_check_minutes: int = 60
    forecast_retrain_hours: int = 24
    feedback_check_minutes: int = 15
    poll_seconds: float = 1.0


def _section(cls, data: Optional[Dict[str, Any]]):
    """Build a config dataclass from a mapping, ignoring unknown keys."""
    if not data:
        return cls()
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")
    return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class GuardianConfig:
    """Top-level configuration holding one section per component."""
    forest: ForestConfig = field(default_factory=ForestConfig)
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    drift: DriftConfig = field(default_factory=DriftConfig)
    forecast: ForecastConfig = field(default_factory=ForecastConfig)
    active_learning: ActiveLearningConfig = field(default_factory=ActiveLearningConfig)
    scorer: ScorerConfig = field(default_factory=ScorerConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GuardianConfig':
        """Build a config from a nested mapping."""
        return cls(
            forest=_section(ForestConfig, data.get('forest')),
            detector=_section(DetectorConfig, data.get('detector')),
            drift=_section(DriftConfig, data.get('drift')),
            forecast=_section(ForecastConfig, data.get('forecast')),
            active_learning=_section(ActiveLearningConfig, data.get('active_learning')),
            scorer=_section(ScorerConfig, data.get('scorer')),
            scheduler=_section(SchedulerConfig, data.get('scheduler')),
        )

    @classmethod
    def from_yaml(cls, config_path: Optional[Union[str, Path]] = None) -> 'GuardianConfig':
        """
        Load configuration from a YAML file.

        A missing or unreadable file falls back to defaults with a warning.

        Args:
            config_path: Path to the YAML configuration file

        Returns:
            GuardianConfig instance
        """
        if config_path is None:
            return cls()

        try:
            with open(config_path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load config from {config_path}: {e}")
            return cls()

        logger.info(f"Loaded configuration from {config_path}")
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)
