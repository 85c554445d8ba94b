"""
Production components: anomaly service, scoring, persistence, active
learning and scheduled monitoring.
"""

from .active_learning import ActiveLearner, FeedbackEntry, Verdict
from .anomaly_service import AnomalyDetector, ModelState, RetrainResult
from .feedback_store import FeedbackStore
from .model_store import load_snapshot, save_snapshot
from .monitoring_jobs import MonitoringScheduler
from .scoring import FallbackScorer, ForestScorer, Scorer, SubprocessScorer

__all__ = [
    "ActiveLearner",
    "AnomalyDetector",
    "FallbackScorer",
    "FeedbackEntry",
    "FeedbackStore",
    "ForestScorer",
    "ModelState",
    "MonitoringScheduler",
    "RetrainResult",
    "Scorer",
    "SubprocessScorer",
    "Verdict",
    "load_snapshot",
    "save_snapshot",
]
