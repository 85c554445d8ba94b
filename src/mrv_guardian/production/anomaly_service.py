"""
Anomaly Detection Service

Orchestrates the Isolation Forest for live hydropower readings: start-up
(snapshot load or synthetic auto-train), per-reading detection, retraining on
operator-confirmed readings, persistence and offline evaluation.

Concurrency model:
- The active model lives in one immutable ``ModelState``; ``detect`` reads that
  reference once and never locks
- Retraining builds a complete new ``ModelState`` off to the side and swaps it
  in with a single assignment, so readers see the old or the new model, never
  a mix
- ``submit_retrain`` runs retraining on a single-worker background executor

Usage Example:
    >>> from mrv_guardian.production.anomaly_service import AnomalyDetector
    >>> detector = AnomalyDetector(random_state=42)
    >>> verdict = detector.detect({'flowRate_m3_per_s': 2.5, 'headHeight_m': 45,
    ...                            'generatedKwh': 9360})
    >>> verdict['isAnomaly']
    True
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import numpy as np
from loguru import logger
from sklearn.metrics import (
    accuracy_score,
    confusion_matrix,
    f1_score,
    precision_score,
    recall_score,
    roc_auc_score,
)

from mrv_guardian.config import DetectorConfig, ForestConfig, GuardianConfig
from mrv_guardian.exceptions import InsufficientTrainingDataError, SnapshotError
from mrv_guardian.features.reading_features import (
    FEATURE_NAMES,
    FeatureExtractor,
    ReadingLike,
)
from mrv_guardian.models.isolation_forest import IsolationForest
from mrv_guardian.production.model_store import load_snapshot, save_snapshot
from mrv_guardian.production.scoring import (
    FallbackScorer,
    ForestScorer,
    Scorer,
    SubprocessScorer,
)
from mrv_guardian.simulation.synthetic_readings import (
    LABEL_NORMAL,
    SyntheticDataGenerator,
    SyntheticSample,
)
from mrv_guardian.utils import RandomState, make_rng
from mrv_guardian.validation.drift_monitor import DriftBaseline, DriftDetector

SNAPSHOT_VERSION = '1.0'
ALGORITHM = 'IsolationForest'
METHOD_NOT_READY = 'not_ready'

ScorerFactory = Callable[[IsolationForest], Scorer]


@dataclass(frozen=True)
class ModelState:
    """
    Everything ``detect`` needs, published as one reference.

    ``baseline`` is the drift baseline built from the same corpus as
    ``forest`` (None when no DriftDetector is attached), so one read of the
    state always yields a matching model and baseline.
    """
    forest: IsolationForest
    scorer: Scorer
    trained_on: int
    trained_at: datetime
    baseline: Optional[DriftBaseline] = None


@dataclass(frozen=True)
class RetrainResult:
    """Outcome of a background retrain."""
    success: bool
    trained_on: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'success': self.success, 'trainedOn': self.trained_on, 'error': self.error}


class AnomalyDetector:
    """
    Isolation Forest anomaly detector for hydropower readings.

    Args:
        forest_config: Forest hyperparameters
        detector_config: Snapshot path, auto-train and retrain settings
        drift_detector: Optional DriftDetector whose baseline follows the model
        scorer_factory: Builds the Scorer for each new forest (default: in-process)
        extractor: Feature extractor
        random_state: Seed or shared numpy Generator

    Example:
        >>> detector = AnomalyDetector(
        ...     detector_config=DetectorConfig(model_path='models/if.json'),
        ...     drift_detector=DriftDetector(),
        ... )
        >>> detector.info()['ready']
        True
    """

    def __init__(
        self,
        forest_config: Optional[ForestConfig] = None,
        detector_config: Optional[DetectorConfig] = None,
        drift_detector: Optional[DriftDetector] = None,
        scorer_factory: Optional[ScorerFactory] = None,
        extractor: Optional[FeatureExtractor] = None,
        random_state: RandomState = None
    ):
        self.forest_config = forest_config or ForestConfig()
        self.detector_config = detector_config or DetectorConfig()
        self.drift_detector = drift_detector
        self.scorer_factory = scorer_factory or ForestScorer
        self.extractor = extractor or FeatureExtractor()
        if random_state is None:
            random_state = self.forest_config.random_state
        self.rng = make_rng(random_state)

        self._state: Optional[ModelState] = None
        self._build_lock = threading.Lock()
        self.executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='guardian-retrain')
        self.scorer_executor: Optional[ThreadPoolExecutor] = None

        self._load_or_train()

    @classmethod
    def from_config(
        cls,
        config: GuardianConfig,
        drift_detector: Optional[DriftDetector] = None,
        random_state: RandomState = None
    ) -> 'AnomalyDetector':
        """Build a detector from a GuardianConfig, wiring an external scorer if configured."""
        scorer_factory = None
        shared = None
        if config.scorer.command:
            scorer_config = config.scorer
            shared = ThreadPoolExecutor(max_workers=4, thread_name_prefix='guardian-scorer')

            def scorer_factory(forest: IsolationForest) -> Scorer:
                return FallbackScorer(
                    primary=SubprocessScorer(
                        scorer_config.command,
                        timeout_seconds=scorer_config.timeout_seconds,
                        threshold=forest.threshold,
                    ),
                    fallback=ForestScorer(forest),
                    timeout_seconds=scorer_config.timeout_seconds,
                    min_confidence=scorer_config.min_confidence,
                    executor=shared,
                )

        detector = cls(
            forest_config=config.forest,
            detector_config=config.detector,
            drift_detector=drift_detector,
            scorer_factory=scorer_factory,
            random_state=random_state,
        )
        detector.scorer_executor = shared
        return detector

    @property
    def state(self) -> Optional[ModelState]:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state is not None

    def _load_or_train(self) -> None:
        model_path = self.detector_config.model_path
        if model_path and Path(model_path).exists():
            try:
                self.load(model_path)
            except SnapshotError as e:
                logger.warning(f"Could not restore model snapshot: {e}")

        if self._state is None and self.detector_config.auto_train:
            self.train_synthetic(self.detector_config.train_samples)

        if self._state is None:
            logger.warning("Anomaly detector not ready: no snapshot and auto-train disabled")

    def _build(self, readings: List[ReadingLike]) -> ModelState:
        """Fit a new forest and baseline without touching the active state."""
        X = self.extractor.extract_many(readings)
        with self._build_lock:
            forest = IsolationForest(
                n_trees=self.forest_config.n_trees,
                subsample_size=min(self.forest_config.subsample_size, len(X)),
                contamination=self.forest_config.contamination,
                feature_names=FEATURE_NAMES,
                random_state=self.rng,
            ).fit(X)
        return ModelState(
            forest=forest,
            scorer=self.scorer_factory(forest),
            trained_on=len(X),
            trained_at=datetime.now(),
            baseline=DriftBaseline.from_features(X) if self.drift_detector is not None else None,
        )

    def _publish(self, state: ModelState) -> None:
        """
        Make ``state`` the active model.

        The attached DriftDetector's baseline is updated right after the swap,
        so a drift check running between the two assignments can still see
        the previous baseline. ``state.baseline`` always matches the model.
        """
        self._state = state
        if self.drift_detector is not None and state.baseline is not None:
            self.drift_detector.baseline = state.baseline

    def _persist(self) -> None:
        """Save the active model if a path is configured; failures are logged only."""
        if not self.detector_config.model_path:
            return
        try:
            self.save()
        except (SnapshotError, OSError) as e:
            logger.error(f"Failed to persist model: {e}")

    def train_synthetic(self, n_samples: int = 2000) -> int:
        """
        Bootstrap from synthetic data: keep only ``normal`` samples and fit.

        Returns:
            Number of normal readings trained on
        """
        generator = SyntheticDataGenerator(random_state=self.rng)
        samples = generator.generate(n_samples)
        normal = [s.reading for s in samples if s.label == LABEL_NORMAL]
        if not normal:
            raise InsufficientTrainingDataError(1, 0, what='normal synthetic readings')

        logger.info(f"Auto-training on {len(normal)} normal synthetic readings")
        state = self._build(normal)
        self._publish(state)
        self._persist()
        return state.trained_on

    def detect(self, reading: ReadingLike) -> Dict[str, Any]:
        """
        Score one reading.

        Returns:
            Dict with score, isAnomaly, confidence, threshold, method,
            trainedOn, trainedAt, featureVector and featureNames. Before a
            model exists the method is ``not_ready`` and nothing is raised.
        """
        features = self.extractor.extract(reading)
        state = self._state
        if state is None:
            logger.warning("detect() called before a model is available")
            return {
                'score': 0.5,
                'isAnomaly': False,
                'confidence': 0.0,
                'threshold': None,
                'method': METHOD_NOT_READY,
                'trainedOn': 0,
                'trainedAt': None,
                'featureVector': features.tolist(),
                'featureNames': list(FEATURE_NAMES),
            }

        result = state.scorer.score(features)
        verdict = result.to_dict()
        verdict.update({
            'trainedOn': state.trained_on,
            'trainedAt': state.trained_at.isoformat(),
            'featureVector': features.tolist(),
            'featureNames': list(FEATURE_NAMES),
        })
        return verdict

    def retrain(self, readings: List[ReadingLike]) -> RetrainResult:
        """
        Replace the model with one trained on confirmed-normal readings.

        Raises:
            InsufficientTrainingDataError: Fewer than ``min_retrain_readings``
                readings; the active model is untouched
        """
        required = self.detector_config.min_retrain_readings
        if len(readings) < required:
            raise InsufficientTrainingDataError(required, len(readings))

        logger.info(f"Retraining Isolation Forest on {len(readings)} readings")
        state = self._build(readings)
        self._publish(state)
        self._persist()
        logger.info(f"Retrain complete, threshold={state.forest.threshold:.6f}")
        return RetrainResult(success=True, trained_on=state.trained_on)

    def _retrain_job(self, readings: List[ReadingLike]) -> RetrainResult:
        try:
            return self.retrain(readings)
        except InsufficientTrainingDataError as e:
            logger.warning(f"Background retrain skipped: {e}")
            return RetrainResult(success=False, error=str(e))
        except Exception as e:
            logger.error(f"Background retrain failed: {e}")
            return RetrainResult(success=False, error=str(e))

    def submit_retrain(self, readings: List[ReadingLike]) -> 'Future[RetrainResult]':
        """Run ``retrain`` on the background executor; failures resolve to a result."""
        return self.executor.submit(self._retrain_job, list(readings))

    def to_snapshot(self) -> Dict[str, Any]:
        state = self._state
        if state is None:
            raise SnapshotError("No trained model to snapshot")
        payload = {
            'version': SNAPSHOT_VERSION,
            'algorithm': ALGORITHM,
            'trainedOn': state.trained_on,
            'trainedAt': state.trained_at.isoformat(),
            'features': list(FEATURE_NAMES),
            'bounds': self.extractor.bounds_dict(),
            'forest': state.forest.to_snapshot(),
        }
        if self.drift_detector is not None and state.baseline is not None:
            payload['driftBaseline'] = state.baseline.to_dict()
        return payload

    def save(self, path: Optional[Union[str, Path]] = None) -> Path:
        """Write the active model atomically to ``path`` (default: configured path)."""
        path = path or self.detector_config.model_path
        if not path:
            raise SnapshotError("No model path configured")
        return save_snapshot(self.to_snapshot(), path)

    def load(self, path: Optional[Union[str, Path]] = None) -> None:
        """Restore a snapshot and make it the active model."""
        path = path or self.detector_config.model_path
        if not path:
            raise SnapshotError("No model path configured")

        data = load_snapshot(path)
        if data.get('algorithm') != ALGORITHM or 'forest' not in data:
            raise SnapshotError("Not an anomaly detector snapshot", str(path))

        forest = IsolationForest.from_snapshot(data['forest'])
        if not forest.trained:
            raise SnapshotError("Snapshot holds an untrained forest", str(path))

        try:
            trained_at = datetime.fromisoformat(data['trainedAt'])
        except (KeyError, TypeError, ValueError):
            trained_at = datetime.now()

        baseline = None
        if self.drift_detector is not None and data.get('driftBaseline'):
            try:
                baseline = DriftBaseline.from_dict(data['driftBaseline'])
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring malformed drift baseline in snapshot: {e}")

        state = ModelState(
            forest=forest,
            scorer=self.scorer_factory(forest),
            trained_on=int(data.get('trainedOn', forest.training_size)),
            trained_at=trained_at,
            baseline=baseline,
        )
        self._publish(state)
        logger.info(f"Model loaded from {path} (trained on {state.trained_on} readings)")

    def info(self) -> Dict[str, Any]:
        """Metadata about the active model."""
        state = self._state
        if state is None:
            return {'ready': False, 'modelPath': self.detector_config.model_path}
        forest = state.forest
        return {
            'ready': True,
            'algorithm': ALGORITHM,
            'trainedOn': state.trained_on,
            'trainedAt': state.trained_at.isoformat(),
            'nTrees': forest.n_trees,
            'subsampleSize': forest.subsample_size,
            'contamination': forest.contamination,
            'threshold': forest.threshold,
            'featureNames': list(FEATURE_NAMES),
            'modelPath': self.detector_config.model_path,
            'scorer': state.scorer.name,
        }

    def evaluate(self, samples: List[SyntheticSample]) -> Dict[str, Any]:
        """
        Score labelled samples and report classification metrics.

        Any label other than ``normal`` counts as an anomaly.

        Args:
            samples: Labelled synthetic samples

        Returns:
            Dict with confusion matrix, accuracy, precision, recall, f1 and roc_auc
        """
        state = self._state
        if state is None or not samples:
            return {'n_samples': len(samples), 'ready': state is not None}

        X = self.extractor.extract_many([s.reading for s in samples])
        y_true = np.array([s.is_anomaly for s in samples], dtype=bool)
        scores = state.forest.raw_scores(X)
        y_pred = scores > state.forest.threshold

        tn, fp, fn, tp = confusion_matrix(y_true, y_pred, labels=[False, True]).ravel()
        both_classes = 0 < y_true.sum() < len(y_true)
        metrics = {
            'n_samples': len(samples),
            'ready': True,
            'true_positives': int(tp),
            'false_positives': int(fp),
            'true_negatives': int(tn),
            'false_negatives': int(fn),
            'accuracy': float(accuracy_score(y_true, y_pred)),
            'precision': float(precision_score(y_true, y_pred, zero_division=0)),
            'recall': float(recall_score(y_true, y_pred, zero_division=0)),
            'f1': float(f1_score(y_true, y_pred, zero_division=0)),
            'roc_auc': float(roc_auc_score(y_true, scores)) if both_classes else None,
        }
        logger.info(
            f"Evaluation on {len(samples)} samples: precision={metrics['precision']:.3f}, "
            f"recall={metrics['recall']:.3f}, f1={metrics['f1']:.3f}"
        )
        return metrics

    def close(self) -> None:
        """Stop the background retrain executor and any shared scorer pool."""
        self.executor.shutdown(wait=True)
        if self.scorer_executor is not None:
            self.scorer_executor.shutdown(wait=True)
