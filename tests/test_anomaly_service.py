"""
Test suite for the anomaly detection service.

Covers start-up (auto-train, snapshot load, corrupt snapshots), detection,
retraining and its atomic model swap, persistence and evaluation.
"""

import threading

import numpy as np
import pytest


def make_detector(model_path=None, auto_train=True, n_trees=50, drift=None, seed=42):
    from mrv_guardian.config import DetectorConfig, ForestConfig
    from mrv_guardian.production.anomaly_service import AnomalyDetector

    return AnomalyDetector(
        forest_config=ForestConfig(n_trees=n_trees),
        detector_config=DetectorConfig(
            model_path=str(model_path) if model_path else None,
            auto_train=auto_train,
            train_samples=1000,
        ),
        drift_detector=drift,
        random_state=seed,
    )


@pytest.fixture(scope="module")
def detector():
    return make_detector()


class TestStartup:
    """Test construction paths."""

    def test_auto_train_makes_detector_ready(self, detector):
        info = detector.info()
        assert info['ready'] is True
        assert info['nTrees'] == 50
        assert 700 < info['trainedOn'] < 900

    def test_not_ready_without_model(self, normal_reading):
        detector = make_detector(auto_train=False)
        result = detector.detect(normal_reading)

        assert result['method'] == 'not_ready'
        assert result['isAnomaly'] is False
        assert result['score'] == 0.5
        assert result['confidence'] == 0.0
        assert detector.info() == {'ready': False, 'modelPath': None}

    def test_drift_baseline_initialised_from_training_corpus(self):
        from mrv_guardian.validation.drift_monitor import DriftDetector

        drift = DriftDetector()
        detector = make_detector(n_trees=10, drift=drift)
        assert drift.baseline is not None
        assert drift.baseline.size == detector.state.trained_on


class TestDetect:
    """Test per-reading verdicts."""

    def test_normal_reading(self, detector, normal_reading):
        result = detector.detect(normal_reading)
        assert result['isAnomaly'] is False
        assert result['method'] == 'isolation_forest'

    def test_inflated_reading(self, detector, inflated_reading):
        result = detector.detect(inflated_reading)
        assert result['isAnomaly'] is True
        assert result['score'] > 0.5

    def test_result_fields(self, detector, normal_reading):
        from mrv_guardian.features.reading_features import FEATURE_NAMES

        result = detector.detect(normal_reading)
        for key in ('score', 'isAnomaly', 'confidence', 'threshold', 'method',
                    'trainedOn', 'trainedAt', 'featureVector', 'featureNames'):
            assert key in result
        assert result['featureNames'] == FEATURE_NAMES
        assert len(result['featureVector']) == 8

    def test_garbage_reading_does_not_raise(self, detector):
        result = detector.detect({'flowRate_m3_per_s': 'n/a', 'generatedKwh': None})
        assert 0.0 < result['score'] <= 1.0


class TestRetrain:
    """Test retraining and the atomic model swap."""

    def test_too_few_readings_leaves_model_unchanged(self, normal_readings):
        from mrv_guardian.exceptions import InsufficientTrainingDataError

        detector = make_detector(n_trees=10)
        before = detector.state

        with pytest.raises(InsufficientTrainingDataError) as excinfo:
            detector.retrain(normal_readings[:49])

        assert excinfo.value.required == 50
        assert excinfo.value.provided == 49
        assert detector.state is before

    def test_retrain_swaps_state(self, normal_readings):
        detector = make_detector(n_trees=10)
        before = detector.state

        result = detector.retrain(normal_readings[:120])

        assert result.success
        assert result.trained_on == 120
        assert detector.state is not before
        assert detector.state.forest.subsample_size == 120

    def test_submit_retrain_reports_failure(self, normal_readings):
        detector = make_detector(n_trees=10)
        before = detector.state

        result = detector.submit_retrain(normal_readings[:10]).result(timeout=30)

        assert result.success is False
        assert 'at least 50' in result.error
        assert detector.state is before
        detector.close()

    def test_submit_retrain_success(self, normal_readings):
        detector = make_detector(n_trees=10)
        result = detector.submit_retrain(normal_readings[:80]).result(timeout=60)
        assert result.success
        assert detector.state.trained_on == 80
        detector.close()

    def test_retrain_updates_drift_baseline(self, normal_readings):
        from mrv_guardian.validation.drift_monitor import DriftDetector

        drift = DriftDetector()
        detector = make_detector(n_trees=10, drift=drift)
        detector.retrain(normal_readings[:64])
        assert drift.baseline.size == 64

    def test_state_carries_matching_baseline(self, tmp_path, normal_readings):
        from mrv_guardian.features.reading_features import FeatureExtractor
        from mrv_guardian.validation.drift_monitor import DriftDetector

        drift = DriftDetector()
        detector = make_detector(model_path=tmp_path / "model.json", n_trees=10, drift=drift)
        detector.retrain(normal_readings[:64])

        state = detector.state
        assert state.baseline is drift.baseline
        assert state.baseline.size == state.trained_on == 64
        np.testing.assert_array_equal(
            state.baseline.features, FeatureExtractor().extract_many(normal_readings[:64])
        )

        restored_drift = DriftDetector()
        restored = make_detector(model_path=tmp_path / "model.json", auto_train=False,
                                 drift=restored_drift)
        assert restored.state.baseline is restored_drift.baseline
        assert restored.state.baseline.size == restored.state.trained_on

    def test_state_has_no_baseline_without_drift_detector(self, detector):
        assert detector.state.baseline is None

    def test_concurrent_detect_sees_complete_forests(self, normal_readings, normal_reading):
        detector = make_detector(n_trees=20)
        errors = []
        observed = []
        stop = threading.Event()

        def reader():
            while not stop.is_set():
                state = detector.state
                observed.append((len(state.forest.trees), state.forest.n_trees, state.forest.trained))
                try:
                    detector.detect(normal_reading)
                except Exception as e:  # pragma: no cover
                    errors.append(e)

        threads = [threading.Thread(target=reader) for _ in range(3)]
        for t in threads:
            t.start()

        futures = [detector.submit_retrain(normal_readings[i * 60:(i + 1) * 60 + 50]) for i in range(3)]
        results = [f.result(timeout=120) for f in futures]

        stop.set()
        for t in threads:
            t.join()
        detector.close()

        assert all(r.success for r in results)
        assert errors == []
        assert observed
        assert all(count == n and trained for count, n, trained in observed)
        assert detector.state.trained_on == 110


class TestPersistence:
    """Test snapshot save/load."""

    def test_save_and_load_round_trip(self, tmp_path, normal_reading, inflated_reading):
        path = tmp_path / "model.json"
        original = make_detector(model_path=path, n_trees=20)
        assert path.exists()

        restored = make_detector(model_path=path, auto_train=False)
        assert restored.ready
        for reading in (normal_reading, inflated_reading):
            assert restored.detect(reading)['score'] == original.detect(reading)['score']
        assert restored.state.trained_on == original.state.trained_on

    def test_snapshot_layout(self, tmp_path):
        import json

        path = tmp_path / "model.json"
        make_detector(model_path=path, n_trees=5)
        data = json.loads(path.read_text())

        for key in ('version', 'algorithm', 'trainedOn', 'trainedAt', 'features',
                    'bounds', 'forest', 'checksum'):
            assert key in data
        assert data['forest']['treeCount'] == 5
        assert data['bounds']['generatedKwh'] == {'min': 0.0, 'max': 6000.0}

    def test_joblib_snapshot(self, tmp_path, inflated_reading):
        path = tmp_path / "model.joblib"
        original = make_detector(model_path=path, n_trees=5)
        restored = make_detector(model_path=path, auto_train=False)
        assert restored.detect(inflated_reading)['score'] == original.detect(inflated_reading)['score']

    def test_drift_baseline_persisted(self, tmp_path):
        from mrv_guardian.validation.drift_monitor import DriftDetector

        path = tmp_path / "model.json"
        original = DriftDetector()
        make_detector(model_path=path, n_trees=5, drift=original)

        restored = DriftDetector()
        make_detector(model_path=path, auto_train=False, drift=restored)
        np.testing.assert_array_equal(restored.baseline.features, original.baseline.features)

    def test_corrupt_snapshot_falls_back_to_auto_train(self, tmp_path):
        path = tmp_path / "model.json"
        path.write_text("{not json")

        detector = make_detector(model_path=path, n_trees=5)
        assert detector.ready
        assert detector.info()['nTrees'] == 5

    def test_corrupt_snapshot_without_auto_train(self, tmp_path, normal_reading):
        path = tmp_path / "model.json"
        path.write_text("{not json")

        detector = make_detector(model_path=path, auto_train=False)
        assert not detector.ready
        assert detector.detect(normal_reading)['method'] == 'not_ready'

    def test_tampered_snapshot_rejected(self, tmp_path):
        import json

        from mrv_guardian.exceptions import SnapshotError

        path = tmp_path / "model.json"
        detector = make_detector(model_path=path, n_trees=5)
        data = json.loads(path.read_text())
        data['forest']['anomalyThreshold'] = 0.01
        path.write_text(json.dumps(data))

        with pytest.raises(SnapshotError):
            detector.load(path)

    def test_save_without_model_raises(self):
        from mrv_guardian.exceptions import SnapshotError

        with pytest.raises(SnapshotError):
            make_detector(auto_train=False).to_snapshot()

    def test_unwritable_model_dir_still_starts(self, tmp_path, inflated_reading):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        detector = make_detector(model_path=blocker / "model.json", n_trees=5)
        assert detector.ready
        assert detector.detect(inflated_reading)['method'] != 'not_ready'

    def test_unwritable_model_dir_retrain_succeeds(self, tmp_path, normal_readings):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        detector = make_detector(model_path=blocker / "model.json", n_trees=5)
        before = detector.state
        result = detector.retrain(normal_readings[:70])

        assert result.success
        assert detector.state is not before
        assert detector.state.trained_on == 70

    def test_unwritable_model_dir_save_raises_snapshot_error(self, tmp_path):
        from mrv_guardian.exceptions import SnapshotError

        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        detector = make_detector(model_path=blocker / "model.json", n_trees=5)
        with pytest.raises(SnapshotError):
            detector.save()


class TestEvaluate:
    """Test offline evaluation with scikit-learn metrics."""

    def test_evaluate_on_held_out(self, detector):
        from mrv_guardian.simulation.synthetic_readings import SyntheticDataGenerator

        samples = SyntheticDataGenerator(random_state=99).generate(600)
        metrics = detector.evaluate(samples)

        assert metrics['n_samples'] == 600
        assert metrics['true_positives'] + metrics['false_negatives'] == sum(s.is_anomaly for s in samples)
        assert metrics['recall'] > 0.6
        assert metrics['roc_auc'] > 0.8
        assert 0.0 <= metrics['precision'] <= 1.0

    def test_evaluate_single_class(self, detector, synthetic_samples):
        normal = [s for s in synthetic_samples if s.label == 'normal'][:50]
        metrics = detector.evaluate(normal)
        assert metrics['roc_auc'] is None
        assert metrics['recall'] == 0.0


class TestFromConfig:
    """Test wiring from GuardianConfig."""

    def test_external_scorer_wrapped_in_fallback(self, inflated_reading):
        from mrv_guardian.config import GuardianConfig
        from mrv_guardian.production.anomaly_service import AnomalyDetector
        from mrv_guardian.production.scoring import FallbackScorer

        config = GuardianConfig.from_dict({
            'forest': {'n_trees': 5},
            'detector': {'model_path': None, 'train_samples': 300},
            'scorer': {'command': ['definitely-not-a-real-scorer-binary'], 'timeout_seconds': 2.0},
        })
        detector = AnomalyDetector.from_config(config, random_state=1)

        assert isinstance(detector.state.scorer, FallbackScorer)
        result = detector.detect(inflated_reading)
        assert result['method'] == 'isolation_forest_fallback'

    def test_close_shuts_down_shared_scorer_pool(self):
        from mrv_guardian.config import GuardianConfig
        from mrv_guardian.production.anomaly_service import AnomalyDetector

        config = GuardianConfig.from_dict({
            'forest': {'n_trees': 5},
            'detector': {'model_path': None, 'train_samples': 300},
            'scorer': {'command': ['definitely-not-a-real-scorer-binary'], 'timeout_seconds': 2.0},
        })
        detector = AnomalyDetector.from_config(config, random_state=1)
        pool = detector.scorer_executor
        assert pool is not None

        detector.close()
        with pytest.raises(RuntimeError):
            pool.submit(lambda: None)

    def test_in_process_scorer_has_no_pool(self):
        from mrv_guardian.config import GuardianConfig
        from mrv_guardian.production.anomaly_service import AnomalyDetector

        config = GuardianConfig.from_dict({
            'forest': {'n_trees': 5},
            'detector': {'model_path': None, 'train_samples': 300},
        })
        detector = AnomalyDetector.from_config(config, random_state=1)
        assert detector.scorer_executor is None
        detector.close()
