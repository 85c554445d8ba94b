"""
Test suite for the persistent feedback store.
"""

import json

import pytest


def entry(original='anomaly', correct='normal', reading_id='r-1', **extra):
    return dict({'readingId': reading_id, 'originalLabel': original, 'correctLabel': correct}, **extra)


@pytest.fixture
def store(tmp_path):
    from mrv_guardian.production.feedback_store import FeedbackStore

    store = FeedbackStore(tmp_path / "feedback.json")
    store.load()
    return store


class TestPersistence:
    """Test load/save."""

    def test_missing_file_starts_empty(self, store):
        assert store.feedback == []

    def test_add_persists_immediately(self, store, tmp_path):
        from mrv_guardian.production.feedback_store import FeedbackStore

        stored = store.add_feedback(entry(confidence=0.6))
        assert stored['id'].startswith('fb_')
        assert isinstance(stored['timestamp'], int)

        reopened = FeedbackStore(tmp_path / "feedback.json")
        assert reopened.load() == 1
        assert reopened.feedback[0]['id'] == stored['id']

    def test_unreadable_file_raises(self, tmp_path):
        from mrv_guardian.exceptions import SnapshotError
        from mrv_guardian.production.feedback_store import FeedbackStore

        path = tmp_path / "feedback.json"
        path.write_text("{broken")
        with pytest.raises(SnapshotError):
            FeedbackStore(path).load()

    def test_non_list_file_raises(self, tmp_path):
        from mrv_guardian.exceptions import SnapshotError
        from mrv_guardian.production.feedback_store import FeedbackStore

        path = tmp_path / "feedback.json"
        path.write_text(json.dumps({'entries': []}))
        with pytest.raises(SnapshotError):
            FeedbackStore(path).load()

    def test_clear(self, store):
        store.add_feedback(entry())
        store.clear()
        assert store.feedback == []
        assert json.loads(store.file_path.read_text()) == []

    def test_failed_write_does_not_keep_entry(self, tmp_path):
        from mrv_guardian.exceptions import SnapshotError
        from mrv_guardian.production.feedback_store import FeedbackStore

        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = FeedbackStore(blocker / "feedback.json")

        with pytest.raises(SnapshotError):
            store.add_feedback(entry())
        assert store.feedback == []

    def test_concurrent_adds_keep_every_entry(self, store, tmp_path):
        import threading

        from mrv_guardian.production.feedback_store import FeedbackStore

        errors = []

        def writer(worker):
            for i in range(25):
                try:
                    store.add_feedback(entry(reading_id=f"r-{worker}-{i}"))
                except Exception as e:  # pragma: no cover
                    errors.append(e)

        threads = [threading.Thread(target=writer, args=(w,)) for w in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(store.feedback) == 100
        assert len({f['id'] for f in store.feedback}) == 100

        reopened = FeedbackStore(tmp_path / "feedback.json")
        assert reopened.load() == 100
        assert [p.name for p in tmp_path.iterdir()] == ['feedback.json']


class TestFromConfig:
    """Test construction from ActiveLearningConfig."""

    def test_uses_feedback_path_and_retrain_cadence(self, tmp_path):
        from mrv_guardian.config import ActiveLearningConfig
        from mrv_guardian.production.feedback_store import FeedbackStore

        path = tmp_path / "ops" / "feedback.json"
        config = ActiveLearningConfig(feedback_path=str(path), min_feedback_for_retrain=20)
        store = FeedbackStore.from_config(config)

        assert store.file_path == path
        assert store.retrain_every == 20
        store.add_feedback(entry())
        assert path.exists()

    def test_from_yaml(self, tmp_path):
        import yaml

        from mrv_guardian.config import GuardianConfig
        from mrv_guardian.production.feedback_store import FeedbackStore

        path = tmp_path / "fb.json"
        config_file = tmp_path / "guardian.yaml"
        config_file.write_text(yaml.safe_dump({'active_learning': {'feedback_path': str(path)}}))

        store = FeedbackStore.from_config(GuardianConfig.from_yaml(config_file).active_learning)
        assert store.file_path == path


class TestValidation:
    """Test entry validation."""

    def test_missing_fields(self, store):
        with pytest.raises(ValueError, match='correctLabel'):
            store.add_feedback({'readingId': 'r-1', 'originalLabel': 'anomaly'})

    def test_invalid_label(self, store):
        with pytest.raises(ValueError):
            store.add_feedback(entry(correct='suspicious'))
        assert store.feedback == []

    def test_ids_are_unique(self, store):
        ids = {store.add_feedback(entry(reading_id=f"r-{i}"))['id'] for i in range(20)}
        assert len(ids) == 20


class TestQueries:
    """Test filtering, statistics and insights."""

    def test_filters(self, store):
        store.add_feedback(entry(correct='normal', confidence=0.3))
        store.add_feedback(entry(correct='anomaly', confidence=0.9))
        store.add_feedback(entry(correct='normal'))

        assert len(store.get_feedback(correct_label='normal')) == 2
        assert len(store.get_feedback(confidence=0.5)) == 1
        assert len(store.get_feedback(limit=2)) == 2
        assert store.get_feedback(start=store.feedback[0]['timestamp']) == store.feedback
        assert store.get_feedback(end=0) == []

    def test_stats(self, store):
        for original, correct, n in (('anomaly', 'anomaly', 4), ('anomaly', 'normal', 1),
                                     ('normal', 'anomaly', 2), ('normal', 'normal', 3)):
            for _ in range(n):
                store.add_feedback(entry(original, correct))

        stats = store.stats()
        assert stats['total'] == 10
        assert stats['truePositives'] == 4
        assert stats['falsePositives'] == 1
        assert stats['falseNegatives'] == 2
        assert stats['trueNegatives'] == 3
        assert stats['precision'] == pytest.approx(4 / 5)
        assert stats['recall'] == pytest.approx(4 / 6)
        assert stats['accuracy'] == pytest.approx(7 / 10)
        assert stats['falsePositiveRate'] == pytest.approx(1 / 4)
        assert stats['falseNegativeRate'] == pytest.approx(2 / 6)

    def test_insights_need_minimum_entries(self, store):
        store.add_feedback(entry())
        insights = store.insights()
        assert insights['summary'] == 'Insufficient feedback data for insights'
        assert insights['needsRetraining'] is False

    def test_poor_accuracy_needs_retraining(self, store):
        for i in range(12):
            store.add_feedback(entry('anomaly', 'normal', reading_id=f"r-{i}"))
        insights = store.insights()
        assert insights['needsRetraining'] is True
        assert any('false positive' in r for r in insights['recommendations'])

    def test_good_model(self, store):
        for i in range(10):
            store.add_feedback(entry('anomaly', 'anomaly', reading_id=f"a-{i}"))
            store.add_feedback(entry('normal', 'normal', reading_id=f"n-{i}"))
        insights = store.insights()
        assert insights['summary'].startswith('Model performing well')
        assert insights['needsRetraining'] is False


class TestConversion:
    """Test export and hand-off to the active learner."""

    def test_export_weights_uncertain_higher(self, store):
        store.add_feedback(entry(correct='anomaly', confidence=0.2))
        store.add_feedback(entry(correct='normal'))

        exported = store.export_for_training()
        assert exported[0]['label'] == 1
        assert exported[0]['weight'] == pytest.approx(0.8)
        assert exported[1] == {'features': None, 'label': 0, 'weight': 1.0}

    def test_active_learner_entries(self, store, normal_reading):
        from mrv_guardian.production.active_learning import Verdict

        store.add_feedback(entry('anomaly', 'normal', reading=normal_reading, notes='maintenance'))
        store.add_feedback(entry('normal', 'normal'))

        entries = store.to_active_learner_entries()
        assert len(entries) == 1
        assert entries[0].verdict == Verdict.FALSE_POSITIVE
        assert entries[0].notes == 'maintenance'
        assert entries[0].reading.generated_kwh == 936.0
