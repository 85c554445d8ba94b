"""
Test suite for the periodic monitoring scheduler.
"""

import time


class FakeLearner:
    def __init__(self, due=True):
        self.due = due
        self.retrains = 0

    def should_retrain(self):
        return self.due

    def retrain(self):
        self.retrains += 1
        return True


class ExplodingForecaster:
    def train(self, series):
        raise RuntimeError("series unavailable")


class TestRegistration:
    """Test which jobs get registered."""

    def test_no_components_no_jobs(self):
        from mrv_guardian.production.monitoring_jobs import MonitoringScheduler

        assert len(MonitoringScheduler().scheduler.jobs) == 0

    def test_all_components(self, normal_readings):
        from mrv_guardian.models.forecasting import HoltWintersForecaster
        from mrv_guardian.production.monitoring_jobs import MonitoringScheduler
        from mrv_guardian.validation.drift_monitor import DriftDetector

        scheduler = MonitoringScheduler(
            drift_detector=DriftDetector(),
            recent_readings=lambda: normal_readings[:50],
            forecaster=HoltWintersForecaster(),
            generation_series=lambda: [1.0] * 48,
            learner=FakeLearner(),
        )
        assert len(scheduler.scheduler.jobs) == 3


class TestJobs:
    """Test job bodies and error isolation."""

    def test_run_all(self, normal_readings):
        from mrv_guardian.models.forecasting import HoltWintersForecaster
        from mrv_guardian.production.monitoring_jobs import MonitoringScheduler
        from mrv_guardian.validation.drift_monitor import DriftDetector

        drift = DriftDetector()
        drift.initialize(normal_readings[:300])
        learner = FakeLearner()
        forecaster = HoltWintersForecaster()

        scheduler = MonitoringScheduler(
            drift_detector=drift,
            recent_readings=lambda: normal_readings[:300],
            forecaster=forecaster,
            generation_series=lambda: [500.0 + i % 24 for i in range(72)],
            learner=learner,
        )
        scheduler.run_all()

        assert scheduler.last_results['drift_check'].status == 'ok'
        assert scheduler.last_results['forecast_retrain']['status'] == 'trained'
        assert scheduler.last_results['feedback_check'] is True
        assert forecaster.trained
        assert learner.retrains == 1

    def test_feedback_not_due(self):
        from mrv_guardian.production.monitoring_jobs import MonitoringScheduler

        learner = FakeLearner(due=False)
        scheduler = MonitoringScheduler(learner=learner)
        assert scheduler.run_feedback_check() is False
        assert learner.retrains == 0

    def test_failing_job_does_not_stop_others(self):
        from mrv_guardian.production.monitoring_jobs import MonitoringScheduler

        learner = FakeLearner()
        scheduler = MonitoringScheduler(
            forecaster=ExplodingForecaster(),
            generation_series=lambda: [],
            learner=learner,
        )
        scheduler.run_all()

        assert scheduler.last_results['forecast_retrain'] == {'error': 'series unavailable'}
        assert learner.retrains == 1

    def test_drift_alert_callback(self, normal_readings):
        from mrv_guardian.features.reading_features import Reading
        from mrv_guardian.production.monitoring_jobs import MonitoringScheduler
        from mrv_guardian.validation.drift_monitor import DriftDetector

        drift = DriftDetector()
        drift.initialize(normal_readings[:300])
        shifted = [
            Reading(flow_rate=r.flow_rate, head_height=r.head_height,
                    generated_kwh=r.generated_kwh * 4)
            for r in normal_readings[:100]
        ]
        alerts = []
        scheduler = MonitoringScheduler(
            drift_detector=drift,
            recent_readings=lambda: shifted,
            alert_callback=alerts.append,
        )
        report = scheduler.run_drift_check()

        assert report.has_drift
        assert alerts == [report]


class TestLoop:
    """Test the background thread lifecycle."""

    def test_start_and_stop(self):
        from mrv_guardian.config import SchedulerConfig
        from mrv_guardian.production.monitoring_jobs import MonitoringScheduler

        scheduler = MonitoringScheduler(
            learner=FakeLearner(),
            config=SchedulerConfig(poll_seconds=0.01),
        )
        scheduler.start()
        thread = scheduler._thread
        time.sleep(0.05)
        assert thread.is_alive()

        scheduler.stop(timeout=2)
        assert not thread.is_alive()
        assert scheduler._thread is None


class TestForecastPersistence:
    """Test the forecaster following the forecast config section."""

    def test_retrain_saves_to_model_path_and_restores(self, tmp_path):
        from mrv_guardian.config import GuardianConfig
        from mrv_guardian.production.monitoring_jobs import MonitoringScheduler

        path = tmp_path / "models" / "forecaster.json"
        config = GuardianConfig.from_dict({
            'forecast': {'season_length': 12, 'alpha': 0.4, 'model_path': str(path)},
        })
        series = [500.0 + i % 12 for i in range(48)]

        scheduler = MonitoringScheduler.from_config(config, generation_series=lambda: series)
        assert scheduler.forecaster.season_length == 12
        assert scheduler.forecaster.alpha == 0.4
        assert scheduler.run_forecast_retrain()['status'] == 'trained'
        assert path.exists()

        restarted = MonitoringScheduler.from_config(config, generation_series=lambda: series)
        assert restarted.forecaster.trained
        assert restarted.forecaster.predict(12) == scheduler.forecaster.predict(12)

    def test_untrained_forecaster_not_saved(self, tmp_path):
        from mrv_guardian.config import GuardianConfig
        from mrv_guardian.production.monitoring_jobs import MonitoringScheduler

        path = tmp_path / "forecaster.json"
        config = GuardianConfig.from_dict({'forecast': {'model_path': str(path)}})
        scheduler = MonitoringScheduler.from_config(config, generation_series=lambda: [1.0] * 5)

        assert scheduler.run_forecast_retrain()['status'] == 'insufficient_data'
        assert not path.exists()

    def test_corrupt_forecaster_snapshot_starts_fresh(self, tmp_path):
        from mrv_guardian.config import ForecastConfig
        from mrv_guardian.production.monitoring_jobs import restore_forecaster

        path = tmp_path / "forecaster.json"
        path.write_text("{broken")
        forecaster = restore_forecaster(ForecastConfig(model_path=str(path), season_length=6))

        assert not forecaster.trained
        assert forecaster.season_length == 6

    def test_unwritable_forecast_path_is_logged_only(self, tmp_path):
        from mrv_guardian.models.forecasting import HoltWintersForecaster
        from mrv_guardian.production.monitoring_jobs import MonitoringScheduler

        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        scheduler = MonitoringScheduler(
            forecaster=HoltWintersForecaster(),
            generation_series=lambda: [500.0 + i % 24 for i in range(72)],
            forecast_path=str(blocker / "forecaster.json"),
        )
        scheduler.run_all()
        assert scheduler.last_results['forecast_retrain']['status'] == 'trained'
