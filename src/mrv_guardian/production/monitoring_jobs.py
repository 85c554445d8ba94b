"""
Periodic monitoring jobs.

Registers advisory background jobs with the ``schedule`` library and runs
them on a daemon thread:

- drift check of recent readings against the detector's training baseline
- forecaster retraining on the aggregated generation series
- active-learning retrain check

Jobs are advisory: an exception is logged and the loop keeps running.

Usage Example:
    >>> scheduler = MonitoringScheduler(
    ...     drift_detector=drift, recent_readings=lambda: repo.last_readings(500),
    ...     learner=learner,
    ... )
    >>> scheduler.start()
    >>> ...
    >>> scheduler.stop()
"""

import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import schedule
from loguru import logger

from mrv_guardian.config import ForecastConfig, GuardianConfig, SchedulerConfig
from mrv_guardian.exceptions import SnapshotError
from mrv_guardian.features.reading_features import ReadingLike
from mrv_guardian.models.forecasting import HoltWintersForecaster
from mrv_guardian.production.active_learning import ActiveLearner
from mrv_guardian.production.model_store import load_snapshot, save_snapshot
from mrv_guardian.validation.drift_monitor import DriftDetector, DriftReport


def restore_forecaster(config: ForecastConfig) -> HoltWintersForecaster:
    """Load the forecaster saved at ``config.model_path``, or build a fresh one."""
    path = config.model_path
    if path and Path(path).exists():
        try:
            return HoltWintersForecaster.from_snapshot(load_snapshot(path))
        except (SnapshotError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Could not restore forecaster snapshot: {e}")
    return HoltWintersForecaster.from_config(config)


class MonitoringScheduler:
    """
    Runs drift, forecast and feedback jobs on fixed intervals.

    Args:
        drift_detector: Detector to check; job skipped when None
        recent_readings: Returns the production window for drift checks
        forecaster: Forecaster to retrain; job skipped when None
        generation_series: Returns the aggregated generation series
        learner: ActiveLearner to poll; job skipped when None
        config: Job intervals
        alert_callback: Receives drift reports that found drift
        forecast_path: Where the forecaster is saved after each retrain
    """

    def __init__(
        self,
        drift_detector: Optional[DriftDetector] = None,
        recent_readings: Optional[Callable[[], List[ReadingLike]]] = None,
        forecaster: Optional[HoltWintersForecaster] = None,
        generation_series: Optional[Callable[[], List[Any]]] = None,
        learner: Optional[ActiveLearner] = None,
        config: Optional[SchedulerConfig] = None,
        alert_callback: Optional[Callable[[DriftReport], Any]] = None,
        forecast_path: Optional[str] = None
    ):
        self.drift_detector = drift_detector
        self.recent_readings = recent_readings
        self.forecaster = forecaster
        self.generation_series = generation_series
        self.learner = learner
        self.config = config or SchedulerConfig()
        self.alert_callback = alert_callback
        self.forecast_path = forecast_path

        self.scheduler = schedule.Scheduler()
        self.last_results: Dict[str, Any] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._register_jobs()

    @classmethod
    def from_config(
        cls,
        config: GuardianConfig,
        drift_detector: Optional[DriftDetector] = None,
        recent_readings: Optional[Callable[[], List[ReadingLike]]] = None,
        generation_series: Optional[Callable[[], List[Any]]] = None,
        learner: Optional[ActiveLearner] = None,
        alert_callback: Optional[Callable[[DriftReport], Any]] = None
    ) -> 'MonitoringScheduler':
        """Build a scheduler whose forecaster follows the ``forecast`` section."""
        forecaster = restore_forecaster(config.forecast) if generation_series is not None else None
        return cls(
            drift_detector=drift_detector,
            recent_readings=recent_readings,
            forecaster=forecaster,
            generation_series=generation_series,
            learner=learner,
            config=config.scheduler,
            alert_callback=alert_callback,
            forecast_path=config.forecast.model_path,
        )

    def _register_jobs(self) -> None:
        if self.drift_detector is not None and self.recent_readings is not None:
            self.scheduler.every(self.config.drift_check_minutes).minutes.do(
                self._run_safely, 'drift_check', self.run_drift_check
            )
        if self.forecaster is not None and self.generation_series is not None:
            self.scheduler.every(self.config.forecast_retrain_hours).hours.do(
                self._run_safely, 'forecast_retrain', self.run_forecast_retrain
            )
        if self.learner is not None:
            self.scheduler.every(self.config.feedback_check_minutes).minutes.do(
                self._run_safely, 'feedback_check', self.run_feedback_check
            )
        logger.info(f"Registered {len(self.scheduler.jobs)} monitoring jobs")

    def _run_safely(self, name: str, job: Callable[[], Any]) -> None:
        try:
            self.last_results[name] = job()
        except Exception as e:
            logger.error(f"Monitoring job '{name}' failed: {e}")
            self.last_results[name] = {'error': str(e)}

    def run_drift_check(self) -> DriftReport:
        report = self.drift_detector.check_drift(self.recent_readings())
        if report.has_drift:
            self.drift_detector.send_alert(report, self.alert_callback)
        return report

    def run_forecast_retrain(self) -> Dict[str, Any]:
        result = self.forecaster.train(self.generation_series())
        if self.forecast_path and result.get('status') == 'trained':
            try:
                save_snapshot(self.forecaster.to_snapshot(), self.forecast_path)
            except SnapshotError as e:
                logger.error(f"Failed to persist forecaster: {e}")
        return result

    def run_feedback_check(self) -> bool:
        if self.learner.should_retrain():
            return self.learner.retrain()
        return False

    def run_all(self) -> None:
        """Run every registered job once, now."""
        self.scheduler.run_all()

    def _loop(self) -> None:
        logger.info("Starting monitoring scheduler loop")
        while not self._stop.is_set():
            self.scheduler.run_pending()
            time.sleep(self.config.poll_seconds)
        logger.info("Monitoring scheduler loop stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name='guardian-monitoring', daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None
