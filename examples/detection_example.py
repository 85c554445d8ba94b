"""
Example usage of the MRV Guardian ML core.

Walks through the full loop: synthetic data, training and evaluation,
per-reading detection, drift checks, generation forecasting and
operator feedback.
"""

from mrv_guardian.config import DetectorConfig, ForestConfig
from mrv_guardian.features import Reading
from mrv_guardian.models import HoltWintersForecaster
from mrv_guardian.production import ActiveLearner, AnomalyDetector, Verdict
from mrv_guardian.simulation import SyntheticDataGenerator, label_counts, split_dataset
from mrv_guardian.validation import DriftDetector


def header(title):
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def example_training():
    """Example: Train on normal synthetic readings and evaluate."""
    header("EXAMPLE 1: Training and Evaluation")

    samples = SyntheticDataGenerator(random_state=42).generate(3000)
    print(f"Labels: {label_counts(samples)}")
    split = split_dataset(samples)

    drift = DriftDetector()
    detector = AnomalyDetector(
        forest_config=ForestConfig(n_trees=100),
        detector_config=DetectorConfig(model_path=None, auto_train=False),
        drift_detector=drift,
        random_state=42,
    )
    detector.retrain([s.reading for s in split['train']])

    metrics = detector.evaluate(split['val_normal'] + split['val_anomalies'])
    print(f"Precision: {metrics['precision']:.3f}  Recall: {metrics['recall']:.3f}  "
          f"ROC AUC: {metrics['roc_auc']:.3f}")
    return detector, drift, split


def example_detection(detector):
    """Example: Score individual readings."""
    header("EXAMPLE 2: Detection")

    normal = {'flowRate_m3_per_s': 2.5, 'headHeight_m': 45, 'generatedKwh': 936}
    inflated = dict(normal, generatedKwh=9360)
    for name, reading in (('normal', normal), ('10x inflated', inflated)):
        result = detector.detect(reading)
        print(f"{name:<14} score={result['score']:.3f} anomaly={result['isAnomaly']} "
              f"confidence={result['confidence']:.2f}")


def example_drift(drift, split):
    """Example: Compare a production window with the training baseline."""
    header("EXAMPLE 3: Drift Monitoring")

    window = [s.reading for s in split['val_normal']]
    print(f"Held-out normals: {drift.check_drift(window).recommendation}")

    inflated = [
        Reading(flow_rate=r.flow_rate, head_height=r.head_height, generated_kwh=r.generated_kwh * 2,
                ph=r.ph, turbidity=r.turbidity, temperature=r.temperature)
        for r in window
    ]
    report = drift.check_drift(inflated)
    for feature in report.drifted_features[:3]:
        print(f"  {feature.feature:<22} p={feature.p_value:.2e} severity={feature.severity}")


def example_forecasting(split):
    """Example: Forecast generation and flag underperformance."""
    header("EXAMPLE 4: Forecasting")

    series = [s.reading.generated_kwh for s in split['train'][:96]]
    forecaster = HoltWintersForecaster(season_length=24)
    print(forecaster.train(series))
    for step in forecaster.predict(3):
        print(f"  t+{step['step']}: {step['forecast']:.1f} kWh "
              f"[{step['lower']:.1f}, {step['upper']:.1f}]")
    print(forecaster.check_underperformance(series[-1] * 0.5))


def example_feedback(detector, split):
    """Example: Feed operator verdicts back into the detector."""
    header("EXAMPLE 5: Active Learning")

    learner = ActiveLearner(detector)
    for sample in split['val_normal'][:60]:
        learner.record(sample.reading, Verdict.TRUE_NEGATIVE, operator='ops-1')
    print(f"Should retrain: {learner.should_retrain()}")
    print(f"Retrained: {learner.retrain()}")
    print(learner.metrics())


def main():
    detector, drift, split = example_training()
    example_detection(detector)
    example_drift(drift, split)
    example_forecasting(split)
    example_feedback(detector, split)
    detector.close()


if __name__ == '__main__':
    main()
