"""Shared fixtures for the MRV Guardian test suite."""

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mrv_guardian.features.reading_features import FeatureExtractor  # noqa: E402
from mrv_guardian.simulation.synthetic_readings import (  # noqa: E402
    LABEL_NORMAL,
    SyntheticDataGenerator,
)


NORMAL_READING = {
    'flowRate_m3_per_s': 2.5,
    'headHeight_m': 45.0,
    'generatedKwh': 936.0,
    'pH': 7.2,
    'turbidity_ntu': 12.0,
    'temperature_celsius': 18.0,
    'deviceId': 'TURBINE-1',
}

INFLATED_READING = dict(NORMAL_READING, generatedKwh=9360.0)


@pytest.fixture
def normal_reading():
    return dict(NORMAL_READING)


@pytest.fixture
def inflated_reading():
    return dict(INFLATED_READING)


@pytest.fixture(scope="session")
def synthetic_samples():
    """2000 labelled samples from a fixed seed."""
    return SyntheticDataGenerator(random_state=42).generate(2000)


@pytest.fixture(scope="session")
def normal_readings(synthetic_samples):
    return [s.reading for s in synthetic_samples if s.label == LABEL_NORMAL]


@pytest.fixture(scope="session")
def normal_features(normal_readings):
    return FeatureExtractor().extract_many(normal_readings)


@pytest.fixture(scope="session")
def trained_forest(normal_features):
    """Forest trained on normal synthetic readings, shared read-only."""
    from mrv_guardian.models.isolation_forest import IsolationForest
    return IsolationForest(n_trees=100, subsample_size=256, random_state=7).fit(normal_features)


@pytest.fixture
def rng():
    return np.random.default_rng(0)
