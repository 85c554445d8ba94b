"""
Simulation package for the MRV Guardian ML core.

Classes:
    SyntheticDataGenerator: Seeded generator of labelled hydropower readings
"""

from mrv_guardian.simulation.synthetic_readings import (
    ANOMALY_LABELS,
    LABEL_FRAUD_INFLATE,
    LABEL_FRAUD_UNDERREPORT,
    LABEL_NORMAL,
    LABEL_SENSOR_FAULT,
    MONTHLY_SEASONS,
    SeasonProfile,
    SyntheticDataGenerator,
    SyntheticSample,
    label_counts,
    split_dataset,
    to_frame,
)

__all__ = [
    'ANOMALY_LABELS',
    'LABEL_FRAUD_INFLATE',
    'LABEL_FRAUD_UNDERREPORT',
    'LABEL_NORMAL',
    'LABEL_SENSOR_FAULT',
    'MONTHLY_SEASONS',
    'SeasonProfile',
    'SyntheticDataGenerator',
    'SyntheticSample',
    'label_counts',
    'split_dataset',
    'to_frame',
]
