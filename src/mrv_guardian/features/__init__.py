"""
Feature extraction for hydropower telemetry.

Modules:
    - reading_features: Reading record, domain bounds, 8-feature extractor
"""

from .reading_features import (
    DOMAIN_BOUNDS,
    FEATURE_NAMES,
    N_FEATURES,
    DomainBounds,
    FeatureExtractor,
    Reading,
    as_reading,
    extract_features,
    theoretical_energy,
)

__all__ = [
    "DOMAIN_BOUNDS",
    "FEATURE_NAMES",
    "N_FEATURES",
    "DomainBounds",
    "FeatureExtractor",
    "Reading",
    "as_reading",
    "extract_features",
    "theoretical_energy",
]
