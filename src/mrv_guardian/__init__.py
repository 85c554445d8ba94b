"""
MRV Guardian ML core.

Unsupervised fraud detection for hydropower MRV telemetry: feature
extraction, synthetic bootstrap data, a from-scratch Isolation Forest,
KS drift detection, Holt-Winters forecasting and an active-learning loop.
"""

__version__ = "1.0.0"
