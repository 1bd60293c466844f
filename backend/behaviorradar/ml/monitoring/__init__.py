"""
ML Drift Monitoring.

This module provides:
- DriftMonitor: serving latency, per-head error rates and feature drift (PSI)
- DriftDetected: signal delivered to subscribers when features drift
- RetrainRequested / DriftAlert: the retrain request and the stored alerts
"""

from behaviorradar.ml.monitoring.drift_monitor import (
    DriftAlert,
    DriftDetected,
    DriftMonitor,
    DriftReport,
    RetrainRequested,
    population_stability_index,
)

__all__ = [
    "DriftMonitor",
    "DriftReport",
    "DriftAlert",
    "DriftDetected",
    "RetrainRequested",
    "population_stability_index",
]
