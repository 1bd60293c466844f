"""
Unit tests for DriftMonitor and population_stability_index.

Tests drift detection with synthetic data to verify:
- PSI is near zero for matching distributions and large for shifted ones
- Drift alerts are stored and a DriftDetected is emitted
- Per-head error rates and latency percentiles
"""

from unittest.mock import MagicMock

import numpy as np
import pandas as pd
import pytest

from behaviorradar.ml.monitoring import (
    DriftDetected,
    DriftMonitor,
    RetrainRequested,
    population_stability_index,
)

FEATURES = ["trade_frequency", "risk_taking"]


@pytest.fixture
def reference():
    rng = np.random.default_rng(0)
    return pd.DataFrame({
        "trade_frequency": rng.normal(10.0, 2.0, 500),
        "risk_taking": rng.uniform(0.0, 0.2, 500),
    })


@pytest.fixture
def monitor(session_factory, config, reference):
    monitor = DriftMonitor(session_factory, config, feature_names=FEATURES)
    monitor.set_reference(reference)
    return monitor


class TestPopulationStabilityIndex:
    """PSI over reference-quantile bins."""

    def test_identical_distribution(self):
        """The same sample scores zero."""
        values = np.random.default_rng(1).normal(0, 1, 1000)

        assert population_stability_index(values, values) == pytest.approx(0.0, abs=1e-9)

    def test_shifted_distribution(self):
        """A two-sigma shift is far above the drift threshold."""
        rng = np.random.default_rng(2)
        reference = rng.normal(0, 1, 1000)
        shifted = rng.normal(2, 1, 1000)

        assert population_stability_index(reference, shifted) > 1.0

    def test_constant_reference(self):
        """A constant reference still yields a finite score."""
        psi = population_stability_index(np.zeros(100), np.ones(100))

        assert np.isfinite(psi)
        assert psi > 0

    def test_empty_inputs(self):
        assert population_stability_index(np.array([]), np.ones(5)) == 0.0


class TestDriftEvaluation:
    """evaluate() alerts and retrain signals."""

    def _observe(self, monitor, frequency, count=500, seed=3):
        rng = np.random.default_rng(seed)
        for value in rng.normal(frequency, 2.0, count):
            monitor.observe_features({"trade_frequency": float(value), "risk_taking": float(rng.uniform(0, 0.2))})

    def test_no_drift(self, monitor):
        """Serving data from the training distribution raises nothing."""
        subscriber = MagicMock()
        monitor.subscribe(subscriber)
        self._observe(monitor, frequency=10.0)

        report = monitor.evaluate()

        assert report.drifted_features == []
        assert report.retrain_requested is False
        subscriber.assert_not_called()

    def test_drift_notifies_subscribers(self, monitor):
        """A shifted feature raises an alert and delivers DriftDetected to subscribers."""
        subscriber = MagicMock()
        monitor.subscribe(subscriber)
        self._observe(monitor, frequency=25.0)

        report = monitor.evaluate()

        assert report.drifted_features == ["trade_frequency"]
        signal = subscriber.call_args[0][0]
        assert isinstance(signal, DriftDetected)
        assert signal.drifted_features == ["trade_frequency"]
        assert signal.max_psi == report.psi["trade_frequency"]
        assert [a.metric_name for a in signal.alerts] == ["trade_frequency"]
        request = signal.retrain_request()
        assert isinstance(request, RetrainRequested)
        assert request.reason == "feature_drift"
        assert request.details["features"] == ["trade_frequency"]
        alerts = monitor.recent_alerts()
        assert alerts[0]["alert_type"] == "feature_drift"
        assert alerts[0]["severity"] == "high"

    def test_too_few_samples(self, monitor):
        """PSI waits for drift_min_samples observations."""
        self._observe(monitor, frequency=25.0, count=5)

        assert monitor.feature_psi() == {}

    def test_without_reference(self, session_factory, config):
        """Before any training population is set, nothing is compared."""
        monitor = DriftMonitor(session_factory, config, feature_names=FEATURES)
        monitor.observe_features({"trade_frequency": 1.0})

        assert not monitor.has_reference
        assert monitor.evaluate().psi == {}

    def test_failing_subscriber_is_logged(self, monitor):
        """A broken subscriber does not stop evaluation."""
        monitor.subscribe(MagicMock(side_effect=RuntimeError("queue down")))
        self._observe(monitor, frequency=25.0)

        assert monitor.evaluate().retrain_requested is True


class TestServingStatistics:
    """Head error rates and latency."""

    def test_head_error_rate_alert(self, monitor):
        """A head failing above the threshold raises a high-severity alert."""
        for i in range(40):
            monitor.record_prediction(
                latency_ms=5.0,
                head_names=["risk_regressor", "anomaly_detector"],
                degraded_heads=["risk_regressor"] if i % 4 == 0 else [],
            )

        rates = monitor.head_error_rates()
        report = monitor.evaluate()

        assert rates["risk_regressor"] == pytest.approx(0.25)
        assert rates["anomaly_detector"] == 0.0
        head_alerts = [a for a in report.alerts if a.alert_type == "head_errors"]
        assert [a.metric_name for a in head_alerts] == ["risk_regressor"]

    def test_latency_percentiles(self, monitor):
        for latency in range(1, 101):
            monitor.record_latency(float(latency))

        latency = monitor.latency_percentiles()

        assert latency["count"] == 100
        assert latency["p50"] == pytest.approx(50.5)
        assert latency["p99"] > latency["p95"] > latency["p50"]

    def test_latency_alert_over_budget(self, monitor, config):
        """p99 above the on-demand budget raises a low-severity alert."""
        for _ in range(10):
            monitor.record_latency(config.serving_on_demand_budget_ms * 2.0)

        report = monitor.evaluate()

        assert [a.alert_type for a in report.alerts] == ["latency"]
        assert report.alerts[0].severity == "low"

    def test_new_reference_resets_windows(self, monitor, reference):
        """Setting a reference after promotion starts fresh windows."""
        monitor.record_latency(10.0)
        monitor.set_reference(reference)

        assert monitor.latency_percentiles()["count"] == 0
