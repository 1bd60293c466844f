"""
Drift monitoring module for model serving.

Keeps rolling windows of serving observations (latency, per-head failures and
the feature values seen at prediction time) and compares the feature windows
with the training population using the Population Stability Index. Drift is
reported as a signal: subscribers receive a DriftDetected and the alert is
stored for operators, but nothing is retrained automatically from here.
"""

import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

import numpy as np
import pandas as pd
from sqlalchemy import select

from behaviorradar.config import Settings, settings as default_settings
from behaviorradar.db.models import DriftAlertRecord
from behaviorradar.db.session import SessionFactory, get_db_context, get_db_transaction
from behaviorradar.log_config import logger
from behaviorradar.ml.feature_store.registry import feature_registry

PSI_FLOOR = 1e-4


@dataclass(frozen=True)
class RetrainRequested:
    """Advisory request for the training orchestrator."""
    reason: str
    details: Dict[str, Any] = field(default_factory=dict)
    requested_at: datetime = field(default_factory=datetime.utcnow)


@dataclass(frozen=True)
class DriftAlert:
    alert_type: str  # feature_drift, head_errors, latency
    metric_name: str
    value: float
    threshold: float
    severity: str  # low, medium, high
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass(frozen=True)
class DriftDetected:
    """
    Signal delivered to drift subscribers when serving features drift.
    
    Advisory only: subscribers decide what to do with it. The orchestrator
    queues the matching RetrainRequested for the next training run.
    """
    drifted_features: List[str]
    psi: Dict[str, float]
    alerts: List[DriftAlert] = field(default_factory=list)
    detected_at: datetime = field(default_factory=datetime.utcnow)
    
    @property
    def max_psi(self) -> float:
        return max(self.psi.values(), default=0.0)
    
    def retrain_request(self) -> RetrainRequested:
        return RetrainRequested(
            reason="feature_drift",
            details={"features": list(self.drifted_features), "psi": dict(self.psi)},
            requested_at=self.detected_at,
        )


@dataclass
class DriftReport:
    evaluated_at: datetime
    sample_count: int
    psi: Dict[str, float]
    drifted_features: List[str]
    latency_ms: Dict[str, Optional[float]]
    head_error_rates: Dict[str, float]
    alerts: List[DriftAlert]
    retrain_requested: bool
    
    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def population_stability_index(reference: np.ndarray, current: np.ndarray, bins: int = 10) -> float:
    """
    PSI of ``current`` against ``reference`` over reference-quantile bins.
    
    Bin proportions are floored at PSI_FLOOR so empty bins stay finite.
    """
    reference = np.asarray(reference, dtype=float)
    current = np.asarray(current, dtype=float)
    if len(reference) == 0 or len(current) == 0:
        return 0.0
    
    edges = np.unique(np.quantile(reference, np.linspace(0.0, 1.0, bins + 1)))
    if len(edges) == 1:
        # Constant reference: below, at and above the single value
        interior = np.array([edges[0] - 1e-9, edges[0] + 1e-9])
    elif len(edges) == 2:
        interior = edges
    else:
        interior = edges[1:-1]
    full_edges = np.concatenate([[-np.inf], interior, [np.inf]])
    
    ref_pct = np.maximum(np.histogram(reference, bins=full_edges)[0] / len(reference), PSI_FLOOR)
    cur_pct = np.maximum(np.histogram(current, bins=full_edges)[0] / len(current), PSI_FLOOR)
    return float(np.sum((cur_pct - ref_pct) * np.log(cur_pct / ref_pct)))


class DriftMonitor:
    """Monitors serving behavior against the training population.
    
    Observations are recorded on every prediction. evaluate() computes PSI per
    feature once drift_min_samples observations exist, per-head error rates and
    latency percentiles, persists alerts and notifies subscribers when any
    feature drifts past drift_psi_threshold.
    """
    
    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        config: Settings = default_settings,
        feature_names: Optional[List[str]] = None,
    ):
        self._session_factory = session_factory
        self.config = config
        self.feature_names = feature_names or feature_registry.get_feature_names()
        self._lock = threading.Lock()
        self._subscribers: List[Callable[[DriftDetected], None]] = []
        self._reference: Dict[str, np.ndarray] = {}
        self._last_report: Optional[DriftReport] = None
        self._reset_windows()
    
    def _reset_windows(self) -> None:
        size = self.config.drift_window_size
        self._latencies: Deque[float] = deque(maxlen=size)
        self._features: Dict[str, Deque[float]] = {name: deque(maxlen=size) for name in self.feature_names}
        self._head_calls: Dict[str, Deque[bool]] = {}
    
    def subscribe(self, listener: Callable[[DriftDetected], None]) -> None:
        self._subscribers.append(listener)
    
    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------
    
    def set_reference(self, frame: pd.DataFrame) -> None:
        """Use the training population as the PSI reference and start fresh windows."""
        with self._lock:
            self._reference = {
                name: frame[name].to_numpy(dtype=float)
                for name in self.feature_names
                if name in frame.columns
            }
            self._reset_windows()
        logger.info(f"Drift reference set from {len(frame)} training rows")
    
    @property
    def has_reference(self) -> bool:
        return bool(self._reference)
    
    def record_latency(self, latency_ms: float) -> None:
        with self._lock:
            self._latencies.append(float(latency_ms))

    def record_head_result(self, head: str, failed: bool) -> None:
        with self._lock:
            window = self._head_calls.get(head)
            if window is None:
                window = self._head_calls[head] = deque(maxlen=self.config.drift_window_size)
            window.append(bool(failed))

    def observe_features(self, features: Dict[str, float]) -> None:
        with self._lock:
            for name, window in self._features.items():
                if name in features:
                    window.append(float(features[name]))

    def record_prediction(
        self,
        latency_ms: float,
        features: Optional[Dict[str, float]] = None,
        head_names=(),
        degraded_heads=(),
    ) -> None:
        """Record one served prediction; features are None for result-cache hits."""
        degraded = set(degraded_heads)
        self.record_latency(latency_ms)
        if features:
            self.observe_features(features)
        for head in sorted(set(head_names) | degraded):
            self.record_head_result(head, head in degraded)
    
    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------
    
    def latency_percentiles(self) -> Dict[str, Optional[float]]:
        with self._lock:
            values = np.array(self._latencies, dtype=float)
        if len(values) == 0:
            return {"p50": None, "p95": None, "p99": None, "count": 0}
        p50, p95, p99 = np.percentile(values, [50, 95, 99])
        return {"p50": float(p50), "p95": float(p95), "p99": float(p99), "count": int(len(values))}
    
    def head_error_rates(self) -> Dict[str, float]:
        with self._lock:
            return {head: float(np.mean(calls)) for head, calls in self._head_calls.items() if calls}
    
    def feature_psi(self) -> Dict[str, float]:
        """PSI for every feature with a reference and enough serving samples."""
        with self._lock:
            windows = {name: np.array(values, dtype=float) for name, values in self._features.items()}
            reference = dict(self._reference)
        
        psi = {}
        for name, current in windows.items():
            if name not in reference or len(current) < self.config.drift_min_samples:
                continue
            psi[name] = round(population_stability_index(reference[name], current, self.config.drift_psi_bins), 6)
        return psi
    
    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------
    
    def evaluate(self) -> DriftReport:
        cfg = self.config
        psi = self.feature_psi()
        latency = self.latency_percentiles()
        error_rates = self.head_error_rates()
        
        alerts: List[DriftAlert] = []
        drifted = sorted(name for name, value in psi.items() if value >= cfg.drift_psi_threshold)
        for name in drifted:
            alerts.append(DriftAlert(
                alert_type="feature_drift",
                metric_name=name,
                value=psi[name],
                threshold=cfg.drift_psi_threshold,
                severity="high" if psi[name] >= 2 * cfg.drift_psi_threshold else "medium",
            ))
        
        with self._lock:
            call_counts = {head: len(calls) for head, calls in self._head_calls.items()}
        for head, rate in sorted(error_rates.items()):
            if call_counts.get(head, 0) >= cfg.drift_min_samples and rate > cfg.drift_error_rate_threshold:
                alerts.append(DriftAlert(
                    alert_type="head_errors",
                    metric_name=head,
                    value=rate,
                    threshold=cfg.drift_error_rate_threshold,
                    severity="high",
                ))
        
        if latency["p99"] is not None and latency["p99"] > cfg.serving_on_demand_budget_ms:
            alerts.append(DriftAlert(
                alert_type="latency",
                metric_name="latency_p99_ms",
                value=latency["p99"],
                threshold=float(cfg.serving_on_demand_budget_ms),
                severity="low",
            ))
        
        report = DriftReport(
            evaluated_at=datetime.utcnow(),
            sample_count=latency["count"],
            psi=psi,
            drifted_features=drifted,
            latency_ms=latency,
            head_error_rates=error_rates,
            alerts=alerts,
            retrain_requested=bool(drifted),
        )
        
        if alerts:
            self._store_alerts(alerts)
        if drifted:
            self._notify(DriftDetected(
                drifted_features=drifted,
                psi={name: psi[name] for name in drifted},
                alerts=[a for a in alerts if a.alert_type == "feature_drift"],
            ))
        
        self._last_report = report
        logger.info(
            f"Drift evaluation: {len(psi)} features checked, {len(drifted)} drifted, "
            f"{len(alerts)} alerts"
        )
        return report
    
    @property
    def last_report(self) -> Optional[DriftReport]:
        return self._last_report
    
    def _store_alerts(self, alerts: List[DriftAlert]) -> None:
        with get_db_transaction(self._session_factory) as db:
            for alert in alerts:
                db.add(DriftAlertRecord(
                    alert_type=alert.alert_type,
                    severity=alert.severity,
                    metric_name=alert.metric_name,
                    metric_value=alert.value,
                    threshold=alert.threshold,
                    details=alert.details or None,
                    created_at=alert.created_at,
                ))
        for alert in alerts:
            logger.warning(
                f"Drift alert [{alert.severity}] {alert.alert_type}: "
                f"{alert.metric_name}={alert.value:.4f} (threshold {alert.threshold})"
            )
    
    def _notify(self, signal: DriftDetected) -> None:
        for listener in list(self._subscribers):
            try:
                listener(signal)
            except Exception:
                logger.exception(f"Drift subscriber {listener!r} failed")
    
    def recent_alerts(self, limit: int = 50) -> List[Dict[str, Any]]:
        with get_db_context(self._session_factory) as db:
            rows = db.execute(
                select(DriftAlertRecord).order_by(DriftAlertRecord.created_at.desc()).limit(limit)
            ).scalars().all()
            return [
                {
                    "alert_type": row.alert_type,
                    "severity": row.severity,
                    "metric_name": row.metric_name,
                    "metric_value": row.metric_value,
                    "threshold": row.threshold,
                    "details": row.details,
                    "created_at": row.created_at,
                }
                for row in rows
            ]
