"""
Prometheus-style metrics for the serving, ingestion and training paths.

Counters live in process memory and reset on restart. Gauges derived from the
drift monitor and the intervention feed are read when the text is rendered.
"""

import threading
from datetime import datetime
from typing import Dict, List, Optional

# Simple in-memory counters (reset on restart)
_METRICS: Dict[str, int] = {
    "predictions_total": 0,
    "prediction_cache_hits_total": 0,
    "prediction_cache_misses_total": 0,
    "prediction_timeouts_total": 0,
    "batch_predictions_total": 0,
    "events_ingested_total": 0,
    "events_rejected_total": 0,
    "pattern_history_errors_total": 0,
}

# Labeled counters
_LABELED_METRICS: Dict[str, Dict[str, int]] = {
    "prediction_errors_total": {},  # error_code=...
    "head_errors_total": {},  # head=...
    "training_runs_total": {},  # state=PROMOTED|REJECTED
}

# Histogram buckets for prediction latency (in seconds)
_LATENCY_BUCKETS = [0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
_LATENCY_HISTOGRAM: Dict[str, float] = {f"le_{b}": 0 for b in _LATENCY_BUCKETS}
_LATENCY_HISTOGRAM.update({"le_inf": 0, "sum": 0.0, "count": 0})

_START_TIME = datetime.utcnow()
_LOCK = threading.Lock()


def _label_key(labels: Dict[str, str]) -> str:
    return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))


def increment_metric(metric_name: str, value: int = 1):
    """Increment a metric counter."""
    with _LOCK:
        if metric_name in _METRICS:
            _METRICS[metric_name] += value


def increment_counter(metric_name: str, labels: Dict[str, str] = None, value: int = 1):
    """
    Increment a counter with optional labels.
    
    Args:
        metric_name: Name of the metric to increment
        labels: Optional dictionary of label key-value pairs
        value: Amount to increment by (default 1)
    """
    with _LOCK:
        if metric_name in _METRICS:
            _METRICS[metric_name] += value
        elif metric_name in _LABELED_METRICS and labels:
            label_key = _label_key(labels)
            series = _LABELED_METRICS[metric_name]
            series[label_key] = series.get(label_key, 0) + value


def observe_latency(latency_seconds: float) -> None:
    """Observe prediction latency for histogram tracking."""
    with _LOCK:
        _LATENCY_HISTOGRAM["sum"] += latency_seconds
        _LATENCY_HISTOGRAM["count"] += 1
        for bucket in _LATENCY_BUCKETS:
            if latency_seconds <= bucket:
                _LATENCY_HISTOGRAM[f"le_{bucket}"] += 1
        _LATENCY_HISTOGRAM["le_inf"] += 1


def get_metrics() -> Dict[str, int]:
    """Get current metric values."""
    with _LOCK:
        return _METRICS.copy()


def get_labeled_metrics(metric_name: str) -> Dict[str, int]:
    with _LOCK:
        return dict(_LABELED_METRICS.get(metric_name, {}))


def reset_metrics() -> None:
    """Zero every counter; used between tests."""
    with _LOCK:
        for name in _METRICS:
            _METRICS[name] = 0
        for series in _LABELED_METRICS.values():
            series.clear()
        for key in _LATENCY_HISTOGRAM:
            _LATENCY_HISTOGRAM[key] = 0


def _counter(lines: List[str], name: str, help_text: str, value) -> None:
    lines.extend([f"# HELP {name} {help_text}", f"# TYPE {name} counter", f"{name} {value}", ""])


def _labeled(lines: List[str], name: str, help_text: str, kind: str = "counter") -> None:
    lines.extend([f"# HELP {name} {help_text}", f"# TYPE {name} {kind}"])
    series = _LABELED_METRICS[name]
    if series:
        for label_str, count in sorted(series.items()):
            lines.append(f"{name}{{{label_str}}} {count}")
    else:
        lines.append(f"{name} 0")
    lines.append("")


def get_metrics_text(drift_monitor=None, intervention_feed=None) -> str:
    """
    Get metrics in Prometheus text format.
    
    Returns:
        str: Prometheus-formatted metrics
    """
    uptime_seconds = int((datetime.utcnow() - _START_TIME).total_seconds())
    lines: List[str] = []
    
    with _LOCK:
        _counter(lines, "predictions_total", "Total predictions served", _METRICS["predictions_total"])
        _counter(lines, "prediction_cache_hits_total", "Predictions served from the result cache",
                 _METRICS["prediction_cache_hits_total"])
        _counter(lines, "prediction_cache_misses_total", "Predictions computed by the model heads",
                 _METRICS["prediction_cache_misses_total"])
        _counter(lines, "prediction_timeouts_total", "Predictions that exceeded their latency budget",
                 _METRICS["prediction_timeouts_total"])
        _counter(lines, "batch_predictions_total", "Batch prediction requests",
                 _METRICS["batch_predictions_total"])
        _counter(lines, "events_ingested_total", "Trading events accepted", _METRICS["events_ingested_total"])
        _counter(lines, "events_rejected_total", "Trading events rejected by validation",
                 _METRICS["events_rejected_total"])
        _counter(lines, "pattern_history_errors_total", "Pattern readings that could not be stored",
                 _METRICS["pattern_history_errors_total"])
        _labeled(lines, "prediction_errors_total", "Failed predictions by error code")
        _labeled(lines, "head_errors_total", "Degraded model head results by head")
        _labeled(lines, "training_runs_total", "Completed training runs by final state")
        
        lines.extend([
            "# HELP prediction_latency_seconds Prediction latency distribution",
            "# TYPE prediction_latency_seconds histogram",
        ])
        for bucket in _LATENCY_BUCKETS:
            lines.append(f'prediction_latency_seconds_bucket{{le="{bucket}"}} {_LATENCY_HISTOGRAM[f"le_{bucket}"]}')
        lines.append(f'prediction_latency_seconds_bucket{{le="+Inf"}} {_LATENCY_HISTOGRAM["le_inf"]}')
        lines.append(f"prediction_latency_seconds_sum {_LATENCY_HISTOGRAM['sum']:.6f}")
        lines.append(f"prediction_latency_seconds_count {_LATENCY_HISTOGRAM['count']}")
        lines.append("")
    
    if drift_monitor is not None:
        latency = drift_monitor.latency_percentiles()
        for quantile in ("p95", "p99"):
            value: Optional[float] = latency.get(quantile)
            lines.extend([
                f"# HELP prediction_latency_{quantile}_ms Rolling {quantile} prediction latency",
                f"# TYPE prediction_latency_{quantile}_ms gauge",
                f"prediction_latency_{quantile}_ms {value if value is not None else 0:.3f}",
                "",
            ])
        
        lines.extend(["# HELP head_error_rate Rolling error rate per model head", "# TYPE head_error_rate gauge"])
        for head, rate in sorted(drift_monitor.head_error_rates().items()):
            lines.append(f'head_error_rate{{head="{head}"}} {rate:.6f}')
        lines.append("")
        
        lines.extend(["# HELP feature_psi Population stability index per feature", "# TYPE feature_psi gauge"])
        for feature, psi in sorted(drift_monitor.feature_psi().items()):
            lines.append(f'feature_psi{{feature="{feature}"}} {psi:.6f}')
        lines.append("")
    
    if intervention_feed is not None:
        _counter(lines, "interventions_delivered_total", "Intervention triggers delivered",
                 intervention_feed.delivered_count)
        _counter(lines, "interventions_throttled_total", "Intervention triggers held back by throttling",
                 intervention_feed.throttled_count)
        _counter(lines, "intervention_responses_total", "Responses recorded against delivered triggers",
                 intervention_feed.response_count)
    
    lines.extend([
        "# HELP api_uptime_seconds API uptime in seconds",
        "# TYPE api_uptime_seconds gauge",
        f"api_uptime_seconds {uptime_seconds}",
        "",
    ])
    
    return "\n".join(lines)
