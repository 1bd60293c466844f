"""
Monitoring API Router - health, readiness, loaded models, metrics and drift.
"""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, PlainTextResponse

from api.dependencies import ServiceContainer, get_services
from api.schemas.models import LoadedModel, LoadedModelsResponse
from api.utils.metrics import get_metrics_text
from behaviorradar.db.session import check_db_health
from behaviorradar.ml.feature_store import feature_registry
from behaviorradar.ml.patterns import pattern_catalog


router = APIRouter(tags=["monitoring"])


@router.get("/health")
def health(services: ServiceContainer = Depends(get_services)):
    """Liveness plus a database round trip and cache statistics."""
    database = check_db_health(services.session_factory)
    return {
        "status": "healthy" if database["status"] == "healthy" else "degraded",
        "database": database,
        "caches": {
            "feature_store": services.feature_store.cache.get_stats().to_dict(),
            "predictions": services.prediction_service.result_cache.get_stats().to_dict(),
        },
    }


@router.get("/ready")
def ready(services: ServiceContainer = Depends(get_services)):
    """Ready iff at least one production model is loaded."""
    snapshot = services.model_cache.snapshot
    body = {"ready": not snapshot.is_empty, "models": snapshot.versions}
    return JSONResponse(status_code=200 if body["ready"] else 503, content=body)


@router.get("/models", response_model=LoadedModelsResponse)
def loaded_models(services: ServiceContainer = Depends(get_services)):
    """Model names, versions and load time of the serving snapshot."""
    snapshot = services.model_cache.snapshot
    return LoadedModelsResponse(
        snapshot_version=None if snapshot.is_empty else snapshot.version,
        models=[
            LoadedModel(model_name=name, version=version, loaded_at=snapshot.loaded_at)
            for name, version in sorted(snapshot.versions.items())
        ],
    )


@router.get("/metrics", response_class=PlainTextResponse)
def metrics(services: ServiceContainer = Depends(get_services)):
    """
    Prometheus-style metrics endpoint.
    
    Exposes prediction counters and latency, head error rates, feature PSI,
    training outcomes and intervention throttling.
    """
    return PlainTextResponse(content=get_metrics_text(services.drift_monitor, services.intervention_feed))


@router.get("/drift")
def drift(
    alerts_limit: int = Query(default=20, ge=1, le=200),
    services: ServiceContainer = Depends(get_services),
):
    """Current rolling statistics, the last evaluation and recent alerts."""
    monitor = services.drift_monitor
    last = monitor.last_report
    return {
        "has_reference": monitor.has_reference,
        "psi": monitor.feature_psi(),
        "latency_ms": monitor.latency_percentiles(),
        "head_error_rates": monitor.head_error_rates(),
        "last_report": last.to_dict() if last is not None else None,
        "alerts": monitor.recent_alerts(alerts_limit),
    }


@router.get("/features")
def feature_schema():
    """Feature versions and definitions; the current version is used for training and serving."""
    return feature_registry.to_dict()


@router.get("/patterns")
def behavior_patterns():
    """The behavior pattern catalog with signatures and recommendation templates."""
    return pattern_catalog.to_dict()
