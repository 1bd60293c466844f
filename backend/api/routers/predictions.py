"""
Predictions API Router - behavioral predictions with insights.

Provides endpoints for:
- Scoring one user, with the insights and delivered intervention triggers
- Scoring a batch of users with per-item errors

Fresh pattern readings are stored in the pattern history.
"""

import time

from fastapi import APIRouter, Depends

from api.dependencies import ServiceContainer, get_services
from api.schemas.errors import ErrorResponse
from api.schemas.predictions import (
    BatchPredictItem,
    BatchPredictRequest,
    BatchPredictResponse,
    PredictRequest,
    PredictResponse,
)
from api.utils.exceptions import status_for
from api.utils.metrics import increment_counter, increment_metric, observe_latency
from behaviorradar.log_config import logger
from behaviorradar.ml.schemas import PredictionResult
from behaviorradar.utils.errors import BehaviorRadarError, PredictionTimeoutError


router = APIRouter(tags=["predictions"])

ERROR_RESPONSES = {
    404: {"model": ErrorResponse, "description": "No feature vector for the user"},
    503: {"model": ErrorResponse, "description": "No production model loaded"},
    504: {"model": ErrorResponse, "description": "Latency budget exceeded"},
}


def _record_success(result: PredictionResult, elapsed_s: float, services: ServiceContainer) -> None:
    increment_metric("predictions_total")
    if result.cached:
        increment_metric("prediction_cache_hits_total")
    else:
        increment_metric("prediction_cache_misses_total")
        for head in result.degraded_heads:
            increment_counter("head_errors_total", {"head": head})
        _record_pattern(result, services)
    observe_latency(elapsed_s)


def _record_pattern(result: PredictionResult, services: ServiceContainer) -> None:
    """Fresh readings go to the pattern history; a storage failure never fails the prediction."""
    try:
        services.pattern_history.record(result)
    except BehaviorRadarError:
        increment_metric("pattern_history_errors_total")
        logger.exception(f"Could not store pattern history for {result.user_id}")


def _record_failure(exc: BehaviorRadarError) -> None:
    _, error_code = status_for(exc)
    increment_counter("prediction_errors_total", {"error_code": error_code})
    if isinstance(exc, PredictionTimeoutError):
        increment_metric("prediction_timeouts_total")


@router.post("/predict", response_model=PredictResponse, responses=ERROR_RESPONSES)
def predict(
    request: PredictRequest,
    services: ServiceContainer = Depends(get_services),
):
    """
    Predict behavior for one user.
    
    Heads that fail are listed in degraded_heads with null fields. Triggers in
    the response are the ones that passed intervention throttling.
    """
    started = time.perf_counter()
    try:
        result = services.prediction_service.predict(
            request.user_id,
            symbol=request.symbol,
            extra_features=request.extra_features,
            as_of=request.as_of,
        )
    except BehaviorRadarError as e:
        _record_failure(e)
        raise
    _record_success(result, time.perf_counter() - started, services)
    
    insights, triggers = services.insight_generator.generate(result)
    delivered = services.intervention_feed.publish(insights, triggers)
    return PredictResponse(prediction=result, insights=insights, triggers=delivered)


@router.post("/batch_predict", response_model=BatchPredictResponse)
def batch_predict(
    request: BatchPredictRequest,
    services: ServiceContainer = Depends(get_services),
):
    """Predict for up to batch_predict_max_size users; one failure does not fail the batch."""
    increment_metric("batch_predictions_total")
    outcomes = services.prediction_service.predict_batch(
        [item.model_dump() for item in request.requests]
    )
    
    items = []
    for outcome in outcomes:
        if outcome.exception is not None:
            _record_failure(outcome.exception)
            _, error_code = status_for(outcome.exception)
            error = {
                "error_code": error_code,
                "message": outcome.exception.message,
                "details": outcome.exception.details,
            }
            items.append(BatchPredictItem(user_id=outcome.user_id, error=error))
        else:
            _record_success(outcome.result, outcome.elapsed_s, services)
            items.append(BatchPredictItem(user_id=outcome.user_id, prediction=outcome.result))
    
    succeeded = sum(1 for item in items if item.prediction is not None)
    return BatchPredictResponse(results=items, succeeded=succeeded, failed=len(items) - succeeded)
