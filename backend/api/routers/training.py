"""
Training API Router - on-demand training runs and run status.
"""

from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, Query, status

from api.dependencies import ServiceContainer, get_services
from api.schemas.models import TrainingRunRequest, TrainingRunResponse
from api.utils.exceptions import InvalidInputException
from api.utils.metrics import increment_counter
from behaviorradar.ml.schemas import to_naive_utc


router = APIRouter(prefix="/training", tags=["training"])


@router.post("/runs", response_model=TrainingRunResponse)
def start_training_run(
    request: TrainingRunRequest,
    services: ServiceContainer = Depends(get_services),
):
    """
    Run the training pipeline synchronously and return the final run state.
    
    Returns 409 when a run is already in progress.
    """
    if request.as_of is not None and to_naive_utc(request.as_of) > datetime.utcnow():
        raise InvalidInputException("as_of cannot be in the future", details={"as_of": request.as_of.isoformat()})
    result = services.orchestrator.run(trigger="manual", as_of=request.as_of)
    increment_counter("training_runs_total", {"state": result.state})
    return services.orchestrator.get_run(result.run_id)


@router.post("/runs/cancel", status_code=status.HTTP_202_ACCEPTED)
def cancel_training_run(services: ServiceContainer = Depends(get_services)):
    """Ask the running pipeline to stop at its next stage boundary."""
    services.orchestrator.cancel()
    return {"status": "cancellation requested", "state": services.orchestrator.state.value}


@router.get("/runs", response_model=List[TrainingRunResponse])
def list_training_runs(
    limit: int = Query(default=20, ge=1, le=100),
    services: ServiceContainer = Depends(get_services),
):
    return services.orchestrator.list_runs(limit)


@router.get("/runs/{run_id}", response_model=TrainingRunResponse)
def get_training_run(run_id: str, services: ServiceContainer = Depends(get_services)):
    """State and last successful stage of a run."""
    return services.orchestrator.get_run(run_id)
