"""
Model Registry API Router - operator view of model versions.

Provides endpoints for:
- Listing model names and versions with their validation metrics
- Manual promotion with an optional optimistic revision check
- Rollback to the most recently archived version
"""

from typing import List

from fastapi import APIRouter, Depends

from api.dependencies import ServiceContainer, get_services
from api.schemas.models import PromoteRequest, PromotionResponse, RollbackRequest
from behaviorradar.ml.schemas import ModelArtifactInfo


router = APIRouter(prefix="/registry", tags=["registry"])


@router.get("/models")
def list_models(services: ServiceContainer = Depends(get_services)):
    """Model names with their production version and pointer revision."""
    registry = services.registry
    production = registry.get_production_all()
    return [
        {
            "model_name": name,
            "production_version": production[name].version if name in production else None,
            "revision": registry.get_revision(name),
        }
        for name in registry.list_model_names()
    ]


@router.get("/models/{model_name}/versions", response_model=List[ModelArtifactInfo])
def list_versions(model_name: str, services: ServiceContainer = Depends(get_services)):
    """All registered versions of one model, newest first."""
    return services.registry.list_versions(model_name)


@router.get("/models/{model_name}/versions/{version}", response_model=ModelArtifactInfo)
def get_version(model_name: str, version: str, services: ServiceContainer = Depends(get_services)):
    return services.registry.get_artifact(model_name, version)


@router.get("/models/{model_name}/versions/{version}/metrics")
def get_metrics(model_name: str, version: str, services: ServiceContainer = Depends(get_services)):
    """Validation metrics recorded when the version was trained."""
    return {
        "model_name": model_name,
        "version": version,
        "metrics": services.registry.get_metrics(model_name, version),
    }


@router.post("/models/{model_name}/promote", response_model=PromotionResponse)
def promote(model_name: str, request: PromoteRequest, services: ServiceContainer = Depends(get_services)):
    """
    Promote a version to production.
    
    When expected_revision is given and another writer changed the pointer
    since, the request fails with 409.
    """
    expected = {model_name: request.expected_revision} if request.expected_revision is not None else None
    event = services.registry.promote(
        {model_name: request.version},
        expected_revisions=expected,
        reason=request.reason,
    )
    return PromotionResponse(versions=event.versions, reason=event.reason, promoted_at=event.promoted_at)


@router.post("/models/{model_name}/rollback", response_model=PromotionResponse)
def rollback(model_name: str, request: RollbackRequest, services: ServiceContainer = Depends(get_services)):
    event = services.registry.rollback(model_name, expected_revision=request.expected_revision)
    return PromotionResponse(versions=event.versions, reason=event.reason, promoted_at=event.promoted_at)
