"""
Interventions API Router - trader responses to delivered triggers.

Provides endpoints for:
- Recording whether a trigger was acknowledged, acted on or dismissed
- Effectiveness counters and rates, overall or per user
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import ServiceContainer, get_services
from api.schemas.errors import ErrorResponse
from api.schemas.predictions import InterventionResponseRequest, InterventionResponseResult


router = APIRouter(prefix="/interventions", tags=["interventions"])


@router.post(
    "/{trigger_id}/response",
    response_model=InterventionResponseResult,
    responses={404: {"model": ErrorResponse, "description": "Trigger unknown or no longer tracked"}},
)
def record_response(
    trigger_id: str,
    request: InterventionResponseRequest,
    services: ServiceContainer = Depends(get_services),
):
    """Record the trader's response; a later response replaces an earlier one."""
    trigger = services.intervention_feed.record_response(trigger_id, request.response, user_id=request.user_id)
    return InterventionResponseResult(
        trigger_id=trigger.trigger_id,
        user_id=trigger.user_id,
        pattern_id=trigger.pattern_id,
        response=request.response,
    )


@router.get("/effectiveness")
def effectiveness(
    user_id: Optional[str] = Query(default=None, min_length=1, max_length=128),
    services: ServiceContainer = Depends(get_services),
):
    """Delivered triggers, responses and response/action rates, broken down by pattern."""
    return services.intervention_feed.effectiveness(user_id)
