"""
Insights API Router - recent insights produced for a user.
"""

from fastapi import APIRouter, Depends, Query

from api.dependencies import ServiceContainer, get_services
from api.schemas.predictions import InsightListResponse


router = APIRouter(prefix="/insights", tags=["insights"])


@router.get("/{user_id}", response_model=InsightListResponse)
def get_recent_insights(
    user_id: str,
    include_expired: bool = Query(default=False),
    services: ServiceContainer = Depends(get_services),
):
    """Insights from recent predictions, newest last; expired ones are hidden by default."""
    insights = services.intervention_feed.recent_insights(user_id, include_expired=include_expired)
    return InsightListResponse(user_id=user_id, insights=insights)
