"""
Patterns API Router - per-user pattern history and trends.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import ServiceContainer, get_services
from api.schemas.predictions import PatternHistoryResponse
from behaviorradar.ml.schemas import PatternTrend


router = APIRouter(prefix="/patterns", tags=["patterns"])


@router.get("/{user_id}/history", response_model=PatternHistoryResponse)
def pattern_history(
    user_id: str,
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    services: ServiceContainer = Depends(get_services),
):
    """
    Pattern readings for a user, oldest first.
    
    The window defaults to the last pattern_history_days; ``limit`` keeps the
    newest readings.
    """
    history = services.pattern_history
    window_start, window_end = history.window(start, end)
    observations = history.history(user_id, window_start, window_end, limit)
    return PatternHistoryResponse(user_id=user_id, start=window_start, end=window_end, observations=observations)


@router.get("/{user_id}/trends", response_model=PatternTrend)
def pattern_trends(
    user_id: str,
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    services: ServiceContainer = Depends(get_services),
):
    """Label mix, dominant and trending labels, and risk direction over the window."""
    return services.pattern_history.trends(user_id, start, end)
