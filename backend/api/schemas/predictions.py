"""Prediction, ingestion and insight schemas"""
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from behaviorradar.config import settings
from behaviorradar.ml.schemas import (
    Insight,
    InterventionResponse,
    InterventionTrigger,
    PatternObservation,
    PredictionResult,
)


class PredictRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    symbol: Optional[str] = Field(default=None, max_length=32)
    extra_features: Optional[Dict[str, float]] = None
    as_of: Optional[datetime] = None
    
    @field_validator("extra_features")
    @classmethod
    def finite_features(cls, v: Optional[Dict[str, float]]) -> Optional[Dict[str, float]]:
        if v is not None:
            bad = sorted(name for name, value in v.items() if not math.isfinite(value))
            if bad:
                raise ValueError(f"non-finite values for {bad}")
        return v


class PredictResponse(BaseModel):
    prediction: PredictionResult
    insights: List[Insight] = []
    triggers: List[InterventionTrigger] = []


class BatchPredictRequest(BaseModel):
    requests: List[PredictRequest] = Field(min_length=1, max_length=settings.batch_predict_max_size)


class BatchPredictItem(BaseModel):
    user_id: str
    prediction: Optional[PredictionResult] = None
    error: Optional[Dict[str, Any]] = None


class BatchPredictResponse(BaseModel):
    results: List[BatchPredictItem]
    succeeded: int
    failed: int


class IngestRequest(BaseModel):
    """Raw records are validated one by one so a bad record never hides good ones."""
    events: List[Any] = Field(min_length=1)


class RejectionResponse(BaseModel):
    index: int
    field: str
    message: str


class IngestResponse(BaseModel):
    received: int
    accepted: int
    rejected: int
    rejections: List[RejectionResponse]


class InsightListResponse(BaseModel):
    user_id: str
    insights: List[Insight]


class InterventionResponseRequest(BaseModel):
    response: InterventionResponse
    user_id: Optional[str] = Field(default=None, min_length=1, max_length=128)


class InterventionResponseResult(BaseModel):
    trigger_id: str
    user_id: str
    pattern_id: Optional[str] = None
    response: InterventionResponse


class PatternHistoryResponse(BaseModel):
    user_id: str
    start: datetime
    end: datetime
    observations: List[PatternObservation]
