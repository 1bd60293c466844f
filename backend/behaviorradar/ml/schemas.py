"""
Pydantic schemas for trading events, feature vectors and predictions.

Defines the records exchanged between ingestion, the feature engine, the
serving layer and the insight generator.
"""

import hashlib
import json
import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator


def to_naive_utc(value: datetime) -> datetime:
    """Normalize a datetime to naive UTC, the storage convention."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class TradeAction(str, Enum):
    BUY = "buy"
    SELL = "sell"
    CANCEL = "cancel"
    MODIFY = "modify"


class OrderType(str, Enum):
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"
    STOP_LIMIT = "stop_limit"


class TradingEvent(BaseModel):
    """One observed trading action. Immutable once recorded."""
    
    model_config = ConfigDict(frozen=True, use_enum_values=True)
    
    user_id: str = Field(min_length=1, max_length=128)
    timestamp: datetime
    action: TradeAction
    symbol: str = Field(min_length=1, max_length=32)
    quantity: float = Field(gt=0)
    price: float = Field(gt=0)
    order_type: OrderType
    decision_latency_ms: Optional[float] = Field(default=None, ge=0)
    session_duration_s: Optional[float] = Field(default=None, ge=0)
    portfolio_exposure: float = Field(gt=0)
    market_volatility: Optional[float] = Field(default=None, ge=0)
    sentiment_score: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
    
    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return to_naive_utc(v)
    
    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        return v.strip().upper()
    
    @field_validator("quantity", "price", "portfolio_exposure", "decision_latency_ms",
                     "session_duration_s", "market_volatility", "sentiment_score")
    @classmethod
    def reject_non_finite(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and not math.isfinite(v):
            raise ValueError("must be a finite number")
        return v
    
    @property
    def notional(self) -> float:
        return self.quantity * self.price
    
    @property
    def is_trade(self) -> bool:
        return self.action in (TradeAction.BUY.value, TradeAction.SELL.value)


class FeatureQuality(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    POOR = "POOR"


class FeatureVector(BaseModel):
    """Behavioral feature vector for one user at one point in time.
    
    ``features`` keeps the engine's fixed ordering; two vectors computed from
    the same inputs serialize to identical bytes.
    """
    
    model_config = ConfigDict(frozen=True, use_enum_values=True, validate_default=True)
    
    user_id: str
    as_of: datetime
    features: Dict[str, float]
    feature_version: str
    event_count: int
    quality: FeatureQuality = FeatureQuality.HIGH
    
    @field_validator("as_of")
    @classmethod
    def normalize_as_of(cls, v: datetime) -> datetime:
        return to_naive_utc(v)
    
    def to_array(self, feature_names: Sequence[str]) -> np.ndarray:
        """Values in the order of ``feature_names``; missing names become NaN."""
        return np.array([self.features.get(name, np.nan) for name in feature_names], dtype=float)
    
    def canonical_json(self) -> str:
        payload = {
            "user_id": self.user_id,
            "as_of": self.as_of.isoformat(),
            "features": [[name, repr(float(value))] for name, value in self.features.items()],
            "feature_version": self.feature_version,
            "event_count": self.event_count,
            "quality": self.quality,
        }
        return json.dumps(payload, separators=(",", ":"))
    
    def content_hash(self) -> str:
        return hashlib.sha256(self.canonical_json().encode()).hexdigest()


class PredictionResult(BaseModel):
    """Output of one serving call. Head fields are None when that head degraded."""
    
    user_id: str
    symbol: Optional[str] = None
    model_version: str
    pattern_label: Optional[str] = None
    pattern_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    risk_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    anomaly_flag: Optional[bool] = None
    anomaly_score: Optional[float] = None
    cluster_id: Optional[int] = None
    degraded_heads: List[str] = Field(default_factory=list)
    feature_source: str = "store"  # "store" or "on_demand"
    feature_quality: FeatureQuality = FeatureQuality.HIGH
    features: Dict[str, float] = Field(default_factory=dict)
    cached: bool = False
    generated_at: datetime = Field(default_factory=datetime.utcnow)
    
    model_config = ConfigDict(use_enum_values=True, validate_default=True, protected_namespaces=())


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class InterventionAction(str, Enum):
    """Actions an intervention may ask of a collaborator.
    
    None of them blocks a transaction; the strongest are confirmation and cool-down.
    """
    SHOW_INSIGHT = "show_insight"
    SUGGEST_REVIEW = "suggest_review"
    REQUIRE_CONFIRMATION = "require_confirmation"
    SUGGEST_COOL_DOWN = "suggest_cool_down"


class InterventionType(str, Enum):
    REAL_TIME_ALERT = "real_time_alert"
    PRE_TRADE_WARNING = "pre_trade_warning"
    POST_TRADE_ANALYSIS = "post_trade_analysis"
    DAILY_INSIGHT = "daily_insight"


class InterventionPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class InterventionResponse(str, Enum):
    """What the trader did with a delivered trigger."""
    ACKNOWLEDGED = "acknowledged"
    ACTED = "acted"
    DISMISSED = "dismissed"


class Insight(BaseModel):
    """Human-readable interpretation of a prediction."""
    
    model_config = ConfigDict(use_enum_values=True)
    
    user_id: str
    pattern_id: Optional[str] = None
    severity: Severity
    title: str
    message: str
    recommended_action: InterventionAction
    confidence: Optional[float] = None
    tentative: bool = False
    created_at: datetime
    expires_at: datetime


class InterventionTrigger(BaseModel):
    """Advisory signal for the notification collaborator."""
    
    model_config = ConfigDict(use_enum_values=True)
    
    trigger_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    pattern_id: Optional[str] = None
    reason: str  # risk_score, anomaly
    severity: Severity
    message: str
    recommended_action: InterventionAction
    intervention_type: InterventionType
    priority: InterventionPriority
    created_at: datetime
    expires_at: datetime


class PatternObservation(BaseModel):
    """One stored pattern reading for a user."""
    
    model_config = ConfigDict(protected_namespaces=())
    
    user_id: str
    observed_at: datetime
    pattern_label: str
    pattern_confidence: Optional[float] = None
    risk_score: Optional[float] = None
    anomaly_flag: Optional[bool] = None
    model_version: str


class PatternTrend(BaseModel):
    """Pattern mix and risk direction over a window of observations."""
    
    user_id: str
    start: datetime
    end: datetime
    observation_count: int
    pattern_counts: Dict[str, int] = Field(default_factory=dict)
    dominant_pattern: Optional[str] = None
    # Labels whose share grew from the first half of the window to the second
    trending_patterns: List[str] = Field(default_factory=list)
    mean_risk_score: Optional[float] = None
    risk_trend: Optional[float] = None  # second-half mean risk minus first-half


class ModelArtifactInfo(BaseModel):
    """Registry metadata for one model version."""
    
    model_config = ConfigDict(protected_namespaces=())
    
    model_name: str
    version: str
    stage: str
    artifact_path: str
    validation_metrics: Dict[str, Any]
    feature_schema: List[Dict[str, str]]
    feature_version: str
    training_window_start: Optional[datetime] = None
    training_window_end: Optional[datetime] = None
    training_run_id: Optional[str] = None
    created_at: Optional[datetime] = None
    promoted_at: Optional[datetime] = None
