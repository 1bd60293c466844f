"""
SQLAlchemy 2.0 database models for Behavior Radar.

Tables are the systems of record for trading events, feature vectors, model
artifacts and training runs. All timestamps are naive UTC.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class TradingEventRecord(Base):
    """One observed trading action. Rows are never updated after insert."""
    
    __tablename__ = "trading_events"
    __table_args__ = (
        Index("ix_trading_events_user_ts", "user_id", "timestamp"),
        Index("ix_trading_events_ts", "timestamp"),
    )
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    timestamp = Column(DateTime, nullable=False)
    action = Column(String, nullable=False)  # buy, sell, cancel, modify
    symbol = Column(String, nullable=False)
    quantity = Column(Float, nullable=False)
    price = Column(Float, nullable=False)
    order_type = Column(String, nullable=False)  # market, limit, stop, stop_limit
    decision_latency_ms = Column(Float, nullable=True)
    session_duration_s = Column(Float, nullable=True)
    portfolio_exposure = Column(Float, nullable=False)
    market_volatility = Column(Float, nullable=True)
    sentiment_score = Column(Float, nullable=True)
    ingested_at = Column(DateTime, default=datetime.utcnow)
    
    def __repr__(self) -> str:
        return f"<TradingEventRecord(user_id={self.user_id}, action={self.action}, symbol={self.symbol})>"


class FeatureVectorRecord(Base):
    """Computed behavioral feature vector keyed by (user_id, as_of)."""
    
    __tablename__ = "feature_vectors"
    __table_args__ = (
        UniqueConstraint("user_id", "as_of", name="uq_feature_vectors_user_as_of"),
        Index("ix_feature_vectors_as_of", "as_of"),
    )
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    as_of = Column(DateTime, nullable=False)
    features = Column(JSON, nullable=False)  # Ordered {name: value}
    feature_version = Column(String, nullable=False)
    event_count = Column(Integer, nullable=False)
    quality = Column(String, nullable=False, default="HIGH")
    content_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    
    def __repr__(self) -> str:
        return f"<FeatureVectorRecord(user_id={self.user_id}, as_of={self.as_of})>"


class ModelRegistry(Base):
    """Versioned model artifacts with stage labels.
    
    Exactly one row per model_name carries stage="production"; that invariant is
    enforced through ModelStagePointer rather than a partial index so it holds
    on every backend.
    """
    
    __tablename__ = "model_registry"
    __table_args__ = (
        UniqueConstraint("model_name", "version", name="uq_model_registry_name_version"),
        Index("ix_model_registry_stage", "model_name", "stage"),
    )
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    model_name = Column(String, nullable=False)  # anomaly_detector, pattern_classifier, ...
    version = Column(String, nullable=False)  # Semantic version (e.g., "1.0.3")
    stage = Column(String, nullable=False, default="staging")  # staging, production, archived
    artifact_path = Column(String, nullable=False)
    validation_metrics = Column(JSON, nullable=False)
    feature_schema = Column(JSON, nullable=False)  # [{"name": ..., "type": ...}, ...]
    feature_version = Column(String, nullable=False)
    training_window_start = Column(DateTime, nullable=True)
    training_window_end = Column(DateTime, nullable=True)
    training_run_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    promoted_at = Column(DateTime, nullable=True)
    archived_at = Column(DateTime, nullable=True)
    
    def __repr__(self) -> str:
        return f"<ModelRegistry(model_name={self.model_name}, version={self.version}, stage={self.stage})>"


class ModelStagePointer(Base):
    """Single-writer record naming the production version of a model.
    
    Promotions update this row with a compare-and-set on ``revision``.
    """
    
    __tablename__ = "model_stage_pointers"
    
    model_name = Column(String, primary_key=True)
    production_version = Column(String, nullable=True)
    revision = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    
    def __repr__(self) -> str:
        return f"<ModelStagePointer(model_name={self.model_name}, version={self.production_version}, rev={self.revision})>"


class TrainingRun(Base):
    """One execution of the training state machine."""
    
    __tablename__ = "training_runs"
    __table_args__ = (
        Index("ix_training_runs_started_at", "started_at"),
    )
    
    id = Column(String, primary_key=True)  # uuid4 hex
    trigger = Column(String, nullable=False)  # scheduled, manual, drift
    state = Column(String, nullable=False)
    last_successful_stage = Column(String, nullable=True)
    as_of = Column(DateTime, nullable=False)
    population_size = Column(Integer, nullable=True)
    skipped_users = Column(Integer, nullable=True)
    candidate_versions = Column(JSON, nullable=True)
    validation_report = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    
    def __repr__(self) -> str:
        return f"<TrainingRun(id={self.id}, state={self.state})>"


class DriftAlertRecord(Base):
    """Drift alerts raised by the monitor, kept for operators."""
    
    __tablename__ = "drift_alerts"
    __table_args__ = (
        Index("ix_drift_alerts_created_at", "created_at"),
    )
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    alert_type = Column(String, nullable=False)  # feature_drift, latency, head_errors
    severity = Column(String, nullable=False)  # low, medium, high
    metric_name = Column(String, nullable=False)
    metric_value = Column(Float, nullable=False)
    threshold = Column(Float, nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    
    def __repr__(self) -> str:
        return f"<DriftAlertRecord(type={self.alert_type}, metric={self.metric_name}, value={self.metric_value})>"


class PatternObservationRecord(Base):
    """Pattern label served for a user, kept for history and trends."""
    
    __tablename__ = "pattern_observations"
    __table_args__ = (
        Index("ix_pattern_observations_user_observed", "user_id", "observed_at"),
    )
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    observed_at = Column(DateTime, nullable=False)
    pattern_label = Column(String, nullable=False)
    pattern_confidence = Column(Float, nullable=True)
    risk_score = Column(Float, nullable=True)
    anomaly_flag = Column(Boolean, nullable=True)
    model_version = Column(String, nullable=False)
    
    def __repr__(self) -> str:
        return f"<PatternObservationRecord(user_id={self.user_id}, label={self.pattern_label})>"
