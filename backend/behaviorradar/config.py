"""
Configuration management for Behavior Radar using Pydantic Settings.

Loads configuration from environment variables with type validation and sane defaults.
"""

from typing import List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration with environment variable support."""
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=(),
    )
    
    # Application
    app_env: str = Field(default="development", description="Environment: development, staging, production")
    debug: bool = Field(default=False, description="Debug mode")
    
    # Database
    database_url: str = Field(default="sqlite:///./behaviorradar.db", description="SQLAlchemy connection URL")
    
    # Logging
    log_level: str = Field(default="INFO", description="Log level: DEBUG, INFO, WARNING, ERROR")
    log_format: str = Field(default="text", description="Log format: json or text")
    log_file: str = Field(default="", description="Log file path (empty disables the file sink)")
    
    # Ingestion
    event_retention_days: int = Field(default=90, description="Days of trading events kept for training")
    
    # Feature engine
    feature_lookback_days: int = Field(default=90, description="Default lookback window for feature computation")
    feature_min_events: int = Field(default=5, description="Minimum events in window before a vector is computed")
    market_timing_horizon_hours: int = Field(default=24, description="Look-forward horizon for market timing")
    market_timing_neutral_band: float = Field(default=0.005, description="Relative move treated as neutral")
    loss_aversion_multiple: float = Field(default=1.5, description="Holding-time multiple that marks loss aversion")
    overconfidence_frequency_ceiling: float = Field(default=50.0, description="Trades per day treated as maximal frequency")
    large_trade_exposure_threshold: float = Field(default=0.10, description="Notional / exposure above which a trade is large")
    high_volatility_threshold: float = Field(default=0.3, description="market_volatility at or above which a window is volatile")
    fast_decision_ms: int = Field(default=5000, description="Decision latency below which a decision is fast")
    negative_sentiment_threshold: float = Field(default=-0.5, description="sentiment_score at or below which sentiment is strongly negative")
    rapid_trade_window_s: int = Field(default=300, description="Inter-arrival gap below which trades are clustered")
    impulsivity_reference_decision_s: float = Field(default=120.0, description="Decision time used to normalize impulsivity")
    overconfidence_weights: List[float] = Field(default=[0.4, 0.35, 0.25], description="Frequency, large-trade, volatile-market-order weights")
    emotional_weights: List[float] = Field(default=[0.4, 0.3, 0.3], description="Fast-volatile, large-negative, clustered weights")
    
    # Feature store
    feature_store_staleness_seconds: int = Field(default=300, description="Maximum staleness of point reads after a write")
    feature_cache_max_size: int = Field(default=10000, description="Maximum cached point reads")
    
    # Training
    training_schedule_hour: int = Field(default=2, description="UTC hour of the daily retraining run")
    training_stage_timeout_seconds: int = Field(default=1800, description="Timeout for the scheduled training job")
    training_engineer_workers: int = Field(default=4, description="Threads used to engineer features across users")
    training_max_failure_fraction: float = Field(default=0.2, description="Computation failures tolerated during ENGINEER")
    training_min_population: int = Field(default=20, description="Minimum feature vectors required to train")
    training_test_size: float = Field(default=0.2, description="Held-out fraction for validation")
    training_random_state: int = Field(default=42, description="Seed for every stochastic training step")
    synthetic_samples_per_pattern: int = Field(default=40, description="Catalog samples added per pattern to the classifier set")
    anomaly_contamination: float = Field(default=0.1, description="Expected outlier fraction; baseline flag rate until a detector is in production")
    anomaly_iqr_fence: float = Field(default=3.0, description="IQR multiples below the lower training quartile at which an isolation score is anomalous")
    anomaly_envelope_margin: float = Field(default=1.0, description="Training-range widths beyond the training envelope at which a feature is anomalous")
    classifier_accuracy_floor: float = Field(default=0.75, description="Minimum held-out classifier accuracy to promote")
    risk_mae_ceiling: float = Field(default=0.10, description="Maximum held-out risk regressor MAE to promote")
    anomaly_flag_rate_tolerance: float = Field(default=0.15, description="Allowed deviation from the baseline flag rate")
    cluster_eps: float = Field(default=1.5, description="DBSCAN neighbourhood radius in standardized space")
    cluster_min_samples: int = Field(default=5, description="DBSCAN core point neighbourhood size")
    model_dir: str = Field(default="models/artifacts", description="Directory holding model artifact blobs")
    
    # Serving
    serving_cached_budget_ms: int = Field(default=100, description="Latency budget when the feature vector is stored")
    serving_on_demand_budget_ms: int = Field(default=500, description="Latency budget when features are computed on demand")
    serving_feature_max_age_minutes: int = Field(default=1440, description="Age beyond which a stored vector is not used")
    serving_workers: int = Field(default=16, description="Worker threads for model head execution")
    prediction_cache_ttl_seconds: int = Field(default=300, description="TTL of cached prediction results")
    prediction_cache_max_size: int = Field(default=10000, description="Maximum cached prediction results")
    batch_predict_max_size: int = Field(default=100, description="Maximum requests per batch prediction")
    
    # Insights
    insight_warning_threshold: float = Field(default=0.6, description="Risk score at which a warning is raised")
    insight_critical_threshold: float = Field(default=0.8, description="Risk score at which a critical insight is raised")
    insight_min_confidence: float = Field(default=0.5, description="Pattern confidence below which insights are tentative")
    insight_ttl_minutes: int = Field(default=60, description="Lifetime of an insight or trigger")
    intervention_max_per_hour: int = Field(default=5, description="Maximum triggers delivered per user per hour")
    intervention_cooldown_minutes: int = Field(default=15, description="Cool-down between triggers for the same pattern")
    intervention_tracked_triggers: int = Field(default=10000, description="Delivered triggers kept for recording responses")
    pattern_history_days: int = Field(default=30, description="Default window of pattern history and trend reads")
    
    # Drift monitoring
    drift_psi_threshold: float = Field(default=0.2, description="PSI at which a feature is considered drifted")
    drift_window_size: int = Field(default=1000, description="Rolling window of serving observations")
    drift_min_samples: int = Field(default=50, description="Observations required before PSI is evaluated")
    drift_psi_bins: int = Field(default=10, description="Quantile bins used for PSI")
    drift_error_rate_threshold: float = Field(default=0.05, description="Per-head error rate that raises an alert")
    
    # Scheduler
    scheduler_enabled: bool = Field(default=True, description="Enable background scheduler")
    drift_check_interval_minutes: int = Field(default=60, description="Drift evaluation interval")
    
    @field_validator("overconfidence_weights", "emotional_weights")
    @classmethod
    def check_weights(cls, v: List[float]) -> List[float]:
        """Component weights must be three non-negative values summing to one."""
        if len(v) != 3 or any(w < 0 for w in v) or abs(sum(v) - 1.0) > 1e-6:
            raise ValueError("weights must be three non-negative values summing to 1")
        return v
    
    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"
    
    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.app_env == "development"


# Global settings instance
settings = Settings()
