"""FastAPI dependencies and service wiring"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.engine import Engine

from behaviorradar.config import Settings, settings as default_settings
from behaviorradar.db.session import SessionFactory, build_engine, build_session_factory, init_db
from behaviorradar.ingestion import EventIngestionAdapter
from behaviorradar.log_config import logger
from behaviorradar.ml.feature_store import FeatureStore, feature_registry
from behaviorradar.ml.features import BehavioralFeatureEngine
from behaviorradar.ml.heads import ANOMALY_DETECTOR
from behaviorradar.ml.history import PatternHistory
from behaviorradar.ml.insights import InsightGenerator, InterventionFeed
from behaviorradar.ml.monitoring import DriftMonitor
from behaviorradar.ml.registry import ModelRegistryService
from behaviorradar.ml.serving import ModelCache, PredictionService
from behaviorradar.ml.training import TrainingOrchestrator


@dataclass
class ServiceContainer:
    """Every long-lived component the API and scheduler use."""
    config: Settings
    engine: Engine
    session_factory: SessionFactory
    ingestion: EventIngestionAdapter
    feature_engine: BehavioralFeatureEngine
    feature_store: FeatureStore
    registry: ModelRegistryService
    model_cache: ModelCache
    drift_monitor: DriftMonitor
    prediction_service: PredictionService
    orchestrator: TrainingOrchestrator
    insight_generator: InsightGenerator
    intervention_feed: InterventionFeed
    pattern_history: PatternHistory
    
    def start(self) -> None:
        """Create tables, load production models and restore the drift reference."""
        init_db(self.engine)
        self.model_cache.refresh()
        restore_drift_reference(self)
    
    def stop(self) -> None:
        self.orchestrator.cancel()
        self.prediction_service.shutdown()


def build_services(
    config: Settings = default_settings,
    engine: Optional[Engine] = None,
) -> ServiceContainer:
    """Construct and connect the components for one process."""
    engine = engine or build_engine(config.database_url, echo=config.debug)
    session_factory = build_session_factory(engine)
    
    feature_engine = BehavioralFeatureEngine(session_factory, config, feature_registry)
    feature_store = FeatureStore(session_factory, config)
    registry = ModelRegistryService(session_factory, config)
    model_cache = ModelCache(registry)
    drift_monitor = DriftMonitor(session_factory, config)
    orchestrator = TrainingOrchestrator(
        session_factory,
        feature_engine=feature_engine,
        feature_store=feature_store,
        registry=registry,
        config=config,
        on_promoted=drift_monitor.set_reference,
    )
    drift_monitor.subscribe(lambda detected: orchestrator.request_retrain(detected.retrain_request()))
    
    return ServiceContainer(
        config=config,
        engine=engine,
        session_factory=session_factory,
        ingestion=EventIngestionAdapter(session_factory, config),
        feature_engine=feature_engine,
        feature_store=feature_store,
        registry=registry,
        model_cache=model_cache,
        drift_monitor=drift_monitor,
        prediction_service=PredictionService(
            model_cache, feature_store, feature_engine, config, drift_monitor=drift_monitor
        ),
        orchestrator=orchestrator,
        insight_generator=InsightGenerator(config=config),
        intervention_feed=InterventionFeed(config),
        pattern_history=PatternHistory(session_factory, config),
    )


def restore_drift_reference(services: ServiceContainer) -> None:
    """Rebuild the PSI reference from the vectors the production models were trained on."""
    production = services.registry.get_production(ANOMALY_DETECTOR)
    if production is None or production.training_window_end is None:
        return
    end = production.training_window_end
    vectors = services.feature_store.read_range(None, end, end)
    if vectors:
        services.drift_monitor.set_reference(
            FeatureStore.to_frame(vectors, feature_registry.get_feature_names())
        )
    else:
        logger.warning(f"No stored vectors at {end.isoformat()} to restore the drift reference")


def get_services(request: Request) -> ServiceContainer:
    """Get the service container attached to the application"""
    return request.app.state.services
