"""
ML prediction service with model loading and caching.

ModelCache keeps an immutable snapshot of the production heads and swaps it
whenever the registry announces a promotion, so a request always sees one
consistent set of models. PredictionService resolves a feature vector, runs
every head under a latency budget and degrades individual heads instead of
failing the request.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from behaviorradar.config import Settings, settings as default_settings
from behaviorradar.log_config import logger
from behaviorradar.ml.feature_store.cache import TTLCache
from behaviorradar.ml.feature_store.store import FeatureStore
from behaviorradar.ml.features import BehavioralFeatureEngine
from behaviorradar.ml.heads import HEAD_NAMES, HEAD_TYPES, ModelHead
from behaviorradar.ml.registry import ModelRegistryService, PromotionEvent
from behaviorradar.ml.schemas import FeatureVector, PredictionResult, to_naive_utc
from behaviorradar.utils.errors import (
    BehaviorRadarError,
    FeatureComputationError,
    FeatureNotFoundError,
    InsufficientDataError,
    ModelNotFoundError,
    PredictionTimeoutError,
)

FEATURE_SOURCE_STORE = "store"
FEATURE_SOURCE_ON_DEMAND = "on_demand"


@dataclass(frozen=True)
class ModelSnapshot:
    """Production heads loaded together; never mutated after construction."""
    heads: Dict[str, ModelHead] = field(default_factory=dict)
    versions: Dict[str, str] = field(default_factory=dict)
    loaded_at: datetime = field(default_factory=datetime.utcnow)
    
    @property
    def is_empty(self) -> bool:
        return not self.heads
    
    @property
    def version(self) -> str:
        """Shared version when all heads agree, otherwise name@version pairs."""
        distinct = set(self.versions.values())
        if len(distinct) == 1:
            return distinct.pop()
        return "+".join(f"{name}@{self.versions[name]}" for name in sorted(self.versions))


class ModelCache:
    """Holds the current ModelSnapshot and reloads it on promotion."""
    
    def __init__(self, registry: ModelRegistryService, subscribe: bool = True):
        self.registry = registry
        self._snapshot = ModelSnapshot()
        self._reload_lock = threading.Lock()
        if subscribe:
            registry.subscribe(self._on_promotion)
    
    @property
    def snapshot(self) -> ModelSnapshot:
        return self._snapshot
    
    def refresh(self) -> ModelSnapshot:
        """Load every production head and swap the snapshot in one assignment."""
        with self._reload_lock:
            heads: Dict[str, ModelHead] = {}
            versions: Dict[str, str] = {}
            for name, info in self.registry.get_production_all().items():
                try:
                    heads[name] = self.registry.load_head(info)
                    versions[name] = info.version
                except Exception:
                    logger.exception(f"Failed to load {name} {info.version}; head will be degraded")
            
            self._snapshot = ModelSnapshot(heads=heads, versions=versions)
        
        logger.info(f"Model snapshot loaded: {versions or 'no production models'}")
        return self._snapshot
    
    def _on_promotion(self, event: PromotionEvent) -> None:
        logger.info(f"Promotion received ({event.reason}), reloading models")
        self.refresh()


@dataclass
class BatchOutcome:
    user_id: str
    result: Optional[PredictionResult] = None
    exception: Optional[BehaviorRadarError] = None
    elapsed_s: float = 0.0
    
    @property
    def error(self) -> Optional[Dict[str, Any]]:
        return self.exception.to_dict() if self.exception is not None else None


class PredictionService:
    """Serves behavioral predictions from the current model snapshot."""
    
    def __init__(
        self,
        model_cache: ModelCache,
        feature_store: FeatureStore,
        feature_engine: BehavioralFeatureEngine,
        config: Settings = default_settings,
        drift_monitor=None,
    ):
        self.models = model_cache
        self.store = feature_store
        self.engine = feature_engine
        self.config = config
        self.drift_monitor = drift_monitor
        self._executor = ThreadPoolExecutor(
            max_workers=config.serving_workers,
            thread_name_prefix="serving-",
        )
        self._results = TTLCache(
            "predictions",
            ttl_seconds=config.prediction_cache_ttl_seconds,
            max_size=config.prediction_cache_max_size,
        )
    
    @property
    def result_cache(self) -> TTLCache:
        return self._results
    
    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
    
    # ------------------------------------------------------------------
    # Single prediction
    # ------------------------------------------------------------------
    
    def predict(
        self,
        user_id: str,
        symbol: Optional[str] = None,
        extra_features: Optional[Dict[str, float]] = None,
        as_of: Optional[datetime] = None,
    ) -> PredictionResult:
        """
        Predict behavior for one user.
        
        Args:
            user_id: User to score
            symbol: Instrument the decision is about (echoed back)
            extra_features: Values overriding stored features by name; unknown
                names are carried in the result but ignored by the heads
            as_of: Point in time for the feature lookup; defaults to now
            
        Returns:
            PredictionResult; heads that fail carry null fields and are listed
            in degraded_heads
            
        Raises:
            ModelNotFoundError: no production models are loaded
            FeatureNotFoundError: no vector is stored and none can be computed
            PredictionTimeoutError: the latency budget was exceeded
        """
        started = time.perf_counter()
        snapshot = self.models.snapshot
        if snapshot.is_empty:
            raise ModelNotFoundError("No production models loaded")
        
        vector, source = self._resolve_features(user_id, as_of)
        budget_ms = (
            self.config.serving_cached_budget_ms
            if source == FEATURE_SOURCE_STORE
            else self.config.serving_on_demand_budget_ms
        )
        
        overrides = dict(extra_features or {})
        cache_key = (vector.content_hash(), tuple(sorted(overrides.items())), snapshot.version)
        hit = self._results.get(cache_key)
        if hit is not None:
            self._observe(None, started, [], snapshot)
            return hit.model_copy(update={"cached": True, "symbol": symbol})
        
        features = dict(vector.features)
        features.update(overrides)
        
        remaining = budget_ms / 1000.0 - (time.perf_counter() - started)
        if remaining <= 0:
            raise PredictionTimeoutError(f"Feature resolution exhausted the {budget_ms}ms budget", budget_ms)
        
        future = self._executor.submit(self._run_heads, snapshot, features)
        try:
            fields, degraded = future.result(timeout=remaining)
        except FuturesTimeout:
            future.cancel()
            raise PredictionTimeoutError(f"Prediction exceeded the {budget_ms}ms budget", budget_ms)
        
        result = PredictionResult(
            user_id=user_id,
            symbol=symbol,
            model_version=snapshot.version,
            degraded_heads=degraded,
            feature_source=source,
            feature_quality=vector.quality,
            features=features,
            **fields,
        )
        self._results.set(cache_key, result)
        self._observe(vector.features, started, degraded, snapshot)
        return result
    
    def _resolve_features(self, user_id: str, as_of: Optional[datetime]) -> Tuple[FeatureVector, str]:
        reference = to_naive_utc(as_of) if as_of else datetime.utcnow()
        stored = self.store.read_point(user_id, as_of)
        max_age = timedelta(minutes=self.config.serving_feature_max_age_minutes)
        if stored is not None and reference - stored.as_of <= max_age:
            return stored, FEATURE_SOURCE_STORE
        
        budget_ms = self.config.serving_on_demand_budget_ms
        future = self._executor.submit(self._compute_and_store, user_id, reference)
        try:
            return future.result(timeout=budget_ms / 1000.0), FEATURE_SOURCE_ON_DEMAND
        except FuturesTimeout:
            future.cancel()
            raise PredictionTimeoutError(f"On-demand features exceeded the {budget_ms}ms budget", budget_ms)
        except (InsufficientDataError, FeatureComputationError) as e:
            if stored is not None:
                logger.warning(f"On-demand features failed for {user_id}, serving vector from {stored.as_of}: {e}")
                return stored, FEATURE_SOURCE_STORE
            raise FeatureNotFoundError(
                f"No feature vector available for user {user_id}",
                details={"user_id": user_id, "reason": e.message},
            ) from e
    
    def _compute_and_store(self, user_id: str, as_of: datetime) -> FeatureVector:
        vector = self.engine.compute(user_id, as_of)
        self.store.write(vector)
        return vector
    
    def _run_heads(self, snapshot: ModelSnapshot, features: Dict[str, float]) -> Tuple[Dict[str, Any], List[str]]:
        fields: Dict[str, Any] = {}
        degraded: List[str] = []
        for name in HEAD_NAMES:
            head = snapshot.heads.get(name)
            if head is None:
                fields.update(HEAD_TYPES[name].null_fields())
                degraded.append(name)
                continue
            try:
                frame = pd.DataFrame([[features[n] for n in head.feature_names]], columns=head.feature_names)
                fields.update(head.predict(frame)[0].fields)
            except Exception:
                logger.exception(f"Head {name} failed; returning null fields")
                fields.update(head.null_fields())
                degraded.append(name)
        return fields, degraded
    
    def _observe(self, features, started: float, degraded: List[str], snapshot: ModelSnapshot) -> None:
        if self.drift_monitor is None:
            return
        latency_ms = (time.perf_counter() - started) * 1000.0
        self.drift_monitor.record_prediction(
            latency_ms=latency_ms,
            features=features,
            head_names=list(snapshot.heads),
            degraded_heads=degraded,
        )
    
    # ------------------------------------------------------------------
    # Batch prediction
    # ------------------------------------------------------------------
    
    def predict_batch(self, requests: List[Dict[str, Any]]) -> List[BatchOutcome]:
        """Predict for up to batch_predict_max_size requests; failures are reported per item."""
        limit = self.config.batch_predict_max_size
        if len(requests) > limit:
            raise ValueError(f"Batch of {len(requests)} exceeds the limit of {limit}")
        
        outcomes = []
        for request in requests:
            user_id = request["user_id"]
            started = time.perf_counter()
            try:
                result = self.predict(
                    user_id,
                    symbol=request.get("symbol"),
                    extra_features=request.get("extra_features"),
                    as_of=request.get("as_of"),
                )
                outcomes.append(BatchOutcome(user_id, result=result, elapsed_s=time.perf_counter() - started))
            except BehaviorRadarError as e:
                outcomes.append(BatchOutcome(user_id, exception=e, elapsed_s=time.perf_counter() - started))
        return outcomes
