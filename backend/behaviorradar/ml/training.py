"""
Training orchestrator.

Runs the batch pipeline as an explicit state machine:

    SCHEDULED -> EXTRACTING -> ENGINEERING -> TRAINING -> VALIDATING -> {PROMOTED | REJECTED} -> IDLE

Each stage is a method that reads and extends a RunContext. The run row in
training_runs records the current state and the last stage that completed.
Cancellation is honoured at stage boundaries only. Any failure before the
promotion commits moves the run to REJECTED without touching the production
artifacts; candidates registered by a run that lost the promotion race are
discarded. Hooks that run after the commit (feature importance, on_promoted)
only log their failures. The next run starts fresh, reusing feature vectors
already written for the same as_of.
"""

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

import pandas as pd
from sklearn.model_selection import train_test_split
from sqlalchemy import select

from behaviorradar.config import Settings, settings as default_settings
from behaviorradar.db.models import TrainingRun
from behaviorradar.db.repositories import TradingEventRepository
from behaviorradar.db.session import SessionFactory, get_db_context, get_db_transaction
from behaviorradar.log_config import logger
from behaviorradar.ml.feature_store.registry import FeatureRegistry, feature_registry
from behaviorradar.ml.feature_store.store import FeatureStore
from behaviorradar.ml.features import BehavioralFeatureEngine
from behaviorradar.ml.heads import (
    ANOMALY_DETECTOR,
    BEHAVIOR_CLUSTERER,
    PATTERN_CLASSIFIER,
    RISK_REGRESSOR,
    ModelHead,
    build_heads,
    composite_risk,
)
from behaviorradar.ml.patterns import PatternCatalog, pattern_catalog
from behaviorradar.ml.registry import CandidateArtifact, ModelRegistryService
from behaviorradar.ml.schemas import FeatureVector, to_naive_utc
from behaviorradar.utils.errors import (
    ConcurrentModificationError,
    FeatureComputationError,
    InsufficientDataError,
    ModelTrainingError,
    RecordNotFoundError,
    ValidationFailure,
)


class TrainingState(str, Enum):
    SCHEDULED = "SCHEDULED"
    EXTRACTING = "EXTRACTING"
    ENGINEERING = "ENGINEERING"
    TRAINING = "TRAINING"
    VALIDATING = "VALIDATING"
    PROMOTED = "PROMOTED"
    REJECTED = "REJECTED"
    IDLE = "IDLE"


STAGE_NAMES = {
    TrainingState.EXTRACTING: "EXTRACT",
    TrainingState.ENGINEERING: "ENGINEER",
    TrainingState.TRAINING: "TRAIN",
    TrainingState.VALIDATING: "VALIDATE",
    TrainingState.PROMOTED: "PROMOTE",
}


class RunCancelled(ModelTrainingError):
    """The run was cancelled at a stage boundary."""
    pass


@dataclass
class RunContext:
    """Mutable state handed from stage to stage within one run."""
    run_id: str
    trigger: str
    as_of: datetime
    window_start: datetime
    events: Dict[str, list] = field(default_factory=dict)
    vectors: List[FeatureVector] = field(default_factory=list)
    frame: Optional[pd.DataFrame] = None
    skipped_users: int = 0
    failed_users: int = 0
    heads: Dict[str, ModelHead] = field(default_factory=dict)
    eval_sets: Dict[str, Any] = field(default_factory=dict)
    metrics: Dict[str, Dict[str, float]] = field(default_factory=dict)
    versions: Dict[str, str] = field(default_factory=dict)
    last_successful_stage: Optional[str] = None


@dataclass
class TrainingRunResult:
    run_id: str
    state: str
    last_successful_stage: Optional[str]
    versions: Dict[str, str]
    metrics: Dict[str, Dict[str, float]]
    population_size: int
    skipped_users: int
    error: Optional[str] = None
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "state": self.state,
            "last_successful_stage": self.last_successful_stage,
            "versions": self.versions,
            "metrics": self.metrics,
            "population_size": self.population_size,
            "skipped_users": self.skipped_users,
            "error": self.error,
        }


class TrainingOrchestrator:
    """Extract, engineer, train, validate and promote the four model heads."""
    
    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        feature_engine: Optional[BehavioralFeatureEngine] = None,
        feature_store: Optional[FeatureStore] = None,
        registry: Optional[ModelRegistryService] = None,
        catalog: PatternCatalog = pattern_catalog,
        features: FeatureRegistry = feature_registry,
        config: Settings = default_settings,
        on_promoted=None,
    ):
        self._session_factory = session_factory
        self.config = config
        self.features = features
        self.engine = feature_engine or BehavioralFeatureEngine(session_factory, config, features)
        self.store = feature_store or FeatureStore(session_factory, config)
        self.registry = registry or ModelRegistryService(session_factory, config)
        self.catalog = catalog
        self.feature_names = features.get_feature_names()
        self._on_promoted = on_promoted
        
        self.state = TrainingState.IDLE
        self._cancel = threading.Event()
        self._run_lock = threading.Lock()
        self._requests_lock = threading.Lock()
        self._retrain_requests: List[Any] = []
    
    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------
    
    def cancel(self) -> None:
        """Ask the running pipeline to stop at the next stage boundary."""
        self._cancel.set()
        logger.warning("Training cancellation requested")
    
    def request_retrain(self, signal: Any) -> None:
        """Record an advisory retrain request; the scheduler acts on it."""
        with self._requests_lock:
            self._retrain_requests.append(signal)
        logger.info(f"Retrain requested: {getattr(signal, 'reason', signal)}")
    
    def has_pending_retrain(self) -> bool:
        with self._requests_lock:
            return bool(self._retrain_requests)
    
    def consume_retrain_requests(self) -> List[Any]:
        with self._requests_lock:
            requests, self._retrain_requests = self._retrain_requests, []
            return requests
    
    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise RunCancelled("Training run cancelled")
    
    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------
    
    def run(self, trigger: str = "manual", as_of: Optional[datetime] = None) -> TrainingRunResult:
        """
        Execute one full training run.
        
        Returns:
            TrainingRunResult in state PROMOTED or REJECTED
            
        Raises:
            ModelTrainingError: another run is already in progress
        """
        if not self._run_lock.acquire(blocking=False):
            raise ModelTrainingError("A training run is already in progress")
        try:
            self._cancel.clear()
            return self._execute(trigger, to_naive_utc(as_of or datetime.utcnow()))
        finally:
            self.state = TrainingState.IDLE
            self._run_lock.release()
    
    def _execute(self, trigger: str, as_of: datetime) -> TrainingRunResult:
        ctx = RunContext(
            run_id=uuid.uuid4().hex,
            trigger=trigger,
            as_of=as_of,
            window_start=as_of - timedelta(days=self.config.feature_lookback_days),
        )
        self.state = TrainingState.SCHEDULED
        with get_db_transaction(self._session_factory) as db:
            db.add(TrainingRun(id=ctx.run_id, trigger=trigger, state=self.state.value, as_of=as_of))
        logger.info(f"Training run {ctx.run_id} scheduled (trigger={trigger}, as_of={as_of.isoformat()})")
        
        stages = [
            (TrainingState.EXTRACTING, self._extract),
            (TrainingState.ENGINEERING, self._engineer),
            (TrainingState.TRAINING, self._train),
            (TrainingState.VALIDATING, self._validate),
        ]
        error: Optional[str] = None
        try:
            for state, stage in stages:
                self._check_cancelled()
                self._transition(ctx, state)
                stage(ctx)
                ctx.last_successful_stage = STAGE_NAMES[state]
                self._save_run(ctx, last_successful_stage=ctx.last_successful_stage)
            
            self._check_cancelled()
            self._promote(ctx)
            ctx.last_successful_stage = STAGE_NAMES[TrainingState.PROMOTED]
            self._transition(ctx, TrainingState.PROMOTED)
            self._after_promotion(ctx)
        except ValidationFailure as e:
            error = e.message
            logger.warning(f"Training run {ctx.run_id} rejected by validation: {e.failures}")
            self._transition(ctx, TrainingState.REJECTED)
        except Exception as e:
            error = str(e)
            logger.exception(f"Training run {ctx.run_id} failed in {self.state.value}")
            self._transition(ctx, TrainingState.REJECTED)
        
        self._save_run(
            ctx,
            last_successful_stage=ctx.last_successful_stage,
            population_size=len(ctx.vectors),
            skipped_users=ctx.skipped_users,
            candidate_versions=ctx.versions or None,
            validation_report=ctx.metrics or None,
            error=error,
            completed_at=datetime.utcnow(),
        )
        return TrainingRunResult(
            run_id=ctx.run_id,
            state=self.state.value,
            last_successful_stage=ctx.last_successful_stage,
            versions=ctx.versions,
            metrics=ctx.metrics,
            population_size=len(ctx.vectors),
            skipped_users=ctx.skipped_users,
            error=error,
        )
    
    def _transition(self, ctx: RunContext, state: TrainingState) -> None:
        logger.info(f"Training run {ctx.run_id}: {self.state.value} -> {state.value}")
        self.state = state
        self._save_run(ctx, state=state.value)
    
    def _save_run(self, ctx: RunContext, **values) -> None:
        with get_db_transaction(self._session_factory) as db:
            run = db.get(TrainingRun, ctx.run_id)
            for key, value in values.items():
                setattr(run, key, value)
    
    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    
    def _extract(self, ctx: RunContext) -> None:
        with get_db_context(self._session_factory) as db:
            ctx.events = TradingEventRepository(db).list_events_between(ctx.window_start, ctx.as_of)
        if not ctx.events:
            raise ModelTrainingError("No trading events in the training window")
        logger.info(f"Extracted events for {len(ctx.events)} users")
    
    def _engineer(self, ctx: RunContext) -> None:
        reused = {v.user_id: v for v in self.store.read_range(None, ctx.as_of, ctx.as_of)}
        pending = sorted(user_id for user_id in ctx.events if user_id not in reused)
        lookback = ctx.as_of - ctx.window_start
        
        def compute(user_id: str):
            try:
                return self.engine.compute_from_events(user_id, ctx.as_of, ctx.events[user_id], lookback)
            except (InsufficientDataError, FeatureComputationError) as e:
                return e
        
        with ThreadPoolExecutor(
            max_workers=max(1, self.config.training_engineer_workers),
            thread_name_prefix="feature-engineer-",
        ) as pool:
            outcomes = list(pool.map(compute, pending))
        
        computed = [o for o in outcomes if isinstance(o, FeatureVector)]
        ctx.skipped_users = sum(1 for o in outcomes if isinstance(o, InsufficientDataError))
        ctx.failed_users = sum(1 for o in outcomes if isinstance(o, FeatureComputationError))
        
        attempted = len(pending) - ctx.skipped_users
        if attempted and ctx.failed_users / attempted > self.config.training_max_failure_fraction:
            raise ModelTrainingError(
                f"{ctx.failed_users}/{attempted} feature computations failed",
                details={"failed_users": ctx.failed_users},
            )
        
        if computed:
            self.store.write_many(computed)
        
        ctx.vectors = sorted(list(reused.values()) + computed, key=lambda v: v.user_id)
        if len(ctx.vectors) < self.config.training_min_population:
            raise ModelTrainingError(
                f"Training population of {len(ctx.vectors)} is below the minimum "
                f"{self.config.training_min_population}",
            )
        ctx.frame = FeatureStore.to_frame(ctx.vectors, self.feature_names)
        logger.info(
            f"Engineered {len(computed)} vectors, reused {len(reused)}, "
            f"skipped {ctx.skipped_users}, failed {ctx.failed_users}"
        )
    
    def _train(self, ctx: RunContext) -> None:
        cfg = self.config
        seed = cfg.training_random_state
        population = ctx.frame.reset_index(drop=True)
        
        labeled = population.copy()
        labeled["pattern_label"] = self.catalog.label_frame(labeled).values
        if cfg.synthetic_samples_per_pattern > 0:
            synthetic = self.catalog.synthesize(cfg.synthetic_samples_per_pattern, seed)
            labeled = pd.concat([labeled, synthetic], ignore_index=True)
        
        pop_train, pop_test = train_test_split(population, test_size=cfg.training_test_size, random_state=seed)
        lab_train, lab_test = train_test_split(labeled, test_size=cfg.training_test_size, random_state=seed)
        features = lab_train[self.feature_names]
        
        heads = build_heads(self.feature_names, cfg)
        try:
            heads[ANOMALY_DETECTOR].fit(pop_train)
            heads[PATTERN_CLASSIFIER].fit(features, lab_train["pattern_label"])
            heads[RISK_REGRESSOR].fit(features, composite_risk(lab_train))
            heads[BEHAVIOR_CLUSTERER].fit(population)
        except ValueError as e:
            raise ModelTrainingError(f"Model fitting failed: {e}") from e
        
        ctx.heads = heads
        ctx.eval_sets = {"population_test": pop_test, "labeled_test": lab_test, "population": population}
    
    def _baseline_flag_rate(self) -> float:
        production = self.registry.get_production(ANOMALY_DETECTOR)
        if production is not None and "flag_rate" in production.validation_metrics:
            return float(production.validation_metrics["flag_rate"])
        return self.config.anomaly_contamination
    
    def _validate(self, ctx: RunContext) -> None:
        cfg = self.config
        pop_test = ctx.eval_sets["population_test"]
        lab_test = ctx.eval_sets["labeled_test"]
        
        classifier = ctx.heads[PATTERN_CLASSIFIER].evaluate(lab_test, lab_test["pattern_label"])
        risk = ctx.heads[RISK_REGRESSOR].evaluate(lab_test, composite_risk(lab_test))
        anomaly = ctx.heads[ANOMALY_DETECTOR].evaluate(pop_test if len(pop_test) else ctx.eval_sets["population"])
        baseline = self._baseline_flag_rate()
        anomaly["baseline_flag_rate"] = baseline
        clusters = ctx.heads[BEHAVIOR_CLUSTERER].evaluate(ctx.eval_sets["population"])
        
        ctx.metrics = {
            PATTERN_CLASSIFIER: classifier,
            RISK_REGRESSOR: risk,
            ANOMALY_DETECTOR: anomaly,
            BEHAVIOR_CLUSTERER: clusters,
        }
        
        failures = []
        if classifier["accuracy"] < cfg.classifier_accuracy_floor:
            failures.append(
                f"classifier accuracy {classifier['accuracy']:.3f} below floor {cfg.classifier_accuracy_floor}"
            )
        if risk["mae"] > cfg.risk_mae_ceiling:
            failures.append(f"risk MAE {risk['mae']:.3f} above ceiling {cfg.risk_mae_ceiling}")
        if abs(anomaly["flag_rate"] - baseline) > cfg.anomaly_flag_rate_tolerance:
            failures.append(
                f"anomaly flag rate {anomaly['flag_rate']:.3f} deviates from baseline {baseline:.3f} "
                f"by more than {cfg.anomaly_flag_rate_tolerance}"
            )
        
        if failures:
            raise ValidationFailure("Candidate models rejected", failures=failures)
        logger.info(f"Validation passed: {ctx.metrics}")
    
    def _promote(self, ctx: RunContext) -> None:
        version = self.registry.next_version(list(ctx.heads))
        schema = self.features.get_current_version().schema()
        candidates = [
            CandidateArtifact(
                model_name=name,
                head=head,
                validation_metrics=ctx.metrics.get(name, {}),
                feature_schema=schema,
                feature_version=self.features.CURRENT_VERSION,
                training_window=(ctx.window_start, ctx.as_of),
                training_run_id=ctx.run_id,
            )
            for name, head in ctx.heads.items()
        ]
        ctx.versions = self.registry.register(candidates, version)
        try:
            self.registry.promote_with_retry(ctx.versions, reason=f"training:{ctx.run_id}")
        except ConcurrentModificationError:
            self.registry.discard(ctx.versions)
            raise
    
    def _after_promotion(self, ctx: RunContext) -> None:
        """Hooks that run once the heads are production; failures are logged only."""
        hooks = [("feature importance", lambda: self._store_importance(ctx))]
        if self._on_promoted is not None:
            hooks.append(("on_promoted", lambda: self._on_promoted(ctx.frame)))
        for label, hook in hooks:
            try:
                hook()
            except Exception:
                logger.exception(f"Run {ctx.run_id}: {label} hook failed after promotion")

    def _store_importance(self, ctx: RunContext) -> None:
        for name, head in ctx.heads.items():
            importance = head.feature_importance()
            if importance:
                self.features.store_feature_importance(importance, name, ctx.versions[name])
    
    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    
    def get_run(self, run_id: str) -> Dict[str, Any]:
        with get_db_context(self._session_factory) as db:
            run = db.get(TrainingRun, run_id)
            if run is None:
                raise RecordNotFoundError(f"Training run {run_id} not found", details={"run_id": run_id})
            return _run_to_dict(run)
    
    def list_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        with get_db_context(self._session_factory) as db:
            runs = db.execute(
                select(TrainingRun).order_by(TrainingRun.started_at.desc()).limit(limit)
            ).scalars().all()
            return [_run_to_dict(run) for run in runs]


def _run_to_dict(run: TrainingRun) -> Dict[str, Any]:
    return {
        "run_id": run.id,
        "trigger": run.trigger,
        "state": run.state,
        "last_successful_stage": run.last_successful_stage,
        "as_of": run.as_of,
        "population_size": run.population_size,
        "skipped_users": run.skipped_users,
        "candidate_versions": run.candidate_versions,
        "validation_report": run.validation_report,
        "error": run.error,
        "started_at": run.started_at,
        "completed_at": run.completed_at,
    }
