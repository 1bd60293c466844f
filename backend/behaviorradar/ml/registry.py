"""
Model Registry for versioned head artifacts.

Artifacts are joblib blobs on disk; metadata and stage labels live in the
model_registry table. Promotion is a single transaction that, per model name:
1. compare-and-sets the ModelStagePointer revision (optimistic check)
2. moves the previous production row to archived
3. moves the new row to production

A writer that loses the revision check gets ConcurrentModificationError and
nothing it wrote is kept. Within one process promotions are serialized, since
sessions may share a single sqlite connection; the revision check covers
writers in other processes. Listeners are notified only after commit.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from behaviorradar.config import Settings, settings as default_settings
from behaviorradar.db.models import ModelRegistry, ModelStagePointer
from behaviorradar.db.session import SessionFactory, get_db_context, get_db_transaction
from behaviorradar.log_config import logger
from behaviorradar.ml.heads import ModelHead
from behaviorradar.ml.schemas import ModelArtifactInfo
from behaviorradar.utils.errors import ConcurrentModificationError, ConfigurationError, RecordNotFoundError

STAGE_STAGING = "staging"
STAGE_PRODUCTION = "production"
STAGE_ARCHIVED = "archived"


@dataclass
class CandidateArtifact:
    """A fitted head waiting to be registered."""
    model_name: str
    head: ModelHead
    validation_metrics: Dict
    feature_schema: List[Dict[str, str]]
    feature_version: str
    training_window: Tuple[Optional[datetime], Optional[datetime]] = (None, None)
    training_run_id: Optional[str] = None


@dataclass(frozen=True)
class PromotionEvent:
    """Published after a promotion or rollback commits."""
    versions: Dict[str, str]
    reason: str
    promoted_at: datetime = field(default_factory=datetime.utcnow)


def _to_info(row: ModelRegistry) -> ModelArtifactInfo:
    return ModelArtifactInfo(
        model_name=row.model_name,
        version=row.version,
        stage=row.stage,
        artifact_path=row.artifact_path,
        validation_metrics=row.validation_metrics or {},
        feature_schema=row.feature_schema or [],
        feature_version=row.feature_version,
        training_window_start=row.training_window_start,
        training_window_end=row.training_window_end,
        training_run_id=row.training_run_id,
        created_at=row.created_at,
        promoted_at=row.promoted_at,
    )


def _parse_version(version: str) -> Tuple[int, int, int]:
    try:
        major, minor, patch = (int(part) for part in version.split("."))
        return major, minor, patch
    except ValueError:
        return 0, 0, 0


class ModelRegistryService:
    """Registers, promotes and rolls back model head artifacts."""
    
    def __init__(self, session_factory: Optional[SessionFactory] = None, config: Settings = default_settings):
        self._session_factory = session_factory
        self.model_dir = Path(config.model_dir)
        if self.model_dir.exists() and not self.model_dir.is_dir():
            raise ConfigurationError(
                f"model_dir {self.model_dir} is not a directory",
                details={"model_dir": str(self.model_dir)},
            )
        self._listeners: List[Callable[[PromotionEvent], None]] = []
        self._promotion_lock = threading.Lock()
    
    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------
    
    def subscribe(self, listener: Callable[[PromotionEvent], None]) -> None:
        self._listeners.append(listener)
    
    def _publish(self, event: PromotionEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                # The promotion has committed; a failing listener must not undo it
                logger.exception(f"Promotion listener {listener!r} failed")
    
    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    
    def next_version(self, model_names: List[str]) -> str:
        """Patch bump over the highest version of any of the given models."""
        with get_db_context(self._session_factory) as db:
            versions = db.execute(
                select(ModelRegistry.version).where(ModelRegistry.model_name.in_(model_names))
            ).scalars().all()
        if not versions:
            return "1.0.0"
        major, minor, patch = max(_parse_version(v) for v in versions)
        return f"{major}.{minor}.{patch + 1}"
    
    def register(self, candidates: List[CandidateArtifact], version: str) -> Dict[str, str]:
        """
        Save candidate artifacts and record them as staging in one transaction.
        
        Returns:
            Mapping of model name to registered version
        """
        written: List[Path] = []
        try:
            for candidate in candidates:
                path = self.model_dir / candidate.model_name / f"{version}.joblib"
                path.parent.mkdir(parents=True, exist_ok=True)
                candidate.head.save(str(path))
                written.append(path)
            
            with get_db_transaction(self._session_factory) as db:
                for candidate, path in zip(candidates, written):
                    start, end = candidate.training_window
                    db.add(ModelRegistry(
                        model_name=candidate.model_name,
                        version=version,
                        stage=STAGE_STAGING,
                        artifact_path=str(path),
                        validation_metrics=candidate.validation_metrics,
                        feature_schema=candidate.feature_schema,
                        feature_version=candidate.feature_version,
                        training_window_start=start,
                        training_window_end=end,
                        training_run_id=candidate.training_run_id,
                    ))
        except Exception:
            for path in written:
                path.unlink(missing_ok=True)
            raise
        
        logger.info(f"Registered {len(candidates)} candidate artifacts at version {version}")
        return {candidate.model_name: version for candidate in candidates}
    
    def discard(self, versions: Dict[str, str]) -> int:
        """
        Delete candidates that never left staging, with their blobs.
        
        Used when a run registered candidates but could not promote them.
        Returns the number of rows removed.
        """
        with get_db_transaction(self._session_factory) as db:
            rows = db.execute(
                select(ModelRegistry).where(
                    ModelRegistry.stage == STAGE_STAGING,
                    ModelRegistry.model_name.in_(list(versions)),
                )
            ).scalars().all()
            doomed = [row for row in rows if versions.get(row.model_name) == row.version]
            paths = [Path(row.artifact_path) for row in doomed]
            if doomed:
                db.execute(delete(ModelRegistry).where(ModelRegistry.id.in_([row.id for row in doomed])))
        
        for path in paths:
            path.unlink(missing_ok=True)
        logger.warning(f"Discarded {len(doomed)} staging artifacts: {versions}")
        return len(doomed)
    
    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    
    def list_model_names(self) -> List[str]:
        with get_db_context(self._session_factory) as db:
            return list(db.execute(
                select(ModelRegistry.model_name).distinct().order_by(ModelRegistry.model_name)
            ).scalars().all())
    
    def list_versions(self, model_name: Optional[str] = None) -> List[ModelArtifactInfo]:
        query = select(ModelRegistry).order_by(ModelRegistry.model_name, ModelRegistry.id.desc())
        if model_name:
            query = query.where(ModelRegistry.model_name == model_name)
        with get_db_context(self._session_factory) as db:
            return [_to_info(row) for row in db.execute(query).scalars().all()]
    
    def get_artifact(self, model_name: str, version: str) -> ModelArtifactInfo:
        with get_db_context(self._session_factory) as db:
            return _to_info(self._get_row(db, model_name, version))
    
    def get_metrics(self, model_name: str, version: str) -> Dict:
        return self.get_artifact(model_name, version).validation_metrics
    
    def get_production(self, model_name: str) -> Optional[ModelArtifactInfo]:
        with get_db_context(self._session_factory) as db:
            row = db.execute(
                select(ModelRegistry).where(
                    ModelRegistry.model_name == model_name,
                    ModelRegistry.stage == STAGE_PRODUCTION,
                )
            ).scalar_one_or_none()
            return _to_info(row) if row is not None else None
    
    def get_production_all(self) -> Dict[str, ModelArtifactInfo]:
        with get_db_context(self._session_factory) as db:
            rows = db.execute(
                select(ModelRegistry).where(ModelRegistry.stage == STAGE_PRODUCTION)
            ).scalars().all()
            return {row.model_name: _to_info(row) for row in rows}
    
    def get_revision(self, model_name: str) -> int:
        with get_db_context(self._session_factory) as db:
            pointer = db.get(ModelStagePointer, model_name)
            return pointer.revision if pointer is not None else 0
    
    def load_head(self, info: ModelArtifactInfo) -> ModelHead:
        return ModelHead.load(info.artifact_path)
    
    @staticmethod
    def _get_row(db: Session, model_name: str, version: str) -> ModelRegistry:
        row = db.execute(
            select(ModelRegistry).where(
                ModelRegistry.model_name == model_name,
                ModelRegistry.version == version,
            )
        ).scalar_one_or_none()
        if row is None:
            raise RecordNotFoundError(
                f"Model {model_name} version {version} not found",
                details={"model_name": model_name, "version": version},
            )
        return row
    
    # ------------------------------------------------------------------
    # Promotion
    # ------------------------------------------------------------------
    
    def promote(
        self,
        versions: Dict[str, str],
        expected_revisions: Optional[Dict[str, int]] = None,
        reason: str = "manual",
    ) -> PromotionEvent:
        """
        Atomically make the given versions production.
        
        Args:
            versions: model name -> version to promote
            expected_revisions: pointer revisions the caller last observed; when
                omitted the revision read inside the transaction is used
            reason: recorded on the published event
            
        Raises:
            RecordNotFoundError: a version does not exist
            ConcurrentModificationError: another writer changed a pointer first
        """
        now = datetime.utcnow()
        expected_revisions = expected_revisions or {}
        
        with self._promotion_lock, get_db_transaction(self._session_factory) as db:
            for model_name, version in sorted(versions.items()):
                row = self._get_row(db, model_name, version)
                self._swap_pointer(db, model_name, version, expected_revisions.get(model_name))
                
                db.execute(
                    update(ModelRegistry)
                    .where(
                        ModelRegistry.model_name == model_name,
                        ModelRegistry.stage == STAGE_PRODUCTION,
                        ModelRegistry.id != row.id,
                    )
                    .values(stage=STAGE_ARCHIVED, archived_at=now)
                )
                row.stage = STAGE_PRODUCTION
                row.promoted_at = now
                row.archived_at = None
                db.flush()
        
        event = PromotionEvent(versions=dict(versions), reason=reason, promoted_at=now)
        logger.info(f"Promoted {versions} to production ({reason})")
        self._publish(event)
        return event
    
    def _swap_pointer(self, db: Session, model_name: str, version: str, expected: Optional[int]) -> None:
        pointer = db.get(ModelStagePointer, model_name)
        
        if pointer is None:
            if expected not in (None, 0):
                raise ConcurrentModificationError(
                    f"Pointer for {model_name} does not exist at revision {expected}",
                    details={"model_name": model_name, "expected_revision": expected},
                )
            db.add(ModelStagePointer(model_name=model_name, production_version=version, revision=1))
            try:
                db.flush()
            except IntegrityError as e:
                raise ConcurrentModificationError(
                    f"Concurrent first promotion of {model_name}",
                    details={"model_name": model_name},
                ) from e
            return
        
        revision = pointer.revision if expected is None else expected
        result = db.execute(
            update(ModelStagePointer)
            .where(ModelStagePointer.model_name == model_name, ModelStagePointer.revision == revision)
            .values(production_version=version, revision=revision + 1, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModificationError(
                f"Registry pointer for {model_name} changed concurrently",
                details={"model_name": model_name, "expected_revision": revision},
            )
    
    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
        retry=retry_if_exception_type(ConcurrentModificationError),
        reraise=True,
    )
    def promote_with_retry(self, versions: Dict[str, str], reason: str = "training") -> PromotionEvent:
        """Promote, re-reading pointer revisions on each attempt."""
        return self.promote(versions, reason=reason)
    
    def rollback(self, model_name: str, expected_revision: Optional[int] = None) -> PromotionEvent:
        """Re-promote the most recently archived version of a model."""
        with get_db_context(self._session_factory) as db:
            previous = db.execute(
                select(ModelRegistry)
                .where(ModelRegistry.model_name == model_name, ModelRegistry.stage == STAGE_ARCHIVED)
                .order_by(ModelRegistry.archived_at.desc(), ModelRegistry.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            if previous is None:
                raise RecordNotFoundError(
                    f"No archived version of {model_name} to roll back to",
                    details={"model_name": model_name},
                )
            version = previous.version
        
        expected = {model_name: expected_revision} if expected_revision is not None else None
        return self.promote({model_name: version}, expected_revisions=expected, reason="rollback")
