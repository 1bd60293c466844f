"""
Feature Store for behavioral feature vectors.

Persists vectors keyed by (user_id, as_of) and serves two read paths:
point reads for serving, answered from an in-process TTL cache whose TTL is
the staleness bound, and range reads for training, which always go to the
database. Each call opens its own short session, so point and range reads
never wait on each other.
"""

from datetime import datetime
from typing import Iterable, List, Optional

import pandas as pd
from sqlalchemy import select
from sqlalchemy.orm import Session

from behaviorradar.config import Settings, settings as default_settings
from behaviorradar.db.models import FeatureVectorRecord
from behaviorradar.db.session import SessionFactory, get_db_context, get_db_transaction
from behaviorradar.log_config import logger
from behaviorradar.ml.feature_store.cache import TTLCache
from behaviorradar.ml.schemas import FeatureVector, to_naive_utc


def _to_vector(row: FeatureVectorRecord) -> FeatureVector:
    return FeatureVector(
        user_id=row.user_id,
        as_of=row.as_of,
        features=row.features,
        feature_version=row.feature_version,
        event_count=row.event_count,
        quality=row.quality,
    )


class FeatureStore:
    """System of record for computed feature vectors."""
    
    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        config: Settings = default_settings,
        cache: Optional[TTLCache] = None,
    ):
        self._session_factory = session_factory
        self.config = config
        self._cache = cache or TTLCache(
            "feature_point_reads",
            ttl_seconds=config.feature_store_staleness_seconds,
            max_size=config.feature_cache_max_size,
        )
    
    @property
    def cache(self) -> TTLCache:
        return self._cache
    
    def write(self, vector: FeatureVector) -> bool:
        """
        Upsert a vector keyed by (user_id, as_of).
        
        Returns:
            True if stored state changed, False if an identical vector was already present
        """
        with get_db_transaction(self._session_factory) as db:
            changed = self._upsert(db, vector)
        if changed:
            self._invalidate_user(vector.user_id)
        return changed
    
    def write_many(self, vectors: Iterable[FeatureVector]) -> int:
        """Upsert vectors in one transaction; returns how many changed state."""
        vectors = list(vectors)
        with get_db_transaction(self._session_factory) as db:
            changed = [v for v in vectors if self._upsert(db, v)]
        for user_id in {v.user_id for v in changed}:
            self._invalidate_user(user_id)
        logger.info(f"Feature store wrote {len(changed)}/{len(vectors)} vectors")
        return len(changed)
    
    def _upsert(self, db: Session, vector: FeatureVector) -> bool:
        digest = vector.content_hash()
        existing = db.execute(
            select(FeatureVectorRecord).where(
                FeatureVectorRecord.user_id == vector.user_id,
                FeatureVectorRecord.as_of == vector.as_of,
            )
        ).scalar_one_or_none()
        
        if existing is not None and existing.content_hash == digest:
            return False
        
        if existing is None:
            db.add(FeatureVectorRecord(
                user_id=vector.user_id,
                as_of=vector.as_of,
                features=dict(vector.features),
                feature_version=vector.feature_version,
                event_count=vector.event_count,
                quality=vector.quality,
                content_hash=digest,
            ))
        else:
            # Same key, different event set (late events); the newer computation wins
            existing.features = dict(vector.features)
            existing.feature_version = vector.feature_version
            existing.event_count = vector.event_count
            existing.quality = vector.quality
            existing.content_hash = digest
        db.flush()
        return True
    
    def _invalidate_user(self, user_id: str) -> None:
        self._cache.invalidate_where(lambda key: key[0] == user_id)
    
    def read_point(self, user_id: str, as_of: Optional[datetime] = None) -> Optional[FeatureVector]:
        """Latest vector for the user with as_of at or before ``as_of`` (or overall)."""
        as_of = to_naive_utc(as_of) if as_of else None
        key = (user_id, as_of)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        
        query = select(FeatureVectorRecord).where(FeatureVectorRecord.user_id == user_id)
        if as_of is not None:
            query = query.where(FeatureVectorRecord.as_of <= as_of)
        query = query.order_by(FeatureVectorRecord.as_of.desc()).limit(1)
        
        with get_db_context(self._session_factory) as db:
            row = db.execute(query).scalar_one_or_none()
            vector = _to_vector(row) if row is not None else None
        
        if vector is not None:
            self._cache.set(key, vector)
        return vector
    
    def read_range(self, user_id: Optional[str], start: datetime, end: datetime) -> List[FeatureVector]:
        """Vectors with start <= as_of <= end for one user, or all users when user_id is None."""
        query = select(FeatureVectorRecord).where(
            FeatureVectorRecord.as_of >= to_naive_utc(start),
            FeatureVectorRecord.as_of <= to_naive_utc(end),
        )
        if user_id is not None:
            query = query.where(FeatureVectorRecord.user_id == user_id)
        query = query.order_by(FeatureVectorRecord.user_id, FeatureVectorRecord.as_of)
        
        with get_db_context(self._session_factory) as db:
            return [_to_vector(row) for row in db.execute(query).scalars().all()]
    
    @staticmethod
    def to_frame(vectors: List[FeatureVector], feature_names: List[str]) -> pd.DataFrame:
        """Training matrix with one row per vector, indexed by user_id."""
        frame = pd.DataFrame(
            [vector.to_array(feature_names) for vector in vectors],
            columns=feature_names,
            index=pd.Index([v.user_id for v in vectors], name="user_id"),
        )
        return frame
