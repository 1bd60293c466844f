"""
Repository pattern for trading event and pattern history access.

Keeps SQLAlchemy details out of the ingestion adapter, the feature engine,
the training orchestrator and the pattern history.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from behaviorradar.db.models import PatternObservationRecord, TradingEventRecord
from behaviorradar.ml.schemas import PatternObservation, TradingEvent


def _to_event(row: TradingEventRecord) -> TradingEvent:
    return TradingEvent(
        user_id=row.user_id,
        timestamp=row.timestamp,
        action=row.action,
        symbol=row.symbol,
        quantity=row.quantity,
        price=row.price,
        order_type=row.order_type,
        decision_latency_ms=row.decision_latency_ms,
        session_duration_s=row.session_duration_s,
        portfolio_exposure=row.portfolio_exposure,
        market_volatility=row.market_volatility,
        sentiment_score=row.sentiment_score,
    )


class TradingEventRepository:
    """Repository for TradingEvent rows. Events are append-only."""
    
    def __init__(self, db: Session):
        self.db = db
    
    def add_events(self, events: Iterable[TradingEvent]) -> int:
        rows = [TradingEventRecord(**event.model_dump()) for event in events]
        self.db.add_all(rows)
        self.db.flush()
        return len(rows)
    
    def list_user_events(self, user_id: str, start: datetime, end: datetime) -> List[TradingEvent]:
        """Events for one user with start < timestamp <= end, oldest first."""
        rows = self.db.execute(
            select(TradingEventRecord)
            .where(
                TradingEventRecord.user_id == user_id,
                TradingEventRecord.timestamp > start,
                TradingEventRecord.timestamp <= end,
            )
            .order_by(TradingEventRecord.timestamp, TradingEventRecord.id)
        ).scalars().all()
        return [_to_event(row) for row in rows]
    
    def list_events_between(self, start: datetime, end: datetime) -> Dict[str, List[TradingEvent]]:
        """Bulk read for training, grouped by user."""
        rows = self.db.execute(
            select(TradingEventRecord)
            .where(TradingEventRecord.timestamp > start, TradingEventRecord.timestamp <= end)
            .order_by(TradingEventRecord.user_id, TradingEventRecord.timestamp, TradingEventRecord.id)
        ).scalars().all()
        
        grouped: Dict[str, List[TradingEvent]] = {}
        for row in rows:
            grouped.setdefault(row.user_id, []).append(_to_event(row))
        return grouped
    
    def list_active_users(self, start: datetime, end: datetime) -> List[str]:
        return list(self.db.execute(
            select(TradingEventRecord.user_id)
            .where(TradingEventRecord.timestamp > start, TradingEventRecord.timestamp <= end)
            .distinct()
            .order_by(TradingEventRecord.user_id)
        ).scalars().all())
    
    def count_events(self, user_id: Optional[str] = None) -> int:
        query = select(func.count(TradingEventRecord.id))
        if user_id:
            query = query.where(TradingEventRecord.user_id == user_id)
        return self.db.execute(query).scalar_one()
    
    def purge_before(self, cutoff: datetime) -> int:
        result = self.db.execute(
            delete(TradingEventRecord).where(TradingEventRecord.timestamp < cutoff)
        )
        return result.rowcount or 0


class PatternObservationRepository:
    """Repository for served pattern labels, oldest first."""
    
    def __init__(self, db: Session):
        self.db = db
    
    def add(self, observation: PatternObservation) -> None:
        self.db.add(PatternObservationRecord(**observation.model_dump()))
        self.db.flush()
    
    def list_user_observations(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        limit: Optional[int] = None,
    ) -> List[PatternObservation]:
        """Observations with start <= observed_at <= end; ``limit`` keeps the newest."""
        query = (
            select(PatternObservationRecord)
            .where(
                PatternObservationRecord.user_id == user_id,
                PatternObservationRecord.observed_at >= start,
                PatternObservationRecord.observed_at <= end,
            )
            .order_by(PatternObservationRecord.observed_at.desc(), PatternObservationRecord.id.desc())
        )
        if limit:
            query = query.limit(limit)
        rows = self.db.execute(query).scalars().all()
        return [
            PatternObservation(
                user_id=row.user_id,
                observed_at=row.observed_at,
                pattern_label=row.pattern_label,
                pattern_confidence=row.pattern_confidence,
                risk_score=row.risk_score,
                anomaly_flag=row.anomaly_flag,
                model_version=row.model_version,
            )
            for row in reversed(rows)
        ]
