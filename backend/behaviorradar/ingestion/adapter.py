"""
Event ingestion adapter.

Normalizes raw trading event records into TradingEvent and stores them.
Malformed records are rejected with a structured error per field; they are
never dropped silently.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from behaviorradar.config import Settings, settings as default_settings
from behaviorradar.db.repositories import TradingEventRepository
from behaviorradar.db.session import SessionFactory, get_db_transaction
from behaviorradar.log_config import get_logger, logger
from behaviorradar.ml.schemas import TradingEvent, to_naive_utc
from behaviorradar.utils.errors import EventValidationError

audit_log = get_logger("behaviorradar.ingestion")


@dataclass(frozen=True)
class Rejection:
    index: int
    field: str
    message: str
    
    def to_dict(self) -> Dict[str, Any]:
        return {"index": self.index, "field": self.field, "message": self.message}


@dataclass
class IngestionReport:
    received: int = 0
    accepted: int = 0
    rejections: List[Rejection] = field(default_factory=list)
    
    @property
    def rejected(self) -> int:
        return len({r.index for r in self.rejections})
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "received": self.received,
            "accepted": self.accepted,
            "rejected": self.rejected,
            "rejections": [r.to_dict() for r in self.rejections],
        }


def _field_errors(exc: ValidationError) -> List[Dict[str, str]]:
    return [
        {
            "field": ".".join(str(part) for part in error["loc"]) or "__root__",
            "message": error["msg"],
        }
        for error in exc.errors()
    ]


class EventIngestionAdapter:
    """Validates and persists trading events."""
    
    def __init__(self, session_factory: Optional[SessionFactory] = None, config: Settings = default_settings):
        self._session_factory = session_factory
        self.config = config
    
    @staticmethod
    def validate(raw: Any) -> TradingEvent:
        """
        Validate one raw record.
        
        Raises:
            EventValidationError: with one {field, message} entry per problem
        """
        if isinstance(raw, TradingEvent):
            return raw
        if not isinstance(raw, dict):
            raise EventValidationError(
                "Trading event must be an object",
                errors=[{"field": "__root__", "message": f"expected object, got {type(raw).__name__}"}],
            )
        try:
            return TradingEvent.model_validate(raw)
        except ValidationError as e:
            raise EventValidationError("Invalid trading event", errors=_field_errors(e)) from e
    
    def ingest(self, raw_records: Iterable[Any]) -> IngestionReport:
        """Store every valid record; report the rest with their field errors."""
        report = IngestionReport()
        events: List[TradingEvent] = []
        for index, raw in enumerate(raw_records):
            report.received += 1
            try:
                events.append(self.validate(raw))
            except EventValidationError as e:
                report.rejections.extend(
                    Rejection(index=index, field=err["field"], message=err["message"]) for err in e.errors
                )
        
        if events:
            with get_db_transaction(self._session_factory) as db:
                report.accepted = TradingEventRepository(db).add_events(events)
        
        if report.rejections:
            audit_log.warning(
                "events_rejected",
                rejected=report.rejected,
                received=report.received,
                fields=sorted({r.field for r in report.rejections}),
            )
        logger.info(f"Ingested {report.accepted} trading events")
        return report
    
    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete events older than the retention window."""
        cutoff = to_naive_utc(now or datetime.utcnow()) - timedelta(days=self.config.event_retention_days)
        with get_db_transaction(self._session_factory) as db:
            deleted = TradingEventRepository(db).purge_before(cutoff)
        logger.info(f"Purged {deleted} trading events older than {cutoff.isoformat()}")
        return deleted
