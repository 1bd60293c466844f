"""
Tests for EventIngestionAdapter.

Valid events are persisted; invalid ones come back as structured rejections
with one entry per offending field.
"""

from datetime import timedelta, timezone

import pytest

from behaviorradar.db.repositories import TradingEventRepository
from behaviorradar.db.session import get_db_context
from behaviorradar.ingestion import EventIngestionAdapter
from behaviorradar.utils.errors import EventValidationError


@pytest.fixture
def adapter(session_factory, config):
    return EventIngestionAdapter(session_factory, config)


def _count(session_factory, user_id=None):
    with get_db_context(session_factory) as db:
        return TradingEventRepository(db).count_events(user_id)


class TestValidate:
    """Single-record validation."""

    def test_valid_record(self, raw_event_factory):
        """Symbols are normalized and timestamps stored as naive UTC."""
        raw = raw_event_factory(symbol="aapl")
        raw["timestamp"] = "2026-03-01T15:00:00+02:00"

        event = EventIngestionAdapter.validate(raw)

        assert event.symbol == "AAPL"
        assert event.timestamp.tzinfo is None
        assert event.timestamp.hour == 13

    def test_field_errors_are_listed(self, raw_event_factory):
        """Each invalid field is reported by name."""
        raw = raw_event_factory()
        raw["quantity"] = -5
        raw["action"] = "hold"

        with pytest.raises(EventValidationError) as exc_info:
            EventIngestionAdapter.validate(raw)

        fields = {error["field"] for error in exc_info.value.errors}
        assert fields == {"quantity", "action"}

    def test_non_finite_values_rejected(self, raw_event_factory):
        raw = raw_event_factory()
        raw["price"] = float("nan")

        with pytest.raises(EventValidationError):
            EventIngestionAdapter.validate(raw)

    def test_sentiment_bounds(self, raw_event_factory):
        raw = raw_event_factory()
        raw["sentiment_score"] = 1.5

        with pytest.raises(EventValidationError) as exc_info:
            EventIngestionAdapter.validate(raw)

        assert exc_info.value.errors[0]["field"] == "sentiment_score"

    def test_non_object(self):
        with pytest.raises(EventValidationError) as exc_info:
            EventIngestionAdapter.validate(["not", "an", "event"])

        assert exc_info.value.errors[0]["field"] == "__root__"


class TestIngest:
    """Batch ingestion and retention."""

    def test_partial_batch(self, adapter, session_factory, raw_event_factory):
        """Valid records are stored even when others are rejected."""
        bad = raw_event_factory()
        del bad["portfolio_exposure"]

        report = adapter.ingest([raw_event_factory(), bad, raw_event_factory(user_id="u2"), "garbage"])

        assert report.received == 4
        assert report.accepted == 2
        assert report.rejected == 2
        assert [r.index for r in report.rejections] == [1, 3]
        assert report.rejections[0].field == "portfolio_exposure"
        assert _count(session_factory) == 2

    def test_report_serializes(self, adapter, raw_event_factory):
        report = adapter.ingest([raw_event_factory()])

        assert report.to_dict() == {"received": 1, "accepted": 1, "rejected": 0, "rejections": []}

    def test_purge_expired(self, adapter, session_factory, raw_event_factory, as_of):
        """Events older than the retention window are deleted."""
        adapter.ingest([
            raw_event_factory(timestamp=as_of - timedelta(days=120)),
            raw_event_factory(timestamp=as_of - timedelta(days=10)),
        ])

        deleted = adapter.purge_expired(now=as_of.replace(tzinfo=timezone.utc))

        assert deleted == 1
        assert _count(session_factory) == 1


class TestTradingEventRepository:
    """Window queries used by training."""

    def test_active_users_in_window(self, adapter, session_factory, raw_event_factory, as_of):
        """Users are listed once, sorted, for events inside (start, end]."""
        adapter.ingest([
            raw_event_factory(user_id="u2", timestamp=as_of - timedelta(days=1)),
            raw_event_factory(user_id="u1", timestamp=as_of - timedelta(days=2)),
            raw_event_factory(user_id="u1", timestamp=as_of - timedelta(days=3)),
            raw_event_factory(user_id="u3", timestamp=as_of - timedelta(days=40)),
        ])

        with get_db_context(session_factory) as db:
            users = TradingEventRepository(db).list_active_users(as_of - timedelta(days=30), as_of)

        assert users == ["u1", "u2"]
