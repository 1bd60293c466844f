"""
Tests for PatternHistory.

Readings are recorded from PredictionResults against an in-memory database;
generated_at is set explicitly so windows and halves are deterministic.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from behaviorradar.ml.history import PatternHistory
from behaviorradar.ml.schemas import PredictionResult
from behaviorradar.utils.errors import DatabaseError


def _result(as_of, hours_ago, label="aggressive_trader", risk=0.5, user_id="u1", **overrides):
    return PredictionResult(
        user_id=user_id,
        model_version="1.0.0",
        pattern_label=label,
        pattern_confidence=0.8,
        risk_score=risk,
        anomaly_flag=False,
        generated_at=as_of - timedelta(hours=hours_ago),
        **overrides,
    )


@pytest.fixture
def history(session_factory, config):
    return PatternHistory(session_factory, config)


class TestRecording:
    """Storing and reading pattern readings."""

    def test_history_in_time_order(self, history, as_of):
        """Readings come back oldest first and only for the requested user."""
        history.record(_result(as_of, 1, label="day_trader"))
        history.record(_result(as_of, 3))
        history.record(_result(as_of, 2, user_id="u2"))

        observations = history.history("u1", end=as_of)

        assert [o.pattern_label for o in observations] == ["aggressive_trader", "day_trader"]
        assert observations[0].observed_at == as_of - timedelta(hours=3)
        assert observations[0].model_version == "1.0.0"

    def test_unlabelled_result_skipped(self, history, as_of):
        """A prediction whose classifier degraded is not stored."""
        assert history.record(_result(as_of, 1, label=None)) is None
        assert history.history("u1", end=as_of) == []

    def test_window_and_limit(self, history, as_of):
        """Readings older than pattern_history_days are outside the default window; limit keeps the newest."""
        history.record(_result(as_of, 24 * 40))
        for hours in (5, 4, 3):
            history.record(_result(as_of, hours, label=f"label-{hours}"))

        assert len(history.history("u1", end=as_of)) == 3
        assert [o.pattern_label for o in history.history("u1", end=as_of, limit=2)] == ["label-4", "label-3"]
        assert len(history.history("u1", start=as_of - timedelta(days=60), end=as_of)) == 4

    def test_storage_error_propagates(self, history, as_of):
        """record() raises DatabaseError; callers decide whether to ignore it."""
        with patch("behaviorradar.ml.history.PatternObservationRepository.add", side_effect=RuntimeError("disk full")):
            with pytest.raises(DatabaseError):
                history.record(_result(as_of, 1))


class TestTrends:
    """Label mix and risk direction over a window."""

    def test_shift_towards_a_pattern(self, history, as_of):
        """A user drifting into overtrading shows it as trending, with rising risk."""
        for hours, label, risk in [
            (8, "swing_trader", 0.2),
            (7, "swing_trader", 0.3),
            (6, "swing_trader", 0.2),
            (5, "aggressive_trader", 0.3),
            (4, "aggressive_trader", 0.7),
            (3, "aggressive_trader", 0.8),
            (2, "aggressive_trader", 0.9),
            (1, "swing_trader", 0.6),
        ]:
            history.record(_result(as_of, hours, label=label, risk=risk))

        trend = history.trends("u1", end=as_of)

        assert trend.observation_count == 8
        assert trend.pattern_counts == {"aggressive_trader": 4, "swing_trader": 4}
        assert trend.dominant_pattern == "aggressive_trader"
        assert trend.trending_patterns == ["aggressive_trader"]
        assert trend.mean_risk_score == pytest.approx(0.5)
        assert trend.risk_trend == pytest.approx(0.75 - 0.25)

    def test_single_reading(self, history, as_of):
        history.record(_result(as_of, 1, risk=None))

        trend = history.trends("u1", end=as_of)

        assert trend.dominant_pattern == "aggressive_trader"
        assert trend.trending_patterns == []
        assert trend.mean_risk_score is None
        assert trend.risk_trend is None

    def test_no_readings(self, history, as_of):
        trend = history.trends("ghost", end=as_of)

        assert trend.observation_count == 0
        assert trend.pattern_counts == {}
        assert trend.start == as_of - timedelta(days=30)
