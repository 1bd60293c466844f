"""
Unit tests for BehavioralFeatureEngine.

Covers the behavioral scores on hand-built event histories:
- Loss aversion from winner/loser holding times
- Overconfidence and risk taking for an overtrading user
- Insufficient data and window boundaries
- Deterministic output regardless of event order
"""

import random
from datetime import timedelta

import pytest

from behaviorradar.ml.features import BehavioralFeatureEngine, loss_aversion, match_round_trips
from behaviorradar.ml.feature_store.registry import feature_registry
from behaviorradar.ml.patterns import pattern_catalog
from behaviorradar.ml.schemas import FeatureQuality
from behaviorradar.utils.errors import InsufficientDataError


@pytest.fixture
def feature_engine(config):
    return BehavioralFeatureEngine(config=config)


def _round_trip(event_factory, opened, symbol, hold_hours, exit_price):
    return [
        event_factory("trader", opened, action="buy", symbol=symbol, price=100.0),
        event_factory("trader", opened + timedelta(hours=hold_hours), action="sell", symbol=symbol, price=exit_price),
    ]


class TestLossAversion:
    """Holding time of losers against winners."""

    def test_losers_held_three_times_longer(self, feature_engine, event_factory, as_of):
        """Losers held 6h against winners held 2h score 0.75."""
        events = []
        for i in range(4):
            opened = as_of - timedelta(days=10 - i)
            events += _round_trip(event_factory, opened, f"WIN{i}", 2, 105.0)
            events += _round_trip(event_factory, opened + timedelta(hours=8), f"LOSS{i}", 6, 95.0)

        vector = feature_engine.compute_from_events("trader", as_of, events)

        assert vector.features["loss_aversion_score"] == pytest.approx(0.75)

    def test_neutral_without_losers(self):
        """Only winning round trips give the neutral 0.5."""
        assert loss_aversion([(2.0, 5.0), (3.0, 1.0)], 1.5) == 0.5

    def test_quick_loss_cutting_scores_low(self):
        """Losers closed three times faster than winners fall below 0.5."""
        assert loss_aversion([(6.0, 5.0), (2.0, -5.0)], 1.5) == pytest.approx(0.25)

    def test_round_trips_match_fifo(self, event_factory, as_of):
        """A sell closes the oldest open lot first."""
        first = as_of - timedelta(hours=10)
        trades = [
            event_factory("trader", first, action="buy", price=100.0, quantity=5),
            event_factory("trader", first + timedelta(hours=2), action="buy", price=110.0, quantity=5),
            event_factory("trader", first + timedelta(hours=4), action="sell", price=120.0, quantity=5),
        ]

        trips = match_round_trips(trades)

        assert trips == [(4.0, 100.0)]


class TestOvertrading:
    """A user trading 50 times in one day with oversized positions."""

    @pytest.fixture
    def overtrading_events(self, event_factory, as_of):
        day_start = (as_of - timedelta(days=1)).replace(hour=8, minute=0)
        return [
            event_factory(
                "trader",
                day_start + timedelta(minutes=10 * i),
                action="buy" if i % 2 == 0 else "sell",
                symbol="TSLA",
                quantity=200.0,
                price=100.0,
            )
            for i in range(50)
        ]

    def test_scores(self, feature_engine, overtrading_events, as_of):
        """Frequency, position size and overconfidence follow from the events."""
        vector = feature_engine.compute_from_events("trader", as_of, overtrading_events)
        features = vector.features

        assert features["trade_frequency"] == pytest.approx(50.0)
        assert features["risk_taking"] == pytest.approx(0.2)
        # 0.4 * frequency at ceiling + 0.35 * all trades large + 0.25 * no volatile market orders
        assert features["overconfidence_score"] == pytest.approx(0.75)
        assert features["emotional_trading_score"] == pytest.approx(0.0)

    def test_labeled_aggressive(self, feature_engine, overtrading_events, as_of):
        """The catalog labels the vector as an aggressive trader."""
        vector = feature_engine.compute_from_events("trader", as_of, overtrading_events)

        assert pattern_catalog.label(vector.features) == "aggressive_trader"


class TestWindowAndErrors:
    """Insufficient data and the (as_of - lookback, as_of] window."""

    def test_too_few_events(self, feature_engine, event_factory, as_of):
        """Fewer events than the minimum raise InsufficientDataError."""
        events = [event_factory("trader", as_of - timedelta(hours=i)) for i in range(3)]

        with pytest.raises(InsufficientDataError) as exc_info:
            feature_engine.compute_from_events("trader", as_of, events)

        assert exc_info.value.details["event_count"] == 3

    def test_no_executed_trades(self, feature_engine, event_factory, as_of):
        """A window with only cancels and modifications has nothing to score."""
        events = [
            event_factory("trader", as_of - timedelta(hours=i), action="cancel" if i % 2 else "modify")
            for i in range(6)
        ]

        with pytest.raises(InsufficientDataError):
            feature_engine.compute_from_events("trader", as_of, events)

    def test_events_outside_window_ignored(self, feature_engine, event_factory, as_of):
        """Events after as_of, before the lookback and of other users are excluded."""
        inside = [event_factory("trader", as_of - timedelta(hours=i), action="buy") for i in range(6)]
        outside = [
            event_factory("trader", as_of + timedelta(minutes=1)),
            event_factory("trader", as_of - timedelta(days=91)),
            event_factory("someone-else", as_of - timedelta(hours=1)),
        ]

        vector = feature_engine.compute_from_events("trader", as_of, inside + outside)

        assert vector.event_count == 6

    def test_event_at_as_of_is_included(self, feature_engine, event_factory, as_of):
        """The window end is inclusive."""
        events = [event_factory("trader", as_of - timedelta(hours=i)) for i in range(5)]

        vector = feature_engine.compute_from_events("trader", as_of, events)

        assert vector.event_count == 5


class TestVectorProperties:
    """Ordering, quality and determinism of computed vectors."""

    def test_feature_order_matches_registry(self, feature_engine, population_factory, as_of):
        """Features come back in the registry's declared order."""
        events = [e for e in population_factory(1) if e.user_id == "user-000"]

        vector = feature_engine.compute_from_events("user-000", as_of, events)

        assert list(vector.features) == feature_registry.get_feature_names()
        assert vector.feature_version == feature_registry.CURRENT_VERSION

    def test_shuffled_events_give_identical_vector(self, feature_engine, population_factory, as_of):
        """Input order does not change the content hash."""
        events = [e for e in population_factory(1) if e.user_id == "user-000"]
        shuffled = list(events)
        random.Random(3).shuffle(shuffled)

        first = feature_engine.compute_from_events("user-000", as_of, events)
        second = feature_engine.compute_from_events("user-000", as_of, shuffled)

        assert first.content_hash() == second.content_hash()

    def test_missing_latency_defaults(self, feature_engine, event_factory, as_of):
        """Without latency data the timing scores are neutral and quality drops."""
        events = [
            event_factory(
                "trader", as_of - timedelta(hours=i),
                decision_latency_ms=None,
                session_duration_s=None,
                market_volatility=None,
                sentiment_score=None,
            )
            for i in range(6)
        ]

        vector = feature_engine.compute_from_events("trader", as_of, events)

        assert vector.features["avg_decision_latency_s"] == 0.0
        assert vector.features["decision_speed"] == 0.5
        assert vector.features["decision_consistency"] == 0.5
        assert vector.quality == FeatureQuality.POOR.value

    def test_quality_follows_event_volume(self, feature_engine, settings_factory, population_factory, as_of):
        """Sixteen complete events grade MEDIUM at min_events=5 and HIGH at min_events=4."""
        events = [e for e in population_factory(1) if e.user_id == "user-000"]
        lenient = BehavioralFeatureEngine(config=settings_factory(feature_min_events=4))

        assert feature_engine.compute_from_events("user-000", as_of, events).quality == FeatureQuality.MEDIUM.value
        assert lenient.compute_from_events("user-000", as_of, events).quality == FeatureQuality.HIGH.value
