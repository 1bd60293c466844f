"""
Tests for InsightGenerator and InterventionFeed.

Insights and triggers are pure functions of a PredictionResult, so results
are built directly; the feed uses a controllable clock.
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from behaviorradar.ml.insights import InsightGenerator, InterventionFeed, downgrade, strongest
from behaviorradar.ml.schemas import (
    FeatureQuality,
    InterventionAction,
    InterventionResponse,
    PredictionResult,
    Severity,
)
from behaviorradar.utils.errors import RecordNotFoundError

NOW = datetime(2026, 3, 2, 12, 0)

AGGRESSIVE_FEATURES = {"trade_frequency": 45.0, "risk_taking": 0.25, "overconfidence_score": 0.8}


def _result(**overrides):
    values = dict(
        user_id="u1",
        model_version="1.0.0",
        pattern_label="aggressive_trader",
        pattern_confidence=0.9,
        risk_score=0.3,
        anomaly_flag=False,
        anomaly_score=-0.2,
        cluster_id=1,
        features=AGGRESSIVE_FEATURES,
    )
    values.update(overrides)
    return PredictionResult(**values)


@pytest.fixture
def generator(config):
    return InsightGenerator(config=config, clock=lambda: NOW)


class TestSeverity:
    """Risk thresholds and helper ordering."""

    @pytest.mark.parametrize("score,expected", [
        (None, Severity.INFO),
        (0.59, Severity.INFO),
        (0.6, Severity.WARNING),
        (0.79, Severity.WARNING),
        (0.8, Severity.CRITICAL),
    ])
    def test_risk_thresholds(self, generator, score, expected):
        """Warning at 0.6 and critical at 0.8 by default."""
        assert generator.risk_severity(score) == expected

    def test_downgrade_floors_at_info(self):
        assert downgrade(Severity.CRITICAL) == Severity.WARNING
        assert downgrade(Severity.INFO) == Severity.INFO

    def test_strongest_action(self):
        assert strongest(
            InterventionAction.SHOW_INSIGHT, InterventionAction.SUGGEST_COOL_DOWN
        ) == InterventionAction.SUGGEST_COOL_DOWN


class TestGenerate:
    """Insights and triggers for a single prediction."""

    def test_low_risk_pattern_insight_only(self, generator):
        """Below the warning threshold there is an insight but no trigger."""
        insights, triggers = generator.generate(_result(risk_score=0.3))

        assert len(insights) == 1
        assert insights[0].pattern_id == "aggressive_trader"
        assert insights[0].severity == Severity.INFO.value
        assert "45 trades per day" in insights[0].message
        assert triggers == []

    def test_critical_risk_trigger(self, generator):
        """A critical score yields a high-priority real-time trigger."""
        insights, triggers = generator.generate(_result(risk_score=0.85))

        assert insights[0].severity == "critical"
        assert len(triggers) == 1
        trigger = triggers[0]
        assert trigger.reason == "risk_score"
        assert trigger.priority == "high"
        assert trigger.intervention_type == "real_time_alert"
        assert trigger.recommended_action == InterventionAction.REQUIRE_CONFIRMATION.value
        assert trigger.expires_at == NOW + timedelta(minutes=60)

    def test_pattern_action_wins_when_stronger(self, generator):
        """An emotional pattern at warning level asks for a cool-down."""
        features = {"emotional_trading_score": 0.8, "loss_aversion_score": 0.7}
        _, triggers = generator.generate(_result(
            pattern_label="emotional_trader", risk_score=0.65, features=features,
        ))

        assert triggers[0].severity == "warning"
        assert triggers[0].recommended_action == "suggest_cool_down"

    def test_low_confidence_is_tentative(self, generator):
        """Below the confidence minimum the insight is softened, not dropped."""
        insights, triggers = generator.generate(_result(pattern_confidence=0.3, risk_score=0.85))

        insight = insights[0]
        assert insight.tentative is True
        assert insight.severity == "warning"
        assert insight.title.startswith("Possible")
        assert insight.message.startswith("This reading is tentative (30% confidence).")
        assert insight.recommended_action == "show_insight"
        assert triggers[0].severity == "critical"

    def test_poor_quality_is_tentative(self, generator):
        """Poor feature quality marks the reading tentative even at high confidence."""
        insights, _ = generator.generate(_result(feature_quality=FeatureQuality.POOR))

        assert insights[0].tentative is True

    def test_anomaly_insight_and_trigger(self, generator):
        """An anomaly flag adds a warning insight and a review trigger."""
        insights, triggers = generator.generate(_result(anomaly_flag=True, anomaly_score=0.31))

        assert [i.pattern_id for i in insights] == ["aggressive_trader", "anomaly"]
        assert triggers[0].reason == "anomaly"
        assert triggers[0].recommended_action == "suggest_review"
        assert "0.31" in insights[1].message

    def test_degraded_classifier_with_high_risk(self, generator):
        """Without a pattern label a high risk score still produces an insight."""
        insights, triggers = generator.generate(_result(pattern_label=None, pattern_confidence=None, risk_score=0.7))

        assert insights[0].title == "Elevated behavioral risk"
        assert triggers[0].pattern_id is None
        assert triggers[0].recommended_action == "suggest_review"

    def test_template_missing_values_fall_back(self, generator):
        """Missing template values fall back to the pattern description."""
        insights, _ = generator.generate(_result(features={}))

        assert insights[0].message == "High frequency trading with oversized positions"

    def test_never_blocks(self, generator):
        """No generated action is outside the advisory set."""
        advisory = {a.value for a in InterventionAction}
        for score in (0.1, 0.65, 0.95):
            insights, triggers = generator.generate(_result(risk_score=score, anomaly_flag=True, anomaly_score=0.4))
            for item in insights + triggers:
                assert item.recommended_action in advisory


class TestInterventionFeed:
    """Throttling and buffering of delivered triggers."""

    @pytest.fixture
    def clock(self):
        return {"now": NOW}

    @pytest.fixture
    def feed(self, settings_factory, clock):
        config = settings_factory(intervention_max_per_hour=2, intervention_cooldown_minutes=15)
        return InterventionFeed(config, clock=lambda: clock["now"])

    def _triggers(self, generator, user_id="u1", **overrides):
        return generator.generate(_result(user_id=user_id, risk_score=0.85, **overrides))

    def test_delivers_to_sinks(self, feed, generator):
        sink = MagicMock()
        feed.add_sink(sink)

        delivered = feed.publish(*self._triggers(generator))

        assert len(delivered) == 1
        sink.assert_called_once_with(delivered[0])
        assert feed.delivered_count == 1

    def test_cooldown_per_pattern(self, feed, generator, clock):
        """The same pattern is not re-triggered inside the cool-down."""
        feed.publish(*self._triggers(generator))
        clock["now"] = NOW + timedelta(minutes=5)
        assert feed.publish(*self._triggers(generator)) == []

        clock["now"] = NOW + timedelta(minutes=16)
        assert len(feed.publish(*self._triggers(generator))) == 1
        assert feed.throttled_count == 1

    def test_hourly_limit_per_user(self, feed, generator, clock):
        """A user receives at most the configured number of triggers per hour."""
        feed.publish(*self._triggers(generator, pattern_label="aggressive_trader"))
        feed.publish(*self._triggers(generator, pattern_label="day_trader"))
        third = feed.publish(*self._triggers(generator, pattern_label="swing_trader"))
        other_user = feed.publish(*self._triggers(generator, user_id="u2"))

        assert third == []
        assert len(other_user) == 1

        clock["now"] = NOW + timedelta(hours=1)
        assert len(feed.publish(*self._triggers(generator, pattern_label="momentum_trader"))) == 1

    def test_failing_sink_does_not_block_delivery(self, feed, generator):
        broken = MagicMock(side_effect=RuntimeError("sink down"))
        healthy = MagicMock()
        feed.add_sink(broken)
        feed.add_sink(healthy)

        feed.publish(*self._triggers(generator))

        healthy.assert_called_once()

    def test_recent_insights_expire(self, feed, generator, clock):
        """Buffered insights are hidden once expired unless asked for."""
        feed.publish(*self._triggers(generator))

        assert len(feed.recent_insights("u1")) == 1
        clock["now"] = NOW + timedelta(hours=2)
        assert feed.recent_insights("u1") == []
        assert len(feed.recent_insights("u1", include_expired=True)) == 1


class TestInterventionResponses:
    """Responses to delivered triggers and effectiveness counters."""

    @pytest.fixture
    def feed(self, settings_factory):
        config = settings_factory(intervention_max_per_hour=10, intervention_tracked_triggers=3)
        return InterventionFeed(config, clock=lambda: NOW)

    def _deliver(self, feed, generator, user_id="u1", pattern_label="aggressive_trader"):
        insights, triggers = generator.generate(
            _result(user_id=user_id, pattern_label=pattern_label, risk_score=0.85)
        )
        return feed.publish(insights, triggers)[0]

    def test_counters_per_user_and_pattern(self, feed, generator):
        """Acted, acknowledged and dismissed triggers are counted against their user and pattern."""
        acted = self._deliver(feed, generator)
        seen = self._deliver(feed, generator, pattern_label="day_trader")
        self._deliver(feed, generator, user_id="u2")

        feed.record_response(acted.trigger_id, InterventionResponse.ACTED)
        feed.record_response(seen.trigger_id, "acknowledged", user_id="u1")

        mine = feed.effectiveness("u1")
        assert mine["delivered"] == 2
        assert mine["acted"] == 1
        assert mine["acknowledged"] == 1
        assert mine["response_rate"] == 1.0
        assert mine["action_rate"] == 0.5
        assert mine["by_pattern"]["aggressive_trader"]["acted"] == 1
        assert mine["by_pattern"]["day_trader"]["acknowledged"] == 1

        overall = feed.effectiveness()
        assert overall["delivered"] == 3
        assert overall["response_rate"] == round(2 / 3, 4)
        assert feed.response_count == 2

    def test_later_response_replaces_earlier(self, feed, generator):
        trigger = self._deliver(feed, generator)

        feed.record_response(trigger.trigger_id, InterventionResponse.DISMISSED)
        feed.record_response(trigger.trigger_id, InterventionResponse.ACTED)

        stats = feed.effectiveness("u1")
        assert stats["dismissed"] == 0
        assert stats["acted"] == 1
        assert stats["response_rate"] == 1.0

    def test_unknown_or_foreign_trigger(self, feed, generator):
        """Unknown ids and triggers of another user raise RecordNotFoundError."""
        trigger = self._deliver(feed, generator)

        with pytest.raises(RecordNotFoundError):
            feed.record_response("missing", InterventionResponse.ACTED)
        with pytest.raises(RecordNotFoundError):
            feed.record_response(trigger.trigger_id, InterventionResponse.ACTED, user_id="u2")
        assert feed.effectiveness("u1")["acted"] == 0

    def test_tracking_is_bounded(self, feed, generator):
        """Only the newest intervention_tracked_triggers can still be answered; counts are kept."""
        labels = ["aggressive_trader", "day_trader", "swing_trader", "momentum_trader"]
        delivered = [self._deliver(feed, generator, pattern_label=label) for label in labels]

        with pytest.raises(RecordNotFoundError):
            feed.record_response(delivered[0].trigger_id, InterventionResponse.ACTED)
        feed.record_response(delivered[-1].trigger_id, InterventionResponse.ACTED)

        assert feed.effectiveness("u1")["delivered"] == 4
        assert feed.effectiveness("u1")["acted"] == 1

    def test_no_deliveries(self, feed):
        stats = feed.effectiveness("nobody")

        assert stats["delivered"] == 0
        assert stats["response_rate"] == 0.0
        assert stats["by_pattern"] == {}
