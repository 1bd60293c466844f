"""
Tests for the TrainingOrchestrator state machine.

Runs the full pipeline against a synthetic population stored in an in-memory
database: promotion, validation gates, cancellation, population checks and
anomaly detection on an injected outlier.
"""

from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock

import pandas as pd
import pytest

from behaviorradar.db.repositories import TradingEventRepository
from behaviorradar.db.session import get_db_transaction
from behaviorradar.ml.feature_store.registry import feature_registry
from behaviorradar.ml.features import BehavioralFeatureEngine
from behaviorradar.ml.heads import ANOMALY_DETECTOR, HEAD_NAMES, PATTERN_CLASSIFIER
from behaviorradar.ml.monitoring import RetrainRequested
from behaviorradar.ml.registry import ModelRegistryService
from behaviorradar.ml.training import TrainingOrchestrator, TrainingState
from behaviorradar.utils.errors import ConcurrentModificationError, ModelTrainingError, RecordNotFoundError


def _store_events(session_factory, events):
    with get_db_transaction(session_factory) as db:
        TradingEventRepository(db).add_events(events)


@pytest.fixture
def populated(session_factory, population_factory):
    events = population_factory(16)
    _store_events(session_factory, events)
    return events


def _orchestrator(session_factory, config, **kwargs):
    registry = kwargs.pop("registry", None) or ModelRegistryService(session_factory, config)
    return TrainingOrchestrator(session_factory, registry=registry, config=config, **kwargs)


class TestSuccessfulRun:
    """A run over a healthy population promotes all four heads."""

    def test_promotes_all_heads(self, session_factory, config, populated, as_of):
        """Every head is registered at 1.0.0 and becomes production."""
        orchestrator = _orchestrator(session_factory, config)

        result = orchestrator.run(trigger="manual", as_of=as_of)

        assert result.state == TrainingState.PROMOTED.value
        assert result.last_successful_stage == "PROMOTE"
        assert result.versions == {name: "1.0.0" for name in HEAD_NAMES}
        assert result.population_size == 16
        production = orchestrator.registry.get_production_all()
        assert set(production) == set(HEAD_NAMES)
        assert orchestrator.state == TrainingState.IDLE

    def test_run_row_recorded(self, session_factory, config, populated, as_of):
        """The run row carries the outcome and the validation report."""
        orchestrator = _orchestrator(session_factory, config)
        result = orchestrator.run(as_of=as_of)

        run = orchestrator.get_run(result.run_id)

        assert run["state"] == "PROMOTED"
        assert run["trigger"] == "manual"
        assert run["candidate_versions"][PATTERN_CLASSIFIER] == "1.0.0"
        assert "accuracy" in run["validation_report"][PATTERN_CLASSIFIER]
        assert "baseline_flag_rate" in run["validation_report"][ANOMALY_DETECTOR]
        assert run["completed_at"] is not None
        assert orchestrator.list_runs()[0]["run_id"] == result.run_id

    def test_promotion_callback_receives_population(self, session_factory, config, populated, as_of):
        """on_promoted gets the training population frame."""
        on_promoted = MagicMock()
        orchestrator = _orchestrator(session_factory, config, on_promoted=on_promoted)

        orchestrator.run(as_of=as_of)

        on_promoted.assert_called_once()
        frame = on_promoted.call_args[0][0]
        assert isinstance(frame, pd.DataFrame)
        assert len(frame) == 16
        assert list(frame.columns) == feature_registry.get_feature_names()

    def test_feature_importance_stored(self, session_factory, config, populated, as_of):
        """Tree heads publish their importances to the feature registry."""
        orchestrator = _orchestrator(session_factory, config)
        result = orchestrator.run(as_of=as_of)

        importance = feature_registry.get_feature_importance(
            PATTERN_CLASSIFIER, result.versions[PATTERN_CLASSIFIER]
        )

        assert len(importance) == len(feature_registry.get_feature_names())

    def test_rerun_reuses_vectors_and_bumps_version(self, session_factory, config, populated, as_of):
        """A second run at the same as_of reuses stored vectors and promotes 1.0.1."""
        orchestrator = _orchestrator(session_factory, config)
        orchestrator.run(as_of=as_of)
        orchestrator.engine = MagicMock(wraps=orchestrator.engine)

        result = orchestrator.run(as_of=as_of)

        assert result.state == "PROMOTED"
        assert result.population_size == 16
        orchestrator.engine.compute_from_events.assert_not_called()
        assert orchestrator.registry.get_production(ANOMALY_DETECTOR).version == "1.0.1"


class TestPromotionBoundary:
    """Outcomes around the registry commit."""

    def test_failing_hook_keeps_run_promoted(self, session_factory, config, populated, as_of):
        """A hook that raises after the commit is logged; the run stays PROMOTED."""
        on_promoted = MagicMock(side_effect=RuntimeError("reference failed"))
        orchestrator = _orchestrator(session_factory, config, on_promoted=on_promoted)

        result = orchestrator.run(as_of=as_of)

        on_promoted.assert_called_once()
        assert result.state == "PROMOTED"
        assert result.error is None
        assert orchestrator.get_run(result.run_id)["state"] == "PROMOTED"
        assert set(orchestrator.registry.get_production_all()) == set(HEAD_NAMES)
        assert feature_registry.get_feature_importance(PATTERN_CLASSIFIER, result.versions[PATTERN_CLASSIFIER])

    def test_lost_promotion_discards_candidates(self, session_factory, config, populated, as_of):
        """Candidates that lose every promotion attempt leave no staging rows or blobs."""
        registry = ModelRegistryService(session_factory, config)
        registry.promote_with_retry = MagicMock(side_effect=ConcurrentModificationError("pointer moved"))
        orchestrator = _orchestrator(session_factory, config, registry=registry)

        result = orchestrator.run(as_of=as_of)

        assert result.state == "REJECTED"
        assert result.last_successful_stage == "VALIDATE"
        assert registry.list_versions() == []
        assert list(Path(config.model_dir).rglob("*.joblib")) == []


class TestRejectedRuns:
    """Failures leave production untouched."""

    def test_validation_gate_rejects(self, session_factory, settings_factory, populated, as_of):
        """An unreachable accuracy floor rejects the candidates."""
        config = settings_factory(classifier_accuracy_floor=1.01)
        orchestrator = _orchestrator(session_factory, config)

        result = orchestrator.run(as_of=as_of)

        assert result.state == TrainingState.REJECTED.value
        assert result.last_successful_stage == "TRAIN"
        assert result.metrics[PATTERN_CLASSIFIER]["accuracy"] <= 1.0
        assert orchestrator.registry.get_production_all() == {}

    def test_rejection_keeps_previous_production(self, session_factory, settings_factory, populated, as_of):
        """A rejected run does not replace the promoted version."""
        registry = ModelRegistryService(session_factory, settings_factory())
        _orchestrator(session_factory, settings_factory(), registry=registry).run(as_of=as_of)

        strict = _orchestrator(session_factory, settings_factory(risk_mae_ceiling=-1.0), registry=registry)
        result = strict.run(as_of=as_of)

        assert result.state == "REJECTED"
        assert registry.get_production(ANOMALY_DETECTOR).version == "1.0.0"

    def test_population_below_minimum(self, session_factory, settings_factory, populated, as_of):
        """Too few feature vectors stop the run after extraction."""
        orchestrator = _orchestrator(session_factory, settings_factory(training_min_population=50))

        result = orchestrator.run(as_of=as_of)

        assert result.state == "REJECTED"
        assert result.last_successful_stage == "EXTRACT"
        assert "below the minimum" in result.error

    def test_no_events(self, session_factory, config, as_of):
        """An empty event window rejects the run before engineering."""
        orchestrator = _orchestrator(session_factory, config)

        result = orchestrator.run(as_of=as_of)

        assert result.state == "REJECTED"
        assert result.last_successful_stage is None

    def test_users_with_few_events_are_skipped(self, session_factory, config, populated, event_factory, as_of):
        """Users below the event minimum are counted, not failed."""
        _store_events(session_factory, [event_factory("sparse-user", as_of - timedelta(hours=1))])
        orchestrator = _orchestrator(session_factory, config)

        result = orchestrator.run(as_of=as_of)

        assert result.state == "PROMOTED"
        assert result.skipped_users == 1


class TestRunControl:
    """Cancellation, exclusivity and retrain requests."""

    def test_cancel_at_stage_boundary(self, session_factory, config, populated, as_of):
        """Cancelling during ENGINEER stops the run before TRAIN."""
        store = MagicMock()
        orchestrator = _orchestrator(session_factory, config, feature_store=store)

        def cancel_while_engineering(*args):
            orchestrator.cancel()
            return []

        store.read_range.side_effect = cancel_while_engineering

        result = orchestrator.run(as_of=as_of)

        assert result.state == "REJECTED"
        assert result.last_successful_stage == "ENGINEER"
        assert "cancelled" in result.error
        assert orchestrator.registry.get_production_all() == {}

    def test_single_run_at_a_time(self, session_factory, config, as_of):
        """A second run while one is in progress is refused."""
        orchestrator = _orchestrator(session_factory, config)
        orchestrator._run_lock.acquire()
        try:
            with pytest.raises(ModelTrainingError):
                orchestrator.run(as_of=as_of)
        finally:
            orchestrator._run_lock.release()

    def test_retrain_requests_are_consumed_once(self, session_factory, config):
        """Drift signals queue until the scheduler consumes them."""
        orchestrator = _orchestrator(session_factory, config)
        orchestrator.request_retrain(RetrainRequested(reason="feature_drift"))

        assert orchestrator.has_pending_retrain()
        assert [r.reason for r in orchestrator.consume_retrain_requests()] == ["feature_drift"]
        assert not orchestrator.has_pending_retrain()

    def test_unknown_run(self, session_factory, config):
        """get_run raises RecordNotFoundError for an unknown id."""
        orchestrator = _orchestrator(session_factory, config)

        with pytest.raises(RecordNotFoundError):
            orchestrator.get_run("missing")


@pytest.fixture
def large_population(session_factory, population_factory):
    events = population_factory(30)
    _store_events(session_factory, events)
    return events


def _production_head(orchestrator, model_name):
    registry = orchestrator.registry
    return registry.load_head(registry.get_production(model_name))


class TestAnomalyDetection:
    """The trained anomaly head isolates one injected outlier."""

    def test_injected_outlier_flags_only_its_user(self, session_factory, config, large_population, as_of):
        """One trade at 1000x the usual size flags that user and no one else in the batch."""
        orchestrator = _orchestrator(session_factory, config)
        assert orchestrator.run(as_of=as_of).state == "PROMOTED"
        head = _production_head(orchestrator, ANOMALY_DETECTOR)
        engine = BehavioralFeatureEngine(config=config)

        histories = {}
        for event in large_population:
            histories.setdefault(event.user_id, []).append(event)
        usual = histories["user-000"][0]
        histories["user-000"].append(usual.model_copy(update={
            "timestamp": as_of - timedelta(hours=2),
            "quantity": usual.quantity * 1000,
        }))

        users = sorted(histories)
        vectors = [engine.compute_from_events(user_id, as_of, histories[user_id]) for user_id in users]
        outputs = head.predict(pd.DataFrame([v.features for v in vectors]))
        flags = {user_id: out.fields["anomaly_flag"] for user_id, out in zip(users, outputs)}

        assert flags.pop("user-000") is True
        assert [user_id for user_id, flagged in flags.items() if flagged] == []

    def test_held_out_flag_rate_recorded(self, session_factory, config, large_population, as_of):
        """Validation reports the held-out flag rate and the calibrated threshold."""
        result = _orchestrator(session_factory, config).run(as_of=as_of)
        metrics = result.metrics[ANOMALY_DETECTOR]

        assert metrics["flag_rate"] == 0.0
        assert metrics["score_threshold"] < 0


class TestPatternClassification:
    """The trained classifier reproduces the catalog on the overtrading scenario."""

    @pytest.fixture
    def overtrading_events(self, event_factory, as_of):
        """50 trades in one day, 80% of them at 20% of the portfolio."""
        day_start = (as_of - timedelta(days=1)).replace(hour=8, minute=0)
        return [
            event_factory(
                "overtrader",
                day_start + timedelta(minutes=10 * i),
                action="buy" if i % 2 == 0 else "sell",
                symbol="TSLA",
                quantity=50.0 if i % 5 == 0 else 200.0,
                price=100.0,
            )
            for i in range(50)
        ]

    def test_overtrader_classified_aggressive(
        self, session_factory, settings_factory, large_population, overtrading_events, as_of
    ):
        config = settings_factory(synthetic_samples_per_pattern=40)
        orchestrator = _orchestrator(session_factory, config)
        assert orchestrator.run(as_of=as_of).state == "PROMOTED"
        head = _production_head(orchestrator, PATTERN_CLASSIFIER)

        vector = BehavioralFeatureEngine(config=config).compute_from_events(
            "overtrader", as_of, overtrading_events
        )
        output = head.predict(pd.DataFrame([vector.features]))[0].fields

        assert vector.features["overconfidence_score"] == pytest.approx(0.68)
        assert output["pattern_label"] == "aggressive_trader"
        assert output["pattern_confidence"] > 0.5
