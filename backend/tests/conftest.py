"""
Shared pytest fixtures for the Behavior Radar test suite.

Every test gets its own in-memory SQLite database and a temporary model
directory, so nothing touches the configured database or artifact store.
"""

import os
import sys
from datetime import datetime, timedelta

import numpy as np
import pytest

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from behaviorradar.config import Settings
from behaviorradar.db.session import build_engine, build_session_factory, init_db
from behaviorradar.ml.schemas import TradingEvent

AS_OF = datetime(2026, 3, 2, 12, 0)


def make_settings(tmp_dir, **overrides) -> Settings:
    """Settings for tests: in-memory database, small population, relaxed gates."""
    values = dict(
        database_url="sqlite://",
        model_dir=str(tmp_dir / "models"),
        scheduler_enabled=False,
        training_min_population=10,
        training_engineer_workers=2,
        synthetic_samples_per_pattern=20,
        classifier_accuracy_floor=0.0,
        risk_mae_ceiling=1.0,
        anomaly_flag_rate_tolerance=1.0,
        serving_cached_budget_ms=2000,
        serving_on_demand_budget_ms=2000,
        serving_workers=4,
        drift_min_samples=20,
    )
    values.update(overrides)
    return Settings(**values)


def make_event(user_id="user-1", timestamp=AS_OF - timedelta(days=1), **overrides) -> TradingEvent:
    """Build a valid trading event with neutral defaults."""
    values = dict(
        user_id=user_id,
        timestamp=timestamp,
        action="buy",
        symbol="AAPL",
        quantity=10.0,
        price=100.0,
        order_type="limit",
        decision_latency_ms=30000.0,
        session_duration_s=1800.0,
        portfolio_exposure=100000.0,
        market_volatility=0.1,
        sentiment_score=0.0,
    )
    values.update(overrides)
    return TradingEvent(**values)


def raw_event(user_id="user-1", timestamp=AS_OF - timedelta(days=1), **overrides) -> dict:
    """JSON-shaped event as submitted to the ingestion endpoint."""
    record = make_event(user_id, timestamp, **overrides).model_dump(mode="json")
    return record


def make_user_events(user_id: str, rng: np.random.Generator, as_of: datetime = AS_OF, round_trips: int = 8):
    """Buy/sell round trips spaced two days apart inside the last 30 days."""
    events = []
    start = as_of - timedelta(days=29)
    size = float(rng.uniform(5, 50))
    for i in range(round_trips):
        opened = start + timedelta(days=2 * i, hours=float(rng.uniform(0, 6)))
        symbol = ["AAPL", "MSFT", "NVDA", "AMZN"][i % 4]
        price = float(rng.uniform(50, 300))
        hold = timedelta(hours=float(rng.uniform(1, 30)))
        common = dict(
            symbol=symbol,
            quantity=size,
            portfolio_exposure=100000.0,
            session_duration_s=float(rng.uniform(300, 3600)),
        )
        events.append(make_event(
            user_id, opened,
            action="buy",
            price=price,
            order_type="limit" if rng.random() < 0.7 else "market",
            decision_latency_ms=float(rng.uniform(10000, 90000)),
            market_volatility=float(rng.uniform(0.05, 0.4)),
            sentiment_score=float(rng.uniform(-0.6, 0.6)),
            **common,
        ))
        events.append(make_event(
            user_id, opened + hold,
            action="sell",
            price=price * float(rng.uniform(0.9, 1.1)),
            order_type="limit",
            decision_latency_ms=float(rng.uniform(10000, 90000)),
            market_volatility=float(rng.uniform(0.05, 0.4)),
            sentiment_score=float(rng.uniform(-0.6, 0.6)),
            **common,
        ))
    return events


def make_population(n_users: int = 16, seed: int = 7, as_of: datetime = AS_OF):
    rng = np.random.default_rng(seed)
    events = []
    for i in range(n_users):
        events.extend(make_user_events(f"user-{i:03d}", rng, as_of))
    return events


@pytest.fixture
def config(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def engine(config):
    engine = build_engine(config.database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def as_of():
    return AS_OF


@pytest.fixture
def settings_factory(tmp_path):
    """Build Settings with overrides on top of the test defaults."""
    def factory(**overrides):
        return make_settings(tmp_path, **overrides)
    return factory


@pytest.fixture
def event_factory():
    return make_event


@pytest.fixture
def raw_event_factory():
    return raw_event


@pytest.fixture
def population_factory():
    return make_population
