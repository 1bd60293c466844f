"""
Behavioral feature engine.

Computes a fixed-width feature vector per (user, as_of, lookback window) from
trading events. The computation is a pure function of its inputs: events are
put into a canonical order first, so the same event set always yields the
same vector regardless of the order the events were supplied in.

Feature families:
- Volume: mean, std and skew of trade notional
- Frequency: executed trades per active day
- Timing: mean decision latency, speed and consistency, holding period
- Risk: notional relative to portfolio exposure, symbol diversification
- Behavioral scores: market timing, loss aversion, overconfidence, emotional trading
- Order management and composites: modify/cancel ratios, stress, impulsivity

Every score is checked against [0, 1] and every feature against the registry
bounds. A violation raises FeatureComputationError; values are never clipped.
"""

import bisect
import math
from collections import deque
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from behaviorradar.config import Settings, settings as default_settings
from behaviorradar.db.repositories import TradingEventRepository
from behaviorradar.db.session import SessionFactory, get_db_context
from behaviorradar.log_config import logger
from behaviorradar.ml.feature_store.registry import FeatureRegistry, feature_registry
from behaviorradar.ml.schemas import (
    FeatureQuality,
    FeatureVector,
    OrderType,
    TradeAction,
    TradingEvent,
    to_naive_utc,
)
from behaviorradar.utils.errors import FeatureComputationError, InsufficientDataError

# Rounding keeps vectors byte-stable and absorbs float noise in weighted sums
_PRECISION = 12
_OPTIONAL_FIELDS = ("decision_latency_ms", "session_duration_s", "market_volatility", "sentiment_score")
# Timing scores used when no trade carries a decision latency
_NEUTRAL_TIMING = 0.5


def _event_sort_key(event: TradingEvent) -> Tuple:
    return (
        event.timestamp,
        event.symbol,
        event.action,
        event.price,
        event.quantity,
        event.order_type,
        event.portfolio_exposure,
        -1.0 if event.decision_latency_ms is None else event.decision_latency_ms,
    )


def _unit(name: str, value: float) -> float:
    """Round and verify that a score lies in [0, 1]."""
    if value is None or not math.isfinite(value):
        raise FeatureComputationError(f"{name} is not finite", details={"feature": name, "value": value})
    value = round(float(value), _PRECISION)
    if value < 0.0 or value > 1.0:
        raise FeatureComputationError(
            f"{name} outside [0, 1]: {value}",
            details={"feature": name, "value": value},
        )
    return value


def _weighted(name: str, weights: Sequence[float], components: Sequence[float]) -> float:
    parts = [_unit(f"{name}.component_{i}", c) for i, c in enumerate(components)]
    return _unit(name, sum(w * c for w, c in zip(weights, parts)))


def _fraction(count: int, total: int) -> float:
    return count / total if total > 0 else 0.0


def _skew(values: np.ndarray) -> float:
    mean = values.mean()
    std = values.std()
    if std <= 1e-12 * max(1.0, abs(mean)):
        return 0.0
    return float(np.mean(((values - mean) / std) ** 3))


def match_round_trips(trades: Sequence[TradingEvent]) -> List[Tuple[float, float]]:
    """FIFO-match buys to later sells of the same symbol.
    
    Returns (holding_hours, pnl) per matched lot. Sells without an open lot
    in the window are ignored.
    """
    open_lots: Dict[str, deque] = {}
    round_trips: List[Tuple[float, float]] = []
    
    for trade in trades:
        lots = open_lots.setdefault(trade.symbol, deque())
        if trade.action == TradeAction.BUY.value:
            lots.append([trade.timestamp, trade.price, trade.quantity])
            continue
        
        remaining = trade.quantity
        while remaining > 0 and lots:
            lot = lots[0]
            matched = min(remaining, lot[2])
            holding = (trade.timestamp - lot[0]).total_seconds() / 3600.0
            round_trips.append((holding, (trade.price - lot[1]) * matched))
            lot[2] -= matched
            remaining -= matched
            if lot[2] <= 0:
                lots.popleft()
    
    return round_trips


def loss_aversion(round_trips: Sequence[Tuple[float, float]], multiple: float) -> float:
    """Score holding time of losers against winners.
    
    With r = mean losing hold / mean winning hold: r >= multiple maps to
    1 - 0.5 * multiple / r (rising toward 1), r <= 1 / multiple maps to
    0.5 * r * multiple (falling toward 0), anything between is 0.5.
    """
    winners = [hold for hold, pnl in round_trips if pnl > 0]
    losers = [hold for hold, pnl in round_trips if pnl < 0]
    if not winners or not losers:
        return 0.5
    
    win_hold = float(np.mean(winners))
    loss_hold = float(np.mean(losers))
    if win_hold == 0.0:
        return 0.5 if loss_hold == 0.0 else 1.0
    
    ratio = loss_hold / win_hold
    if ratio >= multiple:
        return 1.0 - 0.5 * multiple / ratio
    if ratio <= 1.0 / multiple:
        return 0.5 * ratio * multiple
    return 0.5


def market_timing(events: Sequence[TradingEvent], horizon: timedelta, neutral_band: float) -> float:
    """Average outcome of buys judged by the last price seen within the horizon."""
    prices_by_symbol: Dict[str, Tuple[List[datetime], List[float]]] = {}
    for event in events:
        times, prices = prices_by_symbol.setdefault(event.symbol, ([], []))
        times.append(event.timestamp)
        prices.append(event.price)
    
    outcomes = []
    for event in events:
        if event.action != TradeAction.BUY.value:
            continue
        times, prices = prices_by_symbol[event.symbol]
        lo = bisect.bisect_right(times, event.timestamp)
        hi = bisect.bisect_right(times, event.timestamp + horizon)
        if hi <= lo:
            continue
        move = (prices[hi - 1] - event.price) / event.price
        if move > neutral_band:
            outcomes.append(1.0)
        elif move < -neutral_band:
            outcomes.append(0.0)
        else:
            outcomes.append(0.5)
    
    return float(np.mean(outcomes)) if outcomes else 0.5


def assess_quality(events: Sequence[TradingEvent], min_events: int) -> FeatureQuality:
    """Grade a vector by event volume and optional-field completeness."""
    present = sum(
        1 for event in events for name in _OPTIONAL_FIELDS if getattr(event, name) is not None
    )
    completeness = present / (len(events) * len(_OPTIONAL_FIELDS))
    volume = len(events) / max(1, min_events)
    
    if completeness >= 0.9 and volume >= 4:
        return FeatureQuality.HIGH
    if completeness >= 0.7 and volume >= 2:
        return FeatureQuality.MEDIUM
    if completeness >= 0.4:
        return FeatureQuality.LOW
    return FeatureQuality.POOR


class BehavioralFeatureEngine:
    """
    Computes behavioral feature vectors from trading events.
    
    ``compute`` loads the user's events from the event repository;
    ``compute_from_events`` is the pure core used by training and tests.
    """
    
    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        config: Settings = default_settings,
        registry: FeatureRegistry = feature_registry,
    ):
        self._session_factory = session_factory
        self.config = config
        self.registry = registry
        self.feature_version = registry.CURRENT_VERSION
        self.feature_names = registry.get_feature_names()
    
    @property
    def default_lookback(self) -> timedelta:
        return timedelta(days=self.config.feature_lookback_days)
    
    def compute(
        self,
        user_id: str,
        as_of: Optional[datetime] = None,
        lookback_window: Optional[timedelta] = None,
    ) -> FeatureVector:
        """
        Compute the feature vector for a user from stored events.
        
        Args:
            user_id: User to compute features for
            as_of: End of the window (inclusive); defaults to now
            lookback_window: Window length; defaults to the configured lookback
            
        Returns:
            FeatureVector keyed by (user_id, as_of)
            
        Raises:
            InsufficientDataError: fewer than the minimum events in the window
            FeatureComputationError: a feature left its valid range
        """
        as_of = to_naive_utc(as_of or datetime.utcnow())
        lookback = lookback_window or self.default_lookback
        
        with get_db_context(self._session_factory) as db:
            events = TradingEventRepository(db).list_user_events(user_id, as_of - lookback, as_of)
        
        return self.compute_from_events(user_id, as_of, events, lookback)
    
    def compute_from_events(
        self,
        user_id: str,
        as_of: datetime,
        events: Iterable[TradingEvent],
        lookback_window: Optional[timedelta] = None,
    ) -> FeatureVector:
        as_of = to_naive_utc(as_of)
        start = as_of - (lookback_window or self.default_lookback)
        window = sorted(
            (e for e in events if e.user_id == user_id and start < e.timestamp <= as_of),
            key=_event_sort_key,
        )
        
        if len(window) < self.config.feature_min_events:
            raise InsufficientDataError(
                f"User {user_id} has {len(window)} events in window, "
                f"{self.config.feature_min_events} required",
                details={"user_id": user_id, "event_count": len(window)},
            )
        
        trades = [e for e in window if e.is_trade]
        if not trades:
            raise InsufficientDataError(
                f"User {user_id} has no executed trades in window",
                details={"user_id": user_id, "event_count": len(window)},
            )
        
        features = self._build_features(window, trades)
        
        valid, errors = self.registry.validate_feature_vector(features, self.feature_version)
        if not valid:
            logger.error(f"Feature vector for {user_id} rejected: {errors}")
            raise FeatureComputationError(
                f"Feature vector for {user_id} failed validation",
                details={"user_id": user_id, "errors": errors},
            )
        
        return FeatureVector(
            user_id=user_id,
            as_of=as_of,
            features=features,
            feature_version=self.feature_version,
            event_count=len(window),
            quality=assess_quality(window, self.config.feature_min_events),
        )
    
    def _build_features(self, events: List[TradingEvent], trades: List[TradingEvent]) -> Dict[str, float]:
        cfg = self.config
        n_trades = len(trades)
        
        notionals = np.array([t.notional for t in trades], dtype=float)
        exposure_ratios = np.array([t.notional / t.portfolio_exposure for t in trades], dtype=float)
        active_days = len({t.timestamp.date() for t in trades})
        frequency = n_trades / max(1, active_days)
        
        latencies_s = np.array(
            [t.decision_latency_ms / 1000.0 for t in trades if t.decision_latency_ms is not None],
            dtype=float,
        )
        if latencies_s.size:
            mean_latency = float(latencies_s.mean())
            decision_speed = 1.0 / (1.0 + mean_latency)
            decision_consistency = 1.0 / (1.0 + float(latencies_s.std()))
        else:
            mean_latency = 0.0
            decision_speed = decision_consistency = _NEUTRAL_TIMING
        
        volatile = [
            t.market_volatility is not None and t.market_volatility >= cfg.high_volatility_threshold
            for t in trades
        ]
        fast = [
            t.decision_latency_ms is not None and t.decision_latency_ms < cfg.fast_decision_ms
            for t in trades
        ]
        large = [ratio > cfg.large_trade_exposure_threshold for ratio in exposure_ratios]
        negative = [
            t.sentiment_score is not None and t.sentiment_score <= cfg.negative_sentiment_threshold
            for t in trades
        ]
        gaps = [
            (b.timestamp - a.timestamp).total_seconds() for a, b in zip(trades, trades[1:])
        ]
        clustered = _fraction(sum(1 for g in gaps if g < cfg.rapid_trade_window_s), len(gaps))
        
        overconfidence = _weighted("overconfidence_score", cfg.overconfidence_weights, [
            min(1.0, frequency / cfg.overconfidence_frequency_ceiling),
            _fraction(sum(large), n_trades),
            _fraction(
                sum(1 for t, v in zip(trades, volatile) if v and t.order_type == OrderType.MARKET.value),
                n_trades,
            ),
        ])
        emotional = _weighted("emotional_trading_score", cfg.emotional_weights, [
            _fraction(sum(1 for f, v in zip(fast, volatile) if f and v), n_trades),
            _fraction(sum(1 for lg, ng in zip(large, negative) if lg and ng), n_trades),
            clustered,
        ])
        
        round_trips = match_round_trips(trades)
        holdings = [hold for hold, _ in round_trips]
        sessions = [e.session_duration_s for e in events if e.session_duration_s is not None]
        
        with_latency = sum(1 for t in trades if t.decision_latency_ms is not None)
        fast_rate = _fraction(sum(fast), with_latency)
        reference = cfg.impulsivity_reference_decision_s
        speed_norm = 1.0 - min(mean_latency, reference) / reference if latencies_s.size else _NEUTRAL_TIMING
        
        features = {
            "avg_trade_size": float(notionals.mean()),
            "trade_size_std": float(notionals.std()),
            "trade_size_skew": _skew(notionals),
            "trade_frequency": frequency,
            "avg_decision_latency_s": mean_latency,
            "decision_speed": _unit("decision_speed", decision_speed),
            "decision_consistency": _unit("decision_consistency", decision_consistency),
            "risk_taking": float(exposure_ratios.mean()),
            "diversification_ratio": _unit(
                "diversification_ratio", len({t.symbol for t in trades}) / n_trades
            ),
            "market_timing_score": _unit(
                "market_timing_score",
                market_timing(
                    events,
                    timedelta(hours=cfg.market_timing_horizon_hours),
                    cfg.market_timing_neutral_band,
                ),
            ),
            "loss_aversion_score": _unit(
                "loss_aversion_score", loss_aversion(round_trips, cfg.loss_aversion_multiple)
            ),
            "overconfidence_score": overconfidence,
            "emotional_trading_score": emotional,
            "avg_holding_hours": float(np.mean(holdings)) if holdings else 0.0,
            "avg_session_duration_s": float(np.mean(sessions)) if sessions else 0.0,
            "modification_ratio": _unit(
                "modification_ratio",
                _fraction(sum(1 for e in events if e.action == TradeAction.MODIFY.value), len(events)),
            ),
            "cancellation_ratio": _unit(
                "cancellation_ratio",
                _fraction(sum(1 for e in events if e.action == TradeAction.CANCEL.value), len(events)),
            ),
            "stress_score": _weighted("stress_score", [0.5, 0.3, 0.2], [
                emotional, fast_rate, _fraction(sum(volatile), n_trades),
            ]),
            "impulsivity_score": _weighted("impulsivity_score", [0.6, 0.4], [clustered, speed_norm]),
        }
        
        ordered = {}
        for name in self.feature_names:
            value = features[name]
            if not math.isfinite(value):
                raise FeatureComputationError(
                    f"{name} is not finite", details={"feature": name, "value": value}
                )
            ordered[name] = round(float(value), _PRECISION)
        return ordered
