"""
Catalog of canonical trading behavior patterns.

Each pattern is defined by a feature signature (ranges over named features),
a risk level and a recommendation template. The catalog labels feature
vectors for classifier training and supplies templates to the insight
generator. It is read-only reference data built at import time.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from behaviorradar.ml.feature_store.registry import FeatureRegistry, feature_registry
from behaviorradar.ml.schemas import InterventionAction

Range = Tuple[Optional[float], Optional[float]]


@dataclass(frozen=True)
class BehaviorPattern:
    """Static definition of one trading archetype."""
    pattern_id: str
    name: str
    description: str
    signature: Dict[str, Range]
    risk_level: str  # low, medium, high
    recommendation_template: str
    recommended_action: InterventionAction = InterventionAction.SHOW_INSIGHT
    tags: Tuple[str, ...] = field(default_factory=tuple)
    
    def match_score(self, features: Mapping[str, float]) -> float:
        """Fraction of signature ranges satisfied, less a small distance penalty."""
        satisfied = 0
        violation = 0.0
        for name, (lo, hi) in self.signature.items():
            value = features.get(name)
            if value is None:
                continue
            if (lo is None or value >= lo) and (hi is None or value <= hi):
                satisfied += 1
                continue
            bound = lo if lo is not None and value < lo else hi
            violation += abs(value - bound) / max(abs(bound), 1.0)
        return satisfied / len(self.signature) - 0.01 * min(violation, 10.0) / len(self.signature)
    
    def render(self, values: Mapping[str, float]) -> str:
        return self.recommendation_template.format_map(dict(values))
    
    def to_dict(self) -> Dict:
        return {
            "pattern_id": self.pattern_id,
            "name": self.name,
            "description": self.description,
            "signature": {k: list(v) for k, v in self.signature.items()},
            "risk_level": self.risk_level,
            "recommendation_template": self.recommendation_template,
            "recommended_action": self.recommended_action.value,
        }


_PATTERNS: List[BehaviorPattern] = [
    BehaviorPattern(
        pattern_id="conservative_trader",
        name="Conservative Trader",
        description="Infrequent, small positions with steady decision making",
        signature={
            "trade_frequency": (0.0, 2.0),
            "risk_taking": (0.0, 0.05),
            "overconfidence_score": (0.0, 0.3),
            "emotional_trading_score": (0.0, 0.3),
        },
        risk_level="low",
        recommendation_template=(
            "Your trading is measured: {trade_frequency:.1f} trades per day with positions "
            "averaging {risk_taking:.1%} of your portfolio. Review whether cash drag is costing "
            "you opportunities."
        ),
    ),
    BehaviorPattern(
        pattern_id="aggressive_trader",
        name="Aggressive Trader",
        description="High frequency trading with oversized positions",
        signature={
            "trade_frequency": (20.0, None),
            "risk_taking": (0.10, None),
            "overconfidence_score": (0.6, 1.0),
        },
        risk_level="high",
        recommendation_template=(
            "You are averaging {trade_frequency:.0f} trades per day at {risk_taking:.1%} of your "
            "portfolio each (risk score {risk_score:.0%}). Consider smaller positions and a pause "
            "before the next order."
        ),
        recommended_action=InterventionAction.REQUIRE_CONFIRMATION,
        tags=("overtrading",),
    ),
    BehaviorPattern(
        pattern_id="swing_trader",
        name="Swing Trader",
        description="Positions held for days to capture medium-term moves",
        signature={
            "avg_holding_hours": (24.0, 240.0),
            "trade_frequency": (0.5, 5.0),
        },
        risk_level="medium",
        recommendation_template=(
            "Your positions last {avg_holding_hours:.0f} hours on average. Set exit levels up "
            "front so overnight moves do not decide for you."
        ),
    ),
    BehaviorPattern(
        pattern_id="day_trader",
        name="Day Trader",
        description="Intraday positions closed within the session",
        signature={
            "avg_holding_hours": (0.0, 8.0),
            "trade_frequency": (5.0, 20.0),
        },
        risk_level="medium",
        recommendation_template=(
            "You close positions within {avg_holding_hours:.1f} hours across {trade_frequency:.0f} "
            "trades a day. Track costs per trade; they compound quickly at this pace."
        ),
        recommended_action=InterventionAction.SUGGEST_REVIEW,
    ),
    BehaviorPattern(
        pattern_id="emotional_trader",
        name="Emotional Trader",
        description="Impulsive decisions under stress and reluctance to realize losses",
        signature={
            "emotional_trading_score": (0.5, 1.0),
            "impulsivity_score": (0.5, 1.0),
            "loss_aversion_score": (0.6, 1.0),
        },
        risk_level="high",
        recommendation_template=(
            "Your emotional trading score is {emotional_trading_score:.2f} and losing positions "
            "are held longer than winners (loss aversion {loss_aversion_score:.2f}). Take a "
            "cool-down before acting on the next idea."
        ),
        recommended_action=InterventionAction.SUGGEST_COOL_DOWN,
        tags=("emotional",),
    ),
    BehaviorPattern(
        pattern_id="analytical_trader",
        name="Analytical Trader",
        description="Deliberate, research-driven decisions with good timing",
        signature={
            "avg_decision_latency_s": (60.0, None),
            "emotional_trading_score": (0.0, 0.2),
            "market_timing_score": (0.55, 1.0),
        },
        risk_level="low",
        recommendation_template=(
            "You take {avg_decision_latency_s:.0f} seconds per decision and your entries land well "
            "(timing {market_timing_score:.2f}). Keep journaling what works."
        ),
    ),
    BehaviorPattern(
        pattern_id="momentum_trader",
        name="Momentum Trader",
        description="Buys strength and rides trends",
        signature={
            "market_timing_score": (0.6, 1.0),
            "trade_frequency": (2.0, 20.0),
            "avg_holding_hours": (2.0, 72.0),
        },
        risk_level="medium",
        recommendation_template=(
            "Your entries follow strength (timing {market_timing_score:.2f}). Trail your stops so a "
            "reversal does not erase the move."
        ),
    ),
    BehaviorPattern(
        pattern_id="contrarian_trader",
        name="Contrarian Trader",
        description="Buys weakness in a concentrated set of names",
        signature={
            "market_timing_score": (0.0, 0.45),
            "diversification_ratio": (0.0, 0.3),
            "avg_holding_hours": (24.0, 240.0),
        },
        risk_level="medium",
        recommendation_template=(
            "You tend to buy into falling prices (timing {market_timing_score:.2f}) across few "
            "symbols (diversification {diversification_ratio:.2f}). Size entries in steps."
        ),
        recommended_action=InterventionAction.SUGGEST_REVIEW,
    ),
]


class PatternCatalog:
    """Lookup, labeling and sampling over the behavior pattern catalog."""
    
    def __init__(self, patterns: List[BehaviorPattern] = None, registry: FeatureRegistry = feature_registry):
        self._patterns = list(patterns or _PATTERNS)
        self._by_id = {p.pattern_id: p for p in self._patterns}
        self.registry = registry
    
    @property
    def pattern_ids(self) -> List[str]:
        return [p.pattern_id for p in self._patterns]
    
    def __iter__(self):
        return iter(self._patterns)
    
    def __len__(self) -> int:
        return len(self._patterns)
    
    def get(self, pattern_id: str) -> Optional[BehaviorPattern]:
        return self._by_id.get(pattern_id)
    
    def label(self, features: Mapping[str, float]) -> str:
        """Best-matching pattern; ties go to the earlier catalog entry."""
        best_id, best_score = self._patterns[0].pattern_id, float("-inf")
        for pattern in self._patterns:
            score = pattern.match_score(features)
            if score > best_score:
                best_id, best_score = pattern.pattern_id, score
        return best_id
    
    def label_frame(self, frame: pd.DataFrame) -> pd.Series:
        return pd.Series(
            [self.label(row) for row in frame.to_dict(orient="records")],
            index=frame.index,
            name="pattern_label",
        )
    
    @staticmethod
    def _signature_range(pattern: BehaviorPattern, definition) -> Tuple[float, float]:
        lo, hi = definition.sample_range
        sig_lo, sig_hi = pattern.signature[definition.name]
        if sig_lo is not None:
            lo = sig_lo
        if sig_hi is not None:
            hi = sig_hi
        elif sig_lo is not None:
            # Open-ended: reach well past the lower bound
            hi = max(hi, sig_lo * 3.0)
        if hi <= lo:
            hi = lo * 1.5 + 1.0
        return lo, hi
    
    def _draw(self, pattern: BehaviorPattern, definitions, rng, donor: Optional[Dict[str, float]] = None):
        row = dict(donor or {})
        for definition in definitions:
            if definition.name in pattern.signature:
                lo, hi = self._signature_range(pattern, definition)
            elif definition.name in row:
                continue
            else:
                lo, hi = definition.sample_range
            row[definition.name] = float(rng.uniform(lo, hi))
        return row
    
    def synthesize(self, samples_per_pattern: int, seed: int) -> pd.DataFrame:
        """
        Draw feature rows inside each pattern's signature.
        
        The first pass draws features outside the signature from the
        registry's typical range. The second pass lays each signature over
        rows from the first, so regions where signatures meet (short holding
        periods at aggressive frequency, for one) are covered too. Rows are
        labeled with ``label`` afterwards so the label stays a function of
        the features.
        """
        rng = np.random.default_rng(seed)
        definitions = self.registry.get_current_version().features
        base = [
            self._draw(pattern, definitions, rng)
            for pattern in self._patterns
            for _ in range(samples_per_pattern)
        ]
        crossed = [
            self._draw(pattern, definitions, rng, donor=base[int(rng.integers(len(base)))])
            for pattern in self._patterns
            for _ in range(samples_per_pattern)
        ]
        
        frame = pd.DataFrame(base + crossed, columns=[d.name for d in definitions])
        frame["pattern_label"] = self.label_frame(frame)
        return frame
    
    def to_dict(self) -> Dict:
        return {p.pattern_id: p.to_dict() for p in self._patterns}


pattern_catalog = PatternCatalog()
