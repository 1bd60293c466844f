"""
Feature Registry for Behavior Radar.

Central catalog of behavioral feature definitions and schema versions. The
feature engine emits features in the order defined here, model artifacts
record this schema, and serving aligns vectors against it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import math

from behaviorradar.log_config import logger


class FeatureType(str, Enum):
    NUMERIC = "numeric"
    SCORE = "score"  # [0, 1]
    RATIO = "ratio"  # [0, 1]


class FeatureFamily(str, Enum):
    """Which part of the engine produces the feature."""
    VOLUME = "volume"
    FREQUENCY = "frequency"
    TIMING = "timing"
    RISK = "risk"
    BEHAVIORAL = "behavioral"
    ORDER_MANAGEMENT = "order_management"
    COMPOSITE = "composite"


@dataclass(frozen=True)
class FeatureDefinition:
    name: str
    feature_type: FeatureType
    family: FeatureFamily
    description: str
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    # Range used when sampling catalog archetypes; defaults to the bounds
    typical_range: Optional[Tuple[float, float]] = None

    @property
    def sample_range(self) -> Tuple[float, float]:
        if self.typical_range is not None:
            return self.typical_range
        low = self.min_value if self.min_value is not None else 0.0
        high = self.max_value if self.max_value is not None else 1.0
        return low, high

    def check(self, value: Any) -> Optional[str]:
        """Problem with ``value`` against this definition, or None."""
        if value is None or not math.isfinite(value):
            return f"{self.name} is not finite ({value})"
        if self.min_value is not None and value < self.min_value:
            return f"{self.name} below minimum ({value} < {self.min_value})"
        if self.max_value is not None and value > self.max_value:
            return f"{self.name} above maximum ({value} > {self.max_value})"
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.feature_type.value,
            "family": self.family.value,
            "description": self.description,
            "bounds": [self.min_value, self.max_value],
        }


def _numeric(name, family, description, typical_range, signed=False):
    return FeatureDefinition(
        name, FeatureType.NUMERIC, family, description,
        min_value=None if signed else 0.0, typical_range=typical_range,
    )


def _bounded(name, family, description, kind=FeatureType.SCORE, typical_range=None):
    return FeatureDefinition(name, kind, family, description, 0.0, 1.0, typical_range)


_CORE = (
    _numeric("avg_trade_size", FeatureFamily.VOLUME,
             "Mean notional (quantity * price) of executed trades", (500.0, 50000.0)),
    _numeric("trade_size_std", FeatureFamily.VOLUME,
             "Population standard deviation of trade notional", (0.0, 20000.0)),
    _numeric("trade_size_skew", FeatureFamily.VOLUME,
             "Population skewness of trade notional (0 when constant)", (-2.0, 2.0), signed=True),
    _numeric("trade_frequency", FeatureFamily.FREQUENCY,
             "Executed trades per active trading day", (0.1, 60.0)),
    _numeric("avg_decision_latency_s", FeatureFamily.TIMING,
             "Mean decision latency in seconds", (1.0, 300.0)),
    _bounded("decision_speed", FeatureFamily.TIMING,
             "1 / (1 + mean latency in seconds); higher is faster"),
    _bounded("decision_consistency", FeatureFamily.TIMING,
             "1 / (1 + stdev of latency in seconds)"),
    _numeric("risk_taking", FeatureFamily.RISK,
             "Mean notional / portfolio exposure", (0.0, 0.4)),
    _bounded("diversification_ratio", FeatureFamily.RISK,
             "Distinct symbols / executed trades", FeatureType.RATIO),
    _bounded("market_timing_score", FeatureFamily.BEHAVIORAL,
             "Mean outcome of buys: favorable 1, neutral 0.5, unfavorable 0"),
    _bounded("loss_aversion_score", FeatureFamily.BEHAVIORAL,
             "Holding time of losers relative to winners"),
    _bounded("overconfidence_score", FeatureFamily.BEHAVIORAL,
             "Frequency, oversized trades and market orders in volatile markets"),
    _bounded("emotional_trading_score", FeatureFamily.BEHAVIORAL,
             "Fast volatile decisions, large trades on bad sentiment, clustered trades"),
)

_ORDER_AND_COMPOSITE = (
    _numeric("avg_holding_hours", FeatureFamily.TIMING,
             "Mean holding period of matched buy/sell round trips", (0.0, 240.0)),
    _numeric("avg_session_duration_s", FeatureFamily.TIMING,
             "Mean trading session length in seconds", (60.0, 14400.0)),
    _bounded("modification_ratio", FeatureFamily.ORDER_MANAGEMENT,
             "Modify events / all events", FeatureType.RATIO, (0.0, 0.5)),
    _bounded("cancellation_ratio", FeatureFamily.ORDER_MANAGEMENT,
             "Cancel events / all events", FeatureType.RATIO, (0.0, 0.5)),
    _bounded("stress_score", FeatureFamily.COMPOSITE,
             "Emotional score, fast-decision rate and volatility exposure"),
    _bounded("impulsivity_score", FeatureFamily.COMPOSITE,
             "Rapid-fire fraction and normalized decision speed"),
)


@dataclass
class FeatureVersion:
    """An ordered, immutable feature schema."""
    version: str
    features: Tuple[FeatureDefinition, ...]
    summary: str = ""
    registered_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def feature_names(self) -> List[str]:
        return [f.name for f in self.features]

    def schema(self) -> List[Dict[str, str]]:
        """Ordered (name, type) pairs stored alongside model artifacts."""
        return [{"name": f.name, "type": f.feature_type.value} for f in self.features]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "summary": self.summary,
            "registered_at": self.registered_at.isoformat(),
            "features": [f.to_dict() for f in self.features],
        }


class FeatureRegistry:
    """
    Registry for behavioral feature definitions and versions.

    v1.0 holds the core behavioral features; v1.1 adds order-management
    ratios, holding period, session length and the stress/impulsivity
    composites. Only the current version is used for training and serving.
    """

    CURRENT_VERSION = "v1.1"

    def __init__(self):
        self._versions: Dict[str, FeatureVersion] = {
            "v1.0": FeatureVersion("v1.0", _CORE, "Volume, frequency, timing, risk and behavioral scores"),
            "v1.1": FeatureVersion(
                "v1.1", _CORE + _ORDER_AND_COMPOSITE,
                "Adds order management, holding period and composite stress/impulsivity",
            ),
        }
        # "model:version" -> feature -> importance
        self._importance: Dict[str, Dict[str, float]] = {}
        logger.debug(f"Feature registry ready: versions={sorted(self._versions)} current={self.CURRENT_VERSION}")

    def get_current_version(self) -> FeatureVersion:
        return self._versions[self.CURRENT_VERSION]

    def get_feature_names(self, version: Optional[str] = None) -> List[str]:
        return self._versions[version or self.CURRENT_VERSION].feature_names

    def store_feature_importance(self, importance: Dict[str, float], model_name: str, model_version: str):
        """Keep importance scores reported by a trained model."""
        key = f"{model_name}:{model_version}"
        self._importance[key] = dict(importance)
        logger.info(f"Stored {len(importance)} feature importance scores for {key}")

    def get_feature_importance(
        self, model_name: str, model_version: str, top_k: Optional[int] = None
    ) -> List[Tuple[str, float]]:
        ranked = sorted(
            self._importance.get(f"{model_name}:{model_version}", {}).items(),
            key=lambda item: item[1],
            reverse=True,
        )
        return ranked[:top_k] if top_k else ranked

    def validate_feature_vector(
        self, features: Dict[str, Any], version: Optional[str] = None
    ) -> Tuple[bool, List[str]]:
        """Check completeness, finiteness and bounds against the schema."""
        version = version or self.CURRENT_VERSION
        if version not in self._versions:
            return False, [f"Unknown version: {version}"]

        errors = []
        for definition in self._versions[version].features:
            if definition.name not in features:
                errors.append(f"Missing feature: {definition.name}")
                continue
            problem = definition.check(features[definition.name])
            if problem:
                errors.append(problem)
        return not errors, errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_version": self.CURRENT_VERSION,
            "versions": {name: v.to_dict() for name, v in self._versions.items()},
        }


feature_registry = FeatureRegistry()
