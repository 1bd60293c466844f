"""
Model heads behind a uniform fit/predict contract.

The serving layer and the training orchestrator iterate over heads instead of
calling each model directly. Every head:
- fits on a feature frame (plus targets where supervised)
- predicts a list of typed outputs, one per row
- evaluates itself for the promotion gates
- serializes with joblib

Heads:
- anomaly_detector: IsolationForest with a training envelope over the full feature space
- pattern_classifier: XGBoost multi-class over catalog archetypes
- risk_regressor: XGBoost regression of the composite behavioral risk
- behavior_clusterer: DBSCAN for pattern discovery beyond the catalog
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Type

import joblib
import numpy as np
import pandas as pd
import xgboost as xgb
from sklearn.cluster import DBSCAN
from sklearn.ensemble import IsolationForest
from sklearn.metrics import (
    accuracy_score,
    mean_absolute_error,
    mean_squared_error,
    precision_score,
    r2_score,
    recall_score,
)
from sklearn.neighbors import NearestNeighbors
from sklearn.preprocessing import LabelEncoder, StandardScaler

from behaviorradar.log_config import logger

ANOMALY_DETECTOR = "anomaly_detector"
PATTERN_CLASSIFIER = "pattern_classifier"
RISK_REGRESSOR = "risk_regressor"
BEHAVIOR_CLUSTERER = "behavior_clusterer"

# Composite behavioral risk: emotional, overconfidence, loss aversion
RISK_WEIGHTS = {
    "emotional_trading_score": 0.40,
    "overconfidence_score": 0.35,
    "loss_aversion_score": 0.25,
}


def composite_risk(frame: pd.DataFrame) -> pd.Series:
    """Regression target for the risk head."""
    risk = sum(frame[name] * weight for name, weight in RISK_WEIGHTS.items())
    return risk.rename("risk_score")


@dataclass(frozen=True)
class HeadOutput:
    """Typed result of one head for one row."""
    head: str
    fields: Dict[str, Any]


class ModelHead(ABC):
    """Common contract for every model in the ensemble."""
    
    name: str = ""
    output_fields: Tuple[str, ...] = ()
    supervised: bool = False
    
    def __init__(self, feature_names: List[str], random_state: int = 42):
        self.feature_names = list(feature_names)
        self.random_state = random_state
        self.is_fitted = False
        self.n_train = 0
    
    def _matrix(self, frame: pd.DataFrame) -> np.ndarray:
        missing = [name for name in self.feature_names if name not in frame.columns]
        if missing:
            raise ValueError(f"{self.name}: missing features {missing}")
        matrix = frame[self.feature_names].to_numpy(dtype=float)
        if not np.isfinite(matrix).all():
            raise ValueError(f"{self.name}: non-finite feature values")
        return matrix
    
    def _require_fitted(self):
        if not self.is_fitted:
            raise RuntimeError(f"{self.name} head is not fitted")
    
    @classmethod
    def null_fields(cls) -> Dict[str, Any]:
        """Field values used when this head degrades."""
        return {field: None for field in cls.output_fields}
    
    def fit(self, frame: pd.DataFrame, targets: Optional[pd.Series] = None) -> "ModelHead":
        if self.supervised and targets is None:
            raise ValueError(f"{self.name} requires targets")
        self._fit(self._matrix(frame), targets)
        self.is_fitted = True
        self.n_train = len(frame)
        logger.info(f"Fitted {self.name} on {len(frame)} rows")
        return self
    
    def predict(self, frame: pd.DataFrame) -> List[HeadOutput]:
        self._require_fitted()
        return [HeadOutput(self.name, fields) for fields in self._predict(self._matrix(frame))]
    
    @abstractmethod
    def _fit(self, matrix: np.ndarray, targets: Optional[pd.Series]) -> None:
        ...
    
    @abstractmethod
    def _predict(self, matrix: np.ndarray) -> List[Dict[str, Any]]:
        ...
    
    @abstractmethod
    def evaluate(self, frame: pd.DataFrame, targets: Optional[pd.Series] = None) -> Dict[str, float]:
        ...
    
    def feature_importance(self) -> Dict[str, float]:
        return {}
    
    def save(self, path: str) -> str:
        joblib.dump(self, path)
        return path
    
    @staticmethod
    def load(path: str) -> "ModelHead":
        head = joblib.load(path)
        if not isinstance(head, ModelHead):
            raise TypeError(f"Artifact at {path} is not a model head")
        return head


class AnomalyHead(ModelHead):
    """
    IsolationForest plus a training envelope, both calibrated on the fit population.
    
    A row is flagged when either:
    - its isolation score falls below the fence, which is the lower of the
      training minimum and Q1 - iqr_fence * IQR of the training scores
    - any standardized feature lies more than envelope_margin training-range
      widths outside the range seen in training
    
    The envelope covers points far beyond the training range, which the forest
    can isolate no faster than the most extreme training row.
    """
    
    name = ANOMALY_DETECTOR
    output_fields = ("anomaly_flag", "anomaly_score")
    
    def __init__(
        self,
        feature_names: List[str],
        random_state: int = 42,
        iqr_fence: float = 3.0,
        envelope_margin: float = 1.0,
    ):
        super().__init__(feature_names, random_state)
        self.iqr_fence = iqr_fence
        self.envelope_margin = envelope_margin
        self.scaler = StandardScaler()
        self.model = IsolationForest(n_estimators=200, random_state=random_state, n_jobs=1)
        self.score_threshold = -1.0
        self.envelope_low = np.array([])
        self.envelope_width = np.array([])
    
    def _fit(self, matrix, targets):
        scaled = self.scaler.fit_transform(matrix)
        self.model.fit(scaled)
        
        scores = self.model.score_samples(scaled)
        q1, q3 = np.percentile(scores, [25, 75])
        iqr = max(float(q3 - q1), 1e-3)
        self.score_threshold = float(min(scores.min(), q1 - self.iqr_fence * iqr))
        
        self.envelope_low = scaled.min(axis=0)
        # Constant features get a width of one unit
        self.envelope_width = np.maximum(scaled.max(axis=0) - self.envelope_low, 1.0)
        logger.debug(f"{self.name} score threshold {self.score_threshold:.4f}")
    
    def _score(self, matrix: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Isolation scores (lower is more anomalous) and envelope excess in widths."""
        scaled = self.scaler.transform(matrix)
        position = (scaled - self.envelope_low) / self.envelope_width
        excess = np.maximum(np.maximum(-position, position - 1.0), 0.0).max(axis=1)
        return self.model.score_samples(scaled), excess
    
    def _flags(self, matrix: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        scores, excess = self._score(matrix)
        return (scores < self.score_threshold) | (excess > self.envelope_margin), scores
    
    def _predict(self, matrix):
        flags, scores = self._flags(matrix)
        return [
            {"anomaly_flag": bool(flag), "anomaly_score": round(float(-score), 6)}
            for flag, score in zip(flags, scores)
        ]
    
    def evaluate(self, frame, targets=None):
        self._require_fitted()
        flags, _ = self._flags(self._matrix(frame))
        return {
            "flag_rate": float(flags.mean()) if len(flags) else 0.0,
            "score_threshold": self.score_threshold,
            "n_eval": int(len(flags)),
        }


class PatternClassifierHead(ModelHead):
    """XGBoost classifier over catalog pattern labels."""
    
    name = PATTERN_CLASSIFIER
    output_fields = ("pattern_label", "pattern_confidence")
    supervised = True
    
    def __init__(self, feature_names: List[str], random_state: int = 42):
        super().__init__(feature_names, random_state)
        self.encoder = LabelEncoder()
        self.model = xgb.XGBClassifier(
            n_estimators=150,
            max_depth=4,
            learning_rate=0.1,
            subsample=0.9,
            colsample_bytree=0.9,
            eval_metric="mlogloss",
            random_state=random_state,
            n_jobs=1,
        )
    
    def _fit(self, matrix, targets):
        encoded = self.encoder.fit_transform(np.asarray(targets, dtype=str))
        if len(self.encoder.classes_) < 2:
            raise ValueError("pattern classifier needs at least two classes")
        self.model.fit(matrix, encoded)
    
    def _predict(self, matrix):
        proba = self.model.predict_proba(matrix)
        best = proba.argmax(axis=1)
        labels = self.encoder.inverse_transform(best)
        return [
            {"pattern_label": str(label), "pattern_confidence": round(float(proba[i, idx]), 6)}
            for i, (label, idx) in enumerate(zip(labels, best))
        ]
    
    def evaluate(self, frame, targets=None):
        self._require_fitted()
        predicted = [out.fields["pattern_label"] for out in self.predict(frame)]
        actual = [str(label) for label in targets]
        return {
            "accuracy": float(accuracy_score(actual, predicted)),
            "precision": float(precision_score(actual, predicted, average="macro", zero_division=0)),
            "recall": float(recall_score(actual, predicted, average="macro", zero_division=0)),
            "n_classes": int(len(self.encoder.classes_)),
            "n_eval": len(actual),
        }
    
    def feature_importance(self):
        return dict(zip(self.feature_names, (float(v) for v in self.model.feature_importances_)))


class RiskRegressorHead(ModelHead):
    """XGBoost regressor of the composite risk score; outputs are bounded to [0, 1]."""
    
    name = RISK_REGRESSOR
    output_fields = ("risk_score",)
    supervised = True
    
    def __init__(self, feature_names: List[str], random_state: int = 42):
        super().__init__(feature_names, random_state)
        self.model = xgb.XGBRegressor(
            objective="reg:squarederror",
            n_estimators=200,
            max_depth=3,
            learning_rate=0.05,
            reg_lambda=1.0,
            random_state=random_state,
            n_jobs=1,
        )
    
    def _fit(self, matrix, targets):
        self.model.fit(matrix, np.asarray(targets, dtype=float))
    
    def _raw(self, matrix: np.ndarray) -> np.ndarray:
        return np.clip(self.model.predict(matrix), 0.0, 1.0)
    
    def _predict(self, matrix):
        return [{"risk_score": round(float(value), 6)} for value in self._raw(matrix)]
    
    def evaluate(self, frame, targets=None):
        self._require_fitted()
        predicted = self._raw(self._matrix(frame))
        actual = np.asarray(targets, dtype=float)
        return {
            "mae": float(mean_absolute_error(actual, predicted)),
            "rmse": float(np.sqrt(mean_squared_error(actual, predicted))),
            "r2": float(r2_score(actual, predicted)) if len(actual) > 1 else 0.0,
            "n_eval": int(len(actual)),
        }
    
    def feature_importance(self):
        return dict(zip(self.feature_names, (float(v) for v in self.model.feature_importances_)))


class ClusterHead(ModelHead):
    """
    DBSCAN over standardized features.
    
    DBSCAN has no predict step, so new rows take the cluster of the nearest
    core sample within ``eps`` and -1 (noise) otherwise.
    """
    
    name = BEHAVIOR_CLUSTERER
    output_fields = ("cluster_id",)
    
    def __init__(self, feature_names: List[str], random_state: int = 42, eps: float = 1.5, min_samples: int = 5):
        super().__init__(feature_names, random_state)
        self.eps = eps
        self.min_samples = min_samples
        self.scaler = StandardScaler()
        self.core_labels = np.array([], dtype=int)
        self.neighbors: Optional[NearestNeighbors] = None
        self.train_labels = np.array([], dtype=int)
    
    def _fit(self, matrix, targets):
        scaled = self.scaler.fit_transform(matrix)
        model = DBSCAN(eps=self.eps, min_samples=self.min_samples).fit(scaled)
        self.train_labels = model.labels_
        core = model.core_sample_indices_
        self.core_labels = model.labels_[core]
        self.neighbors = NearestNeighbors(n_neighbors=1).fit(scaled[core]) if len(core) else None
    
    def _assign(self, matrix: np.ndarray) -> np.ndarray:
        if self.neighbors is None:
            return np.full(len(matrix), -1, dtype=int)
        distances, indices = self.neighbors.kneighbors(self.scaler.transform(matrix))
        return np.where(distances[:, 0] <= self.eps, self.core_labels[indices[:, 0]], -1)
    
    def _predict(self, matrix):
        return [{"cluster_id": int(label)} for label in self._assign(matrix)]
    
    def evaluate(self, frame, targets=None):
        self._require_fitted()
        labels = self.train_labels
        return {
            "n_clusters": int(len(set(labels.tolist()) - {-1})),
            "noise_fraction": float((labels == -1).mean()) if len(labels) else 0.0,
            "n_eval": int(len(labels)),
        }


HEAD_TYPES: Dict[str, Type[ModelHead]] = {
    ANOMALY_DETECTOR: AnomalyHead,
    PATTERN_CLASSIFIER: PatternClassifierHead,
    RISK_REGRESSOR: RiskRegressorHead,
    BEHAVIOR_CLUSTERER: ClusterHead,
}
HEAD_NAMES: List[str] = list(HEAD_TYPES)


def build_heads(feature_names: List[str], config) -> Dict[str, ModelHead]:
    """Fresh, unfitted heads configured from settings."""
    seed = config.training_random_state
    return {
        ANOMALY_DETECTOR: AnomalyHead(
            feature_names, seed,
            iqr_fence=config.anomaly_iqr_fence,
            envelope_margin=config.anomaly_envelope_margin,
        ),
        PATTERN_CLASSIFIER: PatternClassifierHead(feature_names, seed),
        RISK_REGRESSOR: RiskRegressorHead(feature_names, seed),
        BEHAVIOR_CLUSTERER: ClusterHead(
            feature_names, seed, eps=config.cluster_eps, min_samples=config.cluster_min_samples
        ),
    }
