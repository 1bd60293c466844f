"""
Pattern history for served predictions.

Every fresh prediction that carries a pattern label is stored as a
PatternObservation. History reads return a user's observations in time order;
trends summarize a window: the label mix, the dominant label, labels whose
share grew from the first half of the window to the second, and the
direction of the risk score.
"""

from collections import Counter
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

import numpy as np

from behaviorradar.config import Settings, settings as default_settings
from behaviorradar.db.repositories import PatternObservationRepository
from behaviorradar.db.session import SessionFactory, get_db_context, get_db_transaction
from behaviorradar.log_config import logger
from behaviorradar.ml.schemas import PatternObservation, PatternTrend, PredictionResult, to_naive_utc


def _mean(values: Sequence[float]) -> Optional[float]:
    return round(float(np.mean(values)), 6) if values else None


def _shares(observations: Sequence[PatternObservation]) -> Counter:
    counts = Counter(o.pattern_label for o in observations)
    total = max(1, len(observations))
    return Counter({label: count / total for label, count in counts.items()})


class PatternHistory:
    """Stores pattern readings and summarizes them per user."""

    def __init__(self, session_factory: Optional[SessionFactory] = None, config: Settings = default_settings):
        self._session_factory = session_factory
        self.config = config

    def record(self, result: PredictionResult) -> Optional[PatternObservation]:
        """Store the pattern reading of a prediction; results without a label are skipped."""
        if result.pattern_label is None:
            return None
        observation = PatternObservation(
            user_id=result.user_id,
            observed_at=to_naive_utc(result.generated_at),
            pattern_label=result.pattern_label,
            pattern_confidence=result.pattern_confidence,
            risk_score=result.risk_score,
            anomaly_flag=result.anomaly_flag,
            model_version=result.model_version,
        )
        with get_db_transaction(self._session_factory) as db:
            PatternObservationRepository(db).add(observation)
        return observation

    def window(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Tuple[datetime, datetime]:
        """(start, end) in naive UTC; end defaults to now and start to pattern_history_days before it."""
        end = to_naive_utc(end) if end else datetime.utcnow()
        start = to_naive_utc(start) if start else end - timedelta(days=self.config.pattern_history_days)
        return start, end

    def history(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[PatternObservation]:
        start, end = self.window(start, end)
        with get_db_context(self._session_factory) as db:
            return PatternObservationRepository(db).list_user_observations(user_id, start, end, limit)

    def trends(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> PatternTrend:
        start, end = self.window(start, end)
        observations = self.history(user_id, start, end)
        trend = PatternTrend(user_id=user_id, start=start, end=end, observation_count=len(observations))
        if not observations:
            return trend

        counts = Counter(o.pattern_label for o in observations)
        trend.pattern_counts = dict(sorted(counts.items()))
        trend.dominant_pattern = min(counts, key=lambda label: (-counts[label], label))

        risks = [o.risk_score for o in observations if o.risk_score is not None]
        trend.mean_risk_score = _mean(risks)

        # A trend needs at least one observation in each half
        if len(observations) >= 2:
            middle = len(observations) // 2
            first, second = observations[:middle], observations[middle:]
            before, after = _shares(first), _shares(second)
            trend.trending_patterns = sorted(label for label in counts if after[label] > before[label])
            first_risk = _mean([o.risk_score for o in first if o.risk_score is not None])
            second_risk = _mean([o.risk_score for o in second if o.risk_score is not None])
            if first_risk is not None and second_risk is not None:
                trend.risk_trend = round(second_risk - first_risk, 6)

        logger.debug(
            f"Pattern trend for {user_id}: {len(observations)} observations, "
            f"dominant={trend.dominant_pattern} trending={trend.trending_patterns}"
        )
        return trend
