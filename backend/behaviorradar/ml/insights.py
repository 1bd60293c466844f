"""
Insight and intervention generation.

InsightGenerator turns a PredictionResult into human-readable insights and
intervention triggers using the pattern catalog templates. Low-confidence
readings are still reported, marked tentative and one severity level lower.
No action produced here blocks a trade; the strongest requests are a
confirmation step or a cool-down.

InterventionFeed delivers triggers to registered sinks under a per-user hourly
limit and a per-pattern cool-down, keeps a short buffer of recent insights per
user, and records how traders respond to delivered triggers.
"""

import threading
from collections import OrderedDict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from behaviorradar.config import Settings, settings as default_settings
from behaviorradar.log_config import logger
from behaviorradar.ml.patterns import BehaviorPattern, PatternCatalog, pattern_catalog
from behaviorradar.ml.schemas import (
    FeatureQuality,
    Insight,
    InterventionAction,
    InterventionPriority,
    InterventionResponse,
    InterventionTrigger,
    InterventionType,
    PredictionResult,
    Severity,
)
from behaviorradar.utils.errors import RecordNotFoundError

SEVERITY_ORDER = [Severity.INFO, Severity.WARNING, Severity.CRITICAL]
ACTION_ORDER = [
    InterventionAction.SHOW_INSIGHT,
    InterventionAction.SUGGEST_REVIEW,
    InterventionAction.REQUIRE_CONFIRMATION,
    InterventionAction.SUGGEST_COOL_DOWN,
]

# Minimum action for a trigger at each severity
SEVERITY_ACTIONS = {
    Severity.INFO: InterventionAction.SHOW_INSIGHT,
    Severity.WARNING: InterventionAction.SUGGEST_REVIEW,
    Severity.CRITICAL: InterventionAction.REQUIRE_CONFIRMATION,
}

SEVERITY_DELIVERY = {
    Severity.CRITICAL: (InterventionType.REAL_TIME_ALERT, InterventionPriority.HIGH),
    Severity.WARNING: (InterventionType.PRE_TRADE_WARNING, InterventionPriority.MEDIUM),
    Severity.INFO: (InterventionType.POST_TRADE_ANALYSIS, InterventionPriority.LOW),
}

ANOMALY_PATTERN_ID = "anomaly"
LOW_QUALITY = {FeatureQuality.LOW.value, FeatureQuality.POOR.value}


def downgrade(severity: Severity) -> Severity:
    return SEVERITY_ORDER[max(0, SEVERITY_ORDER.index(severity) - 1)]


def strongest(*actions: InterventionAction) -> InterventionAction:
    return max(actions, key=ACTION_ORDER.index)


class InsightGenerator:
    """Deterministic mapping from prediction output to insights and triggers."""
    
    def __init__(
        self,
        catalog: PatternCatalog = pattern_catalog,
        config: Settings = default_settings,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.catalog = catalog
        self.config = config
        self._clock = clock or datetime.utcnow
    
    def risk_severity(self, risk_score: Optional[float]) -> Severity:
        if risk_score is None:
            return Severity.INFO
        if risk_score >= self.config.insight_critical_threshold:
            return Severity.CRITICAL
        if risk_score >= self.config.insight_warning_threshold:
            return Severity.WARNING
        return Severity.INFO
    
    def is_tentative(self, result: PredictionResult) -> bool:
        if result.feature_quality in LOW_QUALITY:
            return True
        if result.pattern_label is None:
            return False
        confidence = result.pattern_confidence
        return confidence is None or confidence < self.config.insight_min_confidence
    
    def generate(self, result: PredictionResult) -> Tuple[List[Insight], List[InterventionTrigger]]:
        """
        Build insights and triggers for one prediction.
        
        Returns:
            (insights, triggers); triggers are produced only when the risk score
            crosses the warning threshold or the anomaly head flags the user
        """
        now = self._clock()
        expires = now + timedelta(minutes=self.config.insight_ttl_minutes)
        tentative = self.is_tentative(result)
        risk_severity = self.risk_severity(result.risk_score)
        pattern = self.catalog.get(result.pattern_label) if result.pattern_label else None
        
        insights: List[Insight] = []
        triggers: List[InterventionTrigger] = []
        
        if pattern is not None:
            insights.append(self._pattern_insight(result, pattern, risk_severity, tentative, now, expires))
        elif risk_severity is not Severity.INFO:
            insights.append(Insight(
                user_id=result.user_id,
                severity=downgrade(risk_severity) if tentative else risk_severity,
                title="Elevated behavioral risk",
                message=f"Your behavioral risk score is {result.risk_score:.0%}.",
                recommended_action=InterventionAction.SUGGEST_REVIEW,
                tentative=tentative,
                created_at=now,
                expires_at=expires,
            ))
        
        if result.anomaly_flag:
            anomaly_severity = Severity.WARNING
            insights.append(Insight(
                user_id=result.user_id,
                pattern_id=ANOMALY_PATTERN_ID,
                severity=downgrade(anomaly_severity) if tentative else anomaly_severity,
                title="Unusual trading activity",
                message=(
                    "Your recent activity differs markedly from your usual behavior "
                    f"(anomaly score {result.anomaly_score:.2f}). Review open orders before continuing."
                ),
                recommended_action=InterventionAction.SUGGEST_REVIEW,
                tentative=tentative,
                created_at=now,
                expires_at=expires,
            ))
            triggers.append(self._trigger(
                result, ANOMALY_PATTERN_ID, "anomaly", anomaly_severity,
                insights[-1].message, InterventionAction.SUGGEST_REVIEW, now, expires,
            ))
        
        if risk_severity is not Severity.INFO:
            pattern_action = pattern.recommended_action if pattern else InterventionAction.SHOW_INSIGHT
            action = strongest(SEVERITY_ACTIONS[risk_severity], pattern_action)
            message = insights[0].message
            triggers.insert(0, self._trigger(
                result, result.pattern_label, "risk_score", risk_severity, message, action, now, expires,
            ))
        
        return insights, triggers
    
    def _pattern_insight(
        self,
        result: PredictionResult,
        pattern: BehaviorPattern,
        risk_severity: Severity,
        tentative: bool,
        now: datetime,
        expires: datetime,
    ) -> Insight:
        values = dict(result.features)
        values["risk_score"] = result.risk_score if result.risk_score is not None else 0.0
        try:
            message = pattern.render(values)
        except (KeyError, ValueError):
            message = pattern.description
        
        severity = risk_severity
        action = pattern.recommended_action
        title = pattern.name
        if tentative:
            severity = downgrade(severity)
            action = InterventionAction.SHOW_INSIGHT
            title = f"Possible {pattern.name.lower()}"
            confidence = result.pattern_confidence
            qualifier = f"{confidence:.0%} confidence" if confidence is not None else "limited data"
            message = f"This reading is tentative ({qualifier}). {message}"
        
        return Insight(
            user_id=result.user_id,
            pattern_id=pattern.pattern_id,
            severity=severity,
            title=title,
            message=message,
            recommended_action=action,
            confidence=result.pattern_confidence,
            tentative=tentative,
            created_at=now,
            expires_at=expires,
        )
    
    @staticmethod
    def _trigger(
        result: PredictionResult,
        pattern_id: Optional[str],
        reason: str,
        severity: Severity,
        message: str,
        action: InterventionAction,
        now: datetime,
        expires: datetime,
    ) -> InterventionTrigger:
        intervention_type, priority = SEVERITY_DELIVERY[severity]
        return InterventionTrigger(
            user_id=result.user_id,
            pattern_id=pattern_id,
            reason=reason,
            severity=severity,
            message=message,
            recommended_action=action,
            intervention_type=intervention_type,
            priority=priority,
            created_at=now,
            expires_at=expires,
        )


@dataclass
class EffectivenessCounters:
    """Delivered triggers and the responses they received."""
    delivered: int = 0
    acknowledged: int = 0
    acted: int = 0
    dismissed: int = 0
    
    @property
    def responded(self) -> int:
        return self.acknowledged + self.acted + self.dismissed
    
    def bump(self, response: InterventionResponse, step: int = 1) -> None:
        name = InterventionResponse(response).value
        setattr(self, name, getattr(self, name) + step)
    
    def merge(self, other: "EffectivenessCounters") -> None:
        for name in ("delivered", "acknowledged", "acted", "dismissed"):
            setattr(self, name, getattr(self, name) + getattr(other, name))
    
    def to_dict(self) -> Dict[str, Any]:
        delivered = max(1, self.delivered)
        return {
            "delivered": self.delivered,
            "acknowledged": self.acknowledged,
            "acted": self.acted,
            "dismissed": self.dismissed,
            "response_rate": round(self.responded / delivered, 4),
            "action_rate": round(self.acted / delivered, 4),
        }


class InterventionFeed:
    """
    Throttled delivery of triggers to notification sinks.
    
    Delivered triggers are remembered (up to intervention_tracked_triggers) so
    the trader's response can be recorded against them. Effectiveness counters
    are kept per user and pattern; a later response to the same trigger
    replaces the earlier one.
    """
    
    def __init__(
        self,
        config: Settings = default_settings,
        clock: Optional[Callable[[], datetime]] = None,
        buffer_size: int = 50,
    ):
        self.config = config
        self._clock = clock or datetime.utcnow
        self._buffer_size = buffer_size
        self._lock = threading.Lock()
        self._sinks: List[Callable[[InterventionTrigger], None]] = []
        self._sent: Dict[str, Deque[datetime]] = {}
        self._last_by_pattern: Dict[Tuple[str, Optional[str]], datetime] = {}
        self._insights: Dict[str, Deque[Insight]] = {}
        # trigger_id -> (trigger, response so far)
        self._tracked: "OrderedDict[str, Tuple[InterventionTrigger, Optional[InterventionResponse]]]" = OrderedDict()
        # (user_id, pattern key) -> counters
        self._counters: Dict[Tuple[str, str], EffectivenessCounters] = {}
        self.delivered_count = 0
        self.throttled_count = 0
        self.response_count = 0
    
    def add_sink(self, sink: Callable[[InterventionTrigger], None]) -> None:
        self._sinks.append(sink)
    
    @staticmethod
    def _pattern_key(trigger: InterventionTrigger) -> str:
        return trigger.pattern_id or trigger.reason
    
    def _counter(self, trigger: InterventionTrigger) -> EffectivenessCounters:
        key = (trigger.user_id, self._pattern_key(trigger))
        return self._counters.setdefault(key, EffectivenessCounters())
    
    def publish(self, insights: List[Insight], triggers: List[InterventionTrigger]) -> List[InterventionTrigger]:
        """Buffer insights and deliver the triggers that pass throttling."""
        now = self._clock()
        delivered = []
        with self._lock:
            for insight in insights:
                buffer = self._insights.setdefault(insight.user_id, deque(maxlen=self._buffer_size))
                buffer.append(insight)
            for trigger in triggers:
                if self._allow(trigger, now):
                    delivered.append(trigger)
                    self.delivered_count += 1
                    self._track(trigger)
                else:
                    self.throttled_count += 1
                    logger.info(
                        f"Throttled {trigger.reason} trigger for {trigger.user_id} "
                        f"(pattern={trigger.pattern_id})"
                    )
        
        for trigger in delivered:
            for sink in self._sinks:
                try:
                    sink(trigger)
                except Exception:
                    logger.exception(f"Intervention sink {sink!r} failed")
        return delivered
    
    def _track(self, trigger: InterventionTrigger) -> None:
        self._counter(trigger).delivered += 1
        self._tracked[trigger.trigger_id] = (trigger, None)
        while len(self._tracked) > self.config.intervention_tracked_triggers:
            self._tracked.popitem(last=False)
    
    def _allow(self, trigger: InterventionTrigger, now: datetime) -> bool:
        sent = self._sent.setdefault(trigger.user_id, deque())
        while sent and now - sent[0] >= timedelta(hours=1):
            sent.popleft()
        if len(sent) >= self.config.intervention_max_per_hour:
            return False
        
        key = (trigger.user_id, trigger.pattern_id)
        last = self._last_by_pattern.get(key)
        if last is not None and now - last < timedelta(minutes=self.config.intervention_cooldown_minutes):
            return False
        
        sent.append(now)
        self._last_by_pattern[key] = now
        return True
    
    def record_response(
        self,
        trigger_id: str,
        response: InterventionResponse,
        user_id: Optional[str] = None,
    ) -> InterventionTrigger:
        """
        Record what the trader did with a delivered trigger.
        
        Args:
            trigger_id: Id of a trigger returned by publish()
            response: acknowledged, acted or dismissed
            user_id: When given, the trigger must belong to this user
            
        Raises:
            RecordNotFoundError: the trigger is unknown, no longer tracked or
                belongs to another user
        """
        response = InterventionResponse(response)
        with self._lock:
            tracked = self._tracked.get(trigger_id)
            if tracked is None or (user_id is not None and tracked[0].user_id != user_id):
                raise RecordNotFoundError(f"Unknown intervention trigger {trigger_id}", {"trigger_id": trigger_id})
            trigger, previous = tracked
            counter = self._counter(trigger)
            if previous is not None:
                counter.bump(previous, -1)
            counter.bump(response)
            self._tracked[trigger_id] = (trigger, response)
            self.response_count += 1
        logger.info(
            f"Intervention {trigger_id} for {trigger.user_id} "
            f"(pattern={self._pattern_key(trigger)}): {response.value}"
        )
        return trigger
    
    def effectiveness(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Response counters and rates, overall and by pattern, for one user or everyone."""
        total = EffectivenessCounters()
        by_pattern: Dict[str, EffectivenessCounters] = {}
        with self._lock:
            for (owner, pattern), counters in self._counters.items():
                if user_id is not None and owner != user_id:
                    continue
                total.merge(counters)
                by_pattern.setdefault(pattern, EffectivenessCounters()).merge(counters)
        return {
            "user_id": user_id,
            **total.to_dict(),
            "by_pattern": {pattern: c.to_dict() for pattern, c in sorted(by_pattern.items())},
        }
    
    def recent_insights(self, user_id: str, include_expired: bool = False) -> List[Insight]:
        now = self._clock()
        with self._lock:
            buffer = list(self._insights.get(user_id, ()))
        if include_expired:
            return buffer
        return [insight for insight in buffer if insight.expires_at > now]
