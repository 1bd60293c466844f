"""
Custom exceptions for Behavior Radar.

Provides domain-specific exceptions with clear error messages and
support for structured error handling.
"""

from typing import Optional, Dict, Any


class BehaviorRadarError(Exception):
    """Base exception for all Behavior Radar errors."""
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)
    
    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


# ============================================================================
# Database Errors
# ============================================================================

class DatabaseError(BehaviorRadarError):
    """Database operation failed."""
    pass


class RecordNotFoundError(DatabaseError):
    """Database record not found."""
    pass


# ============================================================================
# Ingestion Errors
# ============================================================================

class EventValidationError(BehaviorRadarError):
    """A trading event failed validation and was rejected."""
    
    def __init__(self, message: str, errors: Optional[list] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = errors or []
        self.details.setdefault("errors", self.errors)


# ============================================================================
# Feature Errors
# ============================================================================

class InsufficientDataError(BehaviorRadarError):
    """Too few events in the window to compute a feature vector."""
    pass


class FeatureComputationError(BehaviorRadarError):
    """A feature left its valid range; the vector is discarded."""
    pass


class FeatureNotFoundError(BehaviorRadarError):
    """No stored vector and on-demand computation failed."""
    pass


# ============================================================================
# Model Errors
# ============================================================================

class ModelNotFoundError(BehaviorRadarError):
    """No production artifact is available."""
    pass


class ConcurrentModificationError(BehaviorRadarError):
    """A registry write lost an optimistic version check."""
    pass


class ModelTrainingError(BehaviorRadarError):
    """A training stage failed."""
    pass


class ValidationFailure(BehaviorRadarError):
    """Candidate models did not pass the promotion gates."""
    
    def __init__(self, message: str, failures: Optional[list] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.failures = failures or []
        self.details.setdefault("failures", self.failures)


# ============================================================================
# Serving Errors
# ============================================================================

class PredictionTimeoutError(BehaviorRadarError):
    """Prediction exceeded its latency budget."""
    
    def __init__(self, message: str, budget_ms: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.budget_ms = budget_ms
        if budget_ms is not None:
            self.details.setdefault("budget_ms", budget_ms)


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigurationError(BehaviorRadarError):
    """Application configuration error."""
    pass
