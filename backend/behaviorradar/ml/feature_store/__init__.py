"""
Feature Store Module for Behavior Radar.

Provides feature definitions and versions, the TTL cache and the vector store.
"""

from .registry import FeatureRegistry, FeatureDefinition, FeatureVersion, feature_registry
from .cache import TTLCache
from .store import FeatureStore

__all__ = [
    "FeatureRegistry",
    "FeatureDefinition",
    "FeatureVersion",
    "feature_registry",
    "TTLCache",
    "FeatureStore",
]
