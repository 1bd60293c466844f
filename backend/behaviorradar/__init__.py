"""Behavior Radar: behavioral feature and model pipeline for trading activity."""

__version__ = "1.0.0"
