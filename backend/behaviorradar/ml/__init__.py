"""
ML package for behavioral pattern detection.

Turns trading event streams into feature vectors, trains the anomaly, pattern,
risk and clustering heads, serves predictions and maps them to insights.
"""

__version__ = "1.0.0"
