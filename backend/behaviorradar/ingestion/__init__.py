"""Event ingestion: validation and storage of incoming trading events."""

from behaviorradar.ingestion.adapter import EventIngestionAdapter, IngestionReport, Rejection

__all__ = ["EventIngestionAdapter", "IngestionReport", "Rejection"]
