"""
Ingestion API Router - accepts trading events from the trading service.

Each record is validated on its own; the response lists accepted counts and
a structured rejection per invalid field.
"""

from fastapi import APIRouter, Depends

from api.dependencies import ServiceContainer, get_services
from api.schemas.predictions import IngestRequest, IngestResponse
from api.utils.metrics import increment_metric


router = APIRouter(prefix="/events", tags=["ingestion"])


@router.post("", response_model=IngestResponse)
def ingest_events(
    request: IngestRequest,
    services: ServiceContainer = Depends(get_services),
):
    """Validate and store a batch of trading events."""
    report = services.ingestion.ingest(request.events)
    increment_metric("events_ingested_total", report.accepted)
    increment_metric("events_rejected_total", report.rejected)
    return report.to_dict()
