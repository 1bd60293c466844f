"""Model registry and training schemas"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class LoadedModel(BaseModel):
    model_config = ConfigDict(protected_namespaces=())
    
    model_name: str
    version: str
    loaded_at: datetime


class LoadedModelsResponse(BaseModel):
    snapshot_version: Optional[str] = None
    models: List[LoadedModel]


class PromoteRequest(BaseModel):
    version: str
    expected_revision: Optional[int] = None
    reason: str = "manual"


class RollbackRequest(BaseModel):
    expected_revision: Optional[int] = None


class PromotionResponse(BaseModel):
    versions: Dict[str, str]
    reason: str
    promoted_at: datetime


class TrainingRunRequest(BaseModel):
    as_of: Optional[datetime] = None


class TrainingRunResponse(BaseModel):
    run_id: str
    trigger: Optional[str] = None
    state: str
    last_successful_stage: Optional[str] = None
    as_of: Optional[datetime] = None
    population_size: Optional[int] = None
    skipped_users: Optional[int] = None
    candidate_versions: Optional[Dict[str, str]] = None
    validation_report: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
