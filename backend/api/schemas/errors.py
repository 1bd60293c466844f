"""Error response schemas and error codes"""
from pydantic import BaseModel
from typing import Optional, Dict, Any


class ErrorResponse(BaseModel):
    """Standard error response format"""
    error_code: str
    message: str
    details: Optional[Dict[str, Any]] = None
    status_code: int


class ErrorCode:
    """Standard error codes for the application"""
    
    # Resource errors
    NOT_FOUND = "NOT_FOUND"
    FEATURES_NOT_FOUND = "FEATURES_NOT_FOUND"
    MODEL_NOT_FOUND = "MODEL_NOT_FOUND"
    
    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_EVENT = "INVALID_EVENT"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"
    
    # Concurrency
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    TRAINING_IN_PROGRESS = "TRAINING_IN_PROGRESS"
    
    # Serving
    PREDICTION_TIMEOUT = "PREDICTION_TIMEOUT"
    
    # Server errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
