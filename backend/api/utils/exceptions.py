"""Custom exception classes for Behavior Radar API"""
from typing import Tuple

from fastapi import HTTPException, status

from api.schemas.errors import ErrorCode
from behaviorradar.utils.errors import (
    BehaviorRadarError,
    ConcurrentModificationError,
    EventValidationError,
    FeatureNotFoundError,
    InsufficientDataError,
    ModelNotFoundError,
    ModelTrainingError,
    PredictionTimeoutError,
    RecordNotFoundError,
)


class BehaviorRadarHTTPException(HTTPException):
    """Base exception with error_code support"""
    
    def __init__(self, error_code: str, message: str, status_code: int, details=None):
        super().__init__(status_code=status_code, detail=message)
        self.error_code = error_code
        self.details = details


class InvalidInputException(BehaviorRadarHTTPException):
    """Exception for invalid input data"""
    
    def __init__(self, message: str, details=None):
        super().__init__(
            error_code=ErrorCode.VALIDATION_ERROR,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


# Most specific classes first
_DOMAIN_ERRORS = [
    (FeatureNotFoundError, status.HTTP_404_NOT_FOUND, ErrorCode.FEATURES_NOT_FOUND),
    (RecordNotFoundError, status.HTTP_404_NOT_FOUND, ErrorCode.NOT_FOUND),
    (ModelNotFoundError, status.HTTP_503_SERVICE_UNAVAILABLE, ErrorCode.MODEL_NOT_FOUND),
    (PredictionTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT, ErrorCode.PREDICTION_TIMEOUT),
    (ConcurrentModificationError, status.HTTP_409_CONFLICT, ErrorCode.CONCURRENT_MODIFICATION),
    (InsufficientDataError, status.HTTP_422_UNPROCESSABLE_ENTITY, ErrorCode.INSUFFICIENT_DATA),
    (EventValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY, ErrorCode.INVALID_EVENT),
    (ModelTrainingError, status.HTTP_409_CONFLICT, ErrorCode.TRAINING_IN_PROGRESS),
]


def status_for(exc: BehaviorRadarError) -> Tuple[int, str]:
    """HTTP status and error code for a domain error."""
    for error_type, status_code, error_code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            return status_code, error_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR, ErrorCode.INTERNAL_ERROR
