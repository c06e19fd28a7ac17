"""
Standardized exception handling for the dispatch board.

Blocked workflow transitions are NOT exceptions: they come back as typed
outcomes (see ``dispatch_board.services.outcomes``). The classes here cover
faults that abort the current operation:
- external store unreachable (``DataUnavailableException``)
- malformed persisted data (``MalformedRecordException``)
- invalid HTTP input and missing actor identity
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ErrorDetail(BaseModel):
    """Standardized error response format."""
    code: str
    message: str
    status_code: int
    timestamp: str
    request_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Wrapper for error responses."""
    error: ErrorDetail


# =============================================================================
# Base Exception Classes
# =============================================================================

class AppException(Exception):
    """Base exception for all application errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ):
        self.message = message or self.message
        self.details = details
        if error_code:
            self.error_code = error_code
        super().__init__(self.message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert exception to standardized error response."""
        return ErrorResponse(
            error=ErrorDetail(
                code=self.error_code,
                message=self.message,
                status_code=self.status_code,
                timestamp=datetime.utcnow().isoformat() + "Z",
                request_id=request_id,
                details=self.details,
            )
        )


# =============================================================================
# Client Errors (4xx)
# =============================================================================

class ValidationException(AppException):
    """Invalid input data."""
    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "VALIDATION_ERROR"
    message = "Invalid input data"


class AuthenticationException(AppException):
    """Actor identity missing or unreadable."""
    status_code = status.HTTP_401_UNAUTHORIZED
    error_code = "AUTHENTICATION_FAILED"
    message = "Actor identity required"


class AuthorizationException(AppException):
    """Actor lacks permission."""
    status_code = status.HTTP_403_FORBIDDEN
    error_code = "PERMISSION_DENIED"
    message = "You do not have permission to perform this action"


class NotFoundException(AppException):
    """Resource not found."""
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "NOT_FOUND"
    message = "Resource not found"


class DeliveryNotFoundException(NotFoundException):
    """Delivery record not found."""
    error_code = "DELIVERY_NOT_FOUND"
    message = "Delivery record not found"

    def __init__(self, delivery_id: str):
        super().__init__(
            message=f"Delivery record '{delivery_id}' not found",
            details={"delivery_id": delivery_id},
        )


class ApprovalRequestNotFoundException(NotFoundException):
    """Approval request not found."""
    error_code = "APPROVAL_REQUEST_NOT_FOUND"
    message = "Approval request not found"

    def __init__(self, request_id: str):
        super().__init__(
            message=f"Approval request '{request_id}' not found",
            details={"request_id": request_id},
        )


# =============================================================================
# Data Errors
# =============================================================================

class MalformedRecordException(AppException):
    """Persisted data violates the record invariants."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = "MALFORMED_RECORD"
    message = "Persisted record is malformed"

    def __init__(self, entity: str, record_id: Optional[str], reason: str):
        super().__init__(
            message=f"Malformed {entity} '{record_id}': {reason}",
            details={"entity": entity, "record_id": record_id, "reason": reason},
        )


# =============================================================================
# External Service Exceptions (5xx)
# =============================================================================

class ExternalServiceException(AppException):
    """External service error."""
    status_code = status.HTTP_502_BAD_GATEWAY
    error_code = "EXTERNAL_SERVICE_ERROR"
    message = "External service unavailable"


class DataUnavailableException(ExternalServiceException):
    """A fetch from the system of record failed."""
    error_code = "DATA_UNAVAILABLE"
    message = "Dispatch data is temporarily unavailable"


class StoreWriteException(ExternalServiceException):
    """A write to the system of record failed."""
    error_code = "STORE_WRITE_FAILED"
    message = "Could not write to the system of record"


# =============================================================================
# Configuration Exception
# =============================================================================

class ConfigurationException(AppException):
    """Configuration error - should fail at startup."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = "CONFIGURATION_ERROR"
    message = "Application configuration error"


# =============================================================================
# Exception Handler Registration
# =============================================================================

def get_request_id(request: Request) -> str:
    """Extract or generate request ID."""
    return getattr(request.state, "request_id", None) or str(uuid4())


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle all application exceptions with standardized format."""
    request_id = get_request_id(request)
    response = exc.to_response(request_id=request_id)

    if exc.status_code >= 500:
        logger.error(
            f"{exc.error_code}: {exc.message}",
            extra={"request_id": request_id},
        )

    return JSONResponse(
        status_code=exc.status_code,
        content=response.model_dump(),
        headers={"X-Request-ID": request_id},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    request_id = get_request_id(request)

    logger.exception(f"Unhandled exception: {exc}", extra={"request_id": request_id})

    error = ErrorResponse(
        error=ErrorDetail(
            code="INTERNAL_ERROR",
            message="An unexpected error occurred",
            status_code=500,
            timestamp=datetime.utcnow().isoformat() + "Z",
            request_id=request_id,
        )
    )

    return JSONResponse(
        status_code=500,
        content=error.model_dump(),
        headers={"X-Request-ID": request_id},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI app."""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
