"""
Custom exception classes for the safety ratings service.

This module defines a hierarchy of exceptions with:
- Structured error responses
- Proper HTTP status codes
- Error codes for client-side handling
- A retriable flag that the batch worker uses to schedule backoff
"""

from enum import StrEnum
from typing import Any

from fastapi import HTTPException, status

# =============================================================================
# Error Codes Enum
# =============================================================================


class ErrorCode(StrEnum):
    """Standardized error codes for client-side handling."""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    SERVICE_UNAVAILABLE = "ERR_1003"

    # Database errors (2xxx)
    DATABASE_ERROR = "ERR_2000"
    DATABASE_CONNECTION = "ERR_2001"
    DATABASE_TIMEOUT = "ERR_2002"
    DATABASE_INTEGRITY = "ERR_2003"
    POSTGRES_ERROR = "ERR_2010"

    # External API errors (3xxx)
    EXTERNAL_API_ERROR = "ERR_3000"
    NHTSA_ERROR = "ERR_3001"
    NHTSA_RATE_LIMITED = "ERR_3002"
    NHTSA_NETWORK = "ERR_3003"

    # Pipeline errors (4xxx)
    RATING_NOT_FOUND = "ERR_4001"
    RATING_UNAVAILABLE = "ERR_4002"
    CSV_IMPORT_ERROR = "ERR_4010"
    BATCH_IN_PROGRESS = "ERR_4020"


# =============================================================================
# Base Exception Classes
# =============================================================================


class SafetyRatingsException(Exception):
    """
    Base exception class for all service exceptions.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional error context
        status_code: HTTP status code
    """

    retriable: bool = False

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: dict[str, Any] | None = None,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for JSON response."""
        return {
            "error": {
                "code": self.code.value,
                "message": self.message,
                "details": self.details,
            }
        }

    def to_http_exception(self) -> HTTPException:
        """Convert to FastAPI HTTPException."""
        return HTTPException(
            status_code=self.status_code,
            detail=self.to_dict(),
        )


# =============================================================================
# Lookup Exceptions
# =============================================================================


class NotFoundException(SafetyRatingsException):
    """Exception for resource not found errors."""

    def __init__(
        self,
        message: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
    ):
        details = {}
        if resource_type:
            details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id

        super().__init__(
            message=message,
            code=ErrorCode.NOT_FOUND,
            details=details,
            status_code=status.HTTP_404_NOT_FOUND,
        )


class RatingNotFoundException(NotFoundException):
    """No tier holds a rating and the provider confirmed it has none."""

    def __init__(self, year: int, make: str, model: str):
        super().__init__(
            message=f"No rating available for {year} {make} {model}",
            resource_type="vehicle_rating",
            resource_id=f"{year}/{make}/{model}",
        )
        self.code = ErrorCode.RATING_NOT_FOUND


class RatingUnavailableException(SafetyRatingsException):
    """The rating could not be determined right now (provider unreachable, nothing cached)."""

    retriable = True

    def __init__(self, year: int, make: str, model: str):
        super().__init__(
            message=f"Rating for {year} {make} {model} is temporarily unavailable",
            code=ErrorCode.RATING_UNAVAILABLE,
            details={"vehicle": f"{year}/{make}/{model}"},
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


# =============================================================================
# Database Exceptions
# =============================================================================


class DatabaseException(SafetyRatingsException):
    """Base exception for database errors."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.DATABASE_ERROR,
        details: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ):
        error_details = details or {}
        if original_error:
            error_details["original_error"] = str(original_error)

        super().__init__(
            message=message,
            code=code,
            details=error_details,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )
        self.original_error = original_error


class PostgresException(DatabaseException):
    """Exception for relational store errors."""

    def __init__(
        self,
        message: str = "Database error.",
        details: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ):
        super().__init__(
            message=message,
            code=ErrorCode.POSTGRES_ERROR,
            details=details,
            original_error=original_error,
        )


class PostgresConnectionException(PostgresException):
    """Exception for relational store connection errors."""

    def __init__(
        self,
        message: str = "Could not connect to the database.",
        original_error: Exception | None = None,
    ):
        super().__init__(
            message=message,
            details={"type": "connection"},
            original_error=original_error,
        )
        self.code = ErrorCode.DATABASE_CONNECTION


# =============================================================================
# External API Exceptions
# =============================================================================


class ExternalAPIException(SafetyRatingsException):
    """Base exception for external API errors."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.EXTERNAL_API_ERROR,
        details: dict[str, Any] | None = None,
        original_error: Exception | None = None,
        retry_after: int | None = None,
    ):
        error_details = details or {}
        if original_error:
            error_details["original_error"] = str(original_error)
        if retry_after:
            error_details["retry_after_seconds"] = retry_after

        super().__init__(
            message=message,
            code=code,
            details=error_details,
            status_code=status.HTTP_502_BAD_GATEWAY,
        )
        self.original_error = original_error
        self.retry_after = retry_after


class NHTSAException(ExternalAPIException):
    """Exception for NHTSA API errors."""

    def __init__(
        self,
        message: str = "NHTSA service error.",
        details: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ):
        super().__init__(
            message=message,
            code=ErrorCode.NHTSA_ERROR,
            details=details,
            original_error=original_error,
        )


class NetworkError(NHTSAException):
    """Transport, DNS, TLS or timeout failure talking to NHTSA. Always retriable."""

    retriable = True

    def __init__(
        self,
        message: str = "Could not reach the NHTSA service.",
        url: str | None = None,
        original_error: Exception | None = None,
    ):
        super().__init__(
            message=message,
            details={"url": url} if url else None,
            original_error=original_error,
        )
        self.code = ErrorCode.NHTSA_NETWORK


class NHTSARateLimitException(NHTSAException):
    """Exception when NHTSA rate limit is exceeded."""

    retriable = True

    def __init__(
        self,
        retry_after: int = 60,
        original_error: Exception | None = None,
    ):
        super().__init__(
            message=f"NHTSA rate limit exceeded. Retry after {retry_after} seconds.",
            details={"retry_after_seconds": retry_after},
            original_error=original_error,
        )
        self.code = ErrorCode.NHTSA_RATE_LIMITED
        self.retry_after = retry_after
        self.status_code = status.HTTP_429_TOO_MANY_REQUESTS


# =============================================================================
# Pipeline Exceptions
# =============================================================================


class CsvImportException(SafetyRatingsException):
    """A bulk CSV import step failed; ``reason`` is the machine-readable cause."""

    def __init__(
        self,
        reason: str,
        message: str | None = None,
        original_error: Exception | None = None,
    ):
        details: dict[str, Any] = {"reason": reason}
        if original_error:
            details["original_error"] = str(original_error)

        super().__init__(
            message=message or f"CSV import failed: {reason}",
            code=ErrorCode.CSV_IMPORT_ERROR,
            details=details,
            status_code=status.HTTP_502_BAD_GATEWAY,
        )
        self.reason = reason
        self.original_error = original_error


class BatchInProgressException(SafetyRatingsException):
    """Another worker currently holds the batch lease."""

    def __init__(self, lease_name: str, owner: str | None = None):
        super().__init__(
            message=f"Batch '{lease_name}' is already running",
            code=ErrorCode.BATCH_IN_PROGRESS,
            details={"lease": lease_name, "owner": owner},
            status_code=status.HTTP_409_CONFLICT,
        )
