"""
Error types for the CRM data layer.

Taxonomy:
- ValidationError: rejected before any network call
- PermissionDeniedError / UnauthenticatedError: surfaced from auth checks, never retried
- TransientError: network / timeout / unavailable, eligible for retry
- ConflictError: version mismatch on an optimistic update, never retried
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from google.api_core import exceptions as gcp_exceptions


class CrmError(Exception):
    """Base exception for all CRM errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    status_code = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "CRM_ERROR"
        self.details = details or {}


class ValidationError(CrmError):
    """Input failed sanitization or validation rules."""

    status_code = 400

    def __init__(
        self,
        message: str,
        errors: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message, code="VALIDATION_ERROR", details={"errors": errors or {}})
        self.errors = errors or {}


class UnauthenticatedError(CrmError):
    status_code = 401

    def __init__(self, message: str = "User must be authenticated") -> None:
        super().__init__(message, code="UNAUTHENTICATED")


class PermissionDeniedError(CrmError):
    """Actor lacks the role or ownership required for the operation."""

    status_code = 403

    def __init__(self, message: str = "Insufficient permissions", actor: Optional[str] = None) -> None:
        super().__init__(message, code="PERMISSION_DENIED", details={"actor": actor})
        self.actor = actor


class NotFoundError(CrmError):
    status_code = 404

    def __init__(self, message: str, collection: Optional[str] = None, doc_id: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={"collection": collection, "doc_id": doc_id},
        )
        self.collection = collection
        self.doc_id = doc_id


class ConflictError(CrmError):
    """Stored document version differs from the caller's expected version."""

    status_code = 409

    def __init__(
        self,
        message: str = "Document version mismatch - concurrent update detected",
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            code="VERSION_CONFLICT",
            details={"expected_version": expected_version, "actual_version": actual_version},
        )
        self.expected_version = expected_version
        self.actual_version = actual_version


class RateLimitExceededError(CrmError):
    status_code = 429

    def __init__(self, operation: str, max_attempts: int) -> None:
        super().__init__(
            "Rate limit exceeded",
            code="RATE_LIMITED",
            details={"operation": operation, "max_attempts": max_attempts},
        )


class TransientError(CrmError):
    """Infrastructure failure that is likely to succeed on retry."""

    status_code = 503

    def __init__(self, message: str, code: str = "TRANSIENT") -> None:
        super().__init__(message, code=code)


class MaxRetriesExceededError(TransientError):
    def __init__(self, operation: str, attempts: int) -> None:
        super().__init__("Max retry attempts exceeded", code="MAX_RETRIES_EXCEEDED")
        self.details = {"operation": operation, "attempts": attempts}
        self.operation = operation
        self.attempts = attempts


class RetryQueueClosedError(TransientError):
    def __init__(self) -> None:
        super().__init__("Retry queue is shut down", code="RETRY_QUEUE_CLOSED")


class NotInitializedError(CrmError):
    def __init__(self, component: str) -> None:
        super().__init__(f"{component} not initialized", code="NOT_INITIALIZED")


_TRANSIENT_GCP = (
    gcp_exceptions.ServiceUnavailable,
    gcp_exceptions.DeadlineExceeded,
    gcp_exceptions.InternalServerError,
    gcp_exceptions.Cancelled,
    gcp_exceptions.Unknown,
)

_TRANSIENT_HINTS: List[str] = ["network", "timeout", "timed out", "unavailable"]


def is_transient(error: BaseException) -> bool:
    """Classify an error as retryable.

    Terminal retry errors and conflicts are never transient, even though
    MaxRetriesExceededError subclasses TransientError for HTTP mapping.
    """
    if isinstance(error, (MaxRetriesExceededError, RetryQueueClosedError)):
        return False
    if isinstance(error, CrmError):
        return isinstance(error, TransientError)
    if isinstance(error, _TRANSIENT_GCP):
        return True
    if isinstance(error, gcp_exceptions.GoogleAPICallError):
        return False
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    message = str(error).lower()
    return any(hint in message for hint in _TRANSIENT_HINTS)
