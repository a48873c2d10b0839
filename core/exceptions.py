"""
Custom exceptions for the sync engine with structured error context.

Each exception carries a context dictionary so that a failure can be logged
and stored on its SyncLog row with enough detail to reproduce it.

Exception Hierarchy:
    SyncEngineError (base)
    ├── ConfigurationError
    ├── ProviderError
    │   ├── UnauthorizedError
    │   ├── NotFoundError
    │   └── RateLimitedError
    ├── TransientNetworkError
    │   └── FetchTimeoutError
    ├── NormalizationError
    ├── PersistenceError
    ├── SyncCancelledError
    ├── SyncNotFoundError
    ├── InvalidSyncStateError
    ├── InvalidSyncRequestError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class SyncEngineError(Exception):
    """
    Base exception for all sync-engine errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (provider, entity id, run id, ...)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": {k: str(v) for k, v in self.context.items()},
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(SyncEngineError):
    """
    Marker for errors a caller may retry later.

    The fetcher never retries on its own; the scheduled re-run is the retry.
    """


class NonRetryableError(SyncEngineError):
    """Marker for errors that will fail again until someone fixes configuration or data."""


# ============================================================================
# Configuration
# ============================================================================

class ConfigurationError(NonRetryableError):
    """
    Missing or invalid provider credentials.

    Raised at connector construction, before any network call.
    """


# ============================================================================
# Provider / Network Errors
# ============================================================================

class ProviderError(SyncEngineError):
    """
    4xx/5xx answer from an external API.

    Context should include:
        - provider: gitlab / clickup
        - url: The endpoint that failed
        - status_code: HTTP status code
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        status_code: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.status_code = status_code
        if status_code is not None:
            self.context["status_code"] = status_code


class UnauthorizedError(NonRetryableError, ProviderError):
    """Authentication failures (HTTP 401, 403)."""


class NotFoundError(NonRetryableError, ProviderError):
    """Resource not found (HTTP 404), e.g. a since-deleted project or space."""


class RateLimitedError(RetryableError, ProviderError):
    """Rate limiting (HTTP 429)."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(message, context, original_exception, status_code=429)
        self.retry_after = retry_after
        if retry_after:
            self.context["retry_after"] = retry_after


class TransientNetworkError(RetryableError):
    """Connection reset, DNS failure and other transport-level problems."""


class FetchTimeoutError(TransientNetworkError):
    """The request did not complete within the fetch timeout."""


# ============================================================================
# Normalization / Persistence
# ============================================================================

class NormalizationError(SyncEngineError):
    """
    Upstream payload has an unexpected shape.

    Context should include:
        - provider: gitlab / clickup
        - entity: commit / task / time_entry / project
        - entity_id: Provider id of the record
        - field_name: Field that could not be normalized
    """


class PersistenceError(SyncEngineError):
    """
    Store write failure.

    Context should include:
        - operation: UPSERT, UPDATE, DELETE
        - table_name: Name of the table
        - entity_id: Natural key of the row
    """


# ============================================================================
# Sync control
# ============================================================================

class SyncCancelledError(SyncEngineError):
    """A running sync was cancelled; raised from the connector paging loops."""


class SyncNotFoundError(SyncEngineError):
    """Unknown sync run id."""


class InvalidSyncStateError(SyncEngineError):
    """The requested transition is not allowed from the run's current state."""


class InvalidSyncRequestError(SyncEngineError):
    """Unknown service name or filter value."""
