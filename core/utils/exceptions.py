# Structured exception hierarchy for the trade sync layer

from typing import Dict, Any, Optional
from datetime import datetime, timezone


class TradeSyncException(Exception):
    """Base exception for all trade sync specific errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 correlation_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.correlation_id = correlation_id
        self.timestamp = datetime.now(timezone.utc)


class TransientError(TradeSyncException):
    """Base class for transient errors that heal on the next reconnect or poll tick"""

    def __init__(self, message: str, retry_count: int = 0, max_retries: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None, correlation_id: Optional[str] = None):
        super().__init__(message, details, correlation_id)
        self.retry_count = retry_count
        # None means retried forever at a fixed cadence
        self.max_retries = max_retries
        self.retryable = max_retries is None or retry_count < max_retries


class PermanentError(TradeSyncException):
    """Base class for errors that retrying cannot fix"""
    pass


# Stream errors
class StreamTransportError(TransientError):
    """Socket closed or errored - handled by the reconnect loop"""

    def __init__(self, message: str, url: str, **kwargs):
        super().__init__(message, **kwargs)
        self.url = url


class FrameParseError(PermanentError):
    """Malformed stream frame - the frame is dropped"""

    def __init__(self, message: str, raw_frame: Any, **kwargs):
        super().__init__(message, **kwargs)
        self.raw_frame = raw_frame


# Snapshot errors
class SnapshotFetchError(TransientError):
    """Account snapshot could not be fetched - prior state is retained"""

    def __init__(self, message: str, account_id: Optional[str] = None,
                 status: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.account_id = account_id
        self.status = status


class SnapshotAuthError(SnapshotFetchError):
    """Snapshot rejected with HTTP 401 - the cached token is invalidated"""

    def __init__(self, message: str, account_id: Optional[str] = None, **kwargs):
        super().__init__(message, account_id=account_id, status=401, **kwargs)


# Record errors
class RecordValidationError(PermanentError):
    """Backend record failed the validity predicate - the record is dropped"""

    def __init__(self, message: str, field: str, value: Any,
                 record: Optional[Dict[str, Any]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value
        self.record = record or {}


# Mutation errors
class MutationError(PermanentError):
    """Remote mutation rejected - surfaced to the caller, optimistic patch kept"""

    def __init__(self, message: str, operation: str, entity_id: Optional[str] = None,
                 status: Optional[int] = None, api_response: Optional[Any] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.operation = operation
        self.entity_id = entity_id
        self.status = status
        self.api_response = api_response


class EntityNotFoundError(PermanentError):
    """Position or order id is not present in the local tables"""

    def __init__(self, message: str, entity_id: str, **kwargs):
        super().__init__(message, **kwargs)
        self.entity_id = entity_id


# Configuration Errors
class ConfigurationError(PermanentError):
    """Missing account id, token provider or invalid configuration"""

    def __init__(self, message: str, config_field: str, config_value: Any = None,
                 **kwargs):
        super().__init__(message, **kwargs)
        self.config_field = config_field
        self.config_value = config_value


def is_retryable_error(error: Exception) -> bool:
    """
    Determine if an error heals by itself on the next cycle

    Returns:
        True if error is transient and retryable, False otherwise
    """
    if isinstance(error, TransientError):
        return error.retryable
    return False


def create_error_context(error: Exception, operation: str,
                         additional_context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Create structured error context for logging

    Args:
        error: The exception that occurred
        operation: The operation that failed
        additional_context: Additional context information

    Returns:
        Structured error context dictionary
    """
    context = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "operation": operation,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "retryable": is_retryable_error(error)
    }

    if isinstance(error, TradeSyncException):
        if error.correlation_id:
            context["correlation_id"] = error.correlation_id
        if error.details:
            context["error_details"] = error.details

        if isinstance(error, TransientError):
            context["retry_count"] = error.retry_count

        if isinstance(error, SnapshotFetchError):
            context["account_id"] = error.account_id
            context["status"] = error.status

        if isinstance(error, MutationError):
            context["mutation"] = error.operation
            context["entity_id"] = error.entity_id
            if error.status is not None:
                context["status"] = error.status

    if additional_context:
        context.update(additional_context)

    return context
