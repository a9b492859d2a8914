"""Error taxonomy for graph building, state, locking and execution."""

from typing import Optional, Dict, Any, List
from enum import Enum
from dataclasses import dataclass
from datetime import datetime

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)


class ErrorCategory(Enum):
    """Categories of errors that can occur during a reconcile run."""
    CONFIGURATION = "configuration"
    GRAPH = "graph"
    STATE = "state"
    LOCK = "lock"
    PLAN = "plan"
    EXECUTION = "execution"
    PROVIDER = "provider"
    CREDENTIAL = "credential"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Run cannot continue
    ERROR = "error"  # Resource failed but run can continue
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"  # Informational message


@dataclass
class ErrorContext:
    """Context information for an error."""
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    operation: Optional[str] = None
    identity: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


class ConvergeError(Exception):
    """Base exception for all reconcile errors."""

    retryable = False

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize error.

        Args:
            message: Human-readable error message
            category: Error category
            severity: Error severity
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []

    def to_user_message(self) -> str:
        """Convert error to user-friendly message.

        Returns:
            Formatted error message for display to user
        """
        lines = [f"{self.severity.value.upper()}: {self.message}"]

        if self.context.resource_id:
            lines.append(f"   Resource: {self.context.resource_id}")
        if self.context.identity:
            lines.append(f"   State: {self.context.identity}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")

        if self.cause:
            lines.append(f"   Cause: {str(self.cause)}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {
            'error': type(self).__name__,
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'context': {
                'resource_id': self.context.resource_id,
                'resource_type': self.context.resource_type,
                'operation': self.context.operation,
                'identity': self.context.identity,
                'request_id': self.context.request_id,
                'additional_info': self.context.additional_info
            },
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class ConfigurationError(ConvergeError):
    """Error in configuration or declaration files."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


# Graph errors

class GraphError(ConvergeError):
    """Error while building the resource graph."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.GRAPH,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class CycleError(GraphError):
    """The declared resources form a dependency cycle."""

    def __init__(self, cycle: List[str], **kwargs):
        self.cycle = cycle
        super().__init__(
            f"Circular dependency detected: {' -> '.join(cycle)}",
            context=ErrorContext(resource_id=cycle[0] if cycle else None),
            suggestions=[
                'Remove one of the references or depends_on entries in the cycle',
            ],
            **kwargs
        )


class UnresolvedReferenceError(GraphError):
    """An attribute or depends_on entry names a resource that is not declared."""

    def __init__(self, resource_id: str, reference: str, detail: Optional[str] = None, **kwargs):
        self.resource_id = resource_id
        self.reference = reference
        message = f"Resource '{resource_id}' references '{reference}' which is not declared"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(
            message,
            context=ErrorContext(resource_id=resource_id),
            **kwargs
        )


# State store errors

class StateError(ConvergeError):
    """Error related to state storage."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.CRITICAL)
        super().__init__(
            message,
            category=ErrorCategory.STATE,
            **kwargs
        )


class StateNotFoundError(StateError):
    """No snapshot has been stored for the identity yet."""

    def __init__(self, identity: str, **kwargs):
        self.identity = identity
        super().__init__(
            f"No state found for '{identity}'",
            context=ErrorContext(identity=identity),
            **kwargs
        )


class VersionConflict(StateError):
    """Another writer committed a newer snapshot since it was loaded."""

    def __init__(self, identity: str, expected: Optional[int], actual: Optional[int], **kwargs):
        self.identity = identity
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"State '{identity}' changed since it was read "
            f"(expected serial {expected}, found {actual})",
            context=ErrorContext(identity=identity),
            suggestions=['Reload the state and re-run plan before applying'],
            **kwargs
        )


class StoreUnavailable(StateError):
    """The state backend could not be reached. Safe to retry."""

    retryable = True

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('suggestions', [
            'Check connectivity to the state backend',
            'Retry the operation; transient failures are retried with backoff',
        ])
        super().__init__(message, **kwargs)


# Lock errors

class LockError(ConvergeError):
    """Error related to state locking."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.LOCK,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class AlreadyLocked(LockError):
    """A lock is already held for the identity."""

    def __init__(self, identity: str, holder: str, since: datetime, lock_id: str, **kwargs):
        self.identity = identity
        self.holder = holder
        self.since = since
        self.lock_id = lock_id
        super().__init__(
            f"State '{identity}' is locked by {holder} since {since.isoformat()} "
            f"(lock ID {lock_id})",
            context=ErrorContext(identity=identity),
            suggestions=[
                'Wait for the other operation to finish',
                f'If the holder crashed, run: converge force-unlock {lock_id} (use with caution)',
            ],
            **kwargs
        )


class InvalidToken(LockError):
    """The lock token does not match the lock currently held."""

    def __init__(self, identity: str, lock_id: str, **kwargs):
        self.identity = identity
        self.lock_id = lock_id
        super().__init__(
            f"Lock ID {lock_id} does not match the current lock for '{identity}'",
            context=ErrorContext(identity=identity),
            **kwargs
        )


class LockNotFound(LockError):
    """No lock is held for the identity."""

    def __init__(self, identity: str, **kwargs):
        self.identity = identity
        super().__init__(
            f"State '{identity}' is not locked",
            context=ErrorContext(identity=identity),
            **kwargs
        )


# Planning and execution errors

class HighRiskPlanError(ConvergeError):
    """The plan replaces resources whose recreation has external side effects."""

    def __init__(self, resource_ids: List[str], **kwargs):
        self.resource_ids = resource_ids
        super().__init__(
            f"Plan replaces globally unique resources: {', '.join(resource_ids)}",
            category=ErrorCategory.PLAN,
            severity=ErrorSeverity.CRITICAL,
            suggestions=[
                'Review the replacement; the resource name may not be reclaimable',
                'Re-run with --allow-high-risk to proceed',
            ],
            **kwargs
        )


class ProviderError(ConvergeError):
    """Error raised by a provider client."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.PROVIDER,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class ExecutionError(ConvergeError):
    """Error while executing a single plan action."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.EXECUTION,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class ActionFailed(ExecutionError):
    """A plan action failed."""

    def __init__(self, resource: str, cause: Exception, operation: Optional[str] = None):
        self.resource = resource
        super().__init__(
            f"{operation or 'action'} failed for {resource}: {cause}",
            context=ErrorContext(resource_id=resource, operation=operation),
            cause=cause
        )


class ActionTimedOut(ExecutionError):
    """A plan action did not finish within the per-action timeout."""

    def __init__(self, resource: str, timeout: float, operation: Optional[str] = None):
        self.resource = resource
        self.timeout = timeout
        super().__init__(
            f"{operation or 'action'} for {resource} timed out after {timeout:g}s",
            context=ErrorContext(resource_id=resource, operation=operation),
            suggestions=['The resource may still be changing; run refresh before retrying'],
        )


class ErrorHandler:
    """Maps backend exceptions onto the state error taxonomy."""

    # AWS error codes that indicate a transient backend problem
    TRANSIENT_ERROR_CODES = {
        'RequestTimeout',
        'ServiceUnavailable',
        'SlowDown',
        'ThrottlingException',
        'Throttling',
        'TooManyRequestsException',
        'RequestLimitExceeded',
        'ProvisionedThroughputExceededException',
        'InternalError',
        'InternalFailure',
        'InternalServerError',
    }

    TRANSIENT_EXCEPTIONS = (
        ConnectionError,
        TimeoutError,
        EndpointConnectionError,
        ConnectionClosedError,
        ReadTimeoutError,
    )

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> ConvergeError:
        """Handle an exception and convert to ConvergeError.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred

        Returns:
            Categorized ConvergeError
        """
        context = context or ErrorContext()

        if isinstance(error, ConvergeError):
            return error

        if isinstance(error, ClientError):
            return self._handle_aws_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return ConvergeError(
                message='AWS credentials for the state backend are missing or incomplete',
                category=ErrorCategory.CREDENTIAL,
                severity=ErrorSeverity.CRITICAL,
                context=context,
                cause=error,
                suggestions=[
                    'Configure AWS credentials using: aws configure',
                    'Set backend.profile in converge.yaml',
                ]
            )

        if isinstance(error, self.TRANSIENT_EXCEPTIONS):
            return StoreUnavailable(
                f'State backend unreachable: {error}',
                context=context,
                cause=error
            )

        return StateError(
            str(error),
            context=context,
            cause=error,
            suggestions=['Check logs for more details']
        )

    def _handle_aws_error(self, error: ClientError, context: ErrorContext) -> ConvergeError:
        """Handle AWS ClientError."""
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')
        error_message = error.response.get('Error', {}).get('Message', str(error))
        status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode', 0)
        context.request_id = error.response.get('ResponseMetadata', {}).get('RequestId')

        if error_code in self.TRANSIENT_ERROR_CODES or status >= 500:
            return StoreUnavailable(
                f"State backend unavailable ({error_code}): {error_message}",
                context=context,
                cause=error
            )

        return StateError(
            f"State backend error ({error_code}): {error_message}",
            context=context,
            cause=error,
            suggestions=[
                'Check that the state bucket and lock table exist',
                'Verify IAM permissions for the state backend',
            ]
        )


# Global error handler instance
error_handler = ErrorHandler()
