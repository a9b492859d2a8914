"""Utility modules for logging, errors and retries."""

from converge.utils.retry import RetryStrategy, with_retry
from converge.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    ConvergeError,
    ConfigurationError,
    GraphError,
    CycleError,
    UnresolvedReferenceError,
    StateError,
    StateNotFoundError,
    VersionConflict,
    StoreUnavailable,
    LockError,
    AlreadyLocked,
    InvalidToken,
    LockNotFound,
    HighRiskPlanError,
    ProviderError,
    ExecutionError,
    ActionFailed,
    ActionTimedOut,
    ErrorHandler,
    error_handler
)
from converge.utils.logging import get_logger, setup_logging, LogContext

__all__ = [
    # Retry
    'RetryStrategy',
    'with_retry',

    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'ConvergeError',
    'ConfigurationError',
    'GraphError',
    'CycleError',
    'UnresolvedReferenceError',
    'StateError',
    'StateNotFoundError',
    'VersionConflict',
    'StoreUnavailable',
    'LockError',
    'AlreadyLocked',
    'InvalidToken',
    'LockNotFound',
    'HighRiskPlanError',
    'ProviderError',
    'ExecutionError',
    'ActionFailed',
    'ActionTimedOut',
    'ErrorHandler',
    'error_handler',

    # Logging
    'get_logger',
    'setup_logging',
    'LogContext',
]
