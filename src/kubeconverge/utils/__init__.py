"""Utility modules for logging, errors, retries and AWS client management."""

from kubeconverge.utils.aws_client import AWSClientManager, AWSCredentials
from kubeconverge.utils.retry import RetryStrategy, with_retry
from kubeconverge.utils.errors import (
    Classification,
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    ReconcileError,
    ConfigurationError,
    ValidationError,
    DependencyError,
    CycleError,
    StateError,
    StaleWriteError,
    StalePlanError,
    LockError,
    LockBusyError,
    LockLostError,
    ProviderError,
    TransientProviderError,
    PermanentProviderError,
    ResourceNotFoundError,
    ErrorHandler,
    classify_exception,
    error_handler,
)
from kubeconverge.utils.logging import get_logger, setup_logging

__all__ = [
    # AWS Client
    'AWSClientManager',
    'AWSCredentials',

    # Retry
    'RetryStrategy',
    'with_retry',

    # Errors
    'Classification',
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'ReconcileError',
    'ConfigurationError',
    'ValidationError',
    'DependencyError',
    'CycleError',
    'StateError',
    'StaleWriteError',
    'StalePlanError',
    'LockError',
    'LockBusyError',
    'LockLostError',
    'ProviderError',
    'TransientProviderError',
    'PermanentProviderError',
    'ResourceNotFoundError',
    'ErrorHandler',
    'classify_exception',
    'error_handler',

    # Logging
    'get_logger',
    'setup_logging',
]
