"""Error taxonomy for planning, locking, state and provider operations."""

from typing import Optional, Dict, Any, List, Tuple
from enum import Enum
from dataclasses import dataclass, asdict
from botocore.exceptions import (
    ClientError,
    NoCredentialsError,
    PartialCredentialsError,
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
)


class ErrorCategory(Enum):
    """Categories of errors that can occur during reconciliation."""
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    DEPENDENCY = "dependency"
    STATE = "state"
    CONCURRENCY = "concurrency"
    LOCK = "lock"
    PROVIDER = "provider"
    CREDENTIAL = "credential"
    NETWORK = "network"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Reconciliation cannot continue
    ERROR = "error"  # Resource failed but independent branches continue
    WARNING = "warning"
    INFO = "info"


class Classification(Enum):
    """Whether retrying the failed operation can help."""
    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass
class ErrorContext:
    """Context information for an error."""
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    operation: Optional[str] = None
    aws_service: Optional[str] = None
    aws_operation: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


class ReconcileError(Exception):
    """Base exception for all reconciler errors."""

    classification = Classification.PERMANENT

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[BaseException] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize reconciler error.

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
        """Convert error to a user-facing message.

        Returns:
            Formatted error message for display to user
        """
        lines = [f"{self.severity.value.upper()} [{self.classification.value}]: {self.message}"]

        if self.context.resource_id:
            lines.append(f"   Resource: {self.context.resource_id}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")
        if self.cause:
            lines.append(f"   Cause: {self.cause}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {
            'type': type(self).__name__,
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'classification': self.classification.value,
            'context': asdict(self.context),
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class ConfigurationError(ReconcileError):
    """Error in the declared configuration."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ValidationError(ReconcileError):
    """Declared values failed validation."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class DependencyError(ReconcileError):
    """A resource depends on an address that is not declared."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.DEPENDENCY,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class CycleError(DependencyError):
    """The resource graph contains a dependency cycle."""

    def __init__(self, cycle: List[str], edges: Optional[List[Tuple[str, str]]] = None, **kwargs):
        self.cycle = list(cycle)
        if edges is None:
            edges = list(zip(self.cycle, self.cycle[1:]))
        self.edges = edges
        path = " -> ".join(self.cycle)
        kwargs.setdefault('context', ErrorContext(resource_id=self.cycle[0] if self.cycle else None))
        super().__init__(f"Circular dependency detected: {path}", **kwargs)


class StateError(ReconcileError):
    """State document could not be read, verified or written."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )
        # Store outages keep the classification of the provider error behind them
        if isinstance(self.cause, ReconcileError):
            self.classification = self.cause.classification


class StaleWriteError(ReconcileError):
    """Stored serial advanced past the serial the writer expected."""

    def __init__(self, expected_serial: int, actual_serial: int, **kwargs):
        self.expected_serial = expected_serial
        self.actual_serial = actual_serial
        kwargs.setdefault('suggestions', ['Re-read the state and compute a new plan'])
        super().__init__(
            f"State write rejected: expected serial {expected_serial}, stored serial is {actual_serial}",
            category=ErrorCategory.CONCURRENCY,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class StalePlanError(ReconcileError):
    """Plan was computed against a different state document."""

    def __init__(self, plan_serial: int, state_serial: int, reason: Optional[str] = None, **kwargs):
        self.plan_serial = plan_serial
        self.state_serial = state_serial
        message = reason or (
            f"Plan was computed against serial {plan_serial} but state is at serial {state_serial}"
        )
        kwargs.setdefault('suggestions', ['Run plan again and review the new changes'])
        super().__init__(
            message,
            category=ErrorCategory.CONCURRENCY,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class LockError(ReconcileError):
    """Base class for lock failures."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.LOCK)
        kwargs.setdefault('severity', ErrorSeverity.CRITICAL)
        super().__init__(message, **kwargs)


class LockBusyError(LockError):
    """Another operator holds a valid lease on the key."""

    classification = Classification.TRANSIENT

    def __init__(self, key: str, holder: Optional[str] = None, expires_at: Optional[float] = None, **kwargs):
        self.key = key
        self.holder = holder
        self.expires_at = expires_at
        message = f"Lock '{key}' is held"
        if holder:
            message += f" by {holder}"
        kwargs.setdefault('suggestions', [
            'Wait for the other operation to finish and retry',
            'If the holder crashed, the lock becomes reclaimable once its lease expires',
        ])
        super().__init__(message, **kwargs)


class LockLostError(LockError):
    """The lease expired or was taken over before it could be renewed."""

    def __init__(self, key: str, holder: str, **kwargs):
        self.key = key
        self.holder = holder
        super().__init__(f"Lock '{key}' held by {holder} was lost", **kwargs)


class ProviderError(ReconcileError):
    """Failure raised by a provider adapter."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.PROVIDER)
        kwargs.setdefault('severity', ErrorSeverity.ERROR)
        super().__init__(message, **kwargs)


class TransientProviderError(ProviderError):
    """Network, timeout or throttling failure; safe to retry."""

    classification = Classification.TRANSIENT


class PermanentProviderError(ProviderError):
    """Validation, permission or conflict failure; needs an operator."""

    classification = Classification.PERMANENT


class ResourceNotFoundError(ProviderError):
    """Provider has no object with the requested identifier."""

    def __init__(self, provider_id: str, **kwargs):
        self.provider_id = provider_id
        super().__init__(f"Resource not found: {provider_id}", **kwargs)


class ErrorHandler:
    """Maps AWS and network exceptions onto the reconciler taxonomy."""

    TRANSIENT_ERROR_CODES = {
        'RequestTimeout',
        'RequestTimeoutException',
        'ServiceUnavailable',
        'ThrottlingException',
        'Throttling',
        'TooManyRequestsException',
        'RequestLimitExceeded',
        'RequestThrottled',
        'SlowDown',
        'ProvisionedThroughputExceededException',
        'InternalError',
        'InternalFailure',
        'ServiceException',
    }

    # Codes that mean the caller must change something first
    AWS_ERROR_SUGGESTIONS = {
        'AccessDenied': [
            'Check IAM policies attached to your user/role',
            'Verify you have the required permissions for this operation',
        ],
        'UnauthorizedOperation': [
            'Add the required IAM permission for this operation',
            'Verify you are operating in the correct AWS region',
        ],
        'ValidationException': [
            'Review the error message for specific validation failures',
            'Verify all required attributes are declared',
        ],
        'InvalidParameterException': [
            'Check attribute format and constraints',
        ],
        'ResourceInUseException': [
            'Check for dependents still using this resource',
        ],
        'LimitExceededException': [
            'Request a service limit increase',
            'Clean up unused resources',
        ],
    }

    NETWORK_EXCEPTIONS = (
        ConnectionError,
        TimeoutError,
        EndpointConnectionError,
        ConnectTimeoutError,
        ReadTimeoutError,
    )

    def classify(
        self,
        error: BaseException,
        context: Optional[ErrorContext] = None
    ) -> ReconcileError:
        """Convert an arbitrary exception into a classified ReconcileError.

        Args:
            error: The exception to classify
            context: Where the error occurred

        Returns:
            ReconcileError; provider failures become Transient or Permanent
        """
        context = context or ErrorContext()

        if isinstance(error, ReconcileError):
            if error.context.resource_id is None:
                error.context = context
            return error

        if isinstance(error, ClientError):
            return self._handle_aws_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return PermanentProviderError(
                f"AWS credentials unavailable: {error}",
                category=ErrorCategory.CREDENTIAL,
                context=context,
                cause=error,
                suggestions=[
                    'Configure AWS credentials using: aws configure',
                    'Specify a profile with --profile',
                ]
            )

        if isinstance(error, self.NETWORK_EXCEPTIONS):
            return TransientProviderError(
                f"Network error: {error}",
                category=ErrorCategory.NETWORK,
                context=context,
                cause=error
            )

        return PermanentProviderError(
            f"{type(error).__name__}: {error}",
            context=context,
            cause=error
        )

    def _handle_aws_error(self, error: ClientError, context: ErrorContext) -> ProviderError:
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')
        error_message = error.response.get('Error', {}).get('Message', str(error))
        context.request_id = error.response.get('ResponseMetadata', {}).get('RequestId')
        context.aws_operation = context.aws_operation or error.operation_name

        if error_code in self.TRANSIENT_ERROR_CODES:
            return TransientProviderError(
                f"AWS Error ({error_code}): {error_message}",
                context=context,
                cause=error
            )

        return PermanentProviderError(
            f"AWS Error ({error_code}): {error_message}",
            context=context,
            cause=error,
            suggestions=self.AWS_ERROR_SUGGESTIONS.get(error_code, [])
        )


error_handler = ErrorHandler()


def classify_exception(error: BaseException, context: Optional[ErrorContext] = None) -> ReconcileError:
    """Module-level shortcut for :meth:`ErrorHandler.classify`."""
    return error_handler.classify(error, context)
