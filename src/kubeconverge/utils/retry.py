"""Retry strategy with exponential backoff for transient failures."""

import time
import random
from typing import Callable, TypeVar, Optional
from functools import wraps
from kubeconverge.utils.errors import (
    Classification,
    ErrorContext,
    PermanentProviderError,
    ReconcileError,
    classify_exception,
)
from kubeconverge.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

RetryCallback = Callable[[int, ReconcileError, float], None]


class RetryStrategy:
    """Retries operations whose failures classify as transient."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        sleep: Callable[[float], None] = time.sleep
    ):
        """Initialize retry strategy.

        Args:
            max_retries: Maximum number of retry attempts after the first call
            base_delay: Base delay in seconds for first retry
            max_delay: Maximum delay in seconds between retries
            exponential_base: Base for exponential backoff calculation
            jitter: Whether to add random jitter to delay
            sleep: Sleep function, replaceable in tests
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.sleep = sleep

    def should_retry(self, error: ReconcileError, attempt: int) -> bool:
        """Determine if an error should trigger a retry.

        Args:
            error: The classified error
            attempt: Current attempt number (0-indexed)
        """
        if attempt >= self.max_retries:
            return False
        return error.classification == Classification.TRANSIENT

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds before next retry
        """
        delay = min(
            self.base_delay * (self.exponential_base ** attempt),
            self.max_delay
        )

        # Up to 10% jitter so racing operators do not retry in lockstep
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)

        return delay

    def execute_with_retry(
        self,
        func: Callable[..., T],
        *args,
        context: Optional[ErrorContext] = None,
        on_retry: Optional[RetryCallback] = None,
        **kwargs
    ) -> T:
        """Execute a function, retrying transient failures.

        Transient failures that survive every retry are escalated to
        PermanentProviderError carrying the last underlying cause.

        Raises:
            ReconcileError: Classified failure
        """
        for attempt in range(self.max_retries + 1):
            try:
                result = func(*args, **kwargs)

                if attempt > 0:
                    logger.info(f"Operation succeeded after {attempt} retries")

                return result

            except Exception as e:
                error = classify_exception(e, context)

                if not self.should_retry(error, attempt):
                    if error.classification == Classification.TRANSIENT:
                        logger.error(f"All {self.max_retries} retry attempts exhausted: {error.message}")
                        raise PermanentProviderError(
                            f"Gave up after {attempt + 1} attempts: {error.message}",
                            context=error.context,
                            cause=error.cause or error
                        ) from e
                    logger.debug(f"Error is not retryable: {error.message}")
                    if error is e:
                        raise
                    raise error from e

                delay = self.get_delay(attempt)
                logger.warning(
                    f"Attempt {attempt + 1}/{self.max_retries + 1} failed: {error.message}. "
                    f"Retrying in {delay:.2f}s..."
                )
                if on_retry:
                    on_retry(attempt + 1, error, delay)

                self.sleep(delay)

        raise AssertionError("unreachable")


def with_retry(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    jitter: bool = True
):
    """Decorator to add retry logic to a function.

    Example:
        @with_retry(max_retries=3, base_delay=2.0)
        def describe_cluster(client, name):
            return client.describe_cluster(name=name)
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            strategy = RetryStrategy(
                max_retries=max_retries,
                base_delay=base_delay,
                max_delay=max_delay,
                exponential_base=exponential_base,
                jitter=jitter
            )
            return strategy.execute_with_retry(func, *args, **kwargs)

        return wrapper

    return decorator
