"""Retry utilities for registry and daemon operations with exponential backoff"""

import logging
import random
import time
from enum import Enum
from functools import wraps
from typing import Callable, List, Optional, Tuple, TypeVar

from cleaner_utils.error_utils import ActionableError, ErrorCategory, has_status_code

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryableErrorType(Enum):
    """Types of errors that should trigger retries"""

    NETWORK = "network"  # Connection errors, timeouts
    TEMPORARY = "temporary"  # 5xx errors, rate limiting
    PERMANENT = "permanent"  # 4xx errors (except rate limiting), auth failures


NETWORK_INDICATORS = (
    "connection",
    "timeout",
    "timed out",
    "network",
    "dns",
    "refused",
    "unreachable",
    "reset",
    "broken pipe",
    "no route to host",
    "temporary failure",
)

PERMANENT_CATEGORIES = (ErrorCategory.AUTHENTICATION, ErrorCategory.PERMISSION, ErrorCategory.CONFIGURATION)


def is_retryable_error(error: Exception, error_message: str = "") -> Tuple[bool, RetryableErrorType]:
    """Determine if an error is retryable and what type it is

    Args:
        error: The exception that occurred
        error_message: Optional error message string (e.g. subprocess stderr)

    Returns:
        Tuple of (is_retryable, error_type)
    """
    if isinstance(error, ActionableError) and error.category in PERMANENT_CATEGORIES:
        return False, RetryableErrorType.PERMANENT

    combined = f"{error} {error_message}".lower()

    # Missing images and auth failures won't fix themselves
    if has_status_code(combined, "404") or any(m in combined for m in ("manifest unknown", "not found", "no such image")):
        return False, RetryableErrorType.PERMANENT
    if has_status_code(combined, "401", "403") or "unauthorized" in combined or "forbidden" in combined:
        return False, RetryableErrorType.PERMANENT

    if any(indicator in combined for indicator in NETWORK_INDICATORS):
        return True, RetryableErrorType.NETWORK

    if has_status_code(combined, "500", "502", "503", "504"):
        return True, RetryableErrorType.TEMPORARY

    if has_status_code(combined, "429") or "rate limit" in combined or "too many requests" in combined:
        return True, RetryableErrorType.TEMPORARY

    # Unknown errors default to retryable; deletes are idempotent
    return True, RetryableErrorType.TEMPORARY


def compute_delay(attempt: int, initial_delay: float, max_delay: float, exponential_base: float, jitter: bool) -> float:
    """Backoff delay for a zero-based attempt number"""
    delay = min(initial_delay * (exponential_base**attempt), max_delay)
    if jitter:
        jitter_amount = delay * 0.1  # 10% jitter
        delay = max(0.1, delay + random.uniform(-jitter_amount, jitter_amount))
    return delay


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    retryable_errors: Optional[List[RetryableErrorType]] = None,
) -> Callable:
    """Decorator for retrying functions with exponential backoff

    Args:
        max_retries: Maximum number of retry attempts (default: 3)
        initial_delay: Initial delay in seconds before first retry (default: 1.0)
        max_delay: Maximum delay between retries in seconds (default: 60.0)
        exponential_base: Base for exponential backoff (default: 2.0)
        jitter: Add random jitter to prevent thundering herd (default: True)
        retryable_errors: List of error types to retry (None = retry all retryable types)

    Returns:
        Decorator function
    """
    if retryable_errors is None:
        retryable_errors = [RetryableErrorType.NETWORK, RetryableErrorType.TEMPORARY]

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            for attempt in range(max_retries + 1):
                try:
                    result = func(*args, **kwargs)
                    if attempt > 0:
                        logger.info(f"{func.__name__} succeeded on attempt {attempt + 1}")
                    return result
                except Exception as e:
                    error_message = getattr(e, "stderr", None) or ""
                    is_retryable, error_type = is_retryable_error(e, error_message)

                    if not is_retryable or error_type not in retryable_errors:
                        logger.debug(f"{func.__name__} failed with non-retryable error ({error_type.value}): {e}")
                        raise

                    if attempt >= max_retries:
                        logger.error(
                            f"{func.__name__} failed after {max_retries + 1} attempts. "
                            f"Last error ({error_type.value}): {e}"
                        )
                        raise

                    delay = compute_delay(attempt, initial_delay, max_delay, exponential_base, jitter)
                    logger.warning(
                        f"{func.__name__} failed on attempt {attempt + 1}/{max_retries + 1} "
                        f"({error_type.value} error: {e}). "
                        f"Retrying in {delay:.2f}s..."
                    )
                    time.sleep(delay)

            raise RuntimeError(f"{func.__name__} exhausted retries")

        return wrapper

    return decorator


def retry_from_config(config) -> Callable:
    """``retry_with_backoff`` configured from the ``retry`` section of config.yaml"""
    return retry_with_backoff(
        max_retries=config.get_max_retries(),
        initial_delay=config.get_retry_initial_delay(),
        max_delay=config.get_retry_max_delay(),
        exponential_base=config.get_retry_exponential_base(),
        jitter=config.get_retry_jitter(),
    )
