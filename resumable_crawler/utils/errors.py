"""
Custom exception classes and error handling utilities.
"""

import time
import traceback
from functools import wraps
from typing import Optional, Dict, Any


class ResumableCrawlerError(Exception):
    """Base exception for all resumable crawler errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class CrawlerError(ResumableCrawlerError):
    """Exception raised during crawling operations."""
    pass


class TransientFetchError(CrawlerError):
    """Retryable remote failure (network error, 5xx response)."""
    pass


class RateLimitedError(TransientFetchError):
    """The remote source explicitly asked us to slow down (HTTP 429)."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message, details)
        self.retry_after = retry_after


class ContentParseError(CrawlerError):
    """Remote content could not be turned into a record. Not retried."""
    pass


class OutputError(ResumableCrawlerError):
    """Exception raised when a record cannot be written to output."""
    pass


class ConfigurationError(ResumableCrawlerError):
    """Exception raised for configuration-related issues."""
    pass


class ValidationError(ResumableCrawlerError):
    """Exception raised for data validation failures."""
    pass


class StateManagementError(ResumableCrawlerError):
    """Exception raised during state management operations."""
    pass


def handle_error(
    error: Exception,
    logger,
    context: Optional[Dict[str, Any]] = None,
    reraise: bool = True
) -> None:
    """
    Handle and log errors with context information.

    Args:
        error: The exception that occurred
        logger: Logger instance to use for logging
        context: Additional context information
        reraise: Whether to reraise the exception after logging
    """
    error_context = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        **(context or {})
    }

    if isinstance(error, ResumableCrawlerError):
        error_context.update(error.details)

    logger.error(f"Error occurred: {error_context}")
    logger.debug(traceback.format_exc())

    if reraise:
        raise error


def retry_on_error(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,)
):
    """
    Decorator for retrying functions on specific exceptions.

    Args:
        max_attempts: Maximum number of retry attempts
        delay: Initial delay between retries in seconds
        backoff_factor: Factor to multiply delay by after each attempt
        exceptions: Tuple of exception types to retry on
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            current_delay = delay

            for attempt in range(max_attempts):
                try:
                    return func(*args, **kwargs)
                except exceptions:
                    if attempt >= max_attempts - 1:
                        raise
                    time.sleep(current_delay)
                    current_delay *= backoff_factor

        return wrapper
    return decorator
