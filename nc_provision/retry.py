"""
Retry utilities for rate-limited Nextcloud requests.

This module provides the retry loop used around mutating OCS calls together with
the configurable check that decides whether a response was rate limited.
"""

import time
import logging
from typing import Callable, Any, Iterable, Tuple, Type, Optional

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """Base exception for errors that should trigger retries."""
    pass


class RateLimitedError(RetryableError):
    """Raised when the server asks the client to slow down."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (RetryableError,),
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> Any:
    """
    Call a function with retry logic.

    Args:
        func: Function to call
        args: Positional arguments for function
        kwargs: Keyword arguments for function
        max_attempts: Maximum number of attempts, including the first call
        delay: Initial delay between retries
        backoff: Delay multiplier for exponential backoff
        exceptions: Exception types to catch and retry on
        on_retry: Optional callback for retry events

    Returns:
        Function result

    Raises:
        MaxRetriesExceeded: If all retry attempts fail
    """
    if kwargs is None:
        kwargs = {}
    max_attempts = max(1, max_attempts)

    last_exception = None
    current_delay = delay

    for attempt in range(max_attempts):
        try:
            result = func(*args, **kwargs)
            if attempt > 0:
                logger.info(f"Operation succeeded on attempt {attempt + 1}")
            return result

        except exceptions as e:
            last_exception = e

            # Don't sleep after the last attempt
            if attempt == max_attempts - 1:
                break

            logger.debug(f"Attempt {attempt + 1} failed with {type(e).__name__}: {e}")
            logger.debug(f"Retrying in {current_delay:.1f} seconds...")

            if on_retry:
                try:
                    on_retry(attempt + 1, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")

            time.sleep(current_delay)
            current_delay *= backoff

    raise MaxRetriesExceeded(max_attempts, last_exception)


def is_rate_limited(
    http_status: Optional[int],
    ocs_status_code: Optional[int],
    message: Optional[str],
    status_codes: Iterable[int] = (429,),
    patterns: Iterable[str] = ('too many requests', 'rate limit')
) -> bool:
    """
    Determine if a server response indicates rate limiting.

    Nextcloud's brute force protection answers with HTTP 429; some proxies and
    apps report it only in the OCS status code or message instead.

    Args:
        http_status: HTTP status code of the response
        ocs_status_code: OCS meta/statuscode, if the body could be parsed
        message: OCS meta/message or HTTP reason
        status_codes: Status codes treated as rate limiting
        patterns: Lower-case message fragments treated as rate limiting

    Returns:
        True if the request should be retried after a pause
    """
    codes = set(status_codes)
    if http_status in codes or ocs_status_code in codes:
        return True

    if message:
        error_msg = message.lower()
        for pattern in patterns:
            if pattern in error_msg:
                return True

    return False


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """
    Create a standard retry callback for logging retry attempts.

    Args:
        operation_name: Name of the operation being retried

    Returns:
        Callback function for retry events
    """
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} was rate limited on attempt {attempt}, "
                       f"retrying: {exception}")

    return on_retry
