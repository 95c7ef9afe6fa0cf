"""
Bounded retry with linear backoff for network calls and process launches.
"""

import logging
import time
from typing import Callable, TypeVar

from clipcutter.core.constants import (
    RETRY_MAX_ATTEMPTS, RETRY_BASE_DELAY_SEC, RETRY_CAP_DELAY_SEC,
)
from clipcutter.core.error_codes import JobError, RetryExhausted
from clipcutter.core.process_runner import CancelToken

logger = logging.getLogger(__name__)

T = TypeVar("T")


def default_is_retryable(exc: BaseException) -> bool:
    """JobErrors carry their own verdict; anything else is worth another try."""
    if isinstance(exc, JobError):
        return exc.retryable
    return True


class RetryPolicy:
    """
    Run an operation up to max_attempts times, sleeping
    min(base_delay * attempt, cap_delay) between attempts.

    Errors the classifier rejects propagate unchanged on first occurrence.
    When every attempt fails, RetryExhausted is raised from the last error.
    """

    def __init__(self, max_attempts: int = RETRY_MAX_ATTEMPTS,
                 base_delay: float = RETRY_BASE_DELAY_SEC,
                 cap_delay: float = RETRY_CAP_DELAY_SEC,
                 is_retryable: Callable[[BaseException], bool] | None = None,
                 name: str = "operation"):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.cap_delay = cap_delay
        self.is_retryable = is_retryable or default_is_retryable
        self.name = name

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * attempt, self.cap_delay)

    def call(self, operation: Callable[..., T], *args,
             cancel_token: CancelToken | None = None, **kwargs) -> T:
        last_error: Exception | None = None

        for attempt in range(1, self.max_attempts + 1):
            if cancel_token:
                cancel_token.raise_if_cancelled()
            try:
                result = operation(*args, **kwargs)
                if attempt > 1:
                    logger.info("%s succeeded on attempt %d", self.name, attempt)
                return result
            except Exception as e:
                if not self.is_retryable(e):
                    raise
                last_error = e
                logger.warning("%s failed on attempt %d/%d: %s",
                               self.name, attempt, self.max_attempts, e)

            if attempt < self.max_attempts:
                delay = self.delay_for(attempt)
                logger.info("Retrying %s in %.1fs", self.name, delay)
                if cancel_token:
                    if cancel_token.wait(delay):
                        cancel_token.raise_if_cancelled()
                else:
                    time.sleep(delay)

        logger.error("%s failed after %d attempts", self.name, self.max_attempts)
        raise RetryExhausted(last_error, self.max_attempts) from last_error


def retry(max_attempts: int, operation: Callable[[], T], **policy_kwargs) -> T:
    """Shorthand for RetryPolicy(max_attempts, ...).call(operation)."""
    return RetryPolicy(max_attempts=max_attempts, **policy_kwargs).call(operation)
