"""Shared utilities for configuration, logging, retries and time budgets"""

from ctsync.utils.deadline import Deadline
from ctsync.utils.retry import exponential_backoff_retry, is_retryable

__all__ = ["Deadline", "exponential_backoff_retry", "is_retryable"]
