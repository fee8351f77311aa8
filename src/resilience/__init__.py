"""Resilience Patterns.

Retry with backoff for calls against the external platform.
"""

from .config import (
    RetryStrategy,
    RetryConfig,
)
from .retry import (
    MaxRetriesExceeded,
    call_with_retry,
    retry,
)

__all__ = [
    # Config / Enums
    "RetryStrategy",
    "RetryConfig",
    # Retry
    "MaxRetriesExceeded",
    "call_with_retry",
    "retry",
]
