"""Configuration for retry with backoff."""

from dataclasses import dataclass
from enum import Enum
from typing import Tuple, Type


class RetryStrategy(str, Enum):
    """Retry backoff strategies."""
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    CONSTANT = "constant"


# ── Default Constants ────────────────────────────────────────────────

DEFAULT_MAX_RETRIES = 2
DEFAULT_BASE_DELAY = 5.0  # seconds
DEFAULT_MAX_DELAY = 120.0  # seconds
DEFAULT_JITTER_MAX = 1.0  # seconds


@dataclass
class RetryConfig:
    """Configuration for retry logic.

    ``max_retries`` counts retries after the first attempt, so a call is
    made at most ``max_retries + 1`` times.
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    jitter_max: float = DEFAULT_JITTER_MAX
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    retryable_exceptions: Tuple[Type[Exception], ...] = (
        ConnectionError,
        TimeoutError,
        OSError,
    )

    @classmethod
    def for_attempts(cls, attempts: int, **kwargs) -> "RetryConfig":
        """Build a config from a total attempt budget (first try included)."""
        return cls(max_retries=max(0, attempts - 1), **kwargs)
