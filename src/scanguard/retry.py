"""
Retry policy with exponential backoff for gateway calls.

Features:
- Configurable retry policies
- Exponential backoff with jitter
- Retryable error classification

The policy is only consumed by ResilienceGateway so every external call
gets the same treatment.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Optional

from scanguard.config.defaults import (
    RETRY_BACKOFF_MULTIPLIER,
    RETRY_BASE_DELAY,
    RETRY_JITTER_FACTOR,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_DELAY,
    SCANNER_RETRY_BASE_DELAY,
    SCANNER_RETRY_MAX_ATTEMPTS,
)
from scanguard.errors import GatewayTimeout


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = RETRY_MAX_ATTEMPTS
    base_delay: float = RETRY_BASE_DELAY
    max_delay: float = RETRY_MAX_DELAY
    backoff_multiplier: float = RETRY_BACKOFF_MULTIPLIER
    jitter: float = RETRY_JITTER_FACTOR  # 10% jitter
    retryable_exceptions: tuple = (
        ConnectionError,
        TimeoutError,
        asyncio.TimeoutError,
        GatewayTimeout,
        OSError,
    )
    retryable_status_codes: tuple = (429, 500, 502, 503, 504)

    @classmethod
    def for_scanner(cls) -> "RetryConfig":
        """Short retry budget for reputation scanner lookups."""
        return cls(
            max_attempts=SCANNER_RETRY_MAX_ATTEMPTS,
            base_delay=SCANNER_RETRY_BASE_DELAY,
        )


@dataclass
class RetryStats:
    """Statistics for retry attempts."""
    attempts: int = 0
    total_delay: float = 0.0
    last_error: Optional[Exception] = None


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """
    Calculate delay in seconds for given attempt with exponential backoff and jitter.

    Formula: min(base * (multiplier ^ attempt), max_delay) +/- jitter
    """
    delay = config.base_delay * (config.backoff_multiplier ** attempt)
    delay = min(delay, config.max_delay)

    jitter_range = delay * config.jitter
    delay += random.uniform(-jitter_range, jitter_range)

    return max(0.0, delay)


def is_retryable(error: Exception, config: RetryConfig) -> bool:
    """Check if error is retryable."""
    if isinstance(error, config.retryable_exceptions):
        return True

    status_code = getattr(error, "status_code", None)
    if status_code is not None:
        return status_code in config.retryable_status_codes

    error_str = str(error).lower()
    retryable_keywords = ["timeout", "connection", "network", "temporarily"]
    return any(kw in error_str for kw in retryable_keywords)
