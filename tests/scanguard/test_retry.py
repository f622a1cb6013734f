"""Tests for retry.py module."""

import pytest

from scanguard.errors import GatewayTimeout, ScannerError, ValidationError
from scanguard.retry import RetryConfig, RetryStats, calculate_backoff, is_retryable


class TestRetryConfig:
    """Tests for RetryConfig class."""

    def test_default_config(self):
        """Test default configuration."""
        config = RetryConfig()

        assert config.max_attempts == 3
        assert config.base_delay == 1.0
        assert config.max_delay == 60.0
        assert 429 in config.retryable_status_codes

    def test_for_scanner(self):
        """Test scanner retry budget is short."""
        config = RetryConfig.for_scanner()

        assert config.max_attempts == 2
        assert config.base_delay == 0.5


class TestRetryStats:
    """Tests for RetryStats dataclass."""

    def test_defaults(self):
        """Test RetryStats starts empty."""
        stats = RetryStats()

        assert stats.attempts == 0
        assert stats.total_delay == 0.0
        assert stats.last_error is None


class TestCalculateBackoff:
    """Tests for calculate_backoff function."""

    def test_exponential_growth(self):
        """Test delay doubles per attempt without jitter."""
        config = RetryConfig(base_delay=1.0, jitter=0.0)

        assert calculate_backoff(0, config) == 1.0
        assert calculate_backoff(1, config) == 2.0
        assert calculate_backoff(3, config) == 8.0

    def test_capped_at_max_delay(self):
        """Test delay never exceeds max_delay."""
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=0.0)

        assert calculate_backoff(10, config) == 5.0

    def test_jitter_bounds(self):
        """Test jitter stays within the configured fraction."""
        config = RetryConfig(base_delay=10.0, jitter=0.1)

        for _ in range(50):
            delay = calculate_backoff(0, config)
            assert 9.0 <= delay <= 11.0


class TestIsRetryable:
    """Tests for is_retryable function."""

    @pytest.mark.parametrize("error", [
        ConnectionError("reset"),
        TimeoutError(),
        GatewayTimeout("remoteLedger", 10.0),
        OSError("network unreachable"),
    ])
    def test_retryable_exceptions(self, error):
        """Test transport failures are retryable."""
        assert is_retryable(error, RetryConfig())

    def test_status_codes(self):
        """Test status codes decide for errors that carry one."""
        config = RetryConfig()

        assert is_retryable(ScannerError("rate limited", status_code=429), config)
        assert is_retryable(ScannerError("bad gateway", status_code=502), config)
        assert not is_retryable(ScannerError("forbidden", status_code=403), config)

    def test_validation_not_retryable(self):
        """Test validation errors are not retried."""
        assert not is_retryable(ValidationError("bad vote"), RetryConfig())
