"""Resilience gateway: circuit breaking, timeout and retry for external calls.

Every call to an unreliable dependency (reputation scanner, remote ledger)
goes through ResilienceGateway.call(). The gateway owns one circuit breaker
per dependency key, applies a hard timeout to every attempt and, when a
RetryConfig is given, retries with exponential backoff.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

from scanguard.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerManager,
    CircuitBreakerState,
)
from scanguard.config import GuardConfig
from scanguard.config.defaults import GATEWAY_CALL_TIMEOUT_SECONDS
from scanguard.errors import CircuitOpen, GatewayTimeout
from scanguard.retry import RetryConfig, RetryStats, calculate_backoff, is_retryable

logger = logging.getLogger(__name__)


class ResilienceGateway:
    """Uniform wrapper for calls to unreliable dependencies."""

    def __init__(
        self,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        call_timeout: float = GATEWAY_CALL_TIMEOUT_SECONDS,
    ):
        self.call_timeout = call_timeout
        self._breakers = CircuitBreakerManager(breaker_config)

    @classmethod
    def from_config(cls, config: GuardConfig) -> "ResilienceGateway":
        return cls(
            breaker_config=CircuitBreakerConfig(
                failure_threshold=config.failure_threshold,
                reset_timeout=config.reset_timeout,
            ),
            call_timeout=config.call_timeout,
        )

    def breaker(self, dependency_key: str) -> CircuitBreaker:
        return self._breakers.get_breaker(dependency_key)

    async def call(
        self,
        dependency_key: str,
        func: Callable[..., Any],
        *args: Any,
        timeout: Optional[float] = None,
        retry: Optional[RetryConfig] = None,
        **kwargs: Any,
    ) -> Any:
        """
        Execute func through the dependency's breaker with a hard timeout.

        Args:
            dependency_key: Breaker name, e.g. "remoteLedger"
            func: Async or sync callable
            *args: Positional arguments for func
            timeout: Per-call timeout override in seconds
            retry: Retry policy; None means a single attempt
            **kwargs: Keyword arguments for func

        Returns:
            Result of func(*args, **kwargs)

        Raises:
            CircuitOpen: The breaker rejected the call without attempting it
            GatewayTimeout: The attempt exceeded its timeout
            Exception: Whatever func raised on its last attempt
        """
        breaker = self.breaker(dependency_key)
        timeout = self.call_timeout if timeout is None else timeout
        stats = RetryStats()

        while True:
            stats.attempts += 1
            try:
                return await self._attempt(breaker, func, args, kwargs, timeout)
            except CircuitOpen:
                raise
            except Exception as e:
                stats.last_error = e
                if (
                    retry is None
                    or breaker.is_ignored(e)
                    or stats.attempts >= retry.max_attempts
                    or not is_retryable(e, retry)
                ):
                    raise

                delay = calculate_backoff(stats.attempts - 1, retry)
                stats.total_delay += delay
                logger.debug(
                    f"Retrying '{dependency_key}' in {delay:.2f}s "
                    f"(attempt {stats.attempts + 1}/{retry.max_attempts}): {e}"
                )
                if delay > 0:
                    await asyncio.sleep(delay)

    async def _attempt(
        self,
        breaker: CircuitBreaker,
        func: Callable[..., Any],
        args: tuple,
        kwargs: dict,
        timeout: float,
    ) -> Any:
        breaker.before_call()
        try:
            async with asyncio.timeout(timeout):
                result = func(*args, **kwargs)
                if inspect.isawaitable(result):
                    result = await result
        except TimeoutError:
            breaker.record_failure()
            raise GatewayTimeout(breaker.name, timeout) from None
        except asyncio.CancelledError:
            breaker.release_probe()
            raise
        except Exception as e:
            if breaker.is_ignored(e):
                breaker.record_success()
            else:
                breaker.record_failure()
            raise

        breaker.record_success()
        return result

    def is_available(self, dependency_key: str) -> bool:
        """Whether a call to the dependency would currently be attempted."""
        return self.breaker(dependency_key).is_available

    def get_state(self, dependency_key: str) -> CircuitBreakerState:
        return self.breaker(dependency_key).snapshot()

    def get_all_status(self) -> dict:
        return self._breakers.get_all_status()

    def get_availability(self) -> dict[str, bool]:
        return {name: self.is_available(name) for name in self._breakers.names()}

    def reset(self, dependency_key: Optional[str] = None) -> None:
        """Reset one breaker, or all of them."""
        if dependency_key is None:
            self._breakers.reset_all()
        else:
            self.breaker(dependency_key).reset()
