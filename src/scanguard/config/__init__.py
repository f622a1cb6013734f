"""Runtime configuration for scanguard.

GuardConfig aggregates the tunables from defaults.py. Values can be
overridden through SCANGUARD_* environment variables (a .env file in the
working directory is loaded first).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from scanguard.config.defaults import (
    AUDIT_LOG_FILENAME,
    CACHE_DEFAULT_TTL_SECONDS,
    CACHE_EXTERNAL_TTL_SECONDS,
    CACHE_MAX_SIZE,
    CACHE_SWEEP_INTERVAL_SECONDS,
    CIRCUIT_BREAKER_FAILURE_THRESHOLD,
    CIRCUIT_BREAKER_RESET_TIMEOUT_SECONDS,
    GATEWAY_CALL_TIMEOUT_SECONDS,
    LOCAL_DB_FILENAME,
    QUEUE_DRAIN_INTERVAL_SECONDS,
    QUEUE_MAX_AGE_SECONDS,
    QUEUE_MAX_ATTEMPTS,
    VIRUSTOTAL_BASE_URL,
    VOTE_DECAY_WINDOW_SECONDS,
    VOTE_RATE_LIMIT_MAX_VOTES,
    VOTE_RATE_LIMIT_WINDOW_SECONDS,
)

ENV_PREFIX = "SCANGUARD_"


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(ENV_PREFIX + name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(ENV_PREFIX + name, str(default)))


@dataclass
class GuardConfig:
    """Top-level configuration.

    Attributes:
        data_dir: Directory for the durable local store and audit log.
        failure_threshold: Consecutive failures before a breaker opens.
        reset_timeout: Seconds a breaker stays OPEN before probing.
        call_timeout: Hard timeout applied to every gateway call.
        cache_ttl: Default TTL for cached ratings.
        external_ttl: TTL for cached external scan results.
        cache_max_size: Maximum cache entries before eviction.
        sweep_interval: Seconds between background cache sweeps.
        max_votes_per_window: Per-user vote budget inside the rate window.
        vote_window: Rate-limit sliding window in seconds.
        decay_window: Age at which a vote reaches its minimum weight.
        drain_interval: Seconds between background queue drains.
        queue_max_age: Age after which a queued mutation is dead-lettered.
        queue_max_attempts: Attempts after which a queued mutation is dead-lettered.
        virustotal_api_key: API key for the reputation scanner, if any.
        virustotal_base_url: Base URL for the reputation scanner.
    """

    data_dir: Path = Path(".scanguard")
    failure_threshold: int = CIRCUIT_BREAKER_FAILURE_THRESHOLD
    reset_timeout: float = CIRCUIT_BREAKER_RESET_TIMEOUT_SECONDS
    call_timeout: float = GATEWAY_CALL_TIMEOUT_SECONDS
    cache_ttl: float = CACHE_DEFAULT_TTL_SECONDS
    external_ttl: float = CACHE_EXTERNAL_TTL_SECONDS
    cache_max_size: int = CACHE_MAX_SIZE
    sweep_interval: float = CACHE_SWEEP_INTERVAL_SECONDS
    max_votes_per_window: int = VOTE_RATE_LIMIT_MAX_VOTES
    vote_window: float = VOTE_RATE_LIMIT_WINDOW_SECONDS
    decay_window: float = VOTE_DECAY_WINDOW_SECONDS
    drain_interval: float = QUEUE_DRAIN_INTERVAL_SECONDS
    queue_max_age: float = QUEUE_MAX_AGE_SECONDS
    queue_max_attempts: int = QUEUE_MAX_ATTEMPTS
    virustotal_api_key: Optional[str] = None
    virustotal_base_url: str = VIRUSTOTAL_BASE_URL

    @property
    def db_path(self) -> Path:
        return self.data_dir / LOCAL_DB_FILENAME

    @property
    def audit_path(self) -> Path:
        return self.data_dir / AUDIT_LOG_FILENAME

    @classmethod
    def from_env(cls, dotenv_path: Optional[Path] = None) -> "GuardConfig":
        """Create config from environment variables with defaults as fallbacks."""
        load_dotenv(dotenv_path=dotenv_path)
        return cls(
            data_dir=Path(os.environ.get(ENV_PREFIX + "DATA_DIR", ".scanguard")),
            failure_threshold=_env_int("FAILURE_THRESHOLD", CIRCUIT_BREAKER_FAILURE_THRESHOLD),
            reset_timeout=_env_float("RESET_TIMEOUT", CIRCUIT_BREAKER_RESET_TIMEOUT_SECONDS),
            call_timeout=_env_float("CALL_TIMEOUT", GATEWAY_CALL_TIMEOUT_SECONDS),
            cache_ttl=_env_float("CACHE_TTL", CACHE_DEFAULT_TTL_SECONDS),
            external_ttl=_env_float("EXTERNAL_TTL", CACHE_EXTERNAL_TTL_SECONDS),
            cache_max_size=_env_int("CACHE_MAX_SIZE", CACHE_MAX_SIZE),
            sweep_interval=_env_float("SWEEP_INTERVAL", CACHE_SWEEP_INTERVAL_SECONDS),
            max_votes_per_window=_env_int("MAX_VOTES_PER_WINDOW", VOTE_RATE_LIMIT_MAX_VOTES),
            vote_window=_env_float("VOTE_WINDOW", VOTE_RATE_LIMIT_WINDOW_SECONDS),
            decay_window=_env_float("DECAY_WINDOW", VOTE_DECAY_WINDOW_SECONDS),
            drain_interval=_env_float("DRAIN_INTERVAL", QUEUE_DRAIN_INTERVAL_SECONDS),
            queue_max_age=_env_float("QUEUE_MAX_AGE", QUEUE_MAX_AGE_SECONDS),
            queue_max_attempts=_env_int("QUEUE_MAX_ATTEMPTS", QUEUE_MAX_ATTEMPTS),
            virustotal_api_key=os.environ.get(ENV_PREFIX + "VIRUSTOTAL_API_KEY") or None,
            virustotal_base_url=os.environ.get(
                ENV_PREFIX + "VIRUSTOTAL_BASE_URL", VIRUSTOTAL_BASE_URL),
        )


__all__ = ["ENV_PREFIX", "GuardConfig"]
