"""Default configuration values for scanguard.

This module centralizes all hard-coded magic numbers (thresholds, windows,
timeouts, sizes) into a single location. All modules should import these
constants instead of hard-coding values.

Usage:
    from scanguard.config.defaults import (
        CIRCUIT_BREAKER_FAILURE_THRESHOLD,
        CACHE_DEFAULT_TTL_SECONDS,
        VERDICT_BLEND_THRESHOLD,
    )
"""

from __future__ import annotations

# =============================================================================
# Dependency Keys
# =============================================================================

DEPENDENCY_REPUTATION_SCANNER = "reputationScanner"
DEPENDENCY_REMOTE_LEDGER = "remoteLedger"


# =============================================================================
# Circuit Breaker / Gateway Defaults
# =============================================================================

CIRCUIT_BREAKER_FAILURE_THRESHOLD = 5
CIRCUIT_BREAKER_RESET_TIMEOUT_SECONDS = 60.0  # Time in OPEN state before HALF_OPEN
GATEWAY_CALL_TIMEOUT_SECONDS = 10.0  # Hard timeout around every gateway call


# =============================================================================
# Retry Defaults
# =============================================================================

RETRY_MAX_ATTEMPTS = 3
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_MAX_DELAY = 60.0  # seconds
RETRY_BACKOFF_MULTIPLIER = 2.0
RETRY_JITTER_FACTOR = 0.1

# Scanner calls get a short retry budget, ledger writes rely on the queue
SCANNER_RETRY_MAX_ATTEMPTS = 2
SCANNER_RETRY_BASE_DELAY = 0.5


# =============================================================================
# TTL Cache Defaults
# =============================================================================

CACHE_DEFAULT_TTL_SECONDS = 5 * 60.0
CACHE_MAX_SIZE = 1000
CACHE_SWEEP_INTERVAL_SECONDS = 10 * 60.0

# External results age faster than ratings
CACHE_EXTERNAL_TTL_SECONDS = 60 * 60.0

CACHE_RATING_PREFIX = "rating_"
CACHE_EXTERNAL_PREFIX = "external_"


# =============================================================================
# Community Voting Defaults
# =============================================================================

VOTE_RATE_LIMIT_MAX_VOTES = 3
VOTE_RATE_LIMIT_WINDOW_SECONDS = 5 * 60.0
VOTE_DECAY_WINDOW_SECONDS = 7 * 24 * 3600.0
VOTE_DECAY_MIN_WEIGHT = 0.1
VOTE_RETENTION_SECONDS = 90 * 24 * 3600.0
NEUTRAL_CONFIDENCE = 0.5


# =============================================================================
# Verdict Combination Defaults
# =============================================================================

VERDICT_COMMUNITY_SAFE_THRESHOLD = 0.7
VERDICT_COMMUNITY_UNSAFE_THRESHOLD = 0.3
VERDICT_MIN_COMMUNITY_VOTES = 3
VERDICT_EXTERNAL_SAFE_CONFIDENCE = 0.9
VERDICT_EXTERNAL_UNSAFE_CONFIDENCE = 0.1
VERDICT_EXTERNAL_WEIGHT = 0.75
VERDICT_COMMUNITY_WEIGHT = 0.25
VERDICT_BLEND_THRESHOLD = 0.85


# =============================================================================
# Mutation Queue Defaults
# =============================================================================

QUEUE_DRAIN_INTERVAL_SECONDS = 30.0
QUEUE_MAX_AGE_SECONDS = 7 * 24 * 3600.0
QUEUE_MAX_ATTEMPTS = 50
QUEUE_APPLIED_ID_HISTORY = 1000

QUEUE_PENDING_KEY = "queue:pending"
QUEUE_DEAD_LETTER_KEY = "queue:dead_letter"
QUEUE_APPLIED_KEY = "queue:applied"


# =============================================================================
# Local Store Keys
# =============================================================================

SNAPSHOT_RATING_PREFIX = "snapshot:rating:"
SNAPSHOT_EXTERNAL_PREFIX = "snapshot:external:"
OVERRIDE_PREFIX = "override:"
SCAN_HISTORY_PREFIX = "scan:"
LOCAL_DB_FILENAME = "scanguard.db"


# =============================================================================
# Remote Ledger Layout
# =============================================================================

LEDGER_TARGETS_COLLECTION = "targets"
LEDGER_VOTES_SUBCOLLECTION = "votes"
LEDGER_USERS_COLLECTION = "users"
LEDGER_SCANS_SUBCOLLECTION = "scans"

# Recent calls kept by MemoryLedger for inspection
LEDGER_CALL_LOG_SIZE = 1000


# =============================================================================
# Live Channel Topics
# =============================================================================

TOPIC_RATING_UPDATE = "rating_update"


# =============================================================================
# Reputation Scanner Defaults
# =============================================================================

VIRUSTOTAL_BASE_URL = "https://www.virustotal.com/api/v3"
SCANNER_HTTP_TIMEOUT_SECONDS = 8.0
IDENTIFIER_MAX_LENGTH = 2048
BLOCKED_SCHEMES = ("javascript", "data", "file", "ftp")


# =============================================================================
# Audit Defaults
# =============================================================================

AUDIT_DEFAULT_LEVEL = "INFO"  # "DEBUG", "INFO", "WARN", "ERROR"
AUDIT_DEFAULT_SAMPLE_RATE = 0.1  # 10% sample for DEBUG events
AUDIT_LOG_FILENAME = "audit.jsonl"
