"""Exception taxonomy for scanguard.

Only ValidationError and RateLimited are meant to reach end users. The
others describe dependency trouble and are handled inside the orchestrator.
"""

from __future__ import annotations

from typing import Optional


class ScanGuardError(Exception):
    """Base class for all scanguard errors."""
    pass


class ValidationError(ScanGuardError):
    """Malformed vote, target or scan. Rejected, never queued."""
    pass


class RateLimited(ScanGuardError):
    """Caller exceeded a local rate limit and should back off."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class CircuitOpen(ScanGuardError):
    """Raised when a breaker is open and the dependency was not attempted."""

    def __init__(self, dependency_key: str, retry_at: Optional[float] = None):
        super().__init__(f"Circuit '{dependency_key}' is OPEN. Dependency unavailable.")
        self.dependency_key = dependency_key
        self.retry_at = retry_at


class GatewayTimeout(ScanGuardError):
    """A gateway call exceeded its hard timeout."""

    def __init__(self, dependency_key: str, timeout: float):
        super().__init__(f"Call to '{dependency_key}' timed out after {timeout}s")
        self.dependency_key = dependency_key
        self.timeout = timeout


class ConflictDiscarded(ScanGuardError):
    """A queued mutation lost to a newer server-side write."""

    def __init__(self, mutation_id: str, reason: str = "server_newer"):
        super().__init__(f"Mutation {mutation_id} discarded: {reason}")
        self.mutation_id = mutation_id
        self.reason = reason


class ScannerError(ScanGuardError):
    """The reputation scanner answered with an unusable response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
