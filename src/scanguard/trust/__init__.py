"""
ScanGuard Trust Subsystem

- Votes: rate-limited, last-write-wins, time-decayed tally
- Verdicts: override, external scan and community rating combined
- Auditability: conflicts, dead letters and overrides logged
"""

from __future__ import annotations

from .aggregator import VoteAggregator
from .auditor import AuditLevel, TrustAuditor
from .combiner import CombinerThresholds, VerdictCombiner, combine
from .models import (
    CommunityRating,
    ExternalScanResult,
    SafetyVerdict,
    ScanRecord,
    SourceBreakdown,
    VerdictStatus,
    Vote,
    VoteChoice,
    WriteOutcome,
)
from .orchestrator import TrustOrchestrator

__all__ = [
    "TrustOrchestrator",
    "VoteAggregator",
    "VerdictCombiner",
    "CombinerThresholds",
    "combine",
    "TrustAuditor",
    "AuditLevel",
    "Vote",
    "VoteChoice",
    "CommunityRating",
    "ExternalScanResult",
    "SafetyVerdict",
    "SourceBreakdown",
    "VerdictStatus",
    "ScanRecord",
    "WriteOutcome",
]
