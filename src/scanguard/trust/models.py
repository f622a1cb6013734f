"""
Shared dataclasses for trust subsystem.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class VoteChoice(str, Enum):
    SAFE = "safe"
    UNSAFE = "unsafe"


class VerdictStatus(str, Enum):
    SAFE = "safe"
    UNSAFE = "unsafe"
    UNKNOWN = "unknown"


def _coerce(enum_cls, value):
    """Convert a raw string to enum_cls when possible, else return it untouched."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return value


@dataclass
class Vote:
    """One user's vote on a target. One active vote per (user_id, target_hash)."""
    user_id: str
    target_hash: str
    choice: VoteChoice
    timestamp: float = field(default_factory=time.time)
    confidence: float = 1.0

    def __post_init__(self):
        self.choice = _coerce(VoteChoice, self.choice)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["choice"] = getattr(self.choice, "value", self.choice)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Vote":
        return cls(
            user_id=data["user_id"],
            target_hash=data["target_hash"],
            choice=data["choice"],
            timestamp=float(data["timestamp"]),
            confidence=float(data.get("confidence", 1.0)),
        )


@dataclass
class CommunityRating:
    """Derived tally for a target; recomputed whenever its vote set changes."""
    target_hash: str
    safe_votes: int = 0
    unsafe_votes: int = 0
    total_votes: int = 0
    confidence: float = 0.5
    last_updated: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommunityRating":
        return cls(
            target_hash=data["target_hash"],
            safe_votes=int(data.get("safe_votes", 0)),
            unsafe_votes=int(data.get("unsafe_votes", 0)),
            total_votes=int(data.get("total_votes", 0)),
            confidence=float(data.get("confidence", 0.5)),
            last_updated=float(data.get("last_updated", 0.0)),
        )


@dataclass
class ExternalScanResult:
    """Reputation scanner answer. pending means submitted but not analyzed yet."""
    is_secure: bool
    positives: int = 0
    total: int = 0
    pending: bool = False
    scanned_at: float = field(default_factory=time.time)
    permalink: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExternalScanResult":
        return cls(
            is_secure=bool(data["is_secure"]),
            positives=int(data.get("positives", 0)),
            total=int(data.get("total", 0)),
            pending=bool(data.get("pending", False)),
            scanned_at=float(data.get("scanned_at", 0.0)),
            permalink=data.get("permalink"),
        )


@dataclass
class SourceBreakdown:
    """Which inputs a verdict used and which rule decided it."""
    rule: str
    external: Optional[ExternalScanResult] = None
    community: Optional[CommunityRating] = None
    override: Optional[VoteChoice] = None
    combined_score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule": self.rule,
            "external": self.external.to_dict() if self.external else None,
            "community": self.community.to_dict() if self.community else None,
            "override": self.override.value if self.override else None,
            "combined_score": self.combined_score,
        }


@dataclass
class SafetyVerdict:
    status: VerdictStatus
    user_overridden: bool = False
    source_breakdown: SourceBreakdown = field(
        default_factory=lambda: SourceBreakdown(rule="no_signal")
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "user_overridden": self.user_overridden,
            "source_breakdown": self.source_breakdown.to_dict(),
        }


SCAN_METHODS = ("camera", "manual", "clipboard", "file")


@dataclass
class ScanRecord:
    """One scan event in a user's history."""
    user_id: str
    payload: str
    target_hash: str
    timestamp: float = field(default_factory=time.time)
    safety_tag: VerdictStatus = VerdictStatus.UNKNOWN
    session_id: str = ""
    scan_method: str = "camera"
    scan_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        self.safety_tag = _coerce(VerdictStatus, self.safety_tag)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["safety_tag"] = getattr(self.safety_tag, "value", self.safety_tag)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScanRecord":
        return cls(
            user_id=data["user_id"],
            payload=data["payload"],
            target_hash=data["target_hash"],
            timestamp=float(data["timestamp"]),
            safety_tag=data.get("safety_tag", VerdictStatus.UNKNOWN),
            session_id=data.get("session_id", ""),
            scan_method=data.get("scan_method", "camera"),
            scan_id=data["scan_id"],
        )


@dataclass
class WriteOutcome:
    """Result of a mutating orchestrator call."""
    mutation_id: str
    queued: bool
    rating: Optional[CommunityRating] = None
