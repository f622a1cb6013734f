"""
VerdictCombiner - Multi-source safety verdict.

Precedence: explicit override, then whichever of the external scan and the
community rating are available. When both are, a community tally of at least
`min_community_votes` is blended with the scanner's answer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from scanguard.config.defaults import (
    VERDICT_MIN_COMMUNITY_VOTES,
    VERDICT_BLEND_THRESHOLD,
    VERDICT_COMMUNITY_SAFE_THRESHOLD,
    VERDICT_COMMUNITY_UNSAFE_THRESHOLD,
    VERDICT_COMMUNITY_WEIGHT,
    VERDICT_EXTERNAL_SAFE_CONFIDENCE,
    VERDICT_EXTERNAL_UNSAFE_CONFIDENCE,
    VERDICT_EXTERNAL_WEIGHT,
)

from .models import (
    CommunityRating,
    ExternalScanResult,
    SafetyVerdict,
    SourceBreakdown,
    VerdictStatus,
    VoteChoice,
)


class Rule:
    """Names recorded in SourceBreakdown.rule."""
    OVERRIDE = "override"
    NO_SIGNAL = "no_signal"
    COMMUNITY_ONLY = "community_only"
    EXTERNAL_ONLY = "external_only"
    EXTERNAL_PENDING = "external_pending"
    BLENDED = "blended"
    EXTERNAL_DECIDES = "external_decides"


@dataclass
class CombinerThresholds:
    community_safe: float = VERDICT_COMMUNITY_SAFE_THRESHOLD
    community_unsafe: float = VERDICT_COMMUNITY_UNSAFE_THRESHOLD
    min_community_votes: int = VERDICT_MIN_COMMUNITY_VOTES
    external_safe_confidence: float = VERDICT_EXTERNAL_SAFE_CONFIDENCE
    external_unsafe_confidence: float = VERDICT_EXTERNAL_UNSAFE_CONFIDENCE
    external_weight: float = VERDICT_EXTERNAL_WEIGHT
    community_weight: float = VERDICT_COMMUNITY_WEIGHT
    blend_threshold: float = VERDICT_BLEND_THRESHOLD


class VerdictCombiner:
    """Pure combination of verdict sources. Holds no state beyond thresholds."""

    def __init__(self, thresholds: Optional[CombinerThresholds] = None):
        self.thresholds = thresholds or CombinerThresholds()

    def _community_status(self, community: CommunityRating) -> VerdictStatus:
        if community.confidence > self.thresholds.community_safe:
            return VerdictStatus.SAFE
        if community.confidence < self.thresholds.community_unsafe:
            return VerdictStatus.UNSAFE
        return VerdictStatus.UNKNOWN

    @staticmethod
    def _external_status(external: ExternalScanResult) -> VerdictStatus:
        return VerdictStatus.SAFE if external.is_secure else VerdictStatus.UNSAFE

    def combine(
        self,
        external: Optional[ExternalScanResult],
        community: Optional[CommunityRating],
        user_override: Optional[VoteChoice] = None,
    ) -> SafetyVerdict:
        if community is not None and community.total_votes == 0:
            community = None

        if user_override is not None:
            return SafetyVerdict(
                status=VerdictStatus(VoteChoice(user_override).value),
                user_overridden=True,
                source_breakdown=SourceBreakdown(
                    rule=Rule.OVERRIDE,
                    external=external,
                    community=community,
                    override=VoteChoice(user_override),
                ),
            )

        if external is None and community is None:
            return SafetyVerdict(
                status=VerdictStatus.UNKNOWN,
                source_breakdown=SourceBreakdown(rule=Rule.NO_SIGNAL),
            )

        if external is None:
            return SafetyVerdict(
                status=self._community_status(community),
                source_breakdown=SourceBreakdown(rule=Rule.COMMUNITY_ONLY, community=community),
            )

        if community is None:
            status = VerdictStatus.UNKNOWN if external.pending else self._external_status(external)
            rule = Rule.EXTERNAL_PENDING if external.pending else Rule.EXTERNAL_ONLY
            return SafetyVerdict(
                status=status,
                source_breakdown=SourceBreakdown(rule=rule, external=external),
            )

        # Both sources present
        if external.pending:
            return SafetyVerdict(
                status=self._community_status(community),
                source_breakdown=SourceBreakdown(
                    rule=Rule.EXTERNAL_PENDING, external=external, community=community,
                ),
            )

        t = self.thresholds
        if community.total_votes >= t.min_community_votes:
            vt = t.external_safe_confidence if external.is_secure else t.external_unsafe_confidence
            combined = t.external_weight * vt + t.community_weight * community.confidence
            status = VerdictStatus.SAFE if combined > t.blend_threshold else VerdictStatus.UNSAFE
            return SafetyVerdict(
                status=status,
                source_breakdown=SourceBreakdown(
                    rule=Rule.BLENDED,
                    external=external,
                    community=community,
                    combined_score=combined,
                ),
            )

        return SafetyVerdict(
            status=self._external_status(external),
            source_breakdown=SourceBreakdown(
                rule=Rule.EXTERNAL_DECIDES, external=external, community=community,
            ),
        )


_default_combiner = VerdictCombiner()


def combine(
    external: Optional[ExternalScanResult],
    community: Optional[CommunityRating],
    user_override: Optional[VoteChoice] = None,
) -> SafetyVerdict:
    """Combine sources with the default thresholds."""
    return _default_combiner.combine(external, community, user_override)
