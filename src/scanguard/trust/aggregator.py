"""
VoteAggregator - Community vote tally with rate limiting and time decay.

Holds the local view of every target's vote set. Ratings are derived from
that set on every change; nothing else writes them.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional

from scanguard.config.defaults import (
    NEUTRAL_CONFIDENCE,
    VOTE_DECAY_MIN_WEIGHT,
    VOTE_DECAY_WINDOW_SECONDS,
    VOTE_RETENTION_SECONDS,
)
from scanguard.errors import ValidationError
from scanguard.sliding_window import RateLimitConfig, SlidingWindowRateLimiter

from .models import CommunityRating, Vote, VoteChoice

logger = logging.getLogger(__name__)


def validate_vote(vote: Vote) -> None:
    """Raise ValidationError if the vote is malformed."""
    if not isinstance(vote.choice, VoteChoice):
        raise ValidationError(f"Invalid vote choice: {vote.choice!r}")
    if not vote.user_id or not isinstance(vote.user_id, str):
        raise ValidationError("Vote user_id must be a non-empty string")
    if not vote.target_hash or not isinstance(vote.target_hash, str):
        raise ValidationError("Vote target_hash must be a non-empty string")
    if not 0.0 <= vote.confidence <= 1.0:
        raise ValidationError(f"Vote confidence out of range: {vote.confidence}")
    if vote.timestamp <= 0:
        raise ValidationError(f"Vote timestamp must be positive: {vote.timestamp}")


class VoteAggregator:
    """
    Tally votes per target and derive CommunityRating.

    Confidence is the decay-weighted share of safe votes. A vote's weight
    falls linearly with age and bottoms out at `min_weight` once it is
    `decay_window` seconds old.
    """

    def __init__(
        self,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        decay_window: float = VOTE_DECAY_WINDOW_SECONDS,
        min_weight: float = VOTE_DECAY_MIN_WEIGHT,
    ):
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(RateLimitConfig())
        self.decay_window = decay_window
        self.min_weight = min_weight

        # target_hash -> user_id -> Vote
        self._votes: Dict[str, Dict[str, Vote]] = defaultdict(dict)
        self._ratings: Dict[str, CommunityRating] = {}
        self._lock = threading.Lock()
        # user_id -> [lock, holders + waiters]; dropped when idle
        self._user_locks: Dict[str, list] = {}
        self._user_locks_guard = threading.Lock()

    @contextmanager
    def _user_section(self, user_id: str) -> Iterator[None]:
        with self._user_locks_guard:
            entry = self._user_locks.setdefault(user_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._user_locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._user_locks[user_id]

    def add_vote(self, vote: Vote) -> CommunityRating:
        """
        Validate, rate-limit and upsert a vote.

        Raises:
            ValidationError: Malformed vote
            RateLimited: User exhausted the vote budget for the window
        """
        validate_vote(vote)
        with self._user_section(vote.user_id):
            self.rate_limiter.acquire(vote.user_id)
            with self._lock:
                current = self._votes[vote.target_hash].get(vote.user_id)
                if current is not None and current.timestamp > vote.timestamp:
                    logger.debug(
                        f"Ignoring stale vote from {vote.user_id} on {vote.target_hash}"
                    )
                else:
                    self._votes[vote.target_hash][vote.user_id] = vote
                return self._recompute_locked(vote.target_hash)

    def retract_vote(self, user_id: str, target_hash: str) -> CommunityRating:
        """Remove the user's vote on target. Absent votes are a no-op."""
        if not user_id or not target_hash:
            raise ValidationError("user_id and target_hash are required")
        with self._user_section(user_id):
            with self._lock:
                removed = self._votes.get(target_hash, {}).pop(user_id, None)
                if removed is None:
                    logger.debug(f"No vote from {user_id} on {target_hash} to retract")
                return self._recompute_locked(target_hash)

    def merge_votes(
        self,
        target_hash: str,
        votes: Iterable[Vote],
        keep_users: Iterable[str] = (),
    ) -> CommunityRating:
        """
        Replace target's vote set with an authoritative remote set.

        Local votes from users in keep_users (those with unsynced local
        mutations) survive the merge. Not rate limited.
        """
        keep = set(keep_users)
        with self._lock:
            local = self._votes.get(target_hash, {})
            merged = {v.user_id: v for v in votes if v.target_hash == target_hash}
            for user_id in keep:
                if user_id in local:
                    merged[user_id] = local[user_id]
                else:
                    merged.pop(user_id, None)
            self._votes[target_hash] = merged
            return self._recompute_locked(target_hash)

    def prune(self, max_age: float = VOTE_RETENTION_SECONDS, now: Optional[float] = None) -> int:
        """Drop votes older than max_age. Returns the number removed."""
        now = time.time() if now is None else now
        cutoff = now - max_age
        removed = 0
        with self._lock:
            for target_hash, by_user in list(self._votes.items()):
                stale = [uid for uid, v in by_user.items() if v.timestamp < cutoff]
                for uid in stale:
                    del by_user[uid]
                if stale:
                    removed += len(stale)
                    self._recompute_locked(target_hash, now)
        if removed:
            logger.info(f"Pruned {removed} votes older than {max_age:.0f}s")
        return removed

    def _recompute_locked(self, target_hash: str, now: Optional[float] = None) -> CommunityRating:
        votes = list(self._votes.get(target_hash, {}).values())
        if not votes:
            self._votes.pop(target_hash, None)
        rating = self.compute_rating(target_hash, votes, now)
        self._ratings[target_hash] = rating
        return rating

    def weight(self, vote: Vote, now: float) -> float:
        age = max(0.0, now - vote.timestamp)
        return max(self.min_weight, 1.0 - age / self.decay_window)

    def compute_rating(
        self,
        target_hash: str,
        votes: Iterable[Vote],
        now: Optional[float] = None,
    ) -> CommunityRating:
        """Derive a CommunityRating from a vote set."""
        now = time.time() if now is None else now
        safe = unsafe = 0
        safe_weight = total_weight = 0.0
        for vote in votes:
            w = self.weight(vote, now)
            total_weight += w
            if vote.choice == VoteChoice.SAFE:
                safe += 1
                safe_weight += w
            else:
                unsafe += 1

        confidence = safe_weight / total_weight if total_weight > 0 else NEUTRAL_CONFIDENCE
        return CommunityRating(
            target_hash=target_hash,
            safe_votes=safe,
            unsafe_votes=unsafe,
            total_votes=safe + unsafe,
            confidence=confidence,
            last_updated=now,
        )

    def get_rating(self, target_hash: str) -> Optional[CommunityRating]:
        """Last computed rating, or None if this target has never been seen."""
        with self._lock:
            return self._ratings.get(target_hash)

    def get_votes(self, target_hash: str) -> List[Vote]:
        with self._lock:
            return list(self._votes.get(target_hash, {}).values())

    def get_user_vote(self, user_id: str, target_hash: str) -> Optional[Vote]:
        with self._lock:
            return self._votes.get(target_hash, {}).get(user_id)

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "targets": len(self._votes),
                "votes": sum(len(v) for v in self._votes.values()),
                "rated_targets": len(self._ratings),
                "locked_users": len(self._user_locks),
                "rate_limit": self.rate_limiter.get_status(),
            }
