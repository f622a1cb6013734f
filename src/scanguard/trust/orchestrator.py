"""
TrustOrchestrator - Coordinates all trust components.

Single entry point for votes, verdicts and scans. Every external call goes
through the ResilienceGateway, every rating read or write goes through the
TTLCache, every ledger write that cannot complete goes to the MutationQueue,
and every verdict comes from the VerdictCombiner.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from scanguard.cache import TTLCache
from scanguard.config import GuardConfig
from scanguard.config.defaults import (
    CACHE_EXTERNAL_PREFIX,
    CACHE_RATING_PREFIX,
    DEPENDENCY_REMOTE_LEDGER,
    DEPENDENCY_REPUTATION_SCANNER,
    LEDGER_SCANS_SUBCOLLECTION,
    LEDGER_TARGETS_COLLECTION,
    LEDGER_USERS_COLLECTION,
    LEDGER_VOTES_SUBCOLLECTION,
    OVERRIDE_PREFIX,
    SCAN_HISTORY_PREFIX,
    SNAPSHOT_EXTERNAL_PREFIX,
    SNAPSHOT_RATING_PREFIX,
    TOPIC_RATING_UPDATE,
)
from scanguard.errors import ConflictDiscarded, ValidationError
from scanguard.gateway import ResilienceGateway
from scanguard.mutation_queue import MutationKind, MutationQueue, QueueConfig, QueuedMutation
from scanguard.retry import RetryConfig
from scanguard.sliding_window import RateLimitConfig, SlidingWindowRateLimiter

from .aggregator import VoteAggregator
from .auditor import TrustAuditor
from .combiner import VerdictCombiner
from .models import (
    SCAN_METHODS,
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

if TYPE_CHECKING:
    from scanguard.ports import LiveChannel, LocalStore, RemoteLedger, ReputationScanner

logger = logging.getLogger(__name__)


def votes_path(target_hash: str) -> str:
    return f"{LEDGER_TARGETS_COLLECTION}/{target_hash}/{LEDGER_VOTES_SUBCOLLECTION}"


def scans_path(user_id: str) -> str:
    return f"{LEDGER_USERS_COLLECTION}/{user_id}/{LEDGER_SCANS_SUBCOLLECTION}"


def _dumps(data: Dict[str, Any]) -> bytes:
    return json.dumps(data).encode("utf-8")


class TrustOrchestrator:
    """
    Single entry point for all trust operations.

    Components are injected; use from_config() for the standard wiring.
    """

    def __init__(
        self,
        gateway: ResilienceGateway,
        cache: TTLCache,
        aggregator: VoteAggregator,
        queue: MutationQueue,
        local_store: "LocalStore",
        ledger: "RemoteLedger",
        scanner: Optional["ReputationScanner"] = None,
        live_channel: Optional["LiveChannel"] = None,
        auditor: Optional[TrustAuditor] = None,
        config: Optional[GuardConfig] = None,
        combiner: Optional[VerdictCombiner] = None,
    ):
        self.gateway = gateway
        self.cache = cache
        self.aggregator = aggregator
        self.queue = queue
        self.local_store = local_store
        self.ledger = ledger
        self.scanner = scanner
        self.live_channel = live_channel
        self.auditor = auditor
        self.config = config or GuardConfig()
        self.combiner = combiner or VerdictCombiner()

        # Tags our own live-channel messages so we can ignore the echo
        self.origin_id = uuid.uuid4().hex
        self._unsubscribers: List[Callable[[], None]] = []
        self._watchers: Dict[str, Callable[[], None]] = {}
        # (user_id, target_hash) -> [lock, holders + waiters]
        self._key_locks: Dict[Tuple[str, str], list] = {}

    @classmethod
    def from_config(
        cls,
        config: GuardConfig,
        local_store: "LocalStore",
        ledger: "RemoteLedger",
        scanner: Optional["ReputationScanner"] = None,
        live_channel: Optional["LiveChannel"] = None,
        auditor: Optional[TrustAuditor] = None,
    ) -> "TrustOrchestrator":
        """Build the standard component graph from a GuardConfig."""
        gateway = ResilienceGateway.from_config(config)
        cache = TTLCache(
            default_ttl=config.cache_ttl,
            max_size=config.cache_max_size,
            sweep_interval=config.sweep_interval,
        )
        aggregator = VoteAggregator(
            rate_limiter=SlidingWindowRateLimiter(RateLimitConfig(
                max_events=config.max_votes_per_window,
                window_seconds=config.vote_window,
            )),
            decay_window=config.decay_window,
        )
        queue = MutationQueue(
            local_store,
            gateway=gateway,
            config=QueueConfig(
                drain_interval=config.drain_interval,
                max_age=config.queue_max_age,
                max_attempts=config.queue_max_attempts,
            ),
            auditor=auditor,
        )
        return cls(
            gateway=gateway,
            cache=cache,
            aggregator=aggregator,
            queue=queue,
            local_store=local_store,
            ledger=ledger,
            scanner=scanner,
            live_channel=live_channel,
            auditor=auditor,
            config=config,
        )

    # Lifecycle

    async def initialize(self) -> None:
        """Restore the queue and start background tasks."""
        await self.queue.load()
        self.cache.start_sweeper()
        self.queue.start(self._apply_mutation)
        if self.live_channel is not None:
            self._unsubscribers.append(
                self.live_channel.subscribe(TOPIC_RATING_UPDATE, self._on_rating_update)
            )
        logger.info(
            "trust_orchestrator_initialized",
            extra={
                "event": "trust_orchestrator_initialized",
                "queue_depth": self.queue.depth,
                "origin_id": self.origin_id,
            }
        )

    async def shutdown(self) -> None:
        """Stop loops, make a final drain attempt and unsubscribe."""
        await self.queue.stop()
        await self.cache.stop_sweeper()
        if self.queue.depth:
            try:
                await self.queue.drain(self._apply_mutation)
            except Exception as e:
                logger.warning(f"Final drain failed: {e}")
        self.unwatch_all()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        logger.info(
            "trust_orchestrator_shutdown",
            extra={"event": "trust_orchestrator_shutdown", "queue_depth": self.queue.depth}
        )

    # Votes

    @asynccontextmanager
    async def _serialized(self, user_id: str, target_hash: str) -> AsyncIterator[None]:
        """One local-then-remote write at a time per (user_id, target_hash)."""
        key = (user_id, target_hash)
        entry = self._key_locks.get(key)
        if entry is None:
            entry = self._key_locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._key_locks[key]

    async def submit_vote(self, vote: Vote) -> WriteOutcome:
        """
        Record a vote locally, then on the ledger (or queue it).

        Raises:
            ValidationError: Malformed vote
            RateLimited: User exhausted the vote budget
        """
        async with self._serialized(vote.user_id, vote.target_hash):
            rating = self.aggregator.add_vote(vote)
            await self._publish_rating(rating)
            mutation = QueuedMutation(kind=MutationKind.VOTE, payload=vote.to_dict())
            queued = await self._write_or_enqueue(mutation)
        return WriteOutcome(mutation_id=mutation.id, queued=queued, rating=rating)

    async def retract_vote(self, user_id: str, target_hash: str) -> WriteOutcome:
        """Remove the user's vote locally, then on the ledger (or queue it)."""
        async with self._serialized(user_id, target_hash):
            rating = self.aggregator.retract_vote(user_id, target_hash)
            await self._publish_rating(rating)
            mutation = QueuedMutation(
                kind=MutationKind.RETRACT_VOTE,
                payload={"user_id": user_id, "target_hash": target_hash, "timestamp": time.time()},
            )
            queued = await self._write_or_enqueue(mutation)
        return WriteOutcome(mutation_id=mutation.id, queued=queued, rating=rating)

    async def _write_or_enqueue(self, mutation: QueuedMutation) -> bool:
        """Try the ledger directly. Returns True if the mutation was queued."""
        if self.queue.depth:
            # Keep FIFO order behind earlier offline writes
            await self.queue.enqueue(mutation)
            return True
        try:
            await self.gateway.call(DEPENDENCY_REMOTE_LEDGER, self._apply_mutation, mutation)
        except ConflictDiscarded as e:
            logger.warning(
                "mutation_conflict_discarded",
                extra={
                    "event": "mutation_conflict_discarded",
                    "mutation_id": mutation.id,
                    "kind": mutation.kind.value,
                    "reason": e.reason,
                }
            )
            if self.auditor:
                await self.auditor.log_conflict_discarded(mutation.id, mutation.kind.value, e.reason)
            return False
        except ValidationError:
            raise
        except Exception as e:
            logger.info(f"Ledger write failed, queueing {mutation.kind.value} {mutation.id}: {e}")
            await self.queue.enqueue(mutation)
            return True
        return False

    async def _apply_mutation(self, mutation: QueuedMutation) -> None:
        """
        Perform one mutation against the ledger.

        Raises:
            ConflictDiscarded: The ledger holds a newer vote for the same user and target
        """
        payload = mutation.payload
        if mutation.kind == MutationKind.SCAN_RECORD:
            scan = ScanRecord.from_dict(payload)
            await self.ledger.create(scans_path(scan.user_id), scan.scan_id, scan.to_dict())
            return

        user_id = payload["user_id"]
        target_hash = payload["target_hash"]
        path = votes_path(target_hash)
        existing = await self.ledger.get(path, user_id)
        if existing is not None and float(existing.get("timestamp", 0)) > float(payload["timestamp"]):
            raise ConflictDiscarded(mutation.id)

        if mutation.kind == MutationKind.VOTE:
            await self.ledger.create(path, user_id, {**payload, "mutation_id": mutation.id})
        elif existing is not None:
            await self.ledger.delete(path, user_id)

        docs = await self.ledger.query(path)
        rating = self.aggregator.compute_rating(target_hash, [Vote.from_dict(d) for d in docs])
        await self.ledger.update(LEDGER_TARGETS_COLLECTION, target_hash, rating.to_dict())

    # Ratings

    async def _publish_rating(self, rating: CommunityRating) -> None:
        self.cache.set(CACHE_RATING_PREFIX + rating.target_hash, rating)
        try:
            await self.local_store.set(
                SNAPSHOT_RATING_PREFIX + rating.target_hash, _dumps(rating.to_dict())
            )
        except Exception as e:
            logger.warning(f"Could not snapshot rating for {rating.target_hash}: {e}")
        if self.live_channel is not None:
            try:
                await self.live_channel.publish(
                    TOPIC_RATING_UPDATE,
                    {"origin": self.origin_id, "rating": rating.to_dict()},
                )
            except Exception as e:
                logger.debug(f"Live channel publish failed: {e}")

    async def _on_rating_update(self, message: dict) -> None:
        if message.get("origin") == self.origin_id:
            return
        rating = CommunityRating.from_dict(message["rating"])
        self.cache.set(CACHE_RATING_PREFIX + rating.target_hash, rating)

    def _users_with_pending_votes(self, target_hash: str) -> List[str]:
        return [
            m.payload["user_id"]
            for m in self.queue.pending()
            if m.kind in (MutationKind.VOTE, MutationKind.RETRACT_VOTE)
            and m.payload.get("target_hash") == target_hash
        ]

    async def _merge_remote_votes(self, target_hash: str, docs: List[dict]) -> CommunityRating:
        votes = [Vote.from_dict(d) for d in docs]
        rating = self.aggregator.merge_votes(
            target_hash, votes, keep_users=self._users_with_pending_votes(target_hash)
        )
        await self._publish_rating(rating)
        return rating

    async def refresh_rating(self, target_hash: str) -> Optional[CommunityRating]:
        """Pull the target's votes from the ledger and merge them into the local view."""
        try:
            docs = await self.gateway.call(
                DEPENDENCY_REMOTE_LEDGER, self.ledger.query, votes_path(target_hash)
            )
        except Exception as e:
            logger.info(f"Rating refresh for {target_hash} failed: {e}")
            return await self._current_rating(target_hash)
        return await self._merge_remote_votes(target_hash, docs)

    async def watch_target(self, target_hash: str) -> bool:
        """Follow ledger vote changes for a target. Returns False if the ledger is unavailable."""
        if target_hash in self._watchers:
            return True

        async def on_change(event: dict) -> None:
            await self._merge_remote_votes(target_hash, event.get("docs", []))

        try:
            unsubscribe = await self.gateway.call(
                DEPENDENCY_REMOTE_LEDGER, self.ledger.subscribe, votes_path(target_hash), on_change
            )
        except Exception as e:
            logger.info(f"Could not watch {target_hash}: {e}")
            return False
        self._watchers[target_hash] = unsubscribe
        return True

    def unwatch_all(self) -> None:
        for unsubscribe in self._watchers.values():
            unsubscribe()
        self._watchers.clear()

    async def _current_rating(self, target_hash: str) -> Optional[CommunityRating]:
        key = CACHE_RATING_PREFIX + target_hash
        rating = self.cache.get(key)
        if rating is not None:
            return rating

        rating = self.aggregator.get_rating(target_hash)
        if rating is None:
            try:
                raw = await self.local_store.get(SNAPSHOT_RATING_PREFIX + target_hash)
            except Exception as e:
                logger.warning(f"Local store read failed for rating {target_hash}: {e}")
                raw = None
            rating = CommunityRating.from_dict(json.loads(raw)) if raw else None

        if rating is not None:
            self.cache.set(key, rating)
        return rating

    # External scans

    async def _current_external(self, target_hash: str) -> Optional[ExternalScanResult]:
        result = self.cache.get(CACHE_EXTERNAL_PREFIX + target_hash)
        if result is not None:
            return result
        try:
            raw = await self.local_store.get(SNAPSHOT_EXTERNAL_PREFIX + target_hash)
        except Exception as e:
            logger.warning(f"Local store read failed for external {target_hash}: {e}")
            return None
        return ExternalScanResult.from_dict(json.loads(raw)) if raw else None

    async def refresh_external(self, target_hash: str, identifier: str) -> Optional[ExternalScanResult]:
        """Ask the reputation scanner. Failures return the last known result, or None."""
        if self.scanner is None:
            return await self._current_external(target_hash)
        try:
            result = await self.gateway.call(
                DEPENDENCY_REPUTATION_SCANNER,
                self.scanner.scan,
                identifier,
                retry=RetryConfig.for_scanner(),
            )
        except Exception as e:
            logger.info(f"Reputation scan for {target_hash} failed: {e}")
            return await self._current_external(target_hash)

        self.cache.set(CACHE_EXTERNAL_PREFIX + target_hash, result, ttl=self.config.external_ttl)
        try:
            await self.local_store.set(SNAPSHOT_EXTERNAL_PREFIX + target_hash, _dumps(result.to_dict()))
        except Exception as e:
            logger.warning(f"Could not snapshot external result for {target_hash}: {e}")
        return result

    # Verdicts

    async def _stored_override(self, target_hash: str) -> Optional[VoteChoice]:
        try:
            raw = await self.local_store.get(OVERRIDE_PREFIX + target_hash)
        except Exception as e:
            logger.warning(f"Local store read failed for override {target_hash}: {e}")
            return None
        return VoteChoice(raw.decode("utf-8")) if raw else None

    async def set_override(self, target_hash: str, choice: Optional[VoteChoice]) -> None:
        """Persist an explicit user override, or clear it with None."""
        if not target_hash:
            raise ValidationError("target_hash is required")
        if choice is None:
            await self.local_store.delete(OVERRIDE_PREFIX + target_hash)
        else:
            try:
                choice = VoteChoice(choice)
            except ValueError:
                raise ValidationError(f"Invalid override: {choice!r}") from None
            await self.local_store.set(OVERRIDE_PREFIX + target_hash, choice.value.encode("utf-8"))
        if self.auditor:
            await self.auditor.log_override(target_hash, choice.value if choice else None)

    async def get_verdict(
        self,
        target_hash: str,
        user_override: Optional[VoteChoice] = None,
    ) -> SafetyVerdict:
        """
        Combine whatever is known locally. Never touches the network.

        Source failures degrade to an unknown verdict; only an invalid
        user_override raises.

        Raises:
            ValidationError: user_override is not a valid choice
        """
        if user_override is not None:
            try:
                user_override = VoteChoice(user_override)
            except ValueError:
                raise ValidationError(f"Invalid override: {user_override!r}") from None
        try:
            override = user_override
            if override is None:
                override = await self._stored_override(target_hash)
            community = await self._current_rating(target_hash)
            external = await self._current_external(target_hash)
            verdict = self.combiner.combine(external, community, override)
        except Exception as e:
            logger.error(f"Verdict for {target_hash} fell back to unknown: {e}")
            return SafetyVerdict(
                status=VerdictStatus.UNKNOWN,
                source_breakdown=SourceBreakdown(rule="error"),
            )

        if self.auditor:
            await self.auditor.log_verdict(
                target_hash,
                verdict.status.value,
                verdict.source_breakdown.rule,
                verdict.source_breakdown.combined_score,
            )
        return verdict

    # Scans

    @staticmethod
    def _validate_scan(scan: ScanRecord) -> None:
        if not scan.user_id:
            raise ValidationError("Scan user_id is required")
        if not scan.payload:
            raise ValidationError("Scan payload is empty")
        if not scan.target_hash:
            raise ValidationError("Scan target_hash is required")
        if scan.scan_method not in SCAN_METHODS:
            raise ValidationError(f"Unknown scan method: {scan.scan_method}")
        if not isinstance(scan.safety_tag, VerdictStatus):
            raise ValidationError(f"Invalid safety tag: {scan.safety_tag!r}")

    async def record_scan(self, scan: ScanRecord, check_external: bool = True) -> WriteOutcome:
        """Store a scan in local history and on the ledger, then optionally rescan."""
        self._validate_scan(scan)
        await self.local_store.set(
            f"{SCAN_HISTORY_PREFIX}{scan.user_id}:{scan.scan_id}", _dumps(scan.to_dict())
        )
        mutation = QueuedMutation(kind=MutationKind.SCAN_RECORD, payload=scan.to_dict())
        queued = await self._write_or_enqueue(mutation)
        if check_external:
            await self.refresh_external(scan.target_hash, scan.payload)
        return WriteOutcome(mutation_id=mutation.id, queued=queued)

    async def get_scan_history(self, user_id: Optional[str] = None, limit: int = 50) -> List[ScanRecord]:
        """Most recent scans first."""
        prefix = SCAN_HISTORY_PREFIX + (f"{user_id}:" if user_id else "")
        try:
            keys = await self.local_store.list_keys(prefix)
            records = []
            for key in keys:
                raw = await self.local_store.get(key)
                if raw:
                    records.append(ScanRecord.from_dict(json.loads(raw)))
        except Exception as e:
            logger.warning(f"Could not read scan history: {e}")
            return []
        records.sort(key=lambda r: r.timestamp, reverse=True)
        return records[:limit]

    # Sync & health

    async def sync_all(self) -> dict:
        """Drain the mutation queue now."""
        result = await self.queue.drain(self._apply_mutation)
        return {
            "synced": result.applied,
            "discarded": result.discarded,
            "dead_lettered": result.dead_lettered,
            "remaining": result.remaining,
        }

    async def connectivity_restored(self) -> dict:
        logger.info("connectivity_restored", extra={"event": "connectivity_restored"})
        return await self.sync_all()

    def health(self) -> dict:
        """Breakers, cache and queue at a glance. Dead-letter warnings are shown once."""
        available = {
            key: self.gateway.is_available(key)
            for key in (DEPENDENCY_REPUTATION_SCANNER, DEPENDENCY_REMOTE_LEDGER)
        }
        return {
            "breakers": self.gateway.get_all_status(),
            "available": available,
            "cache_stats": self.cache.get_stats(),
            "queue_depth": self.queue.depth,
            "dead_letters": len(self.queue.dead_letters),
            "warnings": self.queue.take_warnings(),
        }
