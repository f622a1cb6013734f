"""Tests for TrustOrchestrator."""

import asyncio
import json
import time
from unittest.mock import AsyncMock, patch

import pytest

from scanguard.config import GuardConfig
from scanguard.errors import RateLimited, ScannerError, ValidationError
from scanguard.ledger import MemoryLedger
from scanguard.live_channel import InProcessLiveChannel
from scanguard.scanner import hash_target
from scanguard.stores import MemoryLocalStore
from scanguard.trust.auditor import TrustAuditor
from scanguard.trust.models import (
    CommunityRating,
    ExternalScanResult,
    ScanRecord,
    VerdictStatus,
    Vote,
    VoteChoice,
)
from scanguard.trust.orchestrator import TrustOrchestrator, scans_path, votes_path

TARGET = hash_target("https://example.com")


class FakeScanner:
    def __init__(self, result=None):
        self.scan = AsyncMock(return_value=result or ExternalScanResult(is_secure=True, total=90))


class SlowCreateLedger(MemoryLedger):
    async def create(self, collection_path, doc_id, data):
        await asyncio.sleep(0.05)
        await super().create(collection_path, doc_id, data)


class FailingStore:
    async def get(self, key):
        raise OSError("disk gone")

    async def set(self, key, value):
        raise OSError("disk gone")

    async def delete(self, key):
        raise OSError("disk gone")

    async def list_keys(self, prefix):
        raise OSError("disk gone")


def vote(user="u1", choice="safe", ts=None, target=TARGET):
    return Vote(user_id=user, target_hash=target, choice=choice,
                timestamp=time.time() if ts is None else ts)


@pytest.fixture
def config(tmp_path):
    return GuardConfig(data_dir=tmp_path, drain_interval=3600, sweep_interval=3600)


@pytest.fixture
def store():
    return MemoryLocalStore()


@pytest.fixture
def ledger():
    return MemoryLedger()


@pytest.fixture
def channel():
    return InProcessLiveChannel()


@pytest.fixture
def scanner():
    return FakeScanner()


@pytest.fixture
async def orchestrator(config, store, ledger, scanner, channel):
    orch = TrustOrchestrator.from_config(
        config, store, ledger,
        scanner=scanner,
        live_channel=channel,
        auditor=TrustAuditor(config.audit_path),
    )
    await orch.initialize()
    yield orch
    await orch.shutdown()


class TestSubmitVote:
    """Tests for submit_vote and retract_vote."""

    @pytest.mark.asyncio
    async def test_online_writes_ledger(self, orchestrator, ledger):
        """Test an online vote reaches the ledger directly."""
        outcome = await orchestrator.submit_vote(vote())

        assert outcome.queued is False
        assert outcome.rating.total_votes == 1
        assert ledger.documents(votes_path(TARGET))["u1"]["choice"] == "safe"
        assert ledger.documents("targets")[TARGET]["total_votes"] == 1

    @pytest.mark.asyncio
    async def test_offline_queues_then_syncs(self, orchestrator, ledger):
        """Test an offline vote is queued and replayed on reconnect."""
        ledger.online = False

        outcome = await orchestrator.submit_vote(vote())

        assert outcome.queued is True
        assert orchestrator.health()["queue_depth"] == 1

        ledger.online = True
        result = await orchestrator.connectivity_restored()

        assert result == {"synced": 1, "discarded": 0, "dead_lettered": 0, "remaining": 0}
        assert "u1" in ledger.documents(votes_path(TARGET))

    @pytest.mark.asyncio
    async def test_local_view_updates_while_offline(self, orchestrator, ledger):
        """Test verdicts reflect local votes before sync."""
        ledger.online = False
        for user in ("u1", "u2", "u3"):
            await orchestrator.submit_vote(vote(user=user, choice="unsafe"))

        verdict = await orchestrator.get_verdict(TARGET)

        assert verdict.status == VerdictStatus.UNSAFE

    @pytest.mark.asyncio
    async def test_validation_error_not_queued(self, orchestrator):
        """Test malformed votes raise and are never queued."""
        with pytest.raises(ValidationError):
            await orchestrator.submit_vote(vote(choice="maybe"))

        assert orchestrator.queue.depth == 0

    @pytest.mark.asyncio
    async def test_rate_limited(self, orchestrator):
        """Test the fourth vote inside the window is rejected."""
        for target in ("a", "b", "c"):
            await orchestrator.submit_vote(vote(target=target))

        with pytest.raises(RateLimited):
            await orchestrator.submit_vote(vote(target="d"))

    @pytest.mark.asyncio
    async def test_retract_online(self, orchestrator, ledger):
        """Test retraction removes the ledger document."""
        await orchestrator.submit_vote(vote())

        outcome = await orchestrator.retract_vote("u1", TARGET)

        assert outcome.queued is False
        assert outcome.rating.total_votes == 0
        assert ledger.documents(votes_path(TARGET)) == {}
        assert ledger.documents("targets")[TARGET]["total_votes"] == 0

    @pytest.mark.asyncio
    async def test_queued_writes_keep_order(self, orchestrator, ledger):
        """Test a write made while others are pending goes behind them."""
        ledger.online = False
        await orchestrator.submit_vote(vote(user="u1"))
        ledger.online = True

        outcome = await orchestrator.submit_vote(vote(user="u2"))

        assert outcome.queued is True
        assert [m.payload["user_id"] for m in orchestrator.queue.pending()] == ["u1", "u2"]


class TestWriteOrdering:
    """Tests for per-user, per-target write ordering."""

    @pytest.mark.asyncio
    async def test_concurrent_vote_and_retract_agree(self, config, store):
        """Test a retraction racing a slow vote write leaves no vote anywhere."""
        ledger = SlowCreateLedger()
        orch = TrustOrchestrator.from_config(config, store, ledger)

        await asyncio.gather(orch.submit_vote(vote()), orch.retract_vote("u1", TARGET))

        assert orch.aggregator.get_user_vote("u1", TARGET) is None
        assert "u1" not in ledger.documents(votes_path(TARGET))
        assert ledger.documents("targets")[TARGET]["total_votes"] == 0
        assert orch.queue.depth == 0

    @pytest.mark.asyncio
    async def test_concurrent_retract_and_vote_agree(self, config, store):
        """Test a vote racing a retraction ends with the vote on both sides."""
        ledger = SlowCreateLedger()
        orch = TrustOrchestrator.from_config(config, store, ledger)
        await orch.submit_vote(vote(choice="unsafe"))

        await asyncio.gather(
            orch.retract_vote("u1", TARGET),
            orch.submit_vote(vote(choice="safe", ts=time.time() + 1)),
        )

        assert orch.aggregator.get_user_vote("u1", TARGET).choice == VoteChoice.SAFE
        assert ledger.documents(votes_path(TARGET))["u1"]["choice"] == "safe"

    @pytest.mark.asyncio
    async def test_other_users_not_blocked(self, config, store):
        """Test writes for different users proceed independently."""
        ledger = SlowCreateLedger()
        orch = TrustOrchestrator.from_config(config, store, ledger)

        await asyncio.gather(*(orch.submit_vote(vote(user=f"u{i}")) for i in range(3)))

        assert set(ledger.documents(votes_path(TARGET))) == {"u0", "u1", "u2"}
        assert orch._key_locks == {}

    @pytest.mark.asyncio
    async def test_rejected_queued_vote_does_not_block(self, orchestrator, ledger):
        """Test a queued vote the ledger refuses is dead-lettered and later writes sync."""
        ledger.online = False
        await orchestrator.submit_vote(vote(user="u1"))
        await orchestrator.submit_vote(vote(user="u2"))
        ledger.online = True
        create = ledger.create

        async def refuse_u1(collection_path, doc_id, data):
            if doc_id == "u1":
                raise ValidationError("refused")
            await create(collection_path, doc_id, data)

        ledger.create = refuse_u1

        result = await orchestrator.sync_all()

        assert result == {"synced": 1, "discarded": 0, "dead_lettered": 1, "remaining": 0}
        assert set(ledger.documents(votes_path(TARGET))) == {"u2"}
        assert len(orchestrator.health()["warnings"]) == 1


class TestConflicts:
    """Tests for conflict resolution on replay."""

    @pytest.mark.asyncio
    async def test_newer_server_vote_discards_queued(self, orchestrator, ledger, config):
        """Test a queued vote older than the server copy is dropped silently."""
        now = time.time()
        ledger.online = False
        await orchestrator.submit_vote(vote(choice="safe", ts=now - 100))
        ledger.seed(votes_path(TARGET), "u1", vote(choice="unsafe", ts=now).to_dict())
        ledger.online = True

        result = await orchestrator.sync_all()

        assert result["discarded"] == 1
        assert result["synced"] == 0
        assert ledger.documents(votes_path(TARGET))["u1"]["choice"] == "unsafe"
        assert orchestrator.health()["warnings"] == []
        events = [json.loads(l)["event"] for l in config.audit_path.read_text().splitlines()]
        assert "trust_conflict_discarded" in events

    @pytest.mark.asyncio
    async def test_queued_retraction_loses_to_newer_vote(self, orchestrator, ledger):
        """Test a retraction older than the server vote is dropped."""
        ledger.online = False
        await orchestrator.retract_vote("u1", TARGET)
        ledger.seed(votes_path(TARGET), "u1", vote(ts=time.time() + 60).to_dict())
        ledger.online = True

        result = await orchestrator.sync_all()

        assert result["discarded"] == 1
        assert "u1" in ledger.documents(votes_path(TARGET))

    @pytest.mark.asyncio
    async def test_dead_letter_warning_once(self, config, store, ledger):
        """Test dead-lettered mutations surface exactly one health warning."""
        config.queue_max_attempts = 1
        orch = TrustOrchestrator.from_config(config, store, ledger)
        ledger.online = False
        await orch.submit_vote(vote())

        await orch.sync_all()
        result = await orch.sync_all()

        assert result["dead_lettered"] == 1
        assert len(orch.health()["warnings"]) == 1
        assert orch.health()["warnings"] == []
        assert orch.health()["dead_letters"] == 1


class TestVerdicts:
    """Tests for get_verdict and overrides."""

    @pytest.mark.asyncio
    async def test_override_persists_until_cleared(self, orchestrator, scanner):
        """Test a stored override wins until explicitly cleared."""
        await orchestrator.refresh_external(TARGET, "https://example.com")

        await orchestrator.set_override(TARGET, VoteChoice.UNSAFE)
        verdict = await orchestrator.get_verdict(TARGET)
        assert verdict.status == VerdictStatus.UNSAFE
        assert verdict.user_overridden is True

        await orchestrator.set_override(TARGET, None)
        verdict = await orchestrator.get_verdict(TARGET)
        assert verdict.status == VerdictStatus.SAFE
        assert verdict.user_overridden is False

    @pytest.mark.asyncio
    async def test_explicit_override_argument(self, orchestrator):
        """Test an override argument is honored without persisting."""
        verdict = await orchestrator.get_verdict(TARGET, user_override=VoteChoice.SAFE)

        assert verdict.status == VerdictStatus.SAFE
        assert (await orchestrator.get_verdict(TARGET)).status == VerdictStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_invalid_override_argument(self, orchestrator):
        """Test get_verdict rejects an override that is not a choice."""
        with pytest.raises(ValidationError):
            await orchestrator.get_verdict(TARGET, user_override="maybe")

        verdict = await orchestrator.get_verdict(TARGET, user_override="unsafe")
        assert verdict.status == VerdictStatus.UNSAFE

    @pytest.mark.asyncio
    async def test_invalid_override_rejected(self, orchestrator):
        """Test set_override validates the choice."""
        with pytest.raises(ValidationError):
            await orchestrator.set_override(TARGET, "maybe")

    @pytest.mark.asyncio
    async def test_unknown_when_everything_fails(self, config, ledger):
        """Test get_verdict returns unknown when every source fails."""
        orch = TrustOrchestrator.from_config(config, FailingStore(), ledger)
        ledger.online = False

        verdict = await orch.get_verdict(TARGET)

        assert verdict.status == VerdictStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_combiner_failure_is_unknown(self, orchestrator):
        """Test unexpected errors fall back to unknown."""
        with patch.object(orchestrator.combiner, "combine", side_effect=RuntimeError("boom")):
            verdict = await orchestrator.get_verdict(TARGET)

        assert verdict.status == VerdictStatus.UNKNOWN
        assert verdict.source_breakdown.rule == "error"

    @pytest.mark.asyncio
    async def test_snapshot_survives_restart(self, config, store, ledger):
        """Test a new process sees the last rating before any network contact."""
        first = TrustOrchestrator.from_config(config, store, ledger)
        await first.submit_vote(vote())

        second = TrustOrchestrator.from_config(config, store, MemoryLedger())
        verdict = await second.get_verdict(TARGET)

        assert verdict.status == VerdictStatus.SAFE
        assert verdict.source_breakdown.community.total_votes == 1

    @pytest.mark.asyncio
    async def test_blended_verdict(self, orchestrator, ledger):
        """Test external and community inputs are blended."""
        for i in range(3):
            ledger.seed(votes_path(TARGET), f"r{i}", vote(user=f"r{i}", choice="safe").to_dict())
        await orchestrator.refresh_rating(TARGET)
        await orchestrator.refresh_external(TARGET, "https://example.com")

        verdict = await orchestrator.get_verdict(TARGET)

        assert verdict.status == VerdictStatus.SAFE
        assert verdict.source_breakdown.rule == "blended"


class TestExternal:
    """Tests for refresh_external."""

    @pytest.mark.asyncio
    async def test_result_cached_and_snapshotted(self, orchestrator, scanner, store):
        """Test scanner results are kept in cache and the local store."""
        result = await orchestrator.refresh_external(TARGET, "https://example.com")

        assert result.is_secure is True
        scanner.scan.assert_awaited_once_with("https://example.com")
        assert await store.get("snapshot:external:" + TARGET) is not None

    @pytest.mark.asyncio
    async def test_failure_returns_last_known(self, orchestrator, scanner):
        """Test scanner failures fall back to the previous result."""
        await orchestrator.refresh_external(TARGET, "https://example.com")
        scanner.scan.side_effect = ScannerError("forbidden", status_code=403)

        result = await orchestrator.refresh_external(TARGET, "https://example.com")

        assert result is not None
        assert result.is_secure is True

    @pytest.mark.asyncio
    async def test_failure_without_history_is_none(self, orchestrator, scanner):
        """Test a first-time failure yields None, not an error."""
        scanner.scan.side_effect = ScannerError("forbidden", status_code=403)

        assert await orchestrator.refresh_external(TARGET, "https://example.com") is None


class TestScans:
    """Tests for record_scan and history."""

    @pytest.mark.asyncio
    async def test_record_scan(self, orchestrator, ledger, scanner):
        """Test scans go to local history, the ledger and the scanner."""
        scan = ScanRecord(user_id="u1", payload="https://example.com", target_hash=TARGET)

        outcome = await orchestrator.record_scan(scan)

        assert outcome.queued is False
        assert scan.scan_id in ledger.documents(scans_path("u1"))
        scanner.scan.assert_awaited_once()
        history = await orchestrator.get_scan_history("u1")
        assert [r.scan_id for r in history] == [scan.scan_id]

    @pytest.mark.asyncio
    async def test_record_scan_offline(self, orchestrator, ledger, scanner):
        """Test offline scans are queued and still kept locally."""
        ledger.online = False
        scan = ScanRecord(user_id="u1", payload="https://example.com", target_hash=TARGET)

        outcome = await orchestrator.record_scan(scan, check_external=False)

        assert outcome.queued is True
        scanner.scan.assert_not_awaited()
        assert len(await orchestrator.get_scan_history()) == 1

    @pytest.mark.asyncio
    async def test_invalid_scan(self, orchestrator):
        """Test scan validation."""
        scan = ScanRecord(user_id="u1", payload="x", target_hash=TARGET, scan_method="telepathy")

        with pytest.raises(ValidationError):
            await orchestrator.record_scan(scan)

    @pytest.mark.asyncio
    async def test_history_newest_first(self, orchestrator):
        """Test history ordering and limit."""
        for i in range(3):
            await orchestrator.record_scan(
                ScanRecord(user_id="u1", payload="p", target_hash=TARGET, timestamp=1000.0 + i),
                check_external=False,
            )

        history = await orchestrator.get_scan_history("u1", limit=2)

        assert [r.timestamp for r in history] == [1002.0, 1001.0]


class TestLiveUpdates:
    """Tests for refresh_rating, watch_target and the live channel."""

    @pytest.mark.asyncio
    async def test_refresh_rating_merges(self, orchestrator, ledger):
        """Test remote votes are merged into the local view."""
        ledger.seed(votes_path(TARGET), "r1", vote(user="r1", choice="unsafe").to_dict())

        rating = await orchestrator.refresh_rating(TARGET)

        assert rating.unsafe_votes == 1

    @pytest.mark.asyncio
    async def test_refresh_rating_keeps_pending_vote(self, orchestrator, ledger):
        """Test a refresh does not drop a vote that has not synced yet."""
        ledger.online = False
        await orchestrator.submit_vote(vote(user="me", choice="unsafe"))
        ledger.online = True
        ledger.seed(votes_path(TARGET), "r1", vote(user="r1").to_dict())

        rating = await orchestrator.refresh_rating(TARGET)

        assert rating.total_votes == 2
        assert rating.unsafe_votes == 1

    @pytest.mark.asyncio
    async def test_watch_target(self, orchestrator, ledger):
        """Test ledger changes by other clients update the rating."""
        assert await orchestrator.watch_target(TARGET)

        await ledger.create(votes_path(TARGET), "other", vote(user="other", choice="unsafe").to_dict())

        verdict = await orchestrator.get_verdict(TARGET)
        assert verdict.source_breakdown.community.unsafe_votes == 1

    @pytest.mark.asyncio
    async def test_watch_offline(self, orchestrator, ledger):
        """Test watching while offline reports failure instead of raising."""
        ledger.subscribe = lambda *args: (_ for _ in ()).throw(ConnectionError("offline"))

        assert await orchestrator.watch_target(TARGET) is False

    @pytest.mark.asyncio
    async def test_live_message_from_peer(self, orchestrator, channel):
        """Test rating updates from other clients land in the cache."""
        rating = CommunityRating(target_hash=TARGET, safe_votes=9, total_votes=9, confidence=1.0)

        await channel.publish("rating_update", {"origin": "peer", "rating": rating.to_dict()})

        assert (await orchestrator.get_verdict(TARGET)).status == VerdictStatus.SAFE

    @pytest.mark.asyncio
    async def test_publishes_own_updates(self, orchestrator, channel):
        """Test local votes are broadcast with our origin id."""
        received = []
        channel.subscribe("rating_update", received.append)

        await orchestrator.submit_vote(vote())

        assert received[0]["origin"] == orchestrator.origin_id
        assert received[0]["rating"]["total_votes"] == 1


class TestHealth:
    """Tests for health reporting."""

    @pytest.mark.asyncio
    async def test_health_shape(self, orchestrator):
        """Test health reports every section."""
        health = orchestrator.health()

        assert set(health) == {"breakers", "available", "cache_stats", "queue_depth", "dead_letters", "warnings"}
        assert health["available"] == {"reputationScanner": True, "remoteLedger": True}

    @pytest.mark.asyncio
    async def test_ledger_breaker_opens(self, orchestrator, ledger):
        """Test repeated ledger failures show up as unavailable."""
        ledger.online = False
        for _ in range(5):
            await orchestrator.refresh_rating(TARGET)

        health = orchestrator.health()

        assert health["available"]["remoteLedger"] is False
        assert health["breakers"]["remoteLedger"]["state"] == "open"

    @pytest.mark.asyncio
    async def test_shutdown_final_drain(self, config, store, ledger):
        """Test shutdown flushes the queue when the ledger is back."""
        orch = TrustOrchestrator.from_config(config, store, ledger)
        await orch.initialize()
        ledger.online = False
        await orch.submit_vote(vote())
        ledger.online = True

        await orch.shutdown()

        assert orch.queue.depth == 0
        assert "u1" in ledger.documents(votes_path(TARGET))
