"""Tests for TrustAuditor."""

import json
from unittest.mock import patch

import pytest

from scanguard.trust.auditor import AuditLevel, TrustAuditor


def read_records(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


@pytest.mark.asyncio
async def test_writes_jsonl(tmp_path):
    """Test events are appended as JSON lines."""
    path = tmp_path / "audit" / "audit.jsonl"
    auditor = TrustAuditor(path)

    await auditor.log_conflict_discarded("m1", "vote", "server_newer")
    await auditor.log_dead_lettered("m2", "scanRecord", "max_attempts")

    records = read_records(path)
    assert [r["event"] for r in records] == ["trust_conflict_discarded", "trust_dead_lettered"]
    assert records[0]["mutation_id"] == "m1"
    assert records[0]["level"] == "warn"


@pytest.mark.asyncio
async def test_level_filter(tmp_path):
    """Test events below the configured level are dropped."""
    path = tmp_path / "audit.jsonl"
    auditor = TrustAuditor(path, level=AuditLevel.WARN)

    await auditor.log_override("t1", "unsafe")

    assert not path.exists()


@pytest.mark.asyncio
async def test_override_set_and_cleared(tmp_path):
    """Test override events name the action."""
    path = tmp_path / "audit.jsonl"
    auditor = TrustAuditor(path)

    await auditor.log_override("t1", "unsafe")
    await auditor.log_override("t1", None)

    assert [r["event"] for r in read_records(path)] == ["trust_override_set", "trust_override_cleared"]


@pytest.mark.asyncio
async def test_debug_sampling(tmp_path):
    """Test DEBUG events respect the sample rate."""
    path = tmp_path / "audit.jsonl"
    auditor = TrustAuditor(path, level=AuditLevel.DEBUG, sample_rate=0.5)

    with patch("scanguard.trust.auditor.random.random", return_value=0.9):
        await auditor.log_verdict("t1", "safe", "blended", 0.92)
    with patch("scanguard.trust.auditor.random.random", return_value=0.1):
        await auditor.log_verdict("t1", "safe", "blended", 0.92)

    records = read_records(path)
    assert len(records) == 1
    assert records[0]["combined_score"] == 0.92


@pytest.mark.asyncio
async def test_no_path_is_noop():
    """Test an auditor without a path does nothing."""
    auditor = TrustAuditor(None)

    await auditor.log_dead_lettered("m1", "vote", "max_age")
