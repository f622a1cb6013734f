"""
TrustAuditor - Audit logging with levels and sampling.

Append-only JSONL record of decisions a user might later ask about:
discarded and dead-lettered mutations, override changes, and a sample of
computed verdicts.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from datetime import datetime, timezone
from enum import IntEnum
from pathlib import Path
from typing import Any, Optional

import aiofiles

from scanguard.config.defaults import AUDIT_DEFAULT_LEVEL, AUDIT_DEFAULT_SAMPLE_RATE

logger = logging.getLogger(__name__)


class AuditLevel(IntEnum):
    """Audit event levels with numeric values for comparison."""
    DEBUG = 10
    INFO = 20
    WARN = 30
    ERROR = 40


class TrustAuditor:
    """
    Audit trust decisions with level control and async file writes.

    - DEBUG: Every verdict (sampled)
    - INFO: Override changes
    - WARN: Conflicts and dead letters
    - ERROR: Errors only
    """

    def __init__(
        self,
        audit_path: Optional[Path] = None,
        level: AuditLevel = AuditLevel[AUDIT_DEFAULT_LEVEL],
        sample_rate: float = AUDIT_DEFAULT_SAMPLE_RATE,
    ):
        self.audit_path = Path(audit_path) if audit_path else None
        self.level = level
        self.sample_rate = sample_rate
        self._lock = asyncio.Lock()

    def set_level(self, level: AuditLevel) -> None:
        """Change audit level at runtime."""
        self.level = level

    async def log(
        self,
        event: str,
        level: AuditLevel = AuditLevel.DEBUG,
        **kwargs: Any,
    ) -> None:
        """Log audit event with level and sampling."""
        if level < self.level:
            return

        # DEBUG is high frequency
        if level == AuditLevel.DEBUG and random.random() > self.sample_rate:
            return

        if not self.audit_path:
            logger.debug("No audit path configured, skipping audit log")
            return

        self.audit_path.parent.mkdir(parents=True, exist_ok=True)

        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": f"trust_{event}",
            "level": level.name.lower(),
            **kwargs,
        }

        async with self._lock:
            try:
                async with aiofiles.open(self.audit_path, "a") as f:
                    await f.write(json.dumps(record) + "\n")
            except OSError as e:
                logger.error(f"Failed to write audit log: {e}")

    async def log_conflict_discarded(self, mutation_id: str, kind: str, reason: str) -> None:
        """Log a queued mutation that lost to a newer server write."""
        await self.log(
            "conflict_discarded",
            AuditLevel.WARN,
            mutation_id=mutation_id,
            kind=kind,
            reason=reason,
        )

    async def log_dead_lettered(self, mutation_id: str, kind: str, reason: str) -> None:
        await self.log(
            "dead_lettered",
            AuditLevel.WARN,
            mutation_id=mutation_id,
            kind=kind,
            reason=reason,
        )

    async def log_override(self, target_hash: str, choice: Optional[str]) -> None:
        """Log an explicit user override being set or cleared."""
        await self.log(
            "override_set" if choice else "override_cleared",
            AuditLevel.INFO,
            target=target_hash,
            choice=choice,
        )

    async def log_verdict(
        self,
        target_hash: str,
        status: str,
        rule: str,
        combined_score: Optional[float] = None,
    ) -> None:
        await self.log(
            "verdict",
            AuditLevel.DEBUG,
            target=target_hash,
            status=status,
            rule=rule,
            combined_score=combined_score,
        )
