"""
MutationQueue - Durable offline queue for ledger writes.

Manages pending mutations with:
- Immediate persistence to the Local Store on every change
- Strict FIFO replay; a failing head stops the drain and keeps order
- Idempotent replay (ids already applied or pending are ignored)
- Dead-lettering after max age, max attempts, or a permanent rejection
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Union

from scanguard.config.defaults import (
    DEPENDENCY_REMOTE_LEDGER,
    QUEUE_APPLIED_ID_HISTORY,
    QUEUE_APPLIED_KEY,
    QUEUE_DEAD_LETTER_KEY,
    QUEUE_DRAIN_INTERVAL_SECONDS,
    QUEUE_MAX_AGE_SECONDS,
    QUEUE_MAX_ATTEMPTS,
    QUEUE_PENDING_KEY,
)
from scanguard.errors import CircuitOpen, ConflictDiscarded, ValidationError

if TYPE_CHECKING:
    from scanguard.gateway import ResilienceGateway
    from scanguard.ports import LocalStore
    from scanguard.trust.auditor import TrustAuditor

logger = logging.getLogger(__name__)


class MutationKind(str, Enum):
    VOTE = "vote"
    RETRACT_VOTE = "retractVote"
    SCAN_RECORD = "scanRecord"


@dataclass
class QueuedMutation:
    """Single pending ledger write."""

    kind: MutationKind
    payload: Dict[str, Any]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    enqueued_at: float = field(default_factory=time.time)
    attempts: int = 0
    last_error: Optional[str] = None

    def __post_init__(self):
        self.kind = MutationKind(self.kind)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueuedMutation":
        return cls(
            kind=data["kind"],
            payload=data["payload"],
            id=data["id"],
            enqueued_at=float(data["enqueued_at"]),
            attempts=int(data.get("attempts", 0)),
            last_error=data.get("last_error"),
        )


@dataclass
class QueueConfig:
    drain_interval: float = QUEUE_DRAIN_INTERVAL_SECONDS
    max_age: float = QUEUE_MAX_AGE_SECONDS
    max_attempts: int = QUEUE_MAX_ATTEMPTS
    applied_history: int = QUEUE_APPLIED_ID_HISTORY


@dataclass
class DrainResult:
    applied: int = 0
    discarded: int = 0
    dead_lettered: int = 0
    remaining: int = 0
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


Applier = Callable[[QueuedMutation], Union[Any, Awaitable[Any]]]


class MutationQueue:
    """
    FIFO of QueuedMutation backed by a LocalStore.

    Flow:
    1. load() - Restore pending, dead letters and applied ids after restart
    2. enqueue() - Append and persist
    3. drain(apply) - Replay head-first through the gateway until empty or a failure
    """

    def __init__(
        self,
        store: "LocalStore",
        gateway: Optional["ResilienceGateway"] = None,
        config: Optional[QueueConfig] = None,
        auditor: Optional["TrustAuditor"] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.config = config or QueueConfig()
        self.auditor = auditor

        self._pending: List[QueuedMutation] = []
        self._dead_letters: List[QueuedMutation] = []
        self._applied_ids: deque[str] = deque(maxlen=self.config.applied_history)
        self._warnings: List[str] = []
        self._draining = False
        self._last_drain_at: Optional[float] = None

        self._lock = threading.Lock()
        self._persist_lock = asyncio.Lock()
        self._loop_task: Optional[asyncio.Task] = None

    # Persistence

    async def load(self) -> None:
        """Restore queue state from the Local Store, preserving order."""
        pending = await self._read_list(QUEUE_PENDING_KEY)
        dead = await self._read_list(QUEUE_DEAD_LETTER_KEY)
        applied_raw = await self.store.get(QUEUE_APPLIED_KEY)
        applied = json.loads(applied_raw) if applied_raw else []

        with self._lock:
            self._pending = [QueuedMutation.from_dict(d) for d in pending]
            self._dead_letters = [QueuedMutation.from_dict(d) for d in dead]
            self._applied_ids.clear()
            self._applied_ids.extend(applied)
        logger.info(
            "mutation_queue_loaded",
            extra={
                "event": "mutation_queue_loaded",
                "pending": len(pending),
                "dead_letters": len(dead),
            }
        )

    async def _read_list(self, key: str) -> List[Dict[str, Any]]:
        raw = await self.store.get(key)
        return json.loads(raw) if raw else []

    async def _persist(self) -> None:
        async with self._persist_lock:
            with self._lock:
                pending = [m.to_dict() for m in self._pending]
                dead = [m.to_dict() for m in self._dead_letters]
                applied = list(self._applied_ids)
            await self.store.set(QUEUE_PENDING_KEY, json.dumps(pending).encode("utf-8"))
            await self.store.set(QUEUE_DEAD_LETTER_KEY, json.dumps(dead).encode("utf-8"))
            await self.store.set(QUEUE_APPLIED_KEY, json.dumps(applied).encode("utf-8"))

    # Queue operations

    async def enqueue(
        self,
        mutation: Union[QueuedMutation, MutationKind, str],
        payload: Optional[Dict[str, Any]] = None,
    ) -> QueuedMutation:
        """Append a mutation and persist. Known ids are ignored."""
        if not isinstance(mutation, QueuedMutation):
            mutation = QueuedMutation(kind=mutation, payload=payload or {})

        with self._lock:
            known = mutation.id in self._applied_ids or any(
                m.id == mutation.id for m in self._pending
            )
            if not known:
                self._pending.append(mutation)
            depth = len(self._pending)

        if known:
            logger.debug(f"Mutation {mutation.id} already known, skipping enqueue")
            return mutation

        await self._persist()
        logger.info(
            "mutation_queued",
            extra={
                "event": "mutation_queued",
                "mutation_id": mutation.id,
                "kind": mutation.kind.value,
                "depth": depth,
            }
        )
        return mutation

    def _remove(self, mutation_id: str) -> None:
        with self._lock:
            self._pending = [m for m in self._pending if m.id != mutation_id]

    def _is_expired(self, mutation: QueuedMutation, now: float) -> Optional[str]:
        if now - mutation.enqueued_at > self.config.max_age:
            return "max_age"
        if mutation.attempts >= self.config.max_attempts:
            return "max_attempts"
        return None

    async def _dead_letter(self, mutation: QueuedMutation, reason: str) -> None:
        with self._lock:
            self._pending = [m for m in self._pending if m.id != mutation.id]
            self._dead_letters.append(mutation)
            self._warnings.append(
                f"Mutation {mutation.id} ({mutation.kind.value}) was dropped after "
                f"{mutation.attempts} attempts ({reason}); it will not be synced."
            )
        await self._persist()
        logger.warning(
            "mutation_dead_lettered",
            extra={
                "event": "mutation_dead_lettered",
                "mutation_id": mutation.id,
                "kind": mutation.kind.value,
                "reason": reason,
                "attempts": mutation.attempts,
                "last_error": mutation.last_error,
            }
        )
        if self.auditor:
            await self.auditor.log_dead_lettered(mutation.id, mutation.kind.value, reason)

    async def _apply(self, apply: Applier, mutation: QueuedMutation) -> Any:
        if self.gateway is not None:
            return await self.gateway.call(DEPENDENCY_REMOTE_LEDGER, apply, mutation)
        result = apply(mutation)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def drain(self, apply: Applier) -> DrainResult:
        """
        Replay pending mutations head-first.

        Args:
            apply: Callable performing one mutation against the ledger

        Returns:
            DrainResult; skipped=True if another drain was already running
        """
        with self._lock:
            if self._draining:
                return DrainResult(remaining=len(self._pending), skipped=True)
            self._draining = True

        result = DrainResult()
        try:
            while True:
                with self._lock:
                    head = self._pending[0] if self._pending else None
                if head is None:
                    break

                reason = self._is_expired(head, time.time())
                if reason:
                    await self._dead_letter(head, reason)
                    result.dead_lettered += 1
                    continue

                try:
                    await self._apply(apply, head)
                except ConflictDiscarded as e:
                    self._remove(head.id)
                    await self._persist()
                    result.discarded += 1
                    logger.warning(
                        "mutation_conflict_discarded",
                        extra={
                            "event": "mutation_conflict_discarded",
                            "mutation_id": head.id,
                            "kind": head.kind.value,
                            "reason": e.reason,
                        }
                    )
                    if self.auditor:
                        await self.auditor.log_conflict_discarded(
                            head.id, head.kind.value, e.reason
                        )
                    continue
                except (ValidationError, KeyError, TypeError, ValueError) as e:
                    # Malformed or refused by the ledger; never retried
                    with self._lock:
                        head.last_error = str(e) or type(e).__name__
                    await self._dead_letter(head, "rejected")
                    result.dead_lettered += 1
                    continue
                except CircuitOpen as e:
                    logger.debug(f"Drain paused, ledger unavailable: {e}")
                    break
                except Exception as e:
                    with self._lock:
                        head.attempts += 1
                        head.last_error = str(e) or type(e).__name__
                    await self._persist()
                    logger.info(
                        "mutation_replay_failed",
                        extra={
                            "event": "mutation_replay_failed",
                            "mutation_id": head.id,
                            "attempts": head.attempts,
                            "error": head.last_error,
                        }
                    )
                    break

                with self._lock:
                    self._pending = [m for m in self._pending if m.id != head.id]
                    self._applied_ids.append(head.id)
                await self._persist()
                result.applied += 1
        finally:
            with self._lock:
                self._draining = False
                self._last_drain_at = time.time()
                result.remaining = len(self._pending)

        if result.applied or result.discarded or result.dead_lettered:
            logger.info(
                "mutation_queue_drained",
                extra={"event": "mutation_queue_drained", **result.to_dict()}
            )
        return result

    # Inspection

    @property
    def depth(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def is_draining(self) -> bool:
        return self._draining

    @property
    def dead_letters(self) -> List[QueuedMutation]:
        with self._lock:
            return list(self._dead_letters)

    def pending(self) -> List[QueuedMutation]:
        """Snapshot of pending mutations in replay order."""
        with self._lock:
            return list(self._pending)

    def was_applied(self, mutation_id: str) -> bool:
        with self._lock:
            return mutation_id in self._applied_ids

    def take_warnings(self) -> List[str]:
        """Return and clear warnings not yet shown to the user."""
        with self._lock:
            warnings, self._warnings = self._warnings, []
        return warnings

    def get_status(self) -> dict:
        """Get queue status."""
        with self._lock:
            return {
                "pending": len(self._pending),
                "dead_letters": len(self._dead_letters),
                "draining": self._draining,
                "drain_interval_seconds": self.config.drain_interval,
                "last_drain_at": self._last_drain_at,
                "sample_pending": [
                    {"id": m.id, "kind": m.kind.value, "attempts": m.attempts}
                    for m in self._pending[:5]
                ],
            }

    # Background drain

    def start(self, apply: Applier) -> asyncio.Task:
        """Start the periodic drain on the running loop (idempotent)."""
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._drain_loop(apply))
        return self._loop_task

    async def stop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

    async def _drain_loop(self, apply: Applier) -> None:
        logger.debug(f"Drain loop started (every {self.config.drain_interval}s)")
        while True:
            try:
                await asyncio.sleep(self.config.drain_interval)
                if self.depth:
                    await self.drain(apply)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Drain loop error: {e}")
