"""Interfaces for the collaborators scanguard consumes.

Reference adapters live in stores.py, ledger.py, live_channel.py and
scanner.py. Anything structurally compatible can be injected instead.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence, Tuple, Union

from scanguard.trust.models import ExternalScanResult

# (field, op, value), op one of ==, !=, <, <=, >, >=
Filter = Tuple[str, str, Any]
Unsubscribe = Callable[[], None]
Callback = Callable[[Any], Union[None, Awaitable[None]]]


class LocalStore(Protocol):
    """Durable key/value bytes store on the device."""

    async def get(self, key: str) -> Optional[bytes]: ...

    async def set(self, key: str, value: bytes) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def list_keys(self, prefix: str) -> list[str]: ...


class RemoteLedger(Protocol):
    """Shared document store. Collection paths look like "targets/{hash}/votes"."""

    async def create(self, collection_path: str, doc_id: str, data: dict) -> None: ...

    async def update(self, collection_path: str, doc_id: str, data: dict) -> None: ...

    async def delete(self, collection_path: str, doc_id: str) -> None: ...

    async def get(self, collection_path: str, doc_id: str) -> Optional[dict]: ...

    async def query(
        self,
        collection_path: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict]: ...

    def subscribe(self, path: str, callback: Callback) -> Unsubscribe: ...


class ReputationScanner(Protocol):
    """External reputation service. Raises on failure."""

    async def scan(self, identifier: str) -> ExternalScanResult: ...


class LiveChannel(Protocol):
    """Best-effort topic broadcast."""

    async def publish(self, topic: str, message: dict) -> None: ...

    def subscribe(self, topic: str, callback: Callback) -> Unsubscribe: ...
