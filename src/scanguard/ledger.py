"""
MemoryLedger - In-process RemoteLedger.

Documents live in a flat map keyed by collection path and doc id. Setting
`online = False` makes every call raise ConnectionError, which is how the
offline paths are exercised without a real backend.
"""

from __future__ import annotations

import copy
import inspect
import logging
import operator
import threading
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from scanguard.config.defaults import LEDGER_CALL_LOG_SIZE

logger = logging.getLogger(__name__)

_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


class MemoryLedger:
    """Document store with queries and change subscriptions."""

    def __init__(self, call_log_size: int = LEDGER_CALL_LOG_SIZE):
        self.online = True
        self._collections: Dict[str, Dict[str, dict]] = defaultdict(dict)
        self._subscribers: Dict[str, List[Callable[[Any], Any]]] = defaultdict(list)
        self._lock = threading.Lock()
        # Most recent (op, path) pairs, oldest dropped first
        self.calls: Deque[Tuple[str, str]] = deque(maxlen=call_log_size)

    def _check_online(self, op: str, path: str) -> None:
        self.calls.append((op, path))
        if not self.online:
            raise ConnectionError(f"Ledger offline ({op} {path})")

    @staticmethod
    def _norm(path: str) -> str:
        return path.strip("/")

    async def create(self, collection_path: str, doc_id: str, data: dict) -> None:
        path = self._norm(collection_path)
        self._check_online("create", path)
        with self._lock:
            self._collections[path][doc_id] = copy.deepcopy(data)
        await self._notify(path, doc_id)

    async def update(self, collection_path: str, doc_id: str, data: dict) -> None:
        """Merge data into the document, creating it if absent."""
        path = self._norm(collection_path)
        self._check_online("update", path)
        with self._lock:
            doc = self._collections[path].setdefault(doc_id, {})
            doc.update(copy.deepcopy(data))
        await self._notify(path, doc_id)

    async def delete(self, collection_path: str, doc_id: str) -> None:
        path = self._norm(collection_path)
        self._check_online("delete", path)
        with self._lock:
            existed = self._collections[path].pop(doc_id, None) is not None
        if existed:
            await self._notify(path, doc_id)

    async def get(self, collection_path: str, doc_id: str) -> Optional[dict]:
        path = self._norm(collection_path)
        self._check_online("get", path)
        with self._lock:
            doc = self._collections.get(path, {}).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    async def query(
        self,
        collection_path: str,
        filters: Sequence[Tuple[str, str, Any]] = (),
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[dict]:
        path = self._norm(collection_path)
        self._check_online("query", path)
        with self._lock:
            docs = [copy.deepcopy(d) for d in self._collections.get(path, {}).values()]
        return self._apply_query(docs, filters, order_by, limit)

    @staticmethod
    def _apply_query(docs, filters, order_by, limit) -> List[dict]:
        for field_name, op, value in filters:
            if op not in _OPERATORS:
                raise ValueError(f"Unsupported filter operator: {op}")
            compare = _OPERATORS[op]
            docs = [d for d in docs if field_name in d and compare(d[field_name], value)]
        if order_by:
            descending = order_by.startswith("-")
            key = order_by.lstrip("-")
            docs.sort(key=lambda d: d.get(key), reverse=descending)
        if limit is not None:
            docs = docs[:limit]
        return docs

    def subscribe(self, path: str, callback: Callable[[Any], Any]) -> Callable[[], None]:
        """
        Watch a collection or document path.

        The callback receives {"path", "doc_id", "docs"} where docs is the
        collection's current contents.
        """
        path = self._norm(path)
        with self._lock:
            self._subscribers[path].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                try:
                    self._subscribers[path].remove(callback)
                except ValueError:
                    pass

        return unsubscribe

    async def _notify(self, collection_path: str, doc_id: str) -> None:
        targets = [collection_path, f"{collection_path}/{doc_id}"]
        with self._lock:
            docs = [copy.deepcopy(d) for d in self._collections.get(collection_path, {}).values()]
            callbacks = [cb for t in targets for cb in self._subscribers.get(t, ())]
        event = {"path": collection_path, "doc_id": doc_id, "docs": docs}
        for callback in callbacks:
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Ledger subscriber failed on '{collection_path}': {e}")

    def documents(self, collection_path: str) -> Dict[str, dict]:
        """Direct snapshot of a collection, bypassing the online switch."""
        with self._lock:
            return copy.deepcopy(self._collections.get(self._norm(collection_path), {}))

    def seed(self, collection_path: str, doc_id: str, data: dict) -> None:
        """Write a document directly, bypassing the online switch and subscribers."""
        with self._lock:
            self._collections[self._norm(collection_path)][doc_id] = copy.deepcopy(data)
