"""In-process LiveChannel: topic fan-out to local subscribers."""

from __future__ import annotations

import inspect
import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class InProcessLiveChannel:
    """
    Best-effort broadcast between components in one process.

    Callbacks may be sync or async. A failing callback is logged and does
    not stop delivery to the remaining subscribers.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[Callable[[Any], Any]]] = defaultdict(list)
        self._lock = threading.Lock()
        self.published = 0

    async def publish(self, topic: str, message: dict) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(topic, ()))
            self.published += 1
        for callback in callbacks:
            try:
                result = callback(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Live channel subscriber failed on '{topic}': {e}")

    def subscribe(self, topic: str, callback: Callable[[Any], Any]) -> Callable[[], None]:
        with self._lock:
            self._subscribers[topic].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                try:
                    self._subscribers[topic].remove(callback)
                except ValueError:
                    pass

        return unsubscribe

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, ()))
