"""
Event Bus
=========

Minimal async pub/sub for in-process notifications. One bus lives in each
RouterContext; the failover loop publishes, the local store subscribes.

[EVENTS]
- "attempt_recorded": AttemptRecord.to_dict()
- "response_ready":   ChatResponse summary
- "funds_topped_up":  {"amount", "tx_id", "balance"}
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Union

logger = logging.getLogger(__name__)

Callback = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]

ATTEMPT_RECORDED = "attempt_recorded"
RESPONSE_READY = "response_ready"
FUNDS_TOPPED_UP = "funds_topped_up"


class EventBus:
    """Async event bus; a failing subscriber never breaks the publisher."""

    def __init__(self):
        self._subscribers: Dict[str, List[Callback]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, event_name: str, callback: Callback) -> None:
        async with self._lock:
            self._subscribers.setdefault(event_name, []).append(callback)

    async def unsubscribe(self, event_name: str, callback: Callback) -> None:
        async with self._lock:
            if event_name in self._subscribers:
                self._subscribers[event_name] = [cb for cb in self._subscribers[event_name] if cb != callback]

    async def broadcast(self, event_name: str, payload: Dict[str, Any]) -> None:
        async with self._lock:
            callbacks = list(self._subscribers.get(event_name, []))
        for cb in callbacks:
            try:
                result = cb(payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning(f"[EVENTS] Subscriber for {event_name} failed: {e}")

    def subscriber_count(self, event_name: str) -> int:
        return len(self._subscribers.get(event_name, []))
