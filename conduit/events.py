"""
Conduit Event Bus

Explicit publish/subscribe with one bounded queue per subscriber.
"""

from __future__ import annotations

import asyncio
import fnmatch
import uuid
from collections import deque
from typing import Any, Deque, Dict, List, Optional

import structlog

from conduit.types import WorkflowEvent

logger = structlog.get_logger(__name__)


def pattern_matches(pattern: str, channel: str) -> bool:
    """
    Check if a pattern matches a dotted event type.

    Supports:
    - Exact match: "execution.started"
    - Single segment wildcard (*): "execution.*" matches "execution.started"
    - Multi-segment wildcard (#): "step.#" matches "step.retry.scheduled"
    - Character wildcard (?): "step.fail?d" matches "step.failed"
    """
    return _match_segments(pattern.split("."), channel.split("."))


def _match_segments(pattern_parts: List[str], channel_parts: List[str]) -> bool:
    """Match pattern segments with multi-segment wildcard support."""
    if not pattern_parts:
        return not channel_parts

    if pattern_parts[0] == "#":
        # Matches zero or more segments
        if len(pattern_parts) == 1:
            return True

        for i in range(len(channel_parts) + 1):
            if _match_segments(pattern_parts[1:], channel_parts[i:]):
                return True
        return False

    if not channel_parts:
        return False

    if fnmatch.fnmatchcase(channel_parts[0], pattern_parts[0]):
        return _match_segments(pattern_parts[1:], channel_parts[1:])

    return False


class Subscription:
    """
    A subscriber's handle on the bus.

    Events arrive on `queue`. When the queue is full the oldest event is
    dropped. Closing the subscription unsubscribes it and ends iteration.
    """

    def __init__(self, bus: "EventBus", pattern: str, maxsize: int = 1000):
        self.id = str(uuid.uuid4())
        self.pattern = pattern
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.delivered = 0
        self.closed = False
        self._bus = bus

    def matches(self, event_type: str) -> bool:
        return pattern_matches(self.pattern, event_type)

    def offer(self, item: Optional[WorkflowEvent]) -> None:
        """Enqueue without blocking, dropping the oldest entry when full."""
        if self.queue.full():
            try:
                self.queue.get_nowait()
                self.dropped += 1
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(item)
        if item is not None:
            self.delivered += 1

    async def get(self, timeout: Optional[float] = None) -> Optional[WorkflowEvent]:
        """Next event, or None once the subscription is closed."""
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)

    def get_nowait(self) -> Optional[WorkflowEvent]:
        return self.queue.get_nowait()

    def close(self) -> None:
        """Unsubscribe and wake any reader."""
        if self.closed:
            return
        self.closed = True
        self._bus.unsubscribe(self)
        self.offer(None)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> WorkflowEvent:
        event = await self.queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class EventBus:
    """
    Event bus for workflow lifecycle and external trigger events.

    Features:
    - Pub/sub with glob-style segment patterns
    - Non-blocking publish with drop-oldest backpressure
    - Bounded event history
    """

    def __init__(self, max_history: int = 1000):
        self._subscriptions: Dict[str, Subscription] = {}
        self._history: Deque[WorkflowEvent] = deque(maxlen=max_history or None)
        self._max_history = max_history
        self._stats = {
            "events_published": 0,
            "events_delivered": 0,
            "events_dropped": 0,
            "subscriptions_created": 0,
            "subscriptions_removed": 0,
        }

    def subscribe(self, pattern: str = "#", maxsize: int = 1000) -> Subscription:
        """Register a subscriber for events matching a pattern."""
        subscription = Subscription(self, pattern, maxsize=maxsize)
        self._subscriptions[subscription.id] = subscription
        self._stats["subscriptions_created"] += 1
        logger.debug("subscribed", pattern=pattern, subscription_id=subscription.id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Remove a subscriber."""
        if self._subscriptions.pop(subscription.id, None) is None:
            return False
        self._stats["subscriptions_removed"] += 1
        return True

    def publish(self, event: WorkflowEvent) -> int:
        """Deliver an event to every matching subscriber. Never blocks."""
        self._stats["events_published"] += 1
        if self._max_history:
            self._history.append(event)

        delivered = 0
        for subscription in list(self._subscriptions.values()):
            if not subscription.matches(event.event_type):
                continue
            dropped_before = subscription.dropped
            subscription.offer(event)
            self._stats["events_dropped"] += subscription.dropped - dropped_before
            delivered += 1

        self._stats["events_delivered"] += delivered
        return delivered

    def emit(self, event_type: str, data: Dict[str, Any] = None, **kwargs: Any) -> WorkflowEvent:
        """Build and publish an event."""
        event = WorkflowEvent(event_type=event_type, data=data or {}, **kwargs)
        self.publish(event)
        return event

    def history(self, pattern: Optional[str] = None, limit: Optional[int] = None) -> List[WorkflowEvent]:
        """Recent events, oldest first."""
        events = [e for e in self._history if pattern is None or pattern_matches(pattern, e.event_type)]
        if limit is not None:
            events = events[-limit:]
        return events

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "active_subscriptions": len(self._subscriptions),
            "history_size": len(self._history),
        }
