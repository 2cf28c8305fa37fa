"""
In-process event broadcaster for the live dashboard stream.

The run recorder and approval gate publish a message for every persisted
agent event and every run status change; each SSE connection holds one
subscription with a bounded queue. A slow subscriber loses messages instead
of blocking the publisher.

Publishing is safe from the event loop thread and from worker threads (sync
FastAPI endpoints run in a threadpool): messages are handed to each
subscriber's loop with call_soon_threadsafe.

Usage:
    broadcaster = EventBroadcaster()

    subscription = broadcaster.subscribe()
    try:
        message = await subscription.get(timeout=30)
    finally:
        broadcaster.unsubscribe(subscription)

    broadcaster.publish("agent_event", {"agentId": "agent_002_funding", ...})
"""

import asyncio
import uuid
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_QUEUE_SIZE = 100


class Subscription:
    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int = DEFAULT_QUEUE_SIZE):
        self.id = uuid.uuid4().hex[:12]
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, message: Dict[str, Any]) -> None:
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1

    async def get(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Next message, or None when timeout elapses first."""
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None


class EventBroadcaster:
    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscriptions: List[Subscription] = []
        self._lock = Lock()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self) -> Subscription:
        """Register a subscriber. Must be called from inside the event loop."""
        subscription = Subscription(asyncio.get_running_loop(), self.queue_size)
        with self._lock:
            self._subscriptions.append(subscription)
        logger.debug("Stream subscriber added", subscription_id=subscription.id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
        logger.debug(
            "Stream subscriber removed",
            subscription_id=subscription.id,
            dropped=subscription.dropped,
        )

    def publish(self, message_type: str, data: Dict[str, Any]) -> int:
        """
        Fan a message out to every subscriber.

        Returns the number of subscribers it was handed to.
        """
        message = {
            "type": message_type,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        with self._lock:
            subscriptions = list(self._subscriptions)

        if not subscriptions:
            return 0

        try:
            current_loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            current_loop = None

        delivered = 0
        for subscription in subscriptions:
            if subscription.loop is current_loop:
                subscription.offer(message)
            elif subscription.loop.is_closed():
                continue
            else:
                subscription.loop.call_soon_threadsafe(subscription.offer, message)
            delivered += 1
        return delivered


__all__ = ["EventBroadcaster", "Subscription", "DEFAULT_QUEUE_SIZE"]
