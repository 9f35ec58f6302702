"""Real-time delivery of verification outcomes.

A completed VerificationRecord is pushed to the verifier's live channel
`verifier-{verifierId}` as a `new-verification` event. Delivery is
best-effort: a failed publish is reported to the caller (which logs it)
and never retried.

Channel adapters:
- InMemoryChannel: in-process pub/sub, consumed by the WebSocket endpoint
- PusherChannel: Pusher Channels via the pusher server SDK
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Set

import pusher

from app.core.config import NOTIFY_QUEUE_SIZE, NOTIFY_TIMEOUT_SECONDS
from app.verifier.models import VerificationRecord

log = logging.getLogger(__name__)

NEW_VERIFICATION_EVENT = "new-verification"

# Last item placed on a subscriber queue that the channel has dropped
SUBSCRIPTION_DROPPED = None


class NotificationChannel(ABC):
    """Named-channel, named-event pub/sub port."""

    @abstractmethod
    async def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        """Deliver payload to subscribers of channel. Raises on failure."""

    async def close(self) -> None:
        """Release client resources."""


# =============================================================================
# In-process channel
# =============================================================================


class InMemoryChannel(NotificationChannel):
    """In-process pub/sub with one bounded queue per subscriber.

    Each message is `{"channel", "event", "data"}`. A subscriber whose queue
    is full is considered stale and removed; its queue is then left holding
    only SUBSCRIPTION_DROPPED so the consumer knows to stop.
    """

    def __init__(self, queue_size: Optional[int] = None):
        self.queue_size = queue_size if queue_size is not None else NOTIFY_QUEUE_SIZE
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}

    def subscribe(self, channel: str) -> asyncio.Queue:
        """Create a subscriber queue for a channel."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.setdefault(channel, set()).add(queue)
        log.debug(f"Subscribed to {channel} ({len(self._subscribers[channel])} active)")
        return queue

    def unsubscribe(self, channel: str, queue: asyncio.Queue) -> None:
        """Remove a subscriber queue and drain pending items."""
        subscribers = self._subscribers.get(channel)
        if subscribers is not None:
            subscribers.discard(queue)
            if not subscribers:
                del self._subscribers[channel]
        while not queue.empty():
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                break

    def drop(self, channel: str, queue: asyncio.Queue) -> None:
        """Remove a subscriber and signal it with SUBSCRIPTION_DROPPED."""
        self.unsubscribe(channel, queue)
        queue.put_nowait(SUBSCRIPTION_DROPPED)

    def subscriber_count(self, channel: Optional[str] = None) -> int:
        if channel is not None:
            return len(self._subscribers.get(channel, ()))
        return sum(len(s) for s in self._subscribers.values())

    async def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        message = {"channel": channel, "event": event, "data": payload}
        # Copy so a concurrent unsubscribe can't change the set mid-iteration
        subscribers = list(self._subscribers.get(channel, ()))
        for queue in subscribers:
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                log.warning(f"Subscriber queue full on {channel}, removing stale client")
                self.drop(channel, queue)


# =============================================================================
# Pusher Channels
# =============================================================================


class PusherChannel(NotificationChannel):
    """Publishes events through the Pusher Channels server SDK.

    The SDK client is blocking, so each trigger runs in a worker thread.
    """

    def __init__(
        self,
        app_id: str,
        key: str,
        secret: str,
        cluster: str,
        timeout: Optional[float] = None,
        client: Optional[pusher.Pusher] = None,
    ):
        if not (app_id and key and secret):
            raise ValueError("Pusher app_id, key and secret are required")
        timeout = timeout if timeout is not None else NOTIFY_TIMEOUT_SECONDS
        # The SDK only accepts whole seconds
        self._client = client or pusher.Pusher(
            app_id=app_id,
            key=key,
            secret=secret,
            cluster=cluster,
            ssl=True,
            timeout=max(1, math.ceil(timeout)),
        )

    async def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._client.trigger, channel, event, payload)


# =============================================================================
# Publisher
# =============================================================================


class NotificationPublisher:
    """Pushes completed verifications to the verifier's live channel."""

    def __init__(self, channel: NotificationChannel, timeout: Optional[float] = None):
        self.channel = channel
        self.timeout = timeout if timeout is not None else NOTIFY_TIMEOUT_SECONDS

    @staticmethod
    def channel_name(verifier_id: str) -> str:
        """Live channel for a verifier; the id is matched case-insensitively."""
        return f"verifier-{verifier_id.lower()}"

    async def publish(self, record: VerificationRecord) -> None:
        """Publish a `new-verification` event for the record.

        Raises:
            Exception: Whatever the channel raised, or asyncio.TimeoutError
                if the push exceeded the timeout. Callers log and discard.
        """
        channel = self.channel_name(record.verifier_id)
        await asyncio.wait_for(
            self.channel.publish(channel, NEW_VERIFICATION_EVENT, record.notification_payload()),
            timeout=self.timeout,
        )
        log.debug(f"Published {NEW_VERIFICATION_EVENT} {record.id} to {channel}")


def create_notification_channel() -> NotificationChannel:
    """Build the channel adapter selected by configuration."""
    from app.core.config import (
        NOTIFY_BACKEND,
        PUSHER_APP_ID,
        PUSHER_CLUSTER,
        PUSHER_KEY,
        PUSHER_SECRET,
    )

    if NOTIFY_BACKEND == "memory":
        return InMemoryChannel()
    if NOTIFY_BACKEND == "pusher":
        return PusherChannel(PUSHER_APP_ID, PUSHER_KEY, PUSHER_SECRET, PUSHER_CLUSTER)
    raise ValueError(f"Unknown notification backend: {NOTIFY_BACKEND!r}")
