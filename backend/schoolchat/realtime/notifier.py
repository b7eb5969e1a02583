"""RealtimeNotifier: in-process topic pub/sub for chat events.

Topics:
    - ``room:{room_id}``        message mutations and typing inside one room
    - ``user:{user_id}:rooms``  list-level changes for one user (new rooms,
                                new messages with that user's unread count,
                                read-cursor moves)

Every payload has the shape ``{"topic": ..., "event": ..., "data": {...}}``.

Delivery:
    - Each topic has a FIFO queue drained by one publisher at a time, so
      subscribers observe events in publish order. A publish made while the
      topic is already draining (including one made from inside a handler)
      is queued and delivered by the running drain.
    - Handlers of one event run concurrently with asyncio.gather().
    - A handler that raises is logged and does not affect the others.
    - A handler that returns ``False`` reports a dead consumer (e.g. a closed
      WebSocket) and is unsubscribed.
"""
import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from schoolchat.errors import NotifierUnavailable

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[Optional[bool]]]

# Event names
MESSAGE_CREATED = "message_created"
MESSAGE_DELETED = "message_deleted"
MESSAGE_EDITED = "message_edited"
ROOM_CREATED = "room_created"
ROOM_UPDATED = "room_updated"
READ_UPDATED = "read_updated"
TYPING = "typing"


def room_topic(room_id: int) -> str:
    return f"room:{room_id}"


def user_rooms_topic(user_id: str) -> str:
    return f"user:{user_id}:rooms"


@dataclass
class Subscription:
    topic: str
    handler: Handler
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


class RealtimeNotifier:
    def __init__(self) -> None:
        self._subscriptions: Dict[str, Dict[str, Subscription]] = {}
        self._queues: Dict[str, Deque[Dict[str, Any]]] = {}
        self._draining: Set[str] = set()
        self._available = True

    @property
    def is_available(self) -> bool:
        return self._available

    # -----------------------------------------------------------------------
    # Subscriptions
    # -----------------------------------------------------------------------

    def subscribe(self, topic: str, handler: Handler) -> Subscription:
        if not self._available:
            raise NotifierUnavailable()
        subscription = Subscription(topic=topic, handler=handler)
        self._subscriptions.setdefault(topic, {})[subscription.id] = subscription
        logger.debug("Subscribed %s to %s (%d total)", subscription.id, topic, self.topic_size(topic))
        return subscription

    def unsubscribe(self, topic: str, subscription_id: Optional[str] = None) -> int:
        """Drop one subscription, or all of a topic when no id is given.

        Returns the number removed; unknown ids are a no-op.
        """
        subs = self._subscriptions.get(topic)
        if not subs:
            return 0
        if subscription_id is None:
            removed = len(subs)
            subs.clear()
        else:
            removed = 1 if subs.pop(subscription_id, None) is not None else 0
        if not subs:
            self._subscriptions.pop(topic, None)
        return removed

    def topic_size(self, topic: str) -> int:
        return len(self._subscriptions.get(topic, {}))

    def topics(self) -> List[str]:
        return list(self._subscriptions)

    # -----------------------------------------------------------------------
    # Publishing
    # -----------------------------------------------------------------------

    async def publish(self, topic: str, event: str, data: Dict[str, Any]) -> None:
        """Queue an event for every subscriber of ``topic`` and drain the queue.

        Raises:
            NotifierUnavailable: if the notifier has been closed.
        """
        if not self._available:
            raise NotifierUnavailable()
        queue = self._queues.setdefault(topic, deque())
        queue.append({"topic": topic, "event": event, "data": data})
        if topic in self._draining:
            return

        self._draining.add(topic)
        try:
            while queue:
                await self._deliver(topic, queue.popleft())
        finally:
            self._draining.discard(topic)
            if not queue:
                self._queues.pop(topic, None)

    async def _deliver(self, topic: str, payload: Dict[str, Any]) -> None:
        subscriptions = list(self._subscriptions.get(topic, {}).values())
        if not subscriptions:
            return

        results = await asyncio.gather(
            *[self._safe_deliver(sub, payload) for sub in subscriptions],
            return_exceptions=True,
        )

        dead = [sub for sub, ok in zip(subscriptions, results) if ok is False]
        for sub in dead:
            self.unsubscribe(topic, sub.id)
        if dead:
            logger.info("Dropped %d dead subscriber(s) from %s", len(dead), topic)

    async def _safe_deliver(self, subscription: Subscription, payload: Dict[str, Any]) -> Optional[bool]:
        """Run one handler. True on success, False for a dead consumer, None on error."""
        try:
            result = await subscription.handler(payload)
        except Exception:
            logger.exception(
                "Handler %s failed for %s on %s",
                subscription.id, payload["event"], subscription.topic,
            )
            return None
        return result is not False

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def close(self) -> None:
        """Reject further publishes and drop every subscription."""
        self._available = False
        self._subscriptions.clear()
        self._queues.clear()
        logger.info("RealtimeNotifier closed")

    def reopen(self) -> None:
        self._available = True
