"""WebSocket connection management on top of the RealtimeNotifier.

Each socket gets one ``user:{id}:rooms`` subscription on connect plus one
``room:{id}`` subscription per room it subscribes to. Notifier payloads are
forwarded to the socket as-is; a failed send reports a dead consumer and the
notifier drops that subscription.
"""
import logging
from typing import Dict, List

from fastapi import WebSocket

from schoolchat.realtime.notifier import RealtimeNotifier, Subscription, room_topic, user_rooms_topic

logger = logging.getLogger(__name__)


class ChatConnection:
    """One connected socket and its topic subscriptions."""

    def __init__(self, websocket: WebSocket, user_id: str, notifier: RealtimeNotifier) -> None:
        self.websocket = websocket
        self.user_id = user_id
        self._notifier = notifier
        self._subscriptions: Dict[str, Subscription] = {}

    async def _safe_send(self, message: dict) -> bool:
        """Send a JSON frame. Returns False if the connection failed."""
        try:
            await self.websocket.send_json(message)
            return True
        except Exception as exc:
            logger.debug("Send to %s failed: %s", self.user_id, exc)
            return False

    def _subscribe(self, topic: str) -> bool:
        if topic in self._subscriptions:
            return False
        self._subscriptions[topic] = self._notifier.subscribe(topic, self._safe_send)
        return True

    def subscribe_user_rooms(self) -> None:
        self._subscribe(user_rooms_topic(self.user_id))

    def subscribe_room(self, room_id: int) -> bool:
        return self._subscribe(room_topic(room_id))

    def unsubscribe_room(self, room_id: int) -> bool:
        topic = room_topic(room_id)
        subscription = self._subscriptions.pop(topic, None)
        if subscription is None:
            return False
        self._notifier.unsubscribe(topic, subscription.id)
        return True

    def room_ids(self) -> List[int]:
        prefix = "room:"
        return sorted(int(t[len(prefix):]) for t in self._subscriptions if t.startswith(prefix))

    def close(self) -> None:
        for topic, subscription in self._subscriptions.items():
            self._notifier.unsubscribe(topic, subscription.id)
        self._subscriptions.clear()


class ConnectionManager:
    """Registry of live chat sockets, keyed by user id."""

    def __init__(self) -> None:
        self.active_connections: Dict[str, List[ChatConnection]] = {}

    def connect(self, websocket: WebSocket, user_id: str, notifier: RealtimeNotifier) -> ChatConnection:
        connection = ChatConnection(websocket, user_id, notifier)
        connection.subscribe_user_rooms()
        self.active_connections.setdefault(user_id, []).append(connection)
        logger.info("User %s connected (%d socket(s))", user_id, len(self.active_connections[user_id]))
        return connection

    def disconnect(self, connection: ChatConnection) -> None:
        connection.close()
        sockets = self.active_connections.get(connection.user_id, [])
        if connection in sockets:
            sockets.remove(connection)
        if not sockets:
            self.active_connections.pop(connection.user_id, None)
        logger.info("User %s disconnected", connection.user_id)

    def connection_count(self, user_id: str) -> int:
        return len(self.active_connections.get(user_id, []))


manager = ConnectionManager()
