"""
Message routing and broadcasting services.

Delivery to a user follows one explicit policy: the user's live
connections first, then the per-user topic, then the chat room (receiver's
connections only, never the sender's). There is no global fallback, so a
routed event can never leak to users outside the conversation.
"""

import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Iterable, List, Optional

from HireChat.core.message.protocol import Envelope
from HireChat.core.server.interfaces import ConnectionEntry, ConnectionRegistry
from HireChat.core.server.transport import RoomRegistry, chat_topic, user_topic

logger = logging.getLogger(__name__)


class DeliveryRoute(Enum):
    """Route that reached the receiver."""
    DIRECT = auto()
    USER_TOPIC = auto()
    CHAT_ROOM = auto()
    NONE = auto()


@dataclass
class DeliveryResult:
    """Result of a realtime delivery attempt. ``NONE`` means the user is unreachable."""
    route: DeliveryRoute
    user_id: int
    connections: int = 0
    error: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.route is not DeliveryRoute.NONE

    def to_payload(self) -> dict:
        return {
            "delivered": self.delivered,
            "route": self.route.name.lower(),
            "connections": self.connections,
        }


class MessageRouter:
    """
    Routes events to connections, users, rooms and everyone.

    Sending never raises for an unreachable target; counts and
    ``DeliveryResult`` report what was reached.
    """

    def __init__(self, connection_registry: ConnectionRegistry, rooms: RoomRegistry):
        """
        Initialize message router.

        Args:
            connection_registry: Registry of active connections
            rooms: Topic membership
        """
        self._registry = connection_registry
        self._rooms = rooms

    @property
    def rooms(self) -> RoomRegistry:
        return self._rooms

    async def send_to_connection(self, connection_id: str, event: str, data: Any) -> bool:
        entry = self._registry.lookup_by_connection(connection_id)
        if entry is None:
            return False
        return await entry.transport.send(Envelope(event, data).serialize())

    async def send_to_user(self, user_id: int, event: str, data: Any) -> int:
        """Send to every live connection of a user. Returns how many were reached."""
        return await self._send_all(self._registry.connections_for_user(user_id), Envelope(event, data).serialize())

    async def publish(
        self,
        topic: str,
        event: str,
        data: Any,
        exclude_connections: Iterable[str] = (),
        only_user: Optional[int] = None,
    ) -> int:
        """
        Send to the members of a topic.

        Args:
            topic: Room or topic name
            event: Event name
            data: Payload
            exclude_connections: Connection ids to skip
            only_user: Restrict delivery to this user's connections

        Returns:
            Number of connections reached
        """
        excluded = set(exclude_connections)
        targets: List[ConnectionEntry] = []
        for connection_id in self._rooms.members(topic):
            if connection_id in excluded:
                continue
            entry = self._registry.lookup_by_connection(connection_id)
            if entry is None:
                continue
            if only_user is not None and entry.user_id != only_user:
                continue
            targets.append(entry)
        return await self._send_all(targets, Envelope(event, data).serialize())

    async def deliver(
        self,
        user_id: int,
        event: str,
        data: Any,
        chat_id: Optional[int] = None,
        sender_id: Optional[int] = None,
    ) -> DeliveryResult:
        """
        Deliver an event to a user following the routing policy.

        Stops at the first route that reaches at least one connection.
        """
        frame = Envelope(event, data).serialize()

        reached = await self._send_all(self._registry.connections_for_user(user_id), frame)
        if reached:
            return DeliveryResult(DeliveryRoute.DIRECT, user_id, reached)

        topic_entries = self._topic_entries(user_topic(user_id), user_id)
        reached = await self._send_all(topic_entries, frame)
        if reached:
            return DeliveryResult(DeliveryRoute.USER_TOPIC, user_id, reached)

        if chat_id is not None:
            sender_connections = set()
            if sender_id is not None:
                sender_connections = {e.connection_id for e in self._registry.connections_for_user(sender_id)}
            room_entries = [
                e for e in self._topic_entries(chat_topic(chat_id), user_id)
                if e.connection_id not in sender_connections
            ]
            reached = await self._send_all(room_entries, frame)
            if reached:
                return DeliveryResult(DeliveryRoute.CHAT_ROOM, user_id, reached)

        logger.debug("User %s unreachable for %s", user_id, event)
        return DeliveryResult(DeliveryRoute.NONE, user_id, error="User offline")

    async def broadcast(self, event: str, data: Any, exclude_user: Optional[int] = None) -> int:
        """Send to every live connection. Returns how many were reached."""
        targets = [e for e in self._registry.list_all() if exclude_user is None or e.user_id != exclude_user]
        return await self._send_all(targets, Envelope(event, data).serialize())

    def _topic_entries(self, topic: str, user_id: int) -> List[ConnectionEntry]:
        entries = []
        for connection_id in self._rooms.members(topic):
            entry = self._registry.lookup_by_connection(connection_id)
            if entry is not None and entry.user_id == user_id:
                entries.append(entry)
        return entries

    async def _send_all(self, entries: Iterable[ConnectionEntry], frame: str) -> int:
        reached = 0
        for entry in entries:
            try:
                if await entry.transport.send(frame):
                    reached += 1
            except Exception as e:
                logger.exception("Error sending to connection %s: %s", entry.connection_id, e)
        return reached


__all__ = [
    'DeliveryRoute',
    'DeliveryResult',
    'MessageRouter',
]
