"""
Transport layer for WebSocket connections.

Holds the connection wrapper, the in-memory connection registry (the single
source of truth for who is online), topic/room membership and the
application heartbeat monitor.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Set

from websockets.asyncio.server import ServerConnection
from websockets.protocol import State

from HireChat.core.message.protocol import Envelope, EventName
from HireChat.core.server.interfaces import (
    ConnectionEntry,
    ConnectionRegistry,
    EvictionCallback,
    TransportConnection,
    unique_ids,
)

logger = logging.getLogger(__name__)

USER_TOPIC_PREFIX = "user_"
CHAT_TOPIC_PREFIX = "chat_"
RESERVED_PREFIXES = (USER_TOPIC_PREFIX, CHAT_TOPIC_PREFIX)


def user_topic(user_id: int) -> str:
    return f"{USER_TOPIC_PREFIX}{user_id}"


def chat_topic(chat_id: int) -> str:
    return f"{CHAT_TOPIC_PREFIX}{chat_id}"


class WebSocketConnection:
    """
    Wrapper around ServerConnection that implements TransportConnection.

    Provides a clean interface for sending messages and managing
    connection state.
    """

    def __init__(self, websocket: ServerConnection):
        """
        Initialize WebSocket connection wrapper.

        Args:
            websocket: Underlying WebSocket connection
        """
        self._websocket = websocket
        self._closed = False
        self.conn_id: str = uuid.uuid4().hex

    @property
    def raw_websocket(self) -> ServerConnection:
        """Get underlying WebSocket connection."""
        return self._websocket

    async def send(self, message: str) -> bool:
        """
        Send a message through the connection.

        Args:
            message: Message to send

        Returns:
            True if message was sent successfully
        """
        if self._closed:
            return False

        try:
            await self._websocket.send(message)
            return True
        except Exception as e:
            logger.debug("Failed to send to %s: %s", self.conn_id, e)
            return False

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """
        Close the connection.

        Args:
            code: Close code
            reason: Close reason
        """
        if not self._closed:
            self._closed = True
            try:
                await self._websocket.close(code=code, reason=reason)
            except Exception as e:
                logger.debug("Error closing connection %s: %s", self.conn_id, e)

    def is_open(self) -> bool:
        """Check if connection is open."""
        if self._closed:
            return False
        return self._websocket.state is State.OPEN


class InMemoryConnectionRegistry(ConnectionRegistry):
    """
    Process-local connection registry.

    Keeps ``connection_id -> entry`` plus a ``user_id -> connection ids``
    index. Every method is synchronous, so on one event loop a routing
    decision never sees a half-registered entry.
    """

    def __init__(self, on_evict: Optional[EvictionCallback] = None):
        self._entries: Dict[str, ConnectionEntry] = {}
        self._by_user: Dict[int, Dict[str, None]] = {}
        self.on_evict = on_evict

    def register(
        self,
        connection_id: str,
        user_id: int,
        profile_snapshot: Dict,
        transport: TransportConnection,
    ) -> ConnectionEntry:
        entry = ConnectionEntry(
            connection_id=connection_id,
            user_id=user_id,
            transport=transport,
            auth_snapshot=dict(profile_snapshot or {}),
        )
        self._entries[connection_id] = entry
        self._by_user.setdefault(user_id, {})[connection_id] = None
        logger.debug("Registered connection %s for user %s", connection_id, user_id)
        return entry

    def unregister(self, connection_id: str) -> Optional[ConnectionEntry]:
        entry = self._entries.pop(connection_id, None)
        if entry is None:
            return None
        conns = self._by_user.get(entry.user_id)
        if conns is not None:
            conns.pop(connection_id, None)
            if not conns:
                self._by_user.pop(entry.user_id, None)
        logger.debug("Unregistered connection %s for user %s", connection_id, entry.user_id)
        return entry

    def lookup_by_connection(self, connection_id: str) -> Optional[ConnectionEntry]:
        entry = self._entries.get(connection_id)
        if entry is None or not self._verify(entry):
            return None
        return entry

    def lookup_by_user(self, user_id: int) -> Optional[ConnectionEntry]:
        conns = self.connections_for_user(user_id)
        return conns[0] if conns else None

    def connections_for_user(self, user_id: int) -> List[ConnectionEntry]:
        ids = list(self._by_user.get(user_id, ()))
        return [e for e in (self._entries.get(cid) for cid in ids) if e is not None and self._verify(e)]

    def list_all(self) -> List[ConnectionEntry]:
        return [e for e in list(self._entries.values()) if self._verify(e)]

    def touch(self, connection_id: str) -> None:
        entry = self._entries.get(connection_id)
        if entry is not None:
            entry.last_ping_at = datetime.now()

    def online_user_ids(self) -> List[int]:
        return unique_ids(e.user_id for e in self.list_all())

    def __len__(self) -> int:
        return len(self._entries)

    def _verify(self, entry: ConnectionEntry) -> bool:
        """Check liveness against the transport, evicting the entry if it is dead."""
        if entry.transport.is_open():
            return True
        if self.unregister(entry.connection_id) is not None:
            logger.info("Evicted stale connection %s of user %s", entry.connection_id, entry.user_id)
            if self.on_evict is not None:
                self.on_evict(entry)
        return False


class RoomRegistry:
    """
    Topic membership: per-user topics, per-chat rooms and free-form rooms.

    Members are connection ids, so leaving is per device.
    """

    def __init__(self):
        self._members: Dict[str, Set[str]] = {}
        self._rooms: Dict[str, Set[str]] = {}

    def join(self, topic: str, connection_id: str) -> None:
        self._members.setdefault(topic, set()).add(connection_id)
        self._rooms.setdefault(connection_id, set()).add(topic)

    def leave(self, topic: str, connection_id: str) -> bool:
        members = self._members.get(topic)
        if not members or connection_id not in members:
            return False
        members.discard(connection_id)
        if not members:
            self._members.pop(topic, None)
        rooms = self._rooms.get(connection_id)
        if rooms is not None:
            rooms.discard(topic)
            if not rooms:
                self._rooms.pop(connection_id, None)
        return True

    def leave_all(self, connection_id: str) -> List[str]:
        topics = sorted(self._rooms.get(connection_id, ()))
        for topic in topics:
            self.leave(topic, connection_id)
        return topics

    def members(self, topic: str) -> List[str]:
        return sorted(self._members.get(topic, ()))

    def rooms_of(self, connection_id: str) -> List[str]:
        return sorted(self._rooms.get(connection_id, ()))


TimeoutCallback = Callable[[ConnectionEntry], Awaitable[None]]


class HeartbeatMonitor:
    """
    Application-level liveness probe.

    Every ``interval`` seconds, connections idle for at least one interval
    are sent a ``ping`` event; connections silent for longer than ``grace``
    are handed to ``on_timeout``.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        interval: float = 25.0,
        grace: float = 75.0,
        on_timeout: Optional[TimeoutCallback] = None,
    ):
        self._registry = registry
        self._interval = interval
        self._grace = grace
        self._on_timeout = on_timeout
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the heartbeat loop."""
        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info("Heartbeat monitor started (interval=%ss, grace=%ss)", self._interval, self._grace)

    async def stop(self) -> None:
        """Stop the heartbeat loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Heartbeat monitor stopped")

    async def _monitor_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._interval)
                await self.check_connections()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception("Error in heartbeat monitor: %s", e)

    async def check_connections(self, now: Optional[datetime] = None) -> int:
        """
        Run one heartbeat pass.

        Returns:
            Number of connections timed out
        """
        now = now or datetime.now()
        grace = timedelta(seconds=self._grace)
        idle = timedelta(seconds=self._interval)
        expired = 0
        frame = Envelope(EventName.PING, {"timestamp": now.isoformat()}).serialize()

        for entry in self._registry.list_all():
            silent_for = now - entry.last_ping_at
            if silent_for > grace:
                expired += 1
                logger.info(
                    "Connection %s of user %s missed heartbeats for %.0fs",
                    entry.connection_id, entry.user_id, silent_for.total_seconds(),
                )
                if self._on_timeout is not None:
                    await self._on_timeout(entry)
            elif silent_for >= idle:
                await entry.transport.send(frame)

        return expired


class TransportFactory:
    """Factory for creating transport layer components."""

    @staticmethod
    def create_connection(websocket: ServerConnection) -> WebSocketConnection:
        return WebSocketConnection(websocket)

    @staticmethod
    def create_registry(on_evict: Optional[EvictionCallback] = None) -> InMemoryConnectionRegistry:
        return InMemoryConnectionRegistry(on_evict=on_evict)

    @staticmethod
    def create_heartbeat_monitor(
        registry: ConnectionRegistry,
        interval: float,
        grace: float,
        on_timeout: Optional[TimeoutCallback] = None,
    ) -> HeartbeatMonitor:
        return HeartbeatMonitor(registry, interval, grace, on_timeout)


__all__ = [
    'USER_TOPIC_PREFIX',
    'CHAT_TOPIC_PREFIX',
    'RESERVED_PREFIXES',
    'user_topic',
    'chat_topic',
    'WebSocketConnection',
    'InMemoryConnectionRegistry',
    'RoomRegistry',
    'HeartbeatMonitor',
    'TransportFactory',
]
