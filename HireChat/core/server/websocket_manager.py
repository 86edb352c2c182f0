"""
Socket gateway that composes all server components.

This is the main entry point: it authenticates connections, keeps the
connection registry and topic membership in step with the transport,
dispatches inbound events to the core components and turns every handler
failure into an ``<event>-error`` emission.

Architecture:
    ┌───────────────────────────────────────────────────────────────┐
    │                      ChatSocketManager                        │
    │  ┌─────────────┐  ┌─────────────┐  ┌───────────────────────┐  │
    │  │ Auth        │  │ Connection  │  │ Heartbeat             │  │
    │  │ Middleware  │  │ Registry    │  │ Monitor               │  │
    │  └─────────────┘  └─────────────┘  └───────────────────────┘  │
    │  ┌─────────────┐  ┌─────────────┐  ┌───────────────────────┐  │
    │  │ Presence    │  │ Message     │  │ Delivery Pipeline     │  │
    │  │ Notifier    │  │ Router      │  │ Reconciler, Projector │  │
    │  └─────────────┘  └─────────────┘  └───────────────────────┘  │
    └───────────────────────────────────────────────────────────────┘

Event handling order per user:
    1. authenticate → register → join ``user_<id>`` → ``connected`` → presence
    2. inbound events of one user run one at a time (per-user lock)
    3. close or heartbeat timeout → unregister → leave rooms → presence
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, TypeVar

import websockets
from pydantic import ValidationError as PayloadValidationError
from websockets.asyncio.server import ServerConnection

from HireChat.config import config
from HireChat.core.message.protocol import Envelope, EventName, ProtocolError
from HireChat.core.message.schemas import (
    DeliveryConfirmationPayload,
    InboundPayload,
    JoinChatPayload,
    MessageReadPayload,
    RoomPayload,
    SendMessagePayload,
    TypingPayload,
    UserScopedPayload,
)
from HireChat.core.server.auth import AuthenticationMiddleware, create_authenticator
from HireChat.core.server.delivery import MessageDeliveryPipeline
from HireChat.core.server.errors import (
    AuthenticationError,
    ChatCoreError,
    NotFoundError,
    ValidationError,
)
from HireChat.core.server.interfaces import (
    Authenticator,
    AuthResult,
    ChatRepository,
    ConnectionEntry,
    NotificationService,
    ServerLifecycle,
    TransportConnection,
)
from HireChat.core.server.notifications import SQLiteNotificationService
from HireChat.core.server.presence import PresenceNotifier, PresencePolicy
from HireChat.core.server.projector import ChatSummaryProjector
from HireChat.core.server.reconciler import UnreadReconciler, chats_payload
from HireChat.core.server.repository import SQLiteChatRepository
from HireChat.core.server.routing import MessageRouter
from HireChat.core.server.sequencing import UserSequencer
from HireChat.core.server.storage_sqlite import SQLiteStore
from HireChat.core.server.tasks import BackgroundTaskSet
from HireChat.core.server.transport import (
    RESERVED_PREFIXES,
    USER_TOPIC_PREFIX,
    RoomRegistry,
    TransportFactory,
    chat_topic,
    user_topic,
)

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=InboundPayload)
Handler = Callable[[ConnectionEntry, Any], Awaitable[None]]

# Answered immediately, without waiting behind the user's other events
UNSEQUENCED_EVENTS = frozenset({EventName.PING, EventName.PONG, EventName.CHECK_CONNECTION})


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse(model: Type[P], data: Any) -> P:
    try:
        return model.parse(data)
    except PayloadValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'data'}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationError(f"Invalid payload: {details}") from None


class ChatSocketManager(ServerLifecycle):
    """
    Realtime presence and chat delivery gateway.

    Example:
        manager = ChatSocketManager()

        async with manager.run("localhost", 8765):
            await asyncio.Future()
    """

    def __init__(
        self,
        store: Optional[SQLiteStore] = None,
        authenticator: Optional[Authenticator] = None,
        repository: Optional[ChatRepository] = None,
        notifications: Optional[NotificationService] = None,
        presence_policy: Optional[str] = None,
        heartbeat_interval: Optional[float] = None,
        heartbeat_grace: Optional[float] = None,
    ):
        """
        Initialize the gateway.

        Args:
            store: SQLite store (opens config.SQLITE_DB_FILE if None)
            authenticator: Token verifier (internal JWT then identity provider if None)
            repository: Persistence collaborator (SQLite-backed if None)
            notifications: Notification collaborator (SQLite-backed if None)
            presence_policy: ``last_socket`` or ``per_socket``
            heartbeat_interval: Seconds between heartbeat passes
            heartbeat_grace: Seconds of silence before a connection is dropped
        """
        self._store = store
        if self._store is None and (repository is None or notifications is None):
            self._store = SQLiteStore(config.SQLITE_DB_FILE)
        self._repository = repository or SQLiteChatRepository(self._store)
        self._notifications = notifications or SQLiteNotificationService(self._store)

        self._tasks = BackgroundTaskSet()
        self._sequencer = UserSequencer()
        self._registry = TransportFactory.create_registry(on_evict=self._on_evict)
        self._rooms = RoomRegistry()
        self._router = MessageRouter(self._registry, self._rooms)

        self._presence = PresenceNotifier(
            self._registry,
            self._router,
            self._repository,
            PresencePolicy(presence_policy or config.PRESENCE_POLICY),
        )
        self._projector = ChatSummaryProjector(self._repository)
        self._reconciler = UnreadReconciler(
            self._repository, self._notifications, self._projector, self._router, self._registry,
        )
        self._pipeline = MessageDeliveryPipeline(
            self._repository, self._notifications, self._router, self._reconciler, self._tasks,
        )

        self._authenticator = authenticator or create_authenticator(
            resolve_email=self._repository.find_user_id_by_email,
        )
        self._auth_middleware = AuthenticationMiddleware(self._authenticator)

        self._heartbeat = TransportFactory.create_heartbeat_monitor(
            self._registry,
            heartbeat_interval if heartbeat_interval is not None else config.HEARTBEAT_INTERVAL,
            heartbeat_grace if heartbeat_grace is not None else config.HEARTBEAT_GRACE,
            on_timeout=self._expire_connection,
        )

        self._handlers: Dict[str, Handler] = {
            EventName.SEND_MESSAGE: self._on_send_message,
            EventName.TYPING: self._on_typing,
            EventName.GET_CHATS_USER: self._on_get_chats,
            EventName.MESSAGE_READ: self._on_message_read,
            EventName.GET_UNREAD_COUNT: self._on_get_unread_count,
            EventName.JOIN_CHAT: self._on_join_chat,
            EventName.JOIN_ROOM: self._on_join_room,
            EventName.LEAVE_ROOM: self._on_leave_room,
            EventName.PING: self._on_ping,
            EventName.PONG: self._on_pong,
            EventName.GET_ONLINE_USERS: self._on_get_online_users,
            EventName.MESSAGE_DELIVERED: self._on_message_delivered,
            EventName.MESSAGE_RECEIVED_CONFIRMATION: self._on_received_confirmation,
            EventName.CHECK_CONNECTION: self._on_check_connection,
        }

        self._host: Optional[str] = None
        self._port: Optional[int] = None
        self._server = None
        self._running = False

        logger.info("ChatSocketManager initialized (presence policy: %s)", self._presence.policy.value)

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def store(self) -> Optional[SQLiteStore]:
        return self._store

    @property
    def repository(self) -> ChatRepository:
        return self._repository

    @property
    def registry(self):
        return self._registry

    @property
    def rooms(self) -> RoomRegistry:
        return self._rooms

    @property
    def router(self) -> MessageRouter:
        return self._router

    @property
    def presence(self) -> PresenceNotifier:
        return self._presence

    @property
    def projector(self) -> ChatSummaryProjector:
        return self._projector

    @property
    def reconciler(self) -> UnreadReconciler:
        return self._reconciler

    @property
    def pipeline(self) -> MessageDeliveryPipeline:
        return self._pipeline

    @property
    def tasks(self) -> BackgroundTaskSet:
        return self._tasks

    @property
    def sequencer(self) -> UserSequencer:
        return self._sequencer

    @property
    def auth_middleware(self) -> AuthenticationMiddleware:
        return self._auth_middleware

    @property
    def heartbeat(self):
        return self._heartbeat

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def run(self, host: str = "localhost", port: int = 8765):
        """
        Run the WebSocket server as an async context manager.

        Args:
            host: Host to bind to
            port: Port to listen on

        Yields:
            The manager instance
        """
        await self.start(host, port)
        try:
            yield self
        finally:
            await self.stop()

    async def start(self, host: str = "localhost", port: int = 8765) -> None:
        """
        Start the WebSocket server.

        Args:
            host: Host to bind to
            port: Port to listen on (0 picks a free port)
        """
        self._host = host
        self._running = True

        await self._heartbeat.start()
        self._server = await websockets.serve(self._handle_connection, host, port)
        sockets = getattr(self._server, "sockets", None) or []
        self._port = sockets[0].getsockname()[1] if sockets else port

        logger.info("WebSocket server started on ws://%s:%s", host, self._port)

    async def stop(self) -> None:
        """Stop the WebSocket server."""
        self._running = False

        await self._heartbeat.stop()

        for entry in self._registry.list_all():
            await entry.transport.close(1001, "Server shutting down")

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        await self._tasks.drain()

        close = getattr(self._authenticator, "close", None)
        if close is not None:
            await close()

        logger.info("WebSocket server stopped")

    def is_running(self) -> bool:
        return self._running

    @property
    def port(self) -> Optional[int]:
        return self._port

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Authenticate, register, then process frames until the socket closes."""
        auth_result = await self._authenticate_handshake(websocket)
        if not auth_result.success:
            await self._send_auth_error(websocket, auth_result)
            return

        entry: Optional[ConnectionEntry] = None
        try:
            entry = await self.attach(TransportFactory.create_connection(websocket), auth_result)
            async for raw_message in websocket:
                await self.dispatch(entry.connection_id, raw_message)
        except websockets.exceptions.ConnectionClosed:
            logger.debug("Connection closed for user %s", auth_result.user_id)
        except Exception as e:
            logger.exception("Error handling connection: %s", e)
        finally:
            if entry is not None:
                await self.detach(entry.connection_id)

    async def _authenticate_handshake(self, websocket: Any) -> AuthResult:
        """Run handshake authentication; failures become a failed AuthResult."""
        try:
            return await self._auth_middleware.authenticate_connection(websocket)
        except ChatCoreError as e:
            logger.warning("Authentication could not complete: %s (%s)", e.message, e.code)
            return AuthResult.failure(e.message, e.code)
        except Exception as e:
            logger.exception("Unexpected error during authentication: %s", e)
            return AuthResult.failure("Authentication failed", "AUTH_ERROR")

    async def attach(self, transport: TransportConnection, auth: AuthResult) -> ConnectionEntry:
        """
        Register an authenticated transport and announce it.

        Raises:
            AuthenticationError: If ``auth`` is not a successful result
        """
        if not auth.success or auth.user_id is None:
            raise AuthenticationError(auth.error_message or "Authentication failed")

        connection_id = getattr(transport, "conn_id", None) or uuid.uuid4().hex
        snapshot = {"email": auth.email, "role": auth.role, "claims": auth.claims}
        entry = self._registry.register(connection_id, auth.user_id, snapshot, transport)
        self._rooms.join(user_topic(auth.user_id), connection_id)

        await transport.send(Envelope(EventName.CONNECTED, {
            "message": "Connected",
            "user": {"id": auth.user_id, "email": auth.email, "role": auth.role},
            "socketId": connection_id,
            "connectionId": connection_id,
            "timestamp": _timestamp(),
        }).serialize())
        logger.info("User %s connected (%s)", auth.user_id, connection_id)

        async with self._sequencer.hold(auth.user_id):
            await self._presence.connected(entry)
        return entry

    async def detach(self, connection_id: str) -> bool:
        """
        Unregister a connection and run disconnect handling.

        Idempotent: returns False if the connection was already gone.
        """
        entry = self._registry.unregister(connection_id)
        self._rooms.leave_all(connection_id)
        if entry is None:
            return False
        logger.info("User %s disconnected (%s)", entry.user_id, connection_id)
        await self._announce_disconnect(entry)
        return True

    async def _announce_disconnect(self, entry: ConnectionEntry) -> None:
        async with self._sequencer.hold(entry.user_id):
            await self._presence.disconnected(entry)

    def _on_evict(self, entry: ConnectionEntry) -> None:
        """Registry found a dead transport while enumerating."""
        self._rooms.leave_all(entry.connection_id)
        self._tasks.spawn(
            self._announce_disconnect(entry),
            "presence_offline",
            user_id=entry.user_id,
            connection_id=entry.connection_id,
        )

    async def _expire_connection(self, entry: ConnectionEntry) -> None:
        # A dead peer never answers the closing handshake; the pass must not wait for it
        self._tasks.spawn(
            entry.transport.close(4000, "Heartbeat timeout"),
            "heartbeat_close",
            user_id=entry.user_id,
            connection_id=entry.connection_id,
        )
        await self.detach(entry.connection_id)

    # noinspection PyMethodMayBeStatic
    async def _send_auth_error(self, websocket: ServerConnection, result: AuthResult) -> None:
        """Send authentication error and close connection."""
        code = result.error_code or "INVALID_TOKEN"
        logger.info("Rejected connection: %s (%s)", result.error_message, code)
        frame = Envelope(EventName.CONNECTION_ERROR, {
            "message": result.error_message or "Authentication failed",
            "code": code,
        })
        try:
            await websocket.send(frame.serialize())
            await websocket.close(code=1008, reason=code)
        except websockets.exceptions.ConnectionClosed:
            pass

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, connection_id: str, raw_message: Any) -> None:
        """
        Handle one inbound frame from a registered connection.

        Never raises: every failure becomes an error event to the sender.
        """
        entry = self._registry.lookup_by_connection(connection_id)
        if entry is None:
            logger.debug("Dropping frame from unknown connection %s", connection_id)
            return
        self._registry.touch(connection_id)

        try:
            envelope = Envelope.deserialize(raw_message)
        except ProtocolError as e:
            await self._router.send_to_connection(connection_id, EventName.ERROR, {
                "success": False, "code": "INVALID_FRAME", "message": str(e),
            })
            return

        handler = self._handlers.get(envelope.event)
        if handler is None:
            await self._router.send_to_connection(connection_id, EventName.ERROR, {
                "success": False, "code": "UNKNOWN_EVENT", "message": f"Unknown event: {envelope.event}",
            })
            return

        if envelope.event in UNSEQUENCED_EVENTS:
            await self._run_handler(handler, entry, envelope)
        else:
            async with self._sequencer.hold(entry.user_id):
                await self._run_handler(handler, entry, envelope)

    async def _run_handler(self, handler: Handler, entry: ConnectionEntry, envelope: Envelope) -> None:
        try:
            await handler(entry, envelope.data)
        except ChatCoreError as e:
            logger.info("%s from user %s failed: %s (%s)", envelope.event, entry.user_id, e.message, e.code)
            await self._reply(entry, EventName.error_for(envelope.event), e.to_payload())
        except Exception as e:
            logger.exception("Unexpected error handling %s from user %s: %s", envelope.event, entry.user_id, e)
            await self._reply(entry, EventName.error_for(envelope.event), ChatCoreError(
                "Internal server error",
            ).to_payload())

    async def _reply(self, entry: ConnectionEntry, event: str, data: Any) -> bool:
        return await self._router.send_to_connection(entry.connection_id, event, data)

    @staticmethod
    def _own_user_id(entry: ConnectionEntry, requested: Optional[int]) -> int:
        if requested is not None and requested != entry.user_id:
            raise AuthenticationError("Cannot access another user's data", code="FORBIDDEN")
        return entry.user_id

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _on_send_message(self, entry: ConnectionEntry, data: Any) -> None:
        payload = _parse(SendMessagePayload, data)
        if payload.issuer_id is not None and payload.issuer_id != entry.user_id:
            raise ValidationError("issuer_id does not match the authenticated user", code="SENDER_MISMATCH")
        await self._pipeline.submit(
            payload.issuer_id,
            payload.receiver_id,
            payload.chat_id,
            payload.message,
            payload.type_message,
            client_message_id=payload.client_message_id,
            origin_connection_id=entry.connection_id,
        )

    async def _on_typing(self, entry: ConnectionEntry, data: Any) -> None:
        payload = _parse(TypingPayload, data)
        if payload.receiver_id is None:
            raise ValidationError("receiver_id is required")
        if payload.issuer_id is not None and payload.issuer_id != entry.user_id:
            raise ValidationError("issuer_id does not match the authenticated user", code="SENDER_MISMATCH")
        if payload.receiver_id == entry.user_id:
            raise ValidationError("Cannot send typing events to yourself")
        await self._router.send_to_user(payload.receiver_id, EventName.TYPING, {
            "issuer_id": entry.user_id,
            "receiver_id": payload.receiver_id,
            "chat_id": payload.chat_id,
            "is_typing": True if payload.is_typing is None else payload.is_typing,
            "room": payload.room,
            "timestamp": _timestamp(),
        })

    async def _on_get_chats(self, entry: ConnectionEntry, data: Any) -> None:
        user_id = self._own_user_id(entry, _parse(UserScopedPayload, data).user_id)
        summaries = await self._projector.project_for_user(user_id)
        await self._reply(entry, EventName.GET_CHATS_USER, chats_payload(summaries))

    async def _on_message_read(self, entry: ConnectionEntry, data: Any) -> None:
        payload = _parse(MessageReadPayload, data)
        if payload.chat_id is None:
            raise ValidationError("chatId is required")
        updated = await self._reconciler.mark_read(payload.chat_id, entry.user_id)
        await self._reply(entry, EventName.MESSAGE_READ, {
            "status": "success",
            "chatId": payload.chat_id,
            "userId": entry.user_id,
            "updated": updated,
        })

    async def _on_get_unread_count(self, entry: ConnectionEntry, data: Any) -> None:
        user_id = self._own_user_id(entry, _parse(UserScopedPayload, data).user_id)
        snapshot = await self._reconciler.compute_unread_snapshot(user_id)
        await self._reply(entry, EventName.UNREAD_COUNT, snapshot.to_payload())

    async def _on_join_chat(self, entry: ConnectionEntry, data: Any) -> None:
        payload = _parse(JoinChatPayload, data)
        if payload.chat_id is None:
            raise ValidationError("chatId is required")
        chat = await self._repository.get_chat(payload.chat_id)
        if chat is None or not chat.involves(entry.user_id):
            raise NotFoundError(f"Chat {payload.chat_id} not found")
        room = chat_topic(chat.id)
        self._rooms.join(room, entry.connection_id)
        await self._reply(entry, EventName.JOIN_CHAT_SUCCESS, {
            "success": True,
            "chatId": chat.id,
            "room": room,
            "userId": entry.user_id,
        })

    async def _on_join_room(self, entry: ConnectionEntry, data: Any) -> None:
        room = _parse(RoomPayload, data).room
        if not room or not room.strip():
            raise ValidationError("room is required")
        if room.startswith(RESERVED_PREFIXES):
            raise ValidationError(f"Room name {room!r} is reserved", code="RESERVED_ROOM")
        self._rooms.join(room, entry.connection_id)
        await self._reply(entry, EventName.JOINED_ROOM, {"success": True, "room": room})

    async def _on_leave_room(self, entry: ConnectionEntry, data: Any) -> None:
        room = _parse(RoomPayload, data).room
        if not room or not room.strip():
            raise ValidationError("room is required")
        if room.startswith(USER_TOPIC_PREFIX):
            raise ValidationError("Per-user topics cannot be left", code="RESERVED_ROOM")
        left = self._rooms.leave(room, entry.connection_id)
        await self._reply(entry, EventName.LEFT_ROOM, {"success": left, "room": room})

    async def _on_ping(self, entry: ConnectionEntry, data: Any) -> None:
        await self._reply(entry, EventName.PONG, {"timestamp": _timestamp()})

    async def _on_pong(self, entry: ConnectionEntry, data: Any) -> None:
        # Answer to a heartbeat ping; dispatch already refreshed last_ping_at
        pass

    async def _on_get_online_users(self, entry: ConnectionEntry, data: Any) -> None:
        await self._reply(entry, EventName.ONLINE_USERS, self._presence.online_user_ids())

    async def _on_message_delivered(self, entry: ConnectionEntry, data: Any) -> None:
        payload = _parse(DeliveryConfirmationPayload, data)
        view = await self._pipeline.confirm_delivery(payload.message_id, entry.user_id)
        await self._reply(entry, EventName.MESSAGE_DELIVERED, {
            "messageId": view.id,
            "status": view.message_status.value,
        })

    async def _on_received_confirmation(self, entry: ConnectionEntry, data: Any) -> None:
        payload = _parse(DeliveryConfirmationPayload, data)
        await self._pipeline.confirm_delivery(payload.message_id, entry.user_id)

    async def _on_check_connection(self, entry: ConnectionEntry, data: Any) -> None:
        await self._reply(entry, EventName.CONNECTION_STATUS, {
            "connected": True,
            "userId": entry.user_id,
            "connectionId": entry.connection_id,
            "connectedAt": entry.connected_at.isoformat(),
            "rooms": self._rooms.rooms_of(entry.connection_id),
            "timestamp": _timestamp(),
        })

    # ------------------------------------------------------------------
    # Server-side emission (HTTP surface)
    # ------------------------------------------------------------------

    async def send_to_user(self, user_id: int, event: str, data: Any) -> int:
        return await self._router.send_to_user(user_id, event, data)

    async def send_to_room(self, room: str, event: str, data: Any) -> int:
        return await self._router.publish(room, event, data)

    async def broadcast(self, event: str, data: Any) -> int:
        return await self._router.broadcast(event, data)

    def online_user_ids(self) -> List[int]:
        return self._presence.online_user_ids()


def create_server(**kwargs) -> ChatSocketManager:
    """
    Factory function to create a configured gateway.

    Args:
        **kwargs: Arguments passed to ChatSocketManager

    Returns:
        Configured ChatSocketManager instance
    """
    return ChatSocketManager(**kwargs)


__all__ = [
    'ChatSocketManager',
    'create_server',
]
