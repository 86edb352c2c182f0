"""
Server module for HireChat.

This module provides the realtime presence and chat delivery core:

Architecture Overview:
---------------------

1. **Authentication** (`auth/`)
   - JWTAuthenticator: Internal signing secret
   - IdentityProviderAuthenticator: External fallback verification
   - AuthenticationMiddleware: Handshake token extraction and verification

2. **Transport Layer** (`transport/`)
   - WebSocketConnection: Connection wrapper
   - InMemoryConnectionRegistry: Who is online right now
   - RoomRegistry: Per-user topics, chat rooms and free-form rooms
   - HeartbeatMonitor: Idle probing and eviction

3. **Message Routing** (`routing/`)
   - MessageRouter: Direct, per-user topic, then chat room delivery

4. **Core components**
   - PresenceNotifier (`presence.py`)
   - MessageDeliveryPipeline (`delivery.py`)
   - UnreadReconciler (`reconciler.py`)
   - ChatSummaryProjector (`projector.py`)

5. **Collaborators**
   - SQLiteStore (`storage_sqlite.py`), SQLiteChatRepository (`repository.py`)
   - SQLiteNotificationService (`notifications.py`)

6. **Gateway** (`websocket_manager.py`)
   - ChatSocketManager: Composes all components and owns the event surface

Usage:
    from HireChat.core.server import create_server

    manager = create_server()
    async with manager.run("localhost", 8765):
        await asyncio.Future()
"""

from .errors import AuthenticationError, ChatCoreError, NotFoundError, PersistenceError, ValidationError
from .interfaces import AuthResult, ConnectionEntry, ConnectionRegistry
from .presence import PresenceNotifier, PresencePolicy
from .routing import DeliveryResult, DeliveryRoute, MessageRouter
from .transport import InMemoryConnectionRegistry, RoomRegistry
from .websocket_manager import ChatSocketManager, create_server

__all__ = [
    'ChatCoreError',
    'ValidationError',
    'AuthenticationError',
    'NotFoundError',
    'PersistenceError',
    'AuthResult',
    'ConnectionEntry',
    'ConnectionRegistry',
    'PresenceNotifier',
    'PresencePolicy',
    'DeliveryResult',
    'DeliveryRoute',
    'MessageRouter',
    'InMemoryConnectionRegistry',
    'RoomRegistry',
    'ChatSocketManager',
    'create_server',
]
