"""
Abstract base classes and interfaces for the server module.

This module defines the contracts between the realtime core and its
collaborators (transport, connection registry, persistence, notifications,
authentication), so each can be swapped without touching the core logic.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple, runtime_checkable,
)

if TYPE_CHECKING:
    from HireChat.core.message.protocol import MessageStatus, MessageType
    from HireChat.core.server.storage_sqlite import ChatRow, ChatThreadRow, MessageRow


@dataclass
class AuthResult:
    """Result of an authentication attempt."""
    success: bool
    user_id: Optional[int] = None
    email: Optional[str] = None
    role: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def failure(cls, message: str, code: str = "INVALID_TOKEN") -> 'AuthResult':
        return cls(success=False, error_message=message, error_code=code)


@runtime_checkable
class Authenticator(Protocol):
    """Protocol for authentication handlers."""

    @abstractmethod
    async def authenticate(self, token: str) -> AuthResult:
        """
        Authenticate a user using the provided token.

        Args:
            token: Bearer token

        Returns:
            AuthResult containing authentication status and identity
        """
        ...


@runtime_checkable
class TransportConnection(Protocol):
    """Protocol for transport layer connections."""

    @abstractmethod
    async def send(self, message: str) -> bool:
        """Send a text frame; False if the connection is gone."""
        ...

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the connection."""
        ...

    @abstractmethod
    def is_open(self) -> bool:
        """Check if connection is open."""
        ...


@dataclass
class ConnectionEntry:
    """
    One authenticated connection.

    Entries are built completely before they are registered and are never
    mutated afterwards except for ``last_ping_at``.
    """
    connection_id: str
    user_id: int
    transport: TransportConnection
    auth_snapshot: Dict[str, Any] = field(default_factory=dict)
    connected_at: datetime = field(default_factory=datetime.now)
    last_ping_at: datetime = field(default_factory=datetime.now)


EvictionCallback = Callable[[ConnectionEntry], None]


class ConnectionRegistry(ABC):
    """
    Abstract base class for connection registries.

    Methods are synchronous: on a single event loop a reader can never
    observe a half-applied write.
    """

    @abstractmethod
    def register(
        self,
        connection_id: str,
        user_id: int,
        profile_snapshot: Dict[str, Any],
        transport: TransportConnection,
    ) -> ConnectionEntry:
        """Register a new connection; several per user are allowed."""
        pass

    @abstractmethod
    def unregister(self, connection_id: str) -> Optional[ConnectionEntry]:
        """Remove a connection. Absent ids are a no-op returning None."""
        pass

    @abstractmethod
    def lookup_by_connection(self, connection_id: str) -> Optional[ConnectionEntry]:
        pass

    @abstractmethod
    def lookup_by_user(self, user_id: int) -> Optional[ConnectionEntry]:
        """First live connection of a user, or None when offline."""
        pass

    @abstractmethod
    def connections_for_user(self, user_id: int) -> List[ConnectionEntry]:
        pass

    @abstractmethod
    def list_all(self) -> List[ConnectionEntry]:
        """All live connections; dead entries are evicted while enumerating."""
        pass

    @abstractmethod
    def touch(self, connection_id: str) -> None:
        pass

    @abstractmethod
    def online_user_ids(self) -> List[int]:
        pass

    def is_online(self, user_id: int) -> bool:
        return bool(self.connections_for_user(user_id))


@runtime_checkable
class ChatRepository(Protocol):
    """Persistence collaborator for chat threads and messages."""

    async def get_chat(self, chat_id: int) -> Optional['ChatRow']: ...

    async def get_or_create_chat(self, user_a: int, user_b: int) -> 'ChatRow': ...

    async def create_message(
        self,
        chat_id: int,
        issuer_id: int,
        receiver_id: int,
        body: str,
        message_type: 'MessageType',
        client_message_id: Optional[str] = None,
    ) -> Tuple['MessageRow', bool]:
        """Persist a message; the flag is False when it already existed."""
        ...

    async def get_message(self, message_id: int) -> Optional['MessageRow']: ...

    async def advance_status(self, message_id: int, status: 'MessageStatus') -> bool:
        """Move a message forward; False when the transition is not allowed."""
        ...

    async def mark_chat_read(self, chat_id: int, receiver_id: int) -> int: ...

    async def list_chat_threads(self, user_id: int) -> List['ChatThreadRow']: ...

    async def list_messages(self, chat_id: int, limit: int = 50) -> List['MessageRow']: ...

    async def chat_partner_ids(self, user_id: int) -> List[int]: ...

    async def count_unread_messages(self, user_id: int) -> int: ...

    async def find_user_id_by_email(self, email: str) -> Optional[int]: ...


@runtime_checkable
class NotificationService(Protocol):
    """Notification collaborator; creation is best-effort from the core's side."""

    async def create(
        self,
        user_id: int,
        from_user_id: Optional[int],
        type: str,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int: ...

    async def count_unread(self, user_id: int) -> int: ...


class ServerLifecycle(ABC):
    """Abstract base class for server lifecycle management."""

    @abstractmethod
    async def start(self, host: str, port: int) -> None:
        """Start the server."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the server."""
        pass

    @abstractmethod
    def is_running(self) -> bool:
        """Check if server is running."""
        pass


def unique_ids(ids: Iterable[int]) -> List[int]:
    """Deduplicate user ids while keeping their first-seen order."""
    return list(dict.fromkeys(ids))


__all__ = [
    'AuthResult',
    'Authenticator',
    'TransportConnection',
    'ConnectionEntry',
    'EvictionCallback',
    'ConnectionRegistry',
    'ChatRepository',
    'NotificationService',
    'ServerLifecycle',
    'unique_ids',
]
