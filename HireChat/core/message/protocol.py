"""
Wire protocol for the HireChat realtime core.

Every frame, in both directions, is a JSON object of the form
``{"event": "<name>", "data": {...}}``.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping


class EventName:
    """Names of the socket events understood or produced by the server."""
    # inbound
    SEND_MESSAGE = "send-message"
    TYPING = "typing"
    GET_CHATS_USER = "get-chats-user"
    MESSAGE_READ = "messageRead"
    GET_UNREAD_COUNT = "get-unread-count"
    JOIN_CHAT = "join-chat"
    JOIN_ROOM = "join_room"
    LEAVE_ROOM = "leave_room"
    PING = "ping"
    GET_ONLINE_USERS = "get_online_users"
    MESSAGE_DELIVERED = "messageDelivered"
    MESSAGE_RECEIVED_CONFIRMATION = "message-received-confirmation"
    CHECK_CONNECTION = "check-connection"

    # outbound
    CONNECTED = "connected"
    CONNECTION_ERROR = "connection-error"
    RECEIVED_MESSAGE = "received-message"
    SEND_MESSAGE_SUCCESS = "send-message-success"
    UNREAD_COUNT = "unread-count"
    USER_ONLINE = "user-online"
    USER_OFFLINE = "user-offline"
    USER_STATUS_CHANGED = "user-status-changed"
    ONLINE_USERS = "online_users"
    MESSAGE_DELIVERED_NOTICE = "message-delivered"
    PONG = "pong"
    JOINED_ROOM = "joined_room"
    LEFT_ROOM = "left_room"
    JOIN_CHAT_SUCCESS = "join-chat-success"
    CONNECTION_STATUS = "connection-status"
    ERROR = "error"

    @staticmethod
    def error_for(event: str) -> str:
        """Name of the error event answering a given inbound event."""
        return f"{event}-error"


class MessageType(str, Enum):
    """Kind of chat message."""
    NORMAL = "normal"
    PROPOSAL = "proposal"


class MessageStatus(str, Enum):
    """
    Delivery lifecycle of a message.

    Moves forward only: sent -> delivered -> read. ``failed`` is terminal
    and can only be entered from ``sent``.
    """
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"

    @property
    def predecessors(self) -> FrozenSet['MessageStatus']:
        """Statuses a message may be in right before entering this one."""
        return _PREDECESSORS[self]

    def can_advance_to(self, target: 'MessageStatus') -> bool:
        return self in _PREDECESSORS[target]


_PREDECESSORS: Dict[MessageStatus, FrozenSet[MessageStatus]] = {
    MessageStatus.SENT: frozenset(),
    MessageStatus.DELIVERED: frozenset({MessageStatus.SENT}),
    MessageStatus.READ: frozenset({MessageStatus.SENT, MessageStatus.DELIVERED}),
    MessageStatus.FAILED: frozenset({MessageStatus.SENT}),
}

# Statuses counted as unread for the receiver
UNREAD_STATUSES: FrozenSet[MessageStatus] = MessageStatus.READ.predecessors


class ProtocolError(ValueError):
    """Raised when a frame is not a valid envelope."""


@dataclass
class Envelope:
    """
    A single socket frame.

    Attributes:
        event: Event name
        data: JSON-serializable payload
    """
    event: str
    data: Any = field(default_factory=dict)

    def serialize(self) -> str:
        """
        Serialize the envelope to a JSON string.

        Returns:
            str: JSON text frame
        """
        return json.dumps({"event": self.event, "data": self.data}, default=str)

    @classmethod
    def deserialize(cls, raw: Any) -> 'Envelope':
        """
        Parse a JSON text frame.

        Args:
            raw: Text (or bytes) frame received from the transport

        Returns:
            Envelope: Parsed envelope

        Raises:
            ProtocolError: If the frame is not a JSON object with a string ``event``
        """
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        try:
            obj = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as e:
            raise ProtocolError(f"Malformed frame: {e}") from e
        if not isinstance(obj, Mapping):
            raise ProtocolError("Frame must be a JSON object")
        event = obj.get("event")
        if not isinstance(event, str) or not event:
            raise ProtocolError("Frame is missing the event name")
        data = obj.get("data")
        return cls(event=event, data={} if data is None else data)
