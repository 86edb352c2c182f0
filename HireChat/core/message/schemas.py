"""
Typed payload contracts for the realtime core.

Outbound views give every field a defined default at construction, so a
serialized chat summary never lacks a key the chat-list UI reads. Inbound
payloads accept the camelCase names used by the web client as well as
the snake_case names used by the mobile client.
"""

from datetime import datetime
from typing import Any, ClassVar, Dict, Optional, Type, TypeVar

from pydantic import AliasChoices, AliasPath, BaseModel, ConfigDict, Field, model_validator

from HireChat.core.message.protocol import MessageStatus, MessageType

P = TypeVar("P", bound="InboundPayload")


# =============================================================================
# Outbound views
# =============================================================================


class UserProfile(BaseModel):
    """Public profile fields of a chat participant."""
    id: int
    first_name: Optional[str] = None
    first_surname: Optional[str] = None
    email: Optional[str] = None
    profile_photo: Optional[str] = None
    type_user: Optional[str] = None


class MessageView(BaseModel):
    """
    A persisted chat message as sent over the wire.

    ``unread_count`` is always present; views built outside a chat
    summary carry 0.
    """
    id: int
    chat_id: int
    issuer_id: int
    receiver_id: int
    message: str
    type_message: MessageType = MessageType.NORMAL
    message_status: MessageStatus = MessageStatus.SENT
    last_message_sender: str = ""
    client_message_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    unread_count: int = 0


class ChatSummary(BaseModel):
    """One row of a user's chat list."""
    id: int
    user_id: int = Field(description="The counterpart's user id")
    issuer_id: int
    receiver_id: int
    issuer: UserProfile
    receiver: UserProfile
    other_user: UserProfile
    is_issuer: bool
    chat_type: str = "private"
    created_at: datetime
    updated_at: datetime
    previous_message: Optional[MessageView] = None
    unread_count: int = 0

    @model_validator(mode="after")
    def _mirror_unread_count(self) -> 'ChatSummary':
        if self.previous_message is not None:
            self.previous_message.unread_count = self.unread_count
        return self


class UnreadCountSnapshot(BaseModel):
    """Aggregate unread state for one user, recomputed on every emission."""
    model_config = ConfigDict(populate_by_name=True)

    user_id: int = Field(serialization_alias="userId")
    unread_messages_count: int = Field(0, serialization_alias="unreadMessagesCount")
    unread_notifications_count: int = Field(0, serialization_alias="unreadNotificationsCount")

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class PresenceUpdate(BaseModel):
    user_id: int = Field(serialization_alias="userId")
    is_online: bool = Field(serialization_alias="isOnline")
    timestamp: datetime

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# =============================================================================
# Inbound payloads
# =============================================================================


class InboundPayload(BaseModel):
    """Base for client payloads; unknown keys are ignored."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    # Name of the field a bare scalar payload is assigned to (e.g. "room")
    scalar_field: ClassVar[Optional[str]] = None

    @classmethod
    def parse(cls: Type[P], data: Any) -> P:
        """
        Build the payload from raw envelope data.

        Raises:
            pydantic.ValidationError: If the data has the wrong shape or types
        """
        scalar = cls.scalar_field
        if scalar and not isinstance(data, dict):
            data = {scalar: data}
        if data is None:
            data = {}
        return cls.model_validate(data)


class SendMessagePayload(InboundPayload):
    issuer_id: Optional[int] = Field(None, validation_alias=AliasChoices("issuer_id", "senderId", "sender_id"))
    receiver_id: Optional[int] = Field(None, validation_alias=AliasChoices("receiver_id", "receiverId"))
    chat_id: Optional[int] = Field(None, validation_alias=AliasChoices("chat_id", "chatId"))
    message: Optional[str] = Field(None, validation_alias=AliasChoices("message", "body"))
    type_message: MessageType = Field(
        MessageType.NORMAL,
        validation_alias=AliasChoices("type_message", "type", "messageType"),
    )
    client_message_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("client_message_id", "clientMessageId"),
    )
    room: Optional[str] = None


class TypingPayload(InboundPayload):
    issuer_id: Optional[int] = Field(None, validation_alias=AliasChoices("issuer_id", "senderId", "sender_id"))
    receiver_id: Optional[int] = Field(None, validation_alias=AliasChoices("receiver_id", "receiverId"))
    chat_id: Optional[int] = Field(None, validation_alias=AliasChoices("chat_id", "chatId"))
    is_typing: Optional[bool] = Field(None, validation_alias=AliasChoices("is_typing", "isTyping"))
    room: Optional[str] = None


class UserScopedPayload(InboundPayload):
    """Payload of ``get-chats-user`` and ``get-unread-count``."""
    scalar_field: ClassVar[Optional[str]] = "user_id"
    user_id: Optional[int] = Field(None, validation_alias=AliasChoices("user_id", "userId"))


class MessageReadPayload(InboundPayload):
    scalar_field: ClassVar[Optional[str]] = "chat_id"
    chat_id: Optional[int] = Field(
        None,
        validation_alias=AliasChoices("chat_id", "chatId", AliasPath("chat", "id")),
    )


class JoinChatPayload(InboundPayload):
    scalar_field: ClassVar[Optional[str]] = "chat_id"
    chat_id: Optional[int] = Field(None, validation_alias=AliasChoices("chat_id", "chatId"))


class RoomPayload(InboundPayload):
    scalar_field: ClassVar[Optional[str]] = "room"
    room: Optional[str] = None


class DeliveryConfirmationPayload(InboundPayload):
    scalar_field: ClassVar[Optional[str]] = "message_id"
    message_id: Optional[int] = Field(None, validation_alias=AliasChoices("message_id", "messageId", "id"))


__all__ = [
    'UserProfile',
    'MessageView',
    'ChatSummary',
    'UnreadCountSnapshot',
    'PresenceUpdate',
    'InboundPayload',
    'SendMessagePayload',
    'TypingPayload',
    'UserScopedPayload',
    'MessageReadPayload',
    'JoinChatPayload',
    'RoomPayload',
    'DeliveryConfirmationPayload',
]
