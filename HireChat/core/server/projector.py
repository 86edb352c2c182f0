"""
Chat summary projection.

Builds a user's chat list from durable state on every call; nothing is
cached between response cycles.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from HireChat.core.message.schemas import ChatSummary, MessageView, UserProfile
from HireChat.core.server.errors import NotFoundError, ValidationError
from HireChat.core.server.interfaces import ChatRepository
from HireChat.core.server.storage_sqlite import ChatThreadRow, MessageRow, UserRow

logger = logging.getLogger(__name__)


def to_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def message_view(row: MessageRow, unread_count: int = 0) -> MessageView:
    """Wire view of a stored message."""
    return MessageView(
        id=row.id,
        chat_id=row.chat_id,
        issuer_id=row.issuer_id,
        receiver_id=row.receiver_id,
        message=row.message,
        type_message=row.type_message,
        message_status=row.message_status,
        last_message_sender=row.last_message_sender,
        client_message_id=row.client_message_id,
        created_at=to_datetime(row.created_at),
        updated_at=to_datetime(row.updated_at),
        unread_count=unread_count,
    )


def profile_view(user_id: int, row: Optional[UserRow]) -> UserProfile:
    """Public profile; users without a profile row get an id-only profile."""
    if row is None:
        return UserProfile(id=user_id)
    return UserProfile(
        id=row.id,
        first_name=row.first_name,
        first_surname=row.first_surname,
        email=row.email,
        profile_photo=row.profile_photo,
        type_user=row.type_user,
    )


class ChatSummaryProjector:
    """Derives ordered chat summaries for a user."""

    def __init__(self, repository: ChatRepository):
        self._repository = repository

    async def project_for_user(self, user_id: int) -> List[ChatSummary]:
        """
        Every chat involving ``user_id``, most recently updated first.

        Raises:
            PersistenceError: If the chat list cannot be read
        """
        threads = await self._repository.list_chat_threads(user_id)
        summaries = [self.build_summary(thread, user_id) for thread in threads]
        logger.debug("Projected %d chat(s) for user %s", len(summaries), user_id)
        return summaries

    async def project_history(self, chat_id: int, user_id: int, limit: int = 50) -> List[MessageView]:
        """
        Latest messages of a chat, oldest first, for one of its participants.

        Raises:
            NotFoundError: If the chat does not exist
            ValidationError: If the user is not a participant
        """
        chat = await self._repository.get_chat(chat_id)
        if chat is None:
            raise NotFoundError(f"Chat {chat_id} not found")
        if not chat.involves(user_id):
            raise ValidationError("User does not participate in this chat", code="NOT_PARTICIPANT")
        return [message_view(row) for row in await self._repository.list_messages(chat_id, limit)]

    @staticmethod
    def build_summary(thread: ChatThreadRow, user_id: int) -> ChatSummary:
        chat = thread.chat
        issuer = profile_view(chat.issuer_id, thread.issuer)
        receiver = profile_view(chat.receiver_id, thread.receiver)
        is_issuer = chat.issuer_id == user_id
        other = receiver if is_issuer else issuer

        return ChatSummary(
            id=chat.id,
            user_id=other.id,
            issuer_id=chat.issuer_id,
            receiver_id=chat.receiver_id,
            issuer=issuer,
            receiver=receiver,
            other_user=other,
            is_issuer=is_issuer,
            chat_type=chat.chat_type,
            created_at=to_datetime(chat.created_at),
            updated_at=to_datetime(chat.updated_at),
            previous_message=(
                message_view(thread.last_message) if thread.last_message is not None else None
            ),
            unread_count=thread.unread_count,
        )


__all__ = [
    'ChatSummaryProjector',
    'message_view',
    'profile_view',
    'to_datetime',
]
