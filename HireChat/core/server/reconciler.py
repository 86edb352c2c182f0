"""
Unread and read-state reconciliation.

After a send or a read acknowledgement both participants get a fresh chat
list and a fresh unread snapshot. Counts are always recomputed from durable
state; there is no cache to invalidate.
"""

import logging
from typing import Any, Dict, List

from HireChat.core.logging import report_failure
from HireChat.core.message.protocol import EventName
from HireChat.core.message.schemas import ChatSummary, UnreadCountSnapshot
from HireChat.core.server.errors import NotFoundError, ValidationError
from HireChat.core.server.interfaces import (
    ChatRepository,
    ConnectionRegistry,
    NotificationService,
    unique_ids,
)
from HireChat.core.server.projector import ChatSummaryProjector
from HireChat.core.server.routing import MessageRouter

logger = logging.getLogger(__name__)


def chats_payload(summaries: List[ChatSummary]) -> Dict[str, Any]:
    """Body of a ``get-chats-user`` emission."""
    return {"success": True, "chats": [s.model_dump(mode="json") for s in summaries]}


class UnreadReconciler:
    """Computes unread state and pushes refreshed views to online users."""

    def __init__(
        self,
        repository: ChatRepository,
        notifications: NotificationService,
        projector: ChatSummaryProjector,
        router: MessageRouter,
        registry: ConnectionRegistry,
    ):
        self._repository = repository
        self._notifications = notifications
        self._projector = projector
        self._router = router
        self._registry = registry

    async def compute_unread_snapshot(self, user_id: int) -> UnreadCountSnapshot:
        """
        Unread messages addressed to the user plus unread notifications.

        Raises:
            PersistenceError: If either count cannot be read
        """
        messages = await self._repository.count_unread_messages(user_id)
        notifications = await self._notifications.count_unread(user_id)
        return UnreadCountSnapshot(
            user_id=user_id,
            unread_messages_count=messages,
            unread_notifications_count=notifications,
        )

    async def mark_read(self, chat_id: int, user_id: int) -> int:
        """
        Mark every unread message addressed to ``user_id`` in a chat as read
        and resynchronise both participants.

        Returns:
            Number of messages that changed status

        Raises:
            NotFoundError: If the chat does not exist
            ValidationError: If the user is not a participant
        """
        chat = await self._repository.get_chat(chat_id)
        if chat is None:
            raise NotFoundError(f"Chat {chat_id} not found")
        if not chat.involves(user_id):
            raise ValidationError("User does not participate in this chat", code="NOT_PARTICIPANT")

        updated = await self._repository.mark_chat_read(chat_id, user_id)
        logger.info("User %s read %d message(s) in chat %s", user_id, updated, chat_id)
        await self.sync_users(chat.user_a, chat.user_b)
        return updated

    async def push_chats(self, user_id: int) -> int:
        summaries = await self._projector.project_for_user(user_id)
        return await self._router.send_to_user(user_id, EventName.GET_CHATS_USER, chats_payload(summaries))

    async def push_unread(self, user_id: int) -> int:
        snapshot = await self.compute_unread_snapshot(user_id)
        return await self._router.send_to_user(user_id, EventName.UNREAD_COUNT, snapshot.to_payload())

    async def refresh_unread(self, user_id: int) -> None:
        """Push a fresh unread snapshot if the user is online."""
        if not self._registry.is_online(user_id):
            return
        try:
            await self.push_unread(user_id)
        except Exception as e:
            report_failure("refresh_unread", e, user_id=user_id)

    async def sync_users(self, *user_ids: int) -> None:
        """
        Push chat lists and unread snapshots to each listed user that is online.

        Failures are reported through the error channel and never raised.
        """
        for user_id in unique_ids(user_ids):
            if not self._registry.is_online(user_id):
                logger.debug("Skipping sync for offline user %s", user_id)
                continue
            try:
                await self.push_chats(user_id)
                await self.push_unread(user_id)
            except Exception as e:
                report_failure("sync_users", e, user_id=user_id)


__all__ = [
    'UnreadReconciler',
    'chats_payload',
]
