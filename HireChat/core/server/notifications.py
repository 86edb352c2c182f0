"""
Notification collaborator.

The core only creates notifications and reads unread counts; listing and
acknowledging them belongs to the notification API.
"""

import logging
from typing import Any, Dict, Optional

from HireChat.core.server.repository import StoreExecutor

logger = logging.getLogger(__name__)

MESSAGE_RECEIVED = "message_received"
PREVIEW_LENGTH = 100


def message_preview(body: str, limit: int = PREVIEW_LENGTH) -> str:
    """Shorten a message body for a notification line."""
    body = " ".join(body.split())
    return body if len(body) <= limit else body[: limit - 3].rstrip() + "..."


class SQLiteNotificationService(StoreExecutor):
    """``NotificationService`` backed by the notifications table."""

    async def create(
        self,
        user_id: int,
        from_user_id: Optional[int],
        type: str,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        notification_id = await self.run(
            self.store.create_notification,
            user_id, from_user_id, type, title, message, metadata,
        )
        logger.debug("Notification %s (%s) created for user %s", notification_id, type, user_id)
        return notification_id

    async def count_unread(self, user_id: int) -> int:
        return await self.run(self.store.count_unread_notifications, user_id)


__all__ = [
    'MESSAGE_RECEIVED',
    'message_preview',
    'SQLiteNotificationService',
]
