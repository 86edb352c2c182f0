"""
Message delivery pipeline.

``submit`` validates a chat message, persists it, routes it to the
receiver, acknowledges the sender and triggers the follow-up work
(notification, view resynchronisation). The sender always gets either an
acknowledgement or an error; an offline receiver simply misses the
realtime event and catches up on the next chat-list fetch.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from HireChat.core.logging import report_failure
from HireChat.core.message.protocol import EventName, MessageStatus, MessageType
from HireChat.core.message.schemas import MessageView
from HireChat.core.server.errors import NotFoundError, PersistenceError, ValidationError
from HireChat.core.server.interfaces import ChatRepository, NotificationService
from HireChat.core.server.notifications import MESSAGE_RECEIVED, message_preview
from HireChat.core.server.projector import message_view
from HireChat.core.server.reconciler import UnreadReconciler
from HireChat.core.server.routing import DeliveryResult, DeliveryRoute, MessageRouter
from HireChat.core.server.storage_sqlite import ChatRow, MessageRow
from HireChat.core.server.tasks import BackgroundTaskSet

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


@dataclass
class SubmitOutcome:
    """What happened to a submitted message."""
    message: MessageView
    delivery: DeliveryResult
    created: bool = True

    def success_payload(self) -> Dict[str, Any]:
        return {
            "success": True,
            "message": "Message sent" if self.created else "Message already sent",
            "data": self.message.model_dump(mode="json"),
            "deliveryStatus": self.message.message_status.value,
            "delivery": self.delivery.to_payload(),
            "duplicate": not self.created,
        }


class MessageDeliveryPipeline:
    """Persist-then-route handling of ``send-message``."""

    def __init__(
        self,
        repository: ChatRepository,
        notifications: NotificationService,
        router: MessageRouter,
        reconciler: UnreadReconciler,
        tasks: BackgroundTaskSet,
    ):
        self._repository = repository
        self._notifications = notifications
        self._router = router
        self._reconciler = reconciler
        self._tasks = tasks

    async def submit(
        self,
        sender_id: Optional[int],
        receiver_id: Optional[int],
        chat_id: Optional[int],
        body: Optional[str],
        message_type: Any = MessageType.NORMAL,
        client_message_id: Optional[str] = None,
        origin_connection_id: Optional[str] = None,
    ) -> SubmitOutcome:
        """
        Submit a chat message.

        Args:
            sender_id: Issuer of the message
            receiver_id: Counterpart
            chat_id: Chat the client believes the message belongs to
            body: Message text
            message_type: ``normal`` or ``proposal``
            client_message_id: Optional idempotency key, unique per sender
            origin_connection_id: Connection to acknowledge

        Returns:
            SubmitOutcome with the stored message and the routing result

        Raises:
            ValidationError: On missing or inconsistent fields
            PersistenceError: If the message cannot be stored
        """
        message_type = self._validate(sender_id, receiver_id, chat_id, body, message_type)

        try:
            chat = await self._resolve_chat(chat_id, sender_id, receiver_id)
            row, created = await self._repository.create_message(
                chat.id, sender_id, receiver_id, body, message_type, client_message_id,
            )
        except PersistenceError as e:
            raise PersistenceError(f"Message could not be sent: {e.message}", code="SEND_FAILED") from e

        if created:
            logger.info("Message %s stored in chat %s (%s -> %s)", row.id, chat.id, sender_id, receiver_id)
            delivery = await self._route(row)
            if delivery.delivered:
                row = await self._mark_delivered(row)
        else:
            logger.info("Duplicate submit %s from user %s; returning message %s", client_message_id, sender_id, row.id)
            delivery = DeliveryResult(DeliveryRoute.NONE, receiver_id, error="Duplicate submit")

        outcome = SubmitOutcome(message_view(row), delivery, created)
        await self._ack_sender(outcome, origin_connection_id)

        if created:
            self._tasks.spawn(
                self._notify_receiver(row),
                "notify_receiver",
                user_id=receiver_id,
                chat_id=chat.id,
                message_id=row.id,
            )
            await self._reconciler.sync_users(sender_id, receiver_id)

        return outcome

    async def confirm_delivery(self, message_id: Optional[int], user_id: int) -> MessageView:
        """
        Receiver-side confirmation that a message arrived.

        Advances ``sent`` to ``delivered`` and tells the issuer; confirming an
        already delivered or read message changes nothing.

        Raises:
            ValidationError: If the id is missing or the user is not the receiver
            NotFoundError: If the message does not exist
        """
        if message_id is None:
            raise ValidationError("messageId is required")
        row = await self._repository.get_message(message_id)
        if row is None:
            raise NotFoundError(f"Message {message_id} not found")
        if row.receiver_id != user_id:
            raise ValidationError("Only the receiver can confirm delivery", code="NOT_RECEIVER")

        if await self._repository.advance_status(row.id, MessageStatus.DELIVERED):
            row = await self._repository.get_message(row.id) or row
            await self._router.send_to_user(row.issuer_id, EventName.MESSAGE_DELIVERED_NOTICE, {
                "messageId": row.id,
                "chatId": row.chat_id,
                "status": row.message_status,
                "deliveredAt": _now(),
            })
        return message_view(row)

    @staticmethod
    def _validate(sender_id, receiver_id, chat_id, body, message_type) -> MessageType:
        missing = [
            name for name, value in (
                ("message", body),
                ("issuer_id", sender_id),
                ("receiver_id", receiver_id),
                ("chat_id", chat_id),
            )
            if _is_blank(value)
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        if sender_id == receiver_id:
            raise ValidationError("Cannot send a message to yourself", code="SELF_MESSAGE")
        try:
            return MessageType(message_type or MessageType.NORMAL)
        except ValueError:
            raise ValidationError(f"Unknown message type: {message_type}") from None

    async def _resolve_chat(self, chat_id: int, sender_id: int, receiver_id: int) -> ChatRow:
        chat = await self._repository.get_chat(chat_id)
        if chat is not None:
            if not (chat.involves(sender_id) and chat.involves(receiver_id)):
                raise ValidationError(
                    f"Chat {chat_id} does not belong to users {sender_id} and {receiver_id}",
                    code="CHAT_MISMATCH",
                )
            return chat
        chat = await self._repository.get_or_create_chat(sender_id, receiver_id)
        logger.info("Chat %s not found; using chat %s for users %s and %s", chat_id, chat.id, sender_id, receiver_id)
        return chat

    async def _route(self, row: MessageRow) -> DeliveryResult:
        data = message_view(row).model_dump(mode="json")
        data.update({"eventType": EventName.RECEIVED_MESSAGE, "timestamp": _now()})
        result = await self._router.deliver(
            row.receiver_id,
            EventName.RECEIVED_MESSAGE,
            data,
            chat_id=row.chat_id,
            sender_id=row.issuer_id,
        )
        logger.debug("Message %s routed via %s", row.id, result.route.name)
        return result

    async def _mark_delivered(self, row: MessageRow) -> MessageRow:
        try:
            if await self._repository.advance_status(row.id, MessageStatus.DELIVERED):
                return await self._repository.get_message(row.id) or row
        except PersistenceError as e:
            report_failure("mark_delivered", e, message_id=row.id, chat_id=row.chat_id)
        return row

    async def _ack_sender(self, outcome: SubmitOutcome, origin_connection_id: Optional[str]) -> None:
        if origin_connection_id is None:
            return
        ack = outcome.message.model_dump(mode="json")
        ack.update({"eventType": EventName.SEND_MESSAGE, "timestamp": _now()})
        await self._router.send_to_connection(origin_connection_id, EventName.SEND_MESSAGE, ack)
        await self._router.send_to_connection(
            origin_connection_id, EventName.SEND_MESSAGE_SUCCESS, outcome.success_payload(),
        )

    async def _notify_receiver(self, row: MessageRow) -> None:
        await self._notifications.create(
            row.receiver_id,
            row.issuer_id,
            MESSAGE_RECEIVED,
            "New message",
            message_preview(row.message),
            {"chat_id": row.chat_id, "message_id": row.id},
        )
        await self._reconciler.refresh_unread(row.receiver_id)


__all__ = [
    'MessageDeliveryPipeline',
    'SubmitOutcome',
]
