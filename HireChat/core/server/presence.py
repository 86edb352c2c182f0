"""Presence notifications for HireChat.

A user is online while the connection registry holds at least one live
connection for them. On a transition the user's chat partners that are
connected get ``user-online`` / ``user-offline`` and every connection gets
``user-status-changed``.

Policies:
- ``last_socket``: notify on the first connection and on the last disconnect
- ``per_socket``: notify on every connect and disconnect
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import List, Set

from HireChat.core.message.protocol import EventName
from HireChat.core.message.schemas import PresenceUpdate
from HireChat.core.server.interfaces import ChatRepository, ConnectionEntry, ConnectionRegistry
from HireChat.core.server.routing import MessageRouter

logger = logging.getLogger(__name__)


class PresencePolicy(str, Enum):
    LAST_SOCKET = "last_socket"
    PER_SOCKET = "per_socket"


class PresenceNotifier:
    """Emits presence transitions to chat partners and to everyone."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        router: MessageRouter,
        repository: ChatRepository,
        policy: PresencePolicy = PresencePolicy.LAST_SOCKET,
    ):
        self._registry = registry
        self._router = router
        self._repository = repository
        self.policy = PresencePolicy(policy)
        # Users whose online transition has been announced and not yet undone
        self._announced: Set[int] = set()

    async def connected(self, entry: ConnectionEntry) -> bool:
        """
        Handle a connection that has just been registered.

        Callers hold the user's sequencer lock, so the check and the flip
        of the announced state happen as one step per user.

        Returns:
            True if a presence transition was announced
        """
        user_id = entry.user_id
        if self.policy is PresencePolicy.LAST_SOCKET:
            if user_id in self._announced:
                logger.debug("User %s opened another connection; already online", user_id)
                return False
            if self._registry.lookup_by_connection(entry.connection_id) is None:
                logger.debug("Connection %s closed before it was announced", entry.connection_id)
                return False
            self._announced.add(user_id)
        await self._announce(user_id, True)
        return True

    async def disconnected(self, entry: ConnectionEntry) -> bool:
        """
        Handle a connection that has just been unregistered.

        Returns:
            True if a presence transition was announced
        """
        user_id = entry.user_id
        if self.policy is PresencePolicy.LAST_SOCKET:
            if self._registry.is_online(user_id):
                logger.debug("User %s still has live connections", user_id)
                return False
            if user_id not in self._announced:
                logger.debug("User %s already announced offline", user_id)
                return False
            self._announced.discard(user_id)
        await self._announce(user_id, False)
        return True

    def is_announced_online(self, user_id: int) -> bool:
        return user_id in self._announced

    def online_user_ids(self) -> List[int]:
        return self._registry.online_user_ids()

    async def _announce(self, user_id: int, online: bool) -> None:
        payload = PresenceUpdate(
            user_id=user_id,
            is_online=online,
            timestamp=datetime.now(timezone.utc),
        ).to_payload()
        event = EventName.USER_ONLINE if online else EventName.USER_OFFLINE

        try:
            partners = await self._repository.chat_partner_ids(user_id)
        except Exception as e:
            logger.exception("Chat partner lookup failed for user %s: %s", user_id, e)
            partners = []

        notified = 0
        for partner_id in partners:
            if partner_id == user_id or not self._registry.is_online(partner_id):
                continue
            if await self._router.send_to_user(partner_id, event, payload):
                notified += 1

        await self._router.broadcast(EventName.USER_STATUS_CHANGED, payload)
        logger.info(
            "User %s is %s (%d partner(s) notified)",
            user_id, "online" if online else "offline", notified,
        )


__all__ = [
    'PresencePolicy',
    'PresenceNotifier',
]
