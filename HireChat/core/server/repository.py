"""
Async access to the SQLite store.

Each store call runs in a worker thread and is bounded by a timeout, so a
stuck database surfaces as a ``PersistenceError`` instead of stalling the
event loop or hanging a sender.
"""

import asyncio
import logging
import sqlite3
from functools import partial
from typing import Any, Callable, List, Optional, Tuple, TypeVar

from HireChat.config import config
from HireChat.core.message.protocol import MessageStatus, MessageType
from HireChat.core.server.errors import PersistenceError
from HireChat.core.server.storage_sqlite import ChatRow, ChatThreadRow, MessageRow, SQLiteStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StoreExecutor:
    """Runs blocking store calls off the event loop with a deadline."""

    def __init__(self, store: SQLiteStore, timeout: Optional[float] = None):
        self.store = store
        self.timeout = config.STORE_TIMEOUT if timeout is None else timeout

    async def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        name = getattr(func, "__name__", "store call")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(partial(func, *args, **kwargs)),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error("Storage call %s timed out after %.1fs", name, self.timeout)
            raise PersistenceError(f"Storage timed out during {name}") from e
        except sqlite3.Error as e:
            logger.error("Storage call %s failed: %s", name, e)
            raise PersistenceError(f"Storage failure during {name}") from e


class SQLiteChatRepository(StoreExecutor):
    """``ChatRepository`` backed by ``SQLiteStore``."""

    async def get_chat(self, chat_id: int) -> Optional[ChatRow]:
        return await self.run(self.store.get_chat, chat_id)

    async def get_or_create_chat(self, user_a: int, user_b: int) -> ChatRow:
        return await self.run(self.store.get_or_create_chat, user_a, user_b)

    async def create_message(
        self,
        chat_id: int,
        issuer_id: int,
        receiver_id: int,
        body: str,
        message_type: MessageType,
        client_message_id: Optional[str] = None,
    ) -> Tuple[MessageRow, bool]:
        return await self.run(
            self.store.create_message,
            chat_id, issuer_id, receiver_id, body, message_type, client_message_id,
        )

    async def get_message(self, message_id: int) -> Optional[MessageRow]:
        return await self.run(self.store.get_message, message_id)

    async def advance_status(self, message_id: int, status: MessageStatus) -> bool:
        return await self.run(self.store.advance_status, message_id, status)

    async def mark_chat_read(self, chat_id: int, receiver_id: int) -> int:
        return await self.run(self.store.mark_chat_read, chat_id, receiver_id)

    async def list_chat_threads(self, user_id: int) -> List[ChatThreadRow]:
        return await self.run(self.store.list_chat_threads, user_id)

    async def list_messages(self, chat_id: int, limit: int = 50) -> List[MessageRow]:
        return await self.run(self.store.list_messages, chat_id, limit)

    async def chat_partner_ids(self, user_id: int) -> List[int]:
        return await self.run(self.store.chat_partner_ids, user_id)

    async def count_unread_messages(self, user_id: int) -> int:
        return await self.run(self.store.count_unread_messages, user_id)

    async def find_user_id_by_email(self, email: str) -> Optional[int]:
        return await self.run(self.store.find_user_id_by_email, email)


__all__ = [
    'StoreExecutor',
    'SQLiteChatRepository',
]
