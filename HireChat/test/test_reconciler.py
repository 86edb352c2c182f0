"""
Unit tests for unread reconciliation and chat summary projection.
"""

import logging

import pytest

from HireChat.core.logging import ERROR_CHANNEL
from HireChat.core.message.protocol import MessageStatus
from HireChat.core.server.errors import NotFoundError, PersistenceError, ValidationError
from HireChat.core.server.projector import ChatSummaryProjector
from HireChat.core.server.storage_sqlite import ChatRow, ChatThreadRow
from HireChat.test.conftest import connect


class TestUnreadReconciler:
    @pytest.mark.asyncio
    async def test_snapshot_counts_messages_and_notifications(self, manager, store):
        chat = store.get_or_create_chat(1, 2)
        store.create_message(chat.id, 1, 2, "a")
        read, _ = store.create_message(chat.id, 1, 2, "b")
        store.advance_status(read.id, MessageStatus.READ)
        store.create_notification(2, 1, "message_received", "New message", "a")

        snapshot = await manager.reconciler.compute_unread_snapshot(2)

        assert snapshot.unread_messages_count == 1
        assert snapshot.unread_notifications_count == 1

    @pytest.mark.asyncio
    async def test_mark_read_resynchronises_both_participants(self, manager, store):
        chat = store.get_or_create_chat(1, 2)
        store.create_message(chat.id, 1, 2, "a")
        store.create_message(chat.id, 1, 2, "b")
        issuer = await connect(manager, 1)
        reader = await connect(manager, 2)

        assert await manager.reconciler.mark_read(chat.id, 2) == 2

        assert store.count_unread_messages(2) == 0
        assert reader.last("unread-count")["unreadMessagesCount"] == 0
        assert reader.last("get-chats-user")["chats"][0]["unread_count"] == 0
        assert issuer.last("get-chats-user")["chats"][0]["previous_message"]["message_status"] == "read"

    @pytest.mark.asyncio
    async def test_mark_read_is_idempotent(self, manager, store):
        chat = store.get_or_create_chat(1, 2)
        store.create_message(chat.id, 1, 2, "a")

        assert await manager.reconciler.mark_read(chat.id, 2) == 1
        assert await manager.reconciler.mark_read(chat.id, 2) == 0

    @pytest.mark.asyncio
    async def test_mark_read_unknown_chat(self, manager):
        with pytest.raises(NotFoundError):
            await manager.reconciler.mark_read(31337, 2)

    @pytest.mark.asyncio
    async def test_mark_read_by_outsider(self, manager, store):
        chat = store.get_or_create_chat(1, 2)
        with pytest.raises(ValidationError) as exc_info:
            await manager.reconciler.mark_read(chat.id, 3)
        assert exc_info.value.code == "NOT_PARTICIPANT"

    @pytest.mark.asyncio
    async def test_sync_skips_offline_users(self, manager, store):
        store.get_or_create_chat(1, 2)
        online = await connect(manager, 1)
        online.clear()

        await manager.reconciler.sync_users(1, 2, 1)

        assert online.names() == ["get-chats-user", "unread-count"]

    @pytest.mark.asyncio
    async def test_sync_failure_is_reported_not_raised(self, manager, store, monkeypatch, caplog):
        async def failing(user_id):
            raise PersistenceError("Storage timed out during list_chat_threads")

        await connect(manager, 1)
        monkeypatch.setattr(manager.repository, "list_chat_threads", failing)

        with caplog.at_level(logging.ERROR, logger=ERROR_CHANNEL):
            await manager.reconciler.sync_users(1)

        [record] = [r for r in caplog.records if r.name == ERROR_CHANNEL]
        assert record.extra_data["source"] == "sync_users"
        assert record.extra_data["user_id"] == 1


class TestChatSummaryProjector:
    @pytest.mark.asyncio
    async def test_summaries_for_both_sides(self, manager, store):
        chat = store.get_or_create_chat(1, 2)
        store.create_message(chat.id, 1, 2, "hello")

        [issuer_view] = await manager.projector.project_for_user(1)
        [receiver_view] = await manager.projector.project_for_user(2)

        assert issuer_view.is_issuer is True
        assert issuer_view.user_id == 2
        assert issuer_view.other_user.first_name == "User2"
        assert issuer_view.unread_count == 0

        assert receiver_view.is_issuer is False
        assert receiver_view.user_id == 1
        assert receiver_view.unread_count == 1
        assert receiver_view.previous_message.unread_count == 1

    @pytest.mark.asyncio
    async def test_no_chats(self, manager):
        assert await manager.projector.project_for_user(4) == []

    def test_summary_without_profiles_or_messages(self):
        chat = ChatRow(
            id=5, issuer_id=7, receiver_id=8, user_a=7, user_b=8,
            chat_type="private", created_at=1_700_000_000.0, updated_at=1_700_000_100.0,
        )
        thread = ChatThreadRow(chat=chat, last_message=None, unread_count=0, issuer=None, receiver=None)

        summary = ChatSummaryProjector.build_summary(thread, 8)

        assert summary.other_user.id == 7
        assert summary.other_user.first_name is None
        assert summary.previous_message is None
        assert summary.model_dump(mode="json")["updated_at"].startswith("2023-11-14T22:")
