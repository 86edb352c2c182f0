"""
Scenario tests for the socket gateway.

Connections are fake transports attached straight to the gateway, so every
test drives the real event surface (dispatch, error boundary, sequencing)
without opening sockets.
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from HireChat.core.server.errors import AuthenticationError
from HireChat.core.server.interfaces import AuthResult
from HireChat.test.conftest import FakeConnection, connect, emit


class TestConnectionLifecycle:
    @pytest.mark.asyncio
    async def test_connected_event(self, manager):
        connection = await connect(manager, 1)

        [connected] = connection.events("connected")
        assert connected["user"]["id"] == 1
        assert connected["connectionId"] == connection.conn_id
        assert connected["socketId"] == connection.conn_id
        assert connection.names()[0] == "connected"

    @pytest.mark.asyncio
    async def test_failed_auth_cannot_attach(self, manager):
        with pytest.raises(AuthenticationError):
            await manager.attach(FakeConnection(), AuthResult.failure("Invalid token"))
        assert manager.online_user_ids() == []

    @pytest.mark.asyncio
    async def test_connection_joins_its_user_topic(self, manager):
        connection = await connect(manager, 1)
        assert manager.rooms.members("user_1") == [connection.conn_id]

        await manager.detach(connection.conn_id)
        assert manager.rooms.members("user_1") == []

    @pytest.mark.asyncio
    async def test_dead_transport_is_evicted_and_announced(self, manager, store):
        store.get_or_create_chat(1, 2)
        partner = await connect(manager, 2)
        gone = await connect(manager, 1)

        gone.open = False
        assert manager.online_user_ids() == [2]
        await manager.tasks.drain()

        assert [d["userId"] for d in partner.events("user-offline")] == [1]
        assert manager.rooms.rooms_of(gone.conn_id) == []

    @pytest.mark.asyncio
    async def test_heartbeat_timeout_closes_and_announces(self, manager, store, test_config):
        store.get_or_create_chat(1, 2)
        partner = await connect(manager, 2)
        silent = await connect(manager, 1)
        manager.registry.lookup_by_connection(partner.conn_id).last_ping_at = datetime.now() + timedelta(days=1)

        later = datetime.now() + timedelta(seconds=test_config.heartbeat_grace + 1)
        assert await manager.heartbeat.check_connections(now=later) == 1

        await manager.tasks.drain()
        assert silent.closed_with == (4000, "Heartbeat timeout")
        assert manager.online_user_ids() == [2]
        assert [d["userId"] for d in partner.events("user-offline")] == [1]

    @pytest.mark.asyncio
    async def test_unanswered_close_does_not_stall_heartbeat(self, manager, test_config):
        release = asyncio.Event()

        class _UnansweredClose(FakeConnection):
            async def close(self, code: int = 1000, reason: str = "") -> None:
                await release.wait()
                await super().close(code, reason)

        stuck = _UnansweredClose()
        await manager.attach(stuck, AuthResult(success=True, user_id=1))
        silent = await connect(manager, 3)

        later = datetime.now() + timedelta(seconds=test_config.heartbeat_grace + 1)
        expired = await asyncio.wait_for(manager.heartbeat.check_connections(now=later), 1.0)

        assert expired == 2
        assert manager.online_user_ids() == []
        assert stuck.closed_with is None

        release.set()
        await manager.tasks.drain()
        assert stuck.closed_with == (4000, "Heartbeat timeout")
        assert silent.closed_with == (4000, "Heartbeat timeout")

    @pytest.mark.asyncio
    async def test_frames_from_unknown_connections_are_dropped(self, manager):
        await manager.dispatch("nobody", '{"event": "ping"}')


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_message_between_online_users(self, manager, store):
        chat = store.get_or_create_chat(1, 2)
        sender = await connect(manager, 1)
        receiver = await connect(manager, 2)

        await emit(manager, sender, "send-message", {
            "senderId": 1, "receiverId": 2, "chatId": chat.id, "body": "Can you start Monday?",
        })
        await manager.tasks.drain()

        assert receiver.last("received-message")["message"] == "Can you start Monday?"
        assert sender.last("send-message-success")["deliveryStatus"] == "delivered"
        assert sender.events("received-message") == []
        assert receiver.events("send-message-error") == []

    @pytest.mark.asyncio
    async def test_only_sender_connection_is_acknowledged(self, manager, store):
        chat = store.get_or_create_chat(1, 2)
        phone = await connect(manager, 1)
        laptop = await connect(manager, 1)
        await connect(manager, 2)

        await emit(manager, phone, "send-message", {
            "issuer_id": 1, "receiver_id": 2, "chat_id": chat.id, "message": "hi",
        })

        assert phone.events("send-message-success")
        assert laptop.events("send-message-success") == []
        # Both devices still get the refreshed chat list
        assert laptop.events("get-chats-user")

    @pytest.mark.asyncio
    async def test_issuer_must_be_the_caller(self, manager, store):
        chat = store.get_or_create_chat(3, 2)
        impostor = await connect(manager, 1)

        await emit(manager, impostor, "send-message", {
            "issuer_id": 3, "receiver_id": 2, "chat_id": chat.id, "message": "hi",
        })

        error = impostor.last("send-message-error")
        assert error == {
            "success": False,
            "code": "SENDER_MISMATCH",
            "message": "issuer_id does not match the authenticated user",
        }
        assert store.list_messages(chat.id) == []

    @pytest.mark.asyncio
    async def test_missing_fields(self, manager):
        sender = await connect(manager, 1)

        await emit(manager, sender, "send-message", {"issuer_id": 1, "receiver_id": 2})

        error = sender.last("send-message-error")
        assert error["code"] == "INVALID_DATA"
        assert error["message"] == "Missing required fields: message, chat_id"

    @pytest.mark.asyncio
    async def test_wrongly_typed_payload(self, manager):
        sender = await connect(manager, 1)

        await emit(manager, sender, "send-message", {"issuer_id": 1, "receiver_id": "two", "chat_id": 1})

        error = sender.last("send-message-error")
        assert error["code"] == "INVALID_DATA"
        assert error["message"].startswith("Invalid payload: receiver_id")

    @pytest.mark.asyncio
    async def test_duplicate_client_message_id(self, manager, store):
        chat = store.get_or_create_chat(1, 2)
        sender = await connect(manager, 1)
        receiver = await connect(manager, 2)
        payload = {
            "issuer_id": 1, "receiver_id": 2, "chat_id": chat.id,
            "message": "retry me", "clientMessageId": "tmp-42",
        }

        await emit(manager, sender, "send-message", payload)
        await emit(manager, sender, "send-message", payload)
        await manager.tasks.drain()

        assert len(receiver.events("received-message")) == 1
        first, second = sender.events("send-message-success")
        assert first["data"]["id"] == second["data"]["id"]
        assert second["duplicate"] is True
        assert len(store.list_messages(chat.id)) == 1

    @pytest.mark.asyncio
    async def test_offline_receiver_catches_up_on_connect(self, manager, store):
        chat = store.get_or_create_chat(1, 2)
        sender = await connect(manager, 1)

        await emit(manager, sender, "send-message", {
            "issuer_id": 1, "receiver_id": 2, "chat_id": chat.id, "message": "while you were away",
        })
        await manager.tasks.drain()
        receiver = await connect(manager, 2)
        await emit(manager, receiver, "get-chats-user", {"userId": 2})
        await emit(manager, receiver, "get-unread-count", {})

        [summary] = receiver.last("get-chats-user")["chats"]
        assert summary["previous_message"]["message"] == "while you were away"
        assert summary["previous_message"]["message_status"] == "sent"
        assert summary["unread_count"] == 1
        assert receiver.last("unread-count") == {
            "userId": 2, "unreadMessagesCount": 1, "unreadNotificationsCount": 1,
        }


class TestReadAndDelivery:
    @pytest.mark.asyncio
    async def test_message_read(self, manager, store):
        chat = store.get_or_create_chat(1, 2)
        store.create_message(chat.id, 1, 2, "a")
        store.create_message(chat.id, 1, 2, "b")
        reader = await connect(manager, 2)

        await emit(manager, reader, "messageRead", {"chat": {"id": chat.id}})

        assert reader.last("messageRead") == {
            "status": "success", "chatId": chat.id, "userId": 2, "updated": 2,
        }
        assert reader.last("unread-count")["unreadMessagesCount"] == 0

    @pytest.mark.asyncio
    async def test_message_read_errors(self, manager, store):
        chat = store.get_or_create_chat(1, 2)
        outsider = await connect(manager, 3)

        await emit(manager, outsider, "messageRead", {"chatId": chat.id})
        await emit(manager, outsider, "messageRead", {})

        first, second = outsider.events("messageRead-error")
        assert first["code"] == "NOT_PARTICIPANT"
        assert second["code"] == "INVALID_DATA"

    @pytest.mark.asyncio
    async def test_delivery_confirmation(self, manager, store):
        chat = store.get_or_create_chat(1, 2)
        row, _ = store.create_message(chat.id, 1, 2, "hello")
        issuer = await connect(manager, 1)
        receiver = await connect(manager, 2)

        await emit(manager, receiver, "messageDelivered", {"messageId": row.id})

        assert receiver.last("messageDelivered") == {"messageId": row.id, "status": "delivered"}
        assert issuer.last("message-delivered")["messageId"] == row.id

    @pytest.mark.asyncio
    async def test_received_confirmation_has_no_reply(self, manager, store):
        chat = store.get_or_create_chat(1, 2)
        row, _ = store.create_message(chat.id, 1, 2, "hello")
        receiver = await connect(manager, 2)
        receiver.clear()

        await emit(manager, receiver, "message-received-confirmation", row.id)

        assert receiver.frames == []
        assert store.get_message(row.id).message_status == "delivered"


class TestUserScopedQueries:
    @pytest.mark.asyncio
    async def test_get_chats_for_another_user_is_forbidden(self, manager):
        connection = await connect(manager, 1)

        await emit(manager, connection, "get-chats-user", {"userId": 2})
        await emit(manager, connection, "get-unread-count", 2)

        assert connection.last("get-chats-user-error")["code"] == "FORBIDDEN"
        assert connection.last("get-unread-count-error")["code"] == "FORBIDDEN"
        # Reported, not disconnected
        assert connection.open

    @pytest.mark.asyncio
    async def test_chat_list_order(self, manager, store):
        older = store.get_or_create_chat(1, 2)
        newer = store.get_or_create_chat(1, 3)
        connection = await connect(manager, 1)

        await emit(manager, connection, "send-message", {
            "issuer_id": 1, "receiver_id": 2, "chat_id": older.id, "message": "bump",
        })
        await emit(manager, connection, "get-chats-user", None)

        ids = [c["id"] for c in connection.last("get-chats-user")["chats"]]
        assert ids == [older.id, newer.id]


class TestRoomsAndTyping:
    @pytest.mark.asyncio
    async def test_typing_reaches_receiver_only(self, manager, store):
        chat = store.get_or_create_chat(1, 2)
        typist = await connect(manager, 1)
        receiver = await connect(manager, 2)
        bystander = await connect(manager, 3)

        await emit(manager, typist, "typing", {"receiverId": 2, "chatId": chat.id})

        typing = receiver.last("typing")
        assert typing["issuer_id"] == 1
        assert typing["is_typing"] is True
        assert bystander.events("typing") == []
        assert typist.events("typing") == []

    @pytest.mark.asyncio
    async def test_typing_without_receiver(self, manager):
        typist = await connect(manager, 1)
        await emit(manager, typist, "typing", {"isTyping": False})
        assert typist.last("typing-error")["code"] == "INVALID_DATA"

    @pytest.mark.asyncio
    async def test_join_chat(self, manager, store):
        chat = store.get_or_create_chat(1, 2)
        member = await connect(manager, 1)
        outsider = await connect(manager, 3)

        await emit(manager, member, "join-chat", {"chatId": chat.id})
        await emit(manager, outsider, "join-chat", chat.id)

        assert member.last("join-chat-success")["room"] == f"chat_{chat.id}"
        assert member.conn_id in manager.rooms.members(f"chat_{chat.id}")
        assert outsider.last("join-chat-error")["code"] == "NOT_FOUND"
        assert outsider.conn_id not in manager.rooms.members(f"chat_{chat.id}")

    @pytest.mark.asyncio
    async def test_free_form_rooms(self, manager):
        connection = await connect(manager, 1)

        await emit(manager, connection, "join_room", "lobby")
        await emit(manager, connection, "join_room", {"room": "user_2"})
        await emit(manager, connection, "leave_room", "lobby")
        await emit(manager, connection, "leave_room", "user_1")

        assert connection.last("joined_room") == {"success": True, "room": "lobby"}
        assert connection.last("join_room-error")["code"] == "RESERVED_ROOM"
        assert connection.last("left_room") == {"success": True, "room": "lobby"}
        assert connection.last("leave_room-error")["code"] == "RESERVED_ROOM"
        assert manager.rooms.members("user_2") == []
        assert manager.rooms.members("user_1") == [connection.conn_id]

    @pytest.mark.asyncio
    async def test_room_emission(self, manager):
        a = await connect(manager, 1)
        b = await connect(manager, 2)
        await emit(manager, a, "join_room", "lobby")
        await emit(manager, b, "join_room", "lobby")

        assert await manager.send_to_room("lobby", "announcement", {"text": "hi"}) == 2
        assert b.last("announcement") == {"text": "hi"}


class TestUtilityEvents:
    @pytest.mark.asyncio
    async def test_ping(self, manager):
        connection = await connect(manager, 1)
        await emit(manager, connection, "ping")
        assert "timestamp" in connection.last("pong")

    @pytest.mark.asyncio
    async def test_pong_refreshes_liveness(self, manager):
        connection = await connect(manager, 1)
        entry = manager.registry.lookup_by_connection(connection.conn_id)
        entry.last_ping_at = datetime.now() - timedelta(hours=1)
        connection.clear()

        await emit(manager, connection, "pong")

        assert datetime.now() - entry.last_ping_at < timedelta(minutes=1)
        assert connection.frames == []

    @pytest.mark.asyncio
    async def test_online_users(self, manager):
        connection = await connect(manager, 1)
        await connect(manager, 2)

        await emit(manager, connection, "get_online_users")

        assert connection.last("online_users") == [1, 2]

    @pytest.mark.asyncio
    async def test_check_connection(self, manager):
        connection = await connect(manager, 1)

        await emit(manager, connection, "check-connection", {})

        status = connection.last("connection-status")
        assert status["connected"] is True
        assert status["userId"] == 1
        assert status["rooms"] == ["user_1"]

    @pytest.mark.asyncio
    async def test_malformed_and_unknown_frames(self, manager):
        connection = await connect(manager, 1)

        await manager.dispatch(connection.conn_id, "{not json")
        await emit(manager, connection, "teleport", {})

        malformed, unknown = connection.events("error")
        assert malformed["code"] == "INVALID_FRAME"
        assert unknown["code"] == "UNKNOWN_EVENT"
        assert connection.open

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_contained(self, manager, monkeypatch):
        async def boom(user_id):
            raise RuntimeError("projector exploded")

        connection = await connect(manager, 1)
        monkeypatch.setattr(manager.projector, "project_for_user", boom)

        await emit(manager, connection, "get-chats-user", {})

        assert connection.last("get-chats-user-error") == {
            "success": False, "code": "INTERNAL_ERROR", "message": "Internal server error",
        }


class TestOfflineReadScenario:
    @pytest.mark.asyncio
    async def test_receiver_reads_offline_message_without_touching_issuer_counts(self, manager, store):
        alice = await connect(manager, 1)
        await emit(manager, alice, "send-message", {
            "issuer_id": 1, "receiver_id": 2, "chat_id": 9999, "message": "hello",
        })
        await manager.tasks.drain()
        assert alice.last("send-message-success")["deliveryStatus"] == "sent"

        await emit(manager, alice, "get-unread-count")
        issuer_before = alice.last("unread-count")

        bob = await connect(manager, 2)
        await emit(manager, bob, "get-chats-user")
        [summary] = bob.last("get-chats-user")["chats"]
        assert summary["id"] != 9999
        assert summary["unread_count"] == 1
        assert summary["previous_message"]["message"] == "hello"

        await emit(manager, bob, "messageRead", {"chatId": summary["id"]})
        assert bob.last("messageRead")["updated"] == 1

        await emit(manager, alice, "get-unread-count")
        await emit(manager, bob, "get-unread-count")
        assert alice.last("unread-count") == issuer_before
        assert issuer_before["unreadMessagesCount"] == 0
        assert bob.last("unread-count")["unreadMessagesCount"] == 0
