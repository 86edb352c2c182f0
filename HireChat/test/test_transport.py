"""
Unit tests for the transport layer.

Tests cover:
- Connection registry bookkeeping and stale-entry eviction
- Room/topic membership
- Heartbeat probing and timeouts
"""

from datetime import datetime, timedelta

import pytest

from HireChat.core.server.transport import (
    HeartbeatMonitor,
    InMemoryConnectionRegistry,
    RoomRegistry,
    chat_topic,
    user_topic,
)
from HireChat.test.conftest import FakeConnection


class TestInMemoryConnectionRegistry:
    def setup_method(self):
        self.evicted = []
        self.registry = InMemoryConnectionRegistry(on_evict=self.evicted.append)

    def _register(self, user_id: int) -> FakeConnection:
        connection = FakeConnection()
        self.registry.register(connection.conn_id, user_id, {"email": f"u{user_id}"}, connection)
        return connection

    def test_register_and_lookup(self):
        connection = self._register(1)

        entry = self.registry.lookup_by_connection(connection.conn_id)
        assert entry.user_id == 1
        assert entry.auth_snapshot == {"email": "u1"}
        assert self.registry.lookup_by_user(1) is entry
        assert self.registry.is_online(1)

    def test_multiple_connections_per_user(self):
        a = self._register(1)
        b = self._register(1)
        self._register(2)

        ids = [e.connection_id for e in self.registry.connections_for_user(1)]
        assert ids == [a.conn_id, b.conn_id]
        assert self.registry.online_user_ids() == [1, 2]
        assert len(self.registry) == 3

    def test_unregister(self):
        a = self._register(1)
        b = self._register(1)

        assert self.registry.unregister(a.conn_id).user_id == 1
        assert self.registry.is_online(1)
        assert self.registry.unregister(b.conn_id) is not None
        assert not self.registry.is_online(1)
        assert self.registry.unregister(b.conn_id) is None
        assert self.evicted == []

    def test_dead_transport_is_evicted_on_read(self):
        connection = self._register(1)
        connection.open = False

        assert self.registry.lookup_by_connection(connection.conn_id) is None
        assert not self.registry.is_online(1)
        assert [e.connection_id for e in self.evicted] == [connection.conn_id]

        # Already gone, so no second eviction
        assert self.registry.list_all() == []
        assert len(self.evicted) == 1

    def test_touch_refreshes_last_ping(self):
        connection = self._register(1)
        entry = self.registry.lookup_by_connection(connection.conn_id)
        entry.last_ping_at = datetime.now() - timedelta(minutes=5)

        self.registry.touch(connection.conn_id)
        assert datetime.now() - entry.last_ping_at < timedelta(seconds=5)

    def test_touch_unknown_connection_is_ignored(self):
        self.registry.touch("missing")


class TestRoomRegistry:
    def setup_method(self):
        self.rooms = RoomRegistry()

    def test_topic_names(self):
        assert user_topic(5) == "user_5"
        assert chat_topic(7) == "chat_7"

    def test_join_and_leave(self):
        self.rooms.join("lobby", "c1")
        self.rooms.join("lobby", "c2")

        assert self.rooms.members("lobby") == ["c1", "c2"]
        assert self.rooms.leave("lobby", "c1") is True
        assert self.rooms.leave("lobby", "c1") is False
        assert self.rooms.members("lobby") == ["c2"]

    def test_leave_all(self):
        self.rooms.join("user_1", "c1")
        self.rooms.join("chat_3", "c1")

        assert self.rooms.leave_all("c1") == ["chat_3", "user_1"]
        assert self.rooms.rooms_of("c1") == []
        assert self.rooms.members("chat_3") == []


class TestHeartbeatMonitor:
    def setup_method(self):
        self.registry = InMemoryConnectionRegistry()
        self.timed_out = []

        async def on_timeout(entry):
            self.timed_out.append(entry.connection_id)

        self.monitor = HeartbeatMonitor(self.registry, interval=10, grace=30, on_timeout=on_timeout)

    def _register(self, idle_seconds: float) -> FakeConnection:
        connection = FakeConnection()
        entry = self.registry.register(connection.conn_id, 1, {}, connection)
        entry.last_ping_at = datetime.now() - timedelta(seconds=idle_seconds)
        return connection

    @pytest.mark.asyncio
    async def test_recent_connection_is_left_alone(self):
        connection = self._register(idle_seconds=1)

        assert await self.monitor.check_connections() == 0
        assert connection.frames == []

    @pytest.mark.asyncio
    async def test_idle_connection_is_pinged(self):
        connection = self._register(idle_seconds=15)

        assert await self.monitor.check_connections() == 0
        assert connection.names() == ["ping"]
        assert self.timed_out == []

    @pytest.mark.asyncio
    async def test_silent_connection_times_out(self):
        connection = self._register(idle_seconds=60)

        assert await self.monitor.check_connections() == 1
        assert self.timed_out == [connection.conn_id]

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        await self.monitor.start()
        assert self.monitor.running
        await self.monitor.stop()
        assert not self.monitor.running
