"""
Test configuration and fixtures for HireChat server tests.

Provides:
- Fake transports that record every frame they are sent
- A temporary SQLite store and a gateway wired to it
- A JWT token generator signed with the test secret
- A local HTTP stand-in for the identity provider
"""

import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import jwt
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from HireChat.core.server.auth import JWTAuthenticator
from HireChat.core.server.interfaces import AuthResult
from HireChat.core.server.storage_sqlite import SQLiteStore
from HireChat.core.server.websocket_manager import ChatSocketManager

TEST_SECRET = "hirechat-test-secret-key-0123456789abcdef"


@dataclass
class TestConfig:
    """Configuration for server tests."""
    host: str = "127.0.0.1"
    timeout: float = 5.0
    heartbeat_interval: float = 3600.0
    heartbeat_grace: float = 7200.0


class FakeConnection:
    """
    In-memory stand-in for a websocket transport.

    Decodes every frame it is sent so tests can assert on events.
    """

    def __init__(self, conn_id: Optional[str] = None):
        self.conn_id = conn_id or uuid.uuid4().hex
        self.frames: List[Dict[str, Any]] = []
        self.open = True
        self.closed_with = None

    async def send(self, message: str) -> bool:
        if not self.open:
            return False
        self.frames.append(json.loads(message))
        return True

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.open = False
        self.closed_with = (code, reason)

    def is_open(self) -> bool:
        return self.open

    def events(self, name: Optional[str] = None) -> List[Dict[str, Any]]:
        """Payloads of every frame, or of the frames named ``name``."""
        return [f["data"] for f in self.frames if name is None or f["event"] == name]

    def names(self) -> List[str]:
        return [f["event"] for f in self.frames]

    def last(self, name: str) -> Dict[str, Any]:
        matching = self.events(name)
        assert matching, f"no {name!r} frame in {self.names()}"
        return matching[-1]

    def clear(self) -> None:
        self.frames.clear()


class TestDataGenerator:
    """Generate test data for server tests."""

    @staticmethod
    def generate_jwt_token(user_id: int, secret: str = TEST_SECRET, expires_in: int = 3600, **claims) -> str:
        """Generate a test JWT token; ``sub`` carries the user id."""
        payload = {
            "sub": str(user_id),
            "exp": int(time.time()) + expires_in,
            "iat": int(time.time()),
            **claims,
        }
        return jwt.encode(payload, secret, algorithm="HS256")

    @staticmethod
    def seed_users(store: SQLiteStore, *user_ids: int) -> None:
        for user_id in user_ids:
            store.upsert_user(
                user_id,
                email=f"user{user_id}@example.com",
                first_name=f"User{user_id}",
                first_surname="Test",
                type_user="freelancer" if user_id % 2 else "client",
            )


def stored_notifications(store: SQLiteStore, user_id: int) -> List[Dict[str, Any]]:
    """Notification rows written for ``user_id``, newest first."""
    rows = store._conn.execute(
        "SELECT * FROM notifications WHERE user_id=? ORDER BY id DESC", (user_id,)
    ).fetchall()
    return [dict(row, metadata=json.loads(row["metadata"] or "{}")) for row in rows]


async def connect(manager: ChatSocketManager, user_id: int, conn_id: Optional[str] = None) -> FakeConnection:
    """Attach a fake transport for an already authenticated user."""
    connection = FakeConnection(conn_id)
    auth = AuthResult(success=True, user_id=user_id, email=f"user{user_id}@example.com")
    await manager.attach(connection, auth)
    return connection


async def emit(manager: ChatSocketManager, connection: FakeConnection, event: str, data: Any = None) -> None:
    """Feed one inbound frame to the gateway as if it came from ``connection``."""
    await manager.dispatch(connection.conn_id, json.dumps({"event": event, "data": data}))


@pytest.fixture(scope="session")
def test_config() -> TestConfig:
    """Provide test configuration."""
    return TestConfig()


@pytest.fixture(scope="session")
def test_data_generator() -> TestDataGenerator:
    """Provide test data generator."""
    return TestDataGenerator()


@pytest.fixture
def store(tmp_path, test_data_generator):
    """Temporary SQLite store with users 1 to 4 seeded."""
    db = SQLiteStore(str(tmp_path / "hirechat_test.db"))
    test_data_generator.seed_users(db, 1, 2, 3, 4)
    yield db
    db.close()


def _build_manager(store: SQLiteStore, test_config: TestConfig, **kwargs) -> ChatSocketManager:
    return ChatSocketManager(
        store=store,
        authenticator=JWTAuthenticator(secret=TEST_SECRET),
        heartbeat_interval=test_config.heartbeat_interval,
        heartbeat_grace=test_config.heartbeat_grace,
        **kwargs,
    )


@pytest_asyncio.fixture
async def manager(store, test_config):
    """Gateway wired to the temporary store; not listening on a socket."""
    gateway = _build_manager(store, test_config)
    yield gateway
    await gateway.tasks.drain()


@pytest_asyncio.fixture
async def per_socket_manager(store, test_config):
    gateway = _build_manager(store, test_config, presence_policy="per_socket")
    yield gateway
    await gateway.tasks.drain()


@pytest_asyncio.fixture
async def identity_provider():
    """Local HTTP stand-in for the identity provider's user endpoint."""
    users = {
        "numeric-token": {"id": "12", "email": "twelve@example.com", "user_metadata": {"type_user": "client"}},
        "uuid-token": {"id": "4f1c1f0e-uuid", "email": "user3@example.com"},
        "stranger-token": {"id": "9b2d-uuid", "email": "stranger@example.com"},
    }

    async def get_user(request: web.Request) -> web.Response:
        token = request.headers.get("Authorization", "")[len("Bearer "):]
        if token not in users:
            return web.json_response({"msg": "invalid JWT"}, status=401)
        return web.json_response(users[token])

    app = web.Application()
    app.router.add_get("/auth/v1/user", get_user)
    server = TestServer(app)
    await server.start_server()
    yield str(server.make_url("/"))
    await server.close()


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
