"""
HTTP surface of the realtime core.

Admin endpoints push events into live sockets. Polling endpoints give
clients without a socket the same chat list, unread counts and history the
socket would have pushed, and let them acknowledge reads and deliveries.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from HireChat import __version__ as __main_version__
from HireChat.config import config
from HireChat.core.message.schemas import MessageView
from HireChat.core.server.errors import (
    AuthenticationError,
    ChatCoreError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from HireChat.core.server.reconciler import chats_payload
from HireChat.core.server.websocket_manager import ChatSocketManager

logger = logging.getLogger(__name__)

_STATUS_BY_CODE = {
    "FORBIDDEN": 403,
    "NOT_PARTICIPANT": 403,
    "NOT_RECEIVER": 403,
}

_STATUS_BY_ERROR = (
    (ValidationError, 400),
    (AuthenticationError, 401),
    (NotFoundError, 404),
    (PersistenceError, 503),
)


class EmitRequest(BaseModel):
    event: str = Field(min_length=1)
    message: Any = None


class EmitResponse(BaseModel):
    success: bool
    delivered: int


class OnlineUsersResponse(BaseModel):
    users: List[int]
    count: int


class MessageHistoryResponse(BaseModel):
    success: bool = True
    chat_id: int
    messages: List[MessageView]


class ReadResponse(BaseModel):
    success: bool = True
    chat_id: int
    user_id: int
    updated: int


def get_manager(request: Request) -> ChatSocketManager:
    return request.app.state.manager


async def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> int:
    """Verify the bearer token with the same authenticators the socket uses."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="No valid authentication token provided")
    manager = get_manager(request)
    result = await manager.auth_middleware.authenticate_token(authorization[7:].strip())
    if not result.success:
        raise HTTPException(status_code=401, detail=result.error_message or "Invalid token")
    return result.user_id


def require_admin(x_admin_key: Optional[str] = Header(default=None)) -> None:
    if config.ADMIN_API_KEY and x_admin_key != config.ADMIN_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid admin key")


def require_self(user_id: int, current_user: int = Depends(get_current_user)) -> int:
    if user_id != current_user:
        raise HTTPException(status_code=403, detail="Cannot access another user's data")
    return user_id


async def core_error_handler(request: Request, exc: ChatCoreError) -> JSONResponse:
    status = _STATUS_BY_CODE.get(exc.code) or next(
        (code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 500,
    )
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status, content=exc.to_payload())


def create_app(manager: ChatSocketManager) -> FastAPI:
    """
    Build the FastAPI application bound to a running gateway.

    Args:
        manager: Gateway whose sockets and collaborators the routes use
    """
    app = FastAPI(title="HireChat", version=__main_version__)
    app.state.manager = manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ChatCoreError, core_error_handler)

    @app.get("/health")
    async def health(m: ChatSocketManager = Depends(get_manager)) -> Dict[str, Any]:
        return {
            "status": "ok",
            "version": __main_version__,
            "websocket_running": m.is_running(),
            "online_users": len(m.online_user_ids()),
        }

    @app.get("/socket/online-users", response_model=OnlineUsersResponse)
    async def online_users(m: ChatSocketManager = Depends(get_manager)):
        users = m.online_user_ids()
        return OnlineUsersResponse(users=users, count=len(users))

    @app.post("/socket/send-to-user/{user_id}", response_model=EmitResponse, dependencies=[Depends(require_admin)])
    async def send_to_user(user_id: int, body: EmitRequest, m: ChatSocketManager = Depends(get_manager)):
        delivered = await m.send_to_user(user_id, body.event, body.message)
        logger.info("Admin emit %s to user %s reached %d connection(s)", body.event, user_id, delivered)
        return EmitResponse(success=delivered > 0, delivered=delivered)

    @app.post("/socket/send-to-room/{room}", response_model=EmitResponse, dependencies=[Depends(require_admin)])
    async def send_to_room(room: str, body: EmitRequest, m: ChatSocketManager = Depends(get_manager)):
        delivered = await m.send_to_room(room, body.event, body.message)
        logger.info("Admin emit %s to room %s reached %d connection(s)", body.event, room, delivered)
        return EmitResponse(success=delivered > 0, delivered=delivered)

    @app.post("/socket/broadcast", response_model=EmitResponse, dependencies=[Depends(require_admin)])
    async def broadcast(body: EmitRequest, m: ChatSocketManager = Depends(get_manager)):
        delivered = await m.broadcast(body.event, body.message)
        logger.info("Admin broadcast %s reached %d connection(s)", body.event, delivered)
        return EmitResponse(success=True, delivered=delivered)

    @app.get("/chats/{user_id}")
    async def user_chats(owner: int = Depends(require_self), m: ChatSocketManager = Depends(get_manager)):
        return chats_payload(await m.projector.project_for_user(owner))

    @app.get("/users/{user_id}/unread-count")
    async def unread_count(owner: int = Depends(require_self), m: ChatSocketManager = Depends(get_manager)):
        snapshot = await m.reconciler.compute_unread_snapshot(owner)
        return snapshot.to_payload()

    @app.get("/chats/{chat_id}/messages", response_model=MessageHistoryResponse)
    async def chat_messages(
        chat_id: int,
        limit: int = Query(default=50, ge=1, le=200),
        current_user: int = Depends(get_current_user),
        m: ChatSocketManager = Depends(get_manager),
    ):
        messages = await m.projector.project_history(chat_id, current_user, limit)
        return MessageHistoryResponse(chat_id=chat_id, messages=messages)

    @app.post("/chats/{chat_id}/read", response_model=ReadResponse)
    async def mark_chat_read(
        chat_id: int,
        current_user: int = Depends(get_current_user),
        m: ChatSocketManager = Depends(get_manager),
    ):
        async with m.sequencer.hold(current_user):
            updated = await m.reconciler.mark_read(chat_id, current_user)
        return ReadResponse(chat_id=chat_id, user_id=current_user, updated=updated)

    @app.post("/messages/{message_id}/delivered", response_model=MessageView)
    async def mark_message_delivered(
        message_id: int,
        current_user: int = Depends(get_current_user),
        m: ChatSocketManager = Depends(get_manager),
    ):
        async with m.sequencer.hold(current_user):
            return await m.pipeline.confirm_delivery(message_id, current_user)

    return app


__all__ = [
    'create_app',
    'get_current_user',
    'EmitRequest',
    'EmitResponse',
]
