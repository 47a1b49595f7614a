"""
Chat channel endpoints and the realtime socket.

- GET / - List channels (ordered by name)
- POST / - Create a channel (admin)
- PATCH /{channel_id} - Edit a channel's description (admin)
- GET /{channel_id}/messages - Recent history, newest first
- POST /{channel_id}/messages - Post a message (REST fallback, triggers broadcast)
- WS /ws - Realtime socket; every open socket receives every new message
"""

from __future__ import annotations

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.auth import authenticate_websocket, get_current_user, require_admin
from portal.core.chat import BroadcastRouter
from portal.core.config import Settings
from portal.core.database import get_session
from portal.models.user import User
from portal.services import chat as chat_service
from portal_shared.schemas.chat import (
    ChannelCreateRequest,
    ChannelUpdateRequest,
    PostMessageRequest,
)

log = structlog.get_logger()

router = APIRouter()
ws_router = APIRouter()

WS_AUTH_FAILED = 4001


def get_broadcast_router(request: Request) -> BroadcastRouter:
    return request.app.state.broadcast_router


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


# --- Channels ---


@router.get("")
async def list_channels(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    """List all channels, ordered by name."""
    channels = await chat_service.list_channels(session)
    return [chat_service.channel_response(c).to_wire() for c in channels]


@router.post("", status_code=201)
async def create_channel(
    body: ChannelCreateRequest,
    admin: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    """Create a channel. 409 if the name is already taken."""
    channel = await chat_service.create_channel(
        session,
        body.name,
        body.description,
        is_private=body.is_private,
        creator_id=admin.id,
    )
    return chat_service.channel_response(channel).to_wire()


@router.patch("/{channel_id}")
async def update_channel(
    channel_id: int,
    body: ChannelUpdateRequest,
    admin: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    channel = await chat_service.update_channel_description(session, channel_id, body.description)
    return chat_service.channel_response(channel).to_wire()


# --- Messages ---


@router.get("/{channel_id}/messages")
async def get_messages(
    channel_id: int,
    limit: Optional[int] = Query(None, ge=1, description="Defaults to the configured history limit"),
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
):
    """
    Recent messages for a channel, most recent first.

    Clients reverse the list for chronological display.
    """
    await chat_service.get_channel(session, channel_id)
    limit = min(limit or settings.chat_history_limit, settings.chat_history_max)

    messages = await chat_service.list_messages(session, channel_id, limit)
    authors = await chat_service.load_authors(session, (m.user_id for m in messages))
    return [
        chat_service.message_payload(m, authors.get(m.user_id)).to_wire()
        for m in messages
    ]


@router.post("/{channel_id}/messages", status_code=201)
async def post_message(
    channel_id: int,
    body: PostMessageRequest,
    user: User = Depends(get_current_user),
    broadcaster: BroadcastRouter = Depends(get_broadcast_router),
):
    """
    Post a message via REST.

    Persisted and broadcast exactly like a realtime chat_message, but
    validation and unknown-channel errors are returned to the caller.
    """
    payload = await broadcaster.publish(channel_id, user.id, body.content)
    return payload.to_wire()


# --- Realtime ---


@ws_router.websocket("/ws")
async def chat_socket(websocket: WebSocket, token: Optional[str] = Query(None)):
    """
    Realtime chat socket.

    Inbound: ``chat_message`` frames. Outbound: ``new_message`` broadcasts
    (and ``error`` replies when enabled). Unknown frame types are ignored.
    """
    state = websocket.app.state
    settings: Settings = state.settings
    broadcaster: BroadcastRouter = state.broadcast_router

    user_id = None
    try:
        async with state.session_factory() as session:
            user = await authenticate_websocket(token, websocket.cookies, session, settings)
    except HTTPException as exc:
        log.info("chat.socket_rejected", reason=exc.detail)
        await websocket.close(code=WS_AUTH_FAILED, reason="authentication_failed")
        return

    if user is None and settings.ws_require_auth:
        log.info("chat.socket_rejected", reason="Authentication required")
        await websocket.close(code=WS_AUTH_FAILED, reason="authentication_required")
        return
    if user is not None:
        user_id = user.id

    connection = await broadcaster.registry.connect(websocket, user_id)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                log.debug("chat.socket_closed", connection_id=connection.id, code=message.get("code"))
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            if raw is None:
                continue
            await broadcaster.handle_frame(raw, connection)
    finally:
        await broadcaster.registry.unregister(connection)
