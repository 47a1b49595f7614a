"""
Realtime chat core: connection registry and broadcast router.

Features:
- One registry per process tracking every open WebSocket connection
- Global broadcast: every open connection receives every channel's messages
  (clients filter by the channel they have selected)
- Per-connection outbound queue and sender task, so a slow or dead socket
  never delays delivery to the others
- Inbound chat events are persisted before they are broadcast
- Malformed or rejected events are dropped and logged; optionally the
  sender gets an error envelope back
"""

from __future__ import annotations

import asyncio
import json
import uuid
from contextlib import suppress
from enum import Enum
from typing import Any, AsyncContextManager, Callable, Optional, Union

import structlog
from fastapi import WebSocket
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.errors import PortalError, TransportError
from portal.models.user import User
from portal.services import chat as chat_service
from portal_shared.schemas.chat import (
    ChatMessageEnvelope,
    ChatMessagePayload,
    EnvelopeError,
    ErrorEnvelope,
    NewMessageEnvelope,
    decode_envelope,
)

log = structlog.get_logger()

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


class ConnectionState(str, Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class Connection:
    """A single realtime connection and its outbound queue."""

    __slots__ = ("id", "websocket", "user_id", "state", "_queue", "_sender")

    def __init__(self, websocket: WebSocket, user_id: Optional[str] = None):
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.user_id = user_id
        self.state = ConnectionState.OPEN
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._sender: asyncio.Task | None = None

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN

    def start(self) -> None:
        if self._sender is None and self.state is not ConnectionState.CLOSED:
            self._sender = asyncio.create_task(self._send_loop())

    def enqueue(self, text: str) -> None:
        self._queue.put_nowait(text)

    async def drain(self) -> None:
        """Wait until every queued frame has been attempted."""
        await self._queue.join()

    async def stop(self) -> None:
        """Stop the sender and discard anything still queued. Idempotent."""
        self.state = ConnectionState.CLOSED
        if self._sender is not None:
            self._sender.cancel()
            with suppress(asyncio.CancelledError):
                await self._sender
            self._sender = None
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

    async def _send_loop(self) -> None:
        while True:
            text = await self._queue.get()
            try:
                await self.websocket.send_text(text)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # Left for the transport's close signal to unregister
                if self.state is ConnectionState.OPEN:
                    self.state = ConnectionState.CLOSING
                err = TransportError(str(exc) or exc.__class__.__name__)
                log.warning(
                    "chat.send_failed",
                    connection_id=self.id,
                    user_id=self.user_id,
                    error=err.message,
                )
            finally:
                self._queue.task_done()


class ConnectionRegistry:
    """
    Tracks the open realtime connections of this process.

    Mutation only happens on the event loop; broadcast iterates over a
    snapshot so register/unregister during a broadcast is safe.
    """

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}

    @property
    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection: Connection) -> bool:
        return connection.id in self._connections

    async def connect(self, websocket: WebSocket, user_id: Optional[str] = None) -> Connection:
        """Accept a WebSocket and register it."""
        await websocket.accept()
        connection = Connection(websocket, user_id)
        self.register(connection)
        return connection

    def register(self, connection: Connection) -> None:
        if connection.id in self._connections:
            return
        self._connections[connection.id] = connection
        connection.start()
        log.info(
            "chat.connection_registered",
            connection_id=connection.id,
            user_id=connection.user_id,
            total=len(self._connections),
        )

    async def unregister(self, connection: Connection) -> None:
        removed = self._connections.pop(connection.id, None)
        await connection.stop()
        if removed is not None:
            log.info(
                "chat.connection_unregistered",
                connection_id=connection.id,
                user_id=connection.user_id,
                total=len(self._connections),
            )

    def broadcast(self, payload: Union[str, dict[str, Any]]) -> int:
        """
        Queue a payload for every open connection.

        Returns the number of connections it was queued for. Non-open
        connections are skipped but stay registered.
        """
        text = payload if isinstance(payload, str) else json.dumps(payload)
        queued = 0
        for connection in list(self._connections.values()):
            if not connection.is_open:
                continue
            try:
                connection.enqueue(text)
                queued += 1
            except Exception:
                log.exception("chat.enqueue_failed", connection_id=connection.id)
        return queued

    async def drain(self) -> None:
        await asyncio.gather(*(c.drain() for c in list(self._connections.values())))

    async def close_all(self, code: int = 1001) -> None:
        """Close and unregister every connection (shutdown)."""
        for connection in list(self._connections.values()):
            connection.state = ConnectionState.CLOSING
            try:
                await connection.websocket.close(code=code)
            except Exception as exc:
                log.debug("chat.close_failed", connection_id=connection.id, error=str(exc))
            await self.unregister(connection)


class BroadcastRouter:
    """
    Turns client-submitted chat events into stored messages and broadcasts.

    Each event runs decode → persist → broadcast to completion. There is no
    await between the commit and queueing the broadcast, so broadcasts go
    out in the order their persistence completed.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        session_factory: SessionFactory,
        *,
        reply_errors: bool = False,
    ):
        self._registry = registry
        self._session_factory = session_factory
        self._reply_errors = reply_errors

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    async def handle_frame(
        self,
        raw: Union[str, bytes, dict],
        sender: Optional[Connection] = None,
    ) -> Optional[ChatMessagePayload]:
        """Process one inbound frame. Never raises for bad input or store failures."""
        try:
            envelope = decode_envelope(raw)
        except EnvelopeError as exc:
            self._drop(sender, exc.code, exc.message, frame_type=exc.frame_type)
            return None

        if not isinstance(envelope, ChatMessageEnvelope):
            log.debug("chat.frame_ignored", frame_type=envelope.type)
            return None

        author_id = sender.user_id if sender and sender.user_id else envelope.user_id
        try:
            return await self.publish(envelope.channel_id, author_id, envelope.content)
        except PortalError as exc:
            self._drop(sender, exc.code, exc.message, channel_id=envelope.channel_id)
        except SQLAlchemyError:
            log.exception("chat.persist_failed", channel_id=envelope.channel_id)
            self._drop(
                sender,
                "PERSIST_FAILED",
                "Message could not be saved.",
                channel_id=envelope.channel_id,
            )
        return None

    async def publish(
        self,
        channel_id: int,
        author_id: Optional[str],
        content: str,
    ) -> ChatMessagePayload:
        """
        Persist a message and broadcast it to every open connection.

        Shared by the realtime and REST paths. Raises ValidationError or
        NotFoundError without broadcasting anything.
        """
        async with self._session_factory() as session:
            author = await session.get(User, author_id) if author_id else None
            message = await chat_service.append_message(session, channel_id, author_id, content)
            payload = chat_service.message_payload(message, author)
            recipients = self._registry.broadcast(NewMessageEnvelope(message=payload).to_json())

        log.info(
            "chat.message_broadcast",
            message_id=payload.id,
            channel_id=channel_id,
            user_id=author_id,
            recipients=recipients,
        )
        return payload

    def _drop(
        self,
        sender: Optional[Connection],
        code: str,
        message: str,
        **context: Any,
    ) -> None:
        log.info(
            "chat.message_dropped",
            code=code,
            reason=message,
            connection_id=sender.id if sender else None,
            **context,
        )
        if self._reply_errors and sender is not None and sender.is_open:
            sender.enqueue(ErrorEnvelope(code=code, message=message).to_json())
