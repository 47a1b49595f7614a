"""
Realtime chat session.

Maintains one WebSocket connection to the portal chat server with:
- Automatic reconnection after a fixed delay, retried indefinitely
- Exactly one pending reconnect at a time
- Envelope decoding at the boundary (bad frames are logged and discarded)
- Deterministic teardown: no connect attempt after close()
"""

from __future__ import annotations

import asyncio
import inspect
from contextlib import suppress
from enum import Enum
from typing import Any, Awaitable, Callable, Union
from urllib.parse import urlencode

import structlog
import websockets

from portal_shared.schemas.chat import (
    ChatMessageEnvelope,
    EnvelopeError,
    ErrorEnvelope,
    NewMessageEnvelope,
    decode_envelope,
)
from portal_shared.schemas.common import WireModel

log = structlog.get_logger()

DEFAULT_RECONNECT_DELAY = 3.0

Connector = Callable[[str], Awaitable[Any]]
MessageHandler = Callable[[Union[NewMessageEnvelope, ErrorEnvelope]], Any]
StateHandler = Callable[["SessionState"], Any]


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


class ChatSession:
    """
    One realtime connection with fixed-delay reconnection.

    ``connector`` opens the transport for a URL and returns an object that
    supports ``send(text)``, ``close()`` and async iteration over incoming
    frames; it defaults to ``websockets.connect``.
    """

    def __init__(
        self,
        url: str,
        *,
        token: str | None = None,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        connector: Connector | None = None,
    ):
        self._url = url
        self._token = token
        self._reconnect_delay = reconnect_delay
        self._connector = connector or websockets.connect

        self._state = SessionState.DISCONNECTED
        self._ws: Any = None
        self._reader: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._reconnect_count = 0
        self._message_handlers: list[MessageHandler] = []
        self._state_handlers: list[StateHandler] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is SessionState.CONNECTED

    @property
    def reconnect_count(self) -> int:
        return self._reconnect_count

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def on_message(self, handler: MessageHandler) -> None:
        """Register a handler for new_message and error envelopes (sync or async)."""
        self._message_handlers.append(handler)

    def on_state_change(self, handler: StateHandler) -> None:
        self._state_handlers.append(handler)

    # --- Lifecycle ---

    async def connect(self) -> bool:
        """Open the transport. On failure a reconnect is scheduled; returns False."""
        if self._state is SessionState.CLOSED:
            return False
        if self._state in (SessionState.CONNECTING, SessionState.CONNECTED):
            return self.connected

        self._set_state(SessionState.CONNECTING)
        try:
            ws = await self._connector(self._target_url())
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("chat_session.connect_failed", url=self._url, error=str(exc))
            self._handle_disconnect()
            return False

        if self._state is SessionState.CLOSED:
            # Torn down while the handshake was in flight
            await self._close_transport(ws)
            return False

        self._ws = ws
        self._cancel_reconnect()
        self._set_state(SessionState.CONNECTED)
        self._reader = asyncio.create_task(self._read_loop(ws))
        log.info("chat_session.connected", url=self._url, reconnects=self._reconnect_count)
        return True

    async def close(self) -> None:
        """Close the transport and cancel any pending reconnect. Idempotent."""
        if self._state is SessionState.CLOSED:
            return
        self._set_state(SessionState.CLOSED)

        reconnect, self._reconnect_task = self._reconnect_task, None
        reader, self._reader = self._reader, None
        for task in (reconnect, reader):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task

        ws, self._ws = self._ws, None
        if ws is not None:
            await self._close_transport(ws)
        log.info("chat_session.closed", url=self._url)

    async def __aenter__(self) -> ChatSession:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # --- Sending ---

    async def send(self, envelope: Union[WireModel, str]) -> bool:
        """Send one envelope. Returns False (and logs) when not connected."""
        if not self.connected or self._ws is None:
            log.warning("chat_session.send_while_disconnected", state=self._state.value)
            return False

        text = envelope if isinstance(envelope, str) else envelope.to_json()
        try:
            await self._ws.send(text)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # The reader sees the close and drives the reconnect
            log.warning("chat_session.send_failed", error=str(exc))
            return False
        return True

    async def send_chat(self, channel_id: int, content: str, user_id: str | None = None) -> bool:
        """Build and send a chat_message. Raises ValueError for empty content."""
        envelope = ChatMessageEnvelope(channel_id=channel_id, content=content, user_id=user_id)
        return await self.send(envelope)

    # --- Internals ---

    def _target_url(self) -> str:
        if not self._token:
            return self._url
        separator = "&" if "?" in self._url else "?"
        return f"{self._url}{separator}{urlencode({'token': self._token})}"

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        self._state = state
        for handler in list(self._state_handlers):
            try:
                handler(state)
            except Exception:
                log.exception("chat_session.state_handler_failed", state=state.value)

    def _handle_disconnect(self) -> None:
        if self._state is SessionState.CLOSED:
            return
        self._set_state(SessionState.DISCONNECTED)
        if not self.reconnect_pending:
            self._reconnect_task = asyncio.create_task(self._reconnect_after_delay())

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _reconnect_after_delay(self) -> None:
        log.info(
            "chat_session.reconnecting",
            delay=self._reconnect_delay,
            attempt=self._reconnect_count + 1,
        )
        await asyncio.sleep(self._reconnect_delay)
        # Clear before connecting so a failed attempt can schedule the next one
        self._reconnect_task = None
        if self._state is SessionState.CLOSED:
            return
        self._reconnect_count += 1
        await self.connect()

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                try:
                    envelope = decode_envelope(raw)
                except EnvelopeError as exc:
                    log.warning("chat_session.frame_discarded", code=exc.code, reason=exc.message)
                    continue
                if isinstance(envelope, (NewMessageEnvelope, ErrorEnvelope)):
                    await self._dispatch(envelope)
                else:
                    log.debug("chat_session.frame_ignored", frame_type=envelope.type)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.info("chat_session.connection_lost", error=str(exc))

        if self._ws is ws:
            self._ws = None
            self._reader = None
            log.info("chat_session.disconnected", url=self._url)
            self._handle_disconnect()

    async def _dispatch(self, envelope: Union[NewMessageEnvelope, ErrorEnvelope]) -> None:
        for handler in list(self._message_handlers):
            try:
                result = handler(envelope)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("chat_session.handler_failed", frame_type=envelope.type)

    async def _close_transport(self, ws: Any) -> None:
        try:
            await ws.close()
        except Exception as exc:
            log.debug("chat_session.close_failed", error=str(exc))
