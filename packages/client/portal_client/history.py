"""
Channel history sync.

Seeds the transcript of the selected channel from the REST history and
appends live ``new_message`` envelopes for that channel. Live messages that
arrive while a history fetch is in flight are held back and merged after
the fetched page; every message id appears at most once.

After a reconnect, ``catch_up()`` re-reads the newest page and appends
whatever was broadcast while the socket was down.
"""

from __future__ import annotations

from typing import Protocol

import structlog

from portal_shared.schemas.chat import ChatMessagePayload, NewMessageEnvelope

log = structlog.get_logger()


class HistorySource(Protocol):
    async def list_messages(self, channel_id: int, limit: int = 50) -> list[ChatMessagePayload]: ...


class HistorySync:

    def __init__(self, api: HistorySource, limit: int = 50):
        self._api = api
        self._limit = limit
        self._channel_id: int | None = None
        self._messages: list[ChatMessagePayload] = []
        self._seen: set[int] = set()
        self._pending: list[ChatMessagePayload] | None = None

    @property
    def channel_id(self) -> int | None:
        return self._channel_id

    @property
    def transcript(self) -> list[ChatMessagePayload]:
        """Chronological messages of the selected channel."""
        return list(self._messages)

    @property
    def loading(self) -> bool:
        return self._pending is not None

    async def select_channel(self, channel_id: int) -> list[ChatMessagePayload]:
        """Switch channel and seed the transcript. Returns the transcript."""
        self._channel_id = channel_id
        self._messages = []
        self._seen = set()

        added = await self._merge_latest(channel_id)
        if added is not None:
            log.info("history.channel_selected", channel_id=channel_id, messages=len(added))
        return self.transcript

    async def catch_up(self) -> list[ChatMessagePayload]:
        """Merge messages missed while disconnected. Returns only the new ones."""
        channel_id = self._channel_id
        if channel_id is None:
            return []
        added = await self._merge_latest(channel_id) or []
        log.info("history.caught_up", channel_id=channel_id, missed=len(added))
        return added

    def handle_envelope(self, envelope: NewMessageEnvelope) -> bool:
        """Apply a live envelope. Returns True if it was added to the transcript."""
        if not isinstance(envelope, NewMessageEnvelope):
            return False
        message = envelope.message
        if message.channel_id != self._channel_id:
            return False
        if self._pending is not None:
            self._pending.append(message)
            return False
        return self._append(message)

    async def _merge_latest(self, channel_id: int) -> list[ChatMessagePayload] | None:
        # None when another selection replaced this one mid-fetch
        pending: list[ChatMessagePayload] = []
        self._pending = pending
        try:
            history = await self._api.list_messages(channel_id, self._limit)
        finally:
            if self._pending is pending:
                self._pending = None

        if self._channel_id != channel_id:
            return None

        added = [m for m in [*reversed(history), *pending] if self._append(m)]
        return added

    def _append(self, message: ChatMessagePayload) -> bool:
        if message.id in self._seen:
            return False
        self._seen.add(message.id)
        self._messages.append(message)
        return True
