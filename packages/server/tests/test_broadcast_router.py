"""
Broadcast router tests: the decode → persist → broadcast pipeline.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from portal.core.chat import BroadcastRouter, ConnectionRegistry
from portal.core.errors import NotFoundError, ValidationError
from portal.models.message import Message


def _sent(ws) -> list[dict]:
    return [json.loads(c.args[0]) for c in ws.send_text.await_args_list]


async def _message_count(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(Message))).scalar()


@pytest.fixture
async def registry():
    registry = ConnectionRegistry()
    yield registry
    await registry.close_all()


@pytest.fixture
def router(registry, session_factory, seeded):
    return BroadcastRouter(registry, session_factory)


def chat_frame(channel_id, content="hello", user_id="u-alice") -> str:
    return json.dumps({
        "type": "chat_message",
        "channelId": channel_id,
        "content": content,
        "userId": user_id,
    })


class TestHappyPath:

    async def test_hello_in_general_reaches_every_connection(self, fake_ws, router, registry, seeded, session_factory):
        ws_a, ws_b = fake_ws(), fake_ws()
        sender = await registry.connect(ws_a)
        await registry.connect(ws_b)

        payload = await router.handle_frame(chat_frame(seeded["general"]), sender)
        await registry.drain()

        assert payload is not None
        assert await _message_count(session_factory) == 1
        for ws in (ws_a, ws_b):
            [frame] = _sent(ws)
            assert frame["type"] == "new_message"
            assert frame["message"]["id"] == payload.id
            assert frame["message"]["channelId"] == seeded["general"]
            assert frame["message"]["content"] == "hello"
            assert frame["message"]["userId"] == "u-alice"
            assert frame["message"]["author"]["displayName"] == "Alice Nakamura"
            assert frame["message"]["createdAt"]

    async def test_persisted_before_broadcast(self, fake_ws, router, registry, seeded, session_factory):
        seen_in_store = []

        async def check_store(text):
            message_id = json.loads(text)["message"]["id"]
            async with session_factory() as session:
                seen_in_store.append(await session.get(Message, message_id))

        ws = fake_ws()
        ws.send_text.side_effect = check_store
        await registry.connect(ws)

        await router.handle_frame(chat_frame(seeded["general"]))
        await registry.drain()

        assert len(seen_in_store) == 1
        assert seen_in_store[0] is not None
        assert seen_in_store[0].content == "hello"

    async def test_broadcast_order_matches_persistence_order(self, fake_ws, router, registry, seeded):
        ws = fake_ws()
        await registry.connect(ws)

        for i in range(4):
            await router.handle_frame(chat_frame(seeded["general"], content=f"m{i}"))
        await registry.drain()

        frames = _sent(ws)
        assert [f["message"]["content"] for f in frames] == ["m0", "m1", "m2", "m3"]
        ids = [f["message"]["id"] for f in frames]
        assert ids == sorted(ids)

    async def test_authenticated_sender_overrides_frame_user(self, fake_ws, router, registry, seeded):
        ws = fake_ws()
        sender = await registry.connect(ws, user_id="u-bob")

        payload = await router.handle_frame(chat_frame(seeded["general"], user_id="u-alice"), sender)
        assert payload.user_id == "u-bob"
        assert payload.author.display_name == "Bob Osei"

    async def test_anonymous_author(self, router, registry, seeded):
        frame = json.dumps({"type": "chat_message", "channelId": seeded["general"], "content": "hi"})
        payload = await router.handle_frame(frame)
        assert payload.user_id is None
        assert payload.author is None


class TestDrops:

    @pytest.mark.parametrize("content", ["", "   "])
    async def test_empty_content_dropped_every_time(self, fake_ws, router, registry, seeded, session_factory, content):
        ws = fake_ws()
        sender = await registry.connect(ws)

        for _ in range(2):
            assert await router.handle_frame(chat_frame(seeded["general"], content=content), sender) is None
        await registry.drain()

        assert await _message_count(session_factory) == 0
        ws.send_text.assert_not_awaited()

    async def test_unknown_channel_dropped(self, fake_ws, router, registry, seeded, session_factory):
        ws = fake_ws()
        sender = await registry.connect(ws)

        assert await router.handle_frame(chat_frame(999, content="anyone?"), sender) is None
        await registry.drain()

        assert await _message_count(session_factory) == 0
        ws.send_text.assert_not_awaited()

    @pytest.mark.parametrize("raw", [
        "not json at all",
        "[1, 2, 3]",
        json.dumps({"type": "chat_message", "channelId": "abc", "content": "x"}),
        json.dumps({"type": "chat_message", "content": "missing channel"}),
    ])
    async def test_malformed_frames_dropped(self, fake_ws, router, registry, seeded, session_factory, raw):
        ws = fake_ws()
        sender = await registry.connect(ws)

        assert await router.handle_frame(raw, sender) is None
        await registry.drain()

        assert await _message_count(session_factory) == 0
        ws.send_text.assert_not_awaited()

    @pytest.mark.parametrize("frame", [
        {"type": "typing", "channelId": 1},
        {"type": "new_message", "message": {}},
        {"no_type": True},
    ])
    async def test_other_frame_types_ignored(self, fake_ws, router, registry, seeded, frame):
        ws = fake_ws()
        sender = await registry.connect(ws)

        assert await router.handle_frame(json.dumps(frame), sender) is None
        await registry.drain()
        ws.send_text.assert_not_awaited()

    async def test_store_failure_dropped(self, fake_ws, router, registry, seeded, session_factory):
        ws = fake_ws()
        sender = await registry.connect(ws)

        failure = OperationalError("INSERT", {}, Exception("disk I/O error"))
        with patch("portal.core.chat.chat_service.append_message", AsyncMock(side_effect=failure)):
            assert await router.handle_frame(chat_frame(seeded["general"]), sender) is None
        await registry.drain()

        ws.send_text.assert_not_awaited()


class TestErrorReplies:

    @pytest.fixture
    def router(self, registry, session_factory, seeded):
        return BroadcastRouter(registry, session_factory, reply_errors=True)

    async def test_unknown_channel_reply_goes_to_sender_only(self, fake_ws, router, registry, seeded):
        sender_ws, other_ws = fake_ws(), fake_ws()
        sender = await registry.connect(sender_ws)
        await registry.connect(other_ws)

        await router.handle_frame(chat_frame(999), sender)
        await registry.drain()

        assert _sent(sender_ws) == [{
            "type": "error",
            "code": "NOT_FOUND",
            "message": "Channel 999 not found",
        }]
        other_ws.send_text.assert_not_awaited()

    async def test_empty_content_reply(self, fake_ws, router, registry, seeded):
        ws = fake_ws()
        sender = await registry.connect(ws)

        await router.handle_frame(chat_frame(seeded["general"], content=""), sender)
        await registry.drain()

        [frame] = _sent(ws)
        assert frame["type"] == "error"
        assert frame["code"] == "INVALID_MESSAGE"

    async def test_invalid_json_reply(self, fake_ws, router, registry, seeded):
        ws = fake_ws()
        sender = await registry.connect(ws)

        await router.handle_frame("{oops", sender)
        await registry.drain()

        assert _sent(ws)[0]["code"] == "INVALID_JSON"

    async def test_no_reply_without_sender(self, fake_ws, router, registry, seeded):
        ws = fake_ws()
        await registry.connect(ws)

        await router.handle_frame(chat_frame(999))
        await registry.drain()
        ws.send_text.assert_not_awaited()


class TestPublish:

    async def test_publish_raises_for_unknown_channel(self, fake_ws, router, registry, seeded):
        ws = fake_ws()
        await registry.connect(ws)

        with pytest.raises(NotFoundError):
            await router.publish(999, "u-alice", "hello")
        await registry.drain()
        ws.send_text.assert_not_awaited()

    async def test_publish_raises_for_blank_content(self, router, seeded):
        with pytest.raises(ValidationError):
            await router.publish(seeded["general"], "u-alice", "  ")

    async def test_publish_returns_recipient_visible_payload(self, fake_ws, router, registry, seeded):
        ws = fake_ws()
        await registry.connect(ws)

        payload = await router.publish(seeded["general"], "u-alice", "via rest")
        await registry.drain()

        [frame] = _sent(ws)
        assert frame["message"] == payload.to_wire()
