"""
Connection registry tests: fan-out, failure isolation, membership.
"""

from __future__ import annotations

import json

import pytest

from portal.core.chat import Connection, ConnectionRegistry, ConnectionState


@pytest.fixture
async def registry():
    registry = ConnectionRegistry()
    yield registry
    await registry.close_all()


class TestMembership:

    async def test_connect_accepts_and_registers(self, fake_ws, registry):
        ws = fake_ws()
        connection = await registry.connect(ws, "u-alice")

        ws.accept.assert_awaited_once()
        assert connection in registry
        assert connection.user_id == "u-alice"
        assert connection.state is ConnectionState.OPEN
        assert len(registry) == 1

    async def test_register_is_idempotent(self, fake_ws, registry):
        connection = Connection(fake_ws())
        registry.register(connection)
        registry.register(connection)
        assert len(registry) == 1

    async def test_unregister_unknown_is_noop(self, fake_ws, registry):
        await registry.unregister(Connection(fake_ws()))
        assert len(registry) == 0

    async def test_unregister_twice_is_noop(self, fake_ws, registry):
        connection = await registry.connect(fake_ws())
        await registry.unregister(connection)
        await registry.unregister(connection)
        assert len(registry) == 0
        assert connection.state is ConnectionState.CLOSED

    async def test_close_all_closes_sockets(self, fake_ws, registry):
        ws1, ws2 = fake_ws(), fake_ws()
        await registry.connect(ws1)
        await registry.connect(ws2)

        await registry.close_all()

        ws1.close.assert_awaited_once_with(code=1001)
        ws2.close.assert_awaited_once_with(code=1001)
        assert len(registry) == 0

    async def test_close_all_tolerates_already_closed_socket(self, fake_ws, registry):
        ws = fake_ws()
        ws.close.side_effect = RuntimeError("already closed")
        await registry.connect(ws)

        await registry.close_all()
        assert len(registry) == 0


class TestBroadcast:

    async def test_fan_out_to_every_open_connection(self, fake_ws, registry):
        sockets = [fake_ws() for _ in range(3)]
        for ws in sockets:
            await registry.connect(ws)

        assert registry.broadcast('{"type":"new_message"}') == 3
        await registry.drain()

        for ws in sockets:
            ws.send_text.assert_awaited_once_with('{"type":"new_message"}')

    async def test_dict_payload_is_serialized(self, fake_ws, registry):
        ws = fake_ws()
        await registry.connect(ws)

        registry.broadcast({"type": "new_message", "message": {"id": 1}})
        await registry.drain()

        sent = ws.send_text.await_args.args[0]
        assert json.loads(sent) == {"type": "new_message", "message": {"id": 1}}

    async def test_failing_connection_does_not_block_others(self, fake_ws, registry):
        broken = fake_ws(side_effect=ConnectionResetError("peer gone"))
        healthy = fake_ws()
        broken_conn = await registry.connect(broken)
        await registry.connect(healthy)

        assert registry.broadcast("first") == 2
        await registry.drain()

        healthy.send_text.assert_awaited_once_with("first")
        # Still registered until the transport's own close signal
        assert broken_conn in registry
        assert broken_conn.state is ConnectionState.CLOSING

        assert registry.broadcast("second") == 1
        await registry.drain()
        assert healthy.send_text.await_count == 2
        assert broken.send_text.await_count == 1

    async def test_non_open_connections_are_skipped(self, fake_ws, registry):
        closing_ws, open_ws = fake_ws(), fake_ws()
        closing = await registry.connect(closing_ws)
        await registry.connect(open_ws)
        closing.state = ConnectionState.CLOSING

        assert registry.broadcast("hello") == 1
        await registry.drain()

        closing_ws.send_text.assert_not_awaited()
        open_ws.send_text.assert_awaited_once_with("hello")

    async def test_broadcast_with_no_connections(self, registry):
        assert registry.broadcast("nobody home") == 0

    async def test_order_is_preserved_per_connection(self, fake_ws, registry):
        ws = fake_ws()
        await registry.connect(ws)

        for i in range(5):
            registry.broadcast(f"m{i}")
        await registry.drain()

        assert [c.args[0] for c in ws.send_text.await_args_list] == [f"m{i}" for i in range(5)]

    async def test_unregister_during_broadcast_snapshot(self, fake_ws, registry):
        ws1, ws2 = fake_ws(), fake_ws()
        c1 = await registry.connect(ws1)
        await registry.connect(ws2)

        registry.broadcast("before")
        await registry.unregister(c1)
        registry.broadcast("after")
        await registry.drain()

        assert [c.args[0] for c in ws2.send_text.await_args_list] == ["before", "after"]
        assert "after" not in [c.args[0] for c in ws1.send_text.await_args_list]
