"""Tests for the per-client send path."""

import json

from starlette.websockets import WebSocketDisconnect, WebSocketState

from app.schemas.message import ChatMessage
from app.services.connection import ClientConnection
from app.services.connection_registry import ConnectionRegistry

HELLO = ChatMessage(username="alice", text="hi")


def frames(websocket) -> list[dict]:
    return [json.loads(call.args[0]) for call in websocket.send_text.await_args_list]


async def test_send_writes_json_frame(make_websocket):
    websocket = make_websocket()
    conn = ClientConnection(websocket, ConnectionRegistry())

    assert await conn.send(HELLO) is True
    assert frames(websocket) == [{"username": "alice", "text": "hi"}]


async def test_send_going_away_is_suppressed(make_websocket):
    websocket = make_websocket(send_side_effect=WebSocketDisconnect(code=1001))
    registry = ConnectionRegistry()
    conn = ClientConnection(websocket, registry)
    await registry.add(conn)

    assert await conn.send(HELLO) is False
    # The handler, not the send path, deregisters on a graceful close.
    assert conn in registry
    websocket.close.assert_not_awaited()


async def test_send_on_ended_stream_is_suppressed(make_websocket):
    websocket = make_websocket()
    websocket.client_state = WebSocketState.DISCONNECTED
    conn = ClientConnection(websocket, ConnectionRegistry())

    assert await conn.send(HELLO) is False
    websocket.send_text.assert_not_awaited()


async def test_send_failure_removes_and_closes(make_websocket):
    websocket = make_websocket(send_side_effect=RuntimeError("broken pipe"))
    registry = ConnectionRegistry()
    conn = ClientConnection(websocket, registry)
    await registry.add(conn)

    assert await conn.send(HELLO) is False
    assert conn not in registry
    assert conn.closed
    websocket.close.assert_awaited_once()
    assert websocket.close.await_args.kwargs["code"] == 1011


async def test_abrupt_disconnect_is_suppressed(make_websocket):
    """Starlette reports an ended stream as 1006; that is a normal drop."""
    websocket = make_websocket(send_side_effect=WebSocketDisconnect(code=1006))
    registry = ConnectionRegistry()
    conn = ClientConnection(websocket, registry)
    await registry.add(conn)

    assert await conn.send(HELLO) is False
    assert conn in registry
    websocket.close.assert_not_awaited()


async def test_protocol_error_close_removes(make_websocket):
    websocket = make_websocket(send_side_effect=WebSocketDisconnect(code=1002))
    registry = ConnectionRegistry()
    conn = ClientConnection(websocket, registry)
    await registry.add(conn)

    assert await conn.send(HELLO) is False
    assert conn not in registry


async def test_send_after_close_does_not_write(make_websocket):
    websocket = make_websocket()
    conn = ClientConnection(websocket, ConnectionRegistry())
    await conn.close()

    assert await conn.send(HELLO) is False
    websocket.send_text.assert_not_awaited()


async def test_deliver_buffers_until_live(make_websocket):
    websocket = make_websocket()
    conn = ClientConnection(websocket, ConnectionRegistry())
    first = ChatMessage(username="a", text="1")
    second = ChatMessage(username="b", text="2")

    await conn.deliver(first)
    await conn.deliver(second)
    websocket.send_text.assert_not_awaited()
    assert not conn.live

    await conn.go_live()
    assert conn.live
    assert [f["text"] for f in frames(websocket)] == ["1", "2"]

    await conn.deliver(ChatMessage(username="c", text="3"))
    assert [f["text"] for f in frames(websocket)] == ["1", "2", "3"]


async def test_replay_then_buffered_live_order(make_websocket):
    """History sent during setup precedes anything fanned out meanwhile."""
    websocket = make_websocket()
    conn = ClientConnection(websocket, ConnectionRegistry())

    await conn.deliver(ChatMessage(username="live", text="new"))
    for text in ("a", "b", "c"):
        await conn.send(ChatMessage(username="hist", text=text))
    await conn.go_live()

    assert [f["text"] for f in frames(websocket)] == ["a", "b", "c", "new"]


async def test_close_is_idempotent(make_websocket):
    websocket = make_websocket()
    conn = ClientConnection(websocket, ConnectionRegistry())

    await conn.close(code=1003)
    await conn.close()

    websocket.close.assert_awaited_once_with(code=1003, reason=None)


async def test_close_skips_disconnected_socket(make_websocket):
    websocket = make_websocket()
    websocket.application_state = WebSocketState.DISCONNECTED
    conn = ClientConnection(websocket, ConnectionRegistry())

    await conn.close()
    assert conn.closed
    websocket.close.assert_not_awaited()


async def test_close_error_on_dead_socket_is_ignored(make_websocket):
    websocket = make_websocket()
    websocket.close.side_effect = RuntimeError("already closed")
    conn = ClientConnection(websocket, ConnectionRegistry())

    await conn.close()
    assert conn.closed
