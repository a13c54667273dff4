"""
tests.test_relay
~~~~~~~~~~~~~~~~

中继服务器测试：WebSocket 会合 / 转发、REST 房间查询、帧限流。

使用 FastAPI ``TestClient``（``with`` 语句触发 lifespan，创建 ``RelaySystem``）。
"""
from __future__ import annotations

import time
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from peerwatch.api.relay_ws import ROOM_FULL_CLOSE_CODE
from peerwatch.core.errors import TransportError
from peerwatch.core.rate_limit import FrameRateLimiter
from peerwatch.main import app
from peerwatch.services.relay import RelaySystem
from peerwatch.transport.websocket import WebSocketTransport

ROOM = "observable-a1b2c3"


@pytest.fixture()
def client():
    with TestClient(app) as test_client:
        yield test_client


def join(ws, name: str) -> dict:
    """读取成员列表并宣告自己，返回 ``members`` 帧。"""
    members = ws.receive_json()
    assert members["kind"] == "members"
    ws.send_json({"kind": "hello", "user": {"name": name}})
    # 同一连接上的帧按序处理：收到这条无效帧的应答时 hello 一定已生效
    ws.send_text("{}")
    assert ws.receive_json()["kind"] == "error"
    return members


class TestRelayWebSocket:
    def test_members_frame_lists_self(self, client) -> None:
        with client.websocket_connect(f"/ws/rooms/{ROOM}") as ws:
            members = ws.receive_json()
            assert members["members"] == [members["self"]]

    def test_rendezvous_and_forwarding(self, client) -> None:
        with client.websocket_connect(f"/ws/rooms/{ROOM}") as alice:
            alice_id = join(alice, "Alice")["self"]

            with client.websocket_connect(f"/ws/rooms/{ROOM}") as bob:
                members = join(bob, "Bob")
                bob_id = members["self"]
                assert members["members"] == [alice_id, bob_id]

                joined = alice.receive_json()
                assert joined == {"kind": "peer_joined", "peer": bob_id, "user": {"name": "Bob"}}

                bob.send_json({"kind": "data", "payload": {"data": {"type": "play"}}})
                assert alice.receive_json() == {
                    "kind": "data",
                    "from": bob_id,
                    "payload": {"data": {"type": "play"}},
                }

                alice.send_json({"kind": "data", "to": bob_id, "payload": {"data": {"type": "pause"}}})
                assert bob.receive_json()["payload"] == {"data": {"type": "pause"}}

                rooms = client.get("/api/rooms").json()
                assert rooms["code"] == 200
                assert rooms["data"] == [{"room_name": ROOM, "online_count": 2}]

            # 退出 with 时服务端的连接任务已结束
            assert client.get(f"/api/rooms/{ROOM}").json()["data"]["online_count"] == 1
            assert alice.receive_json() == {"kind": "peer_left", "peer": bob_id}

    def test_announce_beyond_capacity_is_closed(self, client) -> None:
        with client.websocket_connect(f"/ws/rooms/{ROOM}") as alice:
            join(alice, "Alice")
            with client.websocket_connect(f"/ws/rooms/{ROOM}") as bob:
                join(bob, "Bob")
                alice.receive_json()  # peer_joined

                with client.websocket_connect(f"/ws/rooms/{ROOM}") as carol:
                    carol.receive_json()
                    carol.send_json({"kind": "hello", "user": {"name": "Carol"}})
                    assert carol.receive_json() == {"kind": "error", "detail": "房间已满"}
                    with pytest.raises(WebSocketDisconnect) as exc_info:
                        carol.receive_json()
                    assert exc_info.value.code == ROOM_FULL_CLOSE_CODE

                assert client.get(f"/api/rooms/{ROOM}").json()["data"]["online_count"] == 2

    def test_data_before_hello_is_rejected(self, client) -> None:
        with client.websocket_connect(f"/ws/rooms/{ROOM}") as ws:
            ws.receive_json()
            ws.send_json({"kind": "data", "payload": {}})
            assert ws.receive_json()["kind"] == "error"

    def test_invalid_frame_and_unknown_target(self, client) -> None:
        with client.websocket_connect(f"/ws/rooms/{ROOM}") as ws:
            join(ws, "Alice")
            ws.send_text("not json")
            assert ws.receive_json()["kind"] == "error"

            ws.send_json({"kind": "data", "to": "nobody", "payload": {}})
            error = ws.receive_json()
            assert error["kind"] == "error"
            assert "nobody" in error["detail"]


class TestRoomsApi:
    def test_unknown_room(self, client) -> None:
        body = client.get("/api/rooms/observable-missing").json()
        assert body["code"] == 404
        assert body["data"] is None

    def test_room_detail(self, client) -> None:
        with client.websocket_connect(f"/ws/rooms/{ROOM}") as ws:
            join(ws, "Alice")
            body = client.get(f"/api/rooms/{ROOM}").json()
            assert body["code"] == 200
            assert body["data"] == {"room_name": ROOM, "online_count": 1}

    def test_health(self, client) -> None:
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["environment"] == "test"


class TestRelaySystem:
    @pytest.mark.asyncio
    async def test_dead_socket_is_dropped_and_room_released(self) -> None:
        system = RelaySystem()
        room = system.get_room(ROOM)
        alice, bob = AsyncMock(), AsyncMock()
        alice_id = await room.connect(alice)
        await room.announce(alice_id, None)
        bob_id = await room.connect(bob)
        await room.announce(bob_id, None)
        assert room.online_count == 2

        bob.send_text.side_effect = RuntimeError("socket gone")
        await room.forward(alice_id, {"data": {"type": "play"}})
        assert bob_id not in room.announced

        system.release(ROOM)
        assert system.find_room(ROOM) is room

        await room.disconnect(alice_id)
        system.release(ROOM)
        assert system.find_room(ROOM) is None
        assert system.list_rooms() == []

    @pytest.mark.asyncio
    async def test_disconnect_notifies_remaining_members(self) -> None:
        room = RelaySystem().get_room(ROOM)
        alice, bob = AsyncMock(), AsyncMock()
        alice_id = await room.connect(alice)
        await room.announce(alice_id, None)
        bob_id = await room.connect(bob)
        await room.announce(bob_id, None)
        alice.send_text.reset_mock()

        await room.disconnect(bob_id)

        alice.send_text.assert_awaited_once_with(f'{{"kind":"peer_left","peer":"{bob_id}"}}')
        assert room.online_count == 1

    @pytest.mark.asyncio
    async def test_simultaneous_guests_cannot_overfill_room(self) -> None:
        room = RelaySystem(capacity=2).get_room(ROOM)
        host, first, second = AsyncMock(), AsyncMock(), AsyncMock()
        host_id = await room.connect(host)
        assert await room.announce(host_id, None)

        # 两个 guest 都在对方宣告前拿到成员列表
        first_id = await room.connect(first)
        second_id = await room.connect(second)
        assert await room.announce(first_id, None) is True
        assert await room.announce(second_id, None) is False

        assert list(room.announced) == [host_id, first_id]
        assert "房间已满" in second.send_text.await_args.args[0]


def test_frame_rate_limiter_window() -> None:
    limiter = FrameRateLimiter(max_frames=2, window_seconds=0.2)
    client_id = "peer-1"

    assert limiter.is_allowed(client_id) is True
    assert limiter.is_allowed(client_id) is True
    assert limiter.is_allowed(client_id) is False

    time.sleep(0.25)
    assert limiter.is_allowed(client_id) is True

    limiter.remove_client(client_id)
    assert client_id not in limiter._frames


class TestWebSocketTransport:
    def test_room_url_is_quoted(self) -> None:
        transport = WebSocketTransport(base_url="ws://relay.example/")
        assert transport.room_url("observable-a b") == "ws://relay.example/ws/rooms/observable-a%20b"

    @pytest.mark.asyncio
    async def test_unreachable_relay_raises_transport_error(self) -> None:
        transport = WebSocketTransport(base_url="ws://127.0.0.1:9", timeout=2.0)
        with pytest.raises(TransportError):
            await transport.establish(ROOM, "guest")
