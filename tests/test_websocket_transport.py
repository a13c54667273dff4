"""
tests.test_websocket_transport
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

WebSocketTransport 端到端测试：在测试事件循环里用 ``uvicorn.Server``
起一个真实的中继（端口 0，系统分配），客户端通过真实 WebSocket 会合。
"""
from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Callable

import pytest
import uvicorn
from websockets.asyncio.server import ServerConnection, serve

from peerwatch.core.errors import RoomFullError, TransportError
from peerwatch.main import app
from peerwatch.schemas.messages import PeerUser
from peerwatch.transport.websocket import WebSocketTransport

ROOM = "observable-e2e001"


@contextlib.asynccontextmanager
async def running_relay() -> AsyncIterator[str]:
    """启动中继，返回其 ``ws://`` 基础地址；退出时关闭服务器。"""
    config = uvicorn.Config(
        app,
        host="127.0.0.1",
        port=0,
        log_level="warning",
        timeout_graceful_shutdown=1,
    )
    server = uvicorn.Server(config)
    task = asyncio.create_task(server.serve())
    try:
        while not server.started:
            if task.done():
                raise RuntimeError("中继启动失败")
            await asyncio.sleep(0.01)
        port = server.servers[0].sockets[0].getsockname()[1]
        yield f"ws://127.0.0.1:{port}"
    finally:
        server.should_exit = True
        await task


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "等待超时"
        await asyncio.sleep(0.01)


def record(handle) -> dict[str, list]:
    """订阅句柄的全部事件，按类型记录参数。"""
    seen: dict[str, list] = {"peer_connected": [], "peer_disconnected": [], "message": []}
    handle.on("peer_connected", lambda peer_id, user: seen["peer_connected"].append((peer_id, user)))
    handle.on("peer_disconnected", lambda peer_id: seen["peer_disconnected"].append(peer_id))
    handle.on("message", lambda peer_id, payload: seen["message"].append((peer_id, payload)))
    return seen


class TestRelayRoundTrip:
    @pytest.mark.asyncio
    async def test_two_handles_exchange_data(self) -> None:
        async with running_relay() as base_url:
            transport = WebSocketTransport(base_url=base_url, capacity=2, timeout=5.0)
            host = await transport.establish(ROOM, "host", PeerUser(name="Alice"))
            host_seen = record(host)
            host.start()
            guest = await transport.establish(ROOM, "guest", PeerUser(name="Bob"))
            guest_seen = record(guest)
            guest.start()
            try:
                assert host.members == [host.peer_id]
                assert guest.members == [host.peer_id, guest.peer_id]

                await wait_until(lambda: host_seen["peer_connected"] and guest_seen["peer_connected"])
                assert host_seen["peer_connected"] == [(guest.peer_id, PeerUser(name="Bob"))]
                assert guest_seen["peer_connected"] == [(host.peer_id, None)]

                await guest.send({"data": {"type": "play"}, "user": {"name": "Bob"}})
                await host.send({"data": {"type": "pause"}}, to=guest.peer_id)
                await wait_until(lambda: host_seen["message"] and guest_seen["message"])

                assert host_seen["message"] == [
                    (guest.peer_id, {"data": {"type": "play"}, "user": {"name": "Bob"}}),
                ]
                assert guest_seen["message"] == [(host.peer_id, {"data": {"type": "pause"}})]
            finally:
                await guest.close()
                await host.close()

    @pytest.mark.asyncio
    async def test_third_guest_is_rejected_as_room_full(self) -> None:
        async with running_relay() as base_url:
            transport = WebSocketTransport(base_url=base_url, capacity=2, timeout=5.0)
            host = await transport.establish(ROOM, "host")
            host_seen = record(host)
            host.start()
            guest = await transport.establish(ROOM, "guest")
            try:
                # 中继广播 peer_joined 时 guest 已计入成员列表
                await wait_until(lambda: host_seen["peer_connected"])
                with pytest.raises(RoomFullError):
                    await transport.establish(ROOM, "guest")
            finally:
                await guest.close()
                await host.close()

    @pytest.mark.asyncio
    async def test_link_drop_disconnects_every_peer(self) -> None:
        async with running_relay() as base_url:
            transport = WebSocketTransport(base_url=base_url, capacity=2, timeout=5.0)
            host = await transport.establish(ROOM, "host")
            host_seen = record(host)
            host.start()
            guest = await transport.establish(ROOM, "guest")
            guest_seen = record(guest)
            guest.start()
            try:
                await wait_until(lambda: host_seen["peer_connected"] and guest_seen["peer_connected"])

                # 只断开底层连接，句柄本身没有被关闭
                await guest._connection.close()
                await wait_until(lambda: host_seen["peer_disconnected"] and guest_seen["peer_disconnected"])

                assert host_seen["peer_disconnected"] == [guest.peer_id]
                assert guest_seen["peer_disconnected"] == [host.peer_id]
                assert not guest.closed
            finally:
                await guest.close()
                await host.close()


@pytest.mark.asyncio
async def test_silent_relay_times_out() -> None:
    async def never_answer(connection: ServerConnection) -> None:
        await connection.wait_closed()

    async with serve(never_answer, "127.0.0.1", 0) as server:
        port = next(iter(server.sockets)).getsockname()[1]
        transport = WebSocketTransport(base_url=f"ws://127.0.0.1:{port}", timeout=0.3)

        with pytest.raises(TransportError, match="会合失败"):
            await transport.establish(ROOM, "guest")
