"""
peerwatch.transport.websocket
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

基于中继服务器的 WebSocket 传输实现（``websockets`` asyncio 客户端）。

建立流程:
  1. 连接 ``{RELAY_URL}/ws/rooms/{room_name}``
  2. 在 ``CONNECT_TIMEOUT`` 内等待 ``members`` 帧，做容量检查
  3. 发送 ``hello`` 宣告自己，之后由读取协程把帧转成句柄事件
"""
from __future__ import annotations

import asyncio
import contextlib
from typing import Any
from urllib.parse import quote

from pydantic import ValidationError
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from peerwatch.core.config import settings
from peerwatch.core.errors import RoomFullError, TransportError
from peerwatch.core.logging import get_logger
from peerwatch.schemas.messages import PeerUser
from peerwatch.schemas.relay import (
    ClientDataFrame,
    ErrorFrame,
    HelloFrame,
    MembersFrame,
    PeerJoinedFrame,
    PeerLeftFrame,
    ServerDataFrame,
    server_frame_adapter,
)
from peerwatch.transport.base import Role, SessionHandle, Transport

logger = get_logger(__name__)


class WebSocketSessionHandle(SessionHandle):
    """中继服务器上的一个会话。"""

    def __init__(
        self,
        connection: ClientConnection,
        room_name: str,
        peer_id: str,
        members: list[str],
        user: PeerUser | None = None,
    ) -> None:
        super().__init__(room_name, peer_id, members, user)
        self._connection = connection
        self._peers: set[str] = set()
        self._reader_task: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self._reader_task is None and not self.closed:
            self._reader_task = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        # 建立时已在房间内的成员
        for peer_id in self.members:
            if peer_id != self.peer_id:
                self._peers.add(peer_id)
                await self.events.emit("peer_connected", peer_id, None)

        try:
            async for raw in self._connection:
                try:
                    frame = server_frame_adapter.validate_json(raw)
                except ValidationError as e:
                    logger.warning("无法解析中继帧，已丢弃 | room=%s | %s", self.room_name, e.errors()[:1])
                    continue

                if isinstance(frame, ServerDataFrame):
                    await self.events.emit("message", frame.from_id, frame.payload)
                elif isinstance(frame, PeerJoinedFrame):
                    self._peers.add(frame.peer)
                    await self.events.emit("peer_connected", frame.peer, frame.user)
                elif isinstance(frame, PeerLeftFrame):
                    self._peers.discard(frame.peer)
                    await self.events.emit("peer_disconnected", frame.peer)
                elif isinstance(frame, ErrorFrame):
                    logger.warning("中继返回错误 | room=%s | %s", self.room_name, frame.detail)
        except ConnectionClosed as e:
            logger.info("中继连接已断开 | room=%s | code=%s", self.room_name, e.rcvd.code if e.rcvd else None)
        finally:
            # 链路意外断开时，所有对端都视为下线
            peers = [] if self.closed else list(self._peers)
            self._peers.clear()
            for peer_id in peers:
                await self.events.emit("peer_disconnected", peer_id)

    async def send(self, payload: dict[str, Any], to: str | None = None) -> None:
        if self.closed:
            raise TransportError("会话已关闭")
        frame = ClientDataFrame(to=to, payload=payload)
        try:
            await self._connection.send(frame.model_dump_json())
        except ConnectionClosed as e:
            raise TransportError(f"中继连接已断开 | room={self.room_name}") from e

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._connection.close()

        task, self._reader_task = self._reader_task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


class WebSocketTransport(Transport):
    """通过中继服务器会合与转发。

    Attributes:
        base_url: 中继的 WebSocket 基础地址（``ws://`` / ``wss://``）。
        timeout: 连接并等待成员列表的超时（秒）。
    """

    def __init__(
        self,
        base_url: str | None = None,
        capacity: int | None = None,
        timeout: float | None = None,
    ) -> None:
        super().__init__(capacity)
        self.base_url: str = (base_url or settings.RELAY_URL).rstrip("/")
        self.timeout: float = timeout or settings.CONNECT_TIMEOUT

    def room_url(self, room_name: str) -> str:
        return f"{self.base_url}/ws/rooms/{quote(room_name, safe='')}"

    async def establish(
        self, room_name: str, role: Role, user: PeerUser | None = None,
    ) -> WebSocketSessionHandle:
        url = self.room_url(room_name)
        try:
            connection = await asyncio.wait_for(connect(url), self.timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise TransportError(f"无法连接中继: {url} ({e})") from e

        try:
            raw = await asyncio.wait_for(connection.recv(), self.timeout)
            frame = server_frame_adapter.validate_json(raw)
            if not isinstance(frame, MembersFrame):
                raise TransportError(f"中继未返回成员列表: {frame.kind}")
            self.check_capacity(room_name, role, frame.members)
            await connection.send(HelloFrame(user=user).model_dump_json())
        except (RoomFullError, TransportError):
            await connection.close()
            raise
        except (asyncio.TimeoutError, ValidationError, WebSocketException) as e:
            await connection.close()
            raise TransportError(f"会合失败 | room={room_name} ({e})") from e

        logger.info(
            "已加入中继房间 | room=%s | role=%s | members=%d",
            room_name, role, len(frame.members),
        )
        return WebSocketSessionHandle(connection, room_name, frame.self_id, frame.members, user)
