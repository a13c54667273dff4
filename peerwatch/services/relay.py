"""
peerwatch.services.relay
~~~~~~~~~~~~~~~~~~~~~~~~

中继服务器领域模型 —— 房间会合 + 数据转发。

每个 ``RelayRoom`` 维护该房间内的 WebSocket 连接与已宣告成员，
``RelaySystem`` 管理所有房间的生命周期（空房间自动回收）。

新连接先收到 ``members`` 帧，自行完成容量检查后发送 ``hello``，
此后才会被其他成员看到（``peer_joined``）并参与数据转发。
"""
from __future__ import annotations

import asyncio
import uuid
from typing import Any

from fastapi import WebSocket
from pydantic import BaseModel

from peerwatch.core.config import settings
from peerwatch.core.logging import get_logger
from peerwatch.schemas.messages import PeerUser
from peerwatch.schemas.relay import (
    ErrorFrame,
    MembersFrame,
    PeerJoinedFrame,
    PeerLeftFrame,
    RoomInfoData,
    ServerDataFrame,
)

logger = get_logger(__name__)


class RelayRoom:
    """一个会合房间。

    Attributes:
        room_name: 传输层房间名。
        connections: peer_id → WebSocket（含尚未宣告的连接）。
        announced: 已发送 ``hello`` 的成员。
        capacity: 允许同时宣告的最大成员数。
    """

    def __init__(self, room_name: str, capacity: int | None = None) -> None:
        self.room_name = room_name
        self.capacity: int = capacity or settings.ROOM_CAPACITY
        self.connections: dict[str, WebSocket] = {}
        self.announced: dict[str, PeerUser | None] = {}

    async def connect(self, websocket: WebSocket) -> str:
        """接受新连接，分配 peer_id 并下发当前成员列表。"""
        await websocket.accept()
        peer_id = uuid.uuid4().hex[:8]
        self.connections[peer_id] = websocket
        members = [*self.announced.keys(), peer_id]
        await self._send(peer_id, MembersFrame(self_id=peer_id, members=members))
        return peer_id

    async def announce(self, peer_id: str, user: PeerUser | None) -> bool:
        """宣告成员上线，并通知其他已宣告成员。

        已宣告人数达到 ``capacity`` 时拒绝，客户端侧的容量检查只看连接时的成员列表。

        Returns:
            False 表示房间已满，调用方应关闭该连接。
        """
        if peer_id in self.announced:
            return True
        if len(self.announced) >= self.capacity:
            logger.warning("房间已满，拒绝宣告 | room=%s | peer=%s", self.room_name, peer_id)
            await self._send(peer_id, ErrorFrame(detail="房间已满"))
            return False
        self.announced[peer_id] = user
        await self.broadcast(PeerJoinedFrame(peer=peer_id, user=user), exclude=peer_id)
        return True

    async def disconnect(self, peer_id: str) -> None:
        """移除连接；已宣告的成员会通知其他人下线。"""
        self.connections.pop(peer_id, None)
        if peer_id in self.announced:
            del self.announced[peer_id]
            await self.broadcast(PeerLeftFrame(peer=peer_id))

    async def forward(self, from_id: str, payload: Any, to: str | None = None) -> None:
        """把数据帧转发给 ``to``，或转发给除发送者以外的所有已宣告成员。"""
        if from_id not in self.announced:
            await self._send(from_id, ErrorFrame(detail="请先发送 hello"))
            return
        frame = ServerDataFrame(from_id=from_id, payload=payload)
        if to is None:
            await self.broadcast(frame, exclude=from_id)
        elif to in self.announced:
            await self._send(to, frame)
        else:
            await self._send(from_id, ErrorFrame(detail=f"对端不在房间内: {to}"))

    async def broadcast(self, frame: BaseModel, exclude: str | None = None) -> None:
        """向所有已宣告成员广播帧，发送失败的连接会被移除。"""
        targets = [pid for pid in self.announced if pid != exclude and pid in self.connections]
        message = frame.model_dump_json(by_alias=True)
        results = await asyncio.gather(
            *(self.connections[pid].send_text(message) for pid in targets),
            return_exceptions=True,
        )
        for pid, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning("广播失败，移除断开的连接 | room=%s | peer=%s", self.room_name, pid)
                self.connections.pop(pid, None)
                self.announced.pop(pid, None)

    async def _send(self, peer_id: str, frame: BaseModel) -> None:
        websocket = self.connections.get(peer_id)
        if websocket is not None:
            await websocket.send_text(frame.model_dump_json(by_alias=True))

    @property
    def online_count(self) -> int:
        """已宣告的在线成员数。"""
        return len(self.announced)

    @property
    def is_empty(self) -> bool:
        return not self.connections

    def info(self) -> RoomInfoData:
        """返回房间摘要信息。"""
        return RoomInfoData(room_name=self.room_name, online_count=self.online_count)


class RelaySystem:
    """中继服务（在 FastAPI lifespan 中创建，挂载于 ``app.state``）。

    - ``get_room(name)``     → 获取/创建房间
    - ``find_room(name)``    → 仅查询，不存在返回 None
    - ``release(name)``      → 房间空了就回收
    - ``list_rooms()``       → 列出所有活跃房间
    """

    def __init__(self, capacity: int | None = None) -> None:
        self.capacity: int = capacity or settings.ROOM_CAPACITY
        self._rooms: dict[str, RelayRoom] = {}

    def get_room(self, room_name: str) -> RelayRoom:
        if room_name not in self._rooms:
            self._rooms[room_name] = RelayRoom(room_name, self.capacity)
            logger.info("房间已创建 | room=%s", room_name)
        return self._rooms[room_name]

    def find_room(self, room_name: str) -> RelayRoom | None:
        return self._rooms.get(room_name)

    def release(self, room_name: str) -> None:
        room = self._rooms.get(room_name)
        if room is not None and room.is_empty:
            del self._rooms[room_name]
            logger.info("房间已回收 | room=%s", room_name)

    def list_rooms(self) -> list[RoomInfoData]:
        """列出所有活跃房间的摘要信息。"""
        return [room.info() for room in self._rooms.values()]
