"""
peerwatch.transport.memory
~~~~~~~~~~~~~~~~~~~~~~~~~~

进程内传输实现 —— 多个对端共享一个 ``MemoryHub`` 完成会合与收发。

每个句柄持有一个 ``asyncio.Queue`` 和一个派发协程，投递是异步且按链路有序的，
行为上与真实网络链路一致。消息投递前做一次 JSON 往返，确保负载可序列化。
主要用于测试和本地演示。
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import uuid
from typing import Any

from peerwatch.core.errors import RoomFullError, TransportError
from peerwatch.core.logging import get_logger
from peerwatch.schemas.messages import PeerUser
from peerwatch.transport.base import Role, SessionHandle, Transport

logger = get_logger(__name__)


class MemoryHub:
    """进程内的会合点。

    Attributes:
        rooms: 房间名 → {peer_id: 句柄}。
        available: 置为 False 时 ``establish`` 抛出 ``TransportError``（模拟信令故障）。
    """

    def __init__(self) -> None:
        self.rooms: dict[str, dict[str, MemorySessionHandle]] = {}
        self.available: bool = True

    def online_count(self, room_name: str) -> int:
        return len(self.rooms.get(room_name, {}))

    def _leave(self, handle: MemorySessionHandle) -> None:
        room = self.rooms.get(handle.room_name)
        if room is None or room.pop(handle.peer_id, None) is None:
            return
        for other in room.values():
            other._deliver("peer_disconnected", handle.peer_id)
        if not room:
            del self.rooms[handle.room_name]


class MemorySessionHandle(SessionHandle):
    """``MemoryHub`` 上的一个会话。"""

    def __init__(
        self,
        hub: MemoryHub,
        room_name: str,
        peer_id: str,
        members: list[str],
        user: PeerUser | None = None,
    ) -> None:
        super().__init__(room_name, peer_id, members, user)
        self._hub = hub
        self._queue: asyncio.Queue[tuple[str, tuple[Any, ...]]] = asyncio.Queue()
        self._pump_task: asyncio.Task[None] | None = None

    def _deliver(self, kind: str, *args: Any) -> None:
        if not self.closed:
            self._queue.put_nowait((kind, args))

    def start(self) -> None:
        if self._pump_task is None and not self.closed:
            self._pump_task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        while True:
            kind, args = await self._queue.get()
            await self.events.emit(kind, *args)

    async def send(self, payload: dict[str, Any], to: str | None = None) -> None:
        if self.closed:
            raise TransportError("会话已关闭")
        room = self._hub.rooms.get(self.room_name, {})
        if to is not None:
            if to not in room or to == self.peer_id:
                raise TransportError(f"对端不在房间内: {to}")
            targets = [room[to]]
        else:
            targets = [h for pid, h in room.items() if pid != self.peer_id]

        wire = json.loads(json.dumps(payload))
        for target in targets:
            target._deliver("message", self.peer_id, wire)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._hub._leave(self)

        task, self._pump_task = self._pump_task, None
        if task is None:
            return
        task.cancel()
        # 在派发协程内部关闭时不能 await 自己
        if task is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await task


class MemoryTransport(Transport):
    """基于 ``MemoryHub`` 的传输实现。"""

    def __init__(self, hub: MemoryHub, capacity: int | None = None) -> None:
        super().__init__(capacity)
        self.hub = hub

    async def establish(
        self, room_name: str, role: Role, user: PeerUser | None = None,
    ) -> MemorySessionHandle:
        if not self.hub.available:
            raise TransportError(f"信令服务不可用 | room={room_name}")
        # 会合本身是异步的
        await asyncio.sleep(0)

        room = self.hub.rooms.get(room_name, {})
        peer_id = uuid.uuid4().hex[:8]
        members = [*room.keys(), peer_id]
        try:
            self.check_capacity(room_name, role, members)
        except RoomFullError:
            logger.info("房间已满 | room=%s | members=%d", room_name, len(members))
            raise

        handle = MemorySessionHandle(self.hub, room_name, peer_id, members, user)
        for other in room.values():
            other._deliver("peer_connected", peer_id, user)
            handle._deliver("peer_connected", other.peer_id, other.user)
        self.hub.rooms.setdefault(room_name, {})[peer_id] = handle
        logger.debug("已加入内存房间 | room=%s | role=%s | members=%d", room_name, role, len(members))
        return handle
