"""
peerwatch.transport.base
~~~~~~~~~~~~~~~~~~~~~~~~

传输层边界 —— 负责建立会话、报告对端上下线、收发任意 JSON 消息。

``Transport.establish()`` 返回一个 ``SessionHandle``。句柄事件:

- ``peer_connected(peer_id, user)``    对端链路可用
- ``peer_disconnected(peer_id)``       对端链路断开
- ``message(peer_id, payload)``        收到对端消息（按链路有序）

调用方订阅完事件后调用 ``start()``，此前到达的事件会先缓存。
具体实现负责保证：同一句柄上的事件逐条派发，一条处理完才处理下一条。
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Literal

from peerwatch.core.config import settings
from peerwatch.core.errors import RoomFullError
from peerwatch.core.events import Callback, EventHub
from peerwatch.schemas.messages import PeerUser

Role = Literal["host", "guest"]

HANDLE_EVENTS: tuple[str, ...] = ("peer_connected", "peer_disconnected", "message")


class SessionHandle(ABC):
    """一次已建立的会话。

    Attributes:
        room_name: 传输层房间名。
        peer_id: 传输层分配给本端的 ID。
        members: 建立时房间内的成员 ID（含自己）。
        user: 本端身份，随上线通知发给其他成员。
    """

    def __init__(
        self,
        room_name: str,
        peer_id: str,
        members: list[str],
        user: PeerUser | None = None,
    ) -> None:
        self.room_name = room_name
        self.peer_id = peer_id
        self.members = members
        self.user = user
        self.events = EventHub(*HANDLE_EVENTS)
        self.closed = False

    def on(self, kind: str, callback: Callback) -> None:
        self.events.on(kind, callback)

    @abstractmethod
    def start(self) -> None:
        """开始派发事件（订阅完成后调用）。"""

    @abstractmethod
    async def send(self, payload: dict[str, Any], to: str | None = None) -> None:
        """发送给指定对端，``to`` 为 None 时广播给所有对端。"""

    @abstractmethod
    async def close(self) -> None:
        """释放链路，可重复调用。"""


class Transport(ABC):
    """会话工厂。

    Attributes:
        capacity: 单个房间允许的最大同时在线人数。
    """

    def __init__(self, capacity: int | None = None) -> None:
        self.capacity: int = capacity or settings.ROOM_CAPACITY

    @abstractmethod
    async def establish(
        self, room_name: str, role: Role, user: PeerUser | None = None,
    ) -> SessionHandle:
        """加入 ``room_name`` 并返回会话句柄。

        Raises:
            TransportError: 信令失败。
            RoomFullError: 以 guest 身份加入时房间已满。
        """

    def check_capacity(self, room_name: str, role: Role, members: list[str]) -> None:
        """guest 加入时校验人数；host 创建的是新房间，不做限制。"""
        if role == "guest" and len(members) > self.capacity:
            raise RoomFullError(room_name, len(members), self.capacity)
