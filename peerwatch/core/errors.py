"""
peerwatch.core.errors
~~~~~~~~~~~~~~~~~~~~~

全局异常体系。所有业务异常都继承自 ``PeerWatchError``。

- ``TransportError``        → 信令 / 链路建立失败，加入房间失败时触发回退到创建房间
- ``RoomFullError``         → 超出房间容量策略，直接上抛、不重试
- ``NotConnectedError``     → 握手完成前发送消息，调用方必须先等待就绪
- ``UnsupportedEventError`` → 订阅了不存在的事件类型
- ``PlayerError``           → 媒体 ID 无效或播放故障，只影响本地
"""
from __future__ import annotations


class PeerWatchError(Exception):
    """所有 peerwatch 异常的基类。"""


class TransportError(PeerWatchError):
    """传输层无法建立或维持会话。"""


class RoomFullError(PeerWatchError):
    """房间在线人数超出拓扑允许的上限。

    Attributes:
        room_id: 目标房间 ID。
        members: 传输层报告的同时在线人数。
        capacity: 允许的最大人数。
    """

    def __init__(self, room_id: str, members: int, capacity: int) -> None:
        super().__init__(
            f"Room {room_id!r} is full ({members} members, capacity {capacity})",
        )
        self.room_id = room_id
        self.members = members
        self.capacity = capacity


class NotConnectedError(PeerWatchError):
    """会话尚未就绪或没有可用的对端链路。"""


class UnsupportedEventError(PeerWatchError):
    """事件类型不在支持列表中。"""

    def __init__(self, kind: str, supported: tuple[str, ...]) -> None:
        super().__init__(
            f"Unsupported event: {kind!r} (expected one of {', '.join(supported)})",
        )
        self.kind = kind


class PlayerError(PeerWatchError):
    """本地播放器拒绝了一次操作（无效媒体 ID、越界 seek 等）。"""
