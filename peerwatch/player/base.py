"""
peerwatch.player.base
~~~~~~~~~~~~~~~~~~~~~

播放器边界 —— 对一个不透明的媒体 ID 报告 / 接受播放位置、速率与暂停状态。

事件:

- ``ready(media_id)``        播放器可用；``media_id`` 为 None 表示播放器界面就绪，
                             否则表示该媒体加载完成
- ``state_changed(playing)`` 播放 / 暂停切换
- ``rate_changed(rate)``     速率改变
- ``error(exc)``             ``PlayerError``，媒体无效或播放故障

事件可能在操作返回之后才异步到达（真实播放器的确认回调就是这样）。
"""
from __future__ import annotations

from abc import ABC, abstractmethod

from peerwatch.core.events import Callback, EventHub

PLAYER_EVENTS: tuple[str, ...] = ("ready", "state_changed", "rate_changed", "error")


class Player(ABC):
    """播放器接口。"""

    def __init__(self) -> None:
        self.events = EventHub(*PLAYER_EVENTS)

    def on(self, kind: str, callback: Callback) -> None:
        self.events.on(kind, callback)

    @property
    @abstractmethod
    def is_ready(self) -> bool:
        """播放器界面是否已就绪（可以接收 ``load``）。"""

    @property
    @abstractmethod
    def media_id(self) -> str | None:
        """当前已加载完成的媒体 ID。"""

    @abstractmethod
    def load(self, media_id: str) -> None:
        """开始加载媒体；完成后发出 ``ready(media_id)``，失败发出 ``error``。"""

    @abstractmethod
    def get_position(self) -> float: ...

    @abstractmethod
    def seek(self, seconds: float) -> None:
        """跳转到指定位置。

        Raises:
            PlayerError: 位置越界或未加载媒体。
        """

    @abstractmethod
    def get_rate(self) -> float: ...

    @abstractmethod
    def set_rate(self, rate: float) -> None: ...

    @abstractmethod
    def play(self) -> None: ...

    @abstractmethod
    def pause(self) -> None: ...

    @abstractmethod
    def is_playing(self) -> bool: ...

    async def close(self) -> None:
        """释放播放器持有的资源。"""
        self.events.clear()
