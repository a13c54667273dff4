"""
peerwatch.core.events
~~~~~~~~~~~~~~~~~~~~~

按事件类型分组的订阅表。

每种事件一条订阅者列表，``emit()`` 依次调用（协程回调会被 await），
因此同一事件源上的事件总是一条处理完再处理下一条。
"""
from __future__ import annotations

import inspect
from collections.abc import Callable
from typing import Any

from peerwatch.core.errors import UnsupportedEventError
from peerwatch.core.logging import get_logger

logger = get_logger(__name__)

Callback = Callable[..., Any]


class EventHub:
    """一组固定事件类型的订阅者列表。

    Attributes:
        kinds: 支持的事件类型（构造时确定）。
    """

    def __init__(self, *kinds: str) -> None:
        self.kinds: tuple[str, ...] = kinds
        self._listeners: dict[str, list[Callback]] = {kind: [] for kind in kinds}

    def on(self, kind: str, callback: Callback) -> None:
        """注册回调。

        Raises:
            UnsupportedEventError: ``kind`` 不在支持列表中。
        """
        if kind not in self._listeners:
            raise UnsupportedEventError(kind, self.kinds)
        self._listeners[kind].append(callback)

    def off(self, kind: str, callback: Callback) -> None:
        """注销回调，未注册时忽略。"""
        listeners = self._listeners.get(kind, [])
        if callback in listeners:
            listeners.remove(callback)

    def clear(self) -> None:
        """移除全部回调。"""
        for listeners in self._listeners.values():
            listeners.clear()

    def listener_count(self, kind: str) -> int:
        return len(self._listeners.get(kind, []))

    async def emit(self, kind: str, *args: Any) -> None:
        """按注册顺序派发事件。

        单个回调抛出的异常只记录日志，不影响其余回调。
        """
        for callback in list(self._listeners[kind]):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("事件回调异常 | event=%s | %s", kind, e, exc_info=True)
