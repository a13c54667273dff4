"""
peerwatch.core.rate_limit
~~~~~~~~~~~~~~~~~~~~~~~~~

中继服务器 REST 与 WebSocket 的限流配置。
"""
from __future__ import annotations

import time
from collections import deque

from slowapi import Limiter
from slowapi.util import get_remote_address

# --------- HTTP 接口限流器 ---------
# 基于客户端 IP 地址进行限流
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
)


# --------- WebSocket 帧限流器 ---------
class FrameRateLimiter:
    """滑动窗口限流：每个客户端在 ``window_seconds`` 内最多 ``max_frames`` 帧。

    同步协议会在对端连接时连发几条（``video_info`` + ``chat_history``），
    所以这里按窗口计数而不是限制最小间隔。
    """

    def __init__(self, max_frames: int = 50, window_seconds: float = 1.0) -> None:
        self.max_frames = max_frames
        self.window_seconds = window_seconds
        self._frames: dict[str, deque[float]] = {}

    def is_allowed(self, client_id: str) -> bool:
        """检查客户端是否允许再发一帧。允许时同时记录本次时间。"""
        now = time.monotonic()
        history = self._frames.setdefault(client_id, deque())
        while history and now - history[0] >= self.window_seconds:
            history.popleft()
        if len(history) >= self.max_frames:
            return False
        history.append(now)
        return True

    def remove_client(self, client_id: str) -> None:
        """清理断开连接的客户端记录。"""
        self._frames.pop(client_id, None)
