"""
peerwatch.player.simulated
~~~~~~~~~~~~~~~~~~~~~~~~~~

进程内模拟播放器 —— 按时钟推算播放位置，不渲染任何画面。

- 播放位置 = 锚点位置 + 经过时间 × 速率（播放中才推进）
- 所有事件都通过独立任务异步发出，模拟真实播放器的确认回调
- 时钟可注入，测试里用假时钟精确控制位置
"""
from __future__ import annotations

import asyncio
import contextlib
import re
import time
from collections.abc import Callable
from typing import Any

from peerwatch.core.errors import PlayerError
from peerwatch.core.logging import get_logger
from peerwatch.player.base import Player

logger = get_logger(__name__)

# 与常见视频平台一致的 11 位媒体 ID
MEDIA_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{11}$")


class SimulatedPlayer(Player):
    """按时钟推进的播放器。

    Attributes:
        load_delay: 加载媒体所需时间（秒）。
        duration: 媒体时长；None 表示不限制 seek 范围。
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        load_delay: float = 0.0,
        duration: float | None = None,
        media_pattern: re.Pattern[str] = MEDIA_ID_PATTERN,
    ) -> None:
        super().__init__()
        self._clock = clock
        self.load_delay = load_delay
        self.duration = duration
        self._media_pattern = media_pattern

        self._ready = False
        self._media_id: str | None = None
        self._loading: str | None = None
        self._position = 0.0
        self._anchor_time = clock()
        self._rate = 1.0
        self._playing = False
        self._tasks: set[asyncio.Task[Any]] = set()

    # ── 生命周期 ──────────────────────────────────────────────────────

    def start(self) -> None:
        """播放器界面就绪，发出 ``ready(None)``。"""
        self._ready = True
        self._spawn(self.events.emit("ready", None))

    async def close(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await super().close()

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ── 状态查询 ──────────────────────────────────────────────────────

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def media_id(self) -> str | None:
        return self._media_id

    def get_position(self) -> float:
        position = self._position
        if self._playing:
            position += (self._clock() - self._anchor_time) * self._rate
        if self.duration is not None:
            position = min(position, self.duration)
        return max(position, 0.0)

    def get_rate(self) -> float:
        return self._rate

    def is_playing(self) -> bool:
        return self._playing

    # ── 操作 ──────────────────────────────────────────────────────────

    def load(self, media_id: str) -> None:
        if not self._ready:
            raise PlayerError("播放器尚未就绪")
        if not self._media_pattern.match(media_id):
            logger.warning("无效的媒体 ID: %r", media_id)
            self._spawn(self.events.emit("error", PlayerError(f"无效的媒体 ID: {media_id!r}")))
            return

        self._media_id = None
        self._loading = media_id
        self._playing = False
        self._position = 0.0
        self._anchor_time = self._clock()
        self._spawn(self._finish_load(media_id))

    async def _finish_load(self, media_id: str) -> None:
        if self.load_delay:
            await asyncio.sleep(self.load_delay)
        # 加载期间又换了媒体
        if self._loading != media_id:
            return
        self._loading = None
        self._media_id = media_id
        await self.events.emit("ready", media_id)

    def seek(self, seconds: float) -> None:
        self._require_media()
        if seconds < 0 or (self.duration is not None and seconds > self.duration):
            raise PlayerError(f"seek 越界: {seconds:.3f}s")
        self._position = seconds
        self._anchor_time = self._clock()

    def set_rate(self, rate: float) -> None:
        if rate <= 0:
            raise PlayerError(f"无效的播放速率: {rate}")
        if rate == self._rate:
            return
        self._rebase()
        self._rate = rate
        self._spawn(self.events.emit("rate_changed", rate))

    def play(self) -> None:
        self._require_media()
        if self._playing:
            return
        self._rebase()
        self._playing = True
        self._spawn(self.events.emit("state_changed", True))

    def pause(self) -> None:
        if not self._playing:
            return
        self._rebase()
        self._playing = False
        self._spawn(self.events.emit("state_changed", False))

    def fail(self, message: str) -> None:
        """模拟一次播放故障（例如解码失败），发出 ``error``。"""
        self._playing = False
        self._spawn(self.events.emit("error", PlayerError(message)))

    def _rebase(self) -> None:
        self._position = self.get_position()
        self._anchor_time = self._clock()

    def _require_media(self) -> None:
        if self._media_id is None:
            raise PlayerError("尚未加载媒体")
