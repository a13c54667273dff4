"""
peerwatch.services.sync_engine
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

播放状态收敛引擎 —— 回声抑制 + 漂移阈值纠偏 + 后到者优先。

状态机::

    IDLE ──load / video_info──▶ LOADING ──player ready──▶ SYNCED
                                   ▲                         │
                                   └── 不同媒体的 video_info ─┘

收敛规则:

1. 本地播放器事件（播放 / 暂停、速率、位置轮询）在抑制窗口内一律吞掉。
2. 窗口外的本地事件转换成消息广播给所有对端。
3. 收到对端消息：先打开抑制窗口，再按「速率 → seek → 播放/暂停」的顺序
   应用到播放器，``settle_delay`` 之后关闭窗口，吸收播放器的异步确认回调。
4. 位置轮询只在 |本地位置 − 期望位置| > ``drift_threshold`` 时广播 ``seek``；
   期望位置 = 最近一次同步点按经过时间和速率外推。
5. 晚加入的一方在播放器就绪后发送 ``request_video_info``，
   任何处于 SYNCED 的对端用当前位置的快照回复。
6. 冲突时谁的消息后到就采用谁的，没有全局顺序。

单条消息发送失败不重试，下一次轮询纠偏会自然补上。
"""
from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable
from enum import Enum

from peerwatch.core.config import settings
from peerwatch.core.errors import NotConnectedError, PlayerError, TransportError
from peerwatch.core.logging import get_logger
from peerwatch.player.base import Player
from peerwatch.schemas.messages import (
    PauseMessage,
    PlaybackState,
    PlayMessage,
    RequestVideoInfoMessage,
    SeekMessage,
    SpeedChangeMessage,
    SyncMessage,
    VideoInfoMessage,
    WireModel,
)
from peerwatch.services.endpoint import SessionEndpoint

logger = get_logger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SYNCED = "synced"


def drift_exceeds(local: float, expected: float, threshold: float) -> bool:
    """位置差严格大于阈值才算漂移（恰好等于阈值不纠偏）。"""
    return abs(local - expected) > threshold


class SyncEngine:
    """单个本地播放器的同步状态机。

    Attributes:
        endpoint: 所在房间的会话端点。
        player: 本地播放器。
        settle_delay: 抑制窗口时长（秒）。
        drift_threshold: 纠偏阈值（秒）。
        poll_interval: 位置轮询间隔（秒），0 表示不启动轮询任务。
        state: 当前状态。
        last_error: 最近一次播放器错误的提示文本（给界面显示）。
    """

    def __init__(
        self,
        endpoint: SessionEndpoint,
        player: Player,
        *,
        settle_delay: float | None = None,
        drift_threshold: float | None = None,
        poll_interval: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.endpoint = endpoint
        self.player = player
        self.settle_delay: float = settings.SETTLE_DELAY if settle_delay is None else settle_delay
        self.drift_threshold: float = (
            settings.DRIFT_THRESHOLD if drift_threshold is None else drift_threshold
        )
        self.poll_interval: float = settings.POLL_INTERVAL if poll_interval is None else poll_interval
        self._clock = clock

        self.state: SyncState = SyncState.IDLE
        self.last_error: str | None = None

        self._suppressed = False
        self._settle_handle: asyncio.TimerHandle | None = None
        self._poll_task: asyncio.Task[None] | None = None

        # 远端快照，等播放器加载完再应用
        self._pending: PlaybackState | None = None
        self._pending_at: float = 0.0
        # 正在让播放器加载的媒体
        self._loading_media: str | None = None
        # 本地发起的加载，就绪后要广播 video_info
        self._local_load: str | None = None

        # 最近一次同步点（应用远端更新或本地广播时刷新）
        self._anchor: PlaybackState | None = None
        self._anchor_time: float = 0.0

        self._started = False
        self._closed = False

    # ── 状态查询 ──────────────────────────────────────────────────────

    @property
    def suppressed(self) -> bool:
        """是否处于回声抑制窗口内。"""
        return self._suppressed

    @property
    def role(self) -> str | None:
        return self.endpoint.role

    def snapshot(self) -> PlaybackState:
        """从播放器读取当前状态。"""
        return PlaybackState(
            media_id=self.player.media_id or "",
            position_seconds=self.player.get_position(),
            rate=self.player.get_rate(),
            paused=not self.player.is_playing(),
        )

    def expected_position(self) -> float | None:
        """最近同步点按经过时间外推出的期望位置；没有同步点时为 None。"""
        if self._anchor is None:
            return None
        position = self._anchor.position_seconds
        if not self._anchor.paused:
            position += (self._clock() - self._anchor_time) * self._anchor.rate
        return position

    # ── 生命周期 ──────────────────────────────────────────────────────

    def start(self) -> None:
        """订阅播放器事件并启动位置轮询。"""
        if self._started:
            return
        self._started = True
        self.player.on("ready", self._on_player_ready)
        self.player.on("state_changed", self._on_state_changed)
        self.player.on("rate_changed", self._on_rate_changed)
        self.player.on("error", self._on_player_error)
        if self.poll_interval > 0:
            self._poll_task = asyncio.create_task(self._poll_loop())

    async def close(self) -> None:
        """取消轮询任务和抑制窗口定时器。返回后不会再有定时器触发。"""
        if self._closed:
            return
        self._closed = True
        self._cancel_settle_timer()
        self._suppressed = False

        task, self._poll_task = self._poll_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for kind, callback in (
            ("ready", self._on_player_ready),
            ("state_changed", self._on_state_changed),
            ("rate_changed", self._on_rate_changed),
            ("error", self._on_player_error),
        ):
            self.player.events.off(kind, callback)

    # ── 抑制窗口 ──────────────────────────────────────────────────────

    def _begin_suppression(self) -> None:
        """打开（或续期）抑制窗口，``settle_delay`` 后自动关闭。"""
        self._suppressed = True
        self._cancel_settle_timer()
        loop = asyncio.get_running_loop()
        self._settle_handle = loop.call_later(self.settle_delay, self._end_suppression)

    def _hold_suppression(self) -> None:
        """加载期间保持抑制，不设定时器，等应用完快照再计时。"""
        self._suppressed = True
        self._cancel_settle_timer()

    def _end_suppression(self) -> None:
        self._settle_handle = None
        self._suppressed = False

    def _cancel_settle_timer(self) -> None:
        if self._settle_handle is not None:
            self._settle_handle.cancel()
            self._settle_handle = None

    def _set_anchor(self, state: PlaybackState) -> None:
        self._anchor = state
        self._anchor_time = self._clock()

    # ── 本地操作 ──────────────────────────────────────────────────────

    def load_media(self, media_id: str) -> None:
        """本地加载媒体；播放器就绪后广播 ``video_info``。"""
        # 放弃未完成的远端加载，连同它保持的抑制
        self._pending = None
        self._cancel_settle_timer()
        self._suppressed = False
        self._local_load = media_id
        self.last_error = None
        self.state = SyncState.LOADING
        self._loading_media = media_id
        logger.info("本地加载媒体 | media=%s", media_id)
        try:
            self.player.load(media_id)
        except PlayerError as e:
            self._fail(e)

    async def check_drift(self) -> bool:
        """检查本地位置是否偏离期望位置，偏离则广播 ``seek``。

        Returns:
            是否发出了 ``seek``。
        """
        if self.state is not SyncState.SYNCED or self._suppressed:
            return False
        expected = self.expected_position()
        if expected is None:
            return False
        local = self.player.get_position()
        if not drift_exceeds(local, expected, self.drift_threshold):
            return False

        logger.debug("检测到漂移 | local=%.3f | expected=%.3f", local, expected)
        self._set_anchor(self.snapshot())
        await self._broadcast(SeekMessage(position_seconds=local))
        return True

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.check_drift()
            except Exception as e:
                logger.error("位置轮询异常: %s", e, exc_info=True)

    # ── 对端事件（由房间控制器转发）──────────────────────────────────

    async def on_peer_connected(self, peer_id: str) -> None:
        """新对端上线：SYNCED 的 host 推送快照，其余就绪的一方请求快照。"""
        if self.state is SyncState.SYNCED and self.role == "host":
            await self._send(VideoInfoMessage.from_state(self.snapshot()), to=peer_id)
        elif self.player.is_ready and self.state is not SyncState.LOADING:
            await self._send(RequestVideoInfoMessage(), to=peer_id)

    async def handle_message(self, message: SyncMessage, peer_id: str) -> None:
        """应用一条对端消息。"""
        if isinstance(message, VideoInfoMessage):
            self._on_video_info(message)
        elif isinstance(message, RequestVideoInfoMessage):
            if self.state is SyncState.SYNCED:
                await self._send(VideoInfoMessage.from_state(self.snapshot()), to=peer_id)
            else:
                logger.debug("未同步，忽略 request_video_info | state=%s", self.state.value)
        else:
            self._on_control(message)

    def _on_video_info(self, message: VideoInfoMessage) -> None:
        incoming = message.to_state()

        # 同一媒体：直接对齐状态
        if self.state is SyncState.SYNCED and self.player.media_id == incoming.media_id:
            self._begin_suppression()
            try:
                self._apply(incoming)
            except PlayerError as e:
                self._fail(e)
                return
            self._set_anchor(incoming)
            return

        # 新媒体：先加载，就绪后再应用
        self._local_load = None
        self._pending = incoming
        self._pending_at = self._clock()
        self.state = SyncState.LOADING
        self._hold_suppression()
        logger.info("采用远端媒体 | media=%s | pos=%.2f", incoming.media_id, incoming.position_seconds)

        if not self.player.is_ready:
            return
        if self._loading_media == incoming.media_id:
            return
        if self.player.media_id == incoming.media_id:
            self._apply_pending()
            return
        self._loading_media = incoming.media_id
        try:
            self.player.load(incoming.media_id)
        except PlayerError as e:
            self._fail(e)

    def _on_control(self, message: SyncMessage) -> None:
        if self.state is SyncState.IDLE:
            logger.debug("未加载媒体，忽略控制消息 | type=%s", message.type)
            return
        if self.state is SyncState.LOADING:
            if self._pending is not None:
                self._pending = self._merge_pending(self._pending, message)
            return

        self._begin_suppression()
        try:
            if isinstance(message, SpeedChangeMessage):
                self.player.set_rate(message.rate)
            elif isinstance(message, SeekMessage):
                self.player.seek(message.position_seconds)
            elif isinstance(message, PlayMessage):
                self.player.play()
            elif isinstance(message, PauseMessage):
                self.player.pause()
        except PlayerError as e:
            self._fail(e)
            return
        self._set_anchor(self.snapshot())

    def _merge_pending(self, pending: PlaybackState, message: SyncMessage) -> PlaybackState:
        """加载期间收到的控制消息并入待应用快照。"""
        # 先把已经过去的播放时间折算进位置
        position = pending.position_seconds
        if not pending.paused:
            position += (self._clock() - self._pending_at) * pending.rate
        self._pending_at = self._clock()

        if isinstance(message, SeekMessage):
            position = message.position_seconds
        update: dict[str, object] = {"position_seconds": position}
        if isinstance(message, SpeedChangeMessage):
            update["rate"] = message.rate
        elif isinstance(message, PlayMessage):
            update["paused"] = False
        elif isinstance(message, PauseMessage):
            update["paused"] = True
        return pending.model_copy(update=update)

    # ── 应用状态 ──────────────────────────────────────────────────────

    def _apply(self, state: PlaybackState) -> None:
        # 顺序固定：速率 → seek → 播放/暂停
        self.player.set_rate(state.rate)
        self.player.seek(state.position_seconds)
        if state.paused:
            self.player.pause()
        else:
            self.player.play()

    def _apply_pending(self) -> None:
        pending, self._pending = self._pending, None
        if pending is None:
            return
        # 加载花掉的时间要补上
        if not pending.paused:
            elapsed = self._clock() - self._pending_at
            pending = pending.model_copy(
                update={"position_seconds": pending.position_seconds + elapsed * pending.rate},
            )

        self._begin_suppression()
        try:
            self._apply(pending)
        except PlayerError as e:
            self._fail(e)
            return
        self.state = SyncState.SYNCED
        self.last_error = None
        self._set_anchor(pending)
        logger.info(
            "已同步 | media=%s | pos=%.2f | rate=%.2f | paused=%s",
            pending.media_id, pending.position_seconds, pending.rate, pending.paused,
        )

    def _fail(self, error: Exception) -> None:
        """播放器出错只影响本端：回到 LOADING / IDLE，不通知对端。"""
        previous = self.state
        self.last_error = str(error)
        self._pending = None
        self._local_load = None
        self._loading_media = None
        self._cancel_settle_timer()
        self._suppressed = False
        self.state = SyncState.LOADING if previous is SyncState.SYNCED else SyncState.IDLE
        logger.warning(
            "播放器错误 | %s | %s → %s", error, previous.value, self.state.value,
        )

    # ── 播放器事件 ────────────────────────────────────────────────────

    async def _on_player_ready(self, media_id: str | None) -> None:
        if media_id is None:
            # 播放器界面刚就绪
            if self._pending is not None and self._loading_media is None:
                self._loading_media = self._pending.media_id
                try:
                    self.player.load(self._pending.media_id)
                except PlayerError as e:
                    self._fail(e)
            elif self.state is SyncState.IDLE and self.endpoint.peer_count:
                await self._broadcast(RequestVideoInfoMessage())
            return

        if self._loading_media == media_id:
            self._loading_media = None

        if self._pending is not None and self._pending.media_id == media_id:
            self._apply_pending()
        elif self._local_load == media_id:
            self._local_load = None
            self.state = SyncState.SYNCED
            snapshot = self.snapshot()
            self._set_anchor(snapshot)
            await self._broadcast(VideoInfoMessage.from_state(snapshot))
        else:
            logger.debug("忽略过期的 ready | media=%s", media_id)

    async def _on_state_changed(self, playing: bool) -> None:
        if self._suppressed or self.state is not SyncState.SYNCED:
            return
        self._set_anchor(self.snapshot())
        await self._broadcast(PlayMessage() if playing else PauseMessage())

    async def _on_rate_changed(self, rate: float) -> None:
        if self._suppressed or self.state is not SyncState.SYNCED:
            return
        self._set_anchor(self.snapshot())
        await self._broadcast(SpeedChangeMessage(rate=rate))

    def _on_player_error(self, error: Exception) -> None:
        self._fail(error)

    # ── 发送 ──────────────────────────────────────────────────────────

    async def _broadcast(self, message: WireModel) -> None:
        if self.endpoint.peer_count == 0:
            return
        await self._send(message)

    async def _send(self, message: WireModel, to: str | None = None) -> None:
        try:
            await self.endpoint.send(message, to=to)
        except (NotConnectedError, TransportError) as e:
            # 不重试
            logger.warning("同步消息发送失败 | type=%s | %s", getattr(message, "type", "?"), e)
