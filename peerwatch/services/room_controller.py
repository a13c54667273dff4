"""
peerwatch.services.room_controller
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间生命周期 —— 创建 / 加入房间，并把会话端点接到同步引擎与聊天复制器上。

- ``create_room()``        → 新房间号，以 host 身份打开
- ``join_room(room_id)``   → 以 guest 身份加入，满员抛 ``RoomFullError``
- ``open(room_id)``        → 有房间号就加入，加入失败回退到创建新房间
- ``open_from_url(url)``   → 从分享链接的查询参数里取房间号再 ``open``

每个房间对应一组新的 端点 / 引擎 / 聊天，切换房间时旧的一组先关闭。
收到的 ``data`` 按消息类型分发给引擎或聊天；
任何角色上有新对端连接，都同时通知两者。
"""
from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pydantic import ValidationError

from peerwatch.core.config import settings
from peerwatch.core.errors import PeerWatchError, RoomFullError, TransportError
from peerwatch.core.logging import get_logger
from peerwatch.core.profile import ProfileStore
from peerwatch.player.base import Player
from peerwatch.schemas.messages import CHAT_TYPES, SYNC_TYPES, PeerUser, parse_message
from peerwatch.services.chat_replicator import ChatReplicator
from peerwatch.services.endpoint import SessionEndpoint, default_user, generate_room_id
from peerwatch.services.sync_engine import SyncEngine
from peerwatch.transport.base import Role, Transport

logger = get_logger(__name__)


class RoomController:
    """一个客户端的房间入口。

    Attributes:
        transport: 传输层实现。
        player: 本地播放器（由调用方负责 ``start()``）。
        profile: 昵称存储；None 表示不持久化昵称。
        user: 本端身份。
        endpoint / engine / chat: 当前房间的组件，未进入房间时为 None。
    """

    def __init__(
        self,
        transport: Transport,
        player: Player,
        *,
        user: PeerUser | None = None,
        profile: ProfileStore | None = None,
        room_prefix: str | None = None,
        settle_delay: float | None = None,
        drift_threshold: float | None = None,
        poll_interval: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.player = player
        self.profile = profile
        self.room_prefix = room_prefix
        self.user: PeerUser = user or self._initial_user()

        self._engine_options: dict[str, Any] = {
            "settle_delay": settle_delay,
            "drift_threshold": drift_threshold,
            "poll_interval": poll_interval,
            "clock": clock,
        }

        self.endpoint: SessionEndpoint | None = None
        self.engine: SyncEngine | None = None
        self.chat: ChatReplicator | None = None

    def _initial_user(self) -> PeerUser:
        if self.profile is not None:
            name = self.profile.load_name()
            if name:
                return PeerUser(name=name)
        return default_user()

    # ── 状态 ──────────────────────────────────────────────────────────

    @property
    def room_id(self) -> str | None:
        return self.endpoint.room_id if self.endpoint else None

    @property
    def role(self) -> Role | None:
        return self.endpoint.role if self.endpoint else None

    @property
    def is_open(self) -> bool:
        return self.endpoint is not None and self.endpoint.is_ready

    # ── 进入房间 ──────────────────────────────────────────────────────

    async def create_room(self) -> str:
        """创建新房间并以 host 身份打开。

        Raises:
            TransportError: 会合失败。
        """
        room_id = generate_room_id()
        await self._open_session(room_id, "host")
        return room_id

    async def join_room(self, room_id: str) -> None:
        """以 guest 身份加入已有房间。

        Raises:
            RoomFullError: 房间人数超出上限。
            TransportError: 信令失败。
        """
        await self._open_session(room_id, "guest")

    async def open(self, room_id: str | None = None) -> str:
        """有房间号就加入，加入失败则创建新房间；没有房间号直接创建。"""
        if not room_id:
            return await self.create_room()
        try:
            await self.join_room(room_id)
        except (TransportError, RoomFullError) as e:
            logger.warning("加入房间失败，改为创建新房间 | room=%s | %s", room_id, e)
            return await self.create_room()
        return room_id

    async def open_from_url(self, url: str) -> str:
        """从分享链接里读取房间号并打开。"""
        params = dict(parse_qsl(urlsplit(url).query))
        return await self.open(params.get(settings.ROOM_QUERY_PARAM))

    def share_url(self, base_url: str) -> str:
        """生成邀请链接：把当前房间号写进查询参数，保留其他参数。

        Raises:
            RuntimeError: 尚未进入房间。
        """
        if self.room_id is None:
            raise RuntimeError("尚未进入房间，无法生成分享链接")
        parts = urlsplit(base_url)
        query = [(k, v) for k, v in parse_qsl(parts.query) if k != settings.ROOM_QUERY_PARAM]
        query.append((settings.ROOM_QUERY_PARAM, self.room_id))
        return urlunsplit(parts._replace(query=urlencode(query)))

    async def _open_session(self, room_id: str, role: Role) -> None:
        if self.endpoint is not None:
            await self.close()

        endpoint = SessionEndpoint(self.transport, user=self.user, room_prefix=self.room_prefix)
        engine = SyncEngine(endpoint, self.player, **self._engine_options)
        chat = ChatReplicator(endpoint)
        endpoint.on("data", self._on_data)
        endpoint.on("connect", self._on_connect)
        self.endpoint, self.engine, self.chat = endpoint, engine, chat

        engine.start()
        try:
            await endpoint.open(room_id, role)
        except PeerWatchError:
            await self.close()
            raise
        logger.info("已进入房间 | room=%s | role=%s | user=%s", room_id, role, self.user.name)

    # ── 昵称 ──────────────────────────────────────────────────────────

    def set_display_name(self, name: str) -> None:
        """修改显示昵称：之后的消息都带新昵称，并写入资料文件。"""
        self.user = PeerUser(name=name)
        if self.endpoint is not None:
            self.endpoint.user = self.user
        if self.chat is not None:
            self.chat.set_sender(name)
        if self.profile is not None:
            self.profile.save_name(name)

    # ── 端点事件 ──────────────────────────────────────────────────────

    async def _on_data(self, data: Any, user: PeerUser | None, peer_id: str) -> None:
        try:
            message = parse_message(data)
        except ValidationError as e:
            logger.warning("丢弃无法解析的消息 | peer=%s | %d 处错误", peer_id, e.error_count())
            return

        if message.type in SYNC_TYPES and self.engine is not None:
            await self.engine.handle_message(message, peer_id)
        elif message.type in CHAT_TYPES and self.chat is not None:
            await self.chat.handle_message(message, peer_id)

    async def _on_connect(self, peer_id: str) -> None:
        if self.engine is not None:
            await self.engine.on_peer_connected(peer_id)
        if self.chat is not None:
            await self.chat.on_peer_connected(peer_id)

    # ── 关闭 ──────────────────────────────────────────────────────────

    async def close(self) -> None:
        """离开当前房间：先停引擎定时器，再关闭端点。可重复调用。"""
        engine, self.engine = self.engine, None
        endpoint, self.endpoint = self.endpoint, None
        self.chat = None
        if engine is not None:
            await engine.close()
        if endpoint is not None:
            await endpoint.close()
            logger.info("已离开房间 | room=%s", endpoint.room_id)
