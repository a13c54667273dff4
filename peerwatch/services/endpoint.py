"""
peerwatch.services.endpoint
~~~~~~~~~~~~~~~~~~~~~~~~~~~

会话端点 —— 本端身份 + 以 peer_id 为键的连接表 + 房间号。

``SessionEndpoint`` 由房间控制器创建并显式注入到同步引擎与聊天复制器，
不存在进程级单例。对外事件:

- ``data(message, user, peer_id)``  收到对端消息（信封已拆开）
- ``connect(peer_id)``              新对端链路可用
- ``close(peer_id)``                对端链路断开

就绪信号是一个只会被 resolve / reject 一次的 future：
``open()`` 完成会合后 resolve，失败时 reject；就绪前 ``send()`` 直接失败，不排队。
"""
from __future__ import annotations

import asyncio
import secrets
from typing import Any

from pydantic import BaseModel, ValidationError

from peerwatch.core.config import settings
from peerwatch.core.errors import NotConnectedError, PeerWatchError, TransportError
from peerwatch.core.events import Callback, EventHub
from peerwatch.core.logging import get_logger, peer_id_ctx_var
from peerwatch.schemas.messages import PeerUser, to_wire
from peerwatch.transport.base import Role, SessionHandle, Transport

logger = get_logger(__name__)

ENDPOINT_EVENTS: tuple[str, ...] = ("data", "connect", "close")


def generate_room_id() -> str:
    """生成一个新的房间号（6 位十六进制）。"""
    return secrets.token_hex(3)


def default_user() -> PeerUser:
    return PeerUser(name=f"User {secrets.token_hex(5)}")


def _coerce_user(raw: Any) -> PeerUser | None:
    if raw is None or isinstance(raw, PeerUser):
        return raw
    try:
        return PeerUser.model_validate(raw)
    except ValidationError:
        return None


class SessionEndpoint:
    """一个房间内的本端会话。

    Attributes:
        transport: 建立会话所用的传输实现。
        user: 本端身份，随每条消息一起发送。
        room_prefix: 传输层房间名前缀。
        room_id: 当前房间号（``open()`` 之后可用）。
        role: ``host`` 或 ``guest``。
        peers: peer_id → 对端身份（可能为 None）。
    """

    def __init__(
        self,
        transport: Transport,
        user: PeerUser | None = None,
        room_prefix: str | None = None,
    ) -> None:
        self.transport = transport
        self.user: PeerUser = user or default_user()
        self.room_prefix: str = settings.ROOM_PREFIX if room_prefix is None else room_prefix
        self.room_id: str | None = None
        self.role: Role | None = None
        self.peers: dict[str, PeerUser | None] = {}

        self._events = EventHub(*ENDPOINT_EVENTS)
        self._handle: SessionHandle | None = None
        self._ready: asyncio.Future[None] | None = None
        self._closed = False

    # ── 状态 ──────────────────────────────────────────────────────────

    @property
    def room_name(self) -> str | None:
        """传输层房间名（前缀 + 房间号）。"""
        if self.room_id is None:
            return None
        return f"{self.room_prefix}{self.room_id}"

    @property
    def peer_id(self) -> str | None:
        return self._handle.peer_id if self._handle else None

    @property
    def is_ready(self) -> bool:
        """会合已完成且会话未关闭。"""
        return (
            self._handle is not None
            and not self._closed
            and self._ready is not None
            and self._ready.done()
            and self._ready.exception() is None
        )

    @property
    def peer_count(self) -> int:
        return len(self.peers)

    # ── 生命周期 ──────────────────────────────────────────────────────

    async def open(self, room_id: str, role: Role) -> None:
        """通过传输层会合到 ``room_id``。

        Raises:
            TransportError: 信令失败。
            RoomFullError: 房间已满。
            RuntimeError: 端点已经打开过（一个端点只对应一个房间）。
        """
        if self._ready is not None:
            raise RuntimeError("SessionEndpoint 只能打开一次")
        self._ready = asyncio.get_running_loop().create_future()
        self.room_id = room_id
        self.role = role

        try:
            handle = await self.transport.establish(self.room_name, role, self.user)
        except PeerWatchError as e:
            self._reject(e)
            raise

        if self._closed:
            await handle.close()
            error = TransportError("会合完成前端点已关闭")
            self._reject(error)
            raise error

        self._handle = handle
        handle.on("peer_connected", self._on_peer_connected)
        handle.on("peer_disconnected", self._on_peer_disconnected)
        handle.on("message", self._on_message)

        # 派发任务继承 peer_id 上下文
        token = peer_id_ctx_var.set(handle.peer_id)
        try:
            handle.start()
        finally:
            peer_id_ctx_var.reset(token)

        self._ready.set_result(None)
        logger.info(
            "会话已就绪 | room=%s | role=%s | peer=%s | members=%d",
            self.room_id, role, handle.peer_id, len(handle.members),
        )

    def _reject(self, error: Exception) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(error)
            # 无人 await 时也算已读取
            self._ready.exception()

    async def wait_ready(self) -> None:
        """等待会合完成。

        Raises:
            NotConnectedError: 尚未调用 ``open()``。
            TransportError / RoomFullError: 会合失败。
        """
        if self._ready is None:
            raise NotConnectedError("会话尚未打开")
        await self._ready

    async def close(self) -> None:
        """释放所有对端链路。可重复调用。"""
        if self._closed:
            return
        self._closed = True
        self._reject(NotConnectedError("会话已关闭"))

        handle, self._handle = self._handle, None
        self.peers.clear()
        self._events.clear()
        if handle is not None:
            await handle.close()
            logger.info("会话已关闭 | room=%s", self.room_id)

    # ── 订阅 / 发送 ───────────────────────────────────────────────────

    def on(self, kind: str, callback: Callback) -> None:
        """注册事件回调（``data`` / ``connect`` / ``close``）。

        Raises:
            UnsupportedEventError: 未知事件类型。
        """
        self._events.on(kind, callback)

    async def send(self, message: BaseModel | dict[str, Any], to: str | None = None) -> None:
        """发送消息给 ``to``，为 None 时发给所有已连接对端。

        Raises:
            NotConnectedError: 会话未就绪，或目标对端（或任何对端）未连接。
        """
        if not self.is_ready:
            raise NotConnectedError("会话尚未就绪，请先等待 wait_ready()")
        if to is not None and to not in self.peers:
            raise NotConnectedError(f"对端未连接: {to}")
        if to is None and not self.peers:
            raise NotConnectedError("没有已连接的对端")

        payload = to_wire(message) if isinstance(message, BaseModel) else message
        envelope = {"data": payload, "user": to_wire(self.user)}
        await self._handle.send(envelope, to=to)

    # ── 传输层事件 ────────────────────────────────────────────────────

    async def _on_peer_connected(self, peer_id: str, user: Any = None) -> None:
        self.peers[peer_id] = _coerce_user(user)
        logger.info("对端已连接 | room=%s | peer=%s | 在线: %d", self.room_id, peer_id, self.peer_count)
        await self._events.emit("connect", peer_id)

    async def _on_peer_disconnected(self, peer_id: str) -> None:
        if peer_id not in self.peers:
            return
        del self.peers[peer_id]
        logger.info("对端已断开 | room=%s | peer=%s | 在线: %d", self.room_id, peer_id, self.peer_count)
        await self._events.emit("close", peer_id)

    async def _on_message(self, peer_id: str, payload: Any) -> None:
        if not isinstance(payload, dict) or "data" not in payload:
            logger.warning("收到无信封的消息，已丢弃 | peer=%s", peer_id)
            return
        user = _coerce_user(payload.get("user"))
        if user is not None and peer_id in self.peers:
            self.peers[peer_id] = user
        await self._events.emit("data", payload["data"], user, peer_id)
