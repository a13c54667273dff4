"""
peerwatch.services.chat_replicator
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间内的聊天记录：只追加的日志，尽力复制到所有对端。

- 本地 ``post`` 先写本地日志，再广播 ``chat``
- 收到 ``chat`` 直接追加（不去重，不排序，谁先到谁在前）
- 新对端上线时，若本地日志非空，把完整日志作为 ``chat_history`` 发给它
- 收到 ``chat_history`` 时只有本地日志为空才采用，避免覆盖已有内容
"""
from __future__ import annotations

from datetime import datetime, timezone

from peerwatch.core.errors import NotConnectedError, TransportError
from peerwatch.core.logging import get_logger
from peerwatch.schemas.messages import (
    ChatHistoryMessage,
    ChatMessage,
    ChatPostMessage,
    ChatWireMessage,
)
from peerwatch.services.endpoint import SessionEndpoint

logger = get_logger(__name__)


class ChatReplicator:
    def __init__(self, endpoint: SessionEndpoint, sender: str | None = None) -> None:
        self.endpoint = endpoint
        self.sender: str = sender or endpoint.user.name
        self._log: list[ChatMessage] = []

    @property
    def messages(self) -> list[ChatMessage]:
        """本地日志的副本（按到达顺序）。"""
        return list(self._log)

    def set_sender(self, name: str) -> None:
        """修改之后发出消息的显示名；已有消息不变。"""
        self.sender = name

    async def post(self, content: str) -> ChatMessage:
        """追加一条本地消息并广播。

        Raises:
            NotConnectedError: 会话尚未就绪。
        """
        if not self.endpoint.is_ready:
            raise NotConnectedError("会话尚未就绪，无法发送聊天消息")

        message = ChatMessage(
            sender=self.sender,
            content=content,
            timestamp=datetime.now(timezone.utc),
        )
        self._log.append(message)

        if self.endpoint.peer_count:
            wire = ChatPostMessage(
                sender=message.sender,
                content=message.content,
                timestamp=message.timestamp,
            )
            try:
                await self.endpoint.send(wire)
            except (NotConnectedError, TransportError) as e:
                logger.warning("聊天消息发送失败 | %s", e)
        return message

    async def handle_message(self, message: ChatWireMessage, peer_id: str) -> None:
        if isinstance(message, ChatPostMessage):
            self._log.append(
                ChatMessage(
                    sender=message.sender,
                    content=message.content,
                    timestamp=message.timestamp or datetime.now(timezone.utc),
                )
            )
        elif isinstance(message, ChatHistoryMessage):
            if self._log:
                logger.debug("本地已有聊天记录，忽略 chat_history | peer=%s", peer_id)
                return
            self._log = list(message.messages)
            logger.info("已采用对端聊天记录 | peer=%s | 条数: %d", peer_id, len(self._log))

    async def on_peer_connected(self, peer_id: str) -> None:
        if not self._log:
            return
        try:
            await self.endpoint.send(ChatHistoryMessage(messages=list(self._log)), to=peer_id)
        except (NotConnectedError, TransportError) as e:
            logger.warning("聊天记录同步失败 | peer=%s | %s", peer_id, e)
