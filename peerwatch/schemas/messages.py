"""
peerwatch.schemas.messages
~~~~~~~~~~~~~~~~~~~~~~~~~~

对端之间交换的消息模型（线上协议）。

所有消息都是带 ``type`` 判别字段的 JSON 对象，字段名使用 camelCase
（``mediaId`` / ``positionSeconds``），Python 侧用 snake_case 访问。
发送时统一走 ``to_wire()``，接收时统一走 ``parse_message()``。

发出的每条消息会再包一层信封::

    {"data": {...消息...}, "user": {"name": "..."}}
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """线上模型基类：不可变、允许按字段名或别名构造。"""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")


# ── 共享状态 ──────────────────────────────────────────────────────────

class PlaybackState(WireModel):
    """所有对端需要收敛到一致的播放状态。"""

    media_id: str = Field(default="", alias="mediaId", description="媒体 ID，空串表示未加载")
    position_seconds: float = Field(default=0.0, ge=0, alias="positionSeconds")
    rate: float = Field(default=1.0, gt=0, description="播放速率")
    paused: bool = Field(default=True, description="是否暂停")


class PeerUser(WireModel):
    """随信封一起发送的用户身份。"""

    name: str = Field(..., description="显示昵称")


class ChatMessage(WireModel):
    """单条聊天消息，创建后不可变。"""

    sender: str
    content: str
    timestamp: datetime = Field(default_factory=_utcnow)


# ── 播放同步消息 ──────────────────────────────────────────────────────

class VideoInfoMessage(WireModel):
    """加载该媒体并采用该状态。"""

    type: Literal["video_info"] = "video_info"
    media_id: str = Field(..., min_length=1, alias="mediaId")
    position_seconds: float = Field(default=0.0, ge=0, alias="positionSeconds")
    rate: float = Field(default=1.0, gt=0)
    paused: bool = True

    @classmethod
    def from_state(cls, state: PlaybackState) -> VideoInfoMessage:
        return cls(
            media_id=state.media_id,
            position_seconds=state.position_seconds,
            rate=state.rate,
            paused=state.paused,
        )

    def to_state(self) -> PlaybackState:
        return PlaybackState(
            media_id=self.media_id,
            position_seconds=self.position_seconds,
            rate=self.rate,
            paused=self.paused,
        )


class RequestVideoInfoMessage(WireModel):
    type: Literal["request_video_info"] = "request_video_info"


class PlayMessage(WireModel):
    type: Literal["play"] = "play"


class PauseMessage(WireModel):
    type: Literal["pause"] = "pause"


class SeekMessage(WireModel):
    type: Literal["seek"] = "seek"
    position_seconds: float = Field(..., ge=0, alias="positionSeconds")


class SpeedChangeMessage(WireModel):
    type: Literal["speedChange"] = "speedChange"
    rate: float = Field(..., gt=0)


# ── 聊天消息 ──────────────────────────────────────────────────────────

class ChatPostMessage(WireModel):
    """一条新聊天。``timestamp`` 缺省时由接收方按到达时间补齐。"""

    type: Literal["chat"] = "chat"
    sender: str
    content: str
    timestamp: datetime | None = None


class ChatHistoryMessage(WireModel):
    """新对端连接时发送的聊天记录快照。"""

    type: Literal["chat_history"] = "chat_history"
    messages: list[ChatMessage] = Field(default_factory=list)


SyncMessage = Union[
    VideoInfoMessage,
    RequestVideoInfoMessage,
    PlayMessage,
    PauseMessage,
    SeekMessage,
    SpeedChangeMessage,
]
ChatWireMessage = Union[ChatPostMessage, ChatHistoryMessage]

Message = Annotated[
    Union[
        VideoInfoMessage,
        RequestVideoInfoMessage,
        PlayMessage,
        PauseMessage,
        SeekMessage,
        SpeedChangeMessage,
        ChatPostMessage,
        ChatHistoryMessage,
    ],
    Field(discriminator="type"),
]

SYNC_TYPES: frozenset[str] = frozenset(
    {"video_info", "request_video_info", "play", "pause", "seek", "speedChange"},
)
CHAT_TYPES: frozenset[str] = frozenset({"chat", "chat_history"})

_message_adapter: TypeAdapter[Message] = TypeAdapter(Message)


def parse_message(data: Any) -> Message:
    """把收到的 JSON 对象解析为消息模型。

    Raises:
        pydantic.ValidationError: 类型未知或字段不合法。
    """
    return _message_adapter.validate_python(data)


def to_wire(message: BaseModel) -> dict[str, Any]:
    """把消息模型转为可 JSON 序列化的字典（camelCase 键）。"""
    return message.model_dump(mode="json", by_alias=True, exclude_none=True)
