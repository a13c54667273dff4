"""
peerwatch.schemas.relay
~~~~~~~~~~~~~~~~~~~~~~~

中继服务器相关的 Pydantic 模型：REST 响应数据 + WebSocket 帧。

帧协议（JSON，``kind`` 为判别字段）:

- 服务端 → 客户端: ``members`` / ``peer_joined`` / ``peer_left`` / ``data`` / ``error``
- 客户端 → 服务端: ``hello`` / ``data``
"""
from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from peerwatch.schemas.messages import PeerUser


class RoomInfoData(BaseModel):
    """房间摘要信息数据类型"""

    room_name: str = Field(..., description="传输层房间名（含前缀）")
    online_count: int = Field(..., description="已宣告在线的成员数")


# ── 客户端 → 服务端 ───────────────────────────────────────────────────

class HelloFrame(BaseModel):
    """通过容量检查后向房间宣告自己。"""

    kind: Literal["hello"] = "hello"
    user: PeerUser | None = None


class ClientDataFrame(BaseModel):
    """转发给指定成员（``to``）或房间内所有其他成员。"""

    kind: Literal["data"] = "data"
    to: str | None = None
    payload: Any


ClientFrame = Annotated[Union[HelloFrame, ClientDataFrame], Field(discriminator="kind")]
client_frame_adapter: TypeAdapter[ClientFrame] = TypeAdapter(ClientFrame)


# ── 服务端 → 客户端 ───────────────────────────────────────────────────

class MembersFrame(BaseModel):
    kind: Literal["members"] = "members"
    self_id: str = Field(..., alias="self")
    members: list[str]

    model_config = ConfigDict(populate_by_name=True)


class PeerJoinedFrame(BaseModel):
    kind: Literal["peer_joined"] = "peer_joined"
    peer: str
    user: PeerUser | None = None


class PeerLeftFrame(BaseModel):
    kind: Literal["peer_left"] = "peer_left"
    peer: str


class ServerDataFrame(BaseModel):
    kind: Literal["data"] = "data"
    from_id: str = Field(..., alias="from")
    payload: Any

    model_config = ConfigDict(populate_by_name=True)


class ErrorFrame(BaseModel):
    kind: Literal["error"] = "error"
    detail: str


ServerFrame = Annotated[
    Union[MembersFrame, PeerJoinedFrame, PeerLeftFrame, ServerDataFrame, ErrorFrame],
    Field(discriminator="kind"),
]
server_frame_adapter: TypeAdapter[ServerFrame] = TypeAdapter(ServerFrame)
