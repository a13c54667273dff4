"""
peerwatch.schemas
~~~~~~~~~~~~~~~~~
线上消息模型与中继服务器的请求/响应模型。
"""
from peerwatch.schemas.api_response import ApiResponse
from peerwatch.schemas.messages import (
    ChatHistoryMessage,
    ChatMessage,
    ChatPostMessage,
    PauseMessage,
    PeerUser,
    PlaybackState,
    PlayMessage,
    RequestVideoInfoMessage,
    SeekMessage,
    SpeedChangeMessage,
    VideoInfoMessage,
    parse_message,
    to_wire,
)
from peerwatch.schemas.relay import RoomInfoData

# 解析泛型 ApiResponse 的前向引用
ApiResponse.model_rebuild()
