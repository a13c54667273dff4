"""
peerwatch.api.relay_ws
~~~~~~~~~~~~~~~~~~~~~~

WebSocket 会合 + 转发端点。

提供 ``/ws/rooms/{room_name}`` 端点，对端通过房间名会合。

帧协议:
  - 连接后服务端下发 ``members{self, members}``
  - 客户端完成容量检查后发送 ``hello{user}``，其他成员收到 ``peer_joined``
  - ``data{to?, payload}`` 转发给指定成员或房间内其他所有成员，
    接收方收到 ``data{from, payload}``
  - 断开后其他成员收到 ``peer_left``
"""
from __future__ import annotations

import anyio
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from peerwatch.core.config import settings
from peerwatch.core.logging import get_logger, peer_id_ctx_var
from peerwatch.core.rate_limit import FrameRateLimiter
from peerwatch.schemas.relay import ClientDataFrame, ErrorFrame, HelloFrame, client_frame_adapter
from peerwatch.services.relay import RelaySystem

logger = get_logger(__name__)

router: APIRouter = APIRouter()

# 宣告时房间已满
ROOM_FULL_CLOSE_CODE = 4409


@router.websocket("/ws/rooms/{room_name}")
async def websocket_room_endpoint(websocket: WebSocket, room_name: str) -> None:
    """WebSocket 会合端点。同一房间内的已宣告成员之间互相转发数据帧。

    Args:
        websocket: FastAPI WebSocket 连接对象。
        room_name: 传输层房间名（含前缀）。
    """
    system: RelaySystem = websocket.app.state.relay_system
    room = system.get_room(room_name)
    peer_id = await room.connect(websocket)
    token = peer_id_ctx_var.set(peer_id)
    frame_limiter = FrameRateLimiter(max_frames=settings.RELAY_MAX_FRAMES)
    logger.info("成员连接 | room=%s | 在线: %d", room_name, room.online_count)

    try:
        while True:
            raw: str = await websocket.receive_text()

            # 限流检查：超速的帧直接丢弃并提示
            if not frame_limiter.is_allowed(peer_id):
                await websocket.send_text(
                    ErrorFrame(detail="发送速度太快，该帧已丢弃").model_dump_json(),
                )
                continue

            try:
                frame = client_frame_adapter.validate_json(raw)
            except ValidationError as e:
                logger.warning("无效帧 | room=%s | %s", room_name, e.errors()[:1])
                await websocket.send_text(ErrorFrame(detail="无效帧").model_dump_json())
                continue

            if isinstance(frame, HelloFrame):
                if not await room.announce(peer_id, frame.user):
                    await websocket.close(code=ROOM_FULL_CLOSE_CODE, reason="room full")
                    break
                logger.info("成员已宣告 | room=%s | 在线: %d", room_name, room.online_count)
            elif isinstance(frame, ClientDataFrame):
                await room.forward(peer_id, frame.payload, to=frame.to)

    except WebSocketDisconnect:
        pass  # 正常断开
    except Exception as e:
        logger.error("WebSocket 异常: %s | room=%s", e, room_name, exc_info=True)
    finally:
        # 连接任务被取消时也要把下线通知发完
        with anyio.CancelScope(shield=True):
            await room.disconnect(peer_id)
        frame_limiter.remove_client(peer_id)
        system.release(room_name)
        logger.info("成员断开 | room=%s | 在线: %d", room_name, room.online_count)
        peer_id_ctx_var.reset(token)
