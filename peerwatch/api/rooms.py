"""
peerwatch.api.rooms
~~~~~~~~~~~~~~~~~~~

中继房间 REST 接口 —— 只读查询。

路由前缀 ``/api``。

端点:
  - ``GET  /rooms``               → 获取活跃房间列表
  - ``GET  /rooms/{room_name}``   → 获取房间详情（不存在返回 code=404）
"""
from fastapi import APIRouter, Depends, Request

from peerwatch.api.deps import get_relay_system
from peerwatch.core.rate_limit import limiter
from peerwatch.schemas.api_response import ApiResponse
from peerwatch.schemas.relay import RoomInfoData
from peerwatch.services.relay import RelaySystem

router: APIRouter = APIRouter()


@router.get("/rooms", summary="获取活跃房间列表", response_model=ApiResponse[list[RoomInfoData]])
@limiter.limit("10/second")
async def list_rooms(request: Request, system: RelaySystem = Depends(get_relay_system)):
    """返回所有活跃的会合房间。"""
    return ApiResponse.ok(data=system.list_rooms())


@router.get("/rooms/{room_name}", summary="获取房间详情", response_model=ApiResponse[RoomInfoData])
@limiter.limit("5/second")
async def room_info(request: Request, room_name: str, system: RelaySystem = Depends(get_relay_system)):
    """返回指定房间的在线人数。与 WebSocket 端点不同，这里不会自动创建房间。

    Args:
        room_name: 传输层房间名（含前缀）。
    """
    room = system.find_room(room_name)
    if room is None:
        return ApiResponse.not_found(f"房间 {room_name}")
    return ApiResponse.ok(data=room.info())
