"""
peerwatch.main
~~~~~~~~~~~~~~

中继服务器入口：``uvicorn peerwatch.main:app``。

中继只做两件事：按房间名会合、在房间成员之间转发数据帧。
它不解析也不保存播放状态，收敛完全由各客户端的同步引擎完成。
"""
from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from peerwatch.api import relay_ws, rooms
from peerwatch.core.config import settings
from peerwatch.core.logging import get_logger, setup_logging
from peerwatch.core.rate_limit import limiter
from peerwatch.schemas.api_response import ApiResponse
from peerwatch.services.relay import RelaySystem

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """每个 worker 持有自己的房间表，随进程启动创建、退出时丢弃。"""
    app.state.relay_system = RelaySystem()
    logger.info(
        "🚀 中继已启动 | env=%s | capacity=%d | log_level=%s",
        settings.ENVIRONMENT, settings.ROOM_CAPACITY, settings.effective_log_level,
    )
    yield
    logger.info("👋 中继已关闭 | 剩余房间: %d", len(app.state.relay_system.list_rooms()))


app: FastAPI = FastAPI(
    title=settings.PROJECT_NAME,
    description="PeerWatch 会合与转发中继",
    version=settings.VERSION,
    debug=settings.debug,
    lifespan=lifespan,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# prod 只放行只读的房间查询；WebSocket 不受 CORS 约束
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.allow_cors_all_origins else [],
    allow_credentials=settings.allow_cors_all_origins,
    allow_methods=["*"] if settings.allow_cors_all_origins else ["GET"],
    allow_headers=["*"],
)

app.include_router(rooms.router, prefix="/api", tags=["Rooms"])
app.include_router(relay_ws.router, tags=["Relay"])


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    """REST 接口的兜底错误：统一返回 ``ApiResponse.fail``，prod 不暴露异常内容。"""
    logger.error("未处理的异常 | %s %s | %s", request.method, request.url.path, exc, exc_info=True)
    msg = "服务器内部错误" if settings.is_prod else str(exc)
    return JSONResponse(status_code=500, content=ApiResponse.fail(msg=msg).model_dump())


@app.get("/health", tags=["System"])
async def health() -> dict:
    return {
        "status": "ok",
        "environment": settings.ENVIRONMENT,
        "version": settings.VERSION,
        "rooms": len(app.state.relay_system.list_rooms()),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "peerwatch.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,
        log_level=settings.effective_log_level.lower(),
    )
