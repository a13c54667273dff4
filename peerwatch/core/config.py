"""
peerwatch.core.config
~~~~~~~~~~~~~~~~~~~~~

客户端与中继共用的配置（pydantic-settings）。

同一个字段可以来自四处，前面的覆盖后面的:
环境变量、``.env.{ENVIRONMENT}``、``.env``、字段默认值。
同步相关的时间参数（抑制窗口、漂移阈值、轮询间隔）都在这里调。
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 决定加载哪个 .env.{env}，必须在类定义前读取
_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")


class Settings(BaseSettings):
    """运行配置。用模块级的 ``settings``，不要自己实例化。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="PeerWatch Relay", description="中继服务名称（OpenAPI 标题）")
    VERSION: str = Field(default="0.1.0", description="中继版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="dev / test / prod",
    )

    # ── 房间 / 会话 ───────────────────────────────────────────────────
    RELAY_URL: str = Field(
        default="ws://127.0.0.1:8000",
        description="中继服务器的 WebSocket 基础地址",
    )
    ROOM_PREFIX: str = Field(
        default="observable-",
        description="房间在传输层上的名称前缀",
    )
    ROOM_CAPACITY: int = Field(
        default=2,
        ge=2,
        description="单个房间允许的最大同时在线人数（直连拓扑为 2）",
    )
    ROOM_QUERY_PARAM: str = Field(
        default="room",
        description="分享链接中携带房间号的查询参数名",
    )
    CONNECT_TIMEOUT: float = Field(
        default=10.0,
        gt=0,
        description="建立会话时等待成员列表的超时（秒）",
    )
    RELAY_MAX_FRAMES: int = Field(
        default=50,
        gt=0,
        description="中继服务器每个连接每秒允许转发的最大帧数",
    )

    # ── 播放同步 ──────────────────────────────────────────────────────
    SETTLE_DELAY: float = Field(
        default=0.5,
        ge=0,
        description="应用远端更新后的回声抑制窗口（秒）",
    )
    DRIFT_THRESHOLD: float = Field(
        default=1.0,
        gt=0,
        description="触发纠偏 seek 广播的最小位置差（秒）",
    )
    POLL_INTERVAL: float = Field(
        default=1.0,
        gt=0,
        description="本地播放位置轮询间隔（秒）",
    )

    # ── 本地资料 ──────────────────────────────────────────────────────
    PROFILE_FILE: str = Field(
        default="~/.peerwatch/profile.yaml",
        description="持久化昵称的 YAML 文件路径",
    )

    # ── 服务 ──────────────────────────────────────────────────────────
    HOST: str = Field(default="127.0.0.1", description="中继监听地址")
    PORT: int = Field(default=8000, description="中继监听端口")
    LOG_LEVEL: str = Field(default="INFO", description="日志级别；显式设置时优先于按环境推断的级别")

    # .env.{env} 排在 .env 前面，同名字段以它为准
    model_config = SettingsConfigDict(
        env_file=(f".env.{_CURRENT_ENV}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── 环境 ──────────────────────────────────────────────────────────

    @property
    def is_prod(self) -> bool:
        return self.ENVIRONMENT == "prod"

    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"

    @property
    def is_dev(self) -> bool:
        return self.ENVIRONMENT == "dev"

    @property
    def debug(self) -> bool:
        """FastAPI debug 开关，只在 dev 打开。"""
        return self.is_dev

    @property
    def reload(self) -> bool:
        """uvicorn 热重载，只在 dev 打开。"""
        return self.is_dev

    @property
    def effective_log_level(self) -> str:
        """实际使用的日志级别。

        没有显式配置 ``LOG_LEVEL`` 时按环境推断：
        dev 用 INFO，test 用 DEBUG（同步时序问题要看细节），prod 用 WARNING。
        """
        if "LOG_LEVEL" in self.model_fields_set:
            return self.LOG_LEVEL
        return _ENV_LOG_LEVELS.get(self.ENVIRONMENT, "INFO")

    @property
    def allow_cors_all_origins(self) -> bool:
        """房间查询接口在非 prod 环境对任意来源开放。"""
        return not self.is_prod


_ENV_LOG_LEVELS: dict[str, str] = {"dev": "INFO", "test": "DEBUG", "prod": "WARNING"}


@lru_cache
def get_settings() -> Settings:
    """进程内只解析一次配置。"""
    return Settings()


settings: Settings = get_settings()
