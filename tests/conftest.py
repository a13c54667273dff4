"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 假时钟、进程内会合点、事件循环排空。

所有对端都跑在同一个事件循环里，通过 ``MemoryHub`` 会合，
无需网络即可完整跑通同步协议。
"""
from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")  # 激活 .env.test 配置

from peerwatch.transport.memory import MemoryHub  # noqa: E402


class FakeClock:
    """可手动拨动的单调时钟，播放器和同步引擎共用一个实例。"""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def hub() -> MemoryHub:
    return MemoryHub()


@pytest.fixture()
def flush() -> Callable[..., Awaitable[None]]:
    """让出事件循环若干轮，使队列中的投递和播放器回调全部跑完。"""

    async def _flush(rounds: int = 50) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    return _flush


@pytest.fixture()
def profile_path(tmp_path) -> str:
    return str(tmp_path / "profile.yaml")
