"""
peerwatch.core.logging
~~~~~~~~~~~~~~~~~~~~~~

stdlib logging 的一次性配置。模块里一律 ``logger = get_logger(__name__)``。

``peer_id_ctx_var`` 记录当前协程所属的本地 peer / 中继连接 ID，
由 ``_PeerIdFilter`` 注入到每条日志记录中。
"""
from __future__ import annotations

import logging
import sys
from contextvars import ContextVar

from peerwatch.core.config import settings

# 日志格式：时间 | 级别 | peer | 模块名 | 消息
_LOG_FORMAT: str = "%(asctime)s | %(levelname)-7s | %(peer_id)s | %(name)s | %(message)s"
_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"

peer_id_ctx_var: ContextVar[str] = ContextVar("peer_id", default="-")


class _PeerIdFilter(logging.Filter):
    """把 ``peer_id_ctx_var`` 的当前值写入日志记录。"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.peer_id = peer_id_ctx_var.get()
        return True


def setup_logging() -> None:
    """安装带 peer_id 的 stdout handler。中继启动时调用一次，客户端可按需调用。"""
    level = getattr(logging, settings.effective_log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(_PeerIdFilter())
    handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))

    logging.basicConfig(
        level=level,
        handlers=[handler],
        force=True,
    )

    # 第三方库只留警告
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """``logging.getLogger`` 的别名，保证所有模块走同一套 handler。"""
    return logging.getLogger(name)
