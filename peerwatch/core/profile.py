"""
peerwatch.core.profile
~~~~~~~~~~~~~~~~~~~~~~

本地用户资料 —— 只持久化一个显示昵称。

昵称存放在 YAML 文件中固定的命名空间 ``peerwatch.profile`` 下，
加入聊天时读取、提交昵称时写入。对同步协议本身没有影响。
"""
from __future__ import annotations

from pathlib import Path

import yaml

from peerwatch.core.config import settings
from peerwatch.core.logging import get_logger

logger = get_logger(__name__)

PROFILE_NAMESPACE = "peerwatch.profile"
_NAME_KEY = "display_name"


class ProfileStore:
    """昵称读写。

    Attributes:
        path: YAML 文件路径（已展开 ``~``）。
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path: Path = Path(path or settings.PROFILE_FILE).expanduser()

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.warning("资料文件读取失败，按空资料处理: %s | path=%s", e, self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def load_name(self) -> str | None:
        """返回已保存的昵称，没有则返回 None。"""
        section = self._read().get(PROFILE_NAMESPACE)
        if not isinstance(section, dict):
            return None
        name = section.get(_NAME_KEY)
        return name if isinstance(name, str) and name else None

    def save_name(self, name: str) -> None:
        """保存昵称（保留文件中的其他命名空间）。"""
        data = self._read()
        section = data.get(PROFILE_NAMESPACE)
        if not isinstance(section, dict):
            section = {}
        section[_NAME_KEY] = name
        data[PROFILE_NAMESPACE] = section

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, allow_unicode=True)
        logger.debug("昵称已保存 | path=%s", self.path)
