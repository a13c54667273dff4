"""
peerwatch.schemas.api_response
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

中继服务器 REST 接口的统一应答体。

.. code-block:: json

    {"code": 200, "data": {...}, "msg": "success"}
"""
from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """统一 JSON 应答体。

    Attributes:
        code: 业务状态码，200 表示成功，404 表示房间不存在。
        data: 实际业务数据（失败时为 None）。
        msg: 人类可读的状态消息。
    """

    code: int = Field(default=200, description="业务状态码")
    data: T | None = Field(default=None, description="业务数据")
    msg: str = Field(default="success", description="状态消息")

    @classmethod
    def ok(cls, data: T, msg: str = "success") -> ApiResponse[T]:
        return cls(code=200, data=data, msg=msg)

    @classmethod
    def fail(cls, msg: str = "error", code: int = 500, data: Any = None) -> ApiResponse[Any]:
        return cls(code=code, data=data, msg=msg)

    @classmethod
    def not_found(cls, what: str) -> ApiResponse[Any]:
        """房间等资源不存在时的快捷构造。"""
        return cls(code=404, data=None, msg=f"{what} 不存在")
