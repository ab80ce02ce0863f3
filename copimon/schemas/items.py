"""
copimon.schemas.items
~~~~~~~~~~~~~~~~~~~~~

剪贴板条目及 REST 接口相关的 Pydantic 请求/响应模型。
"""
from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class Item(BaseModel):
    """一条剪贴板条目。入口处创建一次，此后不可变。

    线上格式为 ``{id, text, ts}``，``ts`` 为毫秒级 Unix 时间戳。
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="全局唯一、进程内单调递增的条目 ID")
    text: str = Field(..., min_length=1, description="条目文本")
    ts: int = Field(..., description="服务端接收时间（毫秒时间戳）")

    @property
    def created_at(self) -> datetime:
        """接收时间的 UTC ``datetime`` 表示。"""
        return datetime.fromtimestamp(self.ts / 1000, tz=timezone.utc)


class ClipboardRequest(BaseModel):
    """``POST /rooms/{room_id}/clipboard`` 请求体。

    ``text`` 允许缺失，由入口统一校验并返回 ``400 {error}``。
    """

    text: str | None = Field(default=None, description="要发布的文本")


class ClipboardResponse(BaseModel):
    """创建成功的响应体。"""

    ok: bool = Field(default=True)
    item: Item


class HistoryResponse(BaseModel):
    """房间历史，最新的在前。"""

    items: list[Item] = Field(default_factory=list)


class RoomInfo(BaseModel):
    """房间摘要信息。"""

    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(..., alias="roomId", description="房间唯一标识")
    subscribers: int = Field(..., description="当前在线订阅者数")


class RoomListResponse(BaseModel):
    """活跃房间列表。"""

    rooms: list[RoomInfo] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """统一错误响应体。"""

    error: str
