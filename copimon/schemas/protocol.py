"""
copimon.schemas.protocol
~~~~~~~~~~~~~~~~~~~~~~~~

WebSocket 流式协议（JSON 文本帧）。

服务端 → 客户端:
  - ``{"type": "snapshot", "roomId": ..., "items": [...]}`` —— 每次新订阅发送一次
  - ``{"type": "new_item", "roomId": ..., "item": {...}}`` —— 每条被接受的条目
  - ``{"type": "error", "error": ...}`` —— 仅在开启协议错误回报时发送

客户端 → 服务端:
  - ``{"type": "new_item", "text": ...}`` —— 请求创建条目

所有入站帧都只经过 ``decode_client_message`` / ``decode_server_message`` 这一步解码，
解码失败统一抛出 ``ProtocolError``，由调用方决定丢弃还是回报。
"""
from __future__ import annotations

from typing import Annotated, Literal, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from copimon.core.exceptions import ProtocolError
from copimon.schemas.items import Item


class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SnapshotMessage(_Message):
    """房间最近历史的完整快照。"""

    type: Literal["snapshot"] = "snapshot"
    room_id: str = Field(..., alias="roomId")
    items: list[Item] = Field(default_factory=list)


class NewItemMessage(_Message):
    """房间内新增的一条条目。"""

    type: Literal["new_item"] = "new_item"
    room_id: str = Field(..., alias="roomId")
    item: Item


class ErrorMessage(_Message):
    """协议/存储错误回报。"""

    type: Literal["error"] = "error"
    error: str


class NewItemRequest(_Message):
    """客户端请求创建条目。"""

    type: Literal["new_item"]
    text: str = Field(..., min_length=1)


ServerMessage = Annotated[
    Union[SnapshotMessage, NewItemMessage, ErrorMessage],
    Field(discriminator="type"),
]

_server_adapter: TypeAdapter[ServerMessage] = TypeAdapter(ServerMessage)


def encode(message: _Message) -> str:
    """序列化为线上 JSON（使用 ``roomId`` 等别名）。"""
    return message.model_dump_json(by_alias=True)


def decode_client_message(raw: str | bytes) -> NewItemRequest:
    """解析客户端发来的一帧。

    Raises:
        ProtocolError: 非 JSON、类型未知或 ``text`` 缺失/为空。
    """
    try:
        return NewItemRequest.model_validate_json(raw)
    except pydantic.ValidationError as exc:
        raise ProtocolError(f"malformed client message: {exc.error_count()} error(s)") from exc


def decode_server_message(raw: str | bytes) -> SnapshotMessage | NewItemMessage | ErrorMessage:
    """解析服务端推送的一帧。

    Raises:
        ProtocolError: 非 JSON 或结构不符合任何已知消息。
    """
    try:
        return _server_adapter.validate_json(raw)
    except pydantic.ValidationError as exc:
        raise ProtocolError(f"malformed server message: {exc.error_count()} error(s)") from exc
