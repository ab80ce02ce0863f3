"""
copimon.api.ws
~~~~~~~~~~~~~~

WebSocket 流式接口 —— ``/ws?roomId=xyz``。

连接建立后立即订阅房间并收到一次 ``snapshot``；之后每条被接受的条目
都会以 ``new_item`` 推送。客户端发送 ``{"type": "new_item", "text": ...}``
即可发布条目，与 REST 入口走同一条落盘 + 广播路径。

格式错误的消息默认静默丢弃；``WS_REPORT_PROTOCOL_ERRORS`` 开启后改为向
发送方单独回复 ``{"type": "error", "error": ...}``，连接始终保持。
"""
from __future__ import annotations

import uuid

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from copimon.core.config import settings
from copimon.core.exceptions import ProtocolError, StorageError, ValidationError
from copimon.core.logging import get_logger, request_id_ctx_var
from copimon.schemas.protocol import ErrorMessage, decode_client_message, encode
from copimon.services.dispatcher import BroadcastDispatcher

logger = get_logger(__name__)

router: APIRouter = APIRouter()


async def _report(websocket: WebSocket, error: str) -> None:
    if not settings.WS_REPORT_PROTOCOL_ERRORS:
        return
    await websocket.send_text(encode(ErrorMessage(error=error)))


async def handle_frame(
    dispatcher: BroadcastDispatcher,
    websocket: WebSocket,
    room_id: str,
    raw: str | bytes,
) -> None:
    """处理一帧入站消息。单帧失败不会中断连接。"""
    try:
        request = decode_client_message(raw)
    except ProtocolError as e:
        logger.debug("丢弃格式错误的消息 | room=%s | %s", room_id, e)
        await _report(websocket, e.message)
        return

    try:
        item = await dispatcher.create_item(room_id, request.text)
    except (ValidationError, StorageError) as e:
        logger.warning("WS 条目未被接受 | room=%s | %s", room_id, e)
        await _report(websocket, e.message)
        return
    logger.debug("WS 条目已发布 | room=%s | id=%s", room_id, item.id)


@router.websocket("/ws")
async def websocket_room_endpoint(
    websocket: WebSocket,
    room_id: str | None = Query(default=None, alias="roomId"),
) -> None:
    """WebSocket 房间端点。未携带 ``roomId`` 时加入 ``DEFAULT_ROOM_ID``。"""
    token = request_id_ctx_var.set(f"ws-{uuid.uuid4().hex[:8]}")
    room_id = room_id or settings.DEFAULT_ROOM_ID
    dispatcher: BroadcastDispatcher = websocket.app.state.dispatcher

    try:
        await websocket.accept()
        try:
            await dispatcher.subscribe(room_id, websocket)
        except StorageError as e:
            logger.error("加载快照失败，关闭连接 | room=%s | %s", room_id, e)
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
            return

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                await handle_frame(dispatcher, websocket, room_id, raw)
        except WebSocketDisconnect:
            pass  # 正常断开
        except Exception as e:
            logger.error("WebSocket 异常: %s | room=%s", e, room_id, exc_info=True)
        finally:
            dispatcher.unsubscribe(room_id, websocket)
    finally:
        request_id_ctx_var.reset(token)
