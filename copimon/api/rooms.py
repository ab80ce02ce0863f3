"""
copimon.api.rooms
~~~~~~~~~~~~~~~~~

房间 REST 接口 —— 历史回看 + 请求/响应式发布入口。

端点:
  - ``GET  /rooms``                        → 获取已知房间列表
  - ``GET  /rooms/{room_id}/history``      → 最近 100 条条目（最新的在前）
  - ``POST /rooms/{room_id}/clipboard``    → 发布一条条目（落盘后广播）
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, status

from copimon.api.deps import get_dispatcher, get_registry, get_repository
from copimon.core.logging import get_logger
from copimon.db.item_repository import ItemRepository
from copimon.schemas.items import (
    ClipboardRequest,
    ClipboardResponse,
    ErrorResponse,
    HistoryResponse,
    RoomListResponse,
)
from copimon.services.dispatcher import BroadcastDispatcher
from copimon.services.room_registry import RoomRegistry

logger = get_logger(__name__)

router: APIRouter = APIRouter()


@router.get("/rooms", summary="获取已知房间列表", response_model=RoomListResponse)
async def list_rooms(registry: RoomRegistry = Depends(get_registry)) -> RoomListResponse:
    """返回本进程内已创建的房间及其在线订阅者数。"""
    return RoomListResponse(rooms=registry.list_rooms())


@router.get(
    "/rooms/{room_id}/history",
    summary="获取房间历史",
    response_model=HistoryResponse,
)
async def get_history(
    room_id: str,
    repo: ItemRepository = Depends(get_repository),
    registry: RoomRegistry = Depends(get_registry),
) -> HistoryResponse:
    """返回房间最近的条目，最新的在前。房间不存在时会自动创建。"""
    registry.get_room(room_id)
    items = await repo.recent(room_id)
    return HistoryResponse(items=items)


@router.post(
    "/rooms/{room_id}/clipboard",
    summary="发布剪贴板条目",
    status_code=status.HTTP_201_CREATED,
    response_model=ClipboardResponse,
    responses={
        400: {"model": ErrorResponse, "description": "text 缺失或为空"},
        503: {"model": ErrorResponse, "description": "持久化失败，可重试"},
    },
)
async def post_clipboard(
    room_id: str,
    body: ClipboardRequest,
    dispatcher: BroadcastDispatcher = Depends(get_dispatcher),
) -> ClipboardResponse:
    """落盘并广播一条新条目，返回创建的条目。

    ``ValidationError`` / ``StorageError`` 由全局异常处理器转换为
    ``400 {error}`` / ``503 {error}``。
    """
    item = await dispatcher.create_item(room_id, body.text)
    logger.info("REST 条目已发布 | room=%s | id=%s", room_id, item.id)
    return ClipboardResponse(item=item)
