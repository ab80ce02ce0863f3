from fastapi import Request

from copimon.db.item_repository import ItemRepository
from copimon.services.dispatcher import BroadcastDispatcher
from copimon.services.room_registry import RoomRegistry


def get_dispatcher(request: Request) -> BroadcastDispatcher:
    return request.app.state.dispatcher


def get_registry(request: Request) -> RoomRegistry:
    return request.app.state.registry


def get_repository(request: Request) -> ItemRepository:
    return request.app.state.repo
