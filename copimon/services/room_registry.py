"""
copimon.services.room_registry
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间注册表 —— 维护 room_id → 在线订阅者集合的内存映射。

房间在首次被引用时惰性创建，从不显式销毁；订阅者集合为空是合法状态，
表示当前没有实时推送目标（持久化历史仍然存在）。
只有注册表可以增删订阅者。
"""
from __future__ import annotations

from typing import Protocol

from copimon.core.logging import get_logger
from copimon.schemas.items import RoomInfo

logger = get_logger(__name__)


class Subscriber(Protocol):
    """订阅者连接句柄，``fastapi.WebSocket`` 天然满足此协议。"""

    async def send_text(self, data: str) -> None: ...


class Room:
    """一个房间的实时订阅状态。

    Attributes:
        room_id: 房间唯一标识。
        subscribers: 当前在线的订阅者连接。
    """

    def __init__(self, room_id: str) -> None:
        self.room_id = room_id
        self.subscribers: set[Subscriber] = set()

    @property
    def online_count(self) -> int:
        """当前在线订阅者数。"""
        return len(self.subscribers)

    def info(self) -> RoomInfo:
        """返回房间摘要信息。"""
        return RoomInfo(room_id=self.room_id, subscribers=self.online_count)


class RoomRegistry:
    """房间注册表（每个进程一个实例，挂载在 ``app.state`` 上）。"""

    def __init__(self) -> None:
        self._rooms: dict[str, Room] = {}

    def get_room(self, room_id: str) -> Room:
        """获取指定房间，不存在则自动创建。"""
        room = self._rooms.get(room_id)
        if room is None:
            room = self._rooms[room_id] = Room(room_id)
            logger.info("房间已创建 | room=%s", room_id)
        return room

    def subscribe(self, room_id: str, connection: Subscriber) -> bool:
        """登记订阅者。对同一句柄幂等。

        Returns:
            是否为该连接在此房间的首次订阅。
        """
        room = self.get_room(room_id)
        if connection in room.subscribers:
            return False
        room.subscribers.add(connection)
        return True

    def is_subscribed(self, room_id: str, connection: Subscriber) -> bool:
        room = self._rooms.get(room_id)
        return room is not None and connection in room.subscribers

    def unsubscribe(self, room_id: str, connection: Subscriber) -> None:
        """移除订阅者。对已移除或从未登记的句柄安全。"""
        room = self._rooms.get(room_id)
        if room is not None:
            room.subscribers.discard(connection)

    def subscribers(self, room_id: str) -> list[Subscriber]:
        """当前订阅者的快照列表（推送期间集合变化不影响本次遍历）。"""
        room = self._rooms.get(room_id)
        return list(room.subscribers) if room is not None else []

    def list_rooms(self) -> list[RoomInfo]:
        """列出所有已知房间的摘要信息。"""
        return [room.info() for room in self._rooms.values()]
