"""
copimon.services.dispatcher
~~~~~~~~~~~~~~~~~~~~~~~~~~~

广播分发器 —— 先持久化、再扇出。

两个入口（REST 与 WebSocket）都通过 ``create_item`` 进入同一条路径:
``ItemRepository.append`` 落盘成功后才会调用 ``publish``。

同一房间的 ``create_item`` 与 ``subscribe`` 在房间锁内执行，因此:
  - 所有订阅者看到的 ``new_item`` 顺序与落盘顺序一致；
  - 新订阅者的快照与之后的实时推送之间不会漏掉或重复条目。
"""
from __future__ import annotations

import asyncio

from copimon.core.config import settings
from copimon.core.logging import get_logger
from copimon.db.item_repository import ItemRepository
from copimon.schemas.items import Item
from copimon.schemas.protocol import NewItemMessage, SnapshotMessage, encode
from copimon.services.room_registry import RoomRegistry, Subscriber

logger = get_logger(__name__)


class BroadcastDispatcher:
    """房间级的持久化 + 广播协调者。

    Attributes:
        registry: 房间注册表。
        repo: 条目持久化仓库。
        send_timeout: 向单个订阅者推送的超时时间（秒）。
    """

    def __init__(
        self,
        registry: RoomRegistry,
        repo: ItemRepository,
        send_timeout: float | None = None,
    ) -> None:
        self.registry = registry
        self.repo = repo
        self.send_timeout = send_timeout or settings.WS_SEND_TIMEOUT
        self._room_locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, room_id: str) -> asyncio.Lock:
        lock = self._room_locks.get(room_id)
        if lock is None:
            lock = self._room_locks[room_id] = asyncio.Lock()
        return lock

    async def subscribe(self, room_id: str, connection: Subscriber) -> None:
        """登记订阅者；首次订阅时立即单独推送一次快照。

        Raises:
            StorageError: 读取历史失败（此时不会登记订阅）。
        """
        async with self._lock_for(room_id):
            if self.registry.is_subscribed(room_id, connection):
                return
            items = await self.repo.recent(room_id)
            self.registry.subscribe(room_id, connection)
            snapshot = SnapshotMessage(room_id=room_id, items=items)
            await self._send(connection, encode(snapshot), room_id)
        logger.info(
            "订阅者加入 | room=%s | 快照 %d 条 | 在线: %d",
            room_id, len(items), self.registry.get_room(room_id).online_count,
        )

    def unsubscribe(self, room_id: str, connection: Subscriber) -> None:
        """移除订阅者，可重复调用。"""
        self.registry.unsubscribe(room_id, connection)
        logger.info(
            "订阅者离开 | room=%s | 在线: %d",
            room_id, self.registry.get_room(room_id).online_count,
        )

    async def create_item(self, room_id: str, text: str) -> Item:
        """两个入口共用的路径：落盘后广播。

        Raises:
            ValidationError: 文本不合法。
            StorageError: 落盘失败，此时不会广播。
        """
        async with self._lock_for(room_id):
            item = await self.repo.append(room_id, text)
            await self.publish(room_id, item)
        return item

    async def publish(self, room_id: str, item: Item) -> None:
        """向房间内所有订阅者推送 ``new_item``。

        单个订阅者推送失败只记录日志并跳过，不影响其他订阅者；
        失败的连接留给它自己的关闭/异常流程去注销。
        """
        targets = self.registry.subscribers(room_id)
        if not targets:
            return
        payload = encode(NewItemMessage(room_id=room_id, item=item))
        await asyncio.gather(*(self._send(ws, payload, room_id) for ws in targets))

    async def _send(self, connection: Subscriber, payload: str, room_id: str) -> bool:
        try:
            await asyncio.wait_for(connection.send_text(payload), timeout=self.send_timeout)
        except Exception as e:
            logger.warning("推送失败，跳过该订阅者 | room=%s | %r", room_id, e)
            return False
        return True
