"""
copimon.db.item_repository
~~~~~~~~~~~~~~~~~~~~~~~~~~

剪贴板条目持久化仓库 —— 封装 MongoDB ``clipboard_items`` 集合。

每条条目一个文档（扁平设计），按房间分区。每个房间最多保留
``HISTORY_LIMIT`` 条，写入后立即淘汰最旧的条目。
同一房间的写入由进程内的房间锁串行化，每条写入分配一个房间内递增的
``seq`` 作为接收顺序，``recent`` 按 ``seq`` 倒序返回，不受系统时钟回拨影响。
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import TypedDict

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from copimon.core.config import settings
from copimon.core.exceptions import StorageError, ValidationError
from copimon.core.logging import get_logger
from copimon.schemas.items import Item

logger = get_logger(__name__)

# 集合名称
_COLLECTION_NAME = "clipboard_items"

# 最新的在前（按接收序号）
_NEWEST_FIRST = [("seq", -1)]


class ItemDocument(TypedDict):
    """代表 MongoDB 中 clipboard_items 集合的单条记录"""
    _id: ObjectId
    room_id: str
    text: str
    seq: int
    ts: int
    created_at: datetime


def _to_item(doc: ItemDocument) -> Item:
    return Item(id=str(doc["_id"]), text=doc["text"], ts=doc["ts"])


class ItemRepository:
    """剪贴板条目持久化仓库。

    Attributes:
        db: MongoDB 数据库实例。
        history_limit: 每个房间保留的最大条目数。
        max_text_length: 单条文本的最大字符数。
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        history_limit: int | None = None,
        max_text_length: int | None = None,
    ) -> None:
        self.db = db
        self.history_limit = history_limit or settings.HISTORY_LIMIT
        self.max_text_length = max_text_length or settings.MAX_TEXT_LENGTH
        self._collection = db[_COLLECTION_NAME]
        self._indexes_created = False
        self._room_locks: dict[str, asyncio.Lock] = {}
        # 每个房间最近一次写入的 (seq, ts)，首次访问时从库中最新文档恢复
        self._cursors: dict[str, tuple[int, int]] = {}

    def _lock_for(self, room_id: str) -> asyncio.Lock:
        lock = self._room_locks.get(room_id)
        if lock is None:
            lock = self._room_locks[room_id] = asyncio.Lock()
        return lock

    async def _ensure_indexes(self) -> None:
        """确保索引已创建（惰性，首次操作时执行一次）。"""
        if self._indexes_created:
            return
        # 复合索引：按房间分区 + 按接收顺序倒序
        await self._collection.create_index(
            [("room_id", 1), *_NEWEST_FIRST],
            name="idx_room_seq",
            unique=True,
        )
        self._indexes_created = True
        logger.debug("clipboard_items 索引已就绪")

    def validate_text(self, text: object) -> str:
        """校验文本：必须是非空字符串且不超过长度上限。

        Raises:
            ValidationError: 文本缺失、为空或超长。
        """
        if not isinstance(text, str) or not text:
            raise ValidationError("text is required")
        if len(text) > self.max_text_length:
            raise ValidationError(
                f"text exceeds {self.max_text_length} characters",
            )
        return text

    async def _cursor_for(self, room_id: str) -> tuple[int, int]:
        cursor = self._cursors.get(room_id)
        if cursor is None:
            newest = await self._collection.find_one(
                {"room_id": room_id}, {"seq": 1, "ts": 1}, sort=_NEWEST_FIRST,
            )
            cursor = (newest["seq"], newest["ts"]) if newest else (0, 0)
            self._cursors[room_id] = cursor
        return cursor

    async def append(self, room_id: str, text: str) -> Item:
        """持久化一条新条目并返回。写入完成前不会返回，失败时抛出异常。

        Args:
            room_id: 房间唯一标识。
            text: 条目文本。

        Returns:
            已落盘的 ``Item``。

        Raises:
            ValidationError: 文本不合法。
            StorageError: MongoDB 写入失败（可重试）。
        """
        text = self.validate_text(text)
        async with self._lock_for(room_id):
            now = datetime.now(timezone.utc)
            try:
                await self._ensure_indexes()
                last_seq, last_ts = await self._cursor_for(room_id)
                seq = last_seq + 1
                ts = max(int(now.timestamp() * 1000), last_ts)
                doc: ItemDocument = {
                    "_id": ObjectId(),
                    "room_id": room_id,
                    "text": text,
                    "seq": seq,
                    "ts": ts,
                    "created_at": now,
                }
                await self._collection.insert_one(doc)
            except PyMongoError as e:
                logger.error("条目写入失败 | room=%s | %s", room_id, e)
                raise StorageError(f"failed to persist item: {e}") from e
            self._cursors[room_id] = (seq, ts)
            await self._trim(room_id)
        item = _to_item(doc)
        logger.debug("条目已写入 | room=%s | id=%s", room_id, item.id)
        return item

    async def _trim(self, room_id: str) -> None:
        """删除超出保留上限的最旧条目。

        条目此时已落盘，淘汰失败只记录日志，留待下一次写入时再清理。
        """
        try:
            await self._delete_overflow(room_id)
        except PyMongoError as e:
            logger.warning("淘汰旧条目失败 | room=%s | %s", room_id, e)

    async def _delete_overflow(self, room_id: str) -> None:
        cursor = (
            self._collection
            .find({"room_id": room_id}, {"_id": 1, "seq": 1})
            .sort(_NEWEST_FIRST)
            .skip(self.history_limit)
        )
        stale = [doc["_id"] for doc in await cursor.to_list(length=None)]
        if stale:
            await self._collection.delete_many({"_id": {"$in": stale}})
            logger.debug("淘汰旧条目 | room=%s | count=%d", room_id, len(stale))

    async def recent(self, room_id: str, limit: int | None = None) -> list[Item]:
        """获取指定房间最新的 ``limit`` 条条目（最新的在前）。

        房间没有历史时返回空列表，不会报错。

        Raises:
            StorageError: MongoDB 查询失败。
        """
        limit = self.history_limit if limit is None else min(limit, self.history_limit)
        if limit <= 0:
            return []
        try:
            await self._ensure_indexes()
            cursor = (
                self._collection
                .find({"room_id": room_id}, {"_id": 1, "text": 1, "seq": 1, "ts": 1})
                .sort(_NEWEST_FIRST)
                .limit(limit)
            )
            docs = await cursor.to_list(length=limit)
        except PyMongoError as e:
            logger.error("历史查询失败 | room=%s | %s", room_id, e)
            raise StorageError(f"failed to load history: {e}") from e
        return [_to_item(doc) for doc in docs]

    async def count(self, room_id: str) -> int:
        """获取指定房间当前保留的条目数。"""
        try:
            return await self._collection.count_documents({"room_id": room_id})
        except PyMongoError as e:
            raise StorageError(f"failed to count items: {e}") from e
