"""
tests.test_item_repository
~~~~~~~~~~~~~~~~~~~~~~~~~~

ItemRepository 持久化层单元测试（内存 MongoDB）。
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

from copimon.core.exceptions import StorageError, ValidationError
from copimon.db.item_repository import ItemRepository


def _oid_at(moment: datetime, n: int) -> ObjectId:
    """构造时间部分为 ``moment`` 的 ObjectId（模拟时钟回拨后生成的 ID）。"""
    return ObjectId(f"{int(moment.timestamp()):08x}{n:016x}")


class TestAppend:
    """测试条目写入。"""

    @pytest.mark.asyncio
    async def test_append_returns_persisted_item(self, repo: ItemRepository) -> None:
        """写入后返回带 ID 与时间戳的条目，且能被立即读到。"""
        item = await repo.append("default", "hello")

        assert item.text == "hello"
        assert item.id
        assert item.ts > 0
        assert await repo.recent("default") == [item]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["", None, 42])
    async def test_invalid_text_rejected(self, repo: ItemRepository, text: object) -> None:
        """空文本或非字符串应抛出 ValidationError，且不落盘。"""
        with pytest.raises(ValidationError):
            await repo.append("default", text)  # type: ignore[arg-type]

        assert await repo.recent("default") == []

    @pytest.mark.asyncio
    async def test_text_length_limit(self, mongo_db) -> None:
        """超过长度上限的文本被拒绝。"""
        repo = ItemRepository(mongo_db, max_text_length=5)

        await repo.append("r", "12345")
        with pytest.raises(ValidationError):
            await repo.append("r", "123456")

    @pytest.mark.asyncio
    async def test_storage_failure_raises_storage_error(self, repo: ItemRepository) -> None:
        """MongoDB 写入失败应以可重试的 StorageError 抛出，而不是被吞掉。"""
        collection = MagicMock()
        collection.create_index = AsyncMock()
        collection.find_one = AsyncMock(return_value=None)
        collection.insert_one = AsyncMock(side_effect=PyMongoError("disk full"))
        repo._collection = collection

        with pytest.raises(StorageError) as exc_info:
            await repo.append("default", "hello")

        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_trim_failure_keeps_item(self, repo: ItemRepository) -> None:
        """淘汰旧条目失败不影响已落盘条目的返回。"""
        repo._delete_overflow = AsyncMock(side_effect=PyMongoError("timeout"))  # type: ignore[method-assign]

        item = await repo.append("default", "kept")

        assert item.text == "kept"


class TestRecent:
    """测试历史查询与上限淘汰。"""

    @pytest.mark.asyncio
    async def test_unknown_room_returns_empty(self, repo: ItemRepository) -> None:
        """没有历史的房间返回空列表，不报错。"""
        assert await repo.recent("nobody-here") == []

    @pytest.mark.asyncio
    async def test_newest_first(self, repo: ItemRepository) -> None:
        """结果按接收顺序倒序排列。"""
        for text in ["a", "b", "c"]:
            await repo.append("r", text)

        assert [item.text for item in await repo.recent("r")] == ["c", "b", "a"]

    @pytest.mark.asyncio
    async def test_cap_keeps_most_recent_hundred(self, repo: ItemRepository) -> None:
        """向新房间写入 150 条后只保留最近的 100 条，且 ID 不重复。"""
        for i in range(150):
            await repo.append("busy", f"item-{i}")

        items = await repo.recent("busy", 100)

        assert len(items) == 100
        assert [item.text for item in items] == [f"item-{i}" for i in range(149, 49, -1)]
        assert len({item.id for item in items}) == 100
        assert await repo.count("busy") == 100

    @pytest.mark.asyncio
    async def test_limit(self, repo: ItemRepository) -> None:
        """limit 截取最新的若干条；limit <= 0 返回空列表。"""
        for i in range(5):
            await repo.append("r", str(i))

        assert [item.text for item in await repo.recent("r", 2)] == ["4", "3"]
        assert await repo.recent("r", 0) == []

    @pytest.mark.asyncio
    async def test_rooms_are_isolated(self, repo: ItemRepository) -> None:
        """不同房间的历史互不影响。"""
        await repo.append("a", "only-a")
        await repo.append("b", "only-b")

        assert [item.text for item in await repo.recent("a")] == ["only-a"]
        assert [item.text for item in await repo.recent("b")] == ["only-b"]

    @pytest.mark.asyncio
    async def test_concurrent_appends_are_consistent(self, repo: ItemRepository) -> None:
        """同一房间并发写入后，历史条数正确且没有重复 ID。"""
        results = await asyncio.gather(*(repo.append("r", f"t{i}") for i in range(20)))

        items = await repo.recent("r")
        assert len(items) == 20
        assert {item.id for item in items} == {item.id for item in results}


class TestReceiptOrder:
    """测试接收顺序不受系统时钟影响。"""

    @pytest.mark.asyncio
    async def test_clock_going_backwards_keeps_order(self, repo: ItemRepository) -> None:
        """时钟回拨 10 秒后写入的条目仍排在最前，ts 不倒退。"""
        later = datetime(2024, 5, 1, 12, 0, 10, tzinfo=timezone.utc)
        earlier = later - timedelta(seconds=10)

        with patch("copimon.db.item_repository.datetime") as clock, \
             patch("copimon.db.item_repository.ObjectId",
                   side_effect=[_oid_at(later, 1), _oid_at(earlier, 2)]):
            clock.now.side_effect = [later, earlier]
            first = await repo.append("r", "first")
            second = await repo.append("r", "second")

        assert second.ts == first.ts
        assert [item.text for item in await repo.recent("r")] == ["second", "first"]

    @pytest.mark.asyncio
    async def test_order_survives_new_repository_instance(self, mongo_db) -> None:
        """重启后（新的仓库实例）继续沿用库中已有的接收序号。"""
        before = ItemRepository(mongo_db)
        await before.append("r", "a")
        await before.append("r", "b")

        after = ItemRepository(mongo_db)
        rewound = datetime.now(timezone.utc) - timedelta(minutes=5)
        with patch("copimon.db.item_repository.datetime") as clock, \
             patch("copimon.db.item_repository.ObjectId", return_value=_oid_at(rewound, 3)):
            clock.now.return_value = rewound
            await after.append("r", "c")

        assert [item.text for item in await after.recent("r")] == ["c", "b", "a"]
