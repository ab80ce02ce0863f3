"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 使用 mongomock-motor 作为内存 MongoDB，
用假连接替代真实 WebSocket，使单元测试可在无网络、无数据库环境下运行。
"""
from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Callable, Iterator
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")

from mongomock_motor import AsyncMongoMockClient  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from copimon.db.item_repository import ItemRepository  # noqa: E402


class FakeSubscriber:
    """记录收到的每条消息的订阅者句柄。"""

    def __init__(self, fail: bool = False, delay: float = 0.0) -> None:
        self.messages: list[dict[str, Any]] = []
        self.fail = fail
        self.delay = delay

    async def send_text(self, data: str) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("connection already closed")
        self.messages.append(json.loads(data))

    def of_type(self, message_type: str) -> list[dict[str, Any]]:
        return [m for m in self.messages if m["type"] == message_type]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """轮询直到条件成立，超时则测试失败。"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not reached before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture()
def mongo_db() -> Any:
    """每个测试独立的内存数据库。"""
    return AsyncMongoMockClient()["copimon_test"]


@pytest.fixture()
def repo(mongo_db: Any) -> ItemRepository:
    return ItemRepository(mongo_db, history_limit=100)


@pytest.fixture()
def app_client(mongo_db: Any) -> Iterator[TestClient]:
    """跑完整 lifespan 的 TestClient，MongoDB 连接被替换为内存数据库。"""
    from copimon.main import app

    with patch("copimon.main.connect_mongo", new_callable=AsyncMock), \
         patch("copimon.main.close_mongo", new_callable=AsyncMock), \
         patch("copimon.main.get_database", return_value=mongo_db):
        with TestClient(app) as client:
            yield client
