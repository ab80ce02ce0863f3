"""
copimon.db
~~~~~~~~~~

MongoDB 连接生命周期。

进程内只持有一个 ``AsyncIOMotorClient``：lifespan 启动时 ``connect_mongo()``
建立连接并 ping 一次，关闭时 ``close_mongo()`` 释放；仓库通过 ``get_database()``
拿到数据库句柄。
"""
from __future__ import annotations

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from copimon.core.config import settings
from copimon.core.exceptions import StorageError
from copimon.core.logging import get_logger

logger = get_logger(__name__)

_client: AsyncIOMotorClient | None = None


def _mask_uri(uri: str) -> str:
    """隐藏连接串中的凭证部分，``mongodb+srv`` 与多主机写法同样适用。"""
    scheme, sep, rest = uri.partition("://")
    if not sep:
        return uri
    credentials, at, hosts = rest.rpartition("@")
    if not at:
        return uri
    user = credentials.split(":", 1)[0]
    return f"{scheme}://{user}:***@{hosts}"


async def connect_mongo() -> None:
    """创建连接并 ping 目标数据库。

    Raises:
        StorageError: 在 ``MONGO_TIMEOUT_MS`` 内无法连上 MongoDB。
    """
    global _client
    client: AsyncIOMotorClient = AsyncIOMotorClient(
        settings.MONGO_URI,
        serverSelectionTimeoutMS=settings.MONGO_TIMEOUT_MS,
        appname=settings.PROJECT_NAME,
    )
    try:
        await client[settings.MONGO_DB_NAME].command("ping")
    except PyMongoError as e:
        client.close()
        logger.error("MongoDB 连接失败 | uri=%s | %s", _mask_uri(settings.MONGO_URI), e)
        raise StorageError(f"cannot reach MongoDB: {e}") from e

    _client = client
    logger.info(
        "MongoDB 已连接 | uri=%s | db=%s",
        _mask_uri(settings.MONGO_URI),
        settings.MONGO_DB_NAME,
    )


async def close_mongo() -> None:
    global _client
    client, _client = _client, None
    if client is not None:
        client.close()
        logger.info("MongoDB 连接已关闭")


def get_database() -> AsyncIOMotorDatabase:
    """当前连接上的 ``MONGO_DB_NAME`` 数据库。

    Raises:
        RuntimeError: ``connect_mongo()`` 尚未成功执行。
    """
    if _client is None:
        raise RuntimeError("MongoDB is not connected; call connect_mongo() first")
    return _client[settings.MONGO_DB_NAME]
