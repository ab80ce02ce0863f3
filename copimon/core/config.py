"""
copimon.core.config
~~~~~~~~~~~~~~~~~~~

集中式配置管理，基于 pydantic-settings 自动从 ``.env`` 文件加载。

支持多环境配置（dev / test / prod），加载顺序为:
  1. 环境变量（最高优先级）
  2. ``.env.{ENVIRONMENT}`` 环境专属文件
  3. ``.env`` 基础文件
  4. 字段默认值（最低优先级）

服务端使用 ``Settings``，同步客户端使用带 ``COPIMON_`` 前缀的 ``ClientSettings``。
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 读取当前环境标识（在 Settings 类定义之前，用于决定加载哪个 .env 文件）
_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")


class Settings(BaseSettings):
    """服务端配置对象，字段值按如下优先级加载：环境变量 > .env.{env} > .env > 默认值。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="Copimon Relay", description="项目名称")
    VERSION: str = Field(default="0.1.0", description="版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="运行环境：dev / test / prod",
    )

    # ── 服务 ──────────────────────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0", description="服务监听地址")
    PORT: int = Field(default=3001, description="服务监听端口")
    LOG_LEVEL: str = Field(default="INFO", description="日志级别（可被环境属性覆盖）")

    # ── MongoDB ───────────────────────────────────────────────────────
    MONGO_URI: str = Field(
        default="mongodb://localhost:27017",
        description="MongoDB 连接串",
    )
    MONGO_DB_NAME: str = Field(default="copimon", description="数据库名称")
    MONGO_TIMEOUT_MS: int = Field(
        default=5_000, ge=1,
        description="选择 MongoDB 节点的超时时间（毫秒），超时视为存储不可用",
    )

    # ── 房间 / 条目 ───────────────────────────────────────────────────
    HISTORY_LIMIT: int = Field(
        default=100, ge=1,
        description="每个房间保留的最大条目数，超出后最旧的条目被淘汰",
    )
    MAX_TEXT_LENGTH: int = Field(
        default=200_000, ge=1,
        description="单条文本的最大字符数",
    )
    DEFAULT_ROOM_ID: str = Field(
        default="default",
        description="WebSocket 未携带 roomId 时使用的房间",
    )

    # ── WebSocket ─────────────────────────────────────────────────────
    WS_SEND_TIMEOUT: float = Field(
        default=5.0, gt=0,
        description="向单个订阅者推送一条消息的超时时间（秒）",
    )
    WS_REPORT_PROTOCOL_ERRORS: bool = Field(
        default=False,
        description="为 True 时向发送方回复 error 消息，否则静默丢弃格式错误的消息",
    )
    CORS_ORIGINS: list[str] = Field(
        default_factory=list,
        description="prod 环境允许的跨域来源（如浏览器扩展的 origin）",
    )

    # ── Pydantic Settings ─────────────────────────────────────────────
    # 先加载 .env.{env} 再加载 .env，前者优先级更高
    model_config = SettingsConfigDict(
        env_file=(f".env.{_CURRENT_ENV}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── 环境判断 ──────────────────────────────────────────────────────

    @property
    def is_prod(self) -> bool:
        """当前是否为生产环境。"""
        return self.ENVIRONMENT == "prod"

    @property
    def is_dev(self) -> bool:
        """当前是否为开发环境。"""
        return self.ENVIRONMENT == "dev"

    # ── 环境差异化行为 ────────────────────────────────────────────────

    @property
    def debug(self) -> bool:
        """是否开启 debug 模式。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def reload(self) -> bool:
        """是否开启热重载。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def effective_log_level(self) -> str:
        """根据环境自动推断日志级别。

        - dev  → INFO
        - test → DEBUG（方便排查测试失败）
        - prod → WARNING（减少噪音）

        如果环境变量中显式设置了 LOG_LEVEL，会覆盖此默认推断。
        """
        env_log = os.getenv("LOG_LEVEL")
        if env_log:
            return env_log
        return {
            "dev": "INFO",
            "test": "DEBUG",
            "prod": "WARNING",
        }.get(self.ENVIRONMENT, "INFO")

    @property
    def allow_cors_all_origins(self) -> bool:
        """是否允许所有 CORS 来源。非 prod 环境允许；prod 环境只放行 ``CORS_ORIGINS``。"""
        return not self.is_prod


class ClientSettings(BaseSettings):
    """同步客户端配置，环境变量统一使用 ``COPIMON_`` 前缀（如 ``COPIMON_ROOM_ID``）。"""

    SERVER_URL: str = Field(
        default="http://localhost:3001",
        description="中继服务地址（http/https，WebSocket 地址由此推导）",
    )
    ROOM_ID: str = Field(default="default", description="要加入的房间")
    RECONNECT_DELAY: float = Field(
        default=2.0, gt=0,
        description="连接失败后重连的固定退避时间（秒）",
    )
    CONNECT_TIMEOUT: float = Field(default=10.0, gt=0, description="WebSocket 握手超时（秒）")
    HTTP_TIMEOUT: float = Field(default=10.0, gt=0, description="REST 兜底请求超时（秒）")
    CACHE_LIMIT: int = Field(default=100, ge=1, description="本地缓存的最大条目数")
    LOG_BUFFER_SIZE: int = Field(default=200, ge=1, description="客户端日志环形缓冲大小")

    model_config = SettingsConfigDict(
        env_prefix="COPIMON_",
        env_file=(f".env.{_CURRENT_ENV}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """获取全局 Settings 单例（带缓存，避免重复解析 .env）。"""
    return Settings()


@lru_cache
def get_client_settings() -> ClientSettings:
    """获取客户端配置单例。"""
    return ClientSettings()


settings: Settings = get_settings()
