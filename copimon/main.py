"""
copimon.main
~~~~~~~~~~~~

FastAPI 应用入口 —— 注册路由、挂载中间件、定义生命周期。
"""
from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from copimon.api import rooms, ws
from copimon.core.config import settings
from copimon.core.exceptions import StorageError, ValidationError
from copimon.core.logging import get_logger, request_id_ctx_var, setup_logging
from copimon.db import close_mongo, connect_mongo, get_database
from copimon.db.item_repository import ItemRepository
from copimon.schemas.items import ErrorResponse
from copimon.services.dispatcher import BroadcastDispatcher
from copimon.services.room_registry import RoomRegistry

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)

_REQUEST_ID_HEADER = "X-Request-ID"


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期钩子：连接 MongoDB，并把注册表/分发器挂载到 ``app.state``。"""
    # ── 启动 ──
    await connect_mongo()
    app.state.repo = ItemRepository(get_database())
    app.state.registry = RoomRegistry()
    app.state.dispatcher = BroadcastDispatcher(app.state.registry, app.state.repo)
    logger.info(
        "🚀 copimon 中继已启动 | env=%s | port=%d | log_level=%s",
        settings.ENVIRONMENT,
        settings.PORT,
        settings.effective_log_level,
    )
    yield
    # ── 关闭 ──
    await close_mongo()
    logger.info("👋 copimon 中继已关闭")


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

app: FastAPI = FastAPI(
    title=settings.PROJECT_NAME,
    description="剪贴板房间实时同步中继",
    version=settings.VERSION,
    debug=settings.debug,
    lifespan=lifespan,
)

# ── CORS 中间件 ───────────────────────────────────────────────────────
if settings.allow_cors_all_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )


@app.middleware("http")
async def request_id_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """透传或生成 ``X-Request-ID``，写入日志上下文并回写到响应头。"""
    request_id = request.headers.get(_REQUEST_ID_HEADER) or uuid.uuid4().hex
    token = request_id_ctx_var.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_ctx_var.reset(token)
    response.headers[_REQUEST_ID_HEADER] = request_id
    return response


# ── 路由挂载 ──────────────────────────────────────────────────────────
app.include_router(rooms.router, tags=["Rooms"])
app.include_router(ws.router, tags=["WebSocket"])


# ── 全局异常处理器 ────────────────────────────────────────────────────

def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=message).model_dump(),
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """文本缺失/为空/超长 → 400。"""
    return _error(status.HTTP_400_BAD_REQUEST, exc.message)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(
    request: Request, exc: RequestValidationError,
) -> JSONResponse:
    """请求体无法解析（非 JSON、text 非字符串等）同样视为 400。"""
    logger.debug("请求体校验失败: %s %s -> %s", request.method, request.url.path, exc.errors())
    return _error(status.HTTP_400_BAD_REQUEST, "text is required")


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    """持久化失败 → 503，调用方可重试。"""
    return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc.message)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """捕获所有未处理异常，返回统一的 ``{error}`` 格式。"""
    logger.error("未捕获异常: %s %s -> %s", request.method, request.url, exc, exc_info=True)
    # 非 prod 环境返回详细错误信息，prod 环境隐藏内部细节
    detail = str(exc) if not settings.is_prod else "internal server error"
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, detail)


@app.get("/health", tags=["System"])
async def health_check() -> dict[str, bool]:
    """验证服务是否正常运行。"""
    return {"ok": True}


def run() -> None:
    """``copimon-server`` 命令入口。"""
    import uvicorn

    uvicorn.run(
        "copimon.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,  # 仅 dev 环境开启热重载
        log_level=settings.effective_log_level.lower(),
    )


if __name__ == "__main__":
    run()
