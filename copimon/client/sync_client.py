"""
copimon.client.sync_client
~~~~~~~~~~~~~~~~~~~~~~~~~~

同步客户端 —— 每个房间一个实例，嵌入在消费方应用中。

负责:
  - 维护到中继服务的唯一一条 WebSocket 连接（``disconnected → connecting → connected``）；
  - 连接断开后按固定退避时间重连，任意时刻最多只有一个待执行的重连定时器；
  - 本地缓存房间最近的条目（快照整体替换，``new_item`` 头插并按上限淘汰）；
  - 连接不可用时把待发送文本放入 FIFO 发送队列，通过 REST 兜底或重连后补发。

UI 等外部协作方只通过 ``get_cached_items`` / ``get_connection_status`` /
``submit_text`` / ``request_reconnect`` / ``get_logs`` 与客户端交互。
连接级错误从不以异常形式抛给 ``submit`` / ``flush`` 的调用方。
"""
from __future__ import annotations

import asyncio
import enum
import itertools
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable, Coroutine
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import quote

import httpx
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from copimon.core.config import ClientSettings, get_client_settings
from copimon.core.exceptions import ProtocolError, TransportError, ValidationError
from copimon.core.logging import get_logger
from copimon.schemas.items import Item
from copimon.schemas.protocol import (
    ErrorMessage,
    NewItemMessage,
    NewItemRequest,
    SnapshotMessage,
    decode_server_message,
    encode,
)

logger = get_logger(__name__)

# 握手/连接阶段可能出现的异常
_CONNECT_ERRORS = (OSError, WebSocketException, asyncio.TimeoutError)
# 在已建立的连接上发送时可能出现的异常
_SEND_ERRORS = (ConnectionClosed, OSError)


class StreamConnection(Protocol):
    """客户端使用的流连接接口，``websockets`` 的 ``ClientConnection`` 满足此协议。"""

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> Any: ...


Connector = Callable[[str], Awaitable[StreamConnection]]
ItemListener = Callable[[Item], None]


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class _Event(enum.Enum):
    CONNECT = "connect"
    HANDSHAKE_OK = "handshake_ok"
    LOST = "lost"


# (当前状态, 事件) → 新状态；表中没有的组合保持原状态
_TRANSITIONS: dict[tuple[ConnectionState, _Event], ConnectionState] = {
    (ConnectionState.DISCONNECTED, _Event.CONNECT): ConnectionState.CONNECTING,
    (ConnectionState.CONNECTED, _Event.CONNECT): ConnectionState.CONNECTING,
    (ConnectionState.CONNECTING, _Event.CONNECT): ConnectionState.CONNECTING,
    (ConnectionState.CONNECTING, _Event.HANDSHAKE_OK): ConnectionState.CONNECTED,
    (ConnectionState.CONNECTING, _Event.LOST): ConnectionState.DISCONNECTED,
    (ConnectionState.CONNECTED, _Event.LOST): ConnectionState.DISCONNECTED,
}


@dataclass(frozen=True)
class ConnectionStatus:
    state: ConnectionState
    last_error: str | None = None


@dataclass(frozen=True)
class LogEntry:
    ts: float
    level: str
    message: str


@dataclass(eq=False)
class PendingText:
    """发送队列中的一项。按对象身份出队，重复的相同文本互不影响。"""

    text: str
    tag: int
    queued_at: float = field(default_factory=time.time)


def stream_url_for(server_url: str, room_id: str) -> str:
    """由 http(s) 服务地址推导 WebSocket 地址: ``ws(s)://host/ws?roomId=...``。"""
    base = server_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/ws?roomId={quote(room_id, safe='')}"


def _is_rejection(response: httpx.Response) -> bool:
    """是否为中继对文本本身的拒绝：``400 {"error": ...}``。

    其余非 2xx（404、401、网关错误页等）都可能来自代理或错误的地址，按可重试失败处理。
    """
    if response.status_code != 400:
        return False
    try:
        body = response.json()
    except ValueError:
        return False
    return isinstance(body, dict) and isinstance(body.get("error"), str)


def _default_connector(timeout: float) -> Connector:
    async def _connect(url: str) -> StreamConnection:
        return await ws_connect(url, open_timeout=timeout)

    return _connect


class SyncClient:
    """房间同步客户端。

    Attributes:
        server_url: 中继服务地址。
        room_id: 房间唯一标识。
        reconnect_delay: 连接失败后的固定退避时间（秒）。
        cache_limit: 本地缓存的最大条目数。
    """

    def __init__(
        self,
        server_url: str | None = None,
        room_id: str | None = None,
        *,
        config: ClientSettings | None = None,
        connector: Connector | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        config = config or get_client_settings()
        self.server_url = server_url or config.SERVER_URL
        self.room_id = room_id or config.ROOM_ID
        self.reconnect_delay = config.RECONNECT_DELAY
        self.cache_limit = config.CACHE_LIMIT

        self._connector = connector or _default_connector(config.CONNECT_TIMEOUT)
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=config.HTTP_TIMEOUT)

        self._state = ConnectionState.DISCONNECTED
        self._last_error: str | None = None
        self._ws: StreamConnection | None = None
        self._attempt = 0
        self._closed = False

        self._items: list[Item] = []
        self._queue: deque[PendingText] = deque()
        self._tags = itertools.count(1)
        self._flushing = False
        self._flush_requested = False

        self._reader_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

        self._snapshot_received = asyncio.Event()
        self._listeners: list[ItemListener] = []
        self._logs: deque[LogEntry] = deque(maxlen=config.LOG_BUFFER_SIZE)

    # ── 外部协作接口 ──────────────────────────────────────────────────

    def get_cached_items(self) -> list[Item]:
        """本地缓存的条目副本，最新的在前。"""
        return list(self._items)

    def get_connection_status(self) -> ConnectionStatus:
        return ConnectionStatus(self._state, self._last_error)

    def get_logs(self) -> list[LogEntry]:
        return list(self._logs)

    def clear_logs(self) -> None:
        self._logs.clear()

    async def submit_text(self, text: str) -> None:
        await self.submit(text)

    async def request_reconnect(self) -> None:
        """立即重连，取消任何待执行的重连定时器。"""
        await self.connect()

    def add_listener(self, listener: ItemListener) -> None:
        """注册新条目回调；回调抛出的异常只记录日志。"""
        self._listeners.append(listener)

    async def wait_for_snapshot(self, timeout: float | None = None) -> bool:
        """等待当前连接收到快照，超时返回 False。"""
        try:
            await asyncio.wait_for(self._snapshot_received.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def pending(self) -> list[str]:
        """发送队列中尚未送达的文本（FIFO 顺序）。"""
        return [entry.text for entry in self._queue]

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def stream_url(self) -> str:
        return stream_url_for(self.server_url, self.room_id)

    # ── 生命周期 ──────────────────────────────────────────────────────

    async def __aenter__(self) -> SyncClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def connect(self) -> None:
        """发起一次连接尝试。更新的尝试会取代仍在进行中的旧尝试。

        失败不会抛出异常，而是转入 ``disconnected`` 并安排重连。
        """
        if self._closed:
            return
        self._cancel_reconnect()
        self._attempt += 1
        attempt = self._attempt
        await self._drop_connection()
        self._snapshot_received.clear()
        self._transition(_Event.CONNECT)
        self._log(logging.INFO, "正在连接 %s", self.stream_url)

        try:
            ws = await self._connector(self.stream_url)
        except _CONNECT_ERRORS as e:
            if attempt == self._attempt:
                self._on_connection_lost(TransportError(f"connect failed: {e}"))
            return

        if attempt != self._attempt or self._closed:
            # 已被更新的尝试取代
            with suppress(*_CONNECT_ERRORS):
                await ws.close()
            return

        self._ws = ws
        self._transition(_Event.HANDSHAKE_OK)
        self._log(logging.INFO, "已连接 | room=%s", self.room_id)
        self._reader_task = self._spawn(self._read_loop(ws))
        await self.flush()

    async def reconfigure(
        self, server_url: str | None = None, room_id: str | None = None,
    ) -> None:
        """配置变更后重连。切换房间时清空本地缓存，发送队列随之发往新房间。"""
        if room_id is not None and room_id != self.room_id:
            self._items = []
            self.room_id = room_id
        if server_url is not None:
            self.server_url = server_url
        await self.connect()

    async def close(self) -> None:
        """关闭连接并停止所有后台任务。队列中未送达的文本保留在 ``pending``。"""
        self._closed = True
        self._cancel_reconnect()
        await self._drop_connection()
        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current]
        for task in pending:
            task.cancel()
        for task in pending:
            with suppress(asyncio.CancelledError):
                await task
        self._state = ConnectionState.DISCONNECTED
        if self._owns_http:
            await self._http.aclose()

    # ── 状态机 ────────────────────────────────────────────────────────

    def _transition(self, event: _Event, error: str | None = None) -> None:
        new_state = _TRANSITIONS.get((self._state, event), self._state)
        if event is _Event.HANDSHAKE_OK:
            self._last_error = None
        if error is not None:
            self._last_error = error
        if new_state is not self._state:
            logger.debug("状态变更 | room=%s | %s → %s", self.room_id, self._state.value, new_state.value)
            self._state = new_state

    def _on_connection_lost(self, error: Exception | None) -> None:
        """``connecting|connected → disconnected``，并安排一次重连。"""
        self._ws = None
        message = str(error) if error is not None else "connection closed"
        self._transition(_Event.LOST, error=message)
        self._log(logging.WARNING, "连接断开: %s", message)
        if not self._closed:
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        """安排重连；新的定时器总是取代旧的。"""
        self._cancel_reconnect()
        self._reconnect_task = self._spawn(self._reconnect_later())

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _reconnect_later(self) -> None:
        await asyncio.sleep(self.reconnect_delay)
        self._reconnect_task = None
        await self.connect()

    async def _drop_connection(self) -> None:
        ws, self._ws = self._ws, None
        reader, self._reader_task = self._reader_task, None
        if ws is not None:
            with suppress(*_CONNECT_ERRORS):
                await ws.close()
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with suppress(asyncio.CancelledError):
                await reader

    async def _read_loop(self, ws: StreamConnection) -> None:
        error: Exception | None = None
        try:
            async for raw in ws:
                await self._handle_raw(raw)
        except ConnectionClosed as e:
            error = TransportError(f"connection closed: {e}")
        except OSError as e:
            error = TransportError(f"connection error: {e}")
        if ws is self._ws:
            self._on_connection_lost(error)

    # ── 入站消息 ──────────────────────────────────────────────────────

    async def _handle_raw(self, raw: str | bytes) -> None:
        try:
            message = decode_server_message(raw)
        except ProtocolError as e:
            self._log(logging.DEBUG, "丢弃无法解析的消息: %s", e)
            return

        if isinstance(message, ErrorMessage):
            self._log(logging.WARNING, "服务端报告错误: %s", message.error)
            return
        if message.room_id != self.room_id:
            self._log(logging.DEBUG, "丢弃其他房间的消息 | room=%s", message.room_id)
            return

        if isinstance(message, SnapshotMessage):
            self.apply_snapshot(message)
        elif isinstance(message, NewItemMessage):
            self.apply_new_item(message.item)
        await self.flush()

    def apply_snapshot(self, snapshot: SnapshotMessage) -> None:
        """用快照整体替换本地缓存。重复应用同一快照结果不变。"""
        self._items = list(snapshot.items[: self.cache_limit])
        self._snapshot_received.set()
        self._log(logging.INFO, "收到快照 | %d 条", len(self._items))

    def apply_new_item(self, item: Item) -> None:
        """头插新条目并按上限淘汰；已缓存的 ID 忽略。"""
        if any(cached.id == item.id for cached in self._items):
            return
        self._items = [item, *self._items][: self.cache_limit]
        for listener in list(self._listeners):
            try:
                listener(item)
            except Exception:
                logger.exception("条目回调异常 | room=%s", self.room_id)

    # ── 出站发送 ──────────────────────────────────────────────────────

    async def submit(self, text: str) -> None:
        """发送一条文本。

        已连接且队列为空时直接通过流发送（不等待确认）；否则入队并触发一次排空，
        排空按 FIFO 顺序走 REST 兜底，因此新文本不会越过更早的待发文本。

        Raises:
            ValidationError: 文本为空。
        """
        if not isinstance(text, str) or not text:
            raise ValidationError("text is required")

        if self._state is ConnectionState.CONNECTED and self._ws is not None and not self._queue:
            try:
                await self._ws.send(encode(NewItemRequest(type="new_item", text=text)))
                return
            except _SEND_ERRORS as e:
                self._on_connection_lost(TransportError(f"send failed: {e}"))

        self._queue.append(PendingText(text=text, tag=next(self._tags)))
        self._log(logging.INFO, "文本已入队 | 待发送 %d 条", len(self._queue))

        if (
            self._state is ConnectionState.DISCONNECTED
            and not self.reconnect_pending
            and not self._closed
        ):
            # 顺带发起一次连接尝试
            self._spawn(self.connect())
        await self.flush()

    async def flush(self) -> None:
        """排空发送队列。同一时刻只有一个排空在执行，重入的调用直接返回。

        已连接时按 FIFO 经流逐条发送；否则按 FIFO 逐条走 REST，遇到第一次失败即停止，
        失败项及其后的项保留在队首等待下一次触发。
        """
        if self._flushing:
            self._flush_requested = True
            return
        self._flushing = True
        try:
            while True:
                self._flush_requested = False
                ws = self._ws
                if self._state is ConnectionState.CONNECTED and ws is not None:
                    await self._drain_over_stream(ws)
                else:
                    await self._drain_over_http()
                if not (
                    self._flush_requested
                    and self._queue
                    and self._state is ConnectionState.CONNECTED
                ):
                    break
        finally:
            self._flushing = False

    async def _drain_over_stream(self, ws: StreamConnection) -> None:
        sent = 0
        while self._queue:
            entry = self._queue[0]
            try:
                await ws.send(encode(NewItemRequest(type="new_item", text=entry.text)))
            except _SEND_ERRORS as e:
                if ws is self._ws:
                    self._on_connection_lost(TransportError(f"send failed: {e}"))
                break
            self._discard(entry)
            sent += 1
        if sent:
            self._log(logging.INFO, "队列经流发送 %d 条 | 剩余 %d 条", sent, len(self._queue))

    async def _drain_over_http(self) -> None:
        while self._queue:
            entry = self._queue[0]
            try:
                await self._post(entry.text)
            except httpx.HTTPStatusError as e:
                if _is_rejection(e.response):
                    # 中继自身的校验拒绝，该文本永远不会被接受
                    self._log(logging.ERROR, "REST 拒绝该条目，已丢弃 | status=%d", e.response.status_code)
                    self._discard(entry)
                    continue
                self._record_http_failure(e)
                break
            except httpx.HTTPError as e:
                self._record_http_failure(e)
                break
            self._discard(entry)
            self._log(logging.INFO, "REST 兜底送达 | 剩余 %d 条", len(self._queue))

    async def _post(self, text: str) -> None:
        url = f"{self.server_url.rstrip('/')}/rooms/{quote(self.room_id, safe='')}/clipboard"
        response = await self._http.post(url, json={"text": text})
        response.raise_for_status()

    def _record_http_failure(self, error: httpx.HTTPError) -> None:
        self._last_error = f"fallback delivery failed: {error!r}"
        self._log(logging.WARNING, "REST 兜底失败，保留队列 | 待发送 %d 条", len(self._queue))

    def _discard(self, entry: PendingText) -> None:
        with suppress(ValueError):
            self._queue.remove(entry)

    # ── 工具 ──────────────────────────────────────────────────────────

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _log(self, level: int, msg: str, *args: object) -> None:
        logger.log(level, "[room=%s] " + msg, self.room_id, *args)
        self._logs.append(LogEntry(time.time(), logging.getLevelName(level), msg % args))
