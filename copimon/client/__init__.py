"""
copimon.client
~~~~~~~~~~~~~~

房间同步客户端。
"""
from copimon.client.sync_client import (
    ConnectionState,
    ConnectionStatus,
    LogEntry,
    SyncClient,
    stream_url_for,
)
