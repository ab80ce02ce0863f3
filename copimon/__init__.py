"""
copimon
~~~~~~~

剪贴板实时同步服务 —— 同一房间内的多个客户端共享一个有序的文本条目流。

服务端: ``copimon.main``（FastAPI 应用）。
客户端: ``copimon.client.SyncClient``（每个房间一个连接状态机）。
"""

__version__ = "0.1.0"
