"""
copimon.core.exceptions
~~~~~~~~~~~~~~~~~~~~~~~

同步引擎的异常分类。

- ``ValidationError`` —— 文本为空/缺失/超长，调用方可自行修正，立即返回给提交者。
- ``StorageError``    —— 持久化写入失败，可重试；绝不能在此情况下广播未落盘的条目。
- ``TransportError``  —— 连接级故障，驱动客户端的重连/退避流程，不会终止进程。
- ``ProtocolError``   —— 入站消息格式错误，默认记录日志后丢弃。
"""
from __future__ import annotations


class CopimonError(Exception):
    """所有业务异常的基类。

    Attributes:
        message: 人类可读的错误描述。
        retryable: 调用方稍后重试是否可能成功。
    """

    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(CopimonError):
    """提交的文本不合法。"""


class StorageError(CopimonError):
    """持久化层读写失败。"""

    retryable = True


class TransportError(CopimonError):
    """连接建立失败或连接中断。"""

    retryable = True


class ProtocolError(CopimonError):
    """无法解析的流式消息。"""
