"""tether-spawn 异常类。

Launch- and handshake-time failures are not raised to the caller: the handle
stores them on ``handle.failure`` and reports not-running. Only
``AccessError`` propagates.
"""

from __future__ import annotations

__all__ = [
    "SpawnError",
    "SpecError",
    "LaunchFailure",
    "HandshakeFailure",
    "KillFailure",
    "AccessError",
]


class SpawnError(Exception):
    """tether-spawn 基础异常。"""
    pass


class SpecError(SpawnError):
    """LaunchSpec 无效（缺少 handler）。"""
    pass


class LaunchFailure(SpawnError):
    """操作系统无法启动子进程。

    Attributes:
        command: 尝试执行的命令行
    """

    def __init__(self, message: str, command: str = "") -> None:
        self.command = command
        super().__init__(message)


class HandshakeFailure(SpawnError):
    """pid 握手失败（管道关闭、内容非数字或超时）。

    Attributes:
        content: 从子进程 stdout 读取到的原始内容
        timed_out: 是否因超时失败
    """

    def __init__(self, message: str, content: str = "", timed_out: bool = False) -> None:
        self.content = content
        self.timed_out = timed_out
        super().__init__(message)


class KillFailure(SpawnError):
    """终止信号未能确认送达。仅用于日志，从不抛出。

    Attributes:
        pid: 目标进程 ID
    """

    def __init__(self, pid: int, message: str) -> None:
        self.pid = pid
        super().__init__(f"[pid={pid}] {message}")


class AccessError(SpawnError, AttributeError):
    """访问了不支持的计算属性。"""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"{name!r} is not a valid property (expected pid, status or running)")
