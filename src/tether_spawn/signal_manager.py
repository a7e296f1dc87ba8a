"""信号管理模块。

Python 在未处理的 SIGTERM 下不会执行 atexit 回调，tethered 子进程会因此
成为孤儿进程。本模块把宿主进程收到的信号转换为生命周期操作：
- SIGTERM: 释放所有 tethered 句柄（终止子进程），然后以 128+signum 退出
- SIGINT: 可选，行为同上（默认保留 KeyboardInterrupt）

这里只处理宿主进程自身的信号，不向子进程发送任何优雅关闭信号。
"""

from __future__ import annotations

import logging
import signal
import sys
from types import FrameType
from typing import Any, Callable, Optional

from .runtime import LifecycleController, get_controller

__all__ = ["SignalManager"]

logger = logging.getLogger(__name__)


class SignalManager:
    """信号管理器。

    Example:
        ```python
        manager = SignalManager()
        manager.start()
        try:
            with ProcessHandle(spec) as handle:
                ...
        finally:
            manager.stop()
        ```

    Attributes:
        controller: 生命周期控制器
        handle_sigint: 是否同时接管 SIGINT
    """

    def __init__(
        self,
        controller: Optional[LifecycleController] = None,
        handle_sigint: bool = False,
        on_shutdown: Optional[Callable[[], None]] = None,
    ) -> None:
        """初始化信号管理器。

        Args:
            controller: 生命周期控制器（默认全局实例）
            handle_sigint: 是否同时接管 SIGINT
            on_shutdown: 释放完成、退出之前的回调函数
        """
        self.controller = controller or get_controller()
        self.handle_sigint = handle_sigint
        self._on_shutdown = on_shutdown

        self._original_handlers: dict[int, Any] = {}
        self._running: bool = False
        self._shutdown_requested: bool = False

    @property
    def is_shutdown_requested(self) -> bool:
        """是否已请求关闭。"""
        return self._shutdown_requested

    def _signals(self) -> list[signal.Signals]:
        signals = [signal.SIGINT] if self.handle_sigint else []
        if sys.platform != "win32":
            signals.append(signal.SIGTERM)
        return signals

    def start(self) -> None:
        """安装信号处理器。必须在主线程中调用。"""
        if self._running:
            logger.warning("SignalManager already running")
            return

        for sig in self._signals():
            self._original_handlers[sig] = signal.signal(sig, self._handle_signal)
        self._running = True
        logger.debug(
            f"Signal handlers installed "
            f"({', '.join(s.name for s in self._signals()) or 'none'})"
        )

    def stop(self) -> None:
        """恢复原始信号处理器。"""
        if not self._running:
            return

        self._running = False
        for sig, handler in self._original_handlers.items():
            try:
                signal.signal(sig, handler)
            except (OSError, ValueError) as e:
                logger.debug(f"Error restoring handler for {sig}: {e}")
        self._original_handlers.clear()
        logger.debug("Signal handlers removed")

    def __enter__(self) -> "SignalManager":
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        """处理信号：释放所有 tethered 句柄后退出。"""
        sig_name = signal.Signals(signum).name
        logger.info(f"{sig_name} received, releasing tethered processes")
        self._shutdown_requested = True

        count = self.controller.release_all()
        logger.info(f"Released {count} handle(s) on {sig_name}")

        if self._on_shutdown:
            try:
                self._on_shutdown()
            except Exception as e:
                logger.warning(f"Error in shutdown callback: {e}")

        raise SystemExit(128 + signum)
