"""信号管理模块。

将 OS 信号转换为对当前 runner 的操作，而不是直接杀死本进程：
- SIGINT: 请求优雅停止（SIGTERM 子进程组，超时后 SIGKILL）
- 双击 SIGINT（在窗口时间内再次收到）: 立即 SIGKILL 子进程组
- SIGTERM: 请求优雅停止

支持的配置：
- SMX_SIGINT_DOUBLE_TAP_WINDOW: 双击窗口时间
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from types import FrameType
from typing import TYPE_CHECKING, Any, Callable, Optional

from .config import Config, load_config

if TYPE_CHECKING:
    from .runtime.sync_runner import SyncRunner

__all__ = ["SignalManager"]

logger = logging.getLogger(__name__)


class SignalManager:
    """信号管理器。

    处理器只设置标志或发送信号，真正的收尾工作（finalize、发布结果）
    仍由 runner 的循环完成，因此被中断的执行也会得到完整的结果。

    两种安装方式：
    - 传入 loop: 使用 loop.add_signal_handler（处理器在事件循环中运行）
    - 不传 loop: 使用 signal.signal（适用于同步调用 SyncRunner.run()）

    Example:
        ```python
        runner = SyncRunner("smartctl", "-a /dev/sda")
        signal_manager = SignalManager(runner)

        signal_manager.start()
        try:
            runner.run()
        finally:
            signal_manager.stop()
        ```

    Attributes:
        runner: 当前受控的 runner（可随时替换）
        double_tap_window: 双击窗口时间（秒）
    """

    def __init__(
        self,
        runner: Optional["SyncRunner"] = None,
        double_tap_window: Optional[float] = None,
        config: Optional[Config] = None,
        on_shutdown: Optional[Callable[[], None]] = None,
    ) -> None:
        """初始化信号管理器。

        Args:
            runner: 受控的 runner
            double_tap_window: 双击窗口时间（默认从配置读取）
            config: 配置（默认 load_config()）
            on_shutdown: 收到停止请求时的回调函数
        """
        self.runner = runner

        if double_tap_window is None:
            config = config if config is not None else load_config()
            double_tap_window = config.sigint_double_tap_window
        self.double_tap_window = double_tap_window
        self._on_shutdown = on_shutdown

        # 内部状态
        self._last_sigint_time: float = 0.0
        self._stop_requested: bool = False
        self._force_kill: bool = False
        self._original_sigint_handler: Any = None
        self._original_sigterm_handler: Any = None
        self._running: bool = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_stop_requested(self) -> bool:
        """是否已请求停止。"""
        return self._stop_requested

    @property
    def is_force_kill(self) -> bool:
        """是否已强制结束子进程（双击 SIGINT）。"""
        return self._force_kill

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """安装 SIGINT / SIGTERM 处理器。

        必须在主线程中调用。

        Args:
            loop: 使用该事件循环的 add_signal_handler（可选）
        """
        if self._running:
            logger.warning("SignalManager already running")
            return

        self._original_sigint_handler = signal.getsignal(signal.SIGINT)
        self._original_sigterm_handler = signal.getsignal(signal.SIGTERM)

        if loop is not None:
            self._loop = loop
            loop.add_signal_handler(signal.SIGINT, self._handle_sigint)
            loop.add_signal_handler(signal.SIGTERM, self._handle_sigterm)
        else:
            signal.signal(signal.SIGINT, self._on_signal)
            signal.signal(signal.SIGTERM, self._on_signal)

        self._running = True
        logger.debug(f"Signal handlers installed (double_tap_window={self.double_tap_window}s)")

    def stop(self) -> None:
        """恢复原始信号处理器。"""
        if not self._running:
            return

        self._running = False

        if self._loop is not None and not self._loop.is_closed():
            try:
                self._loop.remove_signal_handler(signal.SIGINT)
                self._loop.remove_signal_handler(signal.SIGTERM)
            except Exception as e:
                logger.debug(f"Error removing signal handlers: {e}")
        self._loop = None

        for signum, handler in (
            (signal.SIGINT, self._original_sigint_handler),
            (signal.SIGTERM, self._original_sigterm_handler),
        ):
            if handler is None:
                continue
            try:
                signal.signal(signum, handler)
            except (OSError, ValueError) as e:
                logger.debug(f"Error restoring handler for {signum}: {e}")

        logger.debug("Signal handlers removed")

    def reset(self) -> None:
        """清除停止状态（用于同一个管理器控制下一次执行）。"""
        self._last_sigint_time = 0.0
        self._stop_requested = False
        self._force_kill = False

    def _on_signal(self, signum: int, frame: Optional[FrameType]) -> None:
        if signum == signal.SIGINT:
            self._handle_sigint()
        else:
            self._handle_sigterm()

    def _handle_sigint(self) -> None:
        """处理 SIGINT 信号。

        - 第一次：请求停止
        - 在双击窗口内再次收到：强制结束子进程
        """
        current_time = time.monotonic()
        time_since_last = current_time - self._last_sigint_time
        self._last_sigint_time = current_time

        if self._stop_requested and time_since_last < self.double_tap_window:
            logger.warning("Double SIGINT detected, killing the child process")
            self._force_stop()
            return

        logger.info(
            f"SIGINT received, stopping. "
            f"Press Ctrl+C again within {self.double_tap_window}s to kill."
        )
        self._request_stop()

    def _handle_sigterm(self) -> None:
        """处理 SIGTERM 信号：请求停止。"""
        logger.info("SIGTERM received, stopping")
        self._request_stop()

    def _request_stop(self) -> None:
        """请求停止。"""
        self._stop_requested = True

        if self.runner is not None:
            self.runner.request_stop()

        if self._on_shutdown:
            try:
                self._on_shutdown()
            except Exception as e:
                logger.warning(f"Error in shutdown callback: {e}")

    def _force_stop(self) -> None:
        """立即发送 SIGKILL。

        子进程被回收后，runner 的循环照常完成收尾。
        """
        self._force_kill = True
        self._stop_requested = True

        if self.runner is not None:
            self.runner.request_stop()
            if not self.runner.try_kill():
                logger.debug("try_kill() failed, child may have exited already")
