"""无界面环境下的 tick 回调。

在终端或后台服务中代替"正在运行"对话框：
- 运行超过 show_delay 秒后记录一次 running 消息
- 停止过程中超过 abort_show_delay 秒后记录一次 "Aborting..."
- abort() 让下一次 RUNNING tick 返回 False
- 记录最终状态（STOPPED / FAILED）
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Callable, Optional

from ..runtime.sync_runner import TickStatus

if TYPE_CHECKING:
    from ..runtime.sync_runner import SyncRunner

__all__ = ["HeadlessTicker"]

logger = logging.getLogger(__name__)


class HeadlessTicker:
    """SyncRunner 的 tick 回调。

    同一个 ticker 同一时间只服务一次执行：执行期间再次收到 STARTING
    会返回 False 以拒绝新的执行。

    Example:
        ```python
        ticker = HeadlessTicker()
        runner = SyncRunner("smartctl", "-a /dev/sda", tick_callback=ticker)
        ticker.runner = runner
        runner.run()
        print(ticker.final_status)
        ```

    Attributes:
        runner: 提供 running 消息的 runner（可选）
        message: 没有 runner 时使用的 running 消息
        show_delay: 记录 running 消息前的等待时间（秒）
        abort_show_delay: 记录 "Aborting..." 前的等待时间（秒）
        final_status: 最近一次执行的最终状态
        messages: 已记录的进度消息
    """

    def __init__(
        self,
        runner: Optional["SyncRunner"] = None,
        *,
        message: str = "Running command...",
        show_delay: float = 2.0,
        abort_show_delay: float = 0.4,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.runner = runner
        self.message = message
        self.show_delay = show_delay
        self.abort_show_delay = abort_show_delay
        self._clock = clock

        self.final_status: Optional[TickStatus] = None
        self.messages: list[str] = []

        self._active = False
        self._should_abort = False
        self._aborting = False
        self._shown = False
        self._timer_started = 0.0

    @property
    def active(self) -> bool:
        """是否有执行正在进行。"""
        return self._active

    def abort(self) -> None:
        """请求中止当前执行（相当于点击"取消"按钮）。"""
        self._should_abort = True

    def __call__(self, status: TickStatus) -> bool:
        if status is TickStatus.STARTING:
            if self._active:
                return False
            self._active = True
            self._should_abort = False
            self._aborting = False
            self.final_status = None
            self._restart_timer()
            return True

        if status is TickStatus.RUNNING:
            if self._should_abort:
                self._should_abort = False
                self._enter_abort_mode()
                return False
            self._update()
            return True

        if status is TickStatus.STOPPING:
            self._enter_abort_mode()
            self._update()
            return True

        # STOPPED / FAILED
        self._active = False
        self.final_status = status
        logger.debug(f"Execution finished with status {status.value}")
        return True

    def _running_message(self) -> str:
        if self.runner is not None:
            return self.runner.get_running_msg()
        return self.message

    def _restart_timer(self) -> None:
        self._shown = False
        self._timer_started = self._clock()

    def _enter_abort_mode(self) -> None:
        if not self._aborting:
            self._aborting = True
            self._restart_timer()

    def _update(self) -> None:
        delay = self.abort_show_delay if self._aborting else self.show_delay
        if self._shown or self._clock() - self._timer_started <= delay:
            return
        self._shown = True
        message = "Aborting..." if self._aborting else self._running_message()
        self.messages.append(message)
        logger.info(message)
