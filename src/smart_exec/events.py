"""执行完成事件的广播模块。

每次 SyncRunner.run() 结束（包括启动失败）都会发布一条 ExecutionResult，
供执行日志等订阅者使用。广播器由调用方显式创建并传入 runner，
不存在进程级的全局信号对象。

职责：
- ExecutionResult: 一次执行的结果快照
- ExecutionBroadcaster: 订阅者登记与事件分发
- ExecutionLog: 保留最近 N 条结果的现成订阅者
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from .runtime.supervisor import ExitStatus, KilledBySignal, NormalExit

__all__ = [
    "ExecutionBroadcaster",
    "ExecutionLog",
    "ExecutionResult",
    "ExecutionSubscriber",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionResult:
    """一次执行的结果。

    Attributes:
        command: 可执行文件
        parameters: 参数字符串（调用方已做 shell 转义）
        stdout: 收集到的标准输出
        stderr: 收集到的标准错误
        error_message: runner 选出的错误信息（无错误时为空）
        exit_status: 退出状态（启动失败时为 None）
        finished_at: 结果生成时间
    """

    command: str
    parameters: str
    stdout: str
    stderr: str
    error_message: str
    exit_status: Optional[ExitStatus] = None
    finished_at: datetime = field(default_factory=datetime.now)

    @property
    def command_line(self) -> str:
        return f"{self.command} {self.parameters}".strip()

    def to_dict(self) -> dict[str, Any]:
        """转换为可 JSON 序列化的字典。"""
        status: dict[str, Any] | None = None
        if isinstance(self.exit_status, NormalExit):
            status = {"type": "exit", "code": self.exit_status.code}
        elif isinstance(self.exit_status, KilledBySignal):
            status = {
                "type": "signal",
                "signal": self.exit_status.signal,
                "requested": self.exit_status.requested,
            }

        return {
            "command": self.command,
            "parameters": self.parameters,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "error_message": self.error_message,
            "exit_status": status,
            "finished_at": self.finished_at.isoformat(),
        }

    def __repr__(self) -> str:
        return (
            f"ExecutionResult(command={self.command_line!r}, "
            f"stdout={len(self.stdout)} chars, "
            f"stderr={len(self.stderr)} chars, "
            f"exit_status={self.exit_status}, "
            f"error={self.error_message!r})"
        )


# 类型别名：订阅者
ExecutionSubscriber = Callable[[ExecutionResult], None]


class ExecutionBroadcaster:
    """执行完成事件的广播器。

    订阅者按登记顺序被调用。订阅者抛出的异常会被记录并忽略，
    不影响其他订阅者，也不会传回 runner。

    Example:
        ```python
        broadcaster = ExecutionBroadcaster()
        log = ExecutionLog(maxlen=50)
        broadcaster.subscribe(log)

        runner = SyncRunner("smartctl", "-i /dev/sda", broadcaster=broadcaster)
        runner.run()

        print(log.entries[-1].command_line)
        ```
    """

    def __init__(self) -> None:
        self._subscribers: list[ExecutionSubscriber] = []

    def subscribe(self, subscriber: ExecutionSubscriber) -> None:
        """登记订阅者（重复登记会被忽略）。"""
        if subscriber not in self._subscribers:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: ExecutionSubscriber) -> None:
        """移除订阅者。"""
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def publish(self, result: ExecutionResult) -> None:
        """向所有订阅者发布结果。

        Args:
            result: 执行结果
        """
        logger.debug(f"Publishing {result!r}")
        for subscriber in list(self._subscribers):
            try:
                subscriber(result)
            except Exception as e:
                logger.warning(f"Error in execution subscriber: {e}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


class ExecutionLog:
    """保留最近 N 条执行结果的订阅者。

    Attributes:
        maxlen: 最多保留的条数
    """

    def __init__(self, maxlen: int = 100) -> None:
        if maxlen <= 0:
            raise ValueError(f"maxlen must be positive, got {maxlen}")
        self.maxlen = maxlen
        self._entries: deque[ExecutionResult] = deque(maxlen=maxlen)

    def __call__(self, result: ExecutionResult) -> None:
        self._entries.append(result)

    @property
    def entries(self) -> list[ExecutionResult]:
        """按时间顺序排列的结果（最新的在最后）。"""
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def to_dict(self) -> dict[str, Any]:
        return {"entries": [entry.to_dict() for entry in self._entries]}

    def __len__(self) -> int:
        return len(self._entries)
