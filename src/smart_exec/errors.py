"""错误记录与错误收集模块。

smart-exec runtime v0.1.0

子进程执行过程中的各种失败（启动失败、信号投递失败、非零退出、管道读取错误）
都不会以异常的形式穿过 supervisor 的 API，而是以 ErrorRecord 的形式记录到
ErrorSink 中，由调用方在合适的时机主动取走（pull 模型）。

职责：
- ErrorLevel / ErrorCategory: 错误级别与分类
- ErrorRecord: 不可变的错误值
- ErrorSink: 有序、可清空、线程安全的错误列表
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

__all__ = [
    "ErrorCategory",
    "ErrorHook",
    "ErrorLevel",
    "ErrorRecord",
    "ErrorSink",
]

logger = logging.getLogger(__name__)


class ErrorLevel(str, Enum):
    """错误级别枚举。

    - DUMP: 调试转储
    - INFO: 提示信息
    - WARN: 警告（例如我们主动终止的子进程）
    - ERROR: 错误
    - FATAL: 致命错误
    """

    DUMP = "dump"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"

    @property
    def log_level(self) -> int:
        """对应的 logging 级别。"""
        return _LOG_LEVELS[self]


_LOG_LEVELS: dict[ErrorLevel, int] = {
    ErrorLevel.DUMP: logging.DEBUG,
    ErrorLevel.INFO: logging.INFO,
    ErrorLevel.WARN: logging.WARNING,
    ErrorLevel.ERROR: logging.ERROR,
    ErrorLevel.FATAL: logging.CRITICAL,
}


class ErrorCategory(str, Enum):
    """错误分类枚举。

    继承 str，因此可以直接与字符串标签比较（``record.category == "exit"``）。

    - SPAWN: 子进程无法创建
    - SIGNAL: 信号无法投递，或子进程被非预期的信号杀死
    - EXIT: 子进程以非零退出码结束
    - STREAM: stdout/stderr 读取错误（优先级最低）
    """

    SPAWN = "spawn"
    SIGNAL = "signal"
    EXIT = "exit"
    STREAM = "stream"


@dataclass(frozen=True)
class ErrorRecord:
    """单条错误记录。

    Attributes:
        category: 错误分类标签
        level: 错误级别
        message: 人类可读的错误信息
        code: 附加的数值（退出码、信号编号或 errno）
    """

    category: str
    level: ErrorLevel
    message: str
    code: Optional[int] = None

    def __str__(self) -> str:
        category = getattr(self.category, "value", self.category)
        return f"[{category}/{self.level.value}] {self.message}"


# 类型别名：错误回调
ErrorHook = Callable[[ErrorRecord], None]


def _log_error(record: ErrorRecord) -> None:
    """默认的错误回调：写入日志。"""
    logger.log(record.level.log_level, f"{record}")


class ErrorSink:
    """有序的错误收集器。

    新错误追加在末尾；drain() 取走并清空全部错误。

    线程安全：push() 可能在 I/O 回调中被调用，而调用方同时在自己的线程里
    drain()，因此列表由一把锁保护。on_error 回调在锁外调用。

    Example:
        ```python
        sink = ErrorSink()
        sink.push(ErrorRecord("exit", ErrorLevel.WARN, "Command exited with code 2", 2))

        if sink.has_errors():
            for record in sink.drain():
                print(record.message)
        ```
    """

    def __init__(self, on_error: Optional[ErrorHook] = None) -> None:
        """初始化错误收集器。

        Args:
            on_error: 每次 push() 时调用的回调（默认写日志）
        """
        self._lock = threading.Lock()
        self._records: list[ErrorRecord] = []
        self.on_error: ErrorHook = on_error if on_error is not None else _log_error

    def push(self, record: ErrorRecord) -> None:
        """追加一条错误记录。

        Args:
            record: 错误记录
        """
        with self._lock:
            self._records.append(record)

        try:
            self.on_error(record)
        except Exception as e:
            logger.warning(f"Error in on_error hook: {e}")

    def drain(self) -> list[ErrorRecord]:
        """取走所有错误记录并清空。

        Returns:
            错误记录列表（最新的在最后）
        """
        with self._lock:
            records = self._records
            self._records = []
        return records

    def errors(self) -> list[ErrorRecord]:
        """获取错误记录的副本（不清空）。"""
        with self._lock:
            return list(self._records)

    def has_errors(self) -> bool:
        """是否存在未取走的错误。"""
        with self._lock:
            return bool(self._records)

    def clear(self) -> None:
        """清空所有错误记录。"""
        with self._lock:
            self._records.clear()

    def import_errors(self, other: "ErrorSink") -> int:
        """从另一个 ErrorSink 合并错误，并清空对方。

        用于上层对象收集其持有的子 supervisor 产生的错误。
        合并进来的记录不会再次触发 on_error 回调。

        Args:
            other: 来源 ErrorSink

        Returns:
            合并的记录数量
        """
        if other is self:
            return 0
        records = other.drain()
        if records:
            with self._lock:
                self._records.extend(records)
        return len(records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
