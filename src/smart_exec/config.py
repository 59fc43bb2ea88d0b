"""SMX 环境变量配置管理。

环境变量:
    SMX_POLL_INTERVAL: SyncRunner 每次轮询事件循环的最长时间（秒）
        - 默认 0.05 秒
        - 限制在 0.01-1.0 秒范围

    SMX_FORCED_KILL_TIMEOUT: 取消执行后，SIGTERM 到 SIGKILL 的等待时间（秒）
        - 默认 3.0 秒
        - 限制在 0.1-60 秒范围

    SMX_CHILD_LOCALE: 子进程使用的 locale（覆盖 LANG / LC_ALL）
        - 默认 C，保证诊断工具输出格式可预测

    SMX_STDOUT_PIPE_SIZE / SMX_STDERR_PIPE_SIZE: 管道缓冲区大小（字节）
        - 未设置 = 使用系统默认值
        - 仅影响 OS 管道容量，不会截断收集到的输出

    SMX_SMARTCTL_BINARY: smartctl 可执行文件（默认 smartctl）
    SMX_TW_CLI_BINARY: 3ware tw_cli 可执行文件（默认 tw_cli）
    SMX_ARECA_CLI_BINARY: Areca cli 可执行文件（默认 cli）

    SMX_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)

    SMX_SIGINT_DOUBLE_TAP_WINDOW: 双击 Ctrl+C 强制结束子进程的窗口时间（秒）
        - 默认 1.0 秒
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

__all__ = ["Config", "load_config"]


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_float(
    value: str | None,
    default: float,
    minimum: float,
    maximum: float,
) -> float:
    """解析浮点数环境变量，并限制在给定范围内。

    Args:
        value: 环境变量值
        default: 未设置或无效时的默认值
        minimum: 下限
        maximum: 上限

    Returns:
        解析后的值
    """
    if not value:
        return default
    try:
        number = float(value)
    except ValueError:
        return default
    return max(minimum, min(number, maximum))


def _parse_size(value: str | None) -> Optional[int]:
    """解析管道大小环境变量。无效值或非正数视为未设置。"""
    if not value or not value.strip():
        return None
    try:
        size = int(value.strip())
    except ValueError:
        return None
    return size if size > 0 else None


def _parse_str(value: str | None, default: str) -> str:
    """解析字符串环境变量，空值使用默认值。"""
    if value is None or not value.strip():
        return default
    return value.strip()


@dataclass
class Config:
    """SMX 配置。

    Attributes:
        poll_interval: SyncRunner 轮询间隔（秒）
        forced_kill_timeout: 取消后的强制 kill 超时（秒）
        child_locale: 子进程 locale
        stdout_pipe_size: stdout 管道大小（None = 系统默认）
        stderr_pipe_size: stderr 管道大小（None = 系统默认）
        smartctl_binary: smartctl 可执行文件
        tw_cli_binary: tw_cli 可执行文件
        areca_cli_binary: Areca cli 可执行文件
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
        sigint_double_tap_window: 双击 Ctrl+C 窗口时间（秒）
    """

    poll_interval: float = 0.05
    forced_kill_timeout: float = 3.0
    child_locale: str = "C"
    stdout_pipe_size: Optional[int] = None
    stderr_pipe_size: Optional[int] = None
    smartctl_binary: str = "smartctl"
    tw_cli_binary: str = "tw_cli"
    areca_cli_binary: str = "cli"
    log_debug: bool = False
    log_file: str | None = None
    sigint_double_tap_window: float = 1.0

    def __repr__(self) -> str:
        return (
            f"Config(poll_interval={self.poll_interval}, "
            f"forced_kill_timeout={self.forced_kill_timeout}, "
            f"child_locale={self.child_locale}, "
            f"stdout_pipe_size={self.stdout_pipe_size}, "
            f"stderr_pipe_size={self.stderr_pipe_size}, "
            f"smartctl_binary={self.smartctl_binary}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"sigint_double_tap_window={self.sigint_double_tap_window})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "smart-exec"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"smx_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。

    每次调用都返回新的 Config 实例，由调用方显式传递给各组件。
    """
    log_debug = _parse_bool(os.environ.get("SMX_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        poll_interval=_parse_float(
            os.environ.get("SMX_POLL_INTERVAL"), 0.05, 0.01, 1.0
        ),
        forced_kill_timeout=_parse_float(
            os.environ.get("SMX_FORCED_KILL_TIMEOUT"), 3.0, 0.1, 60.0
        ),
        child_locale=_parse_str(os.environ.get("SMX_CHILD_LOCALE"), "C"),
        stdout_pipe_size=_parse_size(os.environ.get("SMX_STDOUT_PIPE_SIZE")),
        stderr_pipe_size=_parse_size(os.environ.get("SMX_STDERR_PIPE_SIZE")),
        smartctl_binary=_parse_str(os.environ.get("SMX_SMARTCTL_BINARY"), "smartctl"),
        tw_cli_binary=_parse_str(os.environ.get("SMX_TW_CLI_BINARY"), "tw_cli"),
        areca_cli_binary=_parse_str(os.environ.get("SMX_ARECA_CLI_BINARY"), "cli"),
        log_debug=log_debug,
        log_file=log_file,
        sigint_double_tap_window=_parse_float(
            os.environ.get("SMX_SIGINT_DOUBLE_TAP_WINDOW"), 1.0, 0.1, 10.0
        ),
    )
