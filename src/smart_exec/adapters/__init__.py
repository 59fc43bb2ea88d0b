"""诊断工具适配层。

- HeadlessTicker: 无界面环境下的 tick 回调
- SmartctlRunner / TwCliRunner / ArecaCliRunner: 各工具的错误处理策略
"""

from .headless import HeadlessTicker
from .smartctl import (
    ArecaCliRunner,
    SmartctlRunner,
    TwCliRunner,
    create_runner,
    execute_smartctl,
    get_smartctl_binary,
    get_tool_binary,
    translate_smartctl_exit_status,
)

__all__ = [
    "ArecaCliRunner",
    "HeadlessTicker",
    "SmartctlRunner",
    "TwCliRunner",
    "create_runner",
    "execute_smartctl",
    "get_smartctl_binary",
    "get_tool_binary",
    "translate_smartctl_exit_status",
]
