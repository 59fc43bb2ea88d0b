"""smartctl / tw_cli / Areca cli 执行器。

这些 runner 只在错误处理上与 SyncRunner 不同：
- smartctl 的退出码是位掩码，大部分位表示磁盘状态而不是执行失败，
  只有 bit 0（命令行解析失败）和 bit 1（设备打开失败）被当作错误
- 管道读取错误会掩盖更有意义的错误，因此一律忽略
"""

from __future__ import annotations

import logging
import re
import shlex
import shutil
from typing import Optional

from ..config import Config, load_config
from ..errors import ErrorCategory, ErrorRecord
from ..runtime.sync_runner import SyncRunner

__all__ = [
    "ArecaCliRunner",
    "RUNNER_TYPES",
    "SmartctlRunner",
    "TwCliRunner",
    "create_runner",
    "execute_smartctl",
    "get_smartctl_binary",
    "get_tool_binary",
    "translate_smartctl_exit_status",
]

logger = logging.getLogger(__name__)

# smartctl 退出码各个位的含义（bit 0 - bit 7）
SMARTCTL_EXIT_BITS: tuple[str, ...] = (
    "Command line did not parse.",
    "Device open failed, or device did not return an IDENTIFY DEVICE structure.",
    "Some SMART command to the disk failed, or there was a checksum error in a SMART data structure",
    "SMART status check returned \"DISK FAILING\"",
    "SMART status check returned \"DISK OK\" but some prefail Attributes are less than threshold.",
    "SMART status check returned \"DISK OK\" but we found that some (usage or prefail) "
    "Attributes have been less than threshold at some time in the past.",
    "The device error log contains records of errors.",
    "The device self-test log contains records of errors.",
)

EXIT_CANT_PARSE = 1 << 0
EXIT_OPEN_FAILED = 1 << 1

# Smartctl open device: /dev/sdb failed: Permission denied
_PERMISSION_DENIED_RE = re.compile(r"Smartctl open device.+Permission denied", re.IGNORECASE | re.MULTILINE)


def translate_smartctl_exit_status(code: int) -> str:
    """将 smartctl 退出码翻译为可读信息（每个置位一行）。"""
    return "\n".join(
        message for bit, message in enumerate(SMARTCTL_EXIT_BITS) if code & (1 << bit)
    )


class _DiagnosticToolRunner(SyncRunner):
    """诊断工具 runner 的基类：忽略管道读取错误。"""

    tool_name = "command"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.error_header = f"An error occurred while executing {self.tool_name}:\n\n"

    def select_error(self, records: list[ErrorRecord]) -> Optional[ErrorRecord]:
        for record in reversed(records):
            if record.category != ErrorCategory.STREAM:
                return record
        return None

    def on_error_warn(self, record: ErrorRecord) -> None:
        if record.category == ErrorCategory.STREAM:
            return
        super().on_error_warn(record)


class SmartctlRunner(_DiagnosticToolRunner):
    """smartctl 执行器。

    非零退出码只有在 bit 0 或 bit 1 置位时才会成为 error_message，
    其他位（磁盘状态、日志中有错误记录等）不视为执行失败。
    """

    tool_name = "smartctl"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.supervisor.set_exit_status_translator(translate_smartctl_exit_status)

    def on_error_warn(self, record: ErrorRecord) -> None:
        if record.category == ErrorCategory.EXIT:
            code = record.code or 0
            if not code & (EXIT_CANT_PARSE | EXIT_OPEN_FAILED):
                logger.debug(f"Ignoring smartctl exit status {code}")
                return
        super().on_error_warn(record)


class TwCliRunner(_DiagnosticToolRunner):
    """3ware tw_cli 执行器。"""

    tool_name = "tw_cli"


class ArecaCliRunner(_DiagnosticToolRunner):
    """Areca cli 执行器。"""

    tool_name = "cli"


RUNNER_TYPES: dict[str, type[SyncRunner]] = {
    "generic": SyncRunner,
    "smartctl": SmartctlRunner,
    "tw_cli": TwCliRunner,
    "areca": ArecaCliRunner,
}


def create_runner(kind: str, config: Optional[Config] = None, **kwargs) -> SyncRunner:
    """按类型创建 runner。

    Args:
        kind: "generic" | "smartctl" | "tw_cli" | "areca"
        config: 配置
        **kwargs: 传给 runner 构造函数的其他参数

    Raises:
        ValueError: 未知的类型
    """
    try:
        runner_type = RUNNER_TYPES[kind]
    except KeyError:
        raise ValueError(
            f"Unknown runner type: {kind!r} (expected one of {', '.join(RUNNER_TYPES)})"
        ) from None
    return runner_type(config=config, **kwargs)


_BINARY_SETTINGS: dict[str, str] = {
    "smartctl": "smartctl_binary",
    "tw_cli": "tw_cli_binary",
    "areca": "areca_cli_binary",
}


def get_tool_binary(kind: str, config: Optional[Config] = None) -> str:
    """获取诊断工具的可执行文件。

    配置值不含路径分隔符时在 PATH 中查找；找不到时原样返回配置值，
    由执行时的 spawn 错误报告问题。

    Args:
        kind: "smartctl" | "tw_cli" | "areca"
        config: 配置

    Returns:
        可执行文件路径，配置为空时返回空字符串

    Raises:
        ValueError: 未知的工具类型
    """
    try:
        setting = _BINARY_SETTINGS[kind]
    except KeyError:
        raise ValueError(f"No binary setting for tool type: {kind!r}") from None
    config = config if config is not None else load_config()
    binary = getattr(config, setting).strip()
    if not binary or "/" in binary:
        return binary
    return shutil.which(binary) or binary


def get_smartctl_binary(config: Optional[Config] = None) -> str:
    """获取 smartctl 可执行文件。"""
    return get_tool_binary("smartctl", config)


def execute_smartctl(
    device: str,
    device_options: str = "",
    command_options: str = "",
    runner: Optional[SyncRunner] = None,
    config: Optional[Config] = None,
) -> tuple[str, str]:
    """对设备执行 smartctl。

    Args:
        device: 设备文件（例如 /dev/sda）
        device_options: 设备相关参数（已转义，例如 "-d sat"）
        command_options: 命令参数（已转义，例如 "-x"）
        runner: 使用的 runner（默认新建 SmartctlRunner）
        config: 配置

    Returns:
        (output, error_message)。成功时 error_message 为空；
        失败时 output 仍可能包含 smartctl 的部分输出
    """
    if "/" not in device:
        logger.error(f"Invalid device name \"{device}\"")
        return "", "Invalid device name specified."

    config = config if config is not None else load_config()
    binary = get_smartctl_binary(config)
    if not binary:
        logger.error("Smartctl binary is not set in config")
        return "", "Smartctl binary is not specified in configuration."

    arguments = " ".join(
        part for part in (device_options.strip(), command_options.strip(), shlex.quote(device)) if part
    )
    owns_runner = runner is None
    if runner is None:
        runner = SmartctlRunner(config=config)

    try:
        if not runner.set_command(binary, arguments):
            return "", "Smartctl is already running."
        succeeded = runner.run()
        output = _normalize_output(runner.get_stdout())
        error_message = runner.error_message
    finally:
        if owns_runner:
            runner.close()

    if not succeeded or error_message:
        logger.warning("Smartctl binary did not execute cleanly")
        if _PERMISSION_DENIED_RE.search(output):
            return output, "Permission denied while opening device."
        return output, error_message or "Smartctl did not execute cleanly."

    if not output:
        logger.error("Smartctl returned an empty output")
        return "", "Smartctl returned an empty output."

    return output, ""


def _normalize_output(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n").strip()
