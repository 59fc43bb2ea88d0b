"""smart-exec 命令行入口。

用法:
    smart-exec [--tool generic|smartctl|tw_cli|areca] [--timeout S]
               [--kill-timeout S] [--json] EXECUTABLE [ARGS...]

退出码:
    子进程的退出码；被信号杀死时为 128 + 信号编号；无法启动时为 127。
"""

from __future__ import annotations

import argparse
import json
import logging
import shlex
import sys
from typing import Optional, Sequence

from .adapters.headless import HeadlessTicker
from .adapters.smartctl import RUNNER_TYPES, create_runner
from .config import Config, load_config
from .events import ExecutionBroadcaster, ExecutionLog
from .runtime.supervisor import KilledBySignal, NormalExit
from .runtime.sync_runner import SyncRunner, TickStatus
from .signal_manager import SignalManager

__all__ = ["build_parser", "exit_code_for", "main", "setup_logging"]

logger = logging.getLogger(__name__)

# 子进程无法启动时的退出码（与 shell 的 "command not found" 一致）
EXIT_SPAWN_FAILED = 127


def setup_logging(config: Config) -> None:
    """配置日志输出。

    - 默认：输出到 stderr，smart_exec 命名空间为 INFO
    - SMX_LOG_DEBUG：输出到临时文件，smart_exec 命名空间为 DEBUG
    """
    log_handlers: list[logging.Handler] = []
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    if config.log_debug and config.log_file:
        # LOG_DEBUG 模式：输出到临时文件
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        # 默认模式：输出到 stderr
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(formatter)
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # 配置 root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    # 只对 smart_exec 命名空间启用详细日志
    logging.getLogger("smart_exec").setLevel(log_level)


def build_parser() -> argparse.ArgumentParser:
    """构建命令行解析器。"""
    from . import __version__

    parser = argparse.ArgumentParser(
        prog="smart-exec",
        description="Run a diagnostic tool under supervision and report its output.",
    )
    parser.add_argument(
        "--tool",
        choices=list(RUNNER_TYPES),
        default="generic",
        help="error handling policy of the executed tool (default: generic)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        metavar="S",
        help="send SIGTERM after S seconds",
    )
    parser.add_argument(
        "--kill-timeout",
        type=float,
        default=None,
        metavar="S",
        help="send SIGKILL S seconds after SIGTERM (default: SMX_FORCED_KILL_TIMEOUT)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="print the execution result as JSON",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("executable", help="program to run")
    parser.add_argument("args", nargs=argparse.REMAINDER, help="arguments passed to the program")
    return parser


def exit_code_for(runner: SyncRunner) -> int:
    """根据 runner 的退出状态计算本进程的退出码。"""
    status = runner.exit_status
    if isinstance(status, NormalExit):
        return status.code
    if isinstance(status, KilledBySignal):
        return 128 + status.signal
    return EXIT_SPAWN_FAILED


def main(argv: Optional[Sequence[str]] = None) -> int:
    """主入口点。"""
    config = load_config()
    setup_logging(config)

    parser = build_parser()
    args = parser.parse_args(argv)

    if args.timeout is not None and args.timeout <= 0:
        parser.error("--timeout must be positive")
    if args.kill_timeout is not None and args.kill_timeout <= 0:
        parser.error("--kill-timeout must be positive")

    kill_timeout = args.kill_timeout if args.kill_timeout is not None else config.forced_kill_timeout

    broadcaster = ExecutionBroadcaster()
    execution_log = ExecutionLog(maxlen=1)
    broadcaster.subscribe(execution_log)

    ticker = HeadlessTicker()
    timeouts_armed = False

    def on_tick(status: TickStatus) -> bool:
        nonlocal timeouts_armed
        # 第一次 RUNNING tick 时子进程已启动
        if args.timeout is not None and status is TickStatus.RUNNING and not timeouts_armed:
            runner.set_stop_timeouts(args.timeout, args.timeout + kill_timeout)
            timeouts_armed = True
        return ticker(status)

    runner = create_runner(args.tool, config, tick_callback=on_tick, broadcaster=broadcaster)
    runner.set_forced_kill_timeout(kill_timeout)
    runner.set_command(args.executable, " ".join(shlex.quote(arg) for arg in args.args))
    ticker.runner = runner

    signal_manager = SignalManager(runner, config=config)
    signal_manager.start()
    try:
        runner.run()
    finally:
        signal_manager.stop()
        runner.close()

    if args.json:
        entries = execution_log.entries
        if entries:
            print(json.dumps(entries[-1].to_dict(), ensure_ascii=False, indent=2))
    else:
        sys.stdout.write(runner.get_stdout())
        sys.stdout.flush()
        sys.stderr.write(runner.get_stderr())
        if runner.error_message:
            print(runner.get_error_msg(with_header=True), file=sys.stderr)

    return exit_code_for(runner)


if __name__ == "__main__":
    sys.exit(main())
