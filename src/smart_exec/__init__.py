"""smart-exec - S.M.A.R.T. 诊断工具的子进程执行引擎。

环境变量:
    SMX_POLL_INTERVAL: 事件循环轮询间隔
    SMX_FORCED_KILL_TIMEOUT: 取消后 SIGKILL 的超时
    SMX_LOG_DEBUG: 调试日志输出到临时文件

用法:
    smart-exec --tool smartctl smartctl -i /dev/sda
"""

__version__ = "0.1.0"

from .app import main

__all__ = ["__version__", "main"]
