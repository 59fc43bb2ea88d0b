"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import shlex
import sys
from pathlib import Path

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from smart_exec.config import Config  # noqa: E402

# 假诊断工具脚本
FAKE_TOOL = Path(__file__).parent / "fixtures" / "fake_tool.py"


def fake_tool_arguments(*args: str) -> str:
    """构造以当前解释器运行 fake_tool.py 的参数字符串。"""
    return " ".join(shlex.quote(part) for part in (str(FAKE_TOOL), *args))


@pytest.fixture
def project_root() -> Path:
    """项目根目录。"""
    return PROJECT_ROOT


@pytest.fixture
def fast_config() -> Config:
    """缩短轮询间隔和强制 kill 超时的配置。"""
    return Config(poll_interval=0.01, forced_kill_timeout=0.2)


@pytest.fixture
def python() -> str:
    """当前解释器（用于运行 fake_tool.py）。"""
    return sys.executable


@pytest.fixture
def tool_args():
    """fake_tool.py 参数字符串构造函数。"""
    return fake_tool_arguments


@pytest.fixture
def fake_tool() -> str:
    """fake_tool.py 的路径。"""
    return str(FAKE_TOOL)
