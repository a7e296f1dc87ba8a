"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import shlex
import subprocess
import sys
import time
from pathlib import Path

import psutil
import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from tether_spawn.runtime import IS_WINDOWS, LifecycleController, ProcessLauncher  # noqa: E402

# 假 worker 脚本（代替宿主应用入口）
FIXTURES_DIR = PROJECT_ROOT / "tests" / "fixtures"
FAKE_WORKER_PATH = FIXTURES_DIR / "fake_worker.py"


def _quote(text: str) -> str:
    if IS_WINDOWS:
        return subprocess.list2cmdline([text])
    return shlex.quote(text)


def is_alive(pid: int) -> bool:
    """进程存在且不是僵尸进程。"""
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


def wait_until_dead(pid: int, timeout: float = 5.0) -> bool:
    """等待进程退出，返回是否已退出。"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not is_alive(pid):
            return True
        time.sleep(0.05)
    return not is_alive(pid)


@pytest.fixture
def entrypoint() -> str:
    """运行假 worker 的入口命令。"""
    return f"{_quote(sys.executable)} {_quote(str(FAKE_WORKER_PATH))}"


@pytest.fixture
def launcher(entrypoint: str) -> ProcessLauncher:
    """使用假 worker 的 launcher（握手超时 10 秒）。"""
    return ProcessLauncher(entrypoint=entrypoint, env_id="test", handshake_timeout=10.0)


@pytest.fixture
def controller() -> LifecycleController:
    """不注册 atexit 的独立控制器。"""
    controller = LifecycleController(kill_on_exit=False)
    yield controller
    controller.release_all()


@pytest.fixture
def stray_pids() -> list[int]:
    """测试结束时强制清理的 pid 列表（untethered 进程）。"""
    pids: list[int] = []
    yield pids
    for pid in pids:
        try:
            psutil.Process(pid).kill()
        except psutil.Error:
            pass
