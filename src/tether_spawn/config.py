"""tether-spawn 环境变量配置管理。

环境变量:
    SPAWN_ENV_ID: 注入子进程的环境标识 (ENV_ID)
        - 默认 "local"

    SPAWN_ENTRYPOINT: 宿主应用入口命令（handler 名称之前的部分）
        - 默认 "<当前 python 解释器> main.py"
        - 例: "python manage.py" 或 "/opt/app/bin/run"

    SPAWN_HANDSHAKE_TIMEOUT: pid 握手超时时间（秒）
        - 默认 30 秒
        - 0/none = 无限等待
        - 上限 3600 秒

    SPAWN_KILL_TIMEOUT: kill 后等待回收子进程的时间（秒）
        - 默认 1.0 秒

    SPAWN_KILL_ON_EXIT: 宿主进程退出时是否终止所有 tethered 子进程
        - true/1/yes = 终止 (默认)
        - false/0/no = 不处理

    SPAWN_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)
"""

from __future__ import annotations

import os
import shlex
import subprocess
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config"]

DEFAULT_ENV_ID = "local"
DEFAULT_HANDSHAKE_TIMEOUT = 30.0
DEFAULT_KILL_TIMEOUT = 1.0
MAX_HANDSHAKE_TIMEOUT = 3600.0


def _default_entrypoint() -> str:
    """默认入口：当前解释器运行 main.py。"""
    if sys.platform == "win32":
        return f"{subprocess.list2cmdline([sys.executable])} main.py"
    return f"{shlex.quote(sys.executable)} main.py"


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_handshake_timeout(value: str | None) -> float | None:
    """解析握手超时环境变量。

    Returns:
        超时秒数；None 表示无限等待
    """
    if value is None or not value.strip():
        return DEFAULT_HANDSHAKE_TIMEOUT
    value = value.strip().lower()
    if value in ("none", "inf", "off"):
        return None
    try:
        timeout = float(value)
    except ValueError:
        return DEFAULT_HANDSHAKE_TIMEOUT
    if timeout <= 0:
        return None
    return min(timeout, MAX_HANDSHAKE_TIMEOUT)


def _parse_kill_timeout(value: str | None) -> float:
    """解析 kill 超时环境变量。"""
    if not value:
        return DEFAULT_KILL_TIMEOUT
    try:
        timeout = float(value)
        return max(0.0, min(timeout, 60.0))  # 限制在 0-60 秒范围
    except ValueError:
        return DEFAULT_KILL_TIMEOUT


@dataclass
class Config:
    """tether-spawn 配置。

    Attributes:
        env_id: 注入子进程的 ENV_ID
        entrypoint: 宿主应用入口命令
        handshake_timeout: 握手超时（秒），None 表示无限等待
        kill_timeout: kill 后回收等待时间（秒）
        kill_on_exit: 宿主退出时是否终止 tethered 子进程
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
    """

    env_id: str = DEFAULT_ENV_ID
    entrypoint: str = ""
    handshake_timeout: float | None = DEFAULT_HANDSHAKE_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    kill_on_exit: bool = True
    log_debug: bool = False
    log_file: str | None = None

    def __post_init__(self) -> None:
        if not self.entrypoint:
            self.entrypoint = _default_entrypoint()

    def __repr__(self) -> str:
        return (
            f"Config(env_id={self.env_id}, "
            f"entrypoint={self.entrypoint!r}, "
            f"handshake_timeout={self.handshake_timeout}, "
            f"kill_timeout={self.kill_timeout}, "
            f"kill_on_exit={self.kill_on_exit}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "tether-spawn"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"spawn_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("SPAWN_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        env_id=os.environ.get("SPAWN_ENV_ID", "").strip() or DEFAULT_ENV_ID,
        entrypoint=os.environ.get("SPAWN_ENTRYPOINT", "").strip(),
        handshake_timeout=_parse_handshake_timeout(
            os.environ.get("SPAWN_HANDSHAKE_TIMEOUT")
        ),
        kill_timeout=_parse_kill_timeout(os.environ.get("SPAWN_KILL_TIMEOUT")),
        kill_on_exit=_parse_bool(os.environ.get("SPAWN_KILL_ON_EXIT"), default=True),
        log_debug=log_debug,
        log_file=log_file,
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
