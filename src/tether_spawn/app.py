"""tether-spawn 命令行入口。

用法:
    tether-spawn [--entrypoint CMD] [--untethered [--background]] HANDLER [ARGS...]

tethered 模式下，命令会一直等待子进程结束；Ctrl+C 或 SIGTERM 会终止子进程。
untethered 模式下，启动后立即返回，子进程继续运行。
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from typing import Sequence

from . import __version__
from .config import get_config
from .runtime import LifecycleController, ProcessHandle, ProcessLauncher
from .signal_manager import SignalManager
from .spec import LaunchSpec

__all__ = ["build_parser", "configure_logging", "main"]

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.2


class JsonSerializingFormatter(logging.Formatter):
    """尝试将日志参数中的对象 JSON 序列化。"""

    def format(self, record: logging.LogRecord) -> str:
        if record.args and isinstance(record.args, tuple):
            new_args = []
            for arg in record.args:
                try:
                    if hasattr(arg, "to_dict"):
                        new_args.append(json.dumps(arg.to_dict(), ensure_ascii=False))
                    elif isinstance(arg, dict):
                        new_args.append(json.dumps(arg, ensure_ascii=False, default=str))
                    else:
                        new_args.append(arg)
                except (TypeError, ValueError):
                    new_args.append(arg)
            record.args = tuple(new_args)
        return super().format(record)


def configure_logging() -> None:
    """配置日志输出。"""
    config = get_config()
    log_handlers: list[logging.Handler] = []
    log_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    if config.log_debug and config.log_file:
        # LOG_DEBUG 模式：输出到临时文件
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(JsonSerializingFormatter(log_format))
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        # 默认模式：输出到 stderr
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(log_format))
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # 配置 root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    # 只对 tether_spawn 命名空间启用详细日志
    logging.getLogger("tether_spawn").setLevel(log_level)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tether-spawn",
        description="Spawn a worker through the host entry point and supervise it.",
    )
    parser.add_argument("handler", help="Handler name passed to the entry point")
    parser.add_argument("args", nargs="*", help="Arguments for the handler")
    parser.add_argument("--entrypoint", help="Host entry point (default SPAWN_ENTRYPOINT)")
    parser.add_argument("--env-id", help="Value injected as ENV_ID (default SPAWN_ENV_ID)")
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Handshake timeout in seconds, 0 waits forever",
    )
    parser.add_argument(
        "--untethered",
        action="store_true",
        help="Leave the worker running when this command exits",
    )
    parser.add_argument(
        "--background",
        action="store_true",
        help="Detach from the launching shell (only with --untethered)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _make_launcher(options: argparse.Namespace) -> ProcessLauncher:
    kwargs = {}
    if options.timeout is not None:
        kwargs["handshake_timeout"] = options.timeout if options.timeout > 0 else None
    return ProcessLauncher(entrypoint=options.entrypoint, env_id=options.env_id, **kwargs)


def _report(handle: ProcessHandle) -> None:
    status = handle.status
    payload = handle.to_dict()
    payload["status"] = status.to_dict() if status is not None else None
    payload["failure"] = str(handle.failure) if handle.failure else None
    print(json.dumps(payload, ensure_ascii=False), flush=True)


def main(argv: Sequence[str] | None = None) -> int:
    """主入口点。"""
    configure_logging()
    options = build_parser().parse_args(argv)

    spec = LaunchSpec.from_mapping(
        {
            "handler": options.handler,
            "args": list(options.args),
            "tethered": not options.untethered,
            "background": options.background,
        }
    )
    controller = LifecycleController(kill_on_exit=True)
    launcher = _make_launcher(options)
    logger.info(f"Spawning {spec.handler!r} via {launcher!r}")

    with SignalManager(controller, handle_sigint=False):
        handle = ProcessHandle(spec, launcher=launcher, controller=controller)
        try:
            handle.run()
            _report(handle)
            if handle.status is None:
                return 1
            if not spec.tethered:
                return 0
            while handle.running:
                time.sleep(POLL_INTERVAL)
            logger.info(f"Worker exited: {handle.status}")
            return 0
        except KeyboardInterrupt:
            logger.info("Interrupted, terminating worker")
            return 130
        finally:
            handle.release()


if __name__ == "__main__":
    sys.exit(main())
