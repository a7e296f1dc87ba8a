"""tether-spawn - 启动、监督并终止宿主应用派生的子工作进程。

环境变量:
    SPAWN_ENV_ID: 注入子进程的环境标识 (默认 local)
    SPAWN_ENTRYPOINT: 宿主应用入口命令
    SPAWN_HANDSHAKE_TIMEOUT: pid 握手超时 (默认 30 秒)

用法:
    from tether_spawn import LaunchSpec, ProcessHandle

    with ProcessHandle(LaunchSpec.from_positional("reports", "daily")) as handle:
        print(handle.pid, handle.running)
"""

__version__ = "0.1.0"

from .errors import (
    AccessError,
    HandshakeFailure,
    KillFailure,
    LaunchFailure,
    SpawnError,
    SpecError,
)
from .runtime import (
    HandleState,
    LaunchLatch,
    LifecycleController,
    ProcessHandle,
    ProcessLauncher,
    StatusSnapshot,
    create,
    get_controller,
)
from .spec import LaunchSpec

__all__ = [
    "__version__",
    "AccessError",
    "HandleState",
    "HandshakeFailure",
    "KillFailure",
    "LaunchFailure",
    "LaunchLatch",
    "LaunchSpec",
    "LifecycleController",
    "ProcessHandle",
    "ProcessLauncher",
    "SpawnError",
    "SpecError",
    "StatusSnapshot",
    "create",
    "get_controller",
]
