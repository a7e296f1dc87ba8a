"""Runtime module for spawning and supervising worker processes.

This module provides the launcher (command line, environment, pid
handshake), the supervisory handle, and the lifecycle controller that
enforces the tethering contract.
"""

from __future__ import annotations

from .handle import HandleState, LaunchLatch, ProcessHandle, StatusSnapshot, create
from .launcher import IS_WINDOWS, ProcessLauncher
from .lifecycle import LifecycleController, get_controller, kill_process_tree

__all__ = [
    "IS_WINDOWS",
    "HandleState",
    "LaunchLatch",
    "LifecycleController",
    "ProcessHandle",
    "ProcessLauncher",
    "StatusSnapshot",
    "create",
    "get_controller",
    "kill_process_tree",
]
