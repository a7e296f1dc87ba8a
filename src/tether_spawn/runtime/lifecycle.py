"""Tethering contract and forced termination.

This module provides:
- kill_process_tree: forced, fire-and-forget termination of a process and
  all of its descendants
- LifecycleController: releases handles on scope exit (tethered -> kill,
  untethered -> detach) and, when enabled, kills every tracked tethered
  child when the host interpreter exits

Termination strategy:
1. Snapshot the tree via psutil before signalling (children get reparented
   once their parent dies)
2. Kill every member (SIGKILL on POSIX, TerminateProcess on Windows)
3. POSIX: SIGKILL the process group too, unless it is our own group
"""

from __future__ import annotations

import atexit
import logging
import os
import signal
import threading
from typing import TYPE_CHECKING

import psutil

from ..config import get_config
from ..errors import KillFailure
from .launcher import IS_WINDOWS

if TYPE_CHECKING:
    from .handle import ProcessHandle

__all__ = [
    "LifecycleController",
    "get_controller",
    "kill_process_tree",
]

logger = logging.getLogger(__name__)


def _collect_tree(pid: int) -> list[psutil.Process]:
    """Return the process and its descendants, deepest first."""
    root = psutil.Process(pid)
    try:
        children = root.children(recursive=True)
    except psutil.Error:
        children = []
    return list(reversed(children)) + [root]


def _killpg(pid: int) -> None:
    """SIGKILL the process group of pid, never our own group."""
    try:
        pgid = os.getpgid(pid)
    except ProcessLookupError:
        return
    except OSError as e:
        logger.debug(f"getpgid failed pid={pid}: {e}")
        return
    if pgid == os.getpgrp():
        return
    try:
        os.killpg(pgid, signal.SIGKILL)
        logger.debug(f"Sent SIGKILL to process group pgid={pgid}")
    except ProcessLookupError:
        pass
    except OSError as e:
        logger.debug(f"killpg failed pgid={pgid}: {e}")


def kill_process_tree(pid: int) -> bool:
    """Force-kill a process and its descendants.

    The outcome is not verified. Failures are logged, never raised.

    Args:
        pid: Root of the tree to kill

    Returns:
        Whether a signal was issued to the root process
    """
    if pid <= 0 or pid == os.getpid():
        logger.warning(f"Refusing to kill pid={pid}")
        return False

    try:
        procs = _collect_tree(pid)
    except psutil.NoSuchProcess:
        logger.debug(f"Process already gone pid={pid}")
        return False
    except psutil.Error as e:
        logger.warning(str(KillFailure(pid, f"cannot inspect process: {e}")))
        return False

    if not IS_WINDOWS:
        _killpg(pid)

    issued = False
    for proc in procs:
        try:
            proc.kill()
            if proc.pid == pid:
                issued = True
        except psutil.NoSuchProcess:
            if proc.pid == pid:
                issued = True
        except psutil.Error as e:
            logger.warning(str(KillFailure(proc.pid, f"kill not delivered: {e}")))

    logger.debug(f"Killed process tree pid={pid} size={len(procs)}")
    return issued


class LifecycleController:
    """Enforces the tethering contract for launched handles.

    Tethered handles register themselves after launch; releasing a handle
    unregisters it. ``release_all`` kills whatever is still tracked, and is
    hooked to ``atexit`` when ``kill_on_exit`` is enabled.

    Example:
        controller = LifecycleController()
        with ProcessHandle(spec, controller=controller) as handle:
            ...
        # handle released: killed if tethered, detached otherwise
    """

    def __init__(self, kill_on_exit: bool | None = None) -> None:
        if kill_on_exit is None:
            kill_on_exit = get_config().kill_on_exit
        self.kill_on_exit = kill_on_exit
        self._handles: list[ProcessHandle] = []
        self._lock = threading.Lock()
        self._atexit_registered = False

    def track(self, handle: ProcessHandle) -> None:
        """Start tracking a launched tethered handle."""
        with self._lock:
            if handle in self._handles:
                return
            self._handles.append(handle)
            if self.kill_on_exit and not self._atexit_registered:
                atexit.register(self.release_all)
                self._atexit_registered = True
        logger.debug(f"Tracking {handle!r}")

    def untrack(self, handle: ProcessHandle) -> bool:
        with self._lock:
            if handle in self._handles:
                self._handles.remove(handle)
                return True
        return False

    @property
    def tracked(self) -> list[ProcessHandle]:
        with self._lock:
            return list(self._handles)

    def release(self, handle: ProcessHandle) -> None:
        """Apply the tethering contract to one handle.

        tethered=True kills the child; tethered=False detaches it and lets it
        outlive the supervisor.
        """
        self.untrack(handle)
        if handle.spec.tethered:
            handle.kill()
        else:
            handle.detach()

    def release_all(self) -> int:
        """Release every tracked handle.

        Returns:
            Number of handles released
        """
        handles = self.tracked
        for handle in handles:
            try:
                handle.release()
            except Exception as e:
                logger.warning(f"Error releasing {handle!r}: {e}")
        if handles:
            logger.info(f"Released {len(handles)} tethered process(es)")
        return len(handles)


# 全局实例（延迟创建）
_controller: LifecycleController | None = None


def get_controller() -> LifecycleController:
    """Return the process-wide controller."""
    global _controller
    if _controller is None:
        _controller = LifecycleController()
    return _controller
