"""Supervisory handle for one spawned worker.

A ProcessHandle owns exactly one OS process resource and its pipe pair.
Status is computed on demand, never cached. Releasing the handle (explicitly
or by leaving a ``with`` block) applies the tethering contract exactly once.
"""

from __future__ import annotations

import logging
import signal
import subprocess
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import IO, Any

import psutil

from ..config import get_config
from ..errors import AccessError, HandshakeFailure, LaunchFailure, SpawnError
from ..spec import LaunchSpec
from .launcher import IS_WINDOWS, ProcessLauncher
from .lifecycle import LifecycleController, get_controller, kill_process_tree

__all__ = [
    "HandleState",
    "LaunchLatch",
    "ProcessHandle",
    "StatusSnapshot",
    "create",
]

logger = logging.getLogger(__name__)

ACCESSORS = frozenset({"pid", "status", "running"})


class LaunchLatch(Enum):
    """One-shot launch latch."""

    UNLAUNCHED = "unlaunched"
    LAUNCHED = "launched"


class HandleState(Enum):
    """Handle lifecycle.

    - PENDING: constructed, not launched
    - LAUNCHED: run() has opened (or tried to open) the process
    - TERMINATED: killed, or the resource was seen to exit on its own
    - DISPOSED: pipes closed, resource released
    - DETACHED: released without killing, worker left running
    """

    PENDING = "pending"
    LAUNCHED = "launched"
    TERMINATED = "terminated"
    DISPOSED = "disposed"
    DETACHED = "detached"


@dataclass(frozen=True)
class StatusSnapshot:
    """Point-in-time status of the OS-open resource.

    Attributes:
        command: Command line passed to the shell
        pid: pid of the OS-open resource (may be a shell, not the worker)
        running: Resource has not exited
        signaled: Resource was terminated by a signal
        stopped: Resource is stopped (job control)
        exitcode: Exit code, -1 while not exited or when signaled
        termsig: Terminating signal number, 0 if none
        stopsig: Stopping signal number, 0 if not stopped
    """

    command: str
    pid: int
    running: bool
    signaled: bool
    stopped: bool
    exitcode: int
    termsig: int
    stopsig: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _is_stopped(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() == psutil.STATUS_STOPPED
    except psutil.Error:
        return False


class ProcessHandle:
    """Supervises one child worker.

    Only ``pid``, ``status`` and ``running`` are queryable; any other
    attribute lookup that is not defined on the class raises AccessError.

    ``running`` reports the liveness of the process Popen opened. When the
    command runs through a shell layer that forks the worker (background
    mode), that resource can exit while the negotiated worker keeps running.
    This divergence is intentional and is why ``pid`` comes from the
    handshake.

    Example:
        spec = LaunchSpec.from_positional("reports", "daily")
        with ProcessHandle(spec) as handle:
            handle.run()
            print(handle.pid, handle.running)
        # tethered: worker killed here

    Args:
        spec: What to launch
        launcher: Launcher to use (default built from config)
        controller: Lifecycle controller (default the process-wide one)
    """

    def __init__(
        self,
        spec: LaunchSpec,
        launcher: ProcessLauncher | None = None,
        controller: LifecycleController | None = None,
    ) -> None:
        self._spec = spec
        self._launcher = launcher or ProcessLauncher()
        self._controller = controller or get_controller()

        self._negotiated_pid: int | None = None
        self._process: subprocess.Popen | None = None
        self._pipes: tuple[IO[bytes] | None, IO[bytes] | None] = (None, None)
        self._command: str = self._launcher.build_command(spec)
        self._created_at: datetime | None = None
        self._latch = LaunchLatch.UNLAUNCHED
        self._state = HandleState.PENDING
        self._released = False
        self._failure: SpawnError | None = None

        if spec.immediate:
            self.run()

    # -- accessors ---------------------------------------------------------

    @property
    def spec(self) -> LaunchSpec:
        return self._spec

    @property
    def pid(self) -> int | None:
        """pid reported by the worker during the handshake, or None."""
        return self._negotiated_pid

    @property
    def status(self) -> StatusSnapshot | None:
        """Status of the OS-open resource, None if it is not valid."""
        process = self._process
        if process is None:
            return None

        returncode = process.poll()
        running = returncode is None
        signaled = returncode is not None and returncode < 0
        stopped = running and not IS_WINDOWS and _is_stopped(process.pid)
        if not running and self._state is HandleState.LAUNCHED:
            self._state = HandleState.TERMINATED

        return StatusSnapshot(
            command=self._command,
            pid=process.pid,
            running=running,
            signaled=signaled,
            stopped=stopped,
            exitcode=returncode if returncode is not None and returncode >= 0 else -1,
            termsig=-returncode if signaled else 0,
            # psutil does not expose the stopping signal; report SIGSTOP.
            stopsig=int(signal.SIGSTOP) if stopped else 0,
        )

    @property
    def running(self) -> bool:
        status = self.status
        return status.running if status is not None else False

    def query(self, name: str) -> Any:
        """Look up one of the supported accessors by name.

        Raises:
            AccessError: If name is not pid, status or running
        """
        if name not in ACCESSORS:
            raise AccessError(name)
        return getattr(self, name)

    def __getattr__(self, name: str) -> Any:
        # Only reached when normal lookup fails.
        if name.startswith("__"):
            raise AttributeError(name)
        raise AccessError(name)

    @property
    def created_at(self) -> datetime | None:
        return self._created_at

    @property
    def latch(self) -> LaunchLatch:
        return self._latch

    @property
    def state(self) -> HandleState:
        return self._state

    @property
    def failure(self) -> SpawnError | None:
        """Launch or handshake failure recorded by run(), if any."""
        return self._failure

    @property
    def command(self) -> str:
        return self._command

    # -- launch ------------------------------------------------------------

    def run(self) -> "ProcessHandle":
        """Launch the worker and negotiate its pid.

        Idempotent: calls after the first return the handle unchanged.
        Failures are recorded on ``failure`` instead of being raised.
        """
        if self._latch is LaunchLatch.LAUNCHED:
            return self

        self._latch = LaunchLatch.LAUNCHED
        self._state = HandleState.LAUNCHED
        self._created_at = datetime.now()

        try:
            self._process = self._launcher.open(self._spec)
        except LaunchFailure as e:
            self._failure = e
            logger.warning(f"Launch failed for handler={self._spec.handler!r}: {e}")
            return self

        self._pipes = (self._process.stdin, self._process.stdout)
        if self._spec.tethered:
            self._controller.track(self)

        try:
            self._negotiated_pid = self._launcher.handshake(self._process)
        except HandshakeFailure as e:
            self._failure = e
            logger.warning(f"Handshake failed for handler={self._spec.handler!r}: {e}")

        logger.debug("Launched handle=%s", self)
        return self

    def __call__(self) -> "ProcessHandle":
        return self.run()

    # -- termination -------------------------------------------------------

    def kill(self) -> None:
        """Force-kill the worker tree, then close pipes and release the resource.

        Targets the negotiated pid, falling back to the OS-open resource pid.
        Fire-and-forget: delivery is not verified. No-op when there is no
        valid resource. A foreground worker that already exited is only
        disposed, never signaled.
        """
        status = self.status
        if status is None:
            return

        target = self._negotiated_pid if self._negotiated_pid is not None else status.pid
        if target == status.pid and not status.running:
            # Already reaped; the pid may belong to an unrelated process now.
            logger.debug(f"Worker already exited handler={self._spec.handler!r} pid={target}")
        else:
            logger.debug(f"Killing handler={self._spec.handler!r} target_pid={target}")
            kill_process_tree(target)
            if target != status.pid and status.running:
                kill_process_tree(status.pid)

        self._state = HandleState.TERMINATED
        self._dispose(wait=True)
        self._controller.untrack(self)

    def detach(self) -> None:
        """Drop local bookkeeping without killing the worker."""
        if self._process is None:
            return
        self._dispose(wait=False)
        self._state = HandleState.DETACHED
        logger.debug(f"Detached handler={self._spec.handler!r} pid={self._negotiated_pid}")

    def release(self) -> None:
        """Scope-exit operation, applied exactly once.

        tethered=True kills the worker; tethered=False detaches from it.
        """
        if self._released:
            return
        self._released = True
        self._controller.release(self)

    def _close_pipes(self) -> None:
        stdin, stdout = self._pipes
        # A timed-out handshake leaves stdout with its reader thread.
        reader_owns_stdout = isinstance(self._failure, HandshakeFailure) and self._failure.timed_out
        for pipe in (stdin, None if reader_owns_stdout else stdout):
            if pipe is None or pipe.closed:
                continue
            try:
                pipe.close()
            except OSError as e:
                logger.debug(f"Error closing pipe: {e}")
        self._pipes = (None, None)

    def _dispose(self, wait: bool) -> None:
        process = self._process
        if process is None:
            return

        self._close_pipes()
        if wait:
            try:
                process.wait(timeout=get_config().kill_timeout)
            except subprocess.TimeoutExpired:
                logger.warning(f"Process did not exit after kill pid={process.pid}")

        # Unreaped, still-running Popen objects are reaped by subprocess itself.
        self._process = None
        if self._state is not HandleState.DETACHED:
            self._state = HandleState.DISPOSED

    # -- scope -------------------------------------------------------------

    def __enter__(self) -> "ProcessHandle":
        return self.run()

    def __exit__(self, *args: object) -> None:
        self.release()

    # -- serialization -----------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Read-only projection for logging and transport."""
        return {
            "pid": self._negotiated_pid,
            "handler": self._spec.handler,
            "args": list(self._spec.args),
            "tethered": self._spec.tethered,
            "background": self._spec.background,
        }

    def __repr__(self) -> str:
        return (
            f"ProcessHandle(handler={self._spec.handler!r}, "
            f"pid={self._negotiated_pid}, "
            f"state={self._state.value}, "
            f"tethered={self._spec.tethered})"
        )

    @classmethod
    def create(
        cls,
        spec: LaunchSpec,
        launcher: ProcessLauncher | None = None,
        controller: LifecycleController | None = None,
    ) -> "ProcessHandle":
        """Spawn and track: tethered, foreground, already launched."""
        spec = spec.with_options(tethered=True, background=False, immediate=True)
        return cls(spec, launcher=launcher, controller=controller)


def create(
    spec: LaunchSpec,
    launcher: ProcessLauncher | None = None,
    controller: LifecycleController | None = None,
) -> ProcessHandle:
    """Convenience factory, see ProcessHandle.create."""
    return ProcessHandle.create(spec, launcher=launcher, controller=controller)
