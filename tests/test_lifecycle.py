"""Lifecycle and tethering tests.

Test coverage:
- tethered=True: worker is gone once the handle's scope ends
- tethered=False: worker outlives the handle
- release() applies the contract exactly once
- release_all() on host exit
- Process-tree kill (grandchildren included)
- Handshake timeout followed by kill
- Background launch: resource liveness diverges from the worker's
"""

from __future__ import annotations

import os
import time
from pathlib import Path
from unittest import mock

import psutil
import pytest

from tether_spawn.errors import HandshakeFailure
from tether_spawn.runtime import (
    IS_WINDOWS,
    HandleState,
    LifecycleController,
    ProcessHandle,
    ProcessLauncher,
    kill_process_tree,
)
from tether_spawn.spec import LaunchSpec

from conftest import is_alive, wait_until_dead


def _read_pid(path: Path, timeout: float = 5.0) -> int:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if path.exists() and path.read_text(encoding="utf-8").strip():
            return int(path.read_text(encoding="utf-8"))
        time.sleep(0.05)
    raise AssertionError(f"{path} was never written")


# =============================================================================
# Tethering Tests
# =============================================================================


@pytest.mark.integration
class TestTethering:
    """Scope-exit contract."""

    def test_tethered_worker_killed_on_scope_exit(
        self, launcher: ProcessLauncher, controller: LifecycleController
    ):
        with ProcessHandle(LaunchSpec.from_positional("sleep", 30), launcher, controller) as handle:
            pid = handle.pid
            assert is_alive(pid)
        assert wait_until_dead(pid)
        assert handle.state is HandleState.DISPOSED
        assert handle.running is False
        assert handle.status is None
        assert controller.tracked == []

    def test_tethered_worker_killed_when_block_raises(
        self, launcher: ProcessLauncher, controller: LifecycleController
    ):
        pid = None
        with pytest.raises(RuntimeError):
            with ProcessHandle(
                LaunchSpec.from_positional("sleep", 30), launcher, controller
            ) as handle:
                pid = handle.pid
                raise RuntimeError("boom")
        assert pid is not None
        assert wait_until_dead(pid)

    def test_untethered_worker_survives_release(
        self,
        launcher: ProcessLauncher,
        controller: LifecycleController,
        stray_pids: list[int],
    ):
        spec = LaunchSpec.from_mapping({"handler": "sleep", "args": "30", "tethered": False})
        with ProcessHandle(spec, launcher, controller) as handle:
            pid = handle.pid
            stray_pids.append(pid)
            assert handle not in controller.tracked
        assert handle.state is HandleState.DETACHED
        assert handle.status is None
        time.sleep(0.2)
        assert is_alive(pid)

    def test_explicit_kill(self, launcher: ProcessLauncher, controller: LifecycleController):
        handle = ProcessHandle(LaunchSpec.from_positional("sleep", 30), launcher, controller)
        handle.run()
        pid = handle.pid
        handle.kill()
        assert wait_until_dead(pid)
        assert handle.state is HandleState.DISPOSED
        # Releasing afterwards does not touch a disposed resource.
        handle.release()
        assert handle.status is None

    def test_kill_falls_back_to_resource_pid(
        self, launcher: ProcessLauncher, controller: LifecycleController
    ):
        with ProcessHandle(LaunchSpec.from_positional("silent", 30), launcher, controller) as handle:
            assert handle.pid is None
            resource_pid = handle.status.pid
            with mock.patch(
                "tether_spawn.runtime.handle.kill_process_tree",
                wraps=kill_process_tree,
            ) as killer:
                handle.kill()
        killer.assert_called_once_with(resource_pid)
        assert wait_until_dead(resource_pid)


class TestReleaseOnce:
    """release() is applied exactly once."""

    def test_release_calls_controller_once(self, launcher: ProcessLauncher):
        controller = mock.MagicMock(spec=LifecycleController)
        handle = ProcessHandle(LaunchSpec.from_handler("sleep"), launcher, controller)
        handle.release()
        handle.release()
        handle.__exit__(None, None, None)
        controller.release.assert_called_once_with(handle)

    def test_controller_kills_tethered(self, launcher: ProcessLauncher):
        controller = LifecycleController(kill_on_exit=False)
        handle = mock.MagicMock()
        handle.spec = LaunchSpec.from_handler("sleep")
        controller.release(handle)
        handle.kill.assert_called_once_with()
        handle.detach.assert_not_called()

    def test_controller_detaches_untethered(self, launcher: ProcessLauncher):
        controller = LifecycleController(kill_on_exit=False)
        handle = mock.MagicMock()
        handle.spec = LaunchSpec.from_mapping({"handler": "sleep", "tethered": False})
        controller.release(handle)
        handle.detach.assert_called_once_with()
        handle.kill.assert_not_called()


# =============================================================================
# Host Exit Tests
# =============================================================================


class TestHostExit:
    """release_all and atexit registration."""

    def test_atexit_registered_once(self):
        controller = LifecycleController(kill_on_exit=True)
        with mock.patch("tether_spawn.runtime.lifecycle.atexit.register") as register:
            controller.track(mock.MagicMock())
            controller.track(mock.MagicMock())
        register.assert_called_once_with(controller.release_all)

    def test_no_atexit_when_disabled(self):
        controller = LifecycleController(kill_on_exit=False)
        with mock.patch("tether_spawn.runtime.lifecycle.atexit.register") as register:
            controller.track(mock.MagicMock())
        register.assert_not_called()

    def test_release_all_survives_errors(self):
        controller = LifecycleController(kill_on_exit=False)
        bad = mock.MagicMock()
        bad.release.side_effect = RuntimeError("broken")
        good = mock.MagicMock()
        controller.track(bad)
        controller.track(good)
        assert controller.release_all() == 2
        good.release.assert_called_once_with()

    @pytest.mark.integration
    def test_release_all_kills_tethered_children(
        self, launcher: ProcessLauncher, controller: LifecycleController
    ):
        handles = [
            ProcessHandle(LaunchSpec.from_positional("sleep", 30, True), launcher, controller)
            for _ in range(3)
        ]
        pids = [h.pid for h in handles]
        assert len(controller.tracked) == 3
        assert controller.release_all() == 3
        for pid in pids:
            assert wait_until_dead(pid)
        assert controller.tracked == []


# =============================================================================
# Process Tree Tests
# =============================================================================


class TestKillProcessTree:
    """Forced termination of a process tree."""

    def test_refuses_own_pid(self):
        assert kill_process_tree(os.getpid()) is False

    def test_refuses_invalid_pid(self):
        assert kill_process_tree(0) is False

    def test_missing_process(self):
        with mock.patch(
            "tether_spawn.runtime.lifecycle.psutil.Process",
            side_effect=psutil.NoSuchProcess(999999),
        ):
            assert kill_process_tree(999999) is False

    @pytest.mark.integration
    def test_grandchild_killed(
        self, launcher: ProcessLauncher, controller: LifecycleController, tmp_path: Path
    ):
        marker = tmp_path / "child.pid"
        with ProcessHandle(
            LaunchSpec.from_positional("spawn-child", str(marker)), launcher, controller
        ) as handle:
            worker_pid = handle.pid
            child_pid = _read_pid(marker)
            assert is_alive(child_pid)
        assert wait_until_dead(worker_pid)
        assert wait_until_dead(child_pid)


# =============================================================================
# Handshake Timeout Tests
# =============================================================================


@pytest.mark.integration
class TestHandshakeTimeout:
    """A stalled worker no longer blocks the launcher forever."""

    def test_timeout_then_kill(self, entrypoint: str, controller: LifecycleController):
        launcher = ProcessLauncher(entrypoint=entrypoint, handshake_timeout=0.5)
        started = time.monotonic()
        with ProcessHandle(LaunchSpec.from_positional("hang", 30), launcher, controller) as handle:
            assert time.monotonic() - started < 10
            assert handle.pid is None
            assert isinstance(handle.failure, HandshakeFailure)
            assert handle.failure.timed_out is True
            assert handle.running is True
            resource_pid = handle.status.pid
        assert wait_until_dead(resource_pid)


# =============================================================================
# Background Tests
# =============================================================================


@pytest.mark.integration
@pytest.mark.skipif(IS_WINDOWS, reason="POSIX shell background")
class TestBackground:
    """Background launches go through a shell layer."""

    def test_resource_exits_while_worker_runs(
        self,
        launcher: ProcessLauncher,
        controller: LifecycleController,
        stray_pids: list[int],
    ):
        spec = LaunchSpec.from_mapping(
            {"handler": "sleep", "args": "30", "tethered": False, "background": True}
        )
        handle = ProcessHandle(spec, launcher, controller)
        handle.run()
        stray_pids.append(handle.pid)
        try:
            assert handle.pid is not None
            assert handle.pid != handle.status.pid
            deadline = time.monotonic() + 5
            while handle.running and time.monotonic() < deadline:
                time.sleep(0.05)
            # The shell is gone; the negotiated worker is not.
            assert handle.running is False
            assert is_alive(handle.pid)
        finally:
            handle.release()
        assert is_alive(stray_pids[0])
