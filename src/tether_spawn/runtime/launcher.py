"""Process launcher with the pid handshake.

This module provides:
- Command line assembly (host entry point + handler + arguments)
- Environment injection (ENV_ID, SUPERVISOR_PID)
- Opening the worker through the shell with a stdin/stdout pipe pair
- The pid handshake: the worker writes its own pid as the sole content of
  its stdout and closes it

Key design points:
- The process returned by Popen may be a shell layer, not the worker. Only
  the pid the worker reports about itself is a trustworthy kill target.
- POSIX: start_new_session=True so the whole tree shares one process group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- The handshake blocks until end-of-stream. A timeout bounds it; without one
  a stalled worker blocks the launcher forever.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import sys
import threading
from typing import Any

from ..config import get_config
from ..errors import HandshakeFailure, LaunchFailure, SpecError
from ..spec import LaunchSpec

__all__ = [
    "IS_WINDOWS",
    "ProcessLauncher",
    "ENV_ID_VAR",
    "SUPERVISOR_PID_VAR",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

ENV_ID_VAR = "ENV_ID"
SUPERVISOR_PID_VAR = "SUPERVISOR_PID"

_UNSET: Any = object()


def quote_token(token: object) -> str:
    """Quote one command line token for the platform shell."""
    text = str(token)
    if IS_WINDOWS:
        return subprocess.list2cmdline([text])
    return shlex.quote(text)


class ProcessLauncher:
    """Turns a LaunchSpec into a running OS process.

    Example:
        launcher = ProcessLauncher(entrypoint="python manage.py")
        process = launcher.open(LaunchSpec.from_handler("reports"))
        pid = launcher.handshake(process)

    Attributes:
        entrypoint: Host entry point that precedes the handler name
        env_id: Value injected as ENV_ID
        handshake_timeout: Seconds to wait for the pid, None waits forever
    """

    def __init__(
        self,
        entrypoint: str | None = None,
        env_id: str | None = None,
        handshake_timeout: float | None = _UNSET,
    ) -> None:
        config = get_config()
        self.entrypoint = entrypoint if entrypoint is not None else config.entrypoint
        self.env_id = env_id if env_id is not None else config.env_id
        self.handshake_timeout = (
            config.handshake_timeout if handshake_timeout is _UNSET else handshake_timeout
        )

    def __repr__(self) -> str:
        return (
            f"ProcessLauncher(entrypoint={self.entrypoint!r}, "
            f"env_id={self.env_id}, "
            f"handshake_timeout={self.handshake_timeout})"
        )

    def build_command(self, spec: LaunchSpec) -> str:
        """Assemble the shell command line for a spec.

        Foreground commands are prefixed with ``exec`` on POSIX so the shell
        is replaced by the worker. Background commands are detached from the
        shell, which then exits without waiting on them.
        """
        tokens = [quote_token(spec.handler)]
        tokens.extend(quote_token(arg) for arg in spec.args)
        command = f"{self.entrypoint} {' '.join(tokens)}"

        if IS_WINDOWS:
            return f'start "" /B {command}' if spec.background else command
        if spec.background:
            return f"{command} &"
        return f"exec {command}"

    def build_env(self) -> dict[str, str]:
        """Host environment plus the two injected variables."""
        env = dict(os.environ)
        env[ENV_ID_VAR] = self.env_id or "local"
        env[SUPERVISOR_PID_VAR] = str(os.getpid())
        return env

    def _build_subprocess_kwargs(self) -> dict[str, Any]:
        """Build platform-specific Popen kwargs."""
        kwargs: dict[str, Any] = {}
        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            # POSIX: start_new_session (equivalent to setsid)
            kwargs["start_new_session"] = True
        return kwargs

    def open(self, spec: LaunchSpec) -> subprocess.Popen:
        """Open the worker process with a stdin/stdout pipe pair.

        Raises:
            LaunchFailure: If the spec has no handler or the OS refuses
        """
        command = self.build_command(spec)

        if not isinstance(spec.handler, str) or not spec.handler.strip():
            raise LaunchFailure("Cannot launch without a handler", command) from SpecError(
                "Launch spec has no handler"
            )

        try:
            process = subprocess.Popen(
                command,
                shell=True,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                env=self.build_env(),
                **self._build_subprocess_kwargs(),
            )
        except (OSError, ValueError) as e:
            raise LaunchFailure(f"Failed to open process: {e}", command) from e

        logger.debug(f"Opened process pid={process.pid} command={command!r}")
        return process

    def handshake(self, process: subprocess.Popen) -> int:
        """Read the worker's self-reported pid from its stdout.

        Blocks until the worker closes its stdout (or exits). The content,
        stripped of whitespace, must be all digits.

        Raises:
            HandshakeFailure: On non-numeric content, a missing pipe, or timeout
        """
        if process.stdout is None:
            raise HandshakeFailure("Process has no readable pipe")

        if not IS_WINDOWS:
            os.set_blocking(process.stdout.fileno(), True)

        if self.handshake_timeout is None:
            raw = process.stdout.read()
        else:
            raw = self._read_with_timeout(process, self.handshake_timeout)

        content = raw.decode("utf-8", errors="replace").strip()
        if not (content.isascii() and content.isdigit()):
            raise HandshakeFailure(
                f"Non-numeric handshake content from pid={process.pid}: {content[:40]!r}",
                content=content,
            )

        pid = int(content)
        logger.debug(f"Handshake complete pid={process.pid} negotiated_pid={pid}")
        return pid

    def _read_with_timeout(self, process: subprocess.Popen, timeout: float) -> bytes:
        """Read stdout to end-of-stream on a reader thread, bounded by timeout.

        The reader thread closes stdout itself once the read returns. After a
        timeout the pipe belongs to that thread and the caller must not close
        it (closing would block on the reader's buffer lock).
        """
        chunks: list[bytes] = []
        errors: list[BaseException] = []

        def reader() -> None:
            try:
                chunks.append(process.stdout.read())
            except (OSError, ValueError) as e:
                errors.append(e)
            finally:
                process.stdout.close()

        thread = threading.Thread(
            target=reader, name=f"handshake-{process.pid}", daemon=True
        )
        thread.start()
        thread.join(timeout)

        if thread.is_alive():
            raise HandshakeFailure(
                f"No pid from process pid={process.pid} within {timeout}s",
                timed_out=True,
            )
        if errors:
            raise HandshakeFailure(f"Handshake read failed: {errors[0]}")
        return b"".join(chunks)
