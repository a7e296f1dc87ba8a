"""Worker-side half of the pid handshake.

A worker launched by ProcessLauncher must, as soon as it knows its own pid,
write that pid as the only content of stdout and close it. The supervisor
blocks until stdout reaches end-of-stream, so anything printed before the
announcement breaks the handshake and anything printed after it is lost.

    from tether_spawn.worker import announce_pid

    def main():
        announce_pid()
        do_the_work()
"""

from __future__ import annotations

import os
import sys
from typing import IO

__all__ = ["announce_pid", "env_id", "supervisor_pid"]


def announce_pid(stream: IO[str] | None = None) -> int:
    """Write our pid to stdout, then close it.

    File descriptor 1 is re-pointed at os.devnull so later prints (or child
    processes that inherit stdout) neither fail nor keep the pipe open.

    Args:
        stream: Stream to write to (default sys.stdout)

    Returns:
        The announced pid
    """
    pid = os.getpid()
    stream = stream if stream is not None else sys.stdout
    stream.write(str(pid))
    stream.flush()

    if stream is sys.stdout or stream is sys.__stdout__:
        devnull = os.open(os.devnull, os.O_WRONLY)
        try:
            os.dup2(devnull, 1)
        finally:
            os.close(devnull)
    else:
        stream.close()
    return pid


def supervisor_pid() -> int | None:
    """pid of the launching process, from SUPERVISOR_PID."""
    value = os.environ.get("SUPERVISOR_PID", "")
    return int(value) if value.isascii() and value.isdigit() else None


def env_id() -> str:
    """Environment identifier injected as ENV_ID."""
    return os.environ.get("ENV_ID", "local")
