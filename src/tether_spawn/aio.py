"""Async bridge for hosts running an event loop.

The launch and handshake block, so they run on a worker thread via anyio.
Release happens inside a shielded cancel scope so a cancelled task still
kills its tethered children.

Example:
    async with supervise(LaunchSpec.from_handler("reports")) as handle:
        await do_other_things()
    # tethered: worker killed here, even on cancellation
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import partial

import anyio

from .runtime import LifecycleController, ProcessHandle, ProcessLauncher
from .spec import LaunchSpec

__all__ = ["acreate", "arelease", "arun", "supervise"]

logger = logging.getLogger(__name__)


async def arun(handle: ProcessHandle) -> ProcessHandle:
    """Run handle.run() without blocking the event loop."""
    return await anyio.to_thread.run_sync(handle.run)


async def arelease(handle: ProcessHandle) -> None:
    """Release a handle; cancellation cannot interrupt it."""
    with anyio.CancelScope(shield=True):
        await anyio.to_thread.run_sync(handle.release)


async def acreate(
    spec: LaunchSpec,
    launcher: ProcessLauncher | None = None,
    controller: LifecycleController | None = None,
) -> ProcessHandle:
    """Async convenience factory: tethered, foreground, already launched."""
    return await anyio.to_thread.run_sync(
        partial(ProcessHandle.create, spec, launcher=launcher, controller=controller)
    )


@asynccontextmanager
async def supervise(
    spec: LaunchSpec,
    launcher: ProcessLauncher | None = None,
    controller: LifecycleController | None = None,
) -> AsyncIterator[ProcessHandle]:
    """Launch a handle for the duration of an ``async with`` block."""
    handle = ProcessHandle(
        spec.with_options(immediate=False), launcher=launcher, controller=controller
    )
    try:
        await arun(handle)
        yield handle
    finally:
        await arelease(handle)
        logger.debug("Released handle=%s", handle)
