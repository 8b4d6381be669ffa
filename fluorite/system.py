"""Process-level helpers behind the system.* IPC methods."""

from __future__ import annotations

import asyncio
import logging
import platform
import time
from typing import TYPE_CHECKING, Any

from fluorite import __version__

if TYPE_CHECKING:
    from fluorite.ipc.server import IPCServer

logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 0.1

# Keeps scheduled shutdown tasks referenced until they finish
_background_tasks: set[asyncio.Task[Any]] = set()


def ping() -> dict[str, Any]:
    """Liveness answer with a millisecond timestamp."""
    return {"pong": True, "timestamp": int(time.time() * 1000)}


def get_version_info() -> dict[str, str]:
    return {"version": __version__, "runtimeVersion": platform.python_version()}


def schedule_shutdown(
    server: IPCServer,
    delay: float = SHUTDOWN_GRACE_SECONDS,
) -> asyncio.Task[None]:
    """Stop the server after a short delay.

    The delay lets the response to system.shutdown reach the client before
    connections are closed. The hosting process exits once serve_forever()
    returns.
    """

    async def _shutdown() -> None:
        await asyncio.sleep(delay)
        logger.info("Shutdown requested over IPC")
        await server.stop()

    task = asyncio.create_task(_shutdown())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task
