"""Wire the IPC server to the CLI's dashboards, project generator and process.

setup_ipc_server() registers the public method set:

    dashboard.getData          dashboard.deployWorker     dashboard.listR2Buckets
    dashboard.createR2Bucket   dashboard.deleteR2Bucket   dashboard.tailLogs (stream)
    project.create
    system.ping                system.version             system.shutdown
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from fluorite.config import IPCServerOptions, get_config
from fluorite.dashboard.wrangler import WranglerDashboard
from fluorite.errors import ProjectError
from fluorite.ipc.server import EVENT_ERROR, EVENT_LISTENING, IPCServer
from fluorite.observability.logging import configure_structured_logging
from fluorite.project import ProjectConfig
from fluorite.project import create_project as default_create_project
from fluorite.system import get_version_info, ping, schedule_shutdown

logger = logging.getLogger(__name__)

ProjectCreator = Callable[[ProjectConfig], Awaitable[None]]

READY_MESSAGE_TYPE = "ipc-server-ready"


class _Params(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DeployWorkerParams(_Params):
    name: str | None = None
    env: str | None = None
    dry_run: bool = True


class BucketParams(_Params):
    name: str = Field(min_length=1)


class TailLogsParams(_Params):
    worker_name: str | None = None
    format: Literal["json", "pretty"] | None = None
    status: Literal["ok", "error"] | None = None
    method: str | None = None
    search: str | None = None


class ProjectCreateParams(_Params):
    framework: str
    name: str
    path: str
    database: str | None = None
    orm: str | None = None
    storage: str | None = None
    auth: bool = False
    deployment: bool = False
    package_manager: str | None = None

    def to_config(self) -> ProjectConfig:
        return ProjectConfig.model_validate(
            {
                "framework": self.framework,
                "project_name": self.name,
                "project_path": self.path,
                "database": self.database or "none",
                "orm": self.orm,
                "storage": self.storage or "none",
                "auth": self.auth,
                "deployment": self.deployment,
                "package_manager": self.package_manager or "npm",
                "mode": "full",
            }
        )


def setup_ipc_server(
    options: IPCServerOptions | None = None,
    *,
    dashboard: WranglerDashboard | None = None,
    create_project: ProjectCreator | None = None,
) -> IPCServer:
    """Create an IPC server with every public method registered."""
    server = IPCServer(options)
    dashboard = dashboard or WranglerDashboard(get_config().wrangler_path)
    creator = create_project or default_create_project

    # Dashboard methods
    async def get_data() -> Any:
        return await dashboard.get_dashboard_data()

    async def deploy_worker(params: DeployWorkerParams) -> dict[str, Any]:
        return await dashboard.deploy_worker(
            name=params.name, env=params.env, dry_run=params.dry_run
        )

    async def list_buckets() -> Any:
        return await dashboard.list_r2_buckets()

    async def create_bucket(params: BucketParams) -> dict[str, Any]:
        return await dashboard.create_r2_bucket(params.name)

    async def delete_bucket(params: BucketParams) -> dict[str, Any]:
        return await dashboard.delete_r2_bucket(params.name)

    def tail_logs(params: TailLogsParams) -> AsyncIterator[str]:
        # The server closes the returned generator, which stops wrangler tail
        return dashboard.tail_logs(
            params.worker_name,
            format=params.format,
            status=params.status,
            method=params.method,
            search=params.search,
        )

    server.register_method("dashboard.getData", get_data)
    server.register_method("dashboard.deployWorker", deploy_worker, params_model=DeployWorkerParams)
    server.register_method("dashboard.listR2Buckets", list_buckets)
    server.register_method("dashboard.createR2Bucket", create_bucket, params_model=BucketParams)
    server.register_method("dashboard.deleteR2Bucket", delete_bucket, params_model=BucketParams)
    server.register_method(
        "dashboard.tailLogs", tail_logs, streaming=True, params_model=TailLogsParams
    )

    # Project creation
    async def project_create(params: ProjectCreateParams) -> dict[str, Any]:
        config = params.to_config()
        try:
            await creator(config)
        except Exception as e:
            raise ProjectError(f"Project creation failed: {e}", cause=e) from e
        return {"success": True, "projectPath": str(config.project_path)}

    server.register_method("project.create", project_create, params_model=ProjectCreateParams)

    # System methods
    async def shutdown() -> dict[str, bool]:
        schedule_shutdown(server)
        return {"success": True}

    server.register_method("system.ping", ping)
    server.register_method("system.version", get_version_info)
    server.register_method("system.shutdown", shutdown)

    return server


async def serve_until_stopped(server: IPCServer) -> int:
    """Start server and block until SIGINT/SIGTERM or system.shutdown.

    Returns:
        Process exit code: 0 after a clean stop, 1 if the endpoint cannot be bound.
    """
    try:
        await server.start()
    except OSError as e:
        logger.error("Failed to start IPC server: %s", e)
        return 1

    loop = asyncio.get_running_loop()
    stop_tasks: list[asyncio.Task[None]] = []

    def shutdown_handler() -> None:
        logger.info("Shutdown signal received")
        stop_tasks.append(asyncio.create_task(server.stop()))

    installed: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, shutdown_handler)
            installed.append(sig)
        except NotImplementedError:
            logger.debug("Signal handlers unavailable on this platform")

    try:
        await server.serve_forever()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await server.stop()
    return 0


async def start_ipc_daemon(
    options: IPCServerOptions | None = None,
    *,
    verbose: bool = False,
    server: IPCServer | None = None,
) -> int:
    """Run the IPC server as a background daemon for a parent process.

    Logs go to stderr as JSON lines. Once listening, one JSON line is printed
    to stdout so the parent can read the address and token:
        {"type": "ipc-server-ready", "port": 9123, "host": "127.0.0.1", "token": "..."}

    Returns:
        Process exit code.
    """
    configure_structured_logging(logging.DEBUG if verbose else logging.INFO)
    server = server or setup_ipc_server(options)

    def on_listening(info: dict[str, Any]) -> None:
        print(json.dumps({"type": READY_MESSAGE_TYPE, **info}), flush=True)

    def on_error(error: Exception) -> None:
        logger.error("IPC server error: %s", error)

    server.on(EVENT_LISTENING, on_listening)
    server.on(EVENT_ERROR, on_error)
    return await serve_until_stopped(server)
