"""Wrangler CLI wrapper for the Cloudflare dashboard methods.

Every operation shells out to `wrangler` with asyncio subprocesses so the
IPC event loop is never blocked. Listing commands degrade to empty results
when Wrangler is missing or unauthenticated; mutating commands report
success or failure with the command output as the message.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from fluorite.errors import DashboardError, ErrorCode
from fluorite.observability.logging import timed_operation

logger = logging.getLogger(__name__)

LogFormat = Literal["json", "pretty"]

_LOGGED_IN_RE = re.compile(r"logged in as:\s*(\S+)", re.IGNORECASE)
_ACCOUNT_ID_RE = re.compile(r"Account ID:\s*(\S+)", re.IGNORECASE)
_WORKER_LINE_RE = re.compile(r"Worker:\s*(.+)")
_KV_LINE_RE = re.compile(r"(\w+):\s*(.+)")


class WranglerWorker(BaseModel):
    name: str
    id: str | None = None
    created_on: str | None = None
    modified_on: str | None = None
    etag: str | None = None
    routes: list[str] | None = None
    usage_model: str | None = None


class WranglerR2Bucket(BaseModel):
    name: str
    created_on: str | None = None
    location: str | None = None


class WranglerKVNamespace(BaseModel):
    id: str
    title: str
    supports_url_encoding: bool | None = None


class DashboardData(BaseModel):
    """Aggregated account resources, serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    workers: list[WranglerWorker] = Field(default_factory=list)
    r2_buckets: list[WranglerR2Bucket] = Field(default_factory=list)
    kv_namespaces: list[WranglerKVNamespace] = Field(default_factory=list)
    durable_objects: list[dict[str, Any]] = Field(default_factory=list)
    deployments: list[dict[str, Any]] = Field(default_factory=list)


@dataclass
class CommandResult:
    """Outcome of one Wrangler invocation."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _operation_result(result: CommandResult) -> dict[str, Any]:
    if result.ok:
        return {"success": True, "message": result.stdout}
    return {"success": False, "message": result.stderr or result.stdout}


class WranglerDashboard:
    """Thin async wrapper over the Wrangler CLI."""

    def __init__(self, wrangler_path: str = "wrangler") -> None:
        self.wrangler_path = wrangler_path

    async def _run(self, *args: str) -> CommandResult:
        """Run wrangler with args and capture its output.

        Raises:
            DashboardError: If the executable cannot be started.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                self.wrangler_path,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise DashboardError(
                f"Cannot run {self.wrangler_path}: {e}",
                code=ErrorCode.DSH_CLI_MISSING,
                cause=e,
            ) from e

        stdout, stderr = await proc.communicate()
        return CommandResult(
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace").strip(),
            stderr=stderr.decode("utf-8", errors="replace").strip(),
        )

    async def _run_operation(self, *args: str) -> dict[str, Any]:
        try:
            result = await self._run(*args)
        except DashboardError as e:
            return {"success": False, "message": e.message}
        return _operation_result(result)

    # ========== Account ==========

    async def is_available(self) -> bool:
        try:
            return (await self._run("--version")).ok
        except DashboardError:
            return False

    async def get_version(self) -> str | None:
        try:
            result = await self._run("--version")
        except DashboardError:
            return None
        return result.stdout if result.ok else None

    async def whoami(self) -> dict[str, str | None] | None:
        """Return {"email", "account_id"} parsed from `wrangler whoami`."""
        try:
            result = await self._run("whoami")
        except DashboardError:
            return None
        if not result.ok or "not authenticated" in result.stdout:
            return None

        email = _LOGGED_IN_RE.search(result.stdout)
        account = _ACCOUNT_ID_RE.search(result.stdout)
        return {
            "email": email.group(1).rstrip(".") if email else None,
            "account_id": account.group(1) if account else None,
        }

    # ========== Listings ==========

    async def list_workers(self) -> list[WranglerWorker]:
        try:
            result = await self._run("deploy", "--dry-run", "--json")
        except DashboardError as e:
            logger.debug("Worker listing unavailable: %s", e)
            return []

        if result.ok:
            try:
                data = json.loads(result.stdout)
            except json.JSONDecodeError:
                data = None
            if isinstance(data, list):
                return [
                    WranglerWorker(
                        name=item.get("name") or item.get("script_name") or "",
                        id=item.get("id"),
                        created_on=item.get("created_on"),
                        modified_on=item.get("modified_on"),
                        etag=item.get("etag"),
                        routes=item.get("routes"),
                        usage_model=item.get("usage_model"),
                    )
                    for item in data
                    if isinstance(item, dict)
                ]

        text = f"{result.stdout}\n{result.stderr}"
        return [WranglerWorker(name=m.group(1).strip()) for m in _WORKER_LINE_RE.finditer(text)]

    async def list_r2_buckets(self) -> list[WranglerR2Bucket]:
        """Parse `wrangler r2 bucket list` output.

        Handles both the column table of older releases and the
        "name: ... / creation_date: ..." blocks printed by newer ones.
        """
        try:
            result = await self._run("r2", "bucket", "list")
        except DashboardError as e:
            logger.debug("R2 listing unavailable: %s", e)
            return []
        if not result.ok:
            return []

        lines = [line.strip() for line in result.stdout.splitlines()]
        buckets: list[WranglerR2Bucket] = []

        if any(line.startswith("name:") for line in lines):
            for stripped in lines:
                key, _, value = stripped.partition(":")
                if key == "name":
                    buckets.append(WranglerR2Bucket(name=value.strip()))
                elif key == "creation_date" and buckets:
                    buckets[-1].created_on = value.strip()
            return buckets

        for stripped in lines:
            if not stripped or "Name" in stripped or "---" in stripped:
                continue
            parts = stripped.split()
            buckets.append(
                WranglerR2Bucket(
                    name=parts[0],
                    created_on=parts[1] if len(parts) > 1 else None,
                    location=parts[2] if len(parts) > 2 else None,
                )
            )
        return buckets

    async def list_kv_namespaces(self) -> list[WranglerKVNamespace]:
        try:
            result = await self._run("kv", "namespace", "list")
        except DashboardError as e:
            logger.debug("KV listing unavailable: %s", e)
            return []
        if not result.ok:
            return []

        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError:
            return [
                WranglerKVNamespace(id=m.group(1), title=m.group(2).strip())
                for m in (_KV_LINE_RE.match(line.strip()) for line in result.stdout.splitlines())
                if m
            ]

        if not isinstance(data, list):
            return []
        return [
            WranglerKVNamespace(
                id=str(item.get("id", "")),
                title=item.get("title") or item.get("name") or "",
                supports_url_encoding=item.get("supports_url_encoding"),
            )
            for item in data
            if isinstance(item, dict)
        ]

    async def get_dashboard_data(self) -> DashboardData:
        """Collect workers, R2 buckets and KV namespaces concurrently."""
        with timed_operation(logger, "dashboard.get_data") as ctx:
            workers, buckets, namespaces = await asyncio.gather(
                self.list_workers(),
                self.list_r2_buckets(),
                self.list_kv_namespaces(),
            )
            ctx["workers"] = len(workers)
        return DashboardData(workers=workers, r2_buckets=buckets, kv_namespaces=namespaces)

    # ========== Mutations ==========

    async def deploy_worker(
        self,
        name: str | None = None,
        env: str | None = None,
        dry_run: bool = True,
    ) -> dict[str, Any]:
        """Deploy the worker in the current directory (dry run unless told otherwise)."""
        args = ["deploy"]
        if dry_run:
            args.append("--dry-run")
        if name:
            args.extend(["--name", name])
        if env:
            args.extend(["--env", env])
        return await self._run_operation(*args)

    async def create_r2_bucket(self, name: str) -> dict[str, Any]:
        return await self._run_operation("r2", "bucket", "create", name)

    async def delete_r2_bucket(self, name: str) -> dict[str, Any]:
        return await self._run_operation("r2", "bucket", "delete", name)

    # ========== Logs ==========

    async def tail_logs(
        self,
        worker_name: str | None = None,
        format: LogFormat | None = None,
        status: Literal["ok", "error"] | None = None,
        method: str | None = None,
        search: str | None = None,
    ) -> AsyncIterator[str]:
        """Yield log lines from `wrangler tail` until it exits or the caller stops.

        Closing the generator terminates the wrangler process.
        """
        args = ["tail"]
        if worker_name:
            args.append(worker_name)
        for flag, value in (
            ("--format", format),
            ("--status", status),
            ("--method", method),
            ("--search", search),
        ):
            if value:
                args.extend([flag, value])

        try:
            proc = await asyncio.create_subprocess_exec(
                self.wrangler_path,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise DashboardError(
                f"Cannot run {self.wrangler_path}: {e}",
                code=ErrorCode.DSH_CLI_MISSING,
                cause=e,
            ) from e

        assert proc.stdout is not None
        try:
            async for raw in proc.stdout:
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if line:
                    yield line
        finally:
            if proc.returncode is None:
                proc.terminate()
            await proc.wait()


def create_wrangler_dashboard(wrangler_path: str = "wrangler") -> WranglerDashboard:
    """Create a Wrangler dashboard instance."""
    return WranglerDashboard(wrangler_path)
