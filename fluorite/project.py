"""Project creation entry point used by the `project.create` IPC method.

Validates a ProjectConfig and runs the framework's upstream scaffolder
(create-next-app, create-expo-app, create-tauri-app, flutter create) in a
subprocess. Template content and provider wiring live with the generators
themselves; this module only decides what to run and reports failures.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from fluorite.errors import ErrorCode, ProjectError
from fluorite.observability.logging import timed_operation

logger = logging.getLogger(__name__)

Framework = Literal["nextjs", "expo", "tauri", "flutter"]
Database = Literal["none", "turso", "supabase"]
Orm = Literal["prisma", "drizzle"]
Storage = Literal["none", "vercel-blob", "cloudflare-r2", "aws-s3", "supabase-storage"]
PackageManager = Literal["npm", "pnpm", "yarn", "bun"]

PROJECT_NAME_PATTERN = r"^[a-z0-9-_]+$"

# Package runner used to execute one-off scaffolders
PACKAGE_RUNNERS: dict[str, list[str]] = {
    "npm": ["npx", "--yes"],
    "pnpm": ["pnpm", "dlx"],
    "yarn": ["yarn", "dlx"],
    "bun": ["bunx"],
}

CommandRunner = Callable[[list[str], Path], Awaitable[tuple[int, str]]]


class ProjectConfig(BaseModel):
    """Everything needed to generate one project."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    framework: Framework
    project_name: str = Field(pattern=PROJECT_NAME_PATTERN)
    project_path: Path
    database: Database = "none"
    orm: Orm | None = None
    storage: Storage = "none"
    auth: bool = False
    deployment: bool = False
    package_manager: PackageManager = "npm"
    mode: Literal["full", "minimal"] = "full"

    @model_validator(mode="after")
    def _orm_needs_database(self) -> ProjectConfig:
        if self.orm is not None and self.database == "none":
            raise ValueError("An ORM requires a database")
        return self


def scaffold_command(config: ProjectConfig) -> list[str]:
    """Build the upstream scaffolder command line for a config."""
    target = str(config.project_path)

    if config.framework == "flutter":
        # Dart package names cannot contain hyphens
        return [
            "flutter",
            "create",
            "--project-name",
            config.project_name.replace("-", "_"),
            target,
        ]

    runner = PACKAGE_RUNNERS[config.package_manager]
    if config.framework == "nextjs":
        return [
            *runner,
            "create-next-app@latest",
            target,
            "--ts",
            "--app",
            "--yes",
            f"--use-{config.package_manager}",
        ]
    if config.framework == "expo":
        return [*runner, "create-expo-app@latest", target, "--yes"]
    return [
        *runner,
        "create-tauri-app@latest",
        target,
        "--yes",
        "--manager",
        config.package_manager,
    ]


async def run_command(args: list[str], cwd: Path) -> tuple[int, str]:
    """Run a command, returning its exit code and combined output.

    Raises:
        ProjectError: If the executable cannot be found.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except FileNotFoundError as e:
        raise ProjectError(f"Command not found: {args[0]}", cause=e) from e

    output, _ = await proc.communicate()
    returncode = proc.returncode if proc.returncode is not None else -1
    return returncode, output.decode("utf-8", errors="replace")


async def create_project(config: ProjectConfig, runner: CommandRunner | None = None) -> None:
    """Generate a project.

    Args:
        config: Validated project configuration.
        runner: Command runner, replaceable for tests.

    Raises:
        ProjectError: If the target exists or the scaffolder fails.
    """
    target = config.project_path
    if target.exists():
        raise ProjectError(
            f"Directory {target} already exists",
            code=ErrorCode.PRJ_EXISTS,
            details={"project_path": str(target)},
        )
    target.parent.mkdir(parents=True, exist_ok=True)

    command = scaffold_command(config)
    run = runner or run_command
    with timed_operation(
        logger,
        "project.scaffold",
        level=logging.INFO,
        framework=config.framework,
        project_name=config.project_name,
    ):
        returncode, output = await run(command, target.parent)

    if returncode != 0:
        tail = "\n".join(output.strip().splitlines()[-20:])
        raise ProjectError(
            f"{command[0]} exited with status {returncode}",
            details={"command": command, "output": tail},
        )
