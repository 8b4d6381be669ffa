"""Fluorite CLI - command-line interface for the IPC server.

Provides commands to start the IPC server (foreground or daemon mode) and to
smoke-test a running one.
"""

import argparse
import asyncio
import logging
import sys
from typing import Any, NoReturn

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from fluorite.config import IPCServerOptions, get_config
from fluorite.errors import FluoriteError
from fluorite.ipc.client import IPCClient, IPCClientOptions
from fluorite.ipc.integration import serve_until_stopped, setup_ipc_server, start_ipc_daemon
from fluorite.ipc.server import (
    EVENT_CONNECTION,
    EVENT_DISCONNECTION,
    EVENT_ERROR,
    EVENT_LISTENING,
    ClientConnection,
)

console = Console()
logger = logging.getLogger(__name__)

TEST_TIMEOUT_SECONDS = 10.0


def setup_logging(verbose: bool = False) -> None:
    """Configure logging based on verbosity level.

    Args:
        verbose: If True, set DEBUG level; otherwise WARNING.
    """
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )


def _server_options(args: argparse.Namespace) -> IPCServerOptions:
    """Merge command-line flags over the configured IPC settings."""
    return get_config().ipc.to_server_options(
        host=args.host,
        port=args.port,
        socket_path=args.socket,
        auth_token=args.token,
        max_connections=getattr(args, "max_connections", None),
    )


def _format_address(info: dict[str, Any]) -> str:
    if info.get("socket_path"):
        return str(info["socket_path"])
    return f"{info.get('host')}:{info.get('port')}"


def cmd_ipc_start(args: argparse.Namespace) -> int:
    """Start the IPC server.

    In daemon mode logs are JSON on stderr and a single ready line is printed
    to stdout. Otherwise connection activity is printed to the console.

    Args:
        args: Parsed arguments with endpoint, token and daemon options.

    Returns:
        Exit code.
    """
    options = _server_options(args)

    if args.daemon:
        return asyncio.run(start_ipc_daemon(options, verbose=args.verbose))

    server = setup_ipc_server(options)

    def on_listening(info: dict[str, Any]) -> None:
        console.print(
            Panel(
                f"[bold green]IPC server listening[/bold green]\n"
                f"Address: {_format_address(info)}\n"
                f"Auth: {'Required' if server.auth_required else 'Disabled'}\n"
                f"Token: {info['token']}",
                title="Fluorite IPC",
            )
        )
        console.print("[dim]Press Ctrl+C to stop[/dim]")

    def on_connection(conn: ClientConnection) -> None:
        console.print(f"[cyan]→ Client connected[/cyan] {conn.peer or ''}")

    def on_disconnection(conn: ClientConnection) -> None:
        console.print(f"[dim]← Client disconnected {conn.peer or ''}[/dim]")

    def on_error(error: Exception) -> None:
        console.print(f"[red]Error starting IPC server: {error}[/red]")

    server.on(EVENT_LISTENING, on_listening)
    server.on(EVENT_CONNECTION, on_connection)
    server.on(EVENT_DISCONNECTION, on_disconnection)
    server.on(EVENT_ERROR, on_error)

    exit_code = asyncio.run(serve_until_stopped(server))
    if exit_code == 0:
        console.print("[dim]IPC server stopped.[/dim]")
    return exit_code


async def _run_ipc_test(options: IPCClientOptions) -> dict[str, Any]:
    client = IPCClient(options)
    await client.connect()
    try:
        ping = await client.call("system.ping")
        version = await client.call("system.version")
        dashboard = await client.call("dashboard.getData")
    finally:
        await client.disconnect()
    return {"ping": ping, "version": version, "dashboard": dashboard}


def cmd_ipc_test(args: argparse.Namespace) -> int:
    """Check a running IPC server with ping, version and dashboard calls.

    Args:
        args: Parsed arguments with endpoint and token options.

    Returns:
        Exit code.
    """
    settings = get_config().ipc
    options = IPCClientOptions(
        socket_path=args.socket or settings.socket_path,
        host=args.host or settings.host,
        port=args.port if args.port is not None else settings.port,
        auth_token=args.token or settings.auth_token,
        timeout=TEST_TIMEOUT_SECONDS,
    )

    console.print("[bold]Testing IPC connection...[/bold]\n")
    try:
        results = asyncio.run(_run_ipc_test(options))
    except (OSError, FluoriteError) as e:
        console.print(f"[red]IPC test failed: {e}[/red]")
        return 1

    ping = results["ping"] or {}
    version = results["version"] or {}
    dashboard = results["dashboard"] or {}

    table = Table(title="IPC Test Results")
    table.add_column("Check", style="cyan")
    table.add_column("Result")
    table.add_row("Ping", "[green]pong[/green]" if ping.get("pong") else "[red]no pong[/red]")
    table.add_row(
        "Version",
        f"{version.get('version')} (Python {version.get('runtimeVersion')})",
    )
    table.add_row("Workers", str(len(dashboard.get("workers", []))))
    table.add_row("R2 buckets", str(len(dashboard.get("r2Buckets", []))))
    table.add_row("KV namespaces", str(len(dashboard.get("kvNamespaces", []))))
    console.print(table)
    console.print("\n[green]IPC connection OK[/green]")
    return 0


def cmd_version(args: argparse.Namespace) -> int:
    """Display version information.

    Args:
        args: Parsed arguments.

    Returns:
        Exit code.
    """
    from fluorite import __version__

    console.print(f"Fluorite Flake v{__version__}")
    return 0


def _add_endpoint_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-p",
        "--port",
        type=int,
        default=None,
        help="TCP port (default: from config, 9123)",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="TCP host (default: from config, 127.0.0.1)",
    )
    parser.add_argument(
        "--socket",
        default=None,
        help="Unix socket path (overrides host/port)",
    )
    parser.add_argument(
        "--token",
        default=None,
        help="Authentication token",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser with all subcommands.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="fluorite",
        description="Fluorite Flake - multi-framework project scaffolding",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  fluorite ipc start                     Start the IPC server on 127.0.0.1:9123
  fluorite ipc start --daemon --port 0   Start as a daemon on an ephemeral port
  fluorite ipc start --socket /tmp/f.sock --token secret
  fluorite ipc test                      Check a running IPC server
        """,
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    parser.add_argument(
        "--version",
        action="store_true",
        help="Show version and exit",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # IPC commands
    ipc_parser = subparsers.add_parser(
        "ipc",
        help="Run or test the IPC server",
    )
    ipc_subparsers = ipc_parser.add_subparsers(dest="ipc_command", help="IPC commands")

    start_parser = ipc_subparsers.add_parser(
        "start",
        help="Start the IPC server",
    )
    _add_endpoint_arguments(start_parser)
    start_parser.add_argument(
        "--max-connections",
        dest="max_connections",
        type=int,
        default=None,
        help="Maximum concurrent connections",
    )
    start_parser.add_argument(
        "-d",
        "--daemon",
        action="store_true",
        help="Run as a background daemon (JSON logs, ready line on stdout)",
    )
    start_parser.set_defaults(func=cmd_ipc_start)

    test_parser = ipc_subparsers.add_parser(
        "test",
        help="Test the connection to a running IPC server",
    )
    _add_endpoint_arguments(test_parser)
    test_parser.set_defaults(func=cmd_ipc_test)

    # Version command (also accessible via --version)
    version_parser = subparsers.add_parser(
        "version",
        help="Show version information",
    )
    version_parser.set_defaults(func=cmd_version)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI.

    Args:
        argv: Command-line arguments. Uses sys.argv if None.

    Returns:
        Exit code.
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    # Handle --version flag
    if args.version:
        return cmd_version(args)

    # Daemon mode configures its own structured logging
    if not getattr(args, "daemon", False):
        setup_logging(args.verbose)

    if args.command is None or not hasattr(args, "func"):
        parser.print_help()
        return 0

    result: int = args.func(args)
    return result


def run() -> NoReturn:
    """Entry point that handles exit codes."""
    try:
        exit_code = main()
    except KeyboardInterrupt:
        console.print("\n[dim]Interrupted.[/dim]")
        exit_code = 130
    except Exception as e:
        console.print(f"[red]Unexpected error: {e}[/red]")
        logger.exception("Unexpected error")
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    run()
