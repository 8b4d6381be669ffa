"""Fluorite IPC package.

JSON-RPC 2.0 over TCP or a Unix-domain socket for the GUI, TUI and Tauri
front ends, with token auth and streaming chunk notifications.

Submodules:
    protocol     - framing, error codes and message builders
    registry     - method registration and invocation
    server       - IPCServer and connection handling
    client       - IPCClient for scripts and smoke tests
    integration  - method bindings and the daemon entry point
"""

from fluorite.ipc.client import IPCClient, IPCClientOptions, create_ipc_client
from fluorite.ipc.integration import serve_until_stopped, setup_ipc_server, start_ipc_daemon
from fluorite.ipc.protocol import (
    AUTH_ERROR,
    AUTH_METHOD,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    MAX_MESSAGE_SIZE,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    STREAM_COMPLETE,
    JsonRpcError,
)
from fluorite.ipc.registry import MethodRegistry, MethodSpec
from fluorite.ipc.server import ConnectionClosed, IPCServer, create_ipc_server

__all__ = [
    # Server
    "IPCServer",
    "ConnectionClosed",
    "create_ipc_server",
    "setup_ipc_server",
    "serve_until_stopped",
    "start_ipc_daemon",
    # Client
    "IPCClient",
    "IPCClientOptions",
    "create_ipc_client",
    # Registry
    "MethodRegistry",
    "MethodSpec",
    # Protocol
    "JsonRpcError",
    # Constants
    "AUTH_METHOD",
    "STREAM_COMPLETE",
    "MAX_MESSAGE_SIZE",
    "PARSE_ERROR",
    "INVALID_REQUEST",
    "METHOD_NOT_FOUND",
    "INVALID_PARAMS",
    "INTERNAL_ERROR",
    "AUTH_ERROR",
]
