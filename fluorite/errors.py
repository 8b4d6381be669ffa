"""Exception hierarchy for Fluorite Flake.

All Fluorite-specific exceptions inherit from FluoriteError so the CLI and
the IPC dispatch layer can report them consistently.

Exception Hierarchy:
    FluoriteError (base)
    +-- ConfigurationError - Configuration file and option problems
    +-- IPCError - IPC server lifecycle failures
    |   +-- ServerAlreadyRunningError - start() on a running server
    |   +-- IPCClientError - Error response or connection loss seen by a client
    |       +-- IPCTimeoutError - Request did not complete in time
    +-- ProjectError - Project generation failures
    +-- DashboardError - Wrangler CLI invocation failures

Usage:
    from fluorite.errors import IPCClientError

    try:
        result = await client.call("system.ping")
    except IPCClientError as e:
        logger.error("RPC failed: %s (code: %s)", e.message, e.rpc_code)
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    """Machine-readable error codes included in serialized errors."""

    # Configuration errors (CFG_*)
    CFG_INVALID = "CFG_INVALID"
    CFG_MISSING = "CFG_MISSING"

    # IPC errors (IPC_*)
    IPC_ALREADY_RUNNING = "IPC_ALREADY_RUNNING"
    IPC_NOT_CONNECTED = "IPC_NOT_CONNECTED"
    IPC_CONNECTION_LOST = "IPC_CONNECTION_LOST"
    IPC_REMOTE_ERROR = "IPC_REMOTE_ERROR"
    IPC_TIMEOUT = "IPC_TIMEOUT"
    IPC_AUTH_FAILED = "IPC_AUTH_FAILED"

    # Project generation errors (PRJ_*)
    PRJ_EXISTS = "PRJ_EXISTS"
    PRJ_GENERATION_FAILED = "PRJ_GENERATION_FAILED"

    # Dashboard errors (DSH_*)
    DSH_CLI_MISSING = "DSH_CLI_MISSING"
    DSH_COMMAND_FAILED = "DSH_COMMAND_FAILED"

    UNKNOWN = "UNKNOWN"


class FluoriteError(Exception):
    """Base exception for all Fluorite errors.

    Attributes:
        message: Human-readable error message.
        code: Machine-readable error code from ErrorCode enum.
        details: Optional additional context about the error.
        cause: Optional original exception that caused this error.
    """

    default_message: str = "An error occurred"
    default_code: ErrorCode = ErrorCode.UNKNOWN

    def __init__(
        self,
        message: str | None = None,
        *,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.code = code or self.default_code
        self.details = details or {}
        self.cause = cause

        super().__init__(self.message)

        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        parts = [f"{self.__class__.__name__}({self.message!r}"]
        if self.code != self.default_code:
            parts.append(f", code={self.code.value!r}")
        if self.details:
            parts.append(f", details={self.details!r}")
        parts.append(")")
        return "".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON-RPC error data and CLI output."""
        result: dict[str, Any] = {
            "name": self.__class__.__name__,
            "code": self.code.value,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class ConfigurationError(FluoriteError):
    """Raised for configuration and settings issues."""

    default_message = "Configuration error"
    default_code = ErrorCode.CFG_INVALID

    def __init__(
        self,
        message: str | None = None,
        *,
        config_path: str | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if config_path:
            details["config_path"] = config_path
        super().__init__(message, code=code, details=details, cause=cause)


class IPCError(FluoriteError):
    """Base class for IPC server and client failures."""

    default_message = "IPC error"
    default_code = ErrorCode.IPC_REMOTE_ERROR


class ServerAlreadyRunningError(IPCError):
    """Raised when start() is called on a server that is already listening."""

    default_message = "Server is already running"
    default_code = ErrorCode.IPC_ALREADY_RUNNING


class IPCClientError(IPCError):
    """Raised by the IPC client for error responses and connection problems.

    Attributes:
        rpc_code: JSON-RPC error code from the server response, if any.
        data: JSON-RPC error data from the server response, if any.
    """

    default_message = "IPC request failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        rpc_code: int | None = None,
        data: Any = None,
        code: ErrorCode | None = None,
        cause: Exception | None = None,
    ) -> None:
        details: dict[str, Any] = {}
        if rpc_code is not None:
            details["rpc_code"] = rpc_code
        super().__init__(message, code=code, details=details, cause=cause)
        self.rpc_code = rpc_code
        self.data = data


class IPCTimeoutError(IPCClientError):
    """Raised when a request gets no response within the client timeout."""

    default_message = "Request timed out"
    default_code = ErrorCode.IPC_TIMEOUT


class ProjectError(FluoriteError):
    """Raised when a project cannot be generated."""

    default_message = "Project generation failed"
    default_code = ErrorCode.PRJ_GENERATION_FAILED


class DashboardError(FluoriteError):
    """Raised when the Wrangler CLI cannot be invoked."""

    default_message = "Dashboard command failed"
    default_code = ErrorCode.DSH_COMMAND_FAILED


__all__ = [
    "ErrorCode",
    "FluoriteError",
    "ConfigurationError",
    "IPCError",
    "ServerAlreadyRunningError",
    "IPCClientError",
    "IPCTimeoutError",
    "ProjectError",
    "DashboardError",
]
