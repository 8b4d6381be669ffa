"""JSON-RPC protocol helpers and constants.

Contains the newline framing buffer, JsonRpcError, the error code table and
the functions that build response, error and notification lines.
"""

from __future__ import annotations

import dataclasses
import json
import secrets
from dataclasses import dataclass
from pathlib import PurePath
from typing import Any

from pydantic import BaseModel

from fluorite.errors import FluoriteError

JSONRPC_VERSION = "2.0"

AUTH_METHOD = "auth.login"
CHUNK_SUFFIX = ".chunk"
STREAM_COMPLETE = {"stream": "complete"}

READ_CHUNK_SIZE = 64 * 1024
MAX_MESSAGE_SIZE = 1024 * 1024  # 1MB max message size

# Standard JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602

# Server-defined error codes
INTERNAL_ERROR = -32000
AUTH_ERROR = -32001


class JsonRpcError(Exception):
    """JSON-RPC error with code and data.

    Handlers raise this to choose the error code sent to the client.
    """

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


@dataclass(frozen=True)
class FrameTooLarge:
    """Marker for a message dropped because it exceeded the size limit."""

    size: int


class MessageFramer:
    """Split a byte stream into newline-delimited messages.

    Bytes are buffered until a newline arrives, so messages may be split
    across reads and several messages may share one read. Lines are decoded
    as UTF-8 only once complete, so multi-byte characters survive a split.
    Blank lines are skipped.
    """

    def __init__(self, max_size: int = MAX_MESSAGE_SIZE) -> None:
        self.max_size = max_size
        self._buffer = bytearray()
        self._discarding = False

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet forming a complete message."""
        return len(self._buffer)

    def feed(self, data: bytes) -> list[str | FrameTooLarge]:
        """Append data and return every message it completes, in order."""
        frames: list[str | FrameTooLarge] = []
        self._buffer.extend(data)

        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            line = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]

            if self._discarding:
                # Tail of a message already reported as too large
                self._discarding = False
                continue
            if len(line) > self.max_size:
                frames.append(FrameTooLarge(len(line)))
                continue

            text = line.decode("utf-8", errors="replace")
            if text.strip():
                frames.append(text)

        if len(self._buffer) > self.max_size and not self._discarding:
            frames.append(FrameTooLarge(len(self._buffer)))
            self._buffer.clear()
            self._discarding = True
        elif self._discarding:
            self._buffer.clear()

        return frames

    def clear(self) -> None:
        """Drop any buffered partial message."""
        self._buffer.clear()
        self._discarding = False


def generate_token() -> str:
    """Generate an unguessable auth token (32 random bytes, hex encoded)."""
    return secrets.token_hex(32)


def exception_data(error: BaseException) -> dict[str, Any]:
    """Describe an exception for the data field of an error response."""
    if isinstance(error, FluoriteError):
        return error.to_dict()
    return {"name": type(error).__name__, "message": str(error)}


def to_jsonable(value: Any) -> Any:
    """json.dumps default hook for values handlers commonly return."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, BaseException):
        return exception_data(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    if isinstance(value, PurePath):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _dumps(payload: dict[str, Any]) -> str:
    return json.dumps(payload, default=to_jsonable, ensure_ascii=False)


def success_response(request_id: Any, result: Any) -> str:
    """Build a JSON-RPC success response.

    Raises:
        TypeError: If the result cannot be serialized.
    """
    return _dumps({"jsonrpc": JSONRPC_VERSION, "result": result, "id": request_id})


def error_response(
    request_id: Any,
    code: int,
    message: str,
    data: Any = None,
) -> str:
    """Build a JSON-RPC error response.

    Unserializable data is dropped rather than failing the response.
    """
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data

    payload = {"jsonrpc": JSONRPC_VERSION, "error": error, "id": request_id}
    try:
        return _dumps(payload)
    except (TypeError, ValueError):
        error.pop("data", None)
        return _dumps(payload)


def notification(method: str, params: Any = None) -> str:
    """Build a JSON-RPC notification (no id, no response expected)."""
    payload: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        payload["params"] = params
    return _dumps(payload)


def chunk_notification(method: str, request_id: Any, data: Any) -> str:
    """Build the notification carrying one item of a streaming response."""
    return notification(f"{method}{CHUNK_SUFFIX}", {"id": request_id, "data": data})


def request(method: str, params: Any = None, request_id: Any = None) -> str:
    """Build a JSON-RPC request line body (used by the client)."""
    payload: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        payload["params"] = params
    payload["id"] = request_id
    return _dumps(payload)


def encode_line(message: str) -> bytes:
    """Frame a serialized message for the wire."""
    return message.encode("utf-8") + b"\n"
