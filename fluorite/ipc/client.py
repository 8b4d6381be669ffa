"""Fluorite IPC client.

JSON-RPC 2.0 client for talking to an IPCServer from another process (the
`fluorite ipc test` command, the Tauri sidecar, scripts).

Example:
    client = IPCClient(host="127.0.0.1", port=9123, auth_token=token)
    await client.connect()
    print(await client.call("system.ping"))
    await client.call_stream("dashboard.tailLogs", {"workerName": "api"}, print)
    await client.disconnect()
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field

from fluorite.config import DEFAULT_IPC_HOST, DEFAULT_IPC_PORT
from fluorite.errors import ErrorCode, IPCClientError, IPCTimeoutError
from fluorite.ipc.protocol import (
    AUTH_METHOD,
    CHUNK_SUFFIX,
    READ_CHUNK_SIZE,
    MessageFramer,
    encode_line,
    request,
)

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[Any], Any]
NotificationCallback = Callable[[str, Any], Any]


class IPCClientOptions(BaseModel):
    """Connection options for IPCClient.

    Attributes:
        socket_path: Connect to a Unix-domain socket instead of TCP.
        host: TCP host.
        port: TCP port.
        auth_token: Token sent with auth.login right after connecting.
        timeout: Seconds to wait for each response (None waits forever).
    """

    socket_path: str | None = None
    host: str = DEFAULT_IPC_HOST
    port: int = Field(default=DEFAULT_IPC_PORT, ge=0, le=65535)
    auth_token: str | None = None
    timeout: float | None = Field(default=None, gt=0)


class IPCClient:
    """Asyncio JSON-RPC client with request/response and stream support."""

    def __init__(self, options: IPCClientOptions | None = None, **kwargs: Any) -> None:
        self.options = options or IPCClientOptions(**kwargs)
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task[None] | None = None
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._stream_handlers: dict[int, ChunkCallback] = {}
        self._notification_handlers: list[NotificationCallback] = []
        self._ids = itertools.count(1)
        self._connected = False
        self._authenticated = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated

    def on_notification(self, callback: NotificationCallback) -> None:
        """Subscribe to server notifications: callback(method, params)."""
        self._notification_handlers.append(callback)

    async def connect(self) -> None:
        """Open the connection and authenticate if a token is configured.

        Raises:
            OSError: If the server cannot be reached.
            IPCClientError: If authentication is rejected.
        """
        if self._connected:
            return

        if self.options.socket_path:
            self._reader, self._writer = await asyncio.open_unix_connection(
                self.options.socket_path
            )
        else:
            self._reader, self._writer = await asyncio.open_connection(
                self.options.host, self.options.port
            )
        self._connected = True
        self._read_task = asyncio.create_task(self._read_loop())

        if self.options.auth_token:
            try:
                result = await self._request(AUTH_METHOD, {"token": self.options.auth_token})
            except IPCClientError as e:
                await self.disconnect()
                raise IPCClientError(
                    "Authentication failed",
                    rpc_code=e.rpc_code,
                    code=ErrorCode.IPC_AUTH_FAILED,
                    cause=e,
                ) from e
            if not (isinstance(result, dict) and result.get("authenticated")):
                await self.disconnect()
                raise IPCClientError("Authentication failed", code=ErrorCode.IPC_AUTH_FAILED)
        self._authenticated = True

    async def disconnect(self) -> None:
        """Close the connection and fail any outstanding requests."""
        writer = self._writer
        self._writer = None
        self._reader = None
        self._connected = False
        self._authenticated = False

        if self._read_task is not None and self._read_task is not asyncio.current_task():
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
        self._read_task = None

        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.debug("Error closing IPC connection: %s", e)

        self._fail_pending(
            IPCClientError("Client disconnected", code=ErrorCode.IPC_CONNECTION_LOST)
        )

    async def call(self, method: str, params: Any = None) -> Any:
        """Call a remote method and return its result.

        Raises:
            IPCClientError: For error responses (rpc_code set) or connection loss.
            IPCTimeoutError: If no response arrives within the timeout.
        """
        return await self._request(method, params)

    async def call_stream(
        self,
        method: str,
        params: Any = None,
        on_chunk: ChunkCallback | None = None,
    ) -> Any:
        """Call a streaming method, passing each chunk to on_chunk.

        Returns the terminal result ({"stream": "complete"}).
        """
        return await self._request(method, params, on_chunk=on_chunk)

    async def _request(
        self,
        method: str,
        params: Any = None,
        on_chunk: ChunkCallback | None = None,
    ) -> Any:
        if not self._connected or self._writer is None:
            raise IPCClientError("Client not connected", code=ErrorCode.IPC_NOT_CONNECTED)

        request_id = next(self._ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        if on_chunk is not None:
            self._stream_handlers[request_id] = on_chunk

        try:
            self._writer.write(encode_line(request(method, params, request_id)))
            await self._writer.drain()
            if self.options.timeout is None:
                return await future
            try:
                return await asyncio.wait_for(future, timeout=self.options.timeout)
            except TimeoutError as e:
                raise IPCTimeoutError(f"Request timeout: {method}") from e
        except ConnectionError as e:
            raise IPCClientError(
                f"Connection lost during {method}",
                code=ErrorCode.IPC_CONNECTION_LOST,
                cause=e,
            ) from e
        finally:
            self._pending.pop(request_id, None)
            self._stream_handlers.pop(request_id, None)

    async def _read_loop(self) -> None:
        assert self._reader is not None
        framer = MessageFramer()
        try:
            while True:
                data = await self._reader.read(READ_CHUNK_SIZE)
                if not data:
                    break
                for frame in framer.feed(data):
                    if isinstance(frame, str):
                        self._handle_line(frame)
        except OSError as e:
            logger.debug("IPC connection error: %s", e)
        finally:
            self._connected = False
            self._authenticated = False
            self._fail_pending(
                IPCClientError("Connection lost", code=ErrorCode.IPC_CONNECTION_LOST)
            )

    def _handle_line(self, line: str) -> None:
        try:
            message = json.loads(line)
        except (json.JSONDecodeError, RecursionError) as e:
            logger.warning("Ignoring malformed message from server: %s", e)
            return
        if not isinstance(message, dict):
            return

        if "result" in message or "error" in message:
            self._handle_response(message)
        elif "method" in message:
            self._handle_notification(message["method"], message.get("params"))

    def _handle_response(self, message: dict[str, Any]) -> None:
        future = self._pending.get(message.get("id"))  # type: ignore[arg-type]
        if future is None or future.done():
            if message.get("error"):
                logger.debug("Unmatched error response: %s", message["error"])
            return

        error = message.get("error")
        if error:
            future.set_exception(
                IPCClientError(
                    error.get("message", "Request failed"),
                    rpc_code=error.get("code"),
                    data=error.get("data"),
                )
            )
        else:
            future.set_result(message.get("result"))

    def _handle_notification(self, method: str, params: Any) -> None:
        if method.endswith(CHUNK_SUFFIX) and isinstance(params, dict):
            handler = self._stream_handlers.get(params.get("id"))  # type: ignore[arg-type]
            if handler is not None:
                try:
                    handler(params.get("data"))
                except Exception:
                    logger.exception("Stream chunk handler failed for %s", method)

        for callback in list(self._notification_handlers):
            try:
                callback(method, params)
            except Exception:
                logger.exception("Notification handler failed for %s", method)

    def _fail_pending(self, error: IPCClientError) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()
        self._stream_handlers.clear()


def create_ipc_client(options: IPCClientOptions | None = None, **kwargs: Any) -> IPCClient:
    """Create a new IPC client instance."""
    return IPCClient(options, **kwargs)
