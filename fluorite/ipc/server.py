"""Fluorite IPC server.

JSON-RPC 2.0 server over TCP or a Unix-domain socket for the GUI, TUI and
Tauri sidecar front ends.

Protocol: newline-delimited UTF-8 JSON.

Auth: when a token is configured, a connection must send
    {"jsonrpc": "2.0", "method": "auth.login", "params": {"token": "..."}, "id": 1}
before any other method is dispatched.

Streaming: methods registered with streaming=True push each produced item as
a "<method>.chunk" notification carrying {"id": <request id>, "data": item},
then send the terminal response {"stream": "complete"}.

Example:
    server = IPCServer(IPCServerOptions(port=0))
    server.register_method("system.ping", ping)
    await server.start()
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import os
import secrets
import time
from collections.abc import AsyncIterator, Callable, Collection, Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from fluorite.config import IPCServerOptions
from fluorite.errors import ServerAlreadyRunningError
from fluorite.ipc.protocol import (
    AUTH_ERROR,
    AUTH_METHOD,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    JSONRPC_VERSION,
    MAX_MESSAGE_SIZE,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    READ_CHUNK_SIZE,
    STREAM_COMPLETE,
    FrameTooLarge,
    JsonRpcError,
    MessageFramer,
    chunk_notification,
    encode_line,
    error_response,
    exception_data,
    generate_token,
    notification,
    success_response,
)
from fluorite.ipc.registry import Handler, MethodRegistry
from fluorite.observability.logging import log_event

logger = logging.getLogger(__name__)

# Events emitted to the hosting process
EVENT_LISTENING = "listening"
EVENT_CONNECTION = "connection"
EVENT_DISCONNECTION = "disconnection"
EVENT_CLIENT_ERROR = "client-error"
EVENT_ERROR = "error"
EVENT_CLOSED = "closed"

EVENTS = frozenset(
    {
        EVENT_LISTENING,
        EVENT_CONNECTION,
        EVENT_DISCONNECTION,
        EVENT_CLIENT_ERROR,
        EVENT_ERROR,
        EVENT_CLOSED,
    }
)

EventCallback = Callable[..., Any]

_connection_ids = itertools.count(1)


class ConnectionClosed(Exception):
    """A write failed because the peer is gone."""


class ClientConnection:
    """Per-connection state: stream pair, framing buffer and auth flag."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        authenticated: bool,
        max_message_size: int,
    ) -> None:
        self.id = next(_connection_ids)
        self.reader = reader
        self.writer = writer
        self.authenticated = authenticated
        self.framer = MessageFramer(max_message_size)
        self.task: asyncio.Task[Any] | None = None
        self.peer = writer.get_extra_info("peername") or writer.get_extra_info("sockname")

    @property
    def closed(self) -> bool:
        return self.writer.is_closing()

    async def send(self, message: str) -> None:
        """Write one framed message and wait for the transport to accept it.

        Raises:
            ConnectionClosed: If the peer has gone away.
        """
        if self.writer.is_closing():
            raise ConnectionClosed(f"connection {self.id} is closed")
        try:
            self.writer.write(encode_line(message))
            await self.writer.drain()
        except (ConnectionError, RuntimeError) as e:
            raise ConnectionClosed(f"connection {self.id} lost: {e}") from e

    def abort(self) -> None:
        """Close the transport immediately, discarding buffered output."""
        transport = self.writer.transport
        if transport is not None and not transport.is_closing():
            transport.abort()

    def __repr__(self) -> str:
        return f"ClientConnection(id={self.id}, peer={self.peer!r}, authenticated={self.authenticated})"


class IPCServer:
    """JSON-RPC server over a stream socket.

    The method registry and client set are instance state; build one server
    per host process (or per test).

    Attributes:
        options: Listen and auth options.
    """

    def __init__(self, options: IPCServerOptions | None = None, **kwargs: Any) -> None:
        self.options = options or IPCServerOptions(**kwargs)
        self._server: asyncio.Server | None = None
        self._registry = MethodRegistry()
        self._clients: set[ClientConnection] = set()
        self._listeners: dict[str, list[EventCallback]] = {}
        self._auth_token = self.options.auth_token or generate_token()
        self._auth_required = bool(self.options.auth_token) or self.options.require_auth
        self._running = False
        self._closed_event: asyncio.Event | None = None
        self.max_message_size = MAX_MESSAGE_SIZE

    # ========== Properties ==========

    @property
    def methods(self) -> MethodRegistry:
        return self._registry

    @property
    def clients(self) -> frozenset[ClientConnection]:
        return frozenset(self._clients)

    @property
    def auth_token(self) -> str:
        return self._auth_token

    @property
    def auth_required(self) -> bool:
        return self._auth_required

    @property
    def is_running(self) -> bool:
        return self._running

    # ========== Events ==========

    def on(self, event: str, callback: EventCallback) -> None:
        """Subscribe to a server event (see EVENTS)."""
        if event not in EVENTS:
            raise ValueError(f"Unknown event: {event}")
        self._listeners.setdefault(event, []).append(callback)

    def off(self, event: str, callback: EventCallback) -> None:
        listeners = self._listeners.get(event, [])
        if callback in listeners:
            listeners.remove(callback)

    def _emit(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners.get(event, [])):
            try:
                callback(*args)
            except Exception:
                logger.exception("Listener for %s event failed", event)

    # ========== Registration ==========

    def register_method(
        self,
        name: str,
        handler: Handler,
        *,
        streaming: bool = False,
        params_model: type[BaseModel] | None = None,
    ) -> None:
        """Register an RPC method. Re-registering a name replaces it."""
        self._registry.register(name, handler, streaming=streaming, params_model=params_model)

    def register_methods(
        self,
        methods: Mapping[str, Handler],
        *,
        streaming: Collection[str] = (),
    ) -> None:
        """Register several methods; names listed in streaming are streams."""
        for name, handler in methods.items():
            if handler is not None:
                self.register_method(name, handler, streaming=name in streaming)

    # ========== Lifecycle ==========

    async def start(self) -> None:
        """Bind the listening socket.

        Raises:
            ServerAlreadyRunningError: If the server is already running.
            OSError: If the endpoint cannot be bound.
        """
        if self._running:
            raise ServerAlreadyRunningError()

        try:
            if self.options.socket_path:
                self._server = await self._start_unix()
            else:
                self._server = await asyncio.start_server(
                    self._handle_client,
                    host=self.options.host,
                    port=self.options.port,
                )
        except OSError as e:
            log_event(logger, "ipc.server.start_failed", level=logging.ERROR, error=str(e))
            self._emit(EVENT_ERROR, e)
            raise

        self._running = True
        self._closed_event = asyncio.Event()

        address = self._address()
        if isinstance(address, str):
            info: dict[str, Any] = {"socket_path": address}
        else:
            info = dict(address or {})
        log_event(logger, "ipc.server.start", auth_required=self._auth_required, **info)
        info["token"] = self._auth_token
        self._emit(EVENT_LISTENING, info)

    async def _start_unix(self) -> asyncio.Server:
        path = Path(self.options.socket_path or "")
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.is_socket():
            # Stale socket from a previous run
            path.unlink()

        server = await asyncio.start_unix_server(self._handle_client, path=str(path))
        os.chmod(path, 0o600)
        return server

    async def stop(self) -> None:
        """Close every client and the listening socket. No-op when stopped."""
        if not self._running:
            return
        self._running = False

        clients = list(self._clients)
        self._clients.clear()
        for conn in clients:
            conn.abort()

        current = asyncio.current_task()
        tasks = [c.task for c in clients if c.task is not None and c.task is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        if self.options.socket_path:
            path = Path(self.options.socket_path)
            if path.is_socket():
                path.unlink()

        log_event(logger, "ipc.server.stop", closed_clients=len(clients))
        if self._closed_event is not None:
            self._closed_event.set()
        self._emit(EVENT_CLOSED)

    async def serve_forever(self) -> None:
        """Wait until the server is stopped."""
        if not self._running or self._closed_event is None:
            return
        await self._closed_event.wait()

    # ========== Info ==========

    def _address(self) -> str | dict[str, Any] | None:
        if self._server is None:
            return None
        if self.options.socket_path:
            return self.options.socket_path
        sockets = self._server.sockets
        if not sockets:
            return None
        sockname = sockets[0].getsockname()
        return {"port": sockname[1], "host": sockname[0]}

    def get_info(self) -> dict[str, Any]:
        """Connection details for the hosting process to display or hand out."""
        return {
            "is_running": self._running,
            "clients": len(self._clients),
            "address": self._address(),
            "token": self._auth_token,
        }

    # ========== Notifications ==========

    async def broadcast(self, method: str, params: Any = None) -> int:
        """Send a notification to every tracked connection.

        Connections that fail the write are skipped. Returns the number of
        connections the notification was written to.
        """
        message = notification(method, params)
        delivered = 0
        for conn in list(self._clients):
            try:
                await conn.send(message)
                delivered += 1
            except ConnectionClosed as e:
                logger.debug("Broadcast of %s skipped: %s", method, e)
        return delivered

    # ========== Connection handling ==========

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Serve one connection until it closes."""
        max_connections = self.options.max_connections
        if not self._running or (max_connections and len(self._clients) >= max_connections):
            log_event(
                logger,
                "ipc.client.rejected",
                level=logging.WARNING,
                max_connections=max_connections,
                running=self._running,
            )
            writer.close()
            return

        conn = ClientConnection(
            reader,
            writer,
            authenticated=not self._auth_required,
            max_message_size=self.max_message_size,
        )
        conn.task = asyncio.current_task()
        self._clients.add(conn)
        log_event(
            logger,
            "ipc.client.connect",
            peer=str(conn.peer),
            active_connections=len(self._clients),
        )
        self._emit(EVENT_CONNECTION, conn)

        try:
            while True:
                try:
                    data = await reader.read(READ_CHUNK_SIZE)
                except OSError as e:
                    self._emit(EVENT_CLIENT_ERROR, {"socket": conn, "error": e})
                    break
                if not data:
                    break
                for frame in conn.framer.feed(data):
                    try:
                        await self._process_frame(conn, frame)
                    except ConnectionClosed:
                        raise
                    except Exception:
                        logger.exception("Error processing message from client %s", conn.id)
        except ConnectionClosed as e:
            logger.debug("Client %s went away mid-write: %s", conn.id, e)
            self._emit(EVENT_CLIENT_ERROR, {"socket": conn, "error": e})
        finally:
            self._clients.discard(conn)
            if not writer.is_closing():
                writer.close()
            log_event(logger, "ipc.client.disconnect", level=logging.DEBUG, peer=str(conn.peer))
            self._emit(EVENT_DISCONNECTION, conn)

    async def _process_frame(self, conn: ClientConnection, frame: str | FrameTooLarge) -> None:
        """Parse one framed message, apply the auth gate and dispatch."""
        if isinstance(frame, FrameTooLarge):
            await conn.send(error_response(None, INVALID_REQUEST, "Message too large"))
            return

        try:
            message = json.loads(frame)
        except (json.JSONDecodeError, RecursionError):
            await conn.send(error_response(None, PARSE_ERROR, "Parse error"))
            return

        if not isinstance(message, dict):
            await conn.send(error_response(None, INVALID_REQUEST, "Invalid Request"))
            return

        if message.get("method") == AUTH_METHOD:
            await self._handle_auth(conn, message)
            return

        if not conn.authenticated:
            await conn.send(
                error_response(message.get("id"), AUTH_ERROR, "Authentication required")
            )
            return

        await self.dispatch(message, conn)

    async def _handle_auth(self, conn: ClientConnection, message: dict[str, Any]) -> None:
        """Check an auth.login token and flip the connection's auth flag."""
        request_id = message.get("id")
        params = message.get("params")
        token = params.get("token") if isinstance(params, dict) else None

        if not self._auth_required:
            conn.authenticated = True
            await conn.send(success_response(request_id, {"authenticated": True}))
            return

        if isinstance(token, str) and secrets.compare_digest(
            token.encode("utf-8"), self._auth_token.encode("utf-8")
        ):
            conn.authenticated = True
            await conn.send(success_response(request_id, {"authenticated": True}))
            return

        log_event(logger, "ipc.auth.failed", level=logging.WARNING, peer=str(conn.peer))
        await conn.send(error_response(request_id, AUTH_ERROR, "Invalid authentication token"))

    # ========== Dispatch ==========

    async def dispatch(self, message: dict[str, Any], conn: ClientConnection) -> None:
        """Run one request and write its response (or stream) to conn.

        Exactly one terminal response is written per request unless the
        connection itself is lost.
        """
        request_id = message.get("id")

        if message.get("jsonrpc") != JSONRPC_VERSION:
            await conn.send(error_response(request_id, INVALID_REQUEST, "Invalid Request"))
            return

        method = message.get("method")
        if not isinstance(method, str) or not method:
            await conn.send(error_response(request_id, INVALID_REQUEST, "Invalid Request"))
            return

        spec = self._registry.get(method)
        if spec is None:
            log_event(logger, "rpc.method_not_found", level=logging.WARNING, method=method)
            await conn.send(error_response(request_id, METHOD_NOT_FOUND, "Method not found"))
            return

        start = time.perf_counter()
        try:
            result = await self._registry.invoke(spec, message.get("params"))
            if spec.streaming:
                chunks = await self._stream(conn, method, request_id, result)
                response = success_response(request_id, STREAM_COMPLETE)
                log_event(
                    logger,
                    "rpc.complete",
                    level=logging.DEBUG,
                    method=method,
                    streaming=True,
                    chunks=chunks,
                    latency_ms=round((time.perf_counter() - start) * 1000, 1),
                )
            else:
                response = success_response(request_id, result)
                log_event(
                    logger,
                    "rpc.complete",
                    level=logging.DEBUG,
                    method=method,
                    streaming=False,
                    latency_ms=round((time.perf_counter() - start) * 1000, 1),
                )
        except (asyncio.CancelledError, ConnectionClosed):
            raise
        except JsonRpcError as e:
            log_event(
                logger,
                "rpc.error",
                level=logging.WARNING,
                method=method,
                error_code=e.code,
                error_message=e.message,
            )
            response = error_response(request_id, e.code, e.message, e.data)
        except ValidationError as e:
            log_event(logger, "rpc.error", level=logging.WARNING, method=method, error_code=INVALID_PARAMS)
            response = error_response(
                request_id,
                INVALID_PARAMS,
                "Invalid params",
                json.loads(e.json(include_url=False)),
            )
        except Exception as e:
            log_event(
                logger,
                "rpc.error",
                level=logging.ERROR,
                method=method,
                error_code=INTERNAL_ERROR,
                latency_ms=round((time.perf_counter() - start) * 1000, 1),
            )
            logger.exception("Error handling %s", method)
            response = error_response(request_id, INTERNAL_ERROR, str(e), exception_data(e))

        await conn.send(response)

    async def _stream(
        self,
        conn: ClientConnection,
        method: str,
        request_id: Any,
        stream: AsyncIterator[Any],
    ) -> int:
        """Push each stream item as a chunk notification, in production order.

        The stream is closed when it finishes, fails, or the connection drops.
        """
        count = 0
        try:
            async for chunk in stream:
                await conn.send(chunk_notification(method, request_id, chunk))
                count += 1
        except ConnectionClosed:
            log_event(logger, "rpc.stream.aborted", method=method, chunks=count)
            raise
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        return count


def create_ipc_server(options: IPCServerOptions | None = None, **kwargs: Any) -> IPCServer:
    """Create a new IPC server instance."""
    return IPCServer(options, **kwargs)
