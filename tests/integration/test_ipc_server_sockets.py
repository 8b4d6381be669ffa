"""Integration tests for the IPC server over real sockets.

Each test starts its own server on an ephemeral port (or a temp Unix socket)
and talks to it with raw asyncio streams.
"""

from __future__ import annotations

import asyncio
import json
import socket
import stat
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import pytest

from fluorite.errors import ServerAlreadyRunningError
from fluorite.ipc import AUTH_ERROR, PARSE_ERROR, IPCServer
from fluorite.system import ping

pytestmark = pytest.mark.integration

requires_unix_sockets = pytest.mark.skipif(
    not hasattr(socket, "AF_UNIX") or sys.platform == "win32",
    reason="Unix-domain sockets not available",
)

PING = b'{"jsonrpc":"2.0","method":"system.ping","id":1}\n'


def make_server(**kwargs: Any) -> IPCServer:
    server = IPCServer(port=0, **kwargs)
    server.register_method("system.ping", ping)

    async def echo(params: Any) -> Any:
        return params

    async def count() -> AsyncIterator[int]:
        for i in (1, 2, 3):
            yield i

    server.register_method("echo", echo)
    server.register_method("count", count, streaming=True)
    return server


@asynccontextmanager
async def running(server: IPCServer) -> AsyncIterator[int]:
    """Start server and yield its TCP port; always stops it."""
    await server.start()
    try:
        address = server.get_info()["address"]
        yield address["port"] if isinstance(address, dict) else 0
    finally:
        await server.stop()


async def read_message(reader: asyncio.StreamReader) -> dict[str, Any]:
    line = await asyncio.wait_for(reader.readline(), timeout=5)
    assert line, "connection closed before a message arrived"
    return json.loads(line)


async def request(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    message: dict[str, Any],
) -> dict[str, Any]:
    writer.write(json.dumps(message).encode() + b"\n")
    await writer.drain()
    return await read_message(reader)


async def wait_closed_by_peer(reader: asyncio.StreamReader) -> None:
    try:
        data = await asyncio.wait_for(reader.read(), timeout=5)
    except ConnectionResetError:
        return
    assert data == b""


class TestScenarios:
    """End-to-end request/response behavior."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_ping_without_auth(self) -> None:
        async with running(make_server()) as port:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            writer.write(PING)
            await writer.drain()

            response = await read_message(reader)
            writer.close()

        assert response["jsonrpc"] == "2.0"
        assert response["id"] == 1
        assert response["result"]["pong"] is True
        assert isinstance(response["result"]["timestamp"], int)

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_auth_handshake(self) -> None:
        async with running(make_server(auth_token="secret")) as port:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)

            rejected = await request(
                reader, writer, {"jsonrpc": "2.0", "method": "system.ping", "id": 1}
            )
            login = await request(
                reader,
                writer,
                {"jsonrpc": "2.0", "method": "auth.login", "params": {"token": "secret"}, "id": 2},
            )
            accepted = await request(
                reader, writer, {"jsonrpc": "2.0", "method": "system.ping", "id": 3}
            )
            writer.close()

        assert rejected["error"]["code"] == AUTH_ERROR
        assert rejected["id"] in (None, 1)
        assert login["result"] == {"authenticated": True}
        assert accepted["result"]["pong"] is True

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_non_ascii_token_can_retry(self) -> None:
        async with running(make_server(auth_token="secret")) as port:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            failed = await request(
                reader,
                writer,
                {"jsonrpc": "2.0", "method": "auth.login", "params": {"token": "s\u00e9cret"}, "id": 1},
            )
            login = await request(
                reader,
                writer,
                {"jsonrpc": "2.0", "method": "auth.login", "params": {"token": "secret"}, "id": 2},
            )
            writer.close()

        assert failed["error"]["code"] == AUTH_ERROR
        assert login["result"] == {"authenticated": True}

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_echo(self) -> None:
        async with running(make_server()) as port:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            response = await request(
                reader, writer, {"jsonrpc": "2.0", "method": "echo", "params": {"x": 1}, "id": "r1"}
            )
            writer.close()

        assert response == {"jsonrpc": "2.0", "result": {"x": 1}, "id": "r1"}

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_streaming(self) -> None:
        async with running(make_server()) as port:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            writer.write(b'{"jsonrpc":"2.0","method":"count","id":7}\n')
            await writer.drain()

            messages = [await read_message(reader) for _ in range(4)]
            writer.close()

        assert [m.get("method") for m in messages[:3]] == ["count.chunk"] * 3
        assert [m["params"]["data"] for m in messages[:3]] == [1, 2, 3]
        assert all(m["params"]["id"] == 7 for m in messages[:3])
        assert messages[3] == {"jsonrpc": "2.0", "result": {"stream": "complete"}, "id": 7}

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_split_writes_dispatch_once(self) -> None:
        async with running(make_server()) as port:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            writer.write(PING[:17])
            await writer.drain()
            await asyncio.sleep(0.05)
            writer.write(PING[17:])
            await writer.drain()

            response = await read_message(reader)
            writer.write(b'{"jsonrpc":"2.0","method":"echo","params":"after","id":2}\n')
            await writer.drain()
            follow_up = await read_message(reader)
            writer.close()

        assert response["id"] == 1
        assert response["result"]["pong"] is True
        # Nothing else (no parse error, no duplicate) arrived before the follow-up
        assert follow_up == {"jsonrpc": "2.0", "result": "after", "id": 2}

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_stop_closes_clients(self) -> None:
        server = make_server()
        await server.start()
        port = server.get_info()["address"]["port"]

        connections = [await asyncio.open_connection("127.0.0.1", port) for _ in range(2)]
        for reader, writer in connections:
            await request(reader, writer, {"jsonrpc": "2.0", "method": "system.ping", "id": 1})
        assert server.get_info()["clients"] == 2

        await server.stop()

        for reader, writer in connections:
            await wait_closed_by_peer(reader)
            writer.close()
        assert server.get_info()["clients"] == 0
        assert server.is_running is False

        await server.stop()


class TestConnectionHandling:
    """Framing, ordering and connection lifecycle over TCP."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_pipelined_requests_answered_in_order(self) -> None:
        async with running(make_server()) as port:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            writer.write(
                b"".join(
                    json.dumps({"jsonrpc": "2.0", "method": "echo", "params": i, "id": i}).encode()
                    + b"\n"
                    for i in range(5)
                )
            )
            await writer.drain()

            responses = [await read_message(reader) for _ in range(5)]
            writer.close()

        assert [r["result"] for r in responses] == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_parse_error_keeps_connection_open(self) -> None:
        async with running(make_server()) as port:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            writer.write(b"{not json}\n" + PING)
            await writer.drain()

            parse_error = await read_message(reader)
            response = await read_message(reader)
            writer.close()

        assert parse_error == {
            "jsonrpc": "2.0",
            "error": {"code": PARSE_ERROR, "message": "Parse error"},
            "id": None,
        }
        assert response["result"]["pong"] is True

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_deeply_nested_line_keeps_connection_open(self) -> None:
        async with running(make_server()) as port:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            writer.write(b"[" * 200_000 + b"]" * 200_000 + b"\n" + PING)
            await writer.drain()

            parse_error = await read_message(reader)
            response = await read_message(reader)
            writer.close()

        assert parse_error["error"]["code"] == PARSE_ERROR
        assert response["result"]["pong"] is True

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_max_connections(self) -> None:
        async with running(make_server(max_connections=1)) as port:
            first_reader, first_writer = await asyncio.open_connection("127.0.0.1", port)
            await request(
                first_reader, first_writer, {"jsonrpc": "2.0", "method": "system.ping", "id": 1}
            )

            second_reader, second_writer = await asyncio.open_connection("127.0.0.1", port)
            await wait_closed_by_peer(second_reader)

            still_ok = await request(
                first_reader, first_writer, {"jsonrpc": "2.0", "method": "system.ping", "id": 2}
            )
            first_writer.close()
            second_writer.close()

        assert still_ok["id"] == 2

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_client_disconnect_aborts_stream(self) -> None:
        server = make_server()
        finished = asyncio.Event()

        async def endless() -> AsyncIterator[int]:
            try:
                n = 0
                while True:
                    n += 1
                    await asyncio.sleep(0.01)
                    yield n
            finally:
                finished.set()

        server.register_method("endless", endless, streaming=True)

        async with running(server) as port:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            writer.write(b'{"jsonrpc":"2.0","method":"endless","id":1}\n')
            await writer.drain()
            first = await read_message(reader)
            writer.close()

            await asyncio.wait_for(finished.wait(), timeout=5)

        assert first["method"] == "endless.chunk"

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_broadcast_over_tcp(self) -> None:
        server = make_server(auth_token="secret")
        async with running(server) as port:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            # Registered but not yet authenticated
            await request(reader, writer, {"jsonrpc": "2.0", "method": "system.ping", "id": 1})

            delivered = await server.broadcast("status.changed", {"ready": True})
            message = await read_message(reader)
            writer.close()

        assert delivered == 1
        assert message == {
            "jsonrpc": "2.0",
            "method": "status.changed",
            "params": {"ready": True},
        }


class TestLifecycle:
    """start/stop state and emitted events."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_events(self) -> None:
        server = make_server()
        seen: list[tuple[str, Any]] = []
        disconnected = asyncio.Event()

        def on_disconnection(conn: Any) -> None:
            seen.append(("disconnection", conn.id))
            disconnected.set()

        server.on("listening", lambda info: seen.append(("listening", info)))
        server.on("connection", lambda conn: seen.append(("connection", conn.id)))
        server.on("disconnection", on_disconnection)
        server.on("closed", lambda: seen.append(("closed", None)))

        async with running(server) as port:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            await request(reader, writer, {"jsonrpc": "2.0", "method": "system.ping", "id": 1})
            writer.close()
            await asyncio.wait_for(disconnected.wait(), timeout=5)

        names = [name for name, _ in seen]
        assert names == ["listening", "connection", "disconnection", "closed"]
        listening = seen[0][1]
        assert listening["port"] == port
        assert listening["host"] == "127.0.0.1"
        assert listening["token"] == server.auth_token
        assert seen[1][1] == seen[2][1]

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_start_twice(self) -> None:
        server = make_server()
        async with running(server):
            with pytest.raises(ServerAlreadyRunningError):
                await server.start()
            assert server.is_running is True

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_bind_failure_emits_error(self) -> None:
        async with running(make_server()) as port:
            second = IPCServer(port=port)
            errors: list[Exception] = []
            second.on("error", errors.append)

            with pytest.raises(OSError):
                await second.start()

        assert second.is_running is False
        assert len(errors) == 1
        assert isinstance(errors[0], OSError)

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_get_info(self) -> None:
        server = make_server()
        assert server.get_info() == {
            "is_running": False,
            "clients": 0,
            "address": None,
            "token": server.auth_token,
        }

        async with running(server) as port:
            info = server.get_info()
            assert info["is_running"] is True
            assert info["address"] == {"port": port, "host": "127.0.0.1"}

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_serve_forever_returns_after_stop(self) -> None:
        server = make_server()
        await server.start()
        serving = asyncio.create_task(server.serve_forever())
        await asyncio.sleep(0)
        assert not serving.done()

        await server.stop()
        await asyncio.wait_for(serving, timeout=5)

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_restart_after_stop(self) -> None:
        server = make_server()
        async with running(server):
            pass
        async with running(server) as port:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            response = await request(
                reader, writer, {"jsonrpc": "2.0", "method": "system.ping", "id": 1}
            )
            writer.close()
        assert response["result"]["pong"] is True


@requires_unix_sockets
class TestUnixSocket:
    """Server bound to a Unix-domain socket."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_round_trip_and_cleanup(self, tmp_path: Path) -> None:
        path = tmp_path / "ipc.sock"
        server = make_server(socket_path=str(path))
        listening: list[dict[str, Any]] = []
        server.on("listening", listening.append)

        async with running(server):
            assert path.is_socket()
            assert stat.S_IMODE(path.stat().st_mode) == 0o600
            assert server.get_info()["address"] == str(path)

            reader, writer = await asyncio.open_unix_connection(str(path))
            response = await request(
                reader, writer, {"jsonrpc": "2.0", "method": "echo", "params": "unix", "id": 1}
            )
            writer.close()

        assert response["result"] == "unix"
        assert listening[0]["socket_path"] == str(path)
        assert "token" in listening[0]
        assert not path.exists()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_stale_socket_replaced(self, tmp_path: Path) -> None:
        path = tmp_path / "ipc.sock"
        stale = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        stale.bind(str(path))
        stale.close()
        assert path.is_socket()

        async with running(make_server(socket_path=str(path))):
            reader, writer = await asyncio.open_unix_connection(str(path))
            response = await request(
                reader, writer, {"jsonrpc": "2.0", "method": "system.ping", "id": 1}
            )
            writer.close()

        assert response["result"]["pong"] is True

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_creates_parent_directory(self, tmp_path: Path) -> None:
        path = tmp_path / "run" / "ipc.sock"
        async with running(make_server(socket_path=str(path))):
            assert path.is_socket()
