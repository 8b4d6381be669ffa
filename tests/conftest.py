"""Shared fixtures and helpers for Fluorite tests."""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import MagicMock

import pytest

from fluorite.config import reset_config
from fluorite.ipc.protocol import MAX_MESSAGE_SIZE
from fluorite.ipc.server import ClientConnection


class WriterStub:
    """Stand-in for asyncio.StreamWriter that records written lines."""

    def __init__(self, fail_after: int | None = None) -> None:
        self.buffer = bytearray()
        self.closed = False
        self.transport = None
        self.writes = 0
        self.fail_after = fail_after

    def write(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionResetError("writer closed")
        if self.fail_after is not None and self.writes >= self.fail_after:
            self.closed = True
            raise ConnectionResetError("peer went away")
        self.writes += 1
        self.buffer.extend(data)

    async def drain(self) -> None:
        return None

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None

    def get_extra_info(self, name: str, default: Any = None) -> Any:
        return default

    def messages(self) -> list[dict[str, Any]]:
        return [json.loads(line) for line in self.buffer.decode().splitlines() if line]


def make_connection(
    authenticated: bool = True,
    writer: WriterStub | None = None,
) -> tuple[ClientConnection, WriterStub]:
    """Build a ClientConnection wired to a WriterStub."""
    writer = writer or WriterStub()
    conn = ClientConnection(
        MagicMock(),
        writer,  # type: ignore[arg-type]
        authenticated=authenticated,
        max_message_size=MAX_MESSAGE_SIZE,
    )
    return conn, writer


def rpc(method: str, params: Any = None, request_id: Any = 1) -> dict[str, Any]:
    """Build a JSON-RPC request dict."""
    message: dict[str, Any] = {"jsonrpc": "2.0", "method": method, "id": request_id}
    if params is not None:
        message["params"] = params
    return message


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point the config loader at an empty temp location for every test."""
    monkeypatch.setattr("fluorite.config.CONFIG_PATH", tmp_path / "config.json")
    for name in ("FLUORITE_IPC_HOST", "FLUORITE_IPC_PORT", "FLUORITE_IPC_SOCKET", "FLUORITE_IPC_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()
