"""Tests for the fluorite command-line interface."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from fluorite import __version__
from fluorite.cli import _server_options, create_parser, main


class TestParser:
    def test_ipc_start_arguments(self) -> None:
        args = create_parser().parse_args(
            ["ipc", "start", "--port", "0", "--token", "secret", "--max-connections", "4", "--daemon"]
        )
        assert args.port == 0
        assert args.token == "secret"
        assert args.max_connections == 4
        assert args.daemon is True

    def test_ipc_test_defaults(self) -> None:
        args = create_parser().parse_args(["ipc", "test"])
        assert args.port is None
        assert args.host is None
        assert args.socket is None

    def test_server_options_merge_config(self) -> None:
        args = create_parser().parse_args(["ipc", "start", "--socket", "/tmp/f.sock"])
        options = _server_options(args)

        assert options.socket_path == "/tmp/f.sock"
        assert options.port == 9123
        assert options.auth_token is None


class TestCommands:
    def test_version(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["version"]) == 0
        assert __version__ in capsys.readouterr().out

    def test_version_flag(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["--version"]) == 0
        assert "Fluorite Flake" in capsys.readouterr().out

    def test_no_command_prints_help(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main([]) == 0
        assert "usage: fluorite" in capsys.readouterr().out

    def test_daemon_mode(self) -> None:
        daemon = AsyncMock(return_value=0)
        with patch("fluorite.cli.start_ipc_daemon", daemon):
            assert main(["ipc", "start", "--daemon", "--port", "0", "--token", "t"]) == 0

        options = daemon.await_args.args[0]
        assert options.port == 0
        assert options.auth_token == "t"
        assert daemon.await_args.kwargs == {"verbose": False}

    def test_foreground_mode(self) -> None:
        server = MagicMock()
        with (
            patch("fluorite.cli.setup_ipc_server", return_value=server) as setup,
            patch("fluorite.cli.serve_until_stopped", AsyncMock(return_value=0)) as serve,
        ):
            assert main(["ipc", "start", "--port", "0"]) == 0

        assert setup.call_args.args[0].port == 0
        serve.assert_awaited_once_with(server)
        events = [c.args[0] for c in server.on.call_args_list]
        assert events == ["listening", "connection", "disconnection", "error"]

    def test_ipc_test_success(self, capsys: pytest.CaptureFixture[str]) -> None:
        client = MagicMock()
        client.connect = AsyncMock()
        client.disconnect = AsyncMock()

        responses: dict[str, Any] = {
            "system.ping": {"pong": True, "timestamp": 1},
            "system.version": {"version": "0.1.0", "runtimeVersion": "3.12.1"},
            "dashboard.getData": {"workers": [{"name": "api"}], "r2Buckets": [], "kvNamespaces": []},
        }
        client.call = AsyncMock(side_effect=lambda method, params=None: responses[method])

        with patch("fluorite.cli.IPCClient", return_value=client) as client_cls:
            assert main(["ipc", "test", "--port", "9200", "--token", "secret"]) == 0

        options = client_cls.call_args.args[0]
        assert options.port == 9200
        assert options.auth_token == "secret"
        client.disconnect.assert_awaited_once()
        assert "IPC connection OK" in capsys.readouterr().out

    def test_ipc_test_connection_refused(self, capsys: pytest.CaptureFixture[str]) -> None:
        client = MagicMock()
        client.connect = AsyncMock(side_effect=ConnectionRefusedError("refused"))

        with patch("fluorite.cli.IPCClient", return_value=client):
            assert main(["ipc", "test"]) == 1

        assert "IPC test failed" in capsys.readouterr().out
