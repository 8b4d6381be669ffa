"""Tests for the error hierarchy and structured logging helpers."""

from __future__ import annotations

import json
import logging

import pytest

from fluorite.errors import (
    ConfigurationError,
    DashboardError,
    ErrorCode,
    FluoriteError,
    IPCClientError,
    IPCError,
    IPCTimeoutError,
    ProjectError,
    ServerAlreadyRunningError,
)
from fluorite.observability.logging import StructuredFormatter, log_event, timed_operation


class TestErrors:
    def test_defaults(self) -> None:
        error = ServerAlreadyRunningError()
        assert error.message == "Server is already running"
        assert error.code == ErrorCode.IPC_ALREADY_RUNNING
        assert isinstance(error, IPCError)
        assert isinstance(error, FluoriteError)

    def test_to_dict(self) -> None:
        error = ProjectError("boom", details={"command": ["npx"]})
        assert error.to_dict() == {
            "name": "ProjectError",
            "code": "PRJ_GENERATION_FAILED",
            "message": "boom",
            "details": {"command": ["npx"]},
        }

    def test_cause_chained(self) -> None:
        cause = FileNotFoundError("wrangler")
        error = DashboardError("missing", code=ErrorCode.DSH_CLI_MISSING, cause=cause)
        assert error.__cause__ is cause
        assert error.cause is cause

    def test_configuration_error_path(self) -> None:
        error = ConfigurationError("bad", config_path="/tmp/config.json")
        assert error.details == {"config_path": "/tmp/config.json"}

    def test_client_error_rpc_fields(self) -> None:
        error = IPCClientError("Method not found", rpc_code=-32601, data={"x": 1})
        assert error.rpc_code == -32601
        assert error.data == {"x": 1}
        assert error.details == {"rpc_code": -32601}

    def test_timeout_is_client_error(self) -> None:
        error = IPCTimeoutError("Request timeout: system.ping")
        assert isinstance(error, IPCClientError)
        assert error.code == ErrorCode.IPC_TIMEOUT

    def test_repr(self) -> None:
        assert repr(ProjectError("x", code=ErrorCode.PRJ_EXISTS)) == (
            "ProjectError('x', code='PRJ_EXISTS')"
        )


class TestStructuredLogging:
    def _record(self, logger: logging.Logger, caplog: pytest.LogCaptureFixture) -> logging.LogRecord:
        assert caplog.records
        return caplog.records[-1]

    def test_log_event_splits_fields(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = logging.getLogger("fluorite.test")
        with caplog.at_level(logging.INFO, logger="fluorite.test"):
            log_event(logger, "ipc.client.connect", peer="local", active_connections=2, secure=True)

        record = self._record(logger, caplog)
        assert record.getMessage() == "ipc.client.connect"
        assert record.event_type == "ipc.client.connect"  # type: ignore[attr-defined]
        assert record.metrics == {"active_connections": 2}  # type: ignore[attr-defined]
        assert record.metadata == {"peer": "local", "secure": True}  # type: ignore[attr-defined]

    def test_formatter_emits_json(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = logging.getLogger("fluorite.test")
        with caplog.at_level(logging.INFO, logger="fluorite.test"):
            log_event(logger, "ipc.server.start", port=9123)

        entry = json.loads(StructuredFormatter().format(self._record(logger, caplog)))
        assert entry["event"] == "ipc.server.start"
        assert entry["metrics"] == {"port": 9123}
        assert entry["level"] == "INFO"
        assert "metadata" not in entry

    def test_timed_operation_complete(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = logging.getLogger("fluorite.test")
        with caplog.at_level(logging.DEBUG, logger="fluorite.test"):
            with timed_operation(logger, "dashboard.get_data") as ctx:
                ctx["workers"] = 3

        record = self._record(logger, caplog)
        assert record.event_type == "dashboard.get_data.complete"  # type: ignore[attr-defined]
        assert record.metrics["workers"] == 3  # type: ignore[attr-defined]
        assert "latency_ms" in record.metrics  # type: ignore[attr-defined]

    def test_timed_operation_failed(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = logging.getLogger("fluorite.test")
        with caplog.at_level(logging.DEBUG, logger="fluorite.test"):
            with pytest.raises(RuntimeError):
                with timed_operation(logger, "project.scaffold", framework="expo"):
                    raise RuntimeError("scaffold failed")

        record = self._record(logger, caplog)
        assert record.levelno == logging.WARNING
        assert record.event_type == "project.scaffold.failed"  # type: ignore[attr-defined]
        assert record.metadata == {"framework": "expo"}  # type: ignore[attr-defined]
