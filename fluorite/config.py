"""Fluorite Flake configuration.

Loads settings from ~/.fluorite/config.json using Pydantic for validation,
with environment overrides for the IPC endpoint. Server construction uses
IPCServerOptions, which can be built directly or from the loaded settings.

Usage:
    from fluorite.config import get_config

    config = get_config()
    options = config.ipc.to_server_options()
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".fluorite"
CONFIG_PATH = CONFIG_DIR / "config.json"

DEFAULT_IPC_HOST = "127.0.0.1"
DEFAULT_IPC_PORT = 9123

# Environment variable -> IPCSettings field
ENV_OVERRIDES = {
    "FLUORITE_IPC_HOST": "host",
    "FLUORITE_IPC_PORT": "port",
    "FLUORITE_IPC_SOCKET": "socket_path",
    "FLUORITE_IPC_TOKEN": "auth_token",
}


class IPCServerOptions(BaseModel):
    """Options accepted by IPCServer.

    Attributes:
        socket_path: Listen on a Unix-domain socket at this path instead of TCP.
        host: TCP listen host.
        port: TCP listen port; 0 requests an ephemeral port.
        max_connections: Cap on concurrently accepted connections.
        auth_token: Pre-shared secret for the auth.login handshake.
        require_auth: Enforce the handshake with a generated token when
            auth_token is not given.
    """

    socket_path: str | None = None
    host: str = DEFAULT_IPC_HOST
    port: int = Field(default=0, ge=0, le=65535)
    max_connections: int | None = Field(default=None, ge=1)
    auth_token: str | None = None
    require_auth: bool = False


class IPCSettings(BaseModel):
    """Persisted IPC endpoint settings used by the CLI."""

    host: str = DEFAULT_IPC_HOST
    port: int = Field(default=DEFAULT_IPC_PORT, ge=0, le=65535)
    socket_path: str | None = None
    auth_token: str | None = None
    max_connections: int | None = Field(default=None, ge=1)

    def to_server_options(self, **overrides: Any) -> IPCServerOptions:
        """Build server options, letting non-None overrides win."""
        data = self.model_dump()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return IPCServerOptions.model_validate(data)


class FluoriteConfig(BaseModel):
    """Root configuration object.

    Attributes:
        ipc: IPC endpoint settings.
        wrangler_path: Wrangler executable used by the dashboard methods.
    """

    ipc: IPCSettings = Field(default_factory=IPCSettings)
    wrangler_path: str = "wrangler"


_config: FluoriteConfig | None = None
_config_lock = threading.Lock()


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    ipc = dict(data.get("ipc") or {})
    for env_name, field_name in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            ipc[field_name] = value
    if ipc:
        data["ipc"] = ipc
    return data


def load_config(config_path: Path | None = None) -> FluoriteConfig:
    """Load configuration from file, falling back to defaults.

    Missing files, unreadable files and invalid contents all produce the
    default configuration (the latter two with a warning). Environment
    overrides are applied in every case.

    Args:
        config_path: Optional path to config file. Defaults to ~/.fluorite/config.json.

    Returns:
        FluoriteConfig instance.
    """
    path = config_path or CONFIG_PATH
    data: dict[str, Any] = {}

    if path.exists():
        try:
            with path.open() as f:
                loaded = json.load(f)
            if isinstance(loaded, dict):
                data = loaded
            else:
                logger.warning("Config file %s does not contain an object, using defaults", path)
        except json.JSONDecodeError as e:
            logger.warning("Invalid JSON in config file %s: %s, using defaults", path, e)
        except OSError as e:
            logger.warning("Cannot read config file %s: %s, using defaults", path, e)
    else:
        logger.debug("Config file not found at %s, using defaults", path)

    data = _apply_env_overrides(data)

    try:
        return FluoriteConfig.model_validate(data)
    except ValidationError as e:
        logger.warning("Config validation failed: %s, using defaults", e)
        return FluoriteConfig.model_validate(_apply_env_overrides({}))


def save_config(config: FluoriteConfig, config_path: Path | None = None) -> bool:
    """Save configuration to file with owner-only permissions.

    Returns:
        True if saved successfully, False otherwise.
    """
    path = config_path or CONFIG_PATH

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w") as f:
            json.dump(config.model_dump(), f, indent=2)
        # May hold the IPC auth token
        os.chmod(path, 0o600)
        logger.debug("Configuration saved to %s", path)
        return True
    except OSError as e:
        logger.error("Failed to save config to %s: %s", path, e)
        return False


def get_config() -> FluoriteConfig:
    """Get the shared configuration instance."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:
                _config = load_config()
    return _config


def reset_config() -> None:
    """Reset the shared configuration (for tests)."""
    global _config
    with _config_lock:
        _config = None
