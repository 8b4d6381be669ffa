"""Fluorite Flake - multi-framework project scaffolding CLI.

Exposes an IPC server so GUI, TUI and Tauri front ends can drive project
generation and the cloud dashboards.
"""

__version__ = "0.1.0"
