"""Allow running as `python -m fluorite`."""

from fluorite.cli import run

run()
