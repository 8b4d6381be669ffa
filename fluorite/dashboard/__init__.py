"""Cloud provider dashboards backed by their command-line tools."""

from fluorite.dashboard.wrangler import (
    CommandResult,
    DashboardData,
    WranglerDashboard,
    WranglerKVNamespace,
    WranglerR2Bucket,
    WranglerWorker,
    create_wrangler_dashboard,
)

__all__ = [
    "CommandResult",
    "DashboardData",
    "WranglerDashboard",
    "WranglerKVNamespace",
    "WranglerR2Bucket",
    "WranglerWorker",
    "create_wrangler_dashboard",
]
