"""HTTP and WebSocket surface over the balance pipeline."""

from balancewatch.dashboard.app import create_dashboard_app
from balancewatch.dashboard.routes.ws import DashboardHub

__all__ = ["DashboardHub", "create_dashboard_app"]
