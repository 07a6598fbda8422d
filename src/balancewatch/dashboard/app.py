"""FastAPI dashboard application factory with JSON API and WebSocket hub."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI

from balancewatch.dashboard.routes import actions, api, ws
from balancewatch.dashboard.routes.ws import DashboardHub


def create_dashboard_app(lifespan: Any = None) -> FastAPI:
    """Create and configure the FastAPI dashboard application.

    Args:
        lifespan: Optional async context manager for application lifespan events.
                  Used by main.py to inject startup/shutdown logic.

    Returns:
        Configured FastAPI application with WebSocket hub and routes. Route
        handlers expect settings, history_store, trade_store, live_feed,
        pipeline and remediator on app.state.
    """
    app = FastAPI(
        title="Balance Watch Dashboard",
        lifespan=lifespan,
    )

    # Store WebSocket hub on app state for access from route handlers
    app.state.hub = DashboardHub()

    app.include_router(api.router, prefix="/api")
    app.include_router(actions.router, prefix="/api")
    app.include_router(ws.router)

    return app
