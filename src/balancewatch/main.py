"""Entry point for the balance watch service.

Wires all components together and serves the FastAPI dashboard through
uvicorn's programmatic API, with FastAPI's lifespan context manager owning
database and live feed startup/shutdown.

Component wiring order (in _build_components):
1. AppSettings (configuration)
2. Logging setup
3. BalanceDatabase (aiosqlite connection, opened in the lifespan)
4. SqliteHistoryStore / SqliteTradeStore
5. SeriesMerger (live buffer + debounced display commit)
6. LiveFeed (reporter snapshots -> merger)
7. DisplayPipeline (window, fetches, derived series)
8. AnomalyRemediator (confirm-then-purge loop)
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from balancewatch.analytics.profit import format_percent, format_profit_loss
from balancewatch.config import AppSettings
from balancewatch.data.database import BalanceDatabase
from balancewatch.data.store import SqliteHistoryStore, SqliteTradeStore
from balancewatch.feed import LiveFeed
from balancewatch.logging import get_logger, setup_logging
from balancewatch.pipeline import DisplayPipeline
from balancewatch.remediation.remediator import AnomalyRemediator
from balancewatch.series.merger import AsyncioScheduler, SeriesMerger


def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build all components from settings.

    Note: Does NOT connect the database or the feed -- that happens in the
    lifespan (dashboard mode) or report() (headless mode).

    Args:
        settings: Application-wide settings.

    Returns:
        Dict mapping component names to instances.
    """
    database = BalanceDatabase(settings.store.db_path)

    history_store = SqliteHistoryStore(
        database,
        fallback_price=settings.price.fallback_rlb_price_usd,
        scan_window_size=settings.anomaly.scan_window_size,
        fast_mode=settings.anomaly.fast_mode,
    )
    trade_store = SqliteTradeStore(database)

    merger = SeriesMerger(
        AsyncioScheduler(),
        capacity=settings.series.live_buffer_capacity,
        debounce_seconds=settings.series.debounce_seconds,
    )
    live_feed = LiveFeed(merger, fallback_price=settings.price.fallback_rlb_price_usd)
    pipeline = DisplayPipeline(history_store, trade_store, merger)

    remediator = AnomalyRemediator(
        history_store,
        thresholds=settings.anomaly.thresholds(),
        page_size=settings.anomaly.page_size,
        max_iterations=settings.anomaly.max_iterations,
        iteration_delay=settings.anomaly.iteration_delay_seconds,
    )

    return {
        "database": database,
        "history_store": history_store,
        "trade_store": trade_store,
        "merger": merger,
        "live_feed": live_feed,
        "pipeline": pipeline,
        "remediator": remediator,
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage component lifecycle within the FastAPI application.

    On startup: stores components on app.state, connects the database, loads
    history, connects the live feed and hooks merger commits to the hub.

    On shutdown: disconnects the feed, tears down the merger and closes the
    database.
    """
    logger = get_logger("balancewatch.main")
    components = app.state.components

    # Store all components on app.state for route handler access
    app.state.history_store = components["history_store"]
    app.state.trade_store = components["trade_store"]
    app.state.live_feed = components["live_feed"]
    app.state.pipeline = components["pipeline"]
    app.state.remediator = components["remediator"]

    await components["database"].connect()
    await components["pipeline"].refresh()

    components["merger"].add_listener(app.state.hub.publish_commit)
    components["live_feed"].connect()

    logger.info("lifespan_started", db_path=app.state.settings.store.db_path)

    yield

    components["live_feed"].disconnect()
    components["merger"].unsubscribe()
    await components["database"].close()

    logger.info("balancewatch_stopped")


async def report(components: dict[str, Any]) -> None:
    """Headless mode: load the default window once and log its summary."""
    logger = get_logger("balancewatch.main")
    pipeline: DisplayPipeline = components["pipeline"]

    async with components["database"]:
        if not await pipeline.refresh():
            logger.error("balance_report_unavailable", error=pipeline.last_error)
            return

        state = pipeline.state()
        logger.info(
            "balance_report",
            window=state.window.label(),
            data_points=state.usd_analytics.data_points,
            profit_loss=format_profit_loss(state.usd_analytics.profit_loss),
            profit_loss_percent=format_percent(state.usd_analytics.profit_loss_percent),
            trade_net_profit=format_profit_loss(state.trade_pnl.summary.total_net_profit),
            trades=state.trade_pnl.summary.total_trades,
        )


async def run() -> None:
    """Run the balance watch service.

    When dashboard is enabled (DASHBOARD_ENABLED=true, the default):
    - Creates the FastAPI dashboard app with lifespan
    - Serves the JSON API and WebSocket hub via uvicorn

    When dashboard is disabled (DASHBOARD_ENABLED=false):
    - Logs a one-off summary of the default window and exits
    """
    # 1. Load settings
    settings = AppSettings()

    # 2. Setup logging
    setup_logging(settings.log_level)
    logger = get_logger("balancewatch.main")

    # 3-8. Build all components
    components = _build_components(settings)

    if settings.dashboard.enabled:
        from balancewatch.dashboard.app import create_dashboard_app

        app = create_dashboard_app(lifespan=lifespan)
        app.state.settings = settings
        app.state.components = components

        logger.info(
            "starting_with_dashboard",
            host=settings.dashboard.host,
            port=settings.dashboard.port,
        )

        config = uvicorn.Config(
            app,
            host=settings.dashboard.host,
            port=settings.dashboard.port,
            log_level="warning",  # Suppress uvicorn access logs
        )
        server = uvicorn.Server(config)
        await server.serve()
    else:
        logger.info("starting_without_dashboard", db_path=settings.store.db_path)
        await report(components)


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
