"""FastAPI application entry point.

Startup loads the tracked symbols and the trader roster, opens one feed
session per trader, then hands periodic work to the scheduler. Failures here
are fatal; after startup nothing short of process exit stops the tracker.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tracker.config import settings
from tracker.database import create_db_and_tables, engine
from tracker.engine.runtime import build_runtime
from tracker.engine.scheduler import start_scheduler, stop_scheduler
from tracker.utils.logging import setup_logging
from tracker.api import system, trades

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    create_db_and_tables()

    runtime = build_runtime(engine, settings)
    runtime.symbols.refresh()
    await runtime.reconciler.reconcile()
    start_scheduler(
        runtime.pipeline,
        runtime.reconciler,
        runtime.symbols,
        flush_seconds=settings.flush_interval_seconds,
        roster_seconds=settings.roster_refresh_seconds,
        symbols_seconds=settings.symbol_refresh_seconds,
    )
    app.state.runtime = runtime
    logger.info("Tracker started")

    yield

    stop_scheduler()
    await runtime.shutdown()
    logger.info("Tracker stopped")


app = FastAPI(
    title="DEX Trade Tracker",
    description="Follows dYdX trader subaccounts and records their trade ledger",
    version="0.1.0",
    lifespan=lifespan,
)

# Mount routers
app.include_router(system.router)
app.include_router(trades.router)
