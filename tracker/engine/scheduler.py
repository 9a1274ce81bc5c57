"""APScheduler integration.

Runs the periodic work of the tracker: trade flushes, roster reconciliation
and symbol cache refreshes. Each job logs its own failure and leaves the
retry to its next tick.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tracker.engine.pipeline import BatchPipeline
from tracker.engine.roster import RosterReconciler
from tracker.services.symbols import SymbolCache

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

FLUSH_JOB_ID = "flush_trades"
ROSTER_JOB_ID = "refresh_roster"
SYMBOLS_JOB_ID = "refresh_symbols"


async def run_flush_tick(pipeline: BatchPipeline):
    try:
        await pipeline.flush()
    except Exception as e:
        logger.error(f"Flush tick failed, batch dropped: {e}")


async def run_roster_tick(reconciler: RosterReconciler):
    try:
        await reconciler.reconcile()
    except Exception as e:
        logger.error(f"Roster refresh failed: {e}")


async def run_symbols_tick(symbols: SymbolCache):
    try:
        symbols.refresh()
    except Exception as e:
        logger.error(f"Symbol refresh failed, keeping previous set: {e}")


def _add_job(func, seconds: float, job_id: str, name: str, args: list):
    scheduler.add_job(
        func,
        trigger=IntervalTrigger(seconds=seconds),
        args=args,
        id=job_id,
        name=name,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=30,
    )
    logger.info(f"Scheduled {name} every {seconds}s")


def start_scheduler(
    pipeline: BatchPipeline,
    reconciler: RosterReconciler,
    symbols: SymbolCache,
    flush_seconds: float,
    roster_seconds: float,
    symbols_seconds: float,
):
    """Register the periodic jobs and start the scheduler."""
    _add_job(run_flush_tick, flush_seconds, FLUSH_JOB_ID, "Trade flush", [pipeline])
    _add_job(run_roster_tick, roster_seconds, ROSTER_JOB_ID, "Roster refresh", [reconciler])
    _add_job(run_symbols_tick, symbols_seconds, SYMBOLS_JOB_ID, "Symbol refresh", [symbols])

    scheduler.start()
    logger.info(f"Scheduler started with {len(scheduler.get_jobs())} jobs")


def stop_scheduler():
    """Shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
    logger.info("Scheduler stopped")


def get_scheduler_status() -> dict:
    """Return current scheduler state for the API."""
    jobs = scheduler.get_jobs()
    return {
        "running": scheduler.running,
        "job_count": len(jobs),
        "jobs": [
            {
                "id": j.id,
                "name": j.name,
                "next_run": str(j.next_run_time) if j.next_run_time else None,
                "trigger": str(j.trigger),
            }
            for j in jobs
        ],
    }
