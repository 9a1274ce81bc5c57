"""Wiring of the tracker components for one process."""

import logging
from dataclasses import dataclass
from functools import partial

from sqlalchemy.engine import Engine

from tracker.config import Settings
from tracker.engine.ledger import LedgerBook
from tracker.engine.pipeline import BatchPipeline
from tracker.engine.roster import RosterReconciler
from tracker.engine.supervisor import ConnectionSupervisor
from tracker.services import storage
from tracker.services.notifier import Notifier, build_notifier
from tracker.services.symbols import SymbolCache

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    engine: Engine
    book: LedgerBook
    symbols: SymbolCache
    notifier: Notifier
    pipeline: BatchPipeline
    supervisor: ConnectionSupervisor
    reconciler: RosterReconciler

    def status(self) -> dict:
        return {
            "traders": len(self.supervisor.addresses()),
            "open_lanes": self.book.open_count(),
            "tracked_symbols": len(self.symbols),
            "pipeline": {
                "pending_rows": self.pipeline.pending_count,
                "flushing": self.pipeline.is_flushing,
                "rows_written": self.pipeline.rows_written,
                "batches_written": self.pipeline.batches_written,
                "batches_dropped": self.pipeline.batches_dropped,
                "last_flush_at": self.pipeline.last_flush_at,
            },
            "sessions": self.supervisor.status(),
        }

    async def shutdown(self):
        """Drain sessions, write what is still pending, release the notifier."""
        await self.supervisor.close_all()
        try:
            await self.pipeline.flush()
        except Exception as e:
            logger.error(f"Final flush failed: {e}")
        await self.notifier.close()


def build_runtime(engine: Engine, settings: Settings, notifier: Notifier | None = None) -> Runtime:
    book = LedgerBook()
    symbols = SymbolCache(partial(storage.load_tracked_symbols, engine))
    notifier = notifier or build_notifier(settings.telegram_bot_token, settings.telegram_chat_ids)
    pipeline = BatchPipeline(
        writer=partial(storage.upsert_trades, engine),
        notifier=notifier,
        source=settings.notification_source,
        max_retries=settings.write_max_retries,
        initial_retry_delay=settings.write_initial_retry_delay,
    )
    supervisor = ConnectionSupervisor(
        url=settings.feed_ws_url,
        channel=settings.feed_channel,
        book=book,
        is_tracked=symbols.is_tracked,
        pipeline=pipeline,
        subaccount_number=settings.subaccount_number,
        heartbeat_timeout=settings.heartbeat_timeout_seconds,
        reconnect_interval=settings.reconnect_interval_seconds,
    )
    reconciler = RosterReconciler(
        supervisor,
        partial(storage.load_active_traders, engine, settings.server_group),
    )
    return Runtime(
        engine=engine,
        book=book,
        symbols=symbols,
        notifier=notifier,
        pipeline=pipeline,
        supervisor=supervisor,
        reconciler=reconciler,
    )
