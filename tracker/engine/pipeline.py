"""Batch persistence pipeline.

Trader sessions ``enqueue`` ledger rows as they are produced. A periodic
flush swaps the pending list for an empty one and writes the whole batch as
a single upsert keyed by trade id, so replaying a transition is harmless.
Lock conflicts are retried with doubling backoff; any other failure drops
the batch for that tick (the next report for the lane rewrites the row).
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence

from tracker.engine.ledger import TraderPosition
from tracker.services.notifier import Notifier, NullNotifier
from tracker.services.storage import is_lock_conflict
from tracker.utils.constants import AMOUNT_DECIMALS, NOTIFY_TYPES, PRICE_DECIMALS
from tracker.utils.decimals import to_fixed, to_sql_date, utc_now

logger = logging.getLogger(__name__)

Writer = Callable[[Sequence[dict[str, Any]]], Any]


@dataclass
class PendingRow:
    record: dict[str, Any]
    type: str


def to_record(position: TraderPosition) -> dict[str, Any]:
    """Encode a ledger row for storage (fixed-point strings, naive UTC dates)."""
    return {
        "user": position.user,
        "trade_id": position.trade_id,
        "trader_address": position.trader_address,
        "token": position.token,
        "bias": position.bias,
        "size": to_fixed(position.size, AMOUNT_DECIMALS),
        "sum_open": to_fixed(position.sum_open, AMOUNT_DECIMALS),
        "sum_close": to_fixed(position.sum_close, AMOUNT_DECIMALS),
        "limit_price": to_fixed(position.limit_price, PRICE_DECIMALS),
        "exit_price": to_fixed(position.exit_price, PRICE_DECIMALS),
        "start_date": to_sql_date(position.start_date),
        "end_date": to_sql_date(position.end_date),
        "funding": to_fixed(position.funding, AMOUNT_DECIMALS),
        "realised_pnl": to_fixed(position.realised_pnl, AMOUNT_DECIMALS),
        "pnl": to_fixed(position.pnl, AMOUNT_DECIMALS),
        "is_profitable": position.is_profitable,
        "timestamp": utc_now(),
    }


def collapse_by_trade_id(records: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    """Keep the last record per trade id, in order of first appearance."""
    latest: dict[str, dict[str, Any]] = {}
    for record in records:
        latest[record["trade_id"]] = record
    return list(latest.values())


class BatchPipeline:
    """Buffers ledger rows and flushes them in single-flight batches."""

    def __init__(
        self,
        writer: Writer,
        notifier: Notifier | None = None,
        source: str = "dydx",
        max_retries: int = 5,
        initial_retry_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._writer = writer
        self._notifier = notifier or NullNotifier()
        self.source = source
        self.max_retries = max_retries
        self.initial_retry_delay = initial_retry_delay
        self._sleep = sleep
        self._pending: list[PendingRow] = []
        self._flush_lock = asyncio.Lock()

        self.rows_written = 0
        self.batches_written = 0
        self.batches_dropped = 0
        self.last_flush_at = None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def is_flushing(self) -> bool:
        return self._flush_lock.locked()

    def enqueue(self, position: TraderPosition):
        """Queue a copy of ``position`` for the next flush."""
        self._pending.append(PendingRow(record=to_record(position), type=position.type))

    async def flush(self) -> int:
        """Write everything queued so far. Returns the number of rows flushed.

        A flush requested while another is running is skipped. Errors other
        than retried lock conflicts propagate after the batch is dropped.
        """
        if self._flush_lock.locked():
            logger.warning("Skipping flush: previous flush still in progress")
            return 0

        async with self._flush_lock:
            batch, self._pending = self._pending, []
            if not batch:
                return 0

            records = collapse_by_trade_id([row.record for row in batch])
            logger.info(f"Flushing {len(batch)} ledger rows ({len(records)} trade ids)")
            try:
                attempts = await self._write_with_retry(records)
            except Exception:
                self.batches_dropped += 1
                logger.error(f"Dropped batch of {len(batch)} ledger rows")
                raise

            self.rows_written += len(records)
            self.batches_written += 1
            self.last_flush_at = utc_now()
            logger.info(f"Wrote {len(records)} trades in {attempts} attempt(s)")

            await self._notify(batch)
            return len(batch)

    async def _write_with_retry(self, records: list[dict[str, Any]]) -> int:
        delay = self.initial_retry_delay
        attempt = 1
        loop = asyncio.get_running_loop()
        while True:
            try:
                # Blocking DB write; run in executor so readers keep their heartbeat
                await loop.run_in_executor(None, self._writer, records)
                return attempt
            except Exception as e:
                if not is_lock_conflict(e) or attempt >= self.max_retries:
                    logger.error(f"Trade upsert failed on attempt {attempt}: {e}")
                    raise
                logger.warning(
                    f"Lock conflict on attempt {attempt} of {self.max_retries}, "
                    f"retrying in {delay}s"
                )
                await self._sleep(delay)
                delay *= 2
                attempt += 1

    async def _notify(self, batch: list[PendingRow]):
        for row in batch:
            if row.type not in NOTIFY_TYPES:
                continue
            payload = {"trade_id": row.record["trade_id"], "type": self.source}
            try:
                await self._notifier.publish(payload)
            except Exception as e:
                logger.warning(f"Notification for {payload['trade_id']} failed: {e}")
