"""Position ledger: turns indexer position reports into trade ledger rows.

Every followed trader owns a map of open lanes keyed by token symbol. A lane
is the single live ledger entry for one (trader, token) pair. Reports are
resolved against that map:

1. No lane for the token → open a new lane (tag ``open``)
2. Lane open, same side → refresh it in place (tag ``update``)
3. Lane open, side changed → close the lane and open the opposite one
   (tags ``close`` + ``open``)
4. Position closed → finalize the lane and drop it (tag ``close``)

The lane maps live only in memory. They are rebuilt from the snapshot the
indexer sends after every (re)subscribe, which is why snapshot lanes are
tagged ``update``: the position may well predate this process.

All arithmetic is done on ``Decimal``.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Mapping, Sequence

from pydantic import ValidationError

from tracker.errors import UnrecognisedTransition
from tracker.schemas.feed import Fill, PerpetualPosition, market_symbol
from tracker.utils.constants import (
    CLOSE_TYPE,
    CLOSED_STATUS,
    OPEN_STATUS,
    OPEN_TYPE,
    SHORT_BIAS,
    UPDATE_TYPE,
)

logger = logging.getLogger(__name__)

ZERO = Decimal(0)

SymbolFilter = Callable[[str], bool]


@dataclass
class TraderPosition:
    user: int
    trade_id: str
    trader_address: str
    token: str
    bias: int  # 1 = long, 0 = short
    size: Decimal
    sum_open: Decimal
    sum_close: Decimal
    limit_price: Decimal  # entry price
    exit_price: Decimal | None
    start_date: datetime | None
    end_date: datetime | None = None
    funding: Decimal = ZERO
    realised_pnl: Decimal = ZERO  # running realized PnL while the lane is open
    pnl: Decimal = ZERO  # final PnL, set when the lane closes
    is_profitable: bool = False
    type: str = OPEN_TYPE


def make_trade_id(address: str, symbol: str, side: str, block_height: str) -> str:
    return f"{address}-{symbol}-{side}-{block_height}"


def _running_realised_pnl(position: PerpetualPosition) -> Decimal:
    if position.exit_price is None:
        return ZERO
    pnl = position.sum_close * (position.exit_price - position.entry_price)
    return pnl if position.is_long else -pnl


# ---------------------------------------------------------------------------
# Lane transitions (pure: each returns a new TraderPosition)
# ---------------------------------------------------------------------------

def open_lane(
    user: int,
    address: str,
    position: PerpetualPosition,
    block_height: str | None = None,
    created_at: datetime | None = None,
    type_: str = OPEN_TYPE,
) -> TraderPosition:
    """Create a lane from a position report.

    ``block_height`` and ``created_at`` default to the position's own creation
    fields; incremental updates pass the triggering fill's instead.
    """
    block_height = block_height or position.created_at_height
    created_at = created_at or position.created_at
    if not block_height:
        raise ValueError(f"No block height for {position.market}")

    symbol = position.symbol
    return TraderPosition(
        user=user,
        trade_id=make_trade_id(address, symbol, position.side, block_height),
        trader_address=address,
        token=symbol,
        bias=position.bias,
        size=position.size,
        sum_open=position.sum_open,
        sum_close=position.sum_close,
        limit_price=position.entry_price,
        exit_price=position.exit_price,
        start_date=created_at,
        funding=position.net_funding,
        realised_pnl=_running_realised_pnl(position),
        type=type_,
    )


def update_lane(lane: TraderPosition, position: PerpetualPosition) -> TraderPosition:
    """Refresh an open lane with the latest report for the same side."""
    return replace(
        lane,
        size=position.size,
        sum_open=position.sum_open,
        sum_close=position.sum_close,
        limit_price=position.entry_price,
        exit_price=position.exit_price,
        funding=position.net_funding,
        realised_pnl=_running_realised_pnl(position),
        pnl=ZERO,
        is_profitable=False,
        type=UPDATE_TYPE,
    )


def flip_lane(
    lane: TraderPosition, position: PerpetualPosition, end_date: datetime
) -> TraderPosition:
    """Close ``lane`` after the trader crossed to the opposite side.

    The report describes the new side. The part of ``sum_open`` that is
    neither the new size nor already closed is the amount that closed the old
    side at the new entry price; it is averaged with any exit the lane had
    already booked. Accumulated funding is netted into the PnL.
    """
    moved = position.sum_open - abs(position.size) - position.sum_close
    if lane.exit_price is not None:
        avg_close = (moved * position.entry_price + lane.sum_close * lane.exit_price) / (
            lane.sum_close + moved
        )
    else:
        avg_close = position.entry_price

    closing_size = lane.sum_close + moved
    if lane.bias == SHORT_BIAS:
        closing_size = -closing_size

    pnl = closing_size * (avg_close - lane.limit_price) + lane.funding
    return replace(
        lane,
        size=closing_size,
        exit_price=avg_close,
        end_date=end_date,
        realised_pnl=ZERO,
        pnl=pnl,
        is_profitable=pnl > 0,
        type=CLOSE_TYPE,
    )


def close_lane(
    lane: TraderPosition, position: PerpetualPosition, end_date: datetime
) -> TraderPosition:
    """Finalize a lane from a CLOSED report."""
    if position.exit_price is None:
        raise ValueError(f"Closed position on {position.market} has no exit price")
    closing_size = position.sum_close if position.is_long else -position.sum_close
    pnl = closing_size * (position.exit_price - position.entry_price)
    return replace(
        lane,
        size=closing_size,
        limit_price=position.entry_price,
        exit_price=position.exit_price,
        end_date=end_date,
        realised_pnl=ZERO,
        pnl=pnl,
        is_profitable=pnl > 0,
        type=CLOSE_TYPE,
    )


# ---------------------------------------------------------------------------
# Frame application
# ---------------------------------------------------------------------------

def apply_snapshot(
    lanes: dict[str, TraderPosition],
    user: int,
    address: str,
    positions: Mapping[str, Any] | None,
    is_tracked: SymbolFilter,
) -> list[TraderPosition]:
    """Seed lanes from a subscription snapshot, keyed by market name.

    Tokens that already have a lane are left untouched, so replaying the same
    snapshot is a no-op.
    """
    emitted: list[TraderPosition] = []
    if not positions:
        return emitted

    for market, raw in positions.items():
        symbol = market_symbol(market)
        if not is_tracked(symbol) or symbol in lanes:
            continue
        try:
            position = PerpetualPosition.model_validate(raw)
            lane = open_lane(user, address, position, type_=UPDATE_TYPE)
        except (ValueError, ArithmeticError) as e:
            logger.error(f"[{address}] Skipping snapshot position {market}: {e}")
            continue
        lanes[symbol] = lane
        emitted.append(replace(lane))

    if emitted:
        logger.info(f"[{address}] Snapshot seeded {len(emitted)} lanes")
    return emitted


def apply_update(
    lanes: dict[str, TraderPosition],
    user: int,
    address: str,
    positions: Sequence[Any] | None,
    fills: Sequence[Any] | None,
    is_tracked: SymbolFilter,
) -> list[TraderPosition]:
    """Resolve an incremental frame against the trader's lanes.

    Needs both the position list and at least one fill: the first fill dates
    the transition and seeds the trade id of any lane it opens. A position
    that fails to resolve is logged and skipped without touching the others.
    """
    if not positions or not fills:
        return []

    try:
        fill = Fill.model_validate(fills[0])
    except ValidationError as e:
        logger.error(f"[{address}] Dropping update with malformed fill: {e}")
        return []

    emitted: list[TraderPosition] = []
    for raw in positions:
        try:
            position = PerpetualPosition.model_validate(raw)
            if not is_tracked(position.symbol):
                continue
            emitted.extend(_transition(lanes, user, address, position, fill))
        except UnrecognisedTransition as e:
            logger.error(f"[{address}] {e}")
        except (ValueError, ArithmeticError) as e:
            logger.error(f"[{address}] Skipping position update: {e}")
    return emitted


def _transition(
    lanes: dict[str, TraderPosition],
    user: int,
    address: str,
    position: PerpetualPosition,
    fill: Fill,
) -> list[TraderPosition]:
    symbol = position.symbol
    lane = lanes.get(symbol)

    if lane is None:
        logger.info(f"[{address}] New {position.side} position on {symbol}")
        opened = open_lane(user, address, position, fill.created_at_height, fill.created_at)
        lanes[symbol] = opened
        return [replace(opened)]

    if position.status == OPEN_STATUS and lane.bias == position.bias:
        logger.debug(f"[{address}] Update position on {symbol}")
        updated = update_lane(lane, position)
        lanes[symbol] = updated
        return [replace(updated)]

    if position.status == OPEN_STATUS:
        logger.info(f"[{address}] Flip position on {symbol} to {position.side}")
        closed = flip_lane(lane, position, fill.created_at)
        opened = open_lane(user, address, position, fill.created_at_height, fill.created_at)
        lanes[symbol] = opened
        return [closed, replace(opened)]

    if position.status == CLOSED_STATUS:
        logger.info(f"[{address}] Close position on {symbol}")
        closed = close_lane(lane, position, fill.created_at)
        del lanes[symbol]
        return [closed]

    raise UnrecognisedTransition(symbol, position.status, lane.bias)


# ---------------------------------------------------------------------------
# Lane storage
# ---------------------------------------------------------------------------

class LedgerBook:
    """Open lanes of every followed trader, indexed by trader address."""

    def __init__(self):
        self._lanes: dict[str, dict[str, TraderPosition]] = {}

    def lanes(self, address: str) -> dict[str, TraderPosition]:
        return self._lanes.setdefault(address, {})

    def reset(self, address: str):
        """Forget a trader's lanes; the next snapshot rebuilds them."""
        self._lanes[address] = {}

    def drop(self, address: str):
        self._lanes.pop(address, None)

    def open_count(self, address: str | None = None) -> int:
        if address is not None:
            return len(self._lanes.get(address, {}))
        return sum(len(lanes) for lanes in self._lanes.values())

    def traders(self) -> list[str]:
        return list(self._lanes)
