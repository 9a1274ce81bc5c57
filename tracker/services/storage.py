"""Storage access for the tracker: trade upserts, roster and symbol reads."""

import logging
from dataclasses import dataclass
from typing import Any, Sequence

from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlmodel import Session, select

from tracker.models.token import Token
from tracker.models.trade import TraderTrade
from tracker.models.wallet import UserWallet
from tracker.utils.constants import DEX_TRADER_TYPE

logger = logging.getLogger(__name__)

# Columns rewritten when a trade id already exists
UPSERT_COLUMNS = (
    "size",
    "sum_open",
    "sum_close",
    "limit_price",
    "exit_price",
    "start_date",
    "end_date",
    "funding",
    "realised_pnl",
    "pnl",
    "is_profitable",
    "timestamp",
)

# MySQL: lock wait timeout, deadlock
_MYSQL_LOCK_ERRNOS = {1205, 1213}
# PostgreSQL: deadlock_detected, lock_not_available, serialization_failure
_PG_LOCK_SQLSTATES = {"40P01", "55P03", "40001"}


@dataclass(frozen=True)
class TraderRef:
    user: int
    address: str


def is_lock_conflict(exc: BaseException) -> bool:
    """True if ``exc`` is a transient lock conflict worth retrying."""
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in _PG_LOCK_SQLSTATES:
        return True
    args = getattr(orig, "args", ())
    if args and args[0] in _MYSQL_LOCK_ERRNOS:
        return True
    message = str(orig).lower()
    return "deadlock" in message or "database is locked" in message


def _upsert_statement(dialect: str, records: Sequence[dict[str, Any]]):
    table = TraderTrade.__table__
    if dialect == "mysql":
        from sqlalchemy.dialects.mysql import insert

        stmt = insert(table).values(list(records))
        return stmt.on_duplicate_key_update({c: stmt.inserted[c] for c in UPSERT_COLUMNS})

    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise ValueError(f"Unsupported database dialect: {dialect}")

    stmt = insert(table).values(list(records))
    return stmt.on_conflict_do_update(
        index_elements=["trade_id"],
        set_={c: stmt.excluded[c] for c in UPSERT_COLUMNS},
    )


def upsert_trades(engine: Engine, records: Sequence[dict[str, Any]]) -> int:
    """Insert or update ``records`` keyed by trade_id in one transaction."""
    if not records:
        return 0
    stmt = _upsert_statement(engine.dialect.name, records)
    with engine.begin() as conn:
        conn.execute(stmt)
    return len(records)


def get_trade(engine: Engine, trade_id: str) -> TraderTrade | None:
    with Session(engine) as session:
        return session.exec(
            select(TraderTrade).where(TraderTrade.trade_id == trade_id)
        ).first()


def load_active_traders(engine: Engine, server_group: int) -> list[TraderRef]:
    """Active DEX traders assigned to ``server_group``."""
    with Session(engine) as session:
        wallets = session.exec(
            select(UserWallet).where(
                UserWallet.trader_type == DEX_TRADER_TYPE,
                UserWallet.server_group == server_group,
                UserWallet.is_active == True,
            )
        ).all()
        return [TraderRef(user=w.user, address=w.address) for w in wallets]


def load_tracked_symbols(engine: Engine) -> set[str]:
    with Session(engine) as session:
        symbols = session.exec(select(Token.symbol).where(Token.is_active == True)).all()
        return set(symbols)
