"""Trade model: one ledger row per lane of a followed trader.

Numeric columns hold fixed-point values as scaled integer strings: amounts
at 6 decimals, prices at 18 decimals.
"""

from datetime import datetime

from sqlalchemy import Column, DateTime
from sqlmodel import SQLModel, Field


class TraderTrade(SQLModel, table=True):
    __tablename__ = "trades_dex"

    id: int | None = Field(default=None, primary_key=True)
    user: int = Field(index=True)
    trade_id: str = Field(max_length=255, unique=True)  # address-symbol-side-height
    trader_address: str = Field(max_length=255)
    token: str = Field(max_length=50, index=True)
    bias: int  # 1 = long, 0 = short
    size: str = Field(max_length=80)
    sum_open: str = Field(max_length=80)
    sum_close: str | None = Field(default=None, max_length=80)
    limit_price: str = Field(max_length=80)
    exit_price: str | None = Field(default=None, max_length=80)
    # Naive UTC, whole seconds
    start_date: datetime = Field(sa_column=Column(DateTime(timezone=False), nullable=False))
    end_date: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=False), nullable=True)
    )
    funding: str = Field(default="0", max_length=80)
    realised_pnl: str = Field(default="0", max_length=80)
    pnl: str = Field(default="0", max_length=80)
    is_profitable: bool = False
    timestamp: datetime = Field(  # server time of the last write
        sa_column=Column(DateTime(timezone=False), nullable=False)
    )
