"""Pydantic schemas for payloads of the indexer subaccounts channel.

Only the fields the ledger reads are declared; everything else in the
payload is ignored. Numeric fields arrive as decimal strings and are parsed
straight into ``Decimal`` so no value ever passes through a float.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tracker.utils.constants import LONG_BIAS, LONG_SIDE, SHORT_BIAS, SHORT_SIDE


class PerpetualPosition(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    market: str
    side: str
    status: str | None = None
    size: Decimal
    sum_open: Decimal = Field(alias="sumOpen")
    sum_close: Decimal = Field(default=Decimal(0), alias="sumClose")
    entry_price: Decimal = Field(alias="entryPrice")
    exit_price: Decimal | None = Field(default=None, alias="exitPrice")
    net_funding: Decimal = Field(default=Decimal(0), alias="netFunding")
    created_at: datetime | None = Field(default=None, alias="createdAt")
    created_at_height: str | None = Field(default=None, alias="createdAtHeight")

    @field_validator("side")
    @classmethod
    def _validate_side(cls, value: str) -> str:
        side = value.upper()
        if side not in (LONG_SIDE, SHORT_SIDE):
            raise ValueError(f"unknown side {value!r}")
        return side

    @field_validator("exit_price", mode="before")
    @classmethod
    def _empty_exit_price(cls, value):
        # The indexer reports a never-closed position with a null or empty exit price
        return None if value in ("", None) else value

    @field_validator("created_at_height", mode="before")
    @classmethod
    def _height_as_str(cls, value):
        return str(value) if isinstance(value, int) else value

    @property
    def symbol(self) -> str:
        return market_symbol(self.market)

    @property
    def bias(self) -> int:
        return LONG_BIAS if self.side == LONG_SIDE else SHORT_BIAS

    @property
    def is_long(self) -> bool:
        return self.side == LONG_SIDE


class Fill(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    created_at: datetime = Field(alias="createdAt")
    created_at_height: str = Field(alias="createdAtHeight")

    @field_validator("created_at_height", mode="before")
    @classmethod
    def _height_as_str(cls, value):
        return str(value) if isinstance(value, int) else value


def market_symbol(market: str) -> str:
    """Convert an indexer market name to the stored token symbol (``BTC-USD`` -> ``BTCUSD``)."""
    return market.replace("-", "")
