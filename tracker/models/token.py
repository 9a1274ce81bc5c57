"""Token model: instruments whose positions are tracked."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class Token(SQLModel, table=True):
    __tablename__ = "tokens"

    id: int | None = Field(default=None, primary_key=True)
    symbol: str = Field(max_length=50, unique=True)  # e.g. "BTCUSD"
    name: str | None = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
