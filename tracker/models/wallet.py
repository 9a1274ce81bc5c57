"""UserWallet model: addresses the service follows, partitioned by server group."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class UserWallet(SQLModel, table=True):
    __tablename__ = "users_wallets"

    id: int | None = Field(default=None, primary_key=True)
    user: int = Field(index=True)
    address: str = Field(max_length=255, index=True)
    trader_type: int = 3  # 3 = DEX trader
    server_group: int = Field(default=0, index=True)
    is_active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
