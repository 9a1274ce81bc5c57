"""Database models."""

from tracker.models.trade import TraderTrade
from tracker.models.wallet import UserWallet
from tracker.models.token import Token

__all__ = [
    "TraderTrade",
    "UserWallet",
    "Token",
]
