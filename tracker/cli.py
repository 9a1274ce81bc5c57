"""CLI tool for admin operations.

Usage:
    python -m tracker.cli add-trader <user> <address> [server_group]
    python -m tracker.cli deactivate-trader <address>
    python -m tracker.cli add-token <symbol> [name]
    python -m tracker.cli list-tokens
"""

import sys

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from tracker.models.token import Token
from tracker.models.wallet import UserWallet
from tracker.schemas.feed import market_symbol
from tracker.utils.constants import DEX_TRADER_TYPE


def add_trader(engine: Engine, user: int, address: str, server_group: int) -> UserWallet:
    """Register (or reactivate) a wallet as a followed DEX trader."""
    with Session(engine) as session:
        wallet = session.exec(
            select(UserWallet).where(UserWallet.address == address)
        ).first()
        if wallet is None:
            wallet = UserWallet(user=user, address=address)
        wallet.user = user
        wallet.trader_type = DEX_TRADER_TYPE
        wallet.server_group = server_group
        wallet.is_active = True
        session.add(wallet)
        session.commit()
        session.refresh(wallet)
        return wallet


def deactivate_trader(engine: Engine, address: str) -> bool:
    with Session(engine) as session:
        wallet = session.exec(
            select(UserWallet).where(UserWallet.address == address)
        ).first()
        if wallet is None:
            return False
        wallet.is_active = False
        session.add(wallet)
        session.commit()
        return True


def add_token(engine: Engine, symbol: str, name: str | None = None) -> Token:
    """Track a token; accepts market names like ``BTC-USD``."""
    symbol = market_symbol(symbol).upper()
    with Session(engine) as session:
        token = session.exec(select(Token).where(Token.symbol == symbol)).first()
        if token is None:
            token = Token(symbol=symbol)
        if name:
            token.name = name
        token.is_active = True
        session.add(token)
        session.commit()
        session.refresh(token)
        return token


def list_tokens(engine: Engine) -> list[Token]:
    with Session(engine) as session:
        return list(session.exec(select(Token).order_by(Token.symbol)).all())


def main():
    if len(sys.argv) < 2:
        print("Usage: python -m tracker.cli <command> [args]")
        print("Commands: add-trader, deactivate-trader, add-token, list-tokens")
        sys.exit(1)

    from tracker.config import settings
    from tracker.database import create_db_and_tables, engine

    create_db_and_tables()
    command, args = sys.argv[1], sys.argv[2:]

    if command == "add-trader" and len(args) in (2, 3):
        group = int(args[2]) if len(args) == 3 else settings.server_group
        wallet = add_trader(engine, int(args[0]), args[1], group)
        print(f"Following {wallet.address} (user {wallet.user}, server group {wallet.server_group})")
    elif command == "deactivate-trader" and len(args) == 1:
        if not deactivate_trader(engine, args[0]):
            print(f"Unknown address: {args[0]}")
            sys.exit(1)
        print(f"Deactivated {args[0]}; its session closes on the next roster refresh")
    elif command == "add-token" and len(args) in (1, 2):
        token = add_token(engine, args[0], args[1] if len(args) == 2 else None)
        print(f"Tracking {token.symbol}")
    elif command == "list-tokens" and not args:
        for token in list_tokens(engine):
            state = "active" if token.is_active else "inactive"
            print(f"{token.symbol:<16} {state:<8} {token.name or ''}")
    else:
        print(f"Unknown command or wrong arguments: {' '.join(sys.argv[1:])}")
        sys.exit(1)


if __name__ == "__main__":
    main()
